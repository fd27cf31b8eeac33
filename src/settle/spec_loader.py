"""Declaration file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES, MAX_ENTRIES_PER_FILE
from .models import HostInventory, ResourceDocument

logger = logging.getLogger(__name__)

DECLARATION_SUFFIXES = (".yaml", ".yml")
DECLARATION_KEYS = ("packages", "services", "files")


class SpecLoadError(Exception):
    """Raised when declaration loading or validation fails."""

    pass


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from path, enforcing the size limit.

    An empty file reads as an empty mapping.
    """
    if not path.exists():
        raise SpecLoadError(f"Declaration file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Declaration file must contain a YAML mapping: {path}")
    return raw_data


def _validate(model: type[BaseModel], data: dict[str, Any], path: Path) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_hosts(path: Path) -> HostInventory:
    """Load and validate the host inventory.

    Args:
        path: Hosts file (a mapping with a ``hosts`` list).

    Returns:
        Validated inventory.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    inventory: HostInventory = _validate(HostInventory, _read_yaml(path), path)

    # SECURITY: Bound the number of hosts per file
    if len(inventory.hosts) > MAX_ENTRIES_PER_FILE:
        raise SpecLoadError(
            f"Too many hosts in {path}: {len(inventory.hosts)} (max {MAX_ENTRIES_PER_FILE})"
        )

    logger.info("Loaded %d hosts from %s", len(inventory.hosts), path)
    return inventory


def is_declaration(data: dict[str, Any]) -> bool:
    """Return True if data holds at least one resource list.

    Other YAML in the resources directory (docker-compose.yml, CI files) has
    none, or uses the same keys for mappings.
    """
    return any(isinstance(data.get(key), list) for key in DECLARATION_KEYS)


def load_resource_file(path: Path) -> ResourceDocument:
    """Load and validate one resource declaration file.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    return _resource_document(_read_yaml(path), path)


def _resource_document(data: dict[str, Any], path: Path) -> ResourceDocument:
    document: ResourceDocument = _validate(ResourceDocument, data, path)

    if document.count() > MAX_ENTRIES_PER_FILE:
        raise SpecLoadError(
            f"Too many resources in {path}: {document.count()} (max {MAX_ENTRIES_PER_FILE})"
        )
    return document


def declaration_files(resources_dir: Path, exclude: Path | None = None) -> list[Path]:
    """List declaration files in resources_dir, sorted by name."""
    if not resources_dir.is_dir():
        raise SpecLoadError(f"Resources directory not found: {resources_dir}")

    excluded = exclude.resolve() if exclude is not None else None
    return sorted(
        path
        for path in resources_dir.iterdir()
        if path.is_file()
        and path.suffix in DECLARATION_SUFFIXES
        and (excluded is None or path.resolve() != excluded)
    )


def load_resources(resources_dir: Path, hosts_file: Path | None = None) -> ResourceDocument:
    """Load every declaration file in resources_dir into one document.

    Args:
        resources_dir: Directory holding ``*.yaml`` / ``*.yml`` declarations.
        hosts_file: Hosts file to skip when it lives in the same directory.

    Returns:
        Merged document of packages, services and files.

    Raises:
        SpecLoadError: If any file cannot be loaded or fails validation.
    """
    document = ResourceDocument()
    files = declaration_files(resources_dir, exclude=hosts_file)

    for path in files:
        data = _read_yaml(path)
        if data and not is_declaration(data):
            logger.warning(
                "Skipping YAML file without packages, services or files lists",
                extra={"path": str(path)},
            )
            continue
        document = document.merge(_resource_document(data, path))

    logger.info(
        "Loaded %d resources from %d files in %s",
        document.count(),
        len(files),
        resources_dir,
    )
    return document
