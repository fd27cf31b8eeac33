"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for ssh_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from settle.models import HostSpec  # noqa: E402
from ssh_mock import MockHostContext  # noqa: E402


@pytest.fixture
def hosts() -> list[HostSpec]:
    """Two hosts in the web group."""
    return [
        HostSpec(name="web1", hostname="10.0.0.1", user="deploy", group="web"),
        HostSpec(name="web2", hostname="10.0.0.2", user="deploy", group="web"),
    ]


@pytest.fixture
def mock_hosts():
    """MockHostContext with the reconciler's SSH factory patched."""
    with MockHostContext() as ctx:
        yield ctx


@pytest.fixture(autouse=True)
def clean_settle_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SETTLE_* variables from the outer environment out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("SETTLE_"):
            monkeypatch.delenv(key)
