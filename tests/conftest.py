"""Shared pytest fixtures for registry isolation and network blocking."""

import socket
import urllib.request
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolate_registry_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Force secret-store writes into per-test temporary directory."""
    monkeypatch.setenv("IBKR_LEDGER_REGISTRY_DIR", str(tmp_path / "registry"))
    monkeypatch.delenv("IBKR_LEDGER_LOG_LEVEL", raising=False)


@pytest.fixture(autouse=True)
def block_network(monkeypatch: pytest.MonkeyPatch) -> None:
    """Block network access in all tests."""

    def blocked(*_args: object, **_kwargs: object) -> None:
        """Raise explicit error when any test attempts network access."""
        raise AssertionError("Network access is blocked in tests.")

    monkeypatch.setattr(urllib.request, "urlopen", blocked)
    monkeypatch.setattr(socket, "create_connection", blocked)
    monkeypatch.setattr(socket.socket, "connect", blocked)
    monkeypatch.setattr(socket.socket, "connect_ex", blocked)
