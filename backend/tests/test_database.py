"""
Tests for database engine configuration.
"""

from __future__ import annotations

import ssl

import pytest

from app import database


@pytest.mark.parametrize("url", [
    "postgresql+asyncpg://u:p@localhost:5432/db",
    "postgresql+asyncpg://u:p@127.0.0.1/db",
    "postgresql+asyncpg://u:p@postgres:5432/db",
])
def test_local_databases_connect_without_tls(url):
    assert database.connect_args(url) == {}


def test_hosted_database_uses_tls():
    args = database.connect_args("postgresql+asyncpg://u:p@db.example.com:5432/db")

    assert isinstance(args["ssl"], ssl.SSLContext)
    assert args["ssl"].verify_mode == ssl.CERT_NONE


def test_tls_setting_overrides_host_detection(monkeypatch):
    monkeypatch.setattr(database.settings, "database_ssl", False)
    assert database.connect_args("postgresql+asyncpg://u:p@db.example.com/db") == {}

    monkeypatch.setattr(database.settings, "database_ssl", True)
    assert "ssl" in database.connect_args("postgresql+asyncpg://u:p@localhost/db")
