"""Pytest configuration and shared fixtures."""

import logging
import os
import sqlite3
import tempfile
from unittest.mock import MagicMock

import pytest

from vaultdr.config.manager import ConfigManager

SETTINGS_ENV = """DOMAIN_NAME=vault.example.com
APP_DOMAIN=vault.example.com
ADMIN_TOKEN=test-admin-token
DATABASE_URL=/data/db.sqlite3
ROCKET_WORKERS=1
WEBSOCKET_ENABLED=true
"""

COMPOSE_FILE = """services:
  vaultwarden:
    image: vaultwarden/server:latest
    volumes:
      - ./data/bwdata:/data
"""

TEST_CONFIG = """validation:
  min_size_bytes: 0
backup:
  encryption: none
  retention_days: 30
rehearsal:
  max_backup_age_hours: 48
"""


def create_vault_database(path, users=3, ciphers=12, tables=None):
    """Create a small Vaultwarden-shaped SQLite database."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tables = tables or ("users", "organizations", "ciphers", "collections", "devices")
    conn = sqlite3.connect(path)
    try:
        if "users" in tables:
            conn.execute("CREATE TABLE users (uuid TEXT PRIMARY KEY, email TEXT NOT NULL, name TEXT)")
            for i in range(users):
                conn.execute("INSERT INTO users VALUES (?, ?, ?)", (f"u{i}", f"user{i}@example.com", f"User {i}"))
        if "organizations" in tables:
            conn.execute("CREATE TABLE organizations (uuid TEXT PRIMARY KEY, name TEXT)")
            conn.execute("INSERT INTO organizations VALUES ('o0', 'Family')")
        if "ciphers" in tables:
            conn.execute("CREATE TABLE ciphers (uuid TEXT PRIMARY KEY, user_uuid TEXT, data TEXT)")
            for i in range(ciphers):
                conn.execute("INSERT INTO ciphers VALUES (?, ?, ?)", (f"c{i}", f"u{i % max(users, 1)}", "2.enc|data"))
        if "collections" in tables:
            conn.execute("CREATE TABLE collections (uuid TEXT PRIMARY KEY, org_uuid TEXT, name TEXT)")
            conn.execute("INSERT INTO collections VALUES ('col0', 'o0', 'Shared')")
        if "devices" in tables:
            conn.execute("CREATE TABLE devices (uuid TEXT PRIMARY KEY, user_uuid TEXT)")
        conn.commit()
    finally:
        conn.close()
    return path


UNDECODABLE_DUMP = (
    b"CREATE TABLE users (uuid TEXT PRIMARY KEY, email TEXT NOT NULL, name TEXT);\n"
    b"INSERT INTO users VALUES('u0', '\xff\xfe@x.y', 'Broken');\n"
)


def write_undecodable_dump(db_path, output_path):
    """Stand-in for dump_database that writes a dump with invalid UTF-8."""
    with open(output_path, "wb") as f:
        f.write(UNDECODABLE_DUMP)
    return 2


def row_counts(path, tables=("users", "organizations", "ciphers", "collections")):
    conn = sqlite3.connect(path)
    try:
        return {t: conn.execute(f'SELECT COUNT(*) FROM "{t}"').fetchone()[0] for t in tables}
    finally:
        conn.close()


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Cleanup
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def sample_project(temp_directory):
    """A deployment directory with database, data, configuration and TLS material."""
    root = os.path.join(temp_directory, "vaultwarden")
    files = {
        "settings.env": SETTINGS_ENV,
        "docker-compose.yml": COMPOSE_FILE,
        "startup.sh": "#!/bin/bash\ndocker compose up -d\n",
        "vaultdr.yml": TEST_CONFIG,
        "data/bwdata/attachments/a1/file.bin": "attachment",
        "data/bwdata/config.json": "{}",
        "data/caddy_data/certificates/vault.example.com.crt": "-----BEGIN CERTIFICATE-----\n",
    }
    for name, content in files.items():
        path = os.path.join(root, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)

    create_vault_database(os.path.join(root, "data", "bwdata", "db.sqlite3"))
    return root


@pytest.fixture
def dr_config(sample_project):
    """Effective configuration for the sample project, isolated from the real environment."""
    return ConfigManager(project_root=sample_project, environ={}).load()


@pytest.fixture
def mock_containers():
    """Container manager with no Docker daemon behind it."""
    containers = MagicMock()
    containers.is_available.return_value = False
    containers.is_running.return_value = False
    return containers


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.notify.return_value = False
    return notifier


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for testing."""
    client = MagicMock()
    client.ping.return_value = True
    client.containers.list.return_value = []
    return client


@pytest.fixture(autouse=True)
def isolate_filesystem(temp_directory, monkeypatch):
    """Isolate filesystem operations to temporary directory."""
    monkeypatch.chdir(temp_directory)
    for name in ("BACKUP_PASSPHRASE", "BACKUP_REMOTE", "ALERT_EMAIL", "BACKUP_EMAIL", "BACKUP_ENCRYPTION"):
        monkeypatch.delenv(name, raising=False)
    yield temp_directory
    # CliRunner streams are closed after each invocation
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, "_vaultdr", False):
            root_logger.removeHandler(handler)
            handler.close()
