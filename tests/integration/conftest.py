"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test runs.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_tab_core.sql",
    PROJECT_ROOT / "migrations" / "0002_tab_ledger.sql",
    PROJECT_ROOT / "migrations" / "0003_standings.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _find_pg_ctl() -> str | None:
    # pytest-postgresql looks in pg_config --bindir when pg_ctl is not on PATH.
    found = shutil.which("pg_ctl")
    if found or not shutil.which("pg_config"):
        return found
    bindir = subprocess.run(
        ["pg_config", "--bindir"], capture_output=True, text=True, check=False
    ).stdout.strip()
    candidate = Path(bindir) / "pg_ctl"
    return str(candidate) if bindir and candidate.exists() else None


def pytest_collection_modifyitems(config, items):
    # pytest-postgresql starts a throwaway server with pg_ctl.
    if _find_pg_ctl():
        return
    skip = pytest.mark.skip(reason="PostgreSQL server binaries (pg_ctl) not installed")
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied.

    Function scope gives every test a fresh schema.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()
