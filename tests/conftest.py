"""Pytest configuration and fixtures for dka-audit tests."""

import sys
from pathlib import Path
from urllib.parse import urlparse, urlunparse

import pytest


def parse_db_credentials(url: str) -> tuple[str, str]:
    """Split a database URL into a password-less URL and the password.

    The CLI refuses URLs with embedded passwords, so tests pass the password
    through DKA_AUDIT_DB_PASSWORD instead.
    """
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")

    parsed = urlparse(url)
    password = parsed.password or ""

    netloc = f"{parsed.username}@{parsed.hostname}" if parsed.username else parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"

    password_less_url = urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )
    return password_less_url, password


sys.path.insert(0, str(Path(__file__).parent))

from fixtures.memory_store import InMemoryRecordStore  # noqa: E402

from dka_audit.envelope import EnvelopeCipher, KeyMaterial  # noqa: E402

try:
    from testcontainers.postgres import PostgresContainer

    HAS_TESTCONTAINERS = True
except ImportError:
    HAS_TESTCONTAINERS = False


@pytest.fixture(scope="session")
def key_material() -> KeyMaterial:
    return KeyMaterial.generate()


@pytest.fixture(scope="session")
def other_key_material() -> KeyMaterial:
    """A second, unrelated key pair."""
    return KeyMaterial.generate()


@pytest.fixture(scope="session")
def cipher(key_material) -> EnvelopeCipher:
    return EnvelopeCipher(key_material)


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture(scope="session")
def postgres_container():
    """Create a PostgreSQL container for integration tests."""
    if not HAS_TESTCONTAINERS:
        pytest.skip("testcontainers not installed")

    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture
async def test_db(postgres_container):
    """Connection to a database with freshly created audit tables."""
    import asyncpg

    from dka_audit.schema import AuditSchemaManager

    url = postgres_container.get_connection_url()
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")

    conn = await asyncpg.connect(url)
    await conn.execute(
        """
        DROP TABLE IF EXISTS tbl_calculate, tbl_update, tbl_decrypt, tbl_decrypt_streamlined,
            tbl_calculate_dev, tbl_update_dev, tbl_decrypt_dev, tbl_decrypt_streamlined_dev
        """
    )
    await AuditSchemaManager().create_schema(conn)

    yield conn

    await conn.close()


@pytest.fixture
def db_url(postgres_container) -> str:
    url = postgres_container.get_connection_url()
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")
    return url
