"""Audit table schema management."""

import logging
from importlib.resources import files

import asyncpg

from .store import TableSet

logger = logging.getLogger(__name__)


class AuditSchemaManager:
    """Creates the calculate, update, decrypt and streamlined tables.

    Both the live and the development table sets are created together.
    """

    async def create_schema(self, conn: asyncpg.Connection) -> None:
        """Create audit tables from the packaged SQL file."""
        sql_path = files("dka_audit.db.schema").joinpath("audit_tables.sql")
        sql = sql_path.read_text()
        await conn.execute(sql)
        logger.info("Audit schema created/updated")

    async def tables_exist(self, conn: asyncpg.Connection, tables: TableSet) -> bool:
        names = [tables.calculate, tables.update, tables.decrypt, tables.streamlined]
        count = await conn.fetchval(
            """
            SELECT COUNT(*) FROM information_schema.tables
            WHERE table_schema = current_schema()
              AND table_name = ANY($1::text[])
            """,
            names,
        )
        return count == len(names)

    async def get_row_counts(self, conn: asyncpg.Connection, tables: TableSet) -> dict[str, int]:
        counts = {}
        for name in (tables.calculate, tables.update, tables.decrypt, tables.streamlined):
            counts[name] = await conn.fetchval(f"SELECT COUNT(*) FROM {name}")
        return counts
