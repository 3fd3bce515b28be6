"""Audit record store: the persistence contract and its PostgreSQL implementation."""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

import asyncpg

from .errors import RecordStoreError
from .models import (
    PRODUCTION_EPISODE_TYPE,
    CalculateRecord,
    CerebralOedemaAssessment,
    DecryptedRecord,
    FollowUp,
    StreamlinedRecord,
    UpdateRecord,
    to_json_or_none,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSet:
    """Physical table names for one environment."""

    calculate: str
    update: str
    decrypt: str
    streamlined: str


LIVE_TABLES = TableSet(
    calculate="tbl_calculate",
    update="tbl_update",
    decrypt="tbl_decrypt",
    streamlined="tbl_decrypt_streamlined",
)

DEV_TABLES = TableSet(
    calculate="tbl_calculate_dev",
    update="tbl_update_dev",
    decrypt="tbl_decrypt_dev",
    streamlined="tbl_decrypt_streamlined_dev",
)


def select_tables(environment: str, force_live_tables: bool = False) -> TableSet:
    """Development runs read and write the dev tables unless forced live."""
    if environment == "development" and not force_live_tables:
        return DEV_TABLES
    return LIVE_TABLES


class AuditRecordStore(ABC):
    """Persistence contract required by the reconciliation and streamlining engines."""

    @abstractmethod
    async def fetch_calculate_records(
        self, audit_id: str | None = None, centre: str | None = None
    ) -> list[CalculateRecord]:
        """Calculate rows matching the optional filters, in insertion order."""

    @abstractmethod
    async def fetch_patient_hashes(self) -> list[str | None]:
        """Patient hash of every calculate row in id order, regardless of any filter."""

    @abstractmethod
    async def fetch_calculate_record(self, audit_id: str) -> CalculateRecord | None:
        """The calculate row for one audit ID, or None."""

    @abstractmethod
    async def fetch_latest_updates(
        self, audit_id: str | None = None, centre: str | None = None
    ) -> list[UpdateRecord]:
        """The most recent update row per audit ID.

        Latest is the maximum server timestamp; ties go to the highest row id.
        """

    @abstractmethod
    async def fetch_decrypted_record(self, audit_id: str) -> DecryptedRecord | None:
        pass

    @abstractmethod
    async def upsert_decrypted_record(self, record: DecryptedRecord) -> None:
        """Insert or replace the decrypted row for ``record.audit_id``.

        A record without a follow-up block keeps any follow-up already merged
        into the stored row.
        """

    @abstractmethod
    async def fetch_decrypted_records(self, include_tests: bool = False) -> list[DecryptedRecord]:
        """Decrypted rows in insertion order, production episodes only unless asked."""

    @abstractmethod
    async def clear_streamlined_records(self) -> None:
        pass

    @abstractmethod
    async def append_streamlined_record(self, record: StreamlinedRecord) -> None:
        """Write one export row, replacing any existing row for the audit ID."""

    @abstractmethod
    async def insert_calculate_record(self, record: CalculateRecord) -> int:
        """Append a calculate row and return its id."""

    @abstractmethod
    async def insert_update_record(self, record: UpdateRecord) -> int:
        """Append an update row and return its id."""

    @abstractmethod
    async def mark_retrospective_audit_data(self, audit_id: str, when: datetime) -> None:
        """Stamp the calculate row when follow-up data first arrives."""


_CALCULATE_COLUMNS = [
    "id",
    "episode_type",
    "audit_id",
    "legal_agreement",
    "region",
    "centre",
    "client_datetime",
    "server_datetime",
    "client_useragent",
    "client_ip",
    "app_version",
    "patient_hash",
    "retrospective_episode",
    "retrospective_audit_data",
    "retrospective_patient_hash",
    "encrypted_data",
]

_UPDATE_COLUMNS = [
    "id",
    "audit_id",
    "server_datetime",
    "client_useragent",
    "client_ip",
    "app_version",
    "encrypted_data",
]

_DECRYPT_CALCULATE_COLUMNS = [
    "id",
    "episode_type",
    "audit_id",
    "patient_number",
    "legal_agreement",
    "region",
    "centre",
    "client_datetime",
    "server_datetime",
    "client_useragent",
    "client_ip",
    "app_version",
    "retrospective_episode",
    "retrospective_patient_hash",
    "protocol_start_datetime",
    "patient_age",
    "patient_sex",
    "ph",
    "bicarbonate",
    "glucose",
    "ketones",
    "calculations",
    "weight_limit_override",
    "use_2sd",
    "shock_present",
    "insulin_rate",
    "pre_existing_diabetes",
    "insulin_delivery_method",
    "ethnic_group",
    "ethnic_subgroup",
    "preventable_factors",
    "imd_decile",
]

_DECRYPT_AUDIT_COLUMNS = [
    "audit_table_id",
    "audit_protocol_end_datetime",
    "audit_pre_existing_diabetes",
    "audit_preventable_factors",
    "audit_cerebral_oedema_concern",
    "audit_cerebral_oedema_imaging",
    "audit_cerebral_oedema_treatment",
    "audit_server_datetime",
    "audit_client_useragent",
    "audit_client_ip",
    "audit_app_version",
    "audit_ethnic_group",
    "audit_ethnic_subgroup",
    "audit_imd_decile",
]

_STREAMLINED_COLUMNS = [
    "data_grade",
    "patient_number",
    "audit_id",
    "protocol_start_datetime",
    "protocol_end_datetime",
    "patient_age",
    "patient_sex",
    "ph",
    "bicarbonate",
    "glucose",
    "ketones",
    "shock_present",
    "insulin_rate",
    "pre_existing_diabetes",
    "insulin_delivery_method",
    "ethnic_group",
    "ethnic_subgroup",
    "preventable_factors",
    "imd_decile",
    "cerebral_oedema_concern",
    "cerebral_oedema_imaging",
    "cerebral_oedema_treatment",
    "region",
    "centre",
    "calculations",
    "deduplicated_audit_ids",
]


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


def _upsert_decrypted_sql(table: str) -> str:
    columns = _DECRYPT_CALCULATE_COLUMNS + _DECRYPT_AUDIT_COLUMNS
    assignments = [
        f"{col} = EXCLUDED.{col}" for col in _DECRYPT_CALCULATE_COLUMNS if col != "audit_id"
    ]
    assignments += [
        f"{col} = CASE WHEN EXCLUDED.audit_table_id IS NULL "
        f"THEN {table}.{col} ELSE EXCLUDED.{col} END"
        for col in _DECRYPT_AUDIT_COLUMNS
    ]
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({_placeholders(len(columns))}) "
        f"ON CONFLICT (audit_id) DO UPDATE SET {', '.join(assignments)}"
    )


def _upsert_streamlined_sql(table: str) -> str:
    assignments = [f"{col} = EXCLUDED.{col}" for col in _STREAMLINED_COLUMNS if col != "audit_id"]
    return (
        f"INSERT INTO {table} ({', '.join(_STREAMLINED_COLUMNS)}) "
        f"VALUES ({_placeholders(len(_STREAMLINED_COLUMNS))}) "
        f"ON CONFLICT (audit_id) DO UPDATE SET {', '.join(assignments)}"
    )


def _load_json(value):
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


def _decrypted_params(record: DecryptedRecord) -> tuple:
    follow_up = record.follow_up
    calculate_part = (
        record.id,
        record.episode_type,
        record.audit_id,
        record.patient_number,
        record.legal_agreement,
        record.region,
        record.centre,
        record.client_datetime,
        record.server_datetime,
        record.client_useragent,
        record.client_ip,
        record.app_version,
        record.retrospective_episode,
        record.retrospective_patient_hash,
        record.protocol_start_datetime,
        record.patient_age,
        record.patient_sex,
        record.ph,
        record.bicarbonate,
        record.glucose,
        record.ketones,
        to_json_or_none(record.calculations),
        record.weight_limit_override,
        record.use_2sd,
        record.shock_present,
        record.insulin_rate,
        record.pre_existing_diabetes,
        record.insulin_delivery_method,
        record.ethnic_group,
        record.ethnic_subgroup,
        to_json_or_none(record.preventable_factors),
        record.imd_decile,
    )
    if follow_up is None:
        return calculate_part + (None,) * len(_DECRYPT_AUDIT_COLUMNS)

    return calculate_part + (
        follow_up.audit_table_id,
        follow_up.protocol_end_datetime,
        follow_up.pre_existing_diabetes,
        to_json_or_none(follow_up.preventable_factors),
        follow_up.cerebral_oedema.concern,
        follow_up.cerebral_oedema.imaging,
        to_json_or_none(follow_up.cerebral_oedema.treatment),
        follow_up.server_datetime,
        follow_up.client_useragent,
        follow_up.client_ip,
        follow_up.app_version,
        follow_up.ethnic_group,
        follow_up.ethnic_subgroup,
        follow_up.imd_decile,
    )


def _decrypted_from_row(row) -> DecryptedRecord:
    follow_up = None
    if row["audit_table_id"] is not None:
        follow_up = FollowUp(
            audit_table_id=row["audit_table_id"],
            protocol_end_datetime=row["audit_protocol_end_datetime"],
            pre_existing_diabetes=row["audit_pre_existing_diabetes"],
            preventable_factors=_load_json(row["audit_preventable_factors"]),
            cerebral_oedema=CerebralOedemaAssessment(
                concern=row["audit_cerebral_oedema_concern"],
                imaging=row["audit_cerebral_oedema_imaging"],
                treatment=_load_json(row["audit_cerebral_oedema_treatment"]),
            ),
            server_datetime=row["audit_server_datetime"],
            client_useragent=row["audit_client_useragent"],
            client_ip=row["audit_client_ip"],
            app_version=row["audit_app_version"],
            ethnic_group=row["audit_ethnic_group"],
            ethnic_subgroup=row["audit_ethnic_subgroup"],
            imd_decile=row["audit_imd_decile"],
        )

    return DecryptedRecord(
        audit_id=row["audit_id"],
        id=row["id"],
        episode_type=row["episode_type"],
        patient_number=row["patient_number"],
        legal_agreement=row["legal_agreement"],
        region=row["region"],
        centre=row["centre"],
        client_datetime=row["client_datetime"],
        server_datetime=row["server_datetime"],
        client_useragent=row["client_useragent"],
        client_ip=row["client_ip"],
        app_version=row["app_version"],
        retrospective_episode=row["retrospective_episode"],
        retrospective_patient_hash=row["retrospective_patient_hash"],
        protocol_start_datetime=row["protocol_start_datetime"],
        patient_age=row["patient_age"],
        patient_sex=row["patient_sex"],
        ph=row["ph"],
        bicarbonate=row["bicarbonate"],
        glucose=row["glucose"],
        ketones=row["ketones"],
        calculations=_load_json(row["calculations"]),
        weight_limit_override=row["weight_limit_override"],
        use_2sd=row["use_2sd"],
        shock_present=row["shock_present"],
        insulin_rate=row["insulin_rate"],
        pre_existing_diabetes=row["pre_existing_diabetes"],
        insulin_delivery_method=row["insulin_delivery_method"],
        ethnic_group=row["ethnic_group"],
        ethnic_subgroup=row["ethnic_subgroup"],
        preventable_factors=_load_json(row["preventable_factors"]),
        imd_decile=row["imd_decile"],
        follow_up=follow_up,
    )


def _streamlined_params(record: StreamlinedRecord) -> tuple:
    return (
        record.data_grade.value,
        record.patient_number,
        record.audit_id,
        record.protocol_start_datetime,
        record.protocol_end_datetime,
        record.patient_age,
        record.patient_sex,
        record.ph,
        record.bicarbonate,
        record.glucose,
        record.ketones,
        record.shock_present,
        record.insulin_rate,
        record.pre_existing_diabetes,
        record.insulin_delivery_method,
        record.ethnic_group,
        record.ethnic_subgroup,
        to_json_or_none(record.preventable_factors),
        record.imd_decile,
        record.cerebral_oedema_concern,
        record.cerebral_oedema_imaging,
        to_json_or_none(record.cerebral_oedema_treatment),
        record.region,
        record.centre,
        to_json_or_none(record.calculations),
        to_json_or_none(record.deduplicated_audit_ids),
    )


class PostgresRecordStore(AuditRecordStore):
    """AuditRecordStore backed by an asyncpg connection pool.

    Table names come from a TableSet and are never user input.
    """

    def __init__(self, pool: asyncpg.Pool, tables: TableSet = LIVE_TABLES):
        self._pool = pool
        self.tables = tables

    @classmethod
    async def connect(
        cls,
        db_url: str,
        tables: TableSet = LIVE_TABLES,
        max_size: int = 10,
        ssl: bool | str | None = None,
    ) -> "PostgresRecordStore":
        try:
            pool = await asyncpg.create_pool(
                db_url, min_size=1, max_size=max_size, command_timeout=300, ssl=ssl
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise RecordStoreError(f"Could not connect to audit database: {e}") from e
        return cls(pool, tables)

    async def close(self) -> None:
        await self._pool.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise RecordStoreError(f"Audit store operation failed: {e}") from e

    async def fetch_calculate_records(
        self, audit_id: str | None = None, centre: str | None = None
    ) -> list[CalculateRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {', '.join(_CALCULATE_COLUMNS)}
                FROM {self.tables.calculate}
                WHERE ($1::text IS NULL OR audit_id = $1)
                  AND ($2::text IS NULL OR centre = $2)
                ORDER BY id
                """,
                audit_id,
                centre,
            )
        return [CalculateRecord.from_db_row(dict(row)) for row in rows]

    async def fetch_patient_hashes(self) -> list[str | None]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT patient_hash FROM {self.tables.calculate} ORDER BY id"
            )
        return [row["patient_hash"] for row in rows]

    async def fetch_calculate_record(self, audit_id: str) -> CalculateRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {', '.join(_CALCULATE_COLUMNS)} FROM {self.tables.calculate} "
                "WHERE audit_id = $1",
                audit_id,
            )
        return CalculateRecord.from_db_row(dict(row)) if row else None

    async def fetch_latest_updates(
        self, audit_id: str | None = None, centre: str | None = None
    ) -> list[UpdateRecord]:
        columns = ", ".join(f"u.{col}" for col in _UPDATE_COLUMNS)
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT DISTINCT ON (u.audit_id) {columns}
                FROM {self.tables.update} u
                LEFT JOIN {self.tables.calculate} c ON c.audit_id = u.audit_id
                WHERE ($1::text IS NULL OR u.audit_id = $1)
                  AND ($2::text IS NULL OR c.centre = $2)
                ORDER BY u.audit_id, u.server_datetime DESC NULLS LAST, u.id DESC
                """,
                audit_id,
                centre,
            )
        return [UpdateRecord.from_db_row(dict(row)) for row in rows]

    async def fetch_decrypted_record(self, audit_id: str) -> DecryptedRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {self.tables.decrypt} WHERE audit_id = $1", audit_id
            )
        return _decrypted_from_row(row) if row else None

    async def upsert_decrypted_record(self, record: DecryptedRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                _upsert_decrypted_sql(self.tables.decrypt), *_decrypted_params(record)
            )

    async def fetch_decrypted_records(self, include_tests: bool = False) -> list[DecryptedRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {self.tables.decrypt}
                WHERE $1::boolean OR episode_type = $2
                ORDER BY id
                """,
                include_tests,
                PRODUCTION_EPISODE_TYPE,
            )
        return [_decrypted_from_row(row) for row in rows]

    async def clear_streamlined_records(self) -> None:
        async with self._connection() as conn:
            await conn.execute(f"DELETE FROM {self.tables.streamlined}")

    async def append_streamlined_record(self, record: StreamlinedRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                _upsert_streamlined_sql(self.tables.streamlined), *_streamlined_params(record)
            )

    async def insert_calculate_record(self, record: CalculateRecord) -> int:
        columns = [col for col in _CALCULATE_COLUMNS if col not in ("id", "server_datetime")]
        values = [getattr(record, col) for col in columns]
        async with self._connection() as conn:
            return await conn.fetchval(
                f"INSERT INTO {self.tables.calculate} ({', '.join(columns)}) "
                f"VALUES ({_placeholders(len(columns))}) RETURNING id",
                *values,
            )

    async def insert_update_record(self, record: UpdateRecord) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                f"""
                INSERT INTO {self.tables.update} (
                    audit_id, client_useragent, client_ip, app_version, encrypted_data
                ) VALUES ($1, $2, $3, $4, $5)
                RETURNING id
                """,
                record.audit_id,
                record.client_useragent,
                record.client_ip,
                record.app_version,
                record.encrypted_data,
            )

    async def mark_retrospective_audit_data(self, audit_id: str, when: datetime) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"""
                UPDATE {self.tables.calculate}
                SET retrospective_audit_data = $2
                WHERE audit_id = $1 AND retrospective_audit_data IS NULL
                """,
                audit_id,
                when,
            )
