"""Tests for the PostgreSQL record store against a mocked asyncpg pool."""

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest
from fixtures.records import make_decrypted, ts

from dka_audit.errors import RecordStoreError
from dka_audit.models import CalculateRecord, DataGrade, StreamlinedRecord
from dka_audit.store import (
    DEV_TABLES,
    LIVE_TABLES,
    PostgresRecordStore,
    _decrypted_from_row,
    _decrypted_params,
    _upsert_decrypted_sql,
    select_tables,
)


@pytest.fixture
def mock_pool():
    conn = AsyncMock()
    pool = MagicMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    pool.acquire = mock_acquire
    pool._conn = conn
    return pool


def decrypted_row(**overrides) -> dict:
    row = {
        "id": 1,
        "episode_type": "real",
        "audit_id": "AB12CD",
        "patient_number": 1,
        "legal_agreement": True,
        "region": "Yorkshire",
        "centre": "Leeds",
        "client_datetime": None,
        "server_datetime": ts("2025-01-01T10:05:00Z"),
        "client_useragent": "pytest",
        "client_ip": None,
        "app_version": "1.0.0",
        "retrospective_episode": False,
        "retrospective_patient_hash": None,
        "protocol_start_datetime": "2025-01-01T10:00:00Z",
        "patient_age": 12.5,
        "patient_sex": "female",
        "ph": 7.1,
        "bicarbonate": 8.0,
        "glucose": 25.0,
        "ketones": 4.2,
        "calculations": '{"severity": "moderate"}',
        "weight_limit_override": False,
        "use_2sd": True,
        "shock_present": False,
        "insulin_rate": 0.05,
        "pre_existing_diabetes": False,
        "insulin_delivery_method": "pump",
        "ethnic_group": "White",
        "ethnic_subgroup": "British",
        "preventable_factors": '["missed insulin"]',
        "imd_decile": 4,
        "audit_table_id": None,
        "audit_protocol_end_datetime": None,
        "audit_pre_existing_diabetes": None,
        "audit_preventable_factors": None,
        "audit_cerebral_oedema_concern": None,
        "audit_cerebral_oedema_imaging": None,
        "audit_cerebral_oedema_treatment": None,
        "audit_server_datetime": None,
        "audit_client_useragent": None,
        "audit_client_ip": None,
        "audit_app_version": None,
        "audit_ethnic_group": None,
        "audit_ethnic_subgroup": None,
        "audit_imd_decile": None,
    }
    row.update(overrides)
    return row


class TestTableSelection:
    def test_development_uses_dev_tables(self):
        assert select_tables("development") == DEV_TABLES

    def test_force_live_overrides_development(self):
        assert select_tables("development", force_live_tables=True) == LIVE_TABLES

    def test_production_uses_live_tables(self):
        assert select_tables("production") == LIVE_TABLES


class TestUpsertSQL:
    def test_follow_up_columns_kept_when_incoming_is_null(self):
        sql = _upsert_decrypted_sql("tbl_decrypt")

        assert "ON CONFLICT (audit_id) DO UPDATE" in sql
        assert (
            "audit_imd_decile = CASE WHEN EXCLUDED.audit_table_id IS NULL "
            "THEN tbl_decrypt.audit_imd_decile ELSE EXCLUDED.audit_imd_decile END"
        ) in sql
        assert "patient_number = EXCLUDED.patient_number" in sql

    def test_param_count_matches_placeholders(self):
        sql = _upsert_decrypted_sql("tbl_decrypt")
        params = _decrypted_params(make_decrypted("AB12CD", 1, audit_table_id=3))

        assert f"${len(params)})" in sql
        assert f"${len(params) + 1}" not in sql

    def test_params_without_follow_up_are_null(self):
        params = _decrypted_params(make_decrypted("AB12CD", 1))
        assert params[-14:] == (None,) * 14


class TestRowMapping:
    def test_decodes_json_columns(self):
        record = _decrypted_from_row(decrypted_row())

        assert record.calculations == {"severity": "moderate"}
        assert record.preventable_factors == ["missed insulin"]
        assert record.follow_up is None

    def test_follow_up_restored_from_audit_columns(self):
        record = _decrypted_from_row(
            decrypted_row(
                audit_table_id=7,
                audit_cerebral_oedema_concern=True,
                audit_cerebral_oedema_treatment='["mannitol"]',
                audit_imd_decile=9,
            )
        )

        assert record.audit_table_id == 7
        assert record.follow_up.cerebral_oedema.concern is True
        assert record.follow_up.cerebral_oedema.treatment == ["mannitol"]
        assert record.follow_up.imd_decile == 9


class TestPostgresRecordStore:
    @pytest.mark.asyncio
    async def test_fetch_calculate_records_passes_filters(self, mock_pool):
        conn = mock_pool._conn
        conn.fetch.return_value = [
            {
                "id": 1,
                "audit_id": "AB12CD",
                "encrypted_data": "{}",
                "episode_type": "real",
                "centre": "Leeds",
                "retrospective_episode": False,
            }
        ]

        store = PostgresRecordStore(mock_pool, LIVE_TABLES)
        records = await store.fetch_calculate_records(centre="Leeds")

        assert records == [
            CalculateRecord(
                audit_id="AB12CD", encrypted_data="{}", id=1, episode_type="real", centre="Leeds"
            )
        ]
        sql, audit_id, centre = conn.fetch.call_args.args
        assert "FROM tbl_calculate" in sql
        assert "ORDER BY id" in sql
        assert (audit_id, centre) == (None, "Leeds")

    @pytest.mark.asyncio
    async def test_fetch_patient_hashes_is_unfiltered(self, mock_pool):
        conn = mock_pool._conn
        conn.fetch.return_value = [{"patient_hash": "h1"}, {"patient_hash": None}]

        store = PostgresRecordStore(mock_pool, DEV_TABLES)
        assert await store.fetch_patient_hashes() == ["h1", None]

        sql = conn.fetch.call_args.args[0]
        assert "FROM tbl_calculate_dev ORDER BY id" in sql
        assert "WHERE" not in sql

    @pytest.mark.asyncio
    async def test_fetch_latest_updates_orders_for_latest(self, mock_pool):
        conn = mock_pool._conn
        conn.fetch.return_value = []

        store = PostgresRecordStore(mock_pool, DEV_TABLES)
        await store.fetch_latest_updates()

        sql = conn.fetch.call_args.args[0]
        assert "DISTINCT ON (u.audit_id)" in sql
        assert "u.server_datetime DESC NULLS LAST, u.id DESC" in sql
        assert "tbl_update_dev" in sql
        assert "tbl_calculate_dev" in sql

    @pytest.mark.asyncio
    async def test_fetch_decrypted_record_missing(self, mock_pool):
        mock_pool._conn.fetchrow.return_value = None

        store = PostgresRecordStore(mock_pool)
        assert await store.fetch_decrypted_record("AB12CD") is None

    @pytest.mark.asyncio
    async def test_append_streamlined_serialises_json(self, mock_pool):
        conn = mock_pool._conn
        store = PostgresRecordStore(mock_pool)

        await store.append_streamlined_record(
            StreamlinedRecord(
                data_grade=DataGrade.A,
                audit_id="AB12CD",
                patient_number=1,
                deduplicated_audit_ids=["EF34GH"],
            )
        )

        args = conn.execute.call_args.args
        assert "INSERT INTO tbl_decrypt_streamlined" in args[0]
        assert args[1] == "A"
        assert args[3] == "AB12CD"
        assert json.loads(args[-1]) == ["EF34GH"]

    @pytest.mark.asyncio
    async def test_insert_calculate_returns_id(self, mock_pool):
        conn = mock_pool._conn
        conn.fetchval.return_value = 42

        store = PostgresRecordStore(mock_pool)
        row_id = await store.insert_calculate_record(
            CalculateRecord(audit_id="AB12CD", encrypted_data="{}", centre="Leeds")
        )

        assert row_id == 42
        sql = conn.fetchval.call_args.args[0]
        assert "RETURNING id" in sql
        assert "server_datetime" not in sql

    @pytest.mark.asyncio
    async def test_database_errors_become_record_store_errors(self, mock_pool):
        mock_pool._conn.fetch.side_effect = asyncpg.InterfaceError("connection is closed")

        store = PostgresRecordStore(mock_pool)
        with pytest.raises(RecordStoreError, match="connection is closed"):
            await store.fetch_decrypted_records()
