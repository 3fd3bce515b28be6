"""Tests for deduplication and grading of the research export."""

import pytest
from fixtures.records import make_calculate, make_decrypted, make_update, update_payload

from dka_audit.models import DataGrade, StreamlinedRecord, prefer_update
from dka_audit.reconcile import ReconciliationEngine
from dka_audit.streamline import (
    StreamliningEngine,
    grade_for,
    is_within_window,
    ranking_key,
)


def build(records):
    return StreamliningEngine(store=None).build(records)


class TestWindow:
    def test_exactly_24_hours_is_within(self):
        records = [
            make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00Z"),
            make_decrypted("BBBBBB", 1, start="2025-01-02T10:00:00Z"),
        ]
        assert is_within_window(records)

    def test_one_second_over_is_outside(self):
        records = [
            make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00Z"),
            make_decrypted("BBBBBB", 1, start="2025-01-02T10:00:01Z"),
        ]
        assert not is_within_window(records)

    def test_span_uses_earliest_and_latest(self):
        records = [
            make_decrypted("AAAAAA", 1, start="2025-01-01T20:00:00Z"),
            make_decrypted("BBBBBB", 1, start="2025-01-01T10:00:00Z"),
            make_decrypted("CCCCCC", 1, start="2025-01-02T11:00:00Z"),
        ]
        assert not is_within_window(records)

    def test_unparseable_timestamps_count_as_within(self):
        records = [
            make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00Z"),
            make_decrypted("BBBBBB", 1, start="not a date"),
            make_decrypted("CCCCCC", 1, start=None),
        ]
        assert is_within_window(records)

    def test_mixed_offsets_compare_as_instants(self):
        records = [
            make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00+00:00"),
            make_decrypted("BBBBBB", 1, start="2025-01-02T11:00:00+01:00"),
        ]
        assert is_within_window(records)


class TestGrading:
    def test_singleton_with_follow_up_is_a(self):
        assert grade_for(make_decrypted("AAAAAA", 1, audit_table_id=5)) == DataGrade.A

    def test_singleton_without_follow_up_is_b(self):
        assert grade_for(make_decrypted("AAAAAA", 1)) == DataGrade.B

    def test_null_patient_number_is_c(self):
        assert grade_for(make_decrypted("AAAAAA", None, audit_table_id=5)) == DataGrade.C
        assert grade_for(make_decrypted("BBBBBB", None)) == DataGrade.C

    def test_singleton_groups(self):
        emitted = build(
            [
                make_decrypted("AAAAAA", 1, audit_table_id=5, row_id=1),
                make_decrypted("BBBBBB", 2, row_id=2),
                make_decrypted("CCCCCC", None, audit_table_id=6, row_id=3),
            ]
        )

        grades = {record.audit_id: record.data_grade for record in emitted}
        assert grades == {"AAAAAA": DataGrade.A, "BBBBBB": DataGrade.B, "CCCCCC": DataGrade.C}
        assert all(record.deduplicated_audit_ids is None for record in emitted)


class TestDeduplication:
    def test_within_window_keeps_one(self):
        emitted = build(
            [
                make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00Z"),
                make_decrypted("BBBBBB", 1, start="2025-01-02T10:00:00Z"),
            ]
        )
        assert len(emitted) == 1
        assert emitted[0].deduplicated_audit_ids is not None

    def test_outside_window_keeps_all(self):
        emitted = build(
            [
                make_decrypted("AAAAAA", 1, start="2025-01-01T10:00:00Z", audit_table_id=3),
                make_decrypted("BBBBBB", 1, start="2025-01-02T10:00:01Z"),
            ]
        )
        assert [record.audit_id for record in emitted] == ["AAAAAA", "BBBBBB"]
        assert [record.data_grade for record in emitted] == [DataGrade.A, DataGrade.B]
        assert all(record.deduplicated_audit_ids is None for record in emitted)

    def test_audit_data_beats_newer_server_time(self):
        older_with_audit = make_decrypted(
            "AAAAAA", 1, server_datetime="2025-01-01T10:00:00Z", audit_table_id=9
        )
        newer_without = make_decrypted("BBBBBB", 1, server_datetime="2025-01-01T12:00:00Z")

        emitted = build([newer_without, older_with_audit])

        assert len(emitted) == 1
        assert emitted[0].audit_id == "AAAAAA"
        assert emitted[0].data_grade == DataGrade.A
        assert emitted[0].deduplicated_audit_ids == ["BBBBBB"]

    def test_newest_wins_among_equals(self):
        emitted = build(
            [
                make_decrypted("AAAAAA", 1, server_datetime="2025-01-01T10:00:00Z"),
                make_decrypted("BBBBBB", 1, server_datetime="2025-01-01T12:00:00Z"),
                make_decrypted("CCCCCC", 1, server_datetime="2025-01-01T11:00:00Z"),
            ]
        )
        assert emitted[0].audit_id == "BBBBBB"
        assert emitted[0].data_grade == DataGrade.B
        assert emitted[0].deduplicated_audit_ids == ["CCCCCC", "AAAAAA"]

    def test_ranking_key_orders_audit_data_first(self):
        with_audit = make_decrypted("AAAAAA", 1, audit_table_id=1)
        without = make_decrypted("BBBBBB", 1, server_datetime="2030-01-01T00:00:00Z")
        assert ranking_key(with_audit) > ranking_key(without)

    def test_null_patient_numbers_never_grouped(self):
        emitted = build(
            [
                make_decrypted("AAAAAA", None, start="2025-01-01T10:00:00Z"),
                make_decrypted("BBBBBB", None, start="2025-01-01T10:00:00Z"),
            ]
        )
        assert [record.audit_id for record in emitted] == ["AAAAAA", "BBBBBB"]
        assert all(record.data_grade == DataGrade.C for record in emitted)


class TestFieldPrecedence:
    def test_prefer_update(self):
        assert prefer_update("new", "old") == "new"
        assert prefer_update(None, "old") == "old"
        assert prefer_update(False, True) is False
        assert prefer_update(None, None) is None

    def test_update_values_win_when_present(self):
        record = make_decrypted(
            "AAAAAA",
            1,
            audit_table_id=4,
            pre_existing_diabetes=False,
            ethnic_group="White",
            ethnic_subgroup="British",
            preventable_factors=["missed insulin"],
            imd_decile=3,
        )
        record.follow_up.ethnic_group = None
        record.follow_up.imd_decile = 8
        record.follow_up.preventable_factors = ["pump failure"]

        exported = StreamlinedRecord.from_decrypted(record, DataGrade.A)

        assert exported.pre_existing_diabetes is True
        assert exported.ethnic_group == "White"
        assert exported.ethnic_subgroup == "British"
        assert exported.imd_decile == 8
        assert exported.preventable_factors == ["pump failure"]
        assert exported.protocol_end_datetime == "2025-01-02T09:00:00Z"
        assert exported.cerebral_oedema_concern is True

    def test_without_follow_up_uses_calculate_values(self):
        record = make_decrypted("AAAAAA", 1, imd_decile=3, ethnic_group="Asian")

        exported = StreamlinedRecord.from_decrypted(record, DataGrade.B)

        assert exported.imd_decile == 3
        assert exported.ethnic_group == "Asian"
        assert exported.protocol_end_datetime is None
        assert exported.cerebral_oedema_concern is None

    def test_export_row_columns(self):
        exported = StreamlinedRecord.from_decrypted(
            make_decrypted("AAAAAA", 1, ph=7.2), DataGrade.B, ["BBBBBB"]
        )
        row = exported.to_export_row()

        assert list(row)[:3] == ["dataGrade", "patientNumber", "auditID"]
        assert row["dataGrade"] == "B"
        assert row["pH"] == 7.2
        assert row["deduplicatedAuditIDs"] == ["BBBBBB"]
        assert len(row) == 26


class TestStreamline:
    @pytest.mark.asyncio
    async def test_excludes_test_episodes_unless_asked(self, memory_store):
        for record in (
            make_decrypted("AAAAAA", 1, row_id=1),
            make_decrypted("BBBBBB", 2, row_id=2, episode_type="test"),
        ):
            await memory_store.upsert_decrypted_record(record)

        result = await StreamliningEngine(memory_store).streamline()
        assert set(memory_store.streamlined) == {"AAAAAA"}
        assert result["read"] == 1

        result = await StreamliningEngine(memory_store).streamline(include_tests=True)
        assert set(memory_store.streamlined) == {"AAAAAA", "BBBBBB"}
        assert result["emitted"] == 2

    @pytest.mark.asyncio
    async def test_rerun_replaces_export(self, memory_store):
        await memory_store.upsert_decrypted_record(make_decrypted("AAAAAA", 1, row_id=1))
        await memory_store.append_streamlined_record(
            StreamlinedRecord(data_grade=DataGrade.C, audit_id="STALE1")
        )

        await StreamliningEngine(memory_store).streamline()
        first = dict(memory_store.streamlined)
        await StreamliningEngine(memory_store).streamline()

        assert "STALE1" not in memory_store.streamlined
        assert memory_store.streamlined == first

    @pytest.mark.asyncio
    async def test_counts(self, memory_store):
        for record in (
            make_decrypted("AAAAAA", 1, row_id=1, audit_table_id=10),
            make_decrypted("BBBBBB", 1, row_id=2, start="2025-01-01T12:00:00Z"),
            make_decrypted("CCCCCC", 2, row_id=3),
            make_decrypted("DDDDDD", None, row_id=4),
        ):
            await memory_store.upsert_decrypted_record(record)

        result = await StreamliningEngine(memory_store).streamline()

        assert result == {
            "read": 4,
            "emitted": 3,
            "deduplicated": 1,
            "grade_a": 1,
            "grade_b": 1,
            "grade_c": 1,
        }

    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self, memory_store, cipher):
        await memory_store.insert_calculate_record(
            make_calculate(cipher, "AB12CD", patient_hash="h1", start="2025-01-01T10:00:00Z")
        )
        await memory_store.insert_update_record(
            make_update(
                cipher,
                "AB12CD",
                "2025-01-01T14:00:00Z",
                update_payload(cerebralOedema={"concern": True, "imaging": None, "treatment": []}),
            )
        )
        await memory_store.insert_calculate_record(
            make_calculate(cipher, "EF34GH", patient_hash="h1", start="2025-01-01T11:30:00Z")
        )

        engine = ReconciliationEngine(memory_store, cipher)
        await engine.reconcile_phase1()
        await engine.reconcile_phase2()

        decrypted = memory_store.decrypted["AB12CD"]
        assert decrypted.audit_table_id is not None
        assert decrypted.follow_up.cerebral_oedema.concern is True

        await StreamliningEngine(memory_store).streamline()

        assert list(memory_store.streamlined) == ["AB12CD"]
        exported = memory_store.streamlined["AB12CD"]
        assert exported.patient_number == 1
        assert exported.data_grade == DataGrade.A
        assert exported.deduplicated_audit_ids == ["EF34GH"]
        assert exported.cerebral_oedema_concern is True
