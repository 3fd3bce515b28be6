"""Deduplication and grading of decrypted episodes for research export."""

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import TypedDict

from .models import DataGrade, DecryptedRecord, StreamlinedRecord
from .store import AuditRecordStore

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class StreamlineResult(TypedDict):
    """Counts from one streamlining pass."""

    read: int
    emitted: int
    deduplicated: int
    grade_a: int
    grade_b: int
    grade_c: int


def ranking_key(record: DecryptedRecord) -> tuple[bool, datetime]:
    """Sort key for choosing which duplicate survives.

    Records carrying follow-up data outrank those without; among equals the
    most recently received wins. Sort descending on this key.
    """
    server_datetime = record.server_datetime
    if server_datetime is not None and server_datetime.tzinfo is None:
        server_datetime = server_datetime.replace(tzinfo=UTC)
    return (record.has_audit_data, server_datetime or _EPOCH)


def is_within_window(records: list[DecryptedRecord], window: timedelta = DEDUP_WINDOW) -> bool:
    """True if the episode starts in ``records`` span no more than ``window``.

    Groups with fewer than two readable start times cannot be shown to be
    distinct presentations and count as one episode.
    """
    starts = [record.start for record in records if record.start is not None]
    if len(starts) < 2:
        return True
    return max(starts) - min(starts) <= window


def grade_for(record: DecryptedRecord) -> DataGrade:
    if record.patient_number is None:
        return DataGrade.C
    return DataGrade.A if record.has_audit_data else DataGrade.B


class StreamliningEngine:
    """Builds the deduplicated export table from the decrypt table."""

    def __init__(self, store: AuditRecordStore, window: timedelta = DEDUP_WINDOW):
        self._store = store
        self._window = window

    def build(self, records: list[DecryptedRecord]) -> list[StreamlinedRecord]:
        """Group, deduplicate and grade records without touching the store.

        Output order follows first appearance of each patient group in
        ``records``; ungroupable records keep their own position.
        """
        groups: dict[int, list[DecryptedRecord]] = defaultdict(list)
        order: list[int | DecryptedRecord] = []
        for record in records:
            if record.patient_number is None:
                order.append(record)
                continue
            if record.patient_number not in groups:
                order.append(record.patient_number)
            groups[record.patient_number].append(record)

        emitted: list[StreamlinedRecord] = []
        for entry in order:
            if isinstance(entry, DecryptedRecord):
                emitted.append(StreamlinedRecord.from_decrypted(entry, DataGrade.C))
            else:
                emitted.extend(self._emit_group(groups[entry]))
        return emitted

    def _emit_group(self, group: list[DecryptedRecord]) -> list[StreamlinedRecord]:
        if len(group) == 1 or not is_within_window(group, self._window):
            return [StreamlinedRecord.from_decrypted(record, grade_for(record)) for record in group]

        ranked = sorted(group, key=ranking_key, reverse=True)
        kept, duplicates = ranked[0], ranked[1:]
        duplicate_ids = [record.audit_id for record in duplicates]
        logger.debug(
            "Patient %d: keeping auditID %s over %s",
            kept.patient_number,
            kept.audit_id,
            ", ".join(duplicate_ids),
        )
        return [StreamlinedRecord.from_decrypted(kept, grade_for(kept), duplicate_ids)]

    async def streamline(self, include_tests: bool = False) -> StreamlineResult:
        """Rebuild the export table from the current decrypt table."""
        records = await self._store.fetch_decrypted_records(include_tests)
        logger.info(
            "Streamlining %d decrypted records (include_tests=%s)", len(records), include_tests
        )

        emitted = self.build(records)

        await self._store.clear_streamlined_records()
        for record in emitted:
            await self._store.append_streamlined_record(record)

        result = StreamlineResult(
            read=len(records),
            emitted=len(emitted),
            deduplicated=sum(len(record.deduplicated_audit_ids or []) for record in emitted),
            grade_a=sum(1 for record in emitted if record.data_grade == DataGrade.A),
            grade_b=sum(1 for record in emitted if record.data_grade == DataGrade.B),
            grade_c=sum(1 for record in emitted if record.data_grade == DataGrade.C),
        )
        logger.info(
            "Streamlining complete: %d emitted, %d deduplicated (A=%d, B=%d, C=%d)",
            result["emitted"],
            result["deduplicated"],
            result["grade_a"],
            result["grade_b"],
            result["grade_c"],
        )
        return result
