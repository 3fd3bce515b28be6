"""Reconciliation of encrypted calculate and update streams into the decrypt table."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypedDict, TypeVar

from .envelope import DecryptResult, EnvelopeCipher
from .models import DecryptedRecord, FollowUp, UpdateRecord
from .patients import PatientNumberAssigner
from .store import AuditRecordStore

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class RecordFilter:
    """Optional exact-match restriction of a run. None matches everything."""

    audit_id: str | None = None
    centre: str | None = None


class PhaseResult(TypedDict):
    """Counts from one reconciliation phase."""

    processed: int
    succeeded: int
    skipped: int
    orphaned: int


class ReconciliationEngine:
    """Decrypts calculate rows, then merges the latest update row per audit ID.

    Rows are decrypted and written concurrently, bounded by ``workers``.
    Patient numbers come from the hashes of every calculate row in store
    order, so a filtered run numbers its rows exactly as a full run would.
    """

    def __init__(
        self,
        store: AuditRecordStore,
        cipher: EnvelopeCipher,
        assigner: PatientNumberAssigner | None = None,
        workers: int = DEFAULT_WORKERS,
    ):
        if workers <= 0:
            raise ValueError(f"workers must be positive, got {workers}")
        self._store = store
        self._cipher = cipher
        self._assigner = assigner or PatientNumberAssigner()
        self._semaphore = asyncio.Semaphore(workers)

    @property
    def assigner(self) -> PatientNumberAssigner:
        return self._assigner

    async def reconcile_phase1(self, record_filter: RecordFilter | None = None) -> PhaseResult:
        """Decrypt calculate rows into the decrypt table."""
        record_filter = record_filter or RecordFilter()
        await self._seed_patient_numbers()
        rows = await self._store.fetch_calculate_records(
            record_filter.audit_id, record_filter.centre
        )
        logger.info("Phase 1: %d calculate rows to decrypt", len(rows))

        results = await self._decrypt_all(row.encrypted_data for row in rows)

        decrypted: list[DecryptedRecord] = []
        skipped = 0
        for row, result in zip(rows, results, strict=True):
            if not result.ok:
                logger.warning(
                    "Skipping calculate row %s (auditID %s): %s: %s",
                    row.id,
                    row.audit_id,
                    result.failure.value,
                    result.detail,
                )
                skipped += 1
                continue

            patient_number = await self._assigner.assign(row.patient_hash)
            decrypted.append(DecryptedRecord.from_calculate(row, result.payload, patient_number))

        await self._run_bounded(self._store.upsert_decrypted_record, decrypted)

        logger.info(
            "Phase 1 complete: %d decrypted, %d skipped, %d distinct patients",
            len(decrypted),
            skipped,
            len(self._assigner),
        )
        return PhaseResult(
            processed=len(rows), succeeded=len(decrypted), skipped=skipped, orphaned=0
        )

    async def reconcile_phase2(self, record_filter: RecordFilter | None = None) -> PhaseResult:
        """Merge the latest update row for each audit ID into its decrypted row."""
        record_filter = record_filter or RecordFilter()
        updates = await self._store.fetch_latest_updates(
            record_filter.audit_id, record_filter.centre
        )
        logger.info("Phase 2: %d audit IDs with follow-up data", len(updates))

        results = await self._decrypt_all(update.encrypted_data for update in updates)

        pending: list[tuple[UpdateRecord, dict]] = []
        skipped = 0
        for update, result in zip(updates, results, strict=True):
            if not result.ok:
                logger.warning(
                    "Skipping update row %s (auditID %s): %s: %s",
                    update.id,
                    update.audit_id,
                    result.failure.value,
                    result.detail,
                )
                skipped += 1
                continue
            pending.append((update, result.payload))

        outcomes = await self._run_bounded(self._merge_update, pending)
        merged = sum(1 for outcome in outcomes if outcome)
        orphaned = len(outcomes) - merged

        logger.info(
            "Phase 2 complete: %d merged, %d skipped, %d without a decrypted row",
            merged,
            skipped,
            orphaned,
        )
        return PhaseResult(
            processed=len(updates), succeeded=merged, skipped=skipped, orphaned=orphaned
        )

    async def _seed_patient_numbers(self) -> None:
        # Unfiltered; rows already in the decrypt table keep their numbers
        for patient_hash in await self._store.fetch_patient_hashes():
            await self._assigner.assign(patient_hash)
        logger.debug("Seeded %d patient numbers", len(self._assigner))

    async def _merge_update(self, item: tuple[UpdateRecord, dict]) -> bool:
        update, payload = item
        existing = await self._store.fetch_decrypted_record(update.audit_id)
        if existing is None:
            logger.warning(
                "Update row %s has no decrypted calculate row for auditID %s",
                update.id,
                update.audit_id,
            )
            return False

        follow_up = FollowUp.from_update(update, payload, existing.protocol_start_datetime)
        await self._store.upsert_decrypted_record(existing.with_follow_up(follow_up))
        logger.debug("Merged update row %s into auditID %s", update.id, update.audit_id)
        return True

    async def _decrypt_all(self, texts: Iterable[str | None]) -> list[DecryptResult]:
        return await self._run_bounded(self._decrypt_one, list(texts))

    async def _decrypt_one(self, text: str | None) -> DecryptResult:
        return await asyncio.to_thread(self._cipher.open_stored, text)

    async def _run_bounded(self, func: Callable[[T], Awaitable[R]], items: list[T]) -> list[R]:
        async def run(item: T) -> R:
            async with self._semaphore:
                return await func(item)

        return await asyncio.gather(*(run(item) for item in items))
