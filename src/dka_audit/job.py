"""The decrypt batch job: reconcile, then streamline."""

import logging
import time
from dataclasses import dataclass, field

from .envelope import EnvelopeCipher
from .patients import PatientNumberAssigner
from .reconcile import DEFAULT_WORKERS, PhaseResult, ReconciliationEngine, RecordFilter
from .store import AuditRecordStore
from .streamline import StreamlineResult, StreamliningEngine

logger = logging.getLogger(__name__)


@dataclass
class JobReport:
    """Outcome of one decrypt job run. Holds counts only, never plaintext."""

    audit_id: str | None
    centre: str | None
    include_tests: bool
    phase1: PhaseResult
    phase2: PhaseResult
    streamline: StreamlineResult
    patients: int
    elapsed_seconds: float = 0.0
    tables: dict[str, str] = field(default_factory=dict)

    @property
    def skipped(self) -> int:
        return self.phase1["skipped"] + self.phase2["skipped"]

    def to_dict(self) -> dict:
        return {
            "filter": {
                "audit_id": self.audit_id,
                "centre": self.centre,
                "include_tests": self.include_tests,
            },
            "decrypted": {
                "processed": self.phase1["processed"],
                "decrypted": self.phase1["succeeded"],
                "skipped": self.phase1["skipped"],
                "patients": self.patients,
            },
            "merged": {
                "processed": self.phase2["processed"],
                "merged": self.phase2["succeeded"],
                "skipped": self.phase2["skipped"],
                "orphaned": self.phase2["orphaned"],
            },
            "streamlined": dict(self.streamline),
            "tables": self.tables,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


async def run_decrypt_job(
    store: AuditRecordStore,
    cipher: EnvelopeCipher,
    audit_id: str | None = None,
    centre: str | None = None,
    include_tests: bool = False,
    workers: int = DEFAULT_WORKERS,
) -> JobReport:
    """Run phase 1, phase 2 and streamlining in order.

    Rerunning over unchanged input leaves the decrypt and streamlined tables
    as they were. Store failures propagate; per-record decrypt failures are
    logged and counted.
    """
    start = time.perf_counter()
    record_filter = RecordFilter(audit_id=audit_id, centre=centre)

    engine = ReconciliationEngine(store, cipher, PatientNumberAssigner(), workers=workers)
    phase1 = await engine.reconcile_phase1(record_filter)
    phase2 = await engine.reconcile_phase2(record_filter)

    streamline = await StreamliningEngine(store).streamline(include_tests)

    report = JobReport(
        audit_id=audit_id,
        centre=centre,
        include_tests=include_tests,
        phase1=phase1,
        phase2=phase2,
        streamline=streamline,
        patients=len(engine.assigner),
        elapsed_seconds=time.perf_counter() - start,
    )
    logger.info(
        "Decrypt job finished in %.2fs: %d decrypted, %d merged, %d skipped, %d exported",
        report.elapsed_seconds,
        phase1["succeeded"],
        phase2["succeeded"],
        report.skipped,
        streamline["emitted"],
    )
    return report
