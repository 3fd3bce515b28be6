"""dka-audit: encrypted DKA calculator audit reconciliation and deduplication."""

__version__ = "0.1.0"

from .envelope import DecryptFailure, DecryptResult, Envelope, EnvelopeCipher, KeyMaterial
from .errors import KeyConfigurationError, RecordStoreError, UpdateRejectedError
from .job import JobReport, run_decrypt_job
from .models import DataGrade, DecryptedRecord, StreamlinedRecord
from .patients import PatientNumberAssigner
from .reconcile import ReconciliationEngine, RecordFilter
from .store import AuditRecordStore, PostgresRecordStore
from .streamline import StreamliningEngine

__all__ = [
    "__version__",
    "AuditRecordStore",
    "DataGrade",
    "DecryptFailure",
    "DecryptResult",
    "DecryptedRecord",
    "Envelope",
    "EnvelopeCipher",
    "JobReport",
    "KeyConfigurationError",
    "KeyMaterial",
    "PatientNumberAssigner",
    "PostgresRecordStore",
    "ReconciliationEngine",
    "RecordFilter",
    "RecordStoreError",
    "StreamlinedRecord",
    "StreamliningEngine",
    "UpdateRejectedError",
    "run_decrypt_job",
]
