"""Exception types for dka-audit."""


class KeyConfigurationError(Exception):
    """Raised when RSA key material is missing or invalid.

    Fatal: the batch job aborts at startup rather than per record.
    """


class EnvelopeFormatError(ValueError):
    """Raised when stored envelope text cannot be parsed into an Envelope."""


class RecordStoreError(Exception):
    """Raised when the audit record store cannot be read or written."""


class UpdateRejectedError(Exception):
    """Raised when a follow-up submission is refused for an audit ID."""

    NOT_FOUND = "not_found"
    NO_PATIENT_HASH = "no_patient_hash"
    HASH_MISMATCH = "hash_mismatch"

    def __init__(self, audit_id: str, reason: str, message: str):
        super().__init__(message)
        self.audit_id = audit_id
        self.reason = reason
