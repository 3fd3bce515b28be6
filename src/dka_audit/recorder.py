"""Submission-side recording of calculate and update episodes.

The HTTP layer validates requests and hands the clean values here; this
module owns the patient-hash checks, the envelope encryption and the row
inserts.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from .envelope import EnvelopeCipher
from .errors import UpdateRejectedError
from .models import PRODUCTION_EPISODE_TYPE, CalculateRecord, UpdateRecord
from .patients import rehash_patient_hash
from .secrets import MaskedSecret
from .store import AuditRecordStore

logger = logging.getLogger(__name__)

CEREBRAL_OEDEMA_FIELDS = {
    "cerebralOedemaConcern": "concern",
    "cerebralOedemaImaging": "imaging",
    "cerebralOedemaTreatment": "treatment",
}


def build_update_payload(fields: dict[str, Any]) -> dict[str, Any]:
    """Fold the flat cerebral oedema fields into a ``cerebralOedema`` object."""
    payload = {k: v for k, v in fields.items() if k not in CEREBRAL_OEDEMA_FIELDS}
    payload["cerebralOedema"] = {
        name: fields.get(key) for key, name in CEREBRAL_OEDEMA_FIELDS.items()
    }
    return payload


class AuditRecorder:
    """Encrypts submitted episodes and appends them to the audit store."""

    def __init__(self, store: AuditRecordStore, cipher: EnvelopeCipher, salt: MaskedSecret):
        self._store = store
        self._cipher = cipher
        self._salt = salt

    def _rehash(self, patient_hash: str) -> str:
        return rehash_patient_hash(patient_hash, self._salt.get_value())

    async def record_calculation(
        self,
        audit_id: str,
        metadata: dict[str, Any],
        payload: dict[str, Any],
        patient_hash: str | None = None,
    ) -> int:
        """Store a new episode.

        Args:
            audit_id: Externally generated audit ID for the episode.
            metadata: Plaintext routing fields (episode_type, region, centre,
                client_datetime, client_useragent, client_ip, app_version,
                legal_agreement, retrospective_episode).
            payload: Clinical fields to encrypt.
            patient_hash: Client-side hash of NHS number and date of birth,
                or None when the episode is anonymous.

        Returns:
            The new calculate row id.
        """
        record = CalculateRecord(
            audit_id=audit_id,
            encrypted_data=self._cipher.seal(payload),
            episode_type=metadata.get("episode_type", PRODUCTION_EPISODE_TYPE),
            legal_agreement=metadata.get("legal_agreement"),
            region=metadata.get("region"),
            centre=metadata.get("centre"),
            client_datetime=metadata.get("client_datetime"),
            client_useragent=metadata.get("client_useragent"),
            client_ip=metadata.get("client_ip"),
            app_version=metadata.get("app_version"),
            patient_hash=self._rehash(patient_hash) if patient_hash else None,
            retrospective_episode=bool(metadata.get("retrospective_episode", False)),
        )
        row_id = await self._store.insert_calculate_record(record)
        logger.info("Recorded calculate row %s for auditID %s", row_id, audit_id)
        return row_id

    async def record_update(
        self,
        audit_id: str,
        patient_hash: str,
        metadata: dict[str, Any],
        fields: dict[str, Any],
    ) -> int:
        """Append follow-up data to an existing episode.

        The submitter must supply the same patient hash the episode was
        created with.

        Raises:
            UpdateRejectedError: If the episode is unknown, anonymous, or the
                patient hash does not match.
        """
        existing = await self._store.fetch_calculate_record(audit_id)
        if existing is None:
            logger.warning("Failed update attempt (auditID not found) on auditID %s", audit_id)
            raise UpdateRejectedError(
                audit_id,
                UpdateRejectedError.NOT_FOUND,
                f"Audit ID [{audit_id}] not found",
            )

        if not existing.patient_hash:
            logger.warning("Failed update attempt (no patient hash) on auditID %s", audit_id)
            raise UpdateRejectedError(
                audit_id,
                UpdateRejectedError.NO_PATIENT_HASH,
                f"The episode matching audit ID [{audit_id}] was created without an NHS "
                "number; follow-up data is not accepted.",
            )

        if self._rehash(patient_hash) != existing.patient_hash:
            logger.warning("Failed update attempt (hash non-matching) on auditID %s", audit_id)
            raise UpdateRejectedError(
                audit_id,
                UpdateRejectedError.HASH_MISMATCH,
                f"Patient NHS number or date of birth do not match for audit ID {audit_id}",
            )

        record = UpdateRecord(
            audit_id=audit_id,
            encrypted_data=self._cipher.seal(build_update_payload(fields)),
            client_useragent=metadata.get("client_useragent"),
            client_ip=metadata.get("client_ip"),
            app_version=metadata.get("app_version"),
        )
        row_id = await self._store.insert_update_record(record)
        await self._store.mark_retrospective_audit_data(audit_id, datetime.now(UTC))
        logger.info("Recorded update row %s for auditID %s", row_id, audit_id)
        return row_id
