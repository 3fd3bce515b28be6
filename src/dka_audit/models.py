"""Data models for calculate, update, decrypted and streamlined audit rows."""

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")

PRODUCTION_EPISODE_TYPE = "real"


class DataGrade(Enum):
    """Provenance grade attached to exported rows."""

    A = "A"  # corroborated by follow-up data
    B = "B"  # initial data only
    C = "C"  # no patient key, cannot be deduplicated


def prefer_update(update_value: T | None, calculate_value: T | None) -> T | None:
    """Return the follow-up value when present, otherwise the initial one."""
    return update_value if update_value is not None else calculate_value


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp, returning None when it cannot be read.

    Naive values are taken to be UTC so stamps from different sources compare.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class CalculateRecord:
    """Initial episode row: plaintext routing metadata plus an encrypted payload."""

    audit_id: str
    encrypted_data: str | None
    id: int | None = None
    episode_type: str = PRODUCTION_EPISODE_TYPE
    legal_agreement: bool | None = None
    region: str | None = None
    centre: str | None = None
    client_datetime: datetime | None = None
    server_datetime: datetime | None = None
    client_useragent: str | None = None
    client_ip: str | None = None
    app_version: str | None = None
    patient_hash: str | None = None
    retrospective_episode: bool = False
    retrospective_audit_data: datetime | None = None
    retrospective_patient_hash: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "CalculateRecord":
        return cls(
            id=row["id"],
            audit_id=row["audit_id"],
            encrypted_data=row["encrypted_data"],
            episode_type=row["episode_type"],
            legal_agreement=row.get("legal_agreement"),
            region=row.get("region"),
            centre=row.get("centre"),
            client_datetime=row.get("client_datetime"),
            server_datetime=row.get("server_datetime"),
            client_useragent=row.get("client_useragent"),
            client_ip=row.get("client_ip"),
            app_version=row.get("app_version"),
            patient_hash=row.get("patient_hash"),
            retrospective_episode=bool(row.get("retrospective_episode")),
            retrospective_audit_data=row.get("retrospective_audit_data"),
            retrospective_patient_hash=row.get("retrospective_patient_hash"),
        )


@dataclass
class UpdateRecord:
    """Follow-up row for an episode. Append-only."""

    audit_id: str
    encrypted_data: str | None
    id: int | None = None
    server_datetime: datetime | None = None
    client_useragent: str | None = None
    client_ip: str | None = None
    app_version: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "UpdateRecord":
        return cls(
            id=row["id"],
            audit_id=row["audit_id"],
            encrypted_data=row["encrypted_data"],
            server_datetime=row.get("server_datetime"),
            client_useragent=row.get("client_useragent"),
            client_ip=row.get("client_ip"),
            app_version=row.get("app_version"),
        )


@dataclass
class CerebralOedemaAssessment:
    concern: bool | None = None
    imaging: bool | None = None
    treatment: list[str] | None = None

    @classmethod
    def from_payload(cls, value: Any) -> "CerebralOedemaAssessment":
        if not isinstance(value, dict):
            return cls()
        return cls(
            concern=value.get("concern"),
            imaging=value.get("imaging"),
            treatment=value.get("treatment"),
        )


@dataclass
class FollowUp:
    """Fields merged in from the latest update row for an episode."""

    audit_table_id: int
    protocol_end_datetime: str | None = None
    pre_existing_diabetes: bool | None = None
    preventable_factors: list[str] | None = None
    cerebral_oedema: CerebralOedemaAssessment = field(default_factory=CerebralOedemaAssessment)
    ethnic_group: str | None = None
    ethnic_subgroup: str | None = None
    imd_decile: int | None = None
    server_datetime: datetime | None = None
    client_useragent: str | None = None
    client_ip: str | None = None
    app_version: str | None = None

    @classmethod
    def from_update(
        cls,
        update: UpdateRecord,
        payload: dict[str, Any],
        fallback_start: str | None = None,
    ) -> "FollowUp":
        """Build the follow-up block from a decrypted update payload.

        A missing end time means the clinician confirmed nothing changed,
        so the episode's start time stands in for it.
        """
        end = (
            payload.get("protocolEndDatetime")
            or payload.get("protocolStartDatetime")
            or fallback_start
        )
        return cls(
            audit_table_id=update.id,
            protocol_end_datetime=end,
            pre_existing_diabetes=payload.get("preExistingDiabetes"),
            preventable_factors=payload.get("preventableFactors") or None,
            cerebral_oedema=CerebralOedemaAssessment.from_payload(payload.get("cerebralOedema")),
            ethnic_group=payload.get("ethnicGroup"),
            ethnic_subgroup=payload.get("ethnicSubgroup"),
            imd_decile=payload.get("imdDecile"),
            server_datetime=update.server_datetime,
            client_useragent=update.client_useragent,
            client_ip=update.client_ip,
            app_version=update.app_version,
        )


@dataclass
class DecryptedRecord:
    """Plaintext working row: one per audit ID."""

    audit_id: str
    id: int | None = None
    episode_type: str = PRODUCTION_EPISODE_TYPE
    patient_number: int | None = None
    legal_agreement: bool | None = None
    region: str | None = None
    centre: str | None = None
    client_datetime: datetime | None = None
    server_datetime: datetime | None = None
    client_useragent: str | None = None
    client_ip: str | None = None
    app_version: str | None = None
    retrospective_episode: bool = False
    retrospective_patient_hash: datetime | None = None

    protocol_start_datetime: str | None = None
    patient_age: float | None = None
    patient_sex: str | None = None
    ph: float | None = None
    bicarbonate: float | None = None
    glucose: float | None = None
    ketones: float | None = None
    calculations: dict | None = None
    weight_limit_override: bool | None = None
    use_2sd: bool | None = None
    shock_present: bool | None = None
    insulin_rate: float | None = None
    pre_existing_diabetes: bool | None = None
    insulin_delivery_method: str | None = None
    ethnic_group: str | None = None
    ethnic_subgroup: str | None = None
    preventable_factors: list[str] | None = None
    imd_decile: int | None = None

    follow_up: FollowUp | None = None

    @property
    def audit_table_id(self) -> int | None:
        """Id of the update row merged in, or None while awaiting follow-up."""
        return self.follow_up.audit_table_id if self.follow_up else None

    @property
    def has_audit_data(self) -> bool:
        return self.follow_up is not None

    @property
    def is_test_episode(self) -> bool:
        return self.episode_type != PRODUCTION_EPISODE_TYPE

    @classmethod
    def from_calculate(
        cls,
        record: CalculateRecord,
        payload: dict[str, Any],
        patient_number: int | None,
    ) -> "DecryptedRecord":
        return cls(
            audit_id=record.audit_id,
            id=record.id,
            episode_type=record.episode_type,
            patient_number=patient_number,
            legal_agreement=record.legal_agreement,
            region=record.region,
            centre=record.centre,
            client_datetime=record.client_datetime,
            server_datetime=record.server_datetime,
            client_useragent=record.client_useragent,
            client_ip=record.client_ip,
            app_version=record.app_version,
            retrospective_episode=record.retrospective_episode,
            retrospective_patient_hash=record.retrospective_patient_hash,
            protocol_start_datetime=payload.get("protocolStartDatetime"),
            patient_age=_to_float(payload.get("patientAge")),
            patient_sex=payload.get("patientSex"),
            ph=_to_float(payload.get("pH")),
            bicarbonate=_to_float(payload.get("bicarbonate")),
            glucose=_to_float(payload.get("glucose")),
            ketones=_to_float(payload.get("ketones")),
            calculations=payload.get("calculations"),
            weight_limit_override=payload.get("weightLimitOverride"),
            use_2sd=payload.get("use2SD"),
            shock_present=payload.get("shockPresent"),
            insulin_rate=_to_float(payload.get("insulinRate")),
            pre_existing_diabetes=payload.get("preExistingDiabetes"),
            insulin_delivery_method=payload.get("insulinDeliveryMethod"),
            ethnic_group=payload.get("ethnicGroup"),
            ethnic_subgroup=payload.get("ethnicSubgroup"),
            preventable_factors=payload.get("preventableFactors") or None,
            imd_decile=payload.get("imdDecile"),
        )

    def with_follow_up(self, follow_up: FollowUp) -> "DecryptedRecord":
        return replace(self, follow_up=follow_up)

    @property
    def start(self) -> datetime | None:
        return parse_timestamp(self.protocol_start_datetime)


@dataclass
class StreamlinedRecord:
    """Deduplicated research export row."""

    data_grade: DataGrade
    audit_id: str
    patient_number: int | None = None
    protocol_start_datetime: str | None = None
    protocol_end_datetime: str | None = None
    patient_age: float | None = None
    patient_sex: str | None = None
    ph: float | None = None
    bicarbonate: float | None = None
    glucose: float | None = None
    ketones: float | None = None
    shock_present: bool | None = None
    insulin_rate: float | None = None
    pre_existing_diabetes: bool | None = None
    insulin_delivery_method: str | None = None
    ethnic_group: str | None = None
    ethnic_subgroup: str | None = None
    preventable_factors: list[str] | None = None
    imd_decile: int | None = None
    cerebral_oedema_concern: bool | None = None
    cerebral_oedema_imaging: bool | None = None
    cerebral_oedema_treatment: list[str] | None = None
    region: str | None = None
    centre: str | None = None
    calculations: dict | None = None
    deduplicated_audit_ids: list[str] | None = None

    @classmethod
    def from_decrypted(
        cls,
        record: DecryptedRecord,
        data_grade: DataGrade,
        deduplicated_audit_ids: list[str] | None = None,
    ) -> "StreamlinedRecord":
        """Flatten a decrypted row, letting follow-up values win where present."""
        follow_up = record.follow_up
        if follow_up is None:
            return cls._from_calculate_only(record, data_grade, deduplicated_audit_ids)

        oedema = follow_up.cerebral_oedema
        return cls(
            data_grade=data_grade,
            audit_id=record.audit_id,
            patient_number=record.patient_number,
            protocol_start_datetime=record.protocol_start_datetime,
            protocol_end_datetime=follow_up.protocol_end_datetime,
            patient_age=record.patient_age,
            patient_sex=record.patient_sex,
            ph=record.ph,
            bicarbonate=record.bicarbonate,
            glucose=record.glucose,
            ketones=record.ketones,
            shock_present=record.shock_present,
            insulin_rate=record.insulin_rate,
            pre_existing_diabetes=prefer_update(
                follow_up.pre_existing_diabetes, record.pre_existing_diabetes
            ),
            insulin_delivery_method=record.insulin_delivery_method,
            ethnic_group=prefer_update(follow_up.ethnic_group, record.ethnic_group),
            ethnic_subgroup=prefer_update(follow_up.ethnic_subgroup, record.ethnic_subgroup),
            preventable_factors=prefer_update(
                follow_up.preventable_factors, record.preventable_factors
            ),
            imd_decile=prefer_update(follow_up.imd_decile, record.imd_decile),
            cerebral_oedema_concern=oedema.concern,
            cerebral_oedema_imaging=oedema.imaging,
            cerebral_oedema_treatment=oedema.treatment,
            region=record.region,
            centre=record.centre,
            calculations=record.calculations,
            deduplicated_audit_ids=deduplicated_audit_ids,
        )

    @classmethod
    def _from_calculate_only(
        cls,
        record: DecryptedRecord,
        data_grade: DataGrade,
        deduplicated_audit_ids: list[str] | None,
    ) -> "StreamlinedRecord":
        return cls(
            data_grade=data_grade,
            audit_id=record.audit_id,
            patient_number=record.patient_number,
            protocol_start_datetime=record.protocol_start_datetime,
            patient_age=record.patient_age,
            patient_sex=record.patient_sex,
            ph=record.ph,
            bicarbonate=record.bicarbonate,
            glucose=record.glucose,
            ketones=record.ketones,
            shock_present=record.shock_present,
            insulin_rate=record.insulin_rate,
            pre_existing_diabetes=record.pre_existing_diabetes,
            insulin_delivery_method=record.insulin_delivery_method,
            ethnic_group=record.ethnic_group,
            ethnic_subgroup=record.ethnic_subgroup,
            preventable_factors=record.preventable_factors,
            imd_decile=record.imd_decile,
            region=record.region,
            centre=record.centre,
            calculations=record.calculations,
            deduplicated_audit_ids=deduplicated_audit_ids,
        )

    def to_export_row(self) -> dict[str, Any]:
        """Column mapping used by the research export."""
        return {
            "dataGrade": self.data_grade.value,
            "patientNumber": self.patient_number,
            "auditID": self.audit_id,
            "protocolStartDatetime": self.protocol_start_datetime,
            "protocolEndDatetime": self.protocol_end_datetime,
            "patientAge": self.patient_age,
            "patientSex": self.patient_sex,
            "pH": self.ph,
            "bicarbonate": self.bicarbonate,
            "glucose": self.glucose,
            "ketones": self.ketones,
            "shockPresent": self.shock_present,
            "insulinRate": self.insulin_rate,
            "preExistingDiabetes": self.pre_existing_diabetes,
            "insulinDeliveryMethod": self.insulin_delivery_method,
            "ethnicGroup": self.ethnic_group,
            "ethnicSubgroup": self.ethnic_subgroup,
            "preventableFactors": self.preventable_factors,
            "imdDecile": self.imd_decile,
            "cerebralOedemaConcern": self.cerebral_oedema_concern,
            "cerebralOedemaImaging": self.cerebral_oedema_imaging,
            "cerebralOedemaTreatment": self.cerebral_oedema_treatment,
            "region": self.region,
            "centre": self.centre,
            "calculations": self.calculations,
            "deduplicatedAuditIDs": self.deduplicated_audit_ids,
        }


def _to_float(value: Any) -> float | None:
    # patientAge arrives as a fixed-point string from the submission API
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_json_or_none(value: Any) -> str | None:
    """Serialise list/dict columns for jsonb parameters."""
    if value is None:
        return None
    return json.dumps(value)
