"""Pydantic models for everything the engine hands to callers.

Internal state lives in dataclasses owned by the device table and the
scorer; these models are the immutable, serialisable snapshots of it used
in reports, progress events and registry calls.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from nestscout.devices.guard import AnomalyFlag
from nestscout.devices.records import DiscoveredDevice, SourceFlag
from nestscout.devices.scoring import ConfidenceAssessment
from nestscout.devices.table import MergeSuggestion


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PhaseName(str, Enum):
    CACHE = "cache"
    TARGETED = "targeted"
    COMMON = "common"
    FULL = "full"
    ANNOUNCE = "announce"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"


_SOURCE_ORDER = (
    SourceFlag.CACHE,
    SourceFlag.PROBE,
    SourceFlag.ANNOUNCEMENT,
    SourceFlag.REACHABILITY,
)


# ---------------------------------------------------------------------------
# Device snapshots
# ---------------------------------------------------------------------------

class OpenPortSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int
    service: str | None = None


class MetadataSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol_family: str | None = None
    status_flags: int | None = None
    paired: bool | None = None
    category: int | None = None
    category_name: str = "Unknown"
    setup_hash_present: bool = False
    protocol_version: str | None = None
    model: str | None = None
    device_id: str | None = None
    service_types: list[str] = Field(default_factory=list)
    extra: dict[str, str] = Field(default_factory=dict)


class DeviceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: str
    network_address: str
    hardware_address: str | None = None
    display_name: str = ""
    manufacturer: str | None = None
    first_seen: datetime
    last_seen: datetime
    open_ports: list[OpenPortSnapshot] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    reachability: str | None = None
    previous_addresses: list[str] = Field(default_factory=list)
    metadata: MetadataSnapshot = Field(default_factory=MetadataSnapshot)

    @classmethod
    def from_record(cls, record: DiscoveredDevice) -> DeviceSnapshot:
        meta = record.service_metadata
        paired = None if meta.status_flags is None else meta.paired
        return cls(
            identity=record.identity,
            network_address=record.network_address,
            hardware_address=record.hardware_address,
            display_name=record.display_name,
            manufacturer=record.manufacturer,
            first_seen=record.first_seen,
            last_seen=record.last_seen,
            open_ports=[
                OpenPortSnapshot(port=p.port, service=p.service)
                for p in sorted(record.open_ports)
            ],
            sources=[
                flag.name.lower() for flag in _SOURCE_ORDER if flag in record.source_flags
            ],
            reachability=record.reachability.value if record.reachability else None,
            previous_addresses=sorted(record.previous_addresses),
            metadata=MetadataSnapshot(
                protocol_family=meta.protocol_family,
                status_flags=meta.status_flags,
                paired=paired,
                category=meta.category,
                category_name=meta.category_name,
                setup_hash_present=meta.setup_hash_present,
                protocol_version=meta.protocol_version,
                model=meta.model,
                device_id=meta.device_id,
                service_types=sorted(meta.service_types),
                extra=dict(sorted(meta.extra.items())),
            ),
        )


class ScoreReasonSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    weight: int
    description: str


class AssessmentSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    score: int
    classification: str
    reasons: list[ScoreReasonSnapshot] = Field(default_factory=list)

    @classmethod
    def from_assessment(cls, assessment: ConfidenceAssessment) -> AssessmentSnapshot:
        return cls(
            score=assessment.score,
            classification=assessment.classification.value,
            reasons=[
                ScoreReasonSnapshot(weight=r.weight, description=r.description)
                for r in assessment.reasons
            ],
        )


class ScoredDevice(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: DeviceSnapshot
    assessment: AssessmentSnapshot


# ---------------------------------------------------------------------------
# Advisories
# ---------------------------------------------------------------------------

class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    subject: str
    description: str
    observed: list[str] = Field(default_factory=list)

    @classmethod
    def from_flag(cls, flag: AnomalyFlag) -> Anomaly:
        return cls(
            kind=flag.kind,
            subject=flag.subject,
            description=flag.description,
            observed=list(flag.observed),
        )


class MergeAdvisory(BaseModel):
    """Two identities that may be the same physical device."""

    model_config = ConfigDict(frozen=True)

    identity_a: str
    identity_b: str
    name_a: str
    name_b: str
    similarity: float

    @classmethod
    def from_suggestion(cls, suggestion: MergeSuggestion) -> MergeAdvisory:
        return cls(
            identity_a=suggestion.identity_a,
            identity_b=suggestion.identity_b,
            name_a=suggestion.name_a,
            name_b=suggestion.name_b,
            similarity=suggestion.similarity,
        )


# ---------------------------------------------------------------------------
# Progress and reports
# ---------------------------------------------------------------------------

class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: PhaseName
    phase_index: int
    phase_count: int
    fraction_complete: float = Field(ge=0.0, le=1.0)
    device_count: int


class PhaseReport(BaseModel):
    phase: PhaseName
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    targets: int = 0
    devices_after: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class DiscoveryReport(BaseModel):
    started_at: datetime
    finished_at: datetime
    devices: list[ScoredDevice] = Field(default_factory=list)
    anomalies: list[Anomaly] = Field(default_factory=list)
    merge_suggestions: list[MergeAdvisory] = Field(default_factory=list)
    phases: list[PhaseReport] = Field(default_factory=list)
    cancelled: bool = False
    rejected_updates: int = 0
    evicted: list[str] = Field(default_factory=list)
    listen_ticks: int = 0
    listen_exited_early: bool = False

    def phase(self, name: PhaseName) -> PhaseReport | None:
        return next((p for p in self.phases if p.phase == name), None)
