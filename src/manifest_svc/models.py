"""
Manifest Service Data Models

Pydantic models for untrusted trusted-list documents and for the reports
produced by ingestion and reconciliation cycles.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    """Cycle execution status."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of one cycle step."""

    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutcomeStatus(str, Enum):
    """Outcome of one ingested manifest."""

    INGESTED = "ingested"
    UNCHANGED = "unchanged"
    FAILED = "failed"


# Trusted-list documents (untrusted input)
class ListEntry(BaseModel):
    """One validator entry inside a decoded list blob."""

    model_config = ConfigDict(extra="ignore")

    validation_public_key: str
    manifest: str

    @field_validator("validation_public_key", "manifest")
    @classmethod
    def _validate_not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("value is required")
        return value


class ListBlob(BaseModel):
    """Decoded list payload. Times are seconds since the ledger epoch."""

    model_config = ConfigDict(extra="ignore")

    sequence: int = Field(ge=0)
    expiration: int = Field(ge=0)
    effective: Optional[int] = Field(default=None, ge=0)
    validators: list[ListEntry] = Field(default_factory=list)


class SignedBlob(BaseModel):
    """A base64 blob with its publisher signature, as found in ``blobs_v2``."""

    model_config = ConfigDict(extra="ignore")

    blob: str
    signature: Optional[str] = None
    manifest: Optional[str] = None


class ListDocument(BaseModel):
    """Published trusted-list document, in either the current or legacy form."""

    model_config = ConfigDict(extra="ignore")

    version: Optional[int] = None
    public_key: Optional[str] = None
    manifest: Optional[str] = None
    blob: Optional[str] = None
    signature: Optional[str] = None
    blobs_v2: Optional[list[SignedBlob]] = None

    def signed_blobs(self) -> list[SignedBlob]:
        """Blobs in a uniform shape regardless of document form."""
        if self.blobs_v2:
            return list(self.blobs_v2)
        if self.blob:
            return [SignedBlob(blob=self.blob, signature=self.signature)]
        return []


class TrustedListSnapshot(BaseModel):
    """The active blob of one source, after structural validation."""

    source: str
    sequence: int = 0
    expiration: Optional[datetime] = None
    effective: Optional[datetime] = None
    entries: list[ListEntry] = Field(default_factory=list)
    signing_keys: list[str] = Field(default_factory=list)
    rejected: int = 0


# Reports
class IngestOutcome(BaseModel):
    """Result of ingesting one manifest."""

    source: str
    status: OutcomeStatus
    signing_key: Optional[str] = None
    master_key: Optional[str] = None
    sequence: Optional[int] = None
    signature_verified: bool = False
    domain_verified: Optional[bool] = None
    reason: str = ""


class IngestReport(BaseModel):
    """Aggregated results of one ingestion batch."""

    source: str
    ingested: int = 0
    unchanged: int = 0
    failed: int = 0
    signing_keys: list[str] = Field(default_factory=list)
    outcomes: list[IngestOutcome] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.ingested + self.unchanged

    def add(self, outcome: IngestOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status is OutcomeStatus.FAILED:
            self.failed += 1
            return
        if outcome.status is OutcomeStatus.INGESTED:
            self.ingested += 1
        else:
            self.unchanged += 1
        if outcome.signature_verified and outcome.signing_key:
            self.signing_keys.append(outcome.signing_key)


class FallbackResult(BaseModel):
    """Per-key aggregation of the manual domain fallback."""

    applied: int = 0
    unchanged: int = 0
    failed: int = 0
    failed_keys: list[str] = Field(default_factory=list)


class StepResult(BaseModel):
    """Result of one cycle step."""

    name: str
    status: StepStatus = StepStatus.OK
    processed: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class CycleReport(BaseModel):
    """Result of one reconciliation cycle."""

    run_id: Optional[int] = None
    status: JobStatus = JobStatus.RUNNING
    started_at: datetime
    completed_at: Optional[datetime] = None
    steps: list[StepResult] = Field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return sum(step.processed for step in self.steps)

    @property
    def errors_count(self) -> int:
        return sum(step.failed for step in self.steps) + sum(
            1 for step in self.steps if step.status is StepStatus.FAILED
        )

    def step(self, name: str) -> Optional[StepResult]:
        for step in self.steps:
            if step.name == name:
                return step
        return None
