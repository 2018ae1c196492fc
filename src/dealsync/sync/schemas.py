"""Pydantic schemas for the sync engine.

Defines all structured types that flow between components:
- Enums: WorkItemKind, CheckpointStatus, FileOutcome, InvocationStatus, BudgetPhase
- Work scheduling: WorkItem
- Records: Record, ParsedFile
- Resolution: ContactResolution
- Durable state: ProgressCheckpoint (camelCase on the wire), DeadLetter, Lease
- Results: UploadResult, FileReport, InvocationResult
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Scalar = Union[str, int, float, bool, None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class WorkItemKind(str, Enum):
    """Whether a work item starts a file from scratch or resumes it."""

    NEW = "new"
    RESUMING = "resuming"


class CheckpointStatus(str, Enum):
    """Lifecycle of a persisted progress checkpoint."""

    PROCESSING = "processing"
    COMPLETED = "completed"


class FileOutcome(str, Enum):
    """Terminal state of one work item within one invocation."""

    COMPLETED = "completed"
    PARTIAL = "partial"
    INSUFFICIENT_TIME = "insufficient_time"
    FAILED = "failed"


class InvocationStatus(str, Enum):
    """Overall status returned by one invocation."""

    NO_NEW_WORK = "no_new_work"
    COMPLETED = "completed"
    PARTIAL = "partial"
    INSUFFICIENT_TIME_RETRY = "insufficient_time_retry"
    CONNECTIVITY_ERROR = "connectivity_error"
    PROCESSING_ERROR = "processing_error"
    LEASE_HELD = "lease_held"


class BudgetPhase(str, Enum):
    """Phases of a file's processing that the budget controller distinguishes."""

    RESOLUTION = "resolution"
    UPLOAD = "upload"


# ── Work Items ──────────────────────────────────────────────────────────────


class WorkItem(BaseModel):
    """One unit of schedulable work: a source file and where to start in it."""

    model_config = ConfigDict(frozen=True)

    source_key: str = Field(min_length=1)
    kind: WorkItemKind = WorkItemKind.NEW
    resume_offset: int = Field(default=0, ge=0)
    known_total_records: int | None = Field(default=None, ge=0)


# ── Records ─────────────────────────────────────────────────────────────────


class Record(BaseModel):
    """One deal row to synchronize.

    ``source_index`` is the record's position among the file's valid
    records and is the unit of every resume offset. Resolution never
    rewrites ``contact_key``; it produces a copy with ``resolved_target_id``.
    """

    model_config = ConfigDict(frozen=True)

    source_index: int = Field(ge=0)
    contact_key: str = Field(min_length=1)
    fields: dict[str, Scalar] = Field(default_factory=dict)
    resolved_target_id: str | None = None

    @property
    def routable(self) -> bool:
        return bool(self.resolved_target_id)

    def with_target(self, target_id: str) -> Record:
        return self.model_copy(update={"resolved_target_id": target_id})


class ParsedFile(BaseModel):
    """Output of the CSV adapter for one source file."""

    source_key: str
    records: list[Record] = Field(default_factory=list)
    rejected: int = 0
    total_rows: int = 0


class ContactResolution(BaseModel):
    """Per-invocation contact key -> CRM id mapping. Never persisted."""

    resolved: dict[str, str] = Field(default_factory=dict)
    attempted: set[str] = Field(default_factory=set)
    requested: int = 0

    @property
    def complete(self) -> bool:
        return len(self.attempted) >= self.requested

    def target_for(self, contact_key: str) -> str | None:
        return self.resolved.get(contact_key)


# ── Durable State ───────────────────────────────────────────────────────────


class ProgressCheckpoint(BaseModel):
    """Durable per-file progress, serialized with camelCase field names.

    Invariants: processed_records <= total_records; completed implies
    processed == total; the outcome counters partition processed_records.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_key: str
    total_records: int = Field(ge=0)
    processed_records: int = Field(default=0, ge=0)
    last_completed_chunk: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=1, ge=1)
    chunk_size: int = Field(default=1, ge=1)
    status: CheckpointStatus = CheckpointStatus.PROCESSING
    last_updated: datetime = Field(default_factory=_utcnow)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    unroutable: int = Field(default=0, ge=0)
    rejected: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> ProgressCheckpoint:
        if self.processed_records > self.total_records:
            msg = (
                f"processedRecords ({self.processed_records}) exceeds "
                f"totalRecords ({self.total_records})"
            )
            raise ValueError(msg)
        if (
            self.status == CheckpointStatus.COMPLETED
            and self.processed_records != self.total_records
        ):
            raise ValueError("completed checkpoint must have processedRecords == totalRecords")
        return self

    def to_work_item(self) -> WorkItem:
        return WorkItem(
            source_key=self.source_key,
            kind=WorkItemKind.RESUMING,
            resume_offset=self.processed_records,
            known_total_records=self.total_records,
        )


class DeadLetter(BaseModel):
    """A failed upload batch, kept for operator review and replay."""

    source_key: str
    first_index: int
    last_index: int
    size: int
    created: int = 0
    contact_keys: list[str] = Field(default_factory=list)
    error: str
    recorded_at: datetime = Field(default_factory=_utcnow)


class Lease(BaseModel):
    """Best-effort invocation lease stored in the state bucket."""

    owner: str
    acquired_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    def expired(self, now: datetime | None = None) -> bool:
        return (now or _utcnow()) >= self.expires_at


# ── Results ─────────────────────────────────────────────────────────────────


class UploadResult(BaseModel):
    """Accounting for one call to BatchUploader.upload()."""

    succeeded: int = 0
    failed: int = 0
    attempted: int = 0
    batches_sent: int = 0
    stopped: bool = False
    failures: list[DeadLetter] = Field(default_factory=list)


class FileReport(BaseModel):
    """What happened to one file in one invocation."""

    source_key: str
    outcome: FileOutcome
    total_records: int = 0
    processed_records: int = 0
    chunks_done: int = 0
    chunks_total: int = 0
    succeeded: int = 0
    failed: int = 0
    unroutable: int = 0
    rejected: int = 0
    elapsed_ms: int = 0
    message: str | None = None


class InvocationResult(BaseModel):
    """Status summary returned by SyncOrchestrator.run()."""

    status: InvocationStatus
    source_key: str | None = None
    elapsed_ms: int = 0
    chunks_done: int = 0
    chunks_total: int = 0
    message: str | None = None
    files: list[FileReport] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(f.succeeded for f in self.files)

    @property
    def failed(self) -> int:
        return sum(f.failed for f in self.files)

    @property
    def unroutable(self) -> int:
        return sum(f.unroutable for f in self.files)
