from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .utils import now_iso


class ProcessingMode(str, Enum):
    FULL_SCAN = "FULL_SCAN"
    INCREMENTAL = "INCREMENTAL"
    HIGH_PRIORITY_FIRST = "HIGH_PRIORITY_FIRST"
    COMPLIANCE_AUDIT = "COMPLIANCE_AUDIT"
    DUPLICATE_DETECTION = "DUPLICATE_DETECTION"

    @classmethod
    def parse(cls, value: str | ProcessingMode) -> ProcessingMode:
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper().replace("-", "_")
        try:
            return cls(key)
        except ValueError as err:
            allowed = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown processing mode {value!r} (expected one of: {allowed})") from err


class JobStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ERROR = "Error"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class Direction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


@dataclass(frozen=True)
class DatasetSpec:
    """
    Ordered query/filter definition for one dataset.

    Rows are always ordered by the source's insertion sequence, ascending;
    cursors walk that order backwards themselves. `upper_bound` pins the
    snapshot: rows inserted after the cursor was created sit above it and stay
    invisible. `min_priority` keeps only records whose priority reaches it.
    """

    name: str
    since: str | None = None  # ISO lower bound on created_at
    min_priority: int | None = None
    upper_bound: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DatasetSpec:
        return cls(
            name=str(data["name"]),
            since=data.get("since"),
            min_priority=data.get("min_priority"),
            upper_bound=data.get("upper_bound"),
        )


@dataclass
class Job:
    """
    One data-quality run. Mutated only by the orchestrator during its active
    invocation; immutable once Completed or Error.
    """

    job_id: str
    mode: ProcessingMode
    datasets: list[str]
    totals: dict[str, int]
    batch_size: int
    status: JobStatus = JobStatus.QUEUED
    processed: dict[str, int] = field(default_factory=dict)
    issues_found: int = 0
    duplicates_found: int = 0
    average_quality_score: float = 0.0
    scored_records: int = 0
    execution_count: int = 0
    checkpoint_seq: int = 0
    sequential: bool = False
    evaluators: list[str] = field(default_factory=list)
    error_message: str | None = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def total_records(self) -> int:
        return sum(self.totals.values())

    @property
    def processed_records(self) -> int:
        return sum(self.processed.values())

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["mode"] = self.mode.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            job_id=str(data["job_id"]),
            mode=ProcessingMode.parse(data["mode"]),
            datasets=list(data.get("datasets") or []),
            totals={k: int(v) for k, v in (data.get("totals") or {}).items()},
            batch_size=int(data["batch_size"]),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            processed={k: int(v) for k, v in (data.get("processed") or {}).items()},
            issues_found=int(data.get("issues_found", 0)),
            duplicates_found=int(data.get("duplicates_found", 0)),
            average_quality_score=float(data.get("average_quality_score", 0.0)),
            scored_records=int(data.get("scored_records", 0)),
            execution_count=int(data.get("execution_count", 0)),
            checkpoint_seq=int(data.get("checkpoint_seq", 0)),
            sequential=bool(data.get("sequential", False)),
            evaluators=list(data.get("evaluators") or []),
            error_message=data.get("error_message"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass(frozen=True)
class IssueFinding:
    """What an evaluator reports about one record (before persistence)."""

    issue_type: str
    severity: str
    description: str
    field: str = ""


@dataclass(frozen=True)
class DuplicateFinding:
    """A pair of records judged to be the same entity."""

    record_1_id: str
    record_2_id: str
    match_score: float


@dataclass
class Evaluation:
    """
    Result of evaluating one record.
    - score: 0..100 quality score, or None when the evaluator does not score
    - issues / duplicates: findings for this record
    """

    score: float | None = None
    issues: list[IssueFinding] = field(default_factory=list)
    duplicates: list[DuplicateFinding] = field(default_factory=list)


@dataclass(frozen=True)
class Issue:
    job_id: str
    object_type: str
    record_id: str
    issue_type: str
    severity: str
    description: str
    field: str = ""


@dataclass(frozen=True)
class Duplicate:
    job_id: str
    object_type: str
    record_1_id: str
    record_2_id: str
    match_score: float
