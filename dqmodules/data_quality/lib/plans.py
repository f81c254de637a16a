from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .config import Settings
from .models import DatasetSpec, Direction, ProcessingMode

REQUIRED_FIELDS = "required_fields"
EXACT_MATCH = "exact_match"

_DEFAULT_EVALUATORS: dict[ProcessingMode, list[str]] = {
    ProcessingMode.FULL_SCAN: [REQUIRED_FIELDS, EXACT_MATCH],
    ProcessingMode.INCREMENTAL: [REQUIRED_FIELDS, EXACT_MATCH],
    ProcessingMode.HIGH_PRIORITY_FIRST: [REQUIRED_FIELDS],
    ProcessingMode.COMPLIANCE_AUDIT: [REQUIRED_FIELDS],
    ProcessingMode.DUPLICATE_DETECTION: [EXACT_MATCH],
}


@dataclass(frozen=True)
class ModePlan:
    """
    What a processing mode fixes for a job: which datasets in which order,
    the filter applied to each, the travel direction, and the evaluators run.
    """

    mode: ProcessingMode
    specs: list[DatasetSpec]
    direction: Direction = Direction.FORWARD
    sequential: bool = False
    evaluator_kinds: list[str] = field(default_factory=list)

    @property
    def datasets(self) -> list[str]:
        return [s.name for s in self.specs]


def build_plan(mode: ProcessingMode | str, settings: Settings, now: datetime | None = None) -> ModePlan:
    mode = ProcessingMode.parse(mode)
    now = now or datetime.now(timezone.utc)

    names = list(settings.datasets)
    since: str | None = None
    min_priority: int | None = None
    direction = Direction.FORWARD
    sequential = False

    if mode is ProcessingMode.INCREMENTAL:
        cutoff = now - timedelta(days=settings.incremental_window_days)
        since = cutoff.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    elif mode is ProcessingMode.HIGH_PRIORITY_FIRST:
        # Newest first, high-value segments drained before the rest.
        first = [d for d in dict.fromkeys(settings.priority_order) if d in names]
        names = first + [d for d in names if d not in first]
        direction = Direction.BACKWARD
        sequential = True
        min_priority = settings.priority_threshold
    elif mode is ProcessingMode.COMPLIANCE_AUDIT:
        names = list(dict.fromkeys(settings.compliance_datasets)) or names

    kinds = settings.mode_evaluators.get(mode.value) or _DEFAULT_EVALUATORS[mode]
    specs = [DatasetSpec(name=n, since=since, min_priority=min_priority) for n in names]
    return ModePlan(mode=mode, specs=specs, direction=direction, sequential=sequential, evaluator_kinds=list(kinds))
