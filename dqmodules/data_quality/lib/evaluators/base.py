from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..config import Settings
from ..models import Evaluation


@dataclass(frozen=True)
class EvaluationContext:
    """Per-job facts an evaluator may need besides the record itself."""

    job_id: str
    results_path: str
    settings: Settings


class BaseEvaluator(ABC):
    """
    Abstract record evaluator.

    Contract:
      - evaluate(ctx, dataset, record) judges ONE record and returns an Evaluation.
      - Must be idempotent per record: judging an already-seen record again
        yields the same findings (the result store dedupes on insert).
      - Do NOT write issues/duplicates yourself; the orchestrator persists them.
      - Raising is allowed; the orchestrator records the failure as an
        EvaluationError issue and moves on to the next record.
    """

    # Concrete subclasses MUST set this to a stable string, e.g. "required_fields"
    kind: str = ""

    @abstractmethod
    def evaluate(self, ctx: EvaluationContext, dataset: str, record: dict[str, Any]) -> Evaluation:
        raise NotImplementedError
