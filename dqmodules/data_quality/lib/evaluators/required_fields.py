from __future__ import annotations

from typing import Any

from ..models import Evaluation, IssueFinding
from .base import BaseEvaluator, EvaluationContext
from .registry import register

MISSING_REQUIRED_FIELD = "MissingRequiredField"


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


@register
class RequiredFieldsEvaluator(BaseEvaluator):
    """
    Completeness check against `required_fields[dataset]`.

    Score is the percentage of required fields present (100 when the dataset
    has none configured). Each missing field is one issue, keyed by field name
    so re-evaluating the record never produces a second row.
    """

    kind = "required_fields"

    def evaluate(self, ctx: EvaluationContext, dataset: str, record: dict[str, Any]) -> Evaluation:
        required = ctx.settings.required_fields.get(dataset) or []
        if not required:
            return Evaluation(score=100.0)

        issues: list[IssueFinding] = []
        for name in required:
            if _is_blank(record.get(name)):
                issues.append(
                    IssueFinding(
                        issue_type=MISSING_REQUIRED_FIELD,
                        severity=ctx.settings.severity_for(dataset, name),
                        description=f"{dataset} record is missing required field '{name}'",
                        field=name,
                    )
                )

        present = len(required) - len(issues)
        return Evaluation(score=100.0 * present / len(required), issues=issues)
