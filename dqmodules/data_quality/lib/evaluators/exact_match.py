from __future__ import annotations

import re
from typing import Any

from .. import results_db
from ..models import DuplicateFinding, Evaluation
from .base import BaseEvaluator, EvaluationContext
from .registry import register

_WS = re.compile(r"\s+")


def normalize(value: Any) -> str:
    return _WS.sub(" ", str(value if value is not None else "")).strip().lower()


def match_key(record: dict[str, Any], fields: list[str]) -> str | None:
    """Joined normalised field values; None when every field is blank."""
    parts = [normalize(record.get(f)) for f in fields]
    if not any(parts):
        return None
    return "|".join(parts)


@register
class ExactMatchEvaluator(BaseEvaluator):
    """
    Exact duplicate detection on `match_keys[dataset]`.

    The first record (per job and dataset) to claim a key owns it; any other
    record with the same key is reported as a duplicate of the owner with a
    match score of 1.0. Claims live in the result store, so a re-fetched
    record finds its own claim and is not reported twice.
    """

    kind = "exact_match"

    def evaluate(self, ctx: EvaluationContext, dataset: str, record: dict[str, Any]) -> Evaluation:
        fields = ctx.settings.match_keys.get(dataset) or []
        record_id = str(record.get("id") or "")
        if not fields or not record_id:
            return Evaluation()

        key = match_key(record, fields)
        if key is None:
            return Evaluation()

        owner = results_db.claim_match_key(ctx.results_path, ctx.job_id, dataset, key, record_id)
        if owner == record_id:
            return Evaluation()
        return Evaluation(duplicates=[DuplicateFinding(record_1_id=owner, record_2_id=record_id, match_score=1.0)])
