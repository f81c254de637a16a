# data_quality/evaluators/__init__.py
from __future__ import annotations

from . import registry
from .base import BaseEvaluator, EvaluationContext
from .exact_match import ExactMatchEvaluator
from .required_fields import RequiredFieldsEvaluator

__all__ = [
    "BaseEvaluator",
    "EvaluationContext",
    "ExactMatchEvaluator",
    "RequiredFieldsEvaluator",
    "registry",
]
