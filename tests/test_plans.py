# tests/test_plans.py
from datetime import datetime, timezone

import pytest

from dqmodules.data_quality.lib.models import Direction, ProcessingMode
from dqmodules.data_quality.lib.plans import EXACT_MATCH, REQUIRED_FIELDS, build_plan

ALL = ["Account", "Contact", "Opportunity", "Case"]


@pytest.fixture
def settings(make_settings):
    return make_settings(datasets=ALL)


def test_full_scan_reads_everything_forward(settings):
    plan = build_plan("FULL_SCAN", settings)
    assert plan.mode is ProcessingMode.FULL_SCAN
    assert plan.datasets == ALL
    assert plan.direction is Direction.FORWARD
    assert not plan.sequential
    assert plan.evaluator_kinds == [REQUIRED_FIELDS, EXACT_MATCH]
    assert all(s.since is None for s in plan.specs)


def test_incremental_filters_on_window(settings):
    now = datetime(2025, 1, 8, 12, 30, tzinfo=timezone.utc)
    plan = build_plan(ProcessingMode.INCREMENTAL, settings, now=now)
    assert {s.since for s in plan.specs} == {"2025-01-01T12:30:00Z"}
    assert plan.direction is Direction.FORWARD


def test_high_priority_first_orders_and_reverses(make_settings):
    settings = make_settings(datasets=ALL, priority_order=["Opportunity", "Opportunity", "Unknown", "Case"])
    plan = build_plan("high_priority_first", settings)
    assert plan.datasets == ["Opportunity", "Case", "Account", "Contact"]
    assert plan.direction is Direction.BACKWARD
    assert plan.sequential
    assert plan.evaluator_kinds == [REQUIRED_FIELDS]


def test_compliance_audit_uses_configured_datasets(make_settings):
    settings = make_settings(datasets=ALL, compliance_datasets=["Contact", "Contact", "Account"])
    assert build_plan("COMPLIANCE_AUDIT", settings).datasets == ["Contact", "Account"]

    # Falls back to every dataset when none are configured
    assert build_plan("COMPLIANCE_AUDIT", make_settings(datasets=ALL)).datasets == ALL


def test_duplicate_detection_runs_only_exact_match(settings):
    assert build_plan("DUPLICATE_DETECTION", settings).evaluator_kinds == [EXACT_MATCH]


def test_mode_evaluators_override(make_settings):
    settings = make_settings(mode_evaluators={"full-scan": ["required_fields"]})
    assert build_plan("FULL_SCAN", settings).evaluator_kinds == [REQUIRED_FIELDS]


def test_unknown_mode(settings):
    with pytest.raises(ValueError, match="Unknown processing mode"):
        build_plan("NIGHTLY", settings)


def test_priority_threshold_filters_only_high_priority_first(make_settings):
    settings = make_settings(datasets=ALL, priority_threshold=3)
    assert {s.min_priority for s in build_plan("HIGH_PRIORITY_FIRST", settings).specs} == {3}
    for mode in ("FULL_SCAN", "INCREMENTAL", "COMPLIANCE_AUDIT", "DUPLICATE_DETECTION"):
        assert all(s.min_priority is None for s in build_plan(mode, settings).specs)


def test_high_priority_first_without_threshold_keeps_every_record(settings):
    assert all(s.min_priority is None for s in build_plan("HIGH_PRIORITY_FIRST", settings).specs)
