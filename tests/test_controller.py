# tests/test_controller.py
from datetime import timedelta

import pytest
from freezegun import freeze_time

from dqmodules.data_quality.lib.cursor_store import CursorStore
from dqmodules.data_quality.lib.errors import (
    JobExpired,
    JobNotActionable,
    JobNotFound,
    OutOfRange,
    RecordNotFound,
)
from dqmodules.data_quality.lib.models import JobStatus
from dqmodules.data_quality.lib.sources import InMemorySource
from dqservice.controller import DataQualityController


# ----------------------------------------------------------------------
# Job lifecycle
# ----------------------------------------------------------------------
def test_start_job_runs_to_completion_through_the_chain(make_controller):
    ctl = make_controller()
    job_id = ctl.start_job("FULL_SCAN")
    assert ctl.get_job_status(job_id)["status"] == "Queued"

    runs = ctl.run_pending()
    status = ctl.get_job_status(job_id)

    assert runs == 1  # 120 records fit in the first 200-record batch
    assert status["status"] == "Completed"
    assert status["processed_records"] == status["total_records"] == 120
    assert status["issues_found"] == 12


def test_resume_after_retention_window_raises_job_expired(make_controller):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        ctl = make_controller()
        job_id = ctl.start_job("FULL_SCAN")
        ctl.pause_job(job_id)
        ctl.run_pending()
        assert ctl.get_job_status(job_id)["status"] == "Paused"

        frozen.tick(timedelta(hours=49))
        with pytest.raises(JobExpired):
            ctl.resume_job(job_id)

        # Status stays readable from job history; nothing restarts
        assert ctl.get_job_status(job_id)["status"] == "Paused"
        assert ctl.purge_expired() >= 2
        with pytest.raises(JobExpired):
            ctl.resume_job(job_id)


def test_pause_does_not_extend_cursor_retention(make_controller, make_source):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        ctl = make_controller(source=make_source(Account=1000))
        job = ctl.orchestrator.create_job("FULL_SCAN")

        frozen.tick(timedelta(hours=47))
        assert ctl.pause_job(job.job_id).status is JobStatus.PAUSED

        # The job record was refreshed by the pause; its cursors were not
        frozen.tick(timedelta(hours=2))
        with pytest.raises(JobExpired):
            ctl.resume_job(job.job_id)
        assert ctl.run_pending() == 0
        assert ctl.store.is_pause_requested(job.job_id)


def test_pause_of_a_job_running_in_another_process(make_controller):
    ctl = make_controller()
    job = ctl.orchestrator.create_job("FULL_SCAN")
    elsewhere = CursorStore(ctl.settings.cursor_store_path)
    assert elsewhere.acquire_lease(job.job_id, "serve", ttl=600)

    # Flag set for the running invocation; the record is left to it
    assert ctl.pause_job(job.job_id).status is JobStatus.QUEUED
    assert ctl.store.is_pause_requested(job.job_id)
    assert ctl.resume_job(job.job_id) is False
    assert ctl.run_pending() == 0

    elsewhere.release_lease(job.job_id, "serve")
    assert ctl.resume_job(job.job_id) is True
    assert ctl.run_pending() == 1
    assert ctl.get_job_status(job.job_id)["status"] == "Completed"


def test_completed_job_survives_purge_but_cannot_resume(make_controller):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        ctl = make_controller()
        job_id = ctl.start_job("FULL_SCAN")
        ctl.run_pending()

        frozen.tick(timedelta(hours=49))
        ctl.purge_expired()
        with pytest.raises(JobNotActionable):
            ctl.resume_job(job_id)


def test_pause_and_resume_idle_job(make_controller, make_source, fixed_budget):
    ctl = make_controller(source=make_source(Account=1000), budget=fixed_budget(0.6, 1))
    job = ctl.orchestrator.create_job("FULL_SCAN")

    paused = ctl.pause_job(job.job_id)
    assert paused.status is JobStatus.PAUSED
    assert ctl.run_pending() == 0

    assert ctl.resume_job(job.job_id) is True
    assert ctl.resume_job(job.job_id) is False  # already queued
    assert ctl.run_pending() == 5
    assert ctl.get_job_status(job.job_id)["status"] == "Completed"


def test_resume_rejects_terminal_and_unknown_jobs(make_controller):
    ctl = make_controller()
    job_id = ctl.start_job("FULL_SCAN")
    ctl.run_pending()
    with pytest.raises(JobNotActionable):
        ctl.resume_job(job_id)
    with pytest.raises(JobNotActionable):
        ctl.pause_job(job_id)
    with pytest.raises(JobNotFound):
        ctl.resume_job("nope")
    with pytest.raises(JobNotFound):
        ctl.get_job_status("nope")


def test_run_invocation_directly(make_controller):
    ctl = make_controller()
    job = ctl.orchestrator.create_job("COMPLIANCE_AUDIT")
    result = ctl.run_invocation(job.job_id)
    assert result.status is JobStatus.COMPLETED


# ----------------------------------------------------------------------
# Dashboard
# ----------------------------------------------------------------------
def test_first_issues_page_of_an_empty_store(make_controller):
    page = make_controller().get_data_quality_issues(50)
    assert page.records == []
    assert page.total_pages == 0
    assert page.has_next is False
    assert page.next_token is None


def test_dashboard_stats_after_a_job(make_controller):
    ctl = make_controller()
    ctl.start_job("FULL_SCAN")
    ctl.run_pending()

    stats = ctl.get_dashboard_stats()
    assert stats["severity_counts"] == {"Critical": 0, "High": 12, "Medium": 0, "Low": 0}
    assert stats["pending_duplicates"] == 0
    assert stats["avg_quality_score"] == 95.0
    assert stats["completed_jobs"] == 1


def test_issue_pages_and_resolution(make_controller):
    ctl = make_controller()
    ctl.start_job("FULL_SCAN")
    ctl.run_pending()

    first = ctl.get_data_quality_issues(5)
    assert (first.total_records, first.total_pages) == (12, 3)
    second = ctl.get_data_quality_issues(5, first.cursor_state, "next")
    back = ctl.get_data_quality_issues(5, second.cursor_state, "previous")
    assert [r["id"] for r in back.records] == [r["id"] for r in first.records]

    jumped = ctl.jump_to_page("issue", 3, 5)
    assert len(jumped.records) == 2

    row = ctl.resolve_issue(first.records[0]["id"], "phone added")
    assert row["status"] == "Resolved"
    assert ctl.get_dashboard_stats()["severity_counts"]["High"] == 11

    with pytest.raises(RecordNotFound):
        ctl.resolve_issue(10_000)
    with pytest.raises(OutOfRange):
        ctl.jump_to_page("widgets", 1, 5)
    with pytest.raises(OutOfRange):
        ctl.jump_to_page("issues", 4, 5)


def test_duplicates_and_merge(make_settings, make_records, make_controller):
    settings = make_settings(match_keys={"Account": ["Name"]})
    records = make_records("A", 30, name=lambda i: f"Company {i % 10}")
    ctl = make_controller(settings=settings, source=InMemorySource({"Account": records}))
    ctl.start_job("DUPLICATE_DETECTION")
    ctl.run_pending()

    page = ctl.get_duplicate_records(50)
    assert page.total_records == 20
    assert {r["status"] for r in page.records} == {"Pending"}

    merged = ctl.mark_duplicate_merged(page.records[0]["id"])
    assert merged["status"] == "Merged"
    assert ctl.get_dashboard_stats()["pending_duplicates"] == 19
    with pytest.raises(RecordNotFound):
        ctl.mark_duplicate_merged(999)


def test_job_history_is_newest_first(make_controller):
    ctl = make_controller()
    older = ctl.start_job("FULL_SCAN")
    ctl.run_pending()
    newer = ctl.start_job("COMPLIANCE_AUDIT")
    ctl.run_pending()

    history = ctl.get_job_history()
    assert [r["job_id"] for r in history.records] == [newer, older]
    assert history.page_size == 20


def test_from_config_builds_settings_from_engine_section(tmp_path, make_source):
    cfg = {"engine": {"state_dir": str(tmp_path / "cfg-state"), "datasets": "Account", "initial_batch": 100}}
    ctl = DataQualityController.from_config(cfg, source=make_source(Account=5))
    assert ctl.settings.initial_batch == 100
    assert ctl.settings.cursor_store_path == str(tmp_path / "cfg-state" / "cursors.db")
    job_id = ctl.start_job("FULL_SCAN")
    ctl.run_pending()
    assert ctl.get_job_status(job_id)["status"] == "Completed"
