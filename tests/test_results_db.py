# tests/test_results_db.py
import pytest

from dqmodules.data_quality.lib import results_db
from dqmodules.data_quality.lib.errors import RecordNotFound
from dqmodules.data_quality.lib.models import DatasetSpec, Duplicate, Issue, Job, JobStatus, ProcessingMode


@pytest.fixture
def dbp(tmp_path):
    path = str(tmp_path / "results.db")
    results_db.reset_db(path)
    results_db.init_db(path)
    return path


def _issue(record_id, severity="High", field="Phone", job_id="job-1"):
    return Issue(
        job_id=job_id,
        object_type="Account",
        record_id=record_id,
        issue_type="MissingRequiredField",
        severity=severity,
        description=f"{record_id} is missing {field}",
        field=field,
    )


def _job(job_id, status=JobStatus.COMPLETED, score=90.0):
    return Job(
        job_id=job_id,
        mode=ProcessingMode.FULL_SCAN,
        datasets=["Account"],
        totals={"Account": 10},
        batch_size=200,
        status=status,
        average_quality_score=score,
    )


def test_issue_insert_dedupes(dbp):
    issues = [_issue("A1"), _issue("A2"), _issue("A2", field="Name")]
    assert results_db.insert_issues(dbp, issues) == 3
    # Same again (a re-read batch) → nothing new
    assert results_db.insert_issues(dbp, issues) == 0
    assert results_db.count_issues(dbp, "job-1") == 3
    assert results_db.count_issues(dbp, "job-2") == 0
    assert results_db.insert_issues(dbp, []) == 0


def test_duplicate_insert_dedupes(dbp):
    pair = Duplicate(job_id="job-1", object_type="Account", record_1_id="A1", record_2_id="A2", match_score=1.0)
    assert results_db.insert_duplicates(dbp, [pair, pair]) == 1
    assert results_db.insert_duplicates(dbp, [pair]) == 0
    assert results_db.count_duplicates(dbp, "job-1") == 1


def test_claim_match_key_returns_owner(dbp):
    assert results_db.claim_match_key(dbp, "job-1", "Account", "acme", "A1") == "A1"
    assert results_db.claim_match_key(dbp, "job-1", "Account", "acme", "A7") == "A1"
    assert results_db.claim_match_key(dbp, "job-1", "Contact", "acme", "C3") == "C3"


def test_job_history_upsert_and_get(dbp):
    job = _job("job-1", status=JobStatus.RUNNING)
    results_db.upsert_job(dbp, job)
    job.status = JobStatus.COMPLETED
    job.processed = {"Account": 10}
    results_db.upsert_job(dbp, job)

    loaded = results_db.get_job(dbp, "job-1")
    assert loaded.status is JobStatus.COMPLETED
    assert loaded.processed_records == 10
    assert results_db.get_job(dbp, "missing") is None


def test_dashboard_stats_empty(dbp):
    stats = results_db.dashboard_stats(dbp)
    assert stats == {
        "severity_counts": {"Critical": 0, "High": 0, "Medium": 0, "Low": 0},
        "open_issues": 0,
        "pending_duplicates": 0,
        "avg_quality_score": 0.0,
        "completed_jobs": 0,
    }


def test_dashboard_stats_counts_open_work(dbp):
    results_db.insert_issues(dbp, [_issue("A1"), _issue("A2", severity="Low"), _issue("A3", severity="Critical")])
    results_db.insert_duplicates(
        dbp, [Duplicate(job_id="job-1", object_type="Account", record_1_id="A1", record_2_id="A2", match_score=1.0)]
    )
    results_db.upsert_job(dbp, _job("job-1", score=90.0))
    results_db.upsert_job(dbp, _job("job-2", score=81.0))
    results_db.upsert_job(dbp, _job("job-3", status=JobStatus.RUNNING, score=10.0))

    stats = results_db.dashboard_stats(dbp)
    assert stats["severity_counts"] == {"Critical": 1, "High": 1, "Medium": 0, "Low": 1}
    assert stats["open_issues"] == 3
    assert stats["pending_duplicates"] == 1
    assert stats["avg_quality_score"] == 85.5
    assert stats["completed_jobs"] == 2


def test_resolve_issue_and_merge_duplicate(dbp):
    results_db.insert_issues(dbp, [_issue("A1")])
    results_db.insert_duplicates(
        dbp, [Duplicate(job_id="job-1", object_type="Account", record_1_id="A1", record_2_id="A2", match_score=1.0)]
    )

    row = results_db.resolve_issue(dbp, 1, "phone added")
    assert row["status"] == results_db.ISSUE_RESOLVED
    assert row["resolution"] == "phone added"
    assert results_db.dashboard_stats(dbp)["open_issues"] == 0

    dup = results_db.mark_duplicate_merged(dbp, 1)
    assert dup["status"] == results_db.DUPLICATE_MERGED
    assert results_db.dashboard_stats(dbp)["pending_duplicates"] == 0


def test_unknown_ids_raise_record_not_found(dbp):
    with pytest.raises(RecordNotFound):
        results_db.resolve_issue(dbp, 42)
    with pytest.raises(RecordNotFound):
        results_db.mark_duplicate_merged(dbp, 42)


def test_results_source_pages_job_history_newest_first(dbp):
    for n in range(3):
        results_db.upsert_job(dbp, _job(f"job-{n}"))
    source = results_db.ResultsSource(dbp)
    spec = DatasetSpec(name="jobs", upper_bound=source.snapshot_bound(DatasetSpec(name="jobs")))

    assert source.count(spec) == 3
    rows = source.fetch(spec, 0, 2)
    assert [r["job_id"] for r in rows] == ["job-2", "job-1"]
    assert rows[0]["status"] == "Completed"

    # Rows beyond the snapshot bound are not counted
    results_db.upsert_job(dbp, _job("job-late"))
    assert source.count(spec) == 3
