# tests/test_sources.py
import json

import pytest

from dqmodules.data_quality.lib.errors import DatasetUnavailable
from dqmodules.data_quality.lib.models import DatasetSpec
from dqmodules.data_quality.lib.sources import InMemorySource, SqliteRecordSource, iter_json_records


@pytest.fixture
def record_store(tmp_path):
    src = SqliteRecordSource(str(tmp_path / "records.db"))
    src.init_db()
    return src


def _rows(n):
    return [
        {"id": f"A{i:03d}", "Name": f"Acme {i}", "created_at": f"2025-01-{i:02d}T00:00:00Z", "priority": i % 3}
        for i in range(1, n + 1)
    ]


def test_ingest_dedupes_and_skips_unusable_rows(record_store, caplog):
    assert record_store.ingest("Account", _rows(10)) == 10
    assert record_store.ingest("Account", _rows(12)) == 2

    junk = [{"Name": "no id"}, {"id": ""}, "not a record", {"Id": "B1", "Name": "Capital Id"}]
    with caplog.at_level("WARNING"):
        assert record_store.ingest("Account", junk) == 1
    assert "without id" in caplog.text
    assert "non-object" in caplog.text

    assert record_store.count(DatasetSpec(name="Account")) == 13
    # Same id in another dataset is a different record
    assert record_store.ingest("Contact", _rows(3)) == 3


def test_ingest_commits_in_chunks(record_store):
    assert record_store.ingest("Account", _rows(25), chunk_size=4) == 25
    assert record_store.count(DatasetSpec(name="Account")) == 25


def test_fetch_orders_by_insertion_and_filters(record_store):
    record_store.ingest("Account", _rows(10))

    asc = record_store.fetch(DatasetSpec(name="Account"), 0, 3)
    assert [r["id"] for r in asc] == ["A001", "A002", "A003"]
    assert asc[0]["Name"] == "Acme 1"
    assert asc[0]["priority"] == 1

    page = record_store.fetch(DatasetSpec(name="Account"), 7, 5)
    assert [r["id"] for r in page] == ["A008", "A009", "A010"]

    since = DatasetSpec(name="Account", since="2025-01-08T00:00:00Z")
    assert record_store.count(since) == 3

    urgent = DatasetSpec(name="Account", min_priority=2)
    assert [r["id"] for r in record_store.fetch(urgent, 0, 10)] == ["A002", "A005", "A008"]


def test_snapshot_bound_hides_later_rows(record_store):
    record_store.ingest("Account", _rows(5))
    bound = record_store.snapshot_bound(DatasetSpec(name="Account"))
    assert bound == 5

    record_store.ingest("Account", [{"id": "late", "created_at": "2025-02-01T00:00:00Z"}])
    pinned = DatasetSpec(name="Account", upper_bound=bound)
    assert record_store.count(pinned) == 5
    assert record_store.count(DatasetSpec(name="Account")) == 6
    assert record_store.snapshot_bound(DatasetSpec(name="Empty")) == 0


def test_sqlite_errors_become_dataset_unavailable(tmp_path):
    not_a_db = tmp_path / "garbage.db"
    not_a_db.write_bytes(b"this is not sqlite" * 100)
    with pytest.raises(DatasetUnavailable):
        SqliteRecordSource(str(not_a_db)).count(DatasetSpec(name="Account"))


def test_in_memory_source_filters_like_the_record_store():
    src = InMemorySource({"Account": _rows(10)})
    assert src.count(DatasetSpec(name="Account", min_priority=2)) == 3
    assert src.count(DatasetSpec(name="Account", upper_bound=4)) == 4
    assert [r["id"] for r in src.fetch(DatasetSpec(name="Account", min_priority=2), 1, 5)] == ["A005", "A008"]
    with pytest.raises(DatasetUnavailable):
        src.snapshot_bound(DatasetSpec(name="Lead"))


def test_iter_json_records_reads_array_files(tmp_path):
    p = tmp_path / "accounts.json"
    p.write_text("  \n" + json.dumps(_rows(4)), encoding="utf-8")
    assert [r["id"] for r in iter_json_records(str(p))] == ["A001", "A002", "A003", "A004"]


def test_iter_json_records_reads_ndjson_files(tmp_path):
    p = tmp_path / "accounts.ndjson"
    p.write_text("\n".join(json.dumps(r) for r in _rows(3)) + "\n", encoding="utf-8")
    recs = list(iter_json_records(str(p)))
    assert [r["id"] for r in recs] == ["A001", "A002", "A003"]
    assert recs[2]["priority"] == 0
