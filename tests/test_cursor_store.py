# tests/test_cursor_store.py
from datetime import timedelta

import pytest
from freezegun import freeze_time

from dqmodules.data_quality.lib.cursor_store import CursorStore
from dqmodules.data_quality.lib.errors import StateExpired, StateNotFound


@pytest.fixture
def store(tmp_path):
    return CursorStore(str(tmp_path / "cursors.db"), ttl_seconds=48 * 3600)


def test_put_get_round_trip(store):
    store.put("job-1", "Account", b"\x00state\xff")
    assert store.get("job-1", "Account") == b"\x00state\xff"

    # Last writer wins
    store.put("job-1", "Account", b"newer")
    assert store.get("job-1", "Account") == b"newer"


def test_missing_key_raises_state_not_found(store):
    with pytest.raises(StateNotFound):
        store.get("job-1", "Account")


def test_put_many_writes_all_entries(store):
    store.put_many("job-1", {"Account": b"a", "Contact": b"c"})
    assert store.get("job-1", "Account") == b"a"
    assert store.get("job-1", "Contact") == b"c"
    # Keys are scoped per job
    with pytest.raises(StateNotFound):
        store.get("job-2", "Account")


def test_entries_expire_after_ttl(tmp_path):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        store = CursorStore(str(tmp_path / "ttl.db"), ttl_seconds=48 * 3600)
        store.put("job-1", "Account", b"x")

        frozen.tick(timedelta(hours=47))
        assert store.get("job-1", "Account") == b"x"

        frozen.tick(timedelta(hours=2))
        with pytest.raises(StateExpired):
            store.get("job-1", "Account")

        # Expired rows linger until purged, then the key is simply unknown
        assert store.purge_expired() == 1
        with pytest.raises(StateNotFound) as excinfo:
            store.get("job-1", "Account")
        assert not isinstance(excinfo.value, StateExpired)


def test_per_put_ttl_override(store):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        store.put("job-1", "Account", b"short", ttl=60)
        store.put("job-1", "Contact", b"long")
        frozen.tick(timedelta(minutes=5))
        with pytest.raises(StateExpired):
            store.get("job-1", "Account")
        assert store.get("job-1", "Contact") == b"long"


def test_job_records_and_listing(store):
    store.put_job("job-b", {"job_id": "job-b", "status": "Running"})
    store.put_job("job-a", {"job_id": "job-a", "status": "Queued"})
    store.put("job-a", "Account", b"cursor")

    assert store.get_job("job-a")["status"] == "Queued"
    assert [j["job_id"] for j in store.list_jobs()] == ["job-a", "job-b"]


def test_pause_flags(store):
    assert not store.is_pause_requested("job-1")
    store.request_pause("job-1")
    store.request_pause("job-1")
    assert store.is_pause_requested("job-1")
    store.clear_pause("job-1")
    assert not store.is_pause_requested("job-1")


def test_ttl_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        CursorStore(str(tmp_path / "c.db"), ttl_seconds=0)


def test_lease_is_exclusive_until_released_or_lapsed(tmp_path):
    with freeze_time("2025-01-01T00:00:00Z") as frozen:
        path = str(tmp_path / "lease.db")
        store, other = CursorStore(path), CursorStore(path)
        assert store.lease_holder("job-1") is None

        assert store.acquire_lease("job-1", "worker-a", ttl=120)
        assert store.acquire_lease("job-1", "worker-a", ttl=120)  # renewal
        assert not other.acquire_lease("job-1", "worker-b", ttl=120)
        assert other.lease_holder("job-1") == "worker-a"

        # Only the holder can release
        other.release_lease("job-1", "worker-b")
        assert store.lease_holder("job-1") == "worker-a"

        # A holder that died lets the lease lapse
        frozen.tick(timedelta(seconds=121))
        assert store.lease_holder("job-1") is None
        assert other.acquire_lease("job-1", "worker-b", ttl=120)

        other.release_lease("job-1", "worker-b")
        assert store.lease_holder("job-1") is None
        # Leases are per job
        assert store.acquire_lease("job-2", "worker-a", ttl=120)
        assert other.acquire_lease("job-1", "worker-b", ttl=120)
