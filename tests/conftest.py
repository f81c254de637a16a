# tests/conftest.py
import tempfile

import pytest
from freezegun import freeze_time

from dqmodules.data_quality.lib.config import Settings
from dqmodules.data_quality.lib.cursor_store import CursorStore
from dqmodules.data_quality.lib.events import ProgressBus
from dqmodules.data_quality.lib.orchestrator import MultiCursorOrchestrator
from dqmodules.data_quality.lib.sources import InMemorySource
from dqservice.controller import DataQualityController


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch, tmp_path):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="dq-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.setenv("PROGRESS_LOG_PREFIX", "progress-test")
    monkeypatch.delenv("ACTIVITY_LOG_MAX_BYTES", raising=False)

    # Never fall through to /app/local/state or a developer's config
    monkeypatch.setenv("DQ_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


# ---------------------------------------------------------------------
# Records and sources
# ---------------------------------------------------------------------
@pytest.fixture
def make_records():
    """
    Build `n` records for a dataset. Every `missing_phone_every`-th record
    has a blank Phone, so required-field checks find a predictable count.
    """

    def _make(prefix="A", n=100, missing_phone_every=10, name=None, created_at="2025-01-01T00:00:00Z"):
        out = []
        for i in range(1, n + 1):
            out.append({
                "id": f"{prefix}{i:05d}",
                "Name": name(i) if name else f"{prefix} Company {i}",
                "Phone": "" if missing_phone_every and i % missing_phone_every == 0 else "555-0100",
                "created_at": created_at,
                "priority": i % 5,
            })
        return out

    return _make


@pytest.fixture
def make_source(make_records):
    def _make(**datasets):
        return InMemorySource({name: make_records(name[0], n) for name, n in datasets.items()})

    return _make


# ---------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------
class FixedBudget:
    """
    Budget stand-in: reports a constant consumed fraction and says "yield"
    after a fixed number of iterations. Row allowance is effectively unlimited.
    """

    def __init__(self, fraction, iterations=1):
        self.fraction = fraction
        self.max_iterations = iterations
        self.iterations = 0
        self.rows_fetched = 0

    def record_fetch(self, rows):
        self.rows_fetched += rows

    def complete_iteration(self):
        self.iterations += 1

    def used_fraction(self):
        return self.fraction

    def row_allowance(self, cursors):
        return 1_000_000

    def exhausted(self):
        return self.iterations >= self.max_iterations


@pytest.fixture
def fixed_budget():
    """fixed_budget(fraction, iterations) -> budget factory for the orchestrator."""

    def _factory(fraction=0.4, iterations=1):
        return lambda: FixedBudget(fraction, iterations)

    return _factory


# ---------------------------------------------------------------------
# Settings, stores, orchestrator, controller
# ---------------------------------------------------------------------
@pytest.fixture
def make_settings(tmp_path):
    """
    Return a **brand-new** Settings instance with every store under tmp_path.
    Keyword overrides are passed through Settings.from_env_and_kwargs.
    """

    def _make(**overrides):
        kwargs = {
            "state_dir": str(tmp_path / "state"),
            "datasets": ["Account"],
            "required_fields": {"Account": ["Name", "Phone"]},
            "field_severity": {"Phone": "High"},
        }
        kwargs.update(overrides)
        return Settings.from_env_and_kwargs(kwargs)

    return _make


@pytest.fixture
def fresh_settings(make_settings):
    return make_settings()


@pytest.fixture
def make_orchestrator(fixed_budget):
    def _make(settings, source, *, budget=None, bus=None, get_evaluator=None):
        store = CursorStore(settings.cursor_store_path, ttl_seconds=settings.ttl_seconds)
        return MultiCursorOrchestrator(
            settings,
            store,
            source,
            bus or ProgressBus(),
            budget_factory=budget or fixed_budget(0.4, 1),
            get_evaluator=get_evaluator,
        )

    return _make


@pytest.fixture
def make_controller(make_settings, make_source, fixed_budget):
    def _make(settings=None, source=None, budget=None):
        return DataQualityController(
            settings or make_settings(),
            source=source or make_source(Account=120),
            budget_factory=budget or fixed_budget(0.4, 1),
        )

    return _make
