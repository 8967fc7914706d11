from datetime import datetime, timedelta, timezone

import pytest

from library_lending.config import Settings
from library_lending.database import Storage, initialize_database
from library_lending.lending import LendingEngine
from library_lending.ui_helpers import OUTPUT_MODE_ENV

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock the engine reads instead of the wall clock; tests move it forward by hand."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # CLI --output writes to the environment; keep it from leaking between tests
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def test_settings(tmp_path, request):
    # Unique database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return Settings(database_file=db_file, db_timeout=5.0, db_retries=3,
                    fine_rate_per_day=10, fine_grace_period_days=0, fine_max=1000,
                    min_loan_days=1, max_loan_days=30, enforce_loan_period=True,
                    default_loan_days=14, api_key="test-key")


@pytest.fixture
def storage(test_settings):
    storage = Storage(settings=test_settings)
    initialize_database(storage)
    return storage


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def engine(storage, test_settings, clock):
    return LendingEngine(storage, settings=test_settings, clock=clock)


@pytest.fixture
def member(engine):
    return engine.accounts.add_user("Ada Reader", "ada@example.com")


@pytest.fixture
def other_member(engine):
    return engine.accounts.add_user("Bob Reader", "bob@example.com")


@pytest.fixture
def single_copy_book(engine):
    return engine.catalog.add_book("Dune", "Frank Herbert", isbn="9780441172719",
                                   category="Science Fiction", total_copies=1)
