import sqlite3

import pytest

from library_lending.database import Storage, from_db_time, new_id, to_db_time
from library_lending.errors import StorageUnavailableError


def test_sql_errors_propagate_unchanged(storage):
    with pytest.raises(sqlite3.OperationalError) as exc:
        with storage.transaction() as conn:
            conn.execute("SELECT * FROM no_such_table")
    assert "no such table" in str(exc.value)
    assert exc.value.__cause__ is None

    with pytest.raises(sqlite3.OperationalError) as exc:
        with storage.snapshot() as conn:
            conn.execute("SELECT * FROM no_such_table")
    assert exc.value.__cause__ is None


def test_transaction_rolls_back_on_error(storage):
    with pytest.raises(RuntimeError):
        with storage.transaction() as conn:
            conn.execute(
                "INSERT INTO users (user_id, name, email, role, active, created_at) "
                "VALUES ('usr_tmp', 'Temp', 'tmp@example.com', 'member', 1, '2026-03-02')"
            )
            raise RuntimeError("abort")

    with storage.snapshot() as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == 0


def test_locked_database_becomes_storage_unavailable(test_settings, storage):
    impatient = Storage(settings=test_settings, timeout=0.1, retries=0)
    holder = storage.connect()
    try:
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(StorageUnavailableError) as exc:
            impatient.run(lambda conn: conn.execute("SELECT 1"))
        assert isinstance(exc.value.__cause__, sqlite3.OperationalError)
    finally:
        holder.execute("ROLLBACK")
        holder.close()


def test_ping(storage, tmp_path):
    assert storage.ping() is True
    assert Storage(str(tmp_path / "missing" / "library.db"), retries=0).ping() is False


def test_times_round_trip_as_utc():
    stored = to_db_time(from_db_time("2026-03-02T09:00:00"))
    assert stored == "2026-03-02T09:00:00.000000+00:00"
    assert to_db_time(None) is None


def test_new_id_prefix():
    assert new_id("ln").startswith("ln_")
    assert len(new_id("ln")) == len("ln_") + 12
