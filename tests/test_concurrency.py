import threading
from datetime import timedelta

import pytest

from library_lending.database import Storage
from library_lending.errors import ConflictError, StorageUnavailableError, UnavailableError
from library_lending.lending import LendingEngine

pytestmark = pytest.mark.integration


def _race(workers, target):
    """Start ``workers`` threads on ``target(i)`` at the same moment and collect outcomes."""
    barrier = threading.Barrier(workers)
    results = [None] * workers

    def run(i):
        barrier.wait()
        try:
            results[i] = target(i)
        except Exception as e:  # collected for the assertions below
            results[i] = e

    threads = [threading.Thread(target=run, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def test_only_one_borrower_gets_the_last_copy(engine, clock, single_copy_book):
    readers = [engine.accounts.add_user(f"Reader {i}", f"racer{i}@example.com") for i in range(8)]
    due = clock() + timedelta(days=7)

    results = _race(len(readers), lambda i: engine.issue_book(readers[i].user_id, single_copy_book.book_id, due))

    issued = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(issued) == 1
    assert all(isinstance(e, UnavailableError) for e in refused)
    assert engine.audit_book(single_copy_book.book_id) == {
        "total_copies": 1, "available": 0, "active_loans": 1, "consistent": True,
    }


def test_same_borrower_racing_for_one_book_gets_one_loan(engine, clock, member):
    book = engine.catalog.add_book("Popular", "Author", total_copies=5)
    due = clock() + timedelta(days=7)

    results = _race(6, lambda i: engine.issue_book(member.user_id, book.book_id, due))

    issued = [r for r in results if not isinstance(r, Exception)]
    assert len(issued) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
    assert engine.catalog.get_book(book.book_id).available == 4
    assert engine.ledger.count_active_for_book(book.book_id) == 1


def test_concurrent_returns_and_issues_keep_counts_consistent(engine, clock):
    book = engine.catalog.add_book("Busy Shelf", "Author", total_copies=3)
    readers = [engine.accounts.add_user(f"Reader {i}", f"busy{i}@example.com") for i in range(6)]
    due = clock() + timedelta(days=7)
    first_wave = [engine.issue_book(r.user_id, book.book_id, due) for r in readers[:3]]

    def step(i):
        if i < 3:
            return engine.return_book(first_wave[i].loan_id)
        return engine.issue_book(readers[i].user_id, book.book_id, due)

    _race(6, step)

    audit = engine.audit_book(book.book_id)
    assert audit["consistent"] is True
    assert audit["available"] + audit["active_loans"] == 3


def test_lock_timeout_surfaces_as_retryable_error(test_settings, storage, clock, member, single_copy_book):
    impatient = LendingEngine(
        Storage(settings=test_settings, timeout=0.1, retries=1, backoff=0.01),
        settings=test_settings, clock=clock,
    )
    holder = storage.connect()
    try:
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(StorageUnavailableError) as exc:
            impatient.issue_book(member.user_id, single_copy_book.book_id, clock() + timedelta(days=7))
        assert exc.value.retryable is True
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert impatient.catalog.get_book(single_copy_book.book_id).available == 1
    assert impatient.list_borrower_loans(member.user_id) == []
