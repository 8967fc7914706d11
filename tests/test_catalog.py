from datetime import timedelta

import pytest

from library_lending.accounts import Role
from library_lending.errors import NotFoundError, ValidationError
from library_lending.validators import ISBNValidator


def test_add_and_get_book(engine):
    book = engine.catalog.add_book("  The Hobbit ", "J.R.R. Tolkien", isbn="978-0-261-10221-7",
                                   category="Fantasy", total_copies=3)

    assert book.book_id.startswith("bk_")
    assert book.title == "The Hobbit"
    assert book.isbn == "9780261102217"
    assert book.available == book.total_copies == 3

    stored = engine.catalog.get_book(book.book_id)
    assert stored.title == "The Hobbit"
    assert stored.on_loan == 0
    assert engine.catalog.find_by_isbn("978 0261102217").book_id == book.book_id


@pytest.mark.parametrize("kwargs", [
    {"title": "", "author": "Someone"},
    {"title": "Title", "author": "   "},
    {"title": "Title", "author": "Someone", "total_copies": 0},
    {"title": "Title", "author": "Someone", "isbn": "12345"},
])
def test_add_book_rejects_bad_input(engine, kwargs):
    with pytest.raises(ValidationError):
        engine.catalog.add_book(**kwargs)
    assert engine.catalog.list_books() == []


def test_duplicate_isbn_is_rejected(engine, single_copy_book):
    with pytest.raises(ValidationError, match="already exists"):
        engine.catalog.add_book("Dune (reprint)", "Frank Herbert", isbn="978-0441172719")


def test_missing_book(engine):
    assert engine.catalog.get_book("bk_nothing") is None
    with pytest.raises(NotFoundError):
        engine.catalog.require_book("bk_nothing")


def test_list_and_search_books(engine):
    engine.catalog.add_book("Neuromancer", "William Gibson", category="Science Fiction")
    engine.catalog.add_book("Emma", "Jane Austen", category="Classics")
    engine.catalog.add_book("Persuasion", "Jane Austen", category="Classics")

    assert [b.title for b in engine.catalog.list_books()] == ["Emma", "Neuromancer", "Persuasion"]
    assert [b.title for b in engine.catalog.list_books(query="austen")] == ["Emma", "Persuasion"]
    assert [b.title for b in engine.catalog.list_books(category="Science Fiction")] == ["Neuromancer"]
    assert engine.catalog.list_categories() == ["Classics", "Science Fiction"]


def test_update_book_shifts_availability(engine, clock, member):
    book = engine.catalog.add_book("Refactoring", "Martin Fowler", total_copies=2)
    engine.issue_book(member.user_id, book.book_id, clock() + timedelta(days=7))

    grown = engine.catalog.update_book(book.book_id, total_copies=4, category="Software")
    assert (grown.available, grown.total_copies, grown.category) == (3, 4, "Software")

    shrunk = engine.catalog.update_book(book.book_id, total_copies=1)
    assert (shrunk.available, shrunk.total_copies) == (0, 1)
    assert engine.audit_book(book.book_id)["consistent"] is True


def test_update_book_cannot_drop_below_copies_on_loan(engine, clock, member, other_member):
    book = engine.catalog.add_book("Refactoring", "Martin Fowler", total_copies=3)
    engine.issue_book(member.user_id, book.book_id, clock() + timedelta(days=7))
    engine.issue_book(other_member.user_id, book.book_id, clock() + timedelta(days=7))

    with pytest.raises(ValidationError) as exc:
        engine.catalog.update_book(book.book_id, total_copies=1)
    assert exc.value.details == {"onLoan": 2}

    unchanged = engine.catalog.get_book(book.book_id)
    assert (unchanged.available, unchanged.total_copies) == (1, 3)


def test_update_book_needs_something_to_change(engine, single_copy_book):
    with pytest.raises(ValidationError):
        engine.catalog.update_book(single_copy_book.book_id)
    with pytest.raises(NotFoundError):
        engine.catalog.update_book("bk_nothing", title="New")


def test_statistics(engine):
    engine.catalog.add_book("One", "A", total_copies=2)
    engine.catalog.add_book("Two", "B", total_copies=3)
    assert engine.catalog.get_statistics() == {"total_books": 2, "total_copies": 5, "available_copies": 5}


def test_isbn_validator():
    assert ISBNValidator.normalize_isbn("0-306-40615-x") == "030640615X"
    assert ISBNValidator.is_valid_isbn("0-306-40615-X")
    assert ISBNValidator.is_valid_isbn("978-3-16-148410-0")
    assert not ISBNValidator.is_valid_isbn("X123456789")
    assert not ISBNValidator.is_valid_isbn(None)


def test_add_user(engine):
    user = engine.accounts.add_user("Grace Hopper", "Grace@Example.com", Role.LIBRARIAN)

    assert user.user_id.startswith("usr_")
    assert user.email == "grace@example.com"
    stored = engine.accounts.require_user(user.user_id)
    assert stored.role is Role.LIBRARIAN
    assert stored.active is True


def test_add_user_rejects_duplicates_and_bad_email(engine, member):
    with pytest.raises(ValidationError, match="already exists"):
        engine.accounts.add_user("Ada Again", "ADA@example.com")
    with pytest.raises(ValidationError):
        engine.accounts.add_user("Nobody", "not-an-email")


def test_unknown_user(engine):
    assert engine.accounts.get_user("usr_nobody") is None
    with pytest.raises(NotFoundError) as exc:
        engine.accounts.require_user("usr_nobody")
    assert exc.value.details == {"userId": "usr_nobody"}
