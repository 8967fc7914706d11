import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .book import Book
from .database import Storage, new_id, to_db_time, utcnow
from .errors import NotFoundError, ValidationError
from .validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = """
    book_id, isbn, title, author, category, total_copies, available, created_at, updated_at
"""


class Catalog:
    """Book records and their shelf counts.

    Availability only moves through ``take_copy`` / ``return_copy``, which run
    on the caller's transaction so the lending engine can pair them with the
    loan write.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    # ------------------------- Core operations ------------------------- #
    def add_book(self, title: str, author: str, *, isbn: Optional[str] = None,
                 category: str = "", total_copies: int = 1) -> Book:
        title = TextValidator.require(title, "Title")
        author = TextValidator.require(author, "Author")
        if total_copies < 1:
            raise ValidationError("Total copies must be at least 1.")
        norm_isbn = None
        if isbn:
            norm_isbn = ISBNValidator.normalize_isbn(isbn)
            if not ISBNValidator.is_valid_isbn(norm_isbn):
                raise ValidationError(f"Invalid ISBN format: {isbn}")

        now = to_db_time(utcnow())
        book = Book(book_id=new_id("bk"), title=title, author=author, isbn=norm_isbn,
                    category=category, total_copies=total_copies, available=total_copies,
                    created_at=now, updated_at=now)

        def insert(conn: sqlite3.Connection) -> None:
            if norm_isbn and self.find_by_isbn(norm_isbn, conn=conn):
                raise ValidationError(f"Book with ISBN {norm_isbn} already exists.")
            conn.execute(
                f"INSERT INTO books ({_BOOK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.book_id, book.isbn, book.title, book.author, book.category,
                 book.total_copies, book.available, book.created_at, book.updated_at),
            )

        self.storage.run(insert)
        logger.info(f"Book added: {book.book_id} '{book.title}' x{book.total_copies}")
        return book

    def get_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        if conn is not None:
            row = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE book_id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        with self.storage.snapshot() as snap:
            return self.get_book(book_id, conn=snap)

    def require_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> Book:
        book = self.get_book(book_id, conn=conn)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.", {"bookId": book_id})
        return book

    def find_by_isbn(self, isbn: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        if conn is not None:
            row = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        with self.storage.snapshot() as snap:
            return self.find_by_isbn(norm, conn=snap)

    def list_books(self, query: Optional[str] = None, category: Optional[str] = None) -> List[Book]:
        """List books ordered by title, optionally filtered by a title/author/ISBN query and category."""
        sql = f"SELECT {_BOOK_COLUMNS} FROM books WHERE 1 = 1"
        params: List[Any] = []
        if query:
            sql += " AND (title LIKE ? OR author LIKE ? OR isbn LIKE ?)"
            params.extend([f"%{query}%"] * 3)
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY title"
        with self.storage.snapshot() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def list_categories(self) -> List[str]:
        with self.storage.snapshot() as conn:
            rows = conn.execute(
                "SELECT DISTINCT category FROM books WHERE category != '' ORDER BY category"
            ).fetchall()
        return [row[0] for row in rows]

    def update_book(self, book_id: str, *, title: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None, total_copies: Optional[int] = None) -> Book:
        """Edit a book. Changing ``total_copies`` shifts ``available`` by the same delta.

        A new total below the number of copies currently on loan is refused.
        """
        update_fields: Dict[str, Any] = {}
        if title is not None and title.strip():
            update_fields["title"] = title.strip()
        if author is not None and author.strip():
            update_fields["author"] = author.strip()
        if category is not None:
            update_fields["category"] = category.strip()
        if not update_fields and total_copies is None:
            raise ValidationError("Nothing to update. Provide title, author, category and/or total copies.")
        if total_copies is not None and total_copies < 1:
            raise ValidationError("Total copies must be at least 1.")

        def apply(conn: sqlite3.Connection) -> Book:
            book = self.require_book(book_id, conn=conn)
            if total_copies is not None:
                # Conditional write: the copy count only changes if it still covers every active loan.
                cur = conn.execute(
                    """
                    UPDATE books
                    SET available = available + (? - total_copies), total_copies = ?
                    WHERE book_id = ? AND total_copies - available <= ?
                    """,
                    (total_copies, total_copies, book_id, total_copies),
                )
                if cur.rowcount == 0:
                    raise ValidationError(
                        f"Total copies {total_copies} cannot be less than the {book.on_loan} copies on loan.",
                        {"onLoan": book.on_loan},
                    )
            fields = dict(update_fields, updated_at=to_db_time(utcnow()))
            set_clause = ", ".join(f"{name} = ?" for name in fields)
            conn.execute(f"UPDATE books SET {set_clause} WHERE book_id = ?", [*fields.values(), book_id])
            return self.require_book(book_id, conn=conn)

        book = self.storage.run(apply)
        logger.info(f"Book updated: {book_id} ({book.available}/{book.total_copies} available)")
        return book

    # ------------------------- Availability ------------------------- #
    @staticmethod
    def take_copy(conn: sqlite3.Connection, book_id: str) -> bool:
        """Decrement ``available`` only if a copy is left; True if the write applied."""
        cur = conn.execute(
            "UPDATE books SET available = available - 1, updated_at = ? WHERE book_id = ? AND available > 0",
            (to_db_time(utcnow()), book_id),
        )
        return cur.rowcount == 1

    @staticmethod
    def return_copy(conn: sqlite3.Connection, book_id: str) -> bool:
        """Increment ``available``, never past ``total_copies``; True if the book exists."""
        cur = conn.execute(
            """
            UPDATE books SET available = MIN(available + 1, total_copies), updated_at = ?
            WHERE book_id = ?
            """,
            (to_db_time(utcnow()), book_id),
        )
        return cur.rowcount == 1

    def get_statistics(self) -> Dict[str, Any]:
        with self.storage.snapshot() as conn:
            row = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available), 0) FROM books"
            ).fetchone()
        return {"total_books": row[0], "total_copies": row[1], "available_copies": row[2]}
