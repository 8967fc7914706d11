from __future__ import annotations


class Book:
    """A catalog entry and its shelf counts."""

    def __init__(self, book_id: str, title: str, author: str, total_copies: int = 1,
                 available: int | None = None, isbn: str | None = None, category: str = "",
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn
        self.category = (category or "").strip()
        self.total_copies = total_copies
        self.available = total_copies if available is None else available
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available}/{self.total_copies} available)"

    @property
    def on_loan(self) -> int:
        return self.total_copies - self.available

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "total_copies": self.total_copies,
            "available": self.available,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            book_id=data["book_id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            category=data.get("category") or "",
            total_copies=data["total_copies"],
            available=data.get("available"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
