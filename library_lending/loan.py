from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .database import from_db_time, to_db_time

DEFAULT_RATE_PER_DAY = 10.0
DEFAULT_GRACE_PERIOD_DAYS = 0
DEFAULT_MAX_FINE = 1000.0


class LoanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class FineRecord:
    amount: float = 0.0
    is_paid: bool = False
    paid_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "is_paid": self.is_paid, "paid_date": to_db_time(self.paid_date)}


@dataclass
class FineConfig:
    """Rate, grace period and cap used to price an overdue loan."""

    rate_per_day: float = DEFAULT_RATE_PER_DAY
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    max_fine: float = DEFAULT_MAX_FINE
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    is_default: bool = field(default=False, compare=False)

    def is_valid(self) -> bool:
        values = (self.rate_per_day, self.grace_period_days, self.max_fine)
        if any(v is None for v in values):
            return False
        try:
            return all(math.isfinite(float(v)) and float(v) >= 0 for v in values)
        except (TypeError, ValueError):
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate_per_day": self.rate_per_day,
            "grace_period_days": self.grace_period_days,
            "max_fine": self.max_fine,
            "updated_at": to_db_time(self.updated_at),
            "updated_by": self.updated_by,
        }


class Loan:
    """One copy of a book lent to one borrower.

    ``book`` and ``borrower`` hold display details joined in at read time;
    the stored record only references them by identifier.
    """

    def __init__(self, loan_id: str, book_id: str, borrower_id: str, issue_date: datetime,
                 due_date: datetime, status: LoanStatus = LoanStatus.ACTIVE,
                 return_date: Optional[datetime] = None, returned_to: Optional[str] = None,
                 cancelled_by: Optional[str] = None, fine: Optional[FineRecord] = None,
                 book: Optional[Dict[str, Any]] = None,
                 borrower: Optional[Dict[str, Any]] = None) -> None:
        self.loan_id = loan_id
        self.book_id = book_id
        self.borrower_id = borrower_id
        self.issue_date = issue_date
        self.due_date = due_date
        self.status = LoanStatus(status)
        self.return_date = return_date
        self.returned_to = returned_to
        self.cancelled_by = cancelled_by
        self.fine = fine or FineRecord()
        self.book = book
        self.borrower = borrower

    def __repr__(self) -> str:  # pragma: no cover
        return f"Loan({self.loan_id!r}, book={self.book_id!r}, borrower={self.borrower_id!r}, {self.status.value})"

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.ACTIVE

    def display_status(self, now: datetime) -> str:
        """Status as shown to a borrower: overdue / due in N days for active loans."""
        if not self.is_active:
            return self.status.value
        if now > self.due_date:
            return "overdue"
        days_left = math.ceil((self.due_date - now).total_seconds() / 86400)
        return f"due in {days_left} day{'' if days_left == 1 else 's'}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "book_id": self.book_id,
            "borrower_id": self.borrower_id,
            "status": self.status.value,
            "issue_date": to_db_time(self.issue_date),
            "due_date": to_db_time(self.due_date),
            "return_date": to_db_time(self.return_date),
            "returned_to": self.returned_to,
            "cancelled_by": self.cancelled_by,
            "fine": self.fine.to_dict(),
            "book": self.book,
            "borrower": self.borrower,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Loan":
        book = None
        if row.get("book_title") is not None:
            book = {
                "book_id": row["book_id"],
                "title": row["book_title"],
                "author": row.get("book_author"),
                "isbn": row.get("book_isbn"),
                "category": row.get("book_category"),
                "available": row.get("book_available"),
                "total_copies": row.get("book_total_copies"),
            }
        borrower = None
        if row.get("borrower_name") is not None:
            borrower = {
                "user_id": row["borrower_id"],
                "name": row["borrower_name"],
                "email": row.get("borrower_email"),
            }
        return Loan(
            loan_id=row["loan_id"],
            book_id=row["book_id"],
            borrower_id=row["borrower_id"],
            issue_date=from_db_time(row["issue_date"]),
            due_date=from_db_time(row["due_date"]),
            status=LoanStatus(row["status"]),
            return_date=from_db_time(row.get("return_date")),
            returned_to=row.get("returned_to"),
            cancelled_by=row.get("cancelled_by"),
            fine=FineRecord(
                amount=float(row.get("fine_amount") or 0.0),
                is_paid=bool(row.get("fine_is_paid")),
                paid_date=from_db_time(row.get("fine_paid_date")),
            ),
            book=book,
            borrower=borrower,
        )
