"""Lending workflow: issue, return, cancel, fine calculation and payment.

Each mutating operation runs as one ``Storage.run`` unit, i.e. one
``BEGIN IMMEDIATE`` transaction. The checks (book exists, no active loan for
the pair, a copy is left) and the writes (conditional availability update,
loan insert/update) therefore commit or roll back together, and concurrent
callers on the same book are serialized by the database write lock. The
partial unique index on active loans backs up the duplicate check.

Failures are raised as ``LendingError`` subclasses; nothing here returns
``None`` to signal an error.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .accounts import AccountDirectory
from .catalog import Catalog
from .config import Settings, settings as default_settings
from .database import Storage, new_id, utcnow
from .errors import (
    AlreadyPaidError,
    ConflictError,
    InvalidStateError,
    LendingError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from .fine_policy import compute_fine
from .ledger import LoanLedger
from .loan import FineConfig, Loan, LoanStatus
from .validators import DueDateValidator

logger = logging.getLogger(__name__)


@dataclass
class UnpaidFines:
    total: float
    loans: List[Loan] = field(default_factory=list)


@dataclass
class BookStatus:
    book_id: str
    loan: Optional[Loan]
    can_borrow: bool


class LendingEngine:
    def __init__(self, storage: Storage, *, settings: Optional[Settings] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 catalog: Optional[Catalog] = None, accounts: Optional[AccountDirectory] = None,
                 ledger: Optional[LoanLedger] = None) -> None:
        self.storage = storage
        self.settings = settings or default_settings
        self.clock = clock or utcnow
        self.catalog = catalog or Catalog(storage)
        self.accounts = accounts or AccountDirectory(storage)
        self.ledger = ledger or LoanLedger(storage, self.settings)
        self.due_dates = DueDateValidator(self.settings)

    def now(self) -> datetime:
        return self.clock()

    def _run(self, operation: str, unit: Callable[[sqlite3.Connection], Loan]) -> Loan:
        try:
            return self.storage.run(unit)
        except LendingError as e:
            logger.warning(f"{operation} refused ({e.code}): {e.message}")
            raise

    # ------------------------- Issue / return ------------------------- #
    def issue_book(self, borrower_id: str, book_id: str, due_date: Optional[datetime] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``borrower_id``.

        Raises NotFoundError (book or borrower), ConflictError (pair already on
        loan, details carry the loan id), UnavailableError (no copies left) or
        ValidationError (due date outside the loan period policy).
        """
        now = self.clock()
        if due_date is None:
            due_date = self.due_dates.default_due_date(now, self.settings.default_loan_days)
        else:
            try:
                due_date = self.due_dates.validate(due_date, now)
            except ValidationError as e:
                logger.warning(f"Issue refused for {borrower_id}/{book_id}: {e.message}")
                raise

        def unit(conn: sqlite3.Connection) -> Loan:
            self.accounts.require_user(borrower_id, conn=conn)
            book = self.catalog.require_book(book_id, conn=conn)
            existing = self.ledger.find_active(book_id, borrower_id, conn=conn)
            if existing is not None:
                raise ConflictError(
                    f"Borrower {borrower_id} already has '{book.title}' on loan ({existing.loan_id}).",
                    {"loanId": existing.loan_id},
                )
            if not self.catalog.take_copy(conn, book_id):
                raise UnavailableError(f"No copies of '{book.title}' are available.", {"bookId": book_id})
            loan = Loan(loan_id=new_id("ln"), book_id=book_id, borrower_id=borrower_id,
                        issue_date=now, due_date=due_date)
            self.ledger.create_loan(conn, loan)
            return self.ledger.get_loan(loan.loan_id, conn=conn)

        loan = self._run("Issue", unit)
        logger.info(f"Book issued: loan {loan.loan_id}, book {book_id} to {borrower_id}, due {loan.due_date.isoformat()}")
        return loan

    def return_book(self, loan_id: Optional[str] = None, *, book_id: Optional[str] = None,
                    borrower_id: Optional[str] = None, actor_id: Optional[str] = None) -> Loan:
        """Complete an active loan, found by id or by (book, borrower), and price its fine.

        Returning is the authoritative fine calculation: the amount is stored
        and the paid flag reset. Raises NotFoundError or InvalidStateError.
        """
        if loan_id is None and not (book_id and borrower_id):
            raise ValidationError("Provide a loan id, or both a book id and a borrower id.")

        def unit(conn: sqlite3.Connection) -> Loan:
            loan = self._locate(conn, loan_id, book_id, borrower_id)
            if not loan.is_active:
                raise InvalidStateError(f"Loan {loan.loan_id} is already {loan.status.value}.",
                                        {"loanId": loan.loan_id, "status": loan.status.value})
            now = self.clock()
            fine = compute_fine(loan.due_date, now, self.ledger.get_fine_config(conn=conn))
            if not self.ledger.complete_loan(conn, loan.loan_id, now, fine, actor_id):
                raise InvalidStateError(f"Loan {loan.loan_id} is no longer active.", {"loanId": loan.loan_id})
            if not self.catalog.return_copy(conn, loan.book_id):
                logger.error(f"Book {loan.book_id} missing while returning loan {loan.loan_id}")
            return self.ledger.get_loan(loan.loan_id, conn=conn)

        loan = self._run("Return", unit)
        logger.info(f"Book returned: loan {loan.loan_id}, fine {loan.fine.amount:.2f}, received by {actor_id}")
        return loan

    def cancel_loan(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Administrative Active -> Cancelled; the copy goes back on the shelf without a fine."""

        def unit(conn: sqlite3.Connection) -> Loan:
            loan = self._locate(conn, loan_id, None, None)
            if not loan.is_active or not self.ledger.cancel_loan(conn, loan_id, actor_id):
                raise InvalidStateError(f"Loan {loan_id} is already {loan.status.value}.",
                                        {"loanId": loan_id, "status": loan.status.value})
            self.catalog.return_copy(conn, loan.book_id)
            return self.ledger.get_loan(loan_id, conn=conn)

        loan = self._run("Cancel", unit)
        logger.info(f"Loan cancelled: {loan_id} by {actor_id}")
        return loan

    def _locate(self, conn: sqlite3.Connection, loan_id: Optional[str], book_id: Optional[str],
                borrower_id: Optional[str]) -> Loan:
        if loan_id is not None:
            loan = self.ledger.get_loan(loan_id, conn=conn)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found.", {"loanId": loan_id})
            return loan
        loan = self.ledger.find_active(book_id, borrower_id, conn=conn)
        if loan is not None:
            return loan
        history = self.ledger.list_by_borrower(borrower_id, conn=conn)
        previous = [l for l in history if l.book_id == book_id]
        if previous:
            return previous[0]
        raise NotFoundError(f"No loan of book {book_id} to {borrower_id}.",
                            {"bookId": book_id, "borrowerId": borrower_id})

    # ------------------------- Fines ------------------------- #
    def calculate_fine(self, loan_id: str, at: Optional[datetime] = None) -> float:
        """What the fine would be right now (or at ``at``); nothing is written.

        Non-active loans price to 0.
        """
        with self.storage.snapshot() as conn:
            loan = self.ledger.get_loan(loan_id, conn=conn)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found.", {"loanId": loan_id})
            if not loan.is_active:
                return 0.0
            config = self.ledger.get_fine_config(conn=conn)
        return compute_fine(loan.due_date, at or self.clock(), config)

    def pay_fine(self, loan_id: str, payer_id: Optional[str] = None) -> Loan:
        """Settle a loan's fine. An unreturned loan is re-priced first so the payment covers today's accrual."""

        def unit(conn: sqlite3.Connection) -> Loan:
            loan = self.ledger.get_loan(loan_id, conn=conn)
            if loan is None:
                raise NotFoundError(f"Loan {loan_id} not found.", {"loanId": loan_id})
            if loan.fine.is_paid:
                raise AlreadyPaidError(f"Fine for loan {loan_id} is already paid.", {"loanId": loan_id})
            now = self.clock()
            amount = loan.fine.amount
            if loan.is_active:
                amount = compute_fine(loan.due_date, now, self.ledger.get_fine_config(conn=conn))
            if not self.ledger.mark_fine_paid(conn, loan_id, amount, now):
                raise AlreadyPaidError(f"Fine for loan {loan_id} is already paid.", {"loanId": loan_id})
            return self.ledger.get_loan(loan_id, conn=conn)

        loan = self._run("Payment", unit)
        logger.info(f"Fine paid: loan {loan_id}, amount {loan.fine.amount:.2f}, payer {payer_id}")
        return loan

    def list_unpaid_fines(self, borrower_id: str) -> UnpaidFines:
        """Unpaid fines for a borrower, priced live: active loans accrue up to now."""
        now = self.clock()
        with self.storage.snapshot() as conn:
            loans = self.ledger.list_unpaid(borrower_id, conn=conn)
            config = self.ledger.get_fine_config(conn=conn)
        owing: List[Loan] = []
        for loan in loans:
            if loan.is_active:
                loan.fine.amount = compute_fine(loan.due_date, now, config)
            if loan.fine.amount > 0:
                owing.append(loan)
        total = round(sum(l.fine.amount for l in owing), 2)
        return UnpaidFines(total=total, loans=owing)

    def get_fine_config(self) -> FineConfig:
        return self.ledger.get_fine_config()

    def update_fine_config(self, rate_per_day: float, grace_period_days: int, max_fine: float,
                           actor_id: Optional[str] = None) -> FineConfig:
        config = FineConfig(rate_per_day=rate_per_day, grace_period_days=grace_period_days, max_fine=max_fine)
        return self.ledger.save_fine_config(config, updated_by=actor_id)

    # ------------------------- Views ------------------------- #
    def book_status(self, borrower_id: str, book_id: str) -> BookStatus:
        with self.storage.snapshot() as conn:
            self.catalog.require_book(book_id, conn=conn)
            loan = self.ledger.find_active(book_id, borrower_id, conn=conn)
        return BookStatus(book_id=book_id, loan=loan, can_borrow=loan is None)

    def list_borrower_loans(self, borrower_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.ledger.list_by_borrower(borrower_id, status)

    def list_active_loans(self) -> List[Loan]:
        return self.ledger.list_active()

    def list_loans(self, status: Optional[LoanStatus] = None, start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> List[Loan]:
        return self.ledger.list_loans(status, start, end)

    def audit_book(self, book_id: str) -> Dict[str, int | bool]:
        """Compare a book's shelf counts with its active loans."""
        with self.storage.snapshot() as conn:
            book = self.catalog.require_book(book_id, conn=conn)
            active = self.ledger.count_active_for_book(book_id, conn=conn)
        return {
            "total_copies": book.total_copies,
            "available": book.available,
            "active_loans": active,
            "consistent": 0 <= book.available <= book.total_copies and book.on_loan == active,
        }
