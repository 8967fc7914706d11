import logging
import sqlite3
from datetime import datetime
from typing import Any, List, Optional

from .config import Settings, settings as default_settings
from .database import Storage, from_db_time, to_db_time, utcnow
from .errors import ConflictError, ValidationError
from .fine_policy import effective_config
from .loan import FineConfig, Loan, LoanStatus

logger = logging.getLogger(__name__)

# Loans joined with the book and borrower details shown alongside them.
_LOAN_SELECT = """
    SELECT l.loan_id, l.book_id, l.borrower_id, l.status, l.issue_date, l.due_date,
           l.return_date, l.returned_to, l.cancelled_by,
           l.fine_amount, l.fine_is_paid, l.fine_paid_date,
           b.title AS book_title, b.author AS book_author, b.isbn AS book_isbn,
           b.category AS book_category, b.available AS book_available,
           b.total_copies AS book_total_copies,
           u.name AS borrower_name, u.email AS borrower_email
    FROM loans l
    LEFT JOIN books b ON b.book_id = l.book_id
    LEFT JOIN users u ON u.user_id = l.borrower_id
"""


class LoanLedger:
    """Loan records and the fine configuration.

    Write helpers take the caller's connection so the engine can combine them
    with catalog updates in one transaction. Loans are never deleted.
    """

    def __init__(self, storage: Storage, settings: Optional[Settings] = None) -> None:
        self.storage = storage
        self.settings = settings or default_settings

    # ------------------------- Reads ------------------------- #
    def _fetch(self, sql: str, params: List[Any], conn: Optional[sqlite3.Connection]) -> List[Loan]:
        if conn is not None:
            return [Loan.from_row(dict(row)) for row in conn.execute(sql, params).fetchall()]
        with self.storage.snapshot() as snap:
            return self._fetch(sql, params, snap)

    def get_loan(self, loan_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        loans = self._fetch(_LOAN_SELECT + " WHERE l.loan_id = ?", [loan_id], conn)
        return loans[0] if loans else None

    def find_active(self, book_id: str, borrower_id: str,
                    conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        loans = self._fetch(
            _LOAN_SELECT + " WHERE l.book_id = ? AND l.borrower_id = ? AND l.status = 'active'",
            [book_id, borrower_id], conn,
        )
        return loans[0] if loans else None

    def list_by_borrower(self, borrower_id: str, status: Optional[LoanStatus] = None,
                         conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        sql = _LOAN_SELECT + " WHERE l.borrower_id = ?"
        params: List[Any] = [borrower_id]
        if status is not None:
            sql += " AND l.status = ?"
            params.append(LoanStatus(status).value)
        return self._fetch(sql + " ORDER BY l.issue_date DESC", params, conn)

    def list_unpaid(self, borrower_id: str, conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        """Loans whose fine is not settled yet; cancelled loans never carry a fine."""
        return self._fetch(
            _LOAN_SELECT + " WHERE l.borrower_id = ? AND l.fine_is_paid = 0 AND l.status != 'cancelled'"
            " ORDER BY l.due_date",
            [borrower_id], conn,
        )

    def list_active(self) -> List[Loan]:
        return self._fetch(_LOAN_SELECT + " WHERE l.status = 'active' ORDER BY l.due_date", [], None)

    def list_loans(self, status: Optional[LoanStatus] = None, start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> List[Loan]:
        sql = _LOAN_SELECT + " WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            sql += " AND l.status = ?"
            params.append(LoanStatus(status).value)
        if start is not None:
            sql += " AND l.issue_date >= ?"
            params.append(to_db_time(start))
        if end is not None:
            sql += " AND l.issue_date <= ?"
            params.append(to_db_time(end))
        return self._fetch(sql + " ORDER BY l.issue_date DESC", params, None)

    def count_active_for_book(self, book_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        if conn is not None:
            row = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND status = 'active'", (book_id,)
            ).fetchone()
            return row[0]
        with self.storage.snapshot() as snap:
            return self.count_active_for_book(book_id, conn=snap)

    # ------------------------- Writes ------------------------- #
    def create_loan(self, conn: sqlite3.Connection, loan: Loan) -> None:
        now = to_db_time(utcnow())
        try:
            conn.execute(
                """
                INSERT INTO loans (loan_id, book_id, borrower_id, status, issue_date, due_date,
                                   fine_amount, fine_is_paid, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (loan.loan_id, loan.book_id, loan.borrower_id, loan.status.value,
                 to_db_time(loan.issue_date), to_db_time(loan.due_date), now, now),
            )
        except sqlite3.IntegrityError as e:
            existing = self.find_active(loan.book_id, loan.borrower_id, conn=conn)
            if existing is not None:
                raise ConflictError(
                    f"Borrower {loan.borrower_id} already has book {loan.book_id} on loan ({existing.loan_id}).",
                    {"loanId": existing.loan_id},
                ) from e
            raise ValidationError(f"Loan could not be recorded: {e}") from e

    def complete_loan(self, conn: sqlite3.Connection, loan_id: str, return_date: datetime,
                      fine_amount: float, returned_to: Optional[str]) -> bool:
        """Active -> Completed. A return always resets the paid flag. False if the loan was not active."""
        cur = conn.execute(
            """
            UPDATE loans
            SET status = 'completed', return_date = ?, returned_to = ?,
                fine_amount = ?, fine_is_paid = 0, fine_paid_date = NULL, updated_at = ?
            WHERE loan_id = ? AND status = 'active'
            """,
            (to_db_time(return_date), returned_to, fine_amount, to_db_time(utcnow()), loan_id),
        )
        return cur.rowcount == 1

    def cancel_loan(self, conn: sqlite3.Connection, loan_id: str, cancelled_by: Optional[str]) -> bool:
        cur = conn.execute(
            """
            UPDATE loans SET status = 'cancelled', cancelled_by = ?, updated_at = ?
            WHERE loan_id = ? AND status = 'active'
            """,
            (cancelled_by, to_db_time(utcnow()), loan_id),
        )
        return cur.rowcount == 1

    def mark_fine_paid(self, conn: sqlite3.Connection, loan_id: str, amount: float, paid_date: datetime) -> bool:
        """Settle the fine at ``amount``. False if it was already paid."""
        cur = conn.execute(
            """
            UPDATE loans SET fine_amount = ?, fine_is_paid = 1, fine_paid_date = ?, updated_at = ?
            WHERE loan_id = ? AND fine_is_paid = 0
            """,
            (amount, to_db_time(paid_date), to_db_time(utcnow()), loan_id),
        )
        return cur.rowcount == 1

    # ------------------------- Fine configuration ------------------------- #
    def default_fine_config(self) -> FineConfig:
        return effective_config(FineConfig(
            rate_per_day=self.settings.fine_rate_per_day,
            grace_period_days=self.settings.fine_grace_period_days,
            max_fine=self.settings.fine_max,
            is_default=True,
        ))

    def get_fine_config(self, conn: Optional[sqlite3.Connection] = None) -> FineConfig:
        """The stored configuration, or the defaults when none is stored or it is unusable."""
        if conn is None:
            with self.storage.snapshot() as snap:
                return self.get_fine_config(conn=snap)
        row = conn.execute(
            "SELECT rate_per_day, grace_period_days, max_fine, updated_at, updated_by FROM fine_config WHERE id = 1"
        ).fetchone()
        if row is None:
            return self.default_fine_config()
        config = FineConfig(
            rate_per_day=row["rate_per_day"],
            grace_period_days=row["grace_period_days"],
            max_fine=row["max_fine"],
            updated_at=from_db_time(row["updated_at"]),
            updated_by=row["updated_by"],
        )
        if not config.is_valid():
            logger.warning(f"Stored fine configuration is invalid ({config.to_dict()}), using defaults")
            return self.default_fine_config()
        return config

    def save_fine_config(self, config: FineConfig, updated_by: Optional[str] = None) -> FineConfig:
        if not config.is_valid():
            raise ValidationError("Fine rate, grace period and maximum must be non-negative numbers.")
        saved = FineConfig(
            rate_per_day=float(config.rate_per_day),
            grace_period_days=int(config.grace_period_days),
            max_fine=float(config.max_fine),
            updated_at=utcnow(),
            updated_by=updated_by,
        )

        def upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO fine_config (id, rate_per_day, grace_period_days, max_fine, updated_at, updated_by)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    rate_per_day = excluded.rate_per_day,
                    grace_period_days = excluded.grace_period_days,
                    max_fine = excluded.max_fine,
                    updated_at = excluded.updated_at,
                    updated_by = excluded.updated_by
                """,
                (saved.rate_per_day, saved.grace_period_days, saved.max_fine,
                 to_db_time(saved.updated_at), updated_by),
            )

        self.storage.run(upsert)
        logger.info(f"Fine configuration updated by {updated_by}: {saved.to_dict()}")
        return saved
