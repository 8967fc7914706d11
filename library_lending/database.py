import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, TypeVar

from .config import Settings, settings as default_settings
from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite reports lock contention through OperationalError; these are the retryable ones.
_BUSY_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as UTC ISO-8601 so stored values sort lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    text = str(exc).lower()
    return any(msg in text for msg in _BUSY_MESSAGES)


class Storage:
    """Handle on the SQLite database shared by the catalog, directory and ledger.

    The entry point (API lifespan, CLI command, test fixture) creates one and
    passes it down; connections are opened per operation and closed afterwards.
    """

    def __init__(self, db_file: Optional[str] = None, *, timeout: Optional[float] = None,
                 retries: Optional[int] = None, backoff: float = 0.05,
                 settings: Optional[Settings] = None) -> None:
        cfg = settings or default_settings
        self.db_file = db_file or cfg.database_file
        self.timeout = cfg.db_timeout if timeout is None else timeout
        self.retries = cfg.db_retries if retries is None else retries
        self.backoff = backoff

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_file, timeout=self.timeout,
                                   isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            return conn
        except sqlite3.OperationalError as exc:
            logger.error(f"Could not open database {self.db_file}: {exc}")
            raise StorageUnavailableError("Storage is unavailable, try again later.") from exc

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read-only unit: every statement inside sees the same committed state."""
        conn = self.connect()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self._rollback(conn)
            if not _is_busy(exc):
                raise
            raise self._busy_error(exc) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write unit: commits on success, rolls everything back otherwise.

        BEGIN IMMEDIATE takes the write lock up front, so check-then-write
        sequences inside the block cannot interleave with another writer.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self._rollback(conn)
            if not _is_busy(exc):
                raise
            raise self._busy_error(exc) from exc
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def run(self, unit: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``unit`` inside a write transaction, retrying on lock contention.

        A failed attempt has been rolled back entirely and ``unit`` re-reads the
        state it depends on, so a retry re-checks rather than re-applies.
        """
        for attempt in range(self.retries + 1):
            try:
                with self.transaction() as conn:
                    return unit(conn)
            except StorageUnavailableError:
                if attempt >= self.retries:
                    logger.error(f"Giving up on {self.db_file} after {attempt + 1} attempts")
                    raise
                delay = self.backoff * (2 ** attempt)
                logger.warning(f"Database busy, retrying in {delay:.2f}s (attempt {attempt + 1})")
                time.sleep(delay)
        raise StorageUnavailableError("Storage is unavailable, try again later.")  # pragma: no cover

    def ping(self) -> bool:
        try:
            conn = self.connect()
        except StorageUnavailableError:
            return False
        try:
            conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @staticmethod
    def _busy_error(exc: sqlite3.OperationalError) -> StorageUnavailableError:
        logger.error(f"Database lock timed out: {exc}")
        return StorageUnavailableError("Storage timed out, try again later.")


def create_tables(storage: Storage) -> None:
    """Create the tables and indexes if they don't exist."""
    conn = storage.connect()
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                book_id TEXT PRIMARY KEY,
                isbn TEXT UNIQUE,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT '',
                total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
                available INTEGER NOT NULL CHECK(available >= 0 AND available <= total_copies),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'member' CHECK(role IN ('member', 'librarian', 'admin')),
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS loans (
                loan_id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL REFERENCES books(book_id),
                borrower_id TEXT NOT NULL REFERENCES users(user_id),
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'completed', 'cancelled')),
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                returned_to TEXT,
                cancelled_by TEXT,
                fine_amount REAL NOT NULL DEFAULT 0 CHECK(fine_amount >= 0),
                fine_is_paid INTEGER NOT NULL DEFAULT 0,
                fine_paid_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK(due_date > issue_date)
            );

            CREATE TABLE IF NOT EXISTS fine_config (
                id INTEGER PRIMARY KEY CHECK(id = 1),
                rate_per_day REAL NOT NULL,
                grace_period_days INTEGER NOT NULL,
                max_fine REAL NOT NULL,
                updated_at TEXT,
                updated_by TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_one_active
                ON loans(book_id, borrower_id) WHERE status = 'active';
            CREATE INDEX IF NOT EXISTS idx_loans_borrower ON loans(borrower_id);
            CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date);
            CREATE INDEX IF NOT EXISTS idx_loans_issue_date ON loans(issue_date);
            CREATE INDEX IF NOT EXISTS idx_books_title ON books(title);
            CREATE INDEX IF NOT EXISTS idx_books_category ON books(category);
        """)
    except sqlite3.OperationalError as exc:
        if not _is_busy(exc):
            raise
        raise storage._busy_error(exc) from exc
    finally:
        conn.close()


def initialize_database(storage: Storage) -> None:
    """Initialize the database, creating tables if needed."""
    create_tables(storage)
    logger.info(f"Database ready at {storage.db_file}")
