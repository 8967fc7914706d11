import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .database import Storage, new_id, to_db_time, utcnow
from .errors import NotFoundError, ValidationError
from .validators import TextValidator

logger = logging.getLogger(__name__)


class Role(str, Enum):
    MEMBER = "member"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


@dataclass
class User:
    user_id: str
    name: str
    email: str
    role: Role = Role.MEMBER
    active: bool = True
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "active": self.active,
            "created_at": self.created_at,
        }


def _user_from_row(row: sqlite3.Row) -> User:
    return User(user_id=row["user_id"], name=row["name"], email=row["email"],
                role=Role(row["role"]), active=bool(row["active"]), created_at=row["created_at"])


class AccountDirectory:
    """Borrower identities. Only used to check that a user exists before lending."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def add_user(self, name: str, email: str, role: Role = Role.MEMBER) -> User:
        user = User(user_id=new_id("usr"), name=TextValidator.require(name, "Name"),
                    email=TextValidator.validate_email(email), role=Role(role),
                    created_at=to_db_time(utcnow()))

        def insert(conn: sqlite3.Connection) -> None:
            try:
                conn.execute(
                    "INSERT INTO users (user_id, name, email, role, active, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (user.user_id, user.name, user.email, user.role.value, int(user.active), user.created_at),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"User with email {user.email} already exists.") from e

        self.storage.run(insert)
        logger.info(f"User registered: {user.user_id} ({user.email}, {user.role.value})")
        return user

    def get_user(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        if conn is not None:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            return _user_from_row(row) if row else None
        with self.storage.snapshot() as snap:
            return self.get_user(user_id, conn=snap)

    def require_user(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> User:
        user = self.get_user(user_id, conn=conn)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.", {"userId": user_id})
        return user
