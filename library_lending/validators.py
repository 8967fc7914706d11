import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import Settings
from .errors import ValidationError

# Callers compute "now + N days" from their own clock reading, a moment before the engine's.
CLOCK_SKEW = timedelta(minutes=1)


class ISBNValidator:
    """Lenient ISBN handling: ISBN-10 (9 digits + digit or X) and ISBN-13 (13 digits)."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            return s[:9].isdigit() and (s[9].isdigit() or s[9] == "X")
        if len(s) == 13:
            return s.isdigit()
        return False


class TextValidator:
    @staticmethod
    def require(value: Optional[str], name: str) -> str:
        if value is None or not value.strip():
            raise ValidationError(f"{name} cannot be empty.")
        return value.strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        email = TextValidator.require(email, "Email")
        if not re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", email):
            raise ValidationError(f"Invalid email address: {email}")
        return email.lower()


class DueDateValidator:
    """Checks a requested due date against the loan period policy."""

    def __init__(self, settings: Settings) -> None:
        self.min_days = settings.min_loan_days
        self.max_days = settings.max_loan_days
        self.enforce = settings.enforce_loan_period

    def validate(self, due_date: datetime, now: datetime) -> datetime:
        if due_date.tzinfo is None:
            due_date = due_date.replace(tzinfo=timezone.utc)
        if due_date <= now:
            raise ValidationError("Due date must be in the future.")
        if self.enforce:
            ahead = due_date - now
            if ahead < timedelta(days=self.min_days) - CLOCK_SKEW:
                raise ValidationError(f"Due date must be at least {self.min_days} day(s) ahead.")
            if ahead > timedelta(days=self.max_days) + CLOCK_SKEW:
                raise ValidationError(f"Due date cannot be more than {self.max_days} days ahead.")
        return due_date

    def default_due_date(self, now: datetime, days: int) -> datetime:
        return now + timedelta(days=days)
