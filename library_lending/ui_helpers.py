import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .book import Book
from .loan import FineConfig, Loan

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def _loan_title(loan: Loan) -> str:
    return loan.book["title"] if loan.book else loan.book_id


def print_books(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author (available/total)' lines, or 'No books in library.'
    - json: list of book objects
    - rich: table
    """
    mode = get_output_mode()
    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _dump([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.book_id, b.title, b.author, b.category, f"{b.available}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.book_id} - {b.title} by {b.author} ({b.available}/{b.total_copies} available)")


def print_loan(loan: Loan, now: datetime, heading: Optional[str] = None) -> None:
    mode = get_output_mode()
    if mode == "json":
        payload = loan.to_dict()
        payload["display_status"] = loan.display_status(now)
        _dump(payload)
        return

    lines = [
        f"Loan: {loan.loan_id}",
        f"Book: {_loan_title(loan)}",
        f"Borrower: {loan.borrower['name'] if loan.borrower else loan.borrower_id}",
        f"Status: {loan.display_status(now)}",
        f"Due: {loan.due_date:%Y-%m-%d %H:%M}",
        f"Fine: {loan.fine.amount:.2f}{' (paid)' if loan.fine.is_paid else ''}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=heading or "Loan", border_style="green"))
    else:
        if heading:
            print(heading)
        for line in lines:
            print(line)


def print_loans(loans: List[Loan], now: datetime) -> None:
    mode = get_output_mode()
    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        _dump([dict(l.to_dict(), display_status=l.display_status(now)) for l in loans])
    elif mode == "rich":
        table = Table(title="Loans", header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Borrower")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for l in loans:
            table.add_row(l.loan_id, _loan_title(l), l.borrower_id, f"{l.due_date:%Y-%m-%d}",
                          l.display_status(now), f"{l.fine.amount:.2f}")
        _console.print(table)
    else:
        for l in loans:
            print(f"{l.loan_id} - {_loan_title(l)} - {l.borrower_id} - due {l.due_date:%Y-%m-%d} - "
                  f"{l.display_status(now)} - fine {l.fine.amount:.2f}")


def print_unpaid(total: float, loans: List[Loan], now: datetime) -> None:
    mode = get_output_mode()
    if mode == "json":
        _dump({"total_unpaid_fines": total, "transactions": [l.to_dict() for l in loans]})
        return
    if not loans:
        print("No unpaid fines.")
        return
    print_loans(loans, now)
    print(f"Total unpaid fines: {total:.2f}")


def print_fine_config(config: FineConfig) -> None:
    mode = get_output_mode()
    if mode == "json":
        _dump(config.to_dict())
    elif mode == "rich":
        content = (f"[bold]Rate per day:[/] {config.rate_per_day}\n"
                   f"[bold]Grace period (days):[/] {config.grace_period_days}\n"
                   f"[bold]Maximum fine:[/] {config.max_fine}")
        _console.print(Panel.fit(content, title="💰 Fine configuration", border_style="blue"))
    else:
        print(f"Rate per day: {config.rate_per_day}")
        print(f"Grace period (days): {config.grace_period_days}")
        print(f"Maximum fine: {config.max_fine}")


def print_mapping(title: str, data: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _dump(data)
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in data.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for k, v in data.items():
            print(f"{k}: {v}")
