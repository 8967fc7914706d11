import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

import typer

from .accounts import Role
from .config import settings
from .database import Storage, initialize_database
from .errors import LendingError
from .lending import LendingEngine
from .loan import LoanStatus
from .ui_helpers import (
    print_books,
    print_fine_config,
    print_loan,
    print_loans,
    print_mapping,
    print_unpaid,
    set_output_mode,
)

APP_NAME = "Library Lending CLI"

app = typer.Typer(help=APP_NAME, no_args_is_help=True)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)"
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (default level: LOG_LEVEL)"),
):
    """Global CLI options (output mode, database)."""
    if output:
        set_output_mode(output)
    logging.basicConfig(level=logging.DEBUG if verbose else settings.log_level)
    ctx.obj = {"db": db or settings.database_file}


def _engine(ctx: typer.Context) -> LendingEngine:
    storage = Storage(ctx.obj["db"], settings=settings)
    initialize_database(storage)
    return LendingEngine(storage, settings=settings)


def handle_errors(func):
    """Report workflow failures as 'Error: ...' with exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LendingError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


@app.command("init-db")
@handle_errors
def cli_init_db(ctx: typer.Context):
    """Create the database tables."""
    _engine(ctx)
    print(f"Database ready: {ctx.obj['db']}")


@app.command("add-user")
@handle_errors
def cli_add_user(ctx: typer.Context, name: str, email: str,
                 role: Role = typer.Option(Role.MEMBER, "--role", "-r", help="member | librarian | admin")):
    """Register a borrower."""
    user = _engine(ctx).accounts.add_user(name, email, role)
    print(f"User added: {user.user_id} ({user.name}, {user.role.value})")


@app.command("add-book")
@handle_errors
def cli_add_book(ctx: typer.Context, title: str, author: str,
                 isbn: Optional[str] = typer.Option(None, "--isbn"),
                 category: str = typer.Option("", "--category", "-c"),
                 copies: int = typer.Option(1, "--copies", "-n", min=1)):
    """Add a book to the catalog."""
    book = _engine(ctx).catalog.add_book(title, author, isbn=isbn, category=category, total_copies=copies)
    print(f"Book added: {book.book_id} - {book.title} by {book.author} x{book.total_copies}")


@app.command("books")
@handle_errors
def cli_books(ctx: typer.Context, query: Optional[str] = typer.Argument(None, help="Title, author or ISBN"),
              category: Optional[str] = typer.Option(None, "--category", "-c")):
    """List books with their availability."""
    print_books(_engine(ctx).catalog.list_books(query=query, category=category))


@app.command("issue")
@handle_errors
def cli_issue(ctx: typer.Context, user_id: str, book_id: str,
              days: Optional[int] = typer.Option(None, "--days", "-d", help="Loan length in days"),
              due: Optional[datetime] = typer.Option(None, "--due", help="Explicit due date")):
    """Lend a book to a borrower."""
    engine = _engine(ctx)
    due_date = due
    if due_date is None and days is not None:
        due_date = engine.now() + timedelta(days=days)
    loan = engine.issue_book(user_id, book_id, due_date)
    print_loan(loan, engine.now(), heading="Book issued")


@app.command("return")
@handle_errors
def cli_return(ctx: typer.Context, loan_id: Optional[str] = typer.Argument(None),
               book_id: Optional[str] = typer.Option(None, "--book"),
               user_id: Optional[str] = typer.Option(None, "--user"),
               actor: Optional[str] = typer.Option(None, "--actor", help="Librarian receiving the book")):
    """Return a loan, by id or by --book and --user."""
    engine = _engine(ctx)
    loan = engine.return_book(loan_id, book_id=book_id, borrower_id=user_id, actor_id=actor)
    print_loan(loan, engine.now(), heading="Book returned")


@app.command("cancel")
@handle_errors
def cli_cancel(ctx: typer.Context, loan_id: str, actor: Optional[str] = typer.Option(None, "--actor")):
    """Cancel an active loan."""
    engine = _engine(ctx)
    print_loan(engine.cancel_loan(loan_id, actor), engine.now(), heading="Loan cancelled")


@app.command("loans")
@handle_errors
def cli_loans(ctx: typer.Context, user_id: Optional[str] = typer.Option(None, "--user", "-u"),
              status: Optional[LoanStatus] = typer.Option(None, "--status", "-s"),
              active: bool = typer.Option(False, "--active", help="Only active loans, soonest due first")):
    """List loans."""
    engine = _engine(ctx)
    if user_id:
        loans = engine.list_borrower_loans(user_id, status)
    elif active:
        loans = engine.list_active_loans()
    else:
        loans = engine.list_loans(status)
    print_loans(loans, engine.now())


@app.command("fine")
@handle_errors
def cli_fine(ctx: typer.Context, loan_id: str):
    """Show what a loan's fine would be right now."""
    amount = _engine(ctx).calculate_fine(loan_id)
    print_mapping("Fine", {"loan": loan_id, "fine_amount": f"{amount:.2f}"})


@app.command("pay")
@handle_errors
def cli_pay(ctx: typer.Context, loan_id: str):
    """Mark a loan's fine as paid."""
    engine = _engine(ctx)
    print_loan(engine.pay_fine(loan_id), engine.now(), heading="Fine paid")


@app.command("unpaid")
@handle_errors
def cli_unpaid(ctx: typer.Context, user_id: str):
    """List a borrower's unpaid fines with the live total."""
    engine = _engine(ctx)
    result = engine.list_unpaid_fines(user_id)
    print_unpaid(result.total, result.loans, engine.now())


@app.command("fine-config")
@handle_errors
def cli_fine_config(ctx: typer.Context,
                    action: str = typer.Argument("show", help="Action: show, set"),
                    rate: Optional[float] = typer.Option(None, "--rate", help="Fine per day"),
                    grace: Optional[int] = typer.Option(None, "--grace", help="Grace period in days"),
                    maximum: Optional[float] = typer.Option(None, "--max", help="Maximum fine"),
                    actor: Optional[str] = typer.Option(None, "--actor")):
    """Show or change the fine configuration."""
    engine = _engine(ctx)
    if action == "show":
        print_fine_config(engine.get_fine_config())
    elif action == "set":
        current = engine.get_fine_config()
        config = engine.update_fine_config(
            current.rate_per_day if rate is None else rate,
            current.grace_period_days if grace is None else grace,
            current.max_fine if maximum is None else maximum,
            actor_id=actor,
        )
        print_fine_config(config)
    else:
        print(f"Unknown action: {action}. Use show or set.")
        raise typer.Exit(code=2)


@app.command("audit")
@handle_errors
def cli_audit(ctx: typer.Context, book_id: str):
    """Check a book's availability against its active loans."""
    result = _engine(ctx).audit_book(book_id)
    print_mapping(f"Audit {book_id}", result)
    if not result["consistent"]:
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(ctx: typer.Context,
              host: str = typer.Option(settings.api_host, "--host"),
              port: int = typer.Option(settings.api_port, "--port"),
              reload: bool = typer.Option(False, "--reload"),
              browser: bool = typer.Option(False, "--browser", help="Open the API docs in a browser")):
    """Run the HTTP API with uvicorn."""
    url = f"http://{host}:{port}"
    print(f"Starting API on {url}")
    if browser:
        webbrowser.open(f"{url}/docs")
    command = [sys.executable, "-m", "uvicorn", "library_lending.api:app", "--host", host, "--port", str(port)]
    if reload:
        command.append("--reload")
    env = dict(os.environ, LIBRARY_DB_FILE=ctx.obj["db"])
    subprocess.run(command, env=env)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
