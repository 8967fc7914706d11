import json
import logging
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from library_lending import cli as cli_module
from library_lending.cli import app

runner = CliRunner()


@pytest.fixture
def cli(test_settings):
    """Invoke the CLI against the per-test database."""
    def invoke(*args):
        return runner.invoke(app, ["--db", test_settings.database_file, *args])
    return invoke


def _grab(pattern, output):
    match = re.search(pattern, output)
    assert match, output
    return match.group(1)


def test_init_db(cli, test_settings):
    result = cli("init-db")
    assert result.exit_code == 0
    assert f"Database ready: {test_settings.database_file}" in result.stdout


def test_add_user_and_book(cli):
    result = cli("add-user", "Ada Reader", "ada@example.com")
    assert result.exit_code == 0
    assert re.search(r"User added: usr_\w+ \(Ada Reader, member\)", result.stdout)

    result = cli("add-book", "Dune", "Frank Herbert", "--isbn", "9780441172719", "--copies", "2")
    assert result.exit_code == 0
    assert re.search(r"Book added: bk_\w+ - Dune by Frank Herbert x2", result.stdout)

    result = cli("books")
    assert "Dune by Frank Herbert (2/2 available)" in result.stdout


def test_empty_catalog(cli):
    result = cli("books")
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_duplicate_isbn_reports_error(cli):
    cli("add-book", "Dune", "Frank Herbert", "--isbn", "9780441172719")
    result = cli("add-book", "Dune", "Frank Herbert", "--isbn", "9780441172719")
    assert result.exit_code == 1
    assert "Error: Book with ISBN 9780441172719 already exists." in result.stdout


def test_issue_return_and_unpaid(cli):
    user_id = _grab(r"User added: (usr_\w+)", cli("add-user", "Ada", "ada@example.com").stdout)
    book_id = _grab(r"Book added: (bk_\w+)", cli("add-book", "Dune", "Frank Herbert").stdout)

    result = cli("issue", user_id, book_id, "--days", "7")
    assert result.exit_code == 0
    assert "Book issued" in result.stdout
    assert "Status: due in 7 days" in result.stdout
    loan_id = _grab(r"Loan: (ln_\w+)", result.stdout)

    result = cli("issue", user_id, book_id, "--days", "7")
    assert result.exit_code == 1
    assert "Error:" in result.stdout
    assert loan_id in result.stdout

    assert "(0/1 available)" in cli("books").stdout

    result = cli("fine", loan_id)
    assert "fine_amount: 0.00" in result.stdout

    result = cli("return", loan_id, "--actor", "usr_desk")
    assert result.exit_code == 0
    assert "Book returned" in result.stdout
    assert "Status: completed" in result.stdout

    assert "No unpaid fines." in cli("unpaid", user_id).stdout
    assert "(1/1 available)" in cli("books").stdout

    result = cli("return", loan_id)
    assert result.exit_code == 1
    assert "already completed" in result.stdout


def test_return_by_book_and_user(cli):
    user_id = _grab(r"User added: (usr_\w+)", cli("add-user", "Ada", "ada@example.com").stdout)
    book_id = _grab(r"Book added: (bk_\w+)", cli("add-book", "Dune", "Frank Herbert").stdout)
    cli("issue", user_id, book_id)

    result = cli("return", "--book", book_id, "--user", user_id)
    assert result.exit_code == 0
    assert "Book returned" in result.stdout


def test_overdue_loan_shows_unpaid_fine(cli, engine, member, single_copy_book, clock):
    # Issued through the frozen clock, so the wall clock used by the CLI sees it long overdue
    loan = engine.issue_book(member.user_id, single_copy_book.book_id)

    result = cli("loans", "--user", member.user_id)
    assert "overdue" in result.stdout

    result = cli("unpaid", member.user_id)
    assert result.exit_code == 0
    assert loan.loan_id in result.stdout
    assert "Total unpaid fines:" in result.stdout

    result = cli("pay", loan.loan_id)
    assert result.exit_code == 0
    assert "Fine paid" in result.stdout
    assert "(paid)" in result.stdout
    assert "No unpaid fines." in cli("unpaid", member.user_id).stdout


def test_cancel_and_audit(cli, engine, member, single_copy_book):
    loan = engine.issue_book(member.user_id, single_copy_book.book_id)

    result = cli("cancel", loan.loan_id, "--actor", "usr_admin")
    assert result.exit_code == 0
    assert "Status: cancelled" in result.stdout

    result = cli("audit", single_copy_book.book_id)
    assert result.exit_code == 0
    assert "consistent: True" in result.stdout

    assert cli("audit", "bk_missing").exit_code == 1


def test_loans_listing(cli, engine, member, single_copy_book):
    assert "No loans found." in cli("loans").stdout
    loan = engine.issue_book(member.user_id, single_copy_book.book_id)
    assert loan.loan_id in cli("loans", "--active").stdout
    assert cli("loans", "--status", "completed").stdout.strip() == "No loans found."


def test_fine_config_show_and_set(cli):
    result = cli("fine-config")
    assert "Rate per day: 10" in result.stdout

    result = cli("fine-config", "set", "--rate", "2.5", "--max", "40")
    assert result.exit_code == 0
    assert "Rate per day: 2.5" in result.stdout
    assert "Grace period (days): 0" in result.stdout
    assert "Maximum fine: 40.0" in result.stdout

    result = cli("fine-config", "set", "--rate", "-1")
    assert result.exit_code == 1
    assert "Error:" in result.stdout

    assert cli("fine-config", "reset").exit_code == 2


def test_json_output(cli, engine, member, single_copy_book):
    result = cli("--output", "json", "books")
    assert result.exit_code == 0
    [book] = json.loads(result.stdout)
    assert book["book_id"] == single_copy_book.book_id


def test_serve_runs_uvicorn(cli, test_settings):
    with patch("library_lending.cli.subprocess.run") as run, \
            patch("library_lending.cli.webbrowser.open") as browser:
        result = cli("serve", "--host", "127.0.0.1", "--port", "8123", "--browser")

    assert result.exit_code == 0
    assert "Starting API on http://127.0.0.1:8123" in result.stdout
    browser.assert_called_once_with("http://127.0.0.1:8123/docs")
    command = run.call_args[0][0]
    assert command[1:4] == ["-m", "uvicorn", "library_lending.api:app"]
    assert run.call_args[1]["env"]["LIBRARY_DB_FILE"] == test_settings.database_file


def test_logging_follows_configured_level(cli, monkeypatch):
    monkeypatch.setattr(cli_module.settings, "log_level", "ERROR")
    with patch("library_lending.cli.logging.basicConfig") as configure:
        cli("books")
    configure.assert_called_once_with(level="ERROR")

    with patch("library_lending.cli.logging.basicConfig") as configure:
        cli("--verbose", "books")
    configure.assert_called_once_with(level=logging.DEBUG)
