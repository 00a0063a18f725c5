import asyncio
import logging
import os
from typing import NoReturn, Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from circulation import database
from circulation.book import Book
from circulation.config import settings
from circulation.desk import CirculationDesk
from circulation.errors import CirculationError
from circulation.inventory import Inventory
from circulation.lifecycle import TransactionLifecycle
from circulation.policy import BorrowingPolicy
from circulation.services.activity import SYSTEM, ActionType, ActivityLog, Entity
from circulation.services.cache_manager import StatisticsCache
from circulation.services.notifications import NotificationService, NotificationStore
from circulation.statistics import DEFAULT_PERIOD, StatisticsAggregator
from circulation.transaction import TransactionStatus
from circulation.ui_helpers import (
    print_books,
    print_error,
    print_message,
    print_stats_result,
    print_transaction,
    print_transactions,
    set_output_mode,
)
from circulation.users import Role, User, UserDirectory

APP_NAME = "Library Circulation CLI"

app = typer.Typer(help=APP_NAME)


def _configure_cli_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _db(ctx: typer.Context) -> str:
    return ctx.obj["db_file"]


def _desk(ctx: typer.Context) -> CirculationDesk:
    db_file = _db(ctx)
    return CirculationDesk(
        TransactionLifecycle(db_file),
        UserDirectory(db_file),
        BorrowingPolicy(),
        NotificationService(NotificationStore(db_file)),
        ActivityLog(db_file),
    )


def _fail(error: CirculationError) -> NoReturn:
    print_error(error.message)
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: str = typer.Option(settings.database_file, "--db", envvar="LIBRARY_DB_FILE", help="SQLite database file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show info-level logs"),
):
    """Global options for the CLI (output mode, database file)."""
    if output:
        set_output_mode(output)
    _configure_cli_logging(verbose)
    ctx.obj = {"db_file": db}
    database.initialize_database(db)


@app.command("init-db")
def cli_init_db(ctx: typer.Context):
    """Create the database schema (safe to run repeatedly)."""
    print_message(f"Database ready at {_db(ctx)}")


# ------------------------- Catalog ------------------------- #
@app.command("add-book")
def cli_add_book(
    ctx: typer.Context,
    title: str,
    author: str,
    isbn: str,
    category: str = typer.Option("General", "--category", "-c"),
    copies: int = typer.Option(1, "--copies", "-n", min=1),
    location: Optional[str] = typer.Option(None, "--location"),
):
    """Add a title to the catalog."""
    db_file = _db(ctx)
    try:
        book = Inventory(db_file).add_book(
            Book(title=title, author=author, isbn=isbn, category=category,
                 total_copies=copies, location=location)
        )
    except CirculationError as e:
        _fail(e)
    ActivityLog(db_file).record(ActionType.BOOK_ADDED, SYSTEM, Entity("book", book.title, book.id),
                                f'Added "{book.title}" with {book.total_copies} copies')
    print_message(f"Successfully added: {book.title} by {book.author} (id {book.id})")


@app.command("books")
def cli_books(
    ctx: typer.Context,
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
):
    """List the catalog with copy counts."""
    inventory = Inventory(_db(ctx))
    print_books(inventory.search_books(search) if search else inventory.list_books(category))


# ------------------------- Members ------------------------- #
@app.command("add-user")
def cli_add_user(
    ctx: typer.Context,
    name: str,
    email: str,
    role: Role = typer.Option(Role.STUDENT, "--role", "-r"),
):
    """Register a library member."""
    db_file = _db(ctx)
    try:
        user = UserDirectory(db_file).add_user(User(name=name, email=email, role=role))
    except CirculationError as e:
        _fail(e)
    ActivityLog(db_file).record(ActionType.USER_ADDED, SYSTEM, Entity("user", user.name, user.id),
                                f"Registered {user.role.value} {user.name}")
    print_message(f"Registered {user.role.value} {user.name} (id {user.id})")


# ------------------------- Circulation ------------------------- #
@app.command("borrow")
def cli_borrow(
    ctx: typer.Context,
    book_id: int,
    user_id: int,
    due: Optional[str] = typer.Option(None, "--due", help="Due date (YYYY-MM-DD)"),
):
    """Check out a copy of a book to a member."""
    try:
        tx = _desk(ctx).borrow(book_id, user_id, due)
    except CirculationError as e:
        _fail(e)
    print_transaction(tx)


@app.command("return")
def cli_return(
    ctx: typer.Context,
    transaction_id: int,
    date: Optional[str] = typer.Option(None, "--date", help="Return date (YYYY-MM-DD), default now"),
):
    """Return a borrowed copy; late returns are fined."""
    try:
        tx = _desk(ctx).return_book(transaction_id, date)
    except CirculationError as e:
        _fail(e)
    print_transaction(tx)


@app.command("renew")
def cli_renew(
    ctx: typer.Context,
    transaction_id: int,
    days: int = typer.Option(settings.renew_days, "--days", "-d"),
):
    """Extend the due date of an open loan."""
    try:
        tx = _desk(ctx).renew(transaction_id, days)
    except CirculationError as e:
        _fail(e)
    print_transaction(tx)


@app.command("pay-fine")
def cli_pay_fine(
    ctx: typer.Context,
    transaction_id: int,
    unpaid: bool = typer.Option(False, "--unpaid", help="Mark the fine as unpaid again"),
):
    """Record a fine payment."""
    try:
        tx = _desk(ctx).pay_fine(transaction_id, not unpaid)
    except CirculationError as e:
        _fail(e)
    print_transaction(tx)


@app.command("loans")
def cli_loans(
    ctx: typer.Context,
    user_id: int,
    status: Optional[TransactionStatus] = typer.Option(None, "--status"),
):
    """List a member's transactions, newest first."""
    print_transactions(TransactionLifecycle(_db(ctx)).list_transactions(user_id, status))


@app.command("reconcile")
def cli_reconcile(ctx: typer.Context):
    """Mark past-due loans overdue and alert their borrowers."""
    flipped = _desk(ctx).reconcile()
    print_message(f"Marked {len(flipped)} transaction(s) overdue")


@app.command("remind")
def cli_remind(ctx: typer.Context, days: int = typer.Option(2, "--days", "-d", min=1)):
    """Send due reminders for loans due within the given number of days."""
    loans = _desk(ctx).send_due_reminders(days)
    print_message(f"Sent {len(loans)} due reminder(s)")


@app.command("stats")
def cli_stats(ctx: typer.Context, period: int = typer.Option(DEFAULT_PERIOD, "--period", "-p")):
    """Show circulation statistics for the last N days."""
    aggregator = StatisticsAggregator(_db(ctx), cache=StatisticsCache())
    try:
        report = asyncio.run(aggregator.get_statistics(period))
    except CirculationError as e:
        _fail(e)
    print_stats_result(report)


@app.command("serve")
def cli_serve(
    ctx: typer.Context,
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Run the HTTP API with uvicorn."""
    settings.database_file = _db(ctx)
    # The reloader re-imports the app in a fresh process that only sees the environment
    os.environ["LIBRARY_DB_FILE"] = settings.database_file
    uvicorn.run("circulation.api:app", host=host, port=port, reload=reload, log_level=settings.log_level.lower())


if __name__ == "__main__":
    app()
