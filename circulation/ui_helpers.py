import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"
OUTPUT_MODES = {"plain", "json", "rich"}

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in OUTPUT_MODES:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Any]) -> None:
    """Print the catalog.
    - plain: 'id. Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
        return
    if not books:
        print("No books in library.")
        return

    if mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Copies", justify="right")
        table.add_column("Status")
        for b in books:
            table.add_row(str(b.id), b.title, b.author, b.category,
                          f"{b.available_copies}/{b.total_copies}", b.status.value)
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}. {b.title} by {b.author} [{b.available_copies}/{b.total_copies}] {b.status.value}")


def print_transaction(tx: Any) -> None:
    data = tx.to_dict()
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Book:[/] {escape(data['bookTitle'])} (#{data['bookId']})\n"
            f"[bold]User:[/] {data['userId']}\n"
            f"[bold]Borrowed:[/] {data['borrowDate']}  [bold]Due:[/] {data['dueDate']}\n"
            f"[bold]Returned:[/] {data['returnDate'] or '-'}\n"
            f"[bold]Status:[/] {data['status']}  [bold]Fine:[/] ${data['fineAmount']:.2f}"
            f"{' (paid)' if data['finePaid'] else ''}"
        )
        _console.print(Panel.fit(content, title=f"Transaction {data['id']}", border_style="blue"))
    else:
        print(_transaction_line(data))


def print_transactions(transactions: List[Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([tx.to_dict() for tx in transactions], ensure_ascii=False))
        return
    if not transactions:
        print("No transactions found.")
        return

    if mode == "rich":
        table = Table(title="Transactions", header_style="bold cyan")
        for column in ("ID", "Book", "Borrowed", "Due", "Returned", "Status", "Fine"):
            table.add_column(column)
        for tx in transactions:
            d = tx.to_dict()
            table.add_row(str(d["id"]), d["bookTitle"], d["borrowDate"], d["dueDate"],
                          d["returnDate"] or "-", d["status"], f"${d['fineAmount']:.2f}")
        _console.print(table)
    else:
        for tx in transactions:
            print(_transaction_line(tx.to_dict()))


def _transaction_line(data: Dict[str, Any]) -> str:
    line = f"#{data['id']} {data['bookTitle']} - {data['status']} (due {data['dueDate']})"
    if data["fineAmount"]:
        line += f" fine ${data['fineAmount']:.2f}{' paid' if data['finePaid'] else ''}"
    return line


def print_stats_result(report: Any) -> None:
    """Print the statistics report.
    - plain: one metric per line
    - json: the API payload
    - rich: Panel with the headline metrics and a popular books table
    """
    mode = get_output_mode()
    payload = report.to_dict()
    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False))
        return

    data = payload["data"]
    overview = data["overview"]
    fines = data["finances"]["fines"]
    lines = [
        ("Total Books", overview["totalBooks"]),
        ("Students", overview["totalUsers"]),
        ("Librarians", overview["totalLibrarians"]),
        ("Active Loans", overview["activeLoans"]),
        ("Overdue", overview["overdue"]),
        ("Total Transactions", overview["totalTransactions"]),
        ("Copies Available", f"{overview['availability']['availableCopies']}/{overview['availability']['totalCopies']}"),
        ("Unpaid Fines", f"${fines['unpaidFines']:.2f}"),
    ]

    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        if payload.get("degraded"):
            content += f"\n[yellow]Degraded:[/] {', '.join(payload['degraded'])}"
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
        popular = data["insights"]["popularBooks"]
        if popular:
            table = Table(title="Popular Books", header_style="bold cyan")
            table.add_column("Title")
            table.add_column("Author")
            table.add_column("Borrows", justify="right")
            for b in popular:
                table.add_row(b["title"], b["author"], str(b["borrowCount"]))
            _console.print(table)
    else:
        for label, value in lines:
            print(f"{label}: {value}")
        if payload.get("degraded"):
            print(f"Degraded: {', '.join(payload['degraded'])}")


def print_message(message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"message": message}, ensure_ascii=False))
    elif get_output_mode() == "rich":
        _console.print(f"[green]{escape(message)}[/]")
    else:
        print(message)


def print_error(message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"error": message}, ensure_ascii=False))
    elif get_output_mode() == "rich":
        _console.print(f"[bold red]Error:[/] {escape(message)}")
    else:
        print(f"Error: {message}")
