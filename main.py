import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

import database
from config import settings
from errors import LibraryError
from library import Library
from loan import STATUS_LABELS as LOAN_STATUS_LABELS
from loan import Borrower
from utils.time_utils import parse_iso
from utils.ui_helpers import (
    print_books_result,
    print_loan_result,
    print_loans_result,
    print_queue_result,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Biblioteca CLI"

console = Console(stderr=True)


class LibraryManager:
    """Single Library per database file; rebuilt when the file changes (tests use one per test)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.DATABASE_FILE
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _setup_logging(verbose: bool) -> None:
    # Command output goes to stdout; logs stay quiet unless asked for
    level = logging.DEBUG if verbose else logging.WARNING
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, rich_tracebacks=True, show_path=False))
    root.setLevel(level)


def _fail(exc: LibraryError) -> NoReturn:
    print(f"Erro: {exc}")
    raise typer.Exit(code=1)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_iso(value)
    except ValueError:
        print(f"Data inválida: {value} (use ISO-8601, ex. 2024-03-15T10:00:00)")
        raise typer.Exit(code=2)


# --- Typer CLI application ---
app = typer.Typer(help=f"{APP_NAME}: empréstimos, reservas e acervo")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Formato de saída: plain | json | rich (padrão: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Logs detalhados no stderr"),
):
    """Global options (output mode, logging)."""
    if output:
        set_output_mode(output)
    _setup_logging(verbose)


@app.command("books")
def cli_books(query: Optional[str] = typer.Option(None, "--query", "-q", help="Título, autor ou ISBN")):
    """List the catalogue with available/total copies."""
    print_books_result(LibraryManager.get_instance().list_books(query))


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(
        None, "--status", "-s", help="ativo | renovado | devolvido | atrasado"),
    book_id: Optional[str] = typer.Option(None, "--book", "-b"),
    email: Optional[str] = typer.Option(None, "--email", "-e"),
):
    """List loans, newest first."""
    wanted = None
    if status:
        by_label = {label: s for s, label in LOAN_STATUS_LABELS.items()}
        wanted = by_label.get(status.lower())
        if wanted is None:
            print(f"Status inválido: {status}. Permitidos: {', '.join(by_label)}")
            raise typer.Exit(code=2)
    loans = LibraryManager.get_instance().list_loans(book_id=book_id, email=email, status=wanted)
    print_loans_result(loans)


@app.command("lend")
def cli_lend(
    book_id: str,
    name: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
):
    """Lend a copy of a book."""
    try:
        loan = LibraryManager.get_instance().create_loan(book_id, Borrower(name, email, phone))
    except LibraryError as e:
        _fail(e)
    print(f"Empréstimo criado: {loan.id}")
    print(f"Devolução prevista: {loan.due_date.date().isoformat()}")


@app.command("renew")
def cli_renew(loan_id: str):
    """Renew an open loan for another loan period."""
    try:
        loan = LibraryManager.get_instance().renew_loan(loan_id)
    except LibraryError as e:
        _fail(e)
    print_loan_result(loan, "renovado")


@app.command("return")
def cli_return(
    loan_id: str,
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Data da devolução (ISO-8601)"),
):
    """Register a return; prints the fine and the reservation notified, if any."""
    return_date = _parse_date(date)
    try:
        result = LibraryManager.get_instance().return_loan(loan_id, return_date)
    except LibraryError as e:
        _fail(e)
    print_loan_result(result.loan, "devolvido")
    if result.notified:
        print(f"Reserva notificada: {result.notified.borrower.name} <{result.notified.borrower.email}>")


@app.command("reserve")
def cli_reserve(book_id: str, name: str, email: str,
                phone: Optional[str] = typer.Option(None, "--phone")):
    """Put a borrower in the waiting queue of a book."""
    try:
        reservation = LibraryManager.get_instance().create_reservation(
            book_id, Borrower(name, email, phone))
    except LibraryError as e:
        _fail(e)
    print(f"Reserva criada: {reservation.id} (prioridade {reservation.priority})")


@app.command("queue")
def cli_queue(book_id: str):
    """Show the reservation queue of a book in service order."""
    try:
        queue = LibraryManager.get_instance().get_queue_for_book(book_id)
    except LibraryError as e:
        _fail(e)
    print_queue_result(queue)


@app.command("sweep")
def cli_sweep():
    """Mark notified reservations whose pickup window closed as expired."""
    expired = LibraryManager.get_instance().expire_reservations()
    print(f"{len(expired)} reserva(s) expirada(s).")


@app.command("stats")
def cli_stats():
    """Dashboard counters."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Segundos antes de encerrar (0 = sem limite)"),
    open_browser: bool = typer.Option(True, "--browser/--no-browser", help="Abrir a documentação no navegador"),
):
    """Start the REST API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Iniciando API em http://{host}:{port}/")
    if open_browser:
        webbrowser.open(url)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=3)
        else:
            if settings.debug:
                args.append("--reload")
            subprocess.run(args)
    except FileNotFoundError:
        print("Erro: uvicorn não encontrado. Instale as dependências do projeto.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
