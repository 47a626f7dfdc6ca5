import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from loan import STATUS_LABELS as LOAN_STATUS_LABELS
from reservation import STATUS_LABELS as RESERVATION_STATUS_LABELS

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value) -> str:
    return value.date().isoformat() if value else "-"


def print_books_result(books: List[Any]) -> None:
    """Print the catalogue in the current output mode.
    - plain: 'id - Title (Author) [available/total]' lines, or 'Nenhum livro cadastrado.'
    - json: array with id, titulo, autor, isbn and the counters
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("Nenhum livro cadastrado.")
        return

    if mode == "json":
        payload = [
            {
                "_id": b.id,
                "titulo": b.title,
                "autor": b.author,
                "isbn": b.isbn,
                "quantidade_total": b.total_copies,
                "quantidade_disponivel": b.available_copies,
            }
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Livros", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Título", style="white")
        table.add_column("Autor", style="white")
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Disp.", justify="right")
        for b in books:
            style = "green" if b.is_available else "red"
            table.add_row(b.id, b.title, b.author, b.isbn,
                          f"[{style}]{b.available_copies}/{b.total_copies}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} ({b.author}) [{b.available_copies}/{b.total_copies}]")


def print_loans_result(loans: List[Any], now=None) -> None:
    """Print loans with their display status (overdue is derived at print time)."""
    mode = get_output_mode()

    if not loans:
        print("Nenhum empréstimo encontrado.")
        return

    if mode == "json":
        payload = [
            {
                "_id": loan.id,
                "livro_id": loan.book_id,
                "usuario_nome": loan.borrower.name,
                "usuario_email": loan.borrower.email,
                "data_devolucao_prevista": loan.due_date.isoformat(),
                "status": LOAN_STATUS_LABELS[loan.display_status(now)],
                "multa": float(loan.fine),
                "renovacoes": loan.renewal_count,
            }
            for loan in loans
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Empréstimos", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Usuário")
        table.add_column("Vencimento", no_wrap=True)
        table.add_column("Status")
        table.add_column("Multa", justify="right")
        for loan in loans:
            status = LOAN_STATUS_LABELS[loan.display_status(now)]
            colour = "red" if status == "atrasado" else "white"
            table.add_row(loan.id, f"{loan.borrower.name} <{loan.borrower.email}>",
                          _date(loan.due_date), f"[{colour}]{status}[/]", f"{loan.fine}")
        _console.print(table)
    else:
        for loan in loans:
            status = LOAN_STATUS_LABELS[loan.display_status(now)]
            print(f"{loan.id} - {loan.borrower.name} <{loan.borrower.email}> - "
                  f"{status} - vence {_date(loan.due_date)}")


def print_loan_result(loan: Any, action: str) -> None:
    """One-line confirmation after renewing or returning a loan."""
    mode = get_output_mode()
    status = LOAN_STATUS_LABELS[loan.display_status()]
    if mode == "json":
        print(json.dumps({
            "_id": loan.id,
            "status": status,
            "data_devolucao_prevista": loan.due_date.isoformat(),
            "data_devolucao_real": loan.return_date.isoformat() if loan.return_date else None,
            "multa": float(loan.fine),
            "renovacoes": loan.renewal_count,
        }, ensure_ascii=False))
        return
    print(f"Empréstimo {loan.id} {action}.")
    print(f"Status: {status}")
    print(f"Vencimento: {_date(loan.due_date)}")
    print(f"Renovações: {loan.renewal_count}")
    print(f"Multa: {loan.fine}")


def print_queue_result(reservations: List[Any]) -> None:
    mode = get_output_mode()

    if not reservations:
        print("Nenhuma reserva na fila.")
        return

    if mode == "json":
        payload = [
            {
                "_id": r.id,
                "prioridade": r.priority,
                "usuario_nome": r.borrower.name,
                "usuario_email": r.borrower.email,
                "status": RESERVATION_STATUS_LABELS[r.effective_status()],
                "data_reserva": r.reservation_date.isoformat(),
            }
            for r in reservations
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏳ Fila de reservas", header_style="bold cyan")
        table.add_column("#", justify="right")
        table.add_column("Usuário")
        table.add_column("Status")
        table.add_column("Reservado em", no_wrap=True)
        for r in reservations:
            table.add_row(str(r.priority), f"{r.borrower.name} <{r.borrower.email}>",
                          RESERVATION_STATUS_LABELS[r.effective_status()], _date(r.reservation_date))
        _console.print(table)
    else:
        for r in reservations:
            print(f"{r.priority}. {r.borrower.name} <{r.borrower.email}> - "
                  f"{RESERVATION_STATUS_LABELS[r.effective_status()]}")


STATS_LABELS = (
    ("total_books", "Total de livros"),
    ("available_books", "Livros disponíveis"),
    ("active_loans", "Empréstimos ativos"),
    ("overdue_loans", "Empréstimos atrasados"),
    ("active_reservations", "Reservas ativas"),
    ("total_categories", "Categorias"),
    ("total_authors", "Autores"),
)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print the dashboard counters in the current output mode.
    - plain: one 'Label: value' line per counter
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("Nenhuma estatística disponível.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in STATS_LABELS)
        _console.print(Panel.fit(content, title="📊 Painel", border_style="blue"))
    else:
        for key, label in STATS_LABELS:
            print(f"{label}: {stats.get(key, 0)}")
