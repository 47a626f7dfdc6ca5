import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from config import settings
from errors import InvalidState, LimitExceeded, LoanAlreadyReturned, NotFound, ValidationError
from inventory import Inventory
from loan import Borrower, Loan, LoanStatus, compute_due_date, compute_fine
from utils.time_utils import ensure_utc, to_iso, utcnow
from utils.validators import BorrowerValidator, TextValidator

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


def clean_borrower(borrower: Borrower) -> Borrower:
    return Borrower(
        name=TextValidator.require(borrower.name, "usuario_nome"),
        email=BorrowerValidator.validate_email(borrower.email),
        phone=TextValidator.optional(borrower.phone),
    )


class LoanService:
    """Loan state machine: active -> renewed* -> returned.

    Every method takes the connection of the caller's transaction so that the
    loan row and the book counters change together or not at all.
    """

    def __init__(self, inventory: Inventory, period_days: int = settings.loan_period_days,
                 max_renewals: int = settings.max_renewals,
                 daily_fine: Decimal = settings.daily_fine) -> None:
        self.inventory = inventory
        self.period_days = period_days
        self.max_renewals = max_renewals
        self.daily_fine = daily_fine

    # ------------------------- Transitions ------------------------- #
    def create(self, conn: sqlite3.Connection, book_id: str, borrower: Borrower,
               loan_date: Optional[datetime] = None, notes: Optional[str] = None) -> Loan:
        borrower = clean_borrower(borrower)
        loan_date = ensure_utc(loan_date) if loan_date else utcnow()

        # Fails with InvalidState when the last copy is already out
        self.inventory.take_copy(conn, book_id)

        now = utcnow()
        loan = Loan(
            id=new_id(),
            book_id=book_id,
            borrower=borrower,
            loan_date=loan_date,
            due_date=compute_due_date(loan_date, self.period_days),
            status=LoanStatus.ACTIVE,
            fine=Decimal("0.00"),
            renewal_count=0,
            notes=TextValidator.optional(notes),
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO loans (
                id, book_id, borrower_name, borrower_email, borrower_phone,
                loan_date, due_date, return_date, status, fine, renewal_count,
                notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                loan.id, loan.book_id, borrower.name, borrower.email, borrower.phone,
                to_iso(loan.loan_date), to_iso(loan.due_date), None, loan.status.value,
                str(loan.fine), loan.renewal_count, loan.notes,
                to_iso(loan.created_at), to_iso(loan.updated_at),
            ),
        )
        logger.info(f"Loan {loan.id} created for book {book_id}, due {loan.due_date.date()}")
        return loan

    def renew(self, conn: sqlite3.Connection, loan_id: str, now: Optional[datetime] = None) -> Loan:
        loan = self.get(conn, loan_id)
        if not loan.is_open:
            raise InvalidState("Empréstimo já devolvido não pode ser renovado.")
        if loan.renewal_count >= self.max_renewals:
            logger.info(f"Renewal refused for loan {loan_id}: limit of {self.max_renewals} reached")
            raise LimitExceeded(f"Limite de renovações atingido (máximo {self.max_renewals}).")

        loan.due_date = loan.due_date + timedelta(days=self.period_days)
        loan.renewal_count += 1
        loan.status = LoanStatus.RENEWED
        loan.updated_at = ensure_utc(now) if now else utcnow()
        self._save(conn, loan)
        logger.info(f"Loan {loan_id} renewed ({loan.renewal_count}/{self.max_renewals}), due {loan.due_date.date()}")
        return loan

    def return_loan(self, conn: sqlite3.Connection, loan_id: str,
                    return_date: Optional[datetime] = None) -> Loan:
        loan = self.get(conn, loan_id)
        if not loan.is_open:
            raise LoanAlreadyReturned(f"Empréstimo {loan_id} já foi devolvido.")
        return_date = ensure_utc(return_date) if return_date else utcnow()
        if return_date < loan.loan_date:
            raise ValidationError("A data de devolução não pode ser anterior à data do empréstimo.")

        loan.return_date = return_date
        loan.fine = compute_fine(loan.due_date, return_date, self.daily_fine)
        loan.status = LoanStatus.RETURNED
        loan.updated_at = utcnow()
        self._save(conn, loan)
        self.inventory.release_copy(conn, loan.book_id)

        if loan.fine > 0:
            logger.info(f"Loan {loan_id} returned late, fine {loan.fine}")
        else:
            logger.info(f"Loan {loan_id} returned on time")
        return loan

    # ------------------------- Queries and edits ------------------------- #
    def get(self, conn: sqlite3.Connection, loan_id: str) -> Loan:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise NotFound(f"Empréstimo não encontrado: {loan_id}")
        return Loan.from_row(row)

    def list(self, conn: sqlite3.Connection, book_id: Optional[str] = None,
             email: Optional[str] = None, status: Optional[LoanStatus] = None,
             now: Optional[datetime] = None) -> List[Loan]:
        query = "SELECT * FROM loans"
        clauses, params = [], []
        if book_id:
            clauses.append("book_id = ?")
            params.append(book_id)
        if email:
            clauses.append("borrower_email = ?")
            params.append(email.strip().lower())
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        loans = [Loan.from_row(row) for row in conn.execute(query, params).fetchall()]
        if status is not None:
            # Filter on the display status so 'overdue' works like any other value
            loans = [loan for loan in loans if loan.display_status(now) == status]
        return loans

    def update_details(self, conn: sqlite3.Connection, loan_id: str, *,
                       name: Optional[str] = None, email: Optional[str] = None,
                       phone: Optional[str] = None, notes: Optional[str] = None) -> Loan:
        """Edit contact data or notes of an open loan. Dates, status and fine are not editable."""
        loan = self.get(conn, loan_id)
        if not loan.is_open:
            raise InvalidState("Empréstimo devolvido não pode ser alterado.")
        if name is not None:
            loan.borrower.name = TextValidator.require(name, "usuario_nome")
        if email is not None:
            loan.borrower.email = BorrowerValidator.validate_email(email)
        if phone is not None:
            loan.borrower.phone = TextValidator.optional(phone)
        if notes is not None:
            loan.notes = TextValidator.optional(notes)
        loan.updated_at = utcnow()
        self._save(conn, loan)
        return loan

    def delete(self, conn: sqlite3.Connection, loan_id: str) -> None:
        loan = self.get(conn, loan_id)
        if loan.is_open:
            # Deleting an open loan would strand a copy outside the counters
            raise InvalidState("Registre a devolução antes de excluir o empréstimo.")
        conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
        logger.info(f"Loan {loan_id} deleted")

    def _save(self, conn: sqlite3.Connection, loan: Loan) -> None:
        conn.execute(
            """
            UPDATE loans
               SET borrower_name = ?, borrower_email = ?, borrower_phone = ?,
                   due_date = ?, return_date = ?, status = ?, fine = ?,
                   renewal_count = ?, notes = ?, updated_at = ?
             WHERE id = ?
            """,
            (
                loan.borrower.name, loan.borrower.email, loan.borrower.phone,
                to_iso(loan.due_date), to_iso(loan.return_date), loan.status.value,
                str(loan.fine), loan.renewal_count, loan.notes, to_iso(loan.updated_at),
                loan.id,
            ),
        )
