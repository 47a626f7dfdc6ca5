"""Loan record and the circulation policy that governs it.

Due dates and fines are computed here and nowhere else; every entry point
(REST, CLI, orchestrator) goes through these functions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from utils.time_utils import ensure_utc, parse_iso, utcnow

LOAN_PERIOD_DAYS = 14
MAX_RENEWALS = 3
DAILY_FINE = Decimal("2.50")

_CENTS = Decimal("0.01")


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RENEWED = "renewed"
    RETURNED = "returned"
    # Display-only: derived at read time, never stored
    OVERDUE = "overdue"


OPEN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.RENEWED)

# Vocabulary shown to librarians (REST payloads and CLI output)
STATUS_LABELS = {
    LoanStatus.ACTIVE: "ativo",
    LoanStatus.RENEWED: "renovado",
    LoanStatus.RETURNED: "devolvido",
    LoanStatus.OVERDUE: "atrasado",
}


def compute_due_date(loan_date: datetime, period_days: int = LOAN_PERIOD_DAYS) -> datetime:
    return ensure_utc(loan_date) + timedelta(days=period_days)


def days_late(due_date: datetime, return_date: datetime) -> int:
    """Whole days between due date and return, truncated; never negative."""
    delta = ensure_utc(return_date) - ensure_utc(due_date)
    if delta <= timedelta(0):
        return 0
    return delta // timedelta(days=1)


def compute_fine(due_date: datetime, return_date: datetime,
                 daily_rate: Decimal = DAILY_FINE) -> Decimal:
    """Fine owed for a return: whole days late times the daily rate."""
    amount = Decimal(days_late(due_date, return_date)) * Decimal(daily_rate)
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class Borrower:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass
class Loan:
    id: str
    book_id: str
    borrower: Borrower
    loan_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    return_date: Optional[datetime] = None
    fine: Decimal = Decimal("0.00")
    renewal_count: int = 0
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) if now else utcnow()
        return self.is_open and now > self.due_date

    def display_status(self, now: Optional[datetime] = None) -> LoanStatus:
        if self.is_overdue(now):
            return LoanStatus.OVERDUE
        return self.status

    def accrued_fine(self, now: Optional[datetime] = None,
                     daily_rate: Decimal = DAILY_FINE) -> Decimal:
        """Fine so far: the settled amount once returned, otherwise what returning now would cost."""
        if not self.is_open:
            return self.fine
        return compute_fine(self.due_date, now or utcnow(), daily_rate)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        return Loan(
            id=row["id"],
            book_id=row["book_id"],
            borrower=Borrower(
                name=row["borrower_name"],
                email=row["borrower_email"],
                phone=row["borrower_phone"],
            ),
            loan_date=parse_iso(row["loan_date"]),
            due_date=parse_iso(row["due_date"]),
            status=LoanStatus(row["status"]),
            return_date=parse_iso(row["return_date"]),
            fine=Decimal(row["fine"]),
            renewal_count=row["renewal_count"],
            notes=row["notes"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
