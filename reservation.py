"""Reservation record and the waiting-queue policy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from loan import Borrower
from utils.time_utils import ensure_utc, parse_iso, utcnow

HOLD_DAYS = 7


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"


QUEUED_STATUSES = (ReservationStatus.ACTIVE, ReservationStatus.NOTIFIED)

STATUS_LABELS = {
    ReservationStatus.ACTIVE: "ativa",
    ReservationStatus.NOTIFIED: "notificada",
    ReservationStatus.EXPIRED: "expirada",
    ReservationStatus.CANCELLED: "cancelada",
    ReservationStatus.FULFILLED: "atendida",
}


@dataclass
class Reservation:
    id: str
    book_id: str
    borrower: Borrower
    reservation_date: datetime
    priority: int = 1
    status: ReservationStatus = ReservationStatus.ACTIVE
    notification_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_lapsed(self, now: Optional[datetime] = None) -> bool:
        """A notified reservation whose pickup window has closed."""
        now = ensure_utc(now) if now else utcnow()
        return (
            self.status == ReservationStatus.NOTIFIED
            and self.expiration_date is not None
            and now > self.expiration_date
        )

    def effective_status(self, now: Optional[datetime] = None) -> ReservationStatus:
        # Expiry is evaluated lazily: the stored status stays 'notified'
        if self.is_lapsed(now):
            return ReservationStatus.EXPIRED
        return self.status

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Reservation":
        return Reservation(
            id=row["id"],
            book_id=row["book_id"],
            borrower=Borrower(
                name=row["borrower_name"],
                email=row["borrower_email"],
                phone=row["borrower_phone"],
            ),
            reservation_date=parse_iso(row["reservation_date"]),
            priority=row["priority"],
            status=ReservationStatus(row["status"]),
            notification_date=parse_iso(row["notification_date"]),
            expiration_date=parse_iso(row["expiration_date"]),
            notes=row["notes"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


def compute_expiration(notification_date: datetime, hold_days: int = HOLD_DAYS) -> datetime:
    return ensure_utc(notification_date) + timedelta(days=hold_days)


def next_priority(existing: Iterable[Reservation]) -> int:
    """1 + the highest priority among the book's active reservations.

    Cancelled or fulfilled entries never free their number: priorities are
    not compacted.
    """
    active = [r.priority for r in existing if r.status == ReservationStatus.ACTIVE]
    return max(active, default=0) + 1


def queue_key(reservation: Reservation) -> Tuple[int, datetime]:
    return reservation.priority, reservation.reservation_date


def order_queue(reservations: Iterable[Reservation],
                now: Optional[datetime] = None) -> List[Reservation]:
    """Waiting reservations sorted at read time: priority, then FIFO."""
    waiting = [r for r in reservations if r.effective_status(now) in QUEUED_STATUSES]
    return sorted(waiting, key=queue_key)
