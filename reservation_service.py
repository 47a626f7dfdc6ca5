import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from config import settings
from errors import InvalidState, NotFound
from inventory import Inventory
from loan import Borrower
from loan_service import clean_borrower, new_id
from reservation import (
    QUEUED_STATUSES,
    Reservation,
    ReservationStatus,
    compute_expiration,
    next_priority,
    order_queue,
)
from utils.time_utils import ensure_utc, to_iso, utcnow
from utils.validators import BorrowerValidator, TextValidator

logger = logging.getLogger(__name__)


class ReservationService:
    """Reservation queue manager.

    active -> notified -> fulfilled, with cancelled/expired as the other exits.
    Expiry is lazy: a notified reservation past its expiration date reads as
    expired everywhere, and :meth:`expire_due` can persist that eagerly.
    Leaving any terminal state (fulfilled, cancelled, expired) is always an
    InvalidState error, so repeating a cancel is rejected rather than ignored.
    """

    def __init__(self, inventory: Inventory,
                 hold_days: int = settings.reservation_hold_days) -> None:
        self.inventory = inventory
        self.hold_days = hold_days

    # ------------------------- Transitions ------------------------- #
    def create(self, conn: sqlite3.Connection, book_id: str, borrower: Borrower,
               reservation_date: Optional[datetime] = None,
               notes: Optional[str] = None) -> Reservation:
        borrower = clean_borrower(borrower)
        self.inventory.counters(conn, book_id)  # NotFound for unknown books

        existing = self.list(conn, book_id=book_id)
        if any(r.borrower.email == borrower.email and r.status in QUEUED_STATUSES for r in existing):
            # Duplicates are logged, not refused
            logger.warning(f"{borrower.email} already has an open reservation for book {book_id}")

        now = utcnow()
        reservation = Reservation(
            id=new_id(),
            book_id=book_id,
            borrower=borrower,
            reservation_date=ensure_utc(reservation_date) if reservation_date else now,
            priority=next_priority(existing),
            status=ReservationStatus.ACTIVE,
            notes=TextValidator.optional(notes),
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            """
            INSERT INTO reservations (
                id, book_id, borrower_name, borrower_email, borrower_phone,
                reservation_date, expiration_date, notification_date, status,
                priority, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reservation.id, book_id, borrower.name, borrower.email, borrower.phone,
                to_iso(reservation.reservation_date), None, None, reservation.status.value,
                reservation.priority, reservation.notes,
                to_iso(reservation.created_at), to_iso(reservation.updated_at),
            ),
        )
        logger.info(f"Reservation {reservation.id} queued for book {book_id} with priority {reservation.priority}")
        return reservation

    def notify(self, conn: sqlite3.Connection, reservation_id: str,
               now: Optional[datetime] = None) -> Reservation:
        now = ensure_utc(now) if now else utcnow()
        reservation = self.get(conn, reservation_id)
        self._require(reservation, now, ReservationStatus.ACTIVE)
        if self.inventory.counters(conn, reservation.book_id)["available_copies"] <= 0:
            raise InvalidState("Não há exemplares disponíveis para notificar o usuário.")

        reservation.status = ReservationStatus.NOTIFIED
        reservation.notification_date = now
        reservation.expiration_date = compute_expiration(now, self.hold_days)
        reservation.updated_at = now
        self._save(conn, reservation)
        logger.info(f"Reservation {reservation_id} notified, pickup until {reservation.expiration_date.date()}")
        return reservation

    def fulfill(self, conn: sqlite3.Connection, reservation_id: str,
                now: Optional[datetime] = None) -> Reservation:
        """Mark the reservation served. The loan and the copy are the caller's business."""
        now = ensure_utc(now) if now else utcnow()
        reservation = self.get(conn, reservation_id)
        self._require(reservation, now, ReservationStatus.ACTIVE, ReservationStatus.NOTIFIED)
        reservation.status = ReservationStatus.FULFILLED
        reservation.updated_at = now
        self._save(conn, reservation)
        logger.info(f"Reservation {reservation_id} fulfilled")
        return reservation

    def cancel(self, conn: sqlite3.Connection, reservation_id: str,
               now: Optional[datetime] = None) -> Reservation:
        now = ensure_utc(now) if now else utcnow()
        reservation = self.get(conn, reservation_id)
        self._require(reservation, now, ReservationStatus.ACTIVE, ReservationStatus.NOTIFIED)
        reservation.status = ReservationStatus.CANCELLED
        reservation.updated_at = now
        self._save(conn, reservation)
        logger.info(f"Reservation {reservation_id} cancelled")
        return reservation

    def expire_due(self, conn: sqlite3.Connection, now: Optional[datetime] = None) -> List[Reservation]:
        """Persist 'expired' for every notified reservation whose pickup window closed."""
        now = ensure_utc(now) if now else utcnow()
        rows = conn.execute(
            "SELECT * FROM reservations WHERE status = ?", (ReservationStatus.NOTIFIED.value,)
        ).fetchall()
        expired = []
        for row in rows:
            reservation = Reservation.from_row(row)
            if reservation.is_lapsed(now):
                reservation.status = ReservationStatus.EXPIRED
                reservation.updated_at = now
                self._save(conn, reservation)
                expired.append(reservation)
        if expired:
            logger.info(f"Expired {len(expired)} reservation(s) past their pickup window")
        return expired

    # ------------------------- Queries and edits ------------------------- #
    def get(self, conn: sqlite3.Connection, reservation_id: str) -> Reservation:
        row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
        if row is None:
            raise NotFound(f"Reserva não encontrada: {reservation_id}")
        return Reservation.from_row(row)

    def list(self, conn: sqlite3.Connection, book_id: Optional[str] = None,
             status: Optional[ReservationStatus] = None,
             now: Optional[datetime] = None) -> List[Reservation]:
        query = "SELECT * FROM reservations"
        params = []
        if book_id:
            query += " WHERE book_id = ?"
            params.append(book_id)
        query += " ORDER BY created_at ASC"
        reservations = [Reservation.from_row(row) for row in conn.execute(query, params).fetchall()]
        if status is not None:
            reservations = [r for r in reservations if r.effective_status(now) == status]
        return reservations

    def queue_for_book(self, conn: sqlite3.Connection, book_id: str,
                       now: Optional[datetime] = None) -> List[Reservation]:
        self.inventory.counters(conn, book_id)
        return order_queue(self.list(conn, book_id=book_id), now)

    def update_details(self, conn: sqlite3.Connection, reservation_id: str, *,
                       name: Optional[str] = None, email: Optional[str] = None,
                       phone: Optional[str] = None, notes: Optional[str] = None) -> Reservation:
        reservation = self.get(conn, reservation_id)
        if reservation.effective_status() not in QUEUED_STATUSES:
            raise InvalidState("Reserva encerrada não pode ser alterada.")
        if name is not None:
            reservation.borrower.name = TextValidator.require(name, "usuario_nome")
        if email is not None:
            reservation.borrower.email = BorrowerValidator.validate_email(email)
        if phone is not None:
            reservation.borrower.phone = TextValidator.optional(phone)
        if notes is not None:
            reservation.notes = TextValidator.optional(notes)
        reservation.updated_at = utcnow()
        self._save(conn, reservation)
        return reservation

    def delete(self, conn: sqlite3.Connection, reservation_id: str) -> None:
        self.get(conn, reservation_id)
        conn.execute("DELETE FROM reservations WHERE id = ?", (reservation_id,))
        logger.info(f"Reservation {reservation_id} deleted")

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _require(reservation: Reservation, now: datetime, *allowed: ReservationStatus) -> None:
        current = reservation.effective_status(now)
        if current not in allowed:
            raise InvalidState(
                f"Operação não permitida para reserva com status '{current.value}'."
            )

    def _save(self, conn: sqlite3.Connection, reservation: Reservation) -> None:
        conn.execute(
            """
            UPDATE reservations
               SET borrower_name = ?, borrower_email = ?, borrower_phone = ?,
                   expiration_date = ?, notification_date = ?, status = ?,
                   priority = ?, notes = ?, updated_at = ?
             WHERE id = ?
            """,
            (
                reservation.borrower.name, reservation.borrower.email, reservation.borrower.phone,
                to_iso(reservation.expiration_date), to_iso(reservation.notification_date),
                reservation.status.value, reservation.priority, reservation.notes,
                to_iso(reservation.updated_at), reservation.id,
            ),
        )
