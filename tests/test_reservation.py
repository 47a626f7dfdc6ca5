from datetime import datetime, timedelta, timezone

from loan import Borrower
from reservation import (
    Reservation,
    ReservationStatus,
    compute_expiration,
    next_priority,
    order_queue,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _res(rid, priority, status=ReservationStatus.ACTIVE, minutes=0, **extra):
    return Reservation(
        id=rid,
        book_id="b1",
        borrower=Borrower(f"User {rid}", f"{rid}@example.com"),
        reservation_date=T0 + timedelta(minutes=minutes),
        priority=priority,
        status=status,
        **extra,
    )


def test_first_reservation_gets_priority_one():
    assert next_priority([]) == 1


def test_priority_follows_highest_active():
    assert next_priority([_res("a", 1), _res("b", 2)]) == 3


def test_priorities_are_not_compacted_after_cancel():
    existing = [_res("a", 1, ReservationStatus.CANCELLED), _res("b", 2)]
    assert next_priority(existing) == 3


def test_closed_reservations_do_not_count():
    existing = [_res("a", 7, ReservationStatus.FULFILLED), _res("b", 2, ReservationStatus.EXPIRED)]
    assert next_priority(existing) == 1


def test_queue_is_sorted_by_priority():
    queue = order_queue([_res("c", 3), _res("a", 1), _res("b", 2)], now=T0)
    assert [r.priority for r in queue] == [1, 2, 3]


def test_priority_ties_are_first_come_first_served():
    queue = order_queue([_res("late", 1, minutes=30), _res("early", 1, minutes=5)], now=T0)
    assert [r.id for r in queue] == ["early", "late"]


def test_queue_skips_closed_and_lapsed_reservations():
    lapsed = _res(
        "n", 1, ReservationStatus.NOTIFIED,
        notification_date=T0, expiration_date=compute_expiration(T0),
    )
    waiting = _res("w", 2)
    cancelled = _res("c", 3, ReservationStatus.CANCELLED)

    assert [r.id for r in order_queue([lapsed, waiting, cancelled], now=T0 + timedelta(days=1))] == ["n", "w"]
    assert [r.id for r in order_queue([lapsed, waiting, cancelled], now=T0 + timedelta(days=8))] == ["w"]


def test_lapsed_notification_reads_as_expired():
    res = _res("n", 1, ReservationStatus.NOTIFIED,
               notification_date=T0, expiration_date=compute_expiration(T0))
    assert res.expiration_date == T0 + timedelta(days=7)
    assert res.effective_status(T0 + timedelta(days=7)) == ReservationStatus.NOTIFIED
    assert res.effective_status(T0 + timedelta(days=7, seconds=1)) == ReservationStatus.EXPIRED
    assert res.status == ReservationStatus.NOTIFIED
