from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import InvalidState, LimitExceeded, NotFound, ValidationError
from library import Library
from loan import Borrower, LoanStatus
from reservation import ReservationStatus
from utils.time_utils import utcnow


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _counters(lib, book_id):
    book = lib.get_book(book_id)
    return book.available_copies, book.total_copies


# ------------------------- Books ------------------------- #
def test_add_book_defaults_available_to_total(lib):
    book = lib.add_book(title="Duna", author="Frank Herbert", isbn="978-0-441-17271-9",
                        category="Ficção científica", total_copies="3")
    assert book.isbn == "9780441172719"
    assert (book.available_copies, book.total_copies) == (3, 3)
    assert book.is_available
    assert lib.get_book(book.id).title == "Duna"


def test_add_book_rejects_bad_input(lib):
    with pytest.raises(ValidationError):
        lib.add_book(title="X", author="Y", isbn="9780441172710", category="Z")
    with pytest.raises(ValidationError):
        lib.add_book(title="X", author="Y", isbn="9780441172719", category="Z", total_copies="dois")
    with pytest.raises(ValidationError):
        lib.add_book(title="X", author="Y", isbn="9780441172719", category="Z",
                     total_copies=1, available_copies=2)
    with pytest.raises(ValidationError):
        # Copies off the shelf would have no loan behind them
        lib.add_book(title="X", author="Y", isbn="9780441172719", category="Z",
                     total_copies=3, available_copies=1)
    with pytest.raises(ValidationError):
        lib.add_book(title="  ", author="Y", isbn="9780441172719", category="Z")
    assert lib.list_books() == []


def test_add_duplicate_isbn(lib):
    lib.add_book(title="Clean Code", author="Robert C. Martin", isbn="9780132350884", category="TI")
    with pytest.raises(ValidationError, match="já existe"):
        lib.add_book(title="Clean Code", author="Robert C. Martin", isbn="9780132350884", category="TI")
    assert len(lib.list_books()) == 1


def test_list_books_search(lib, add_book):
    add_book(title="Harry Potter", author="J. K. Rowling")
    add_book(title="O Hobbit", author="J. R. R. Tolkien")
    assert [b.title for b in lib.list_books("tolkien")] == ["O Hobbit"]
    assert len(lib.list_books()) == 2


def test_update_book_shifts_available_with_total(lib, add_book, ana, bruno):
    book = add_book(total_copies=3)
    lib.create_loan(book.id, ana)
    lib.create_loan(book.id, bruno)

    with pytest.raises(InvalidState):
        lib.update_book(book.id, total_copies=1)
    assert _counters(lib, book.id) == (1, 3)

    updated = lib.update_book(book.id, total_copies=5, title="Novo título", location="Estante 4")
    assert (updated.available_copies, updated.total_copies) == (3, 5)
    assert updated.title == "Novo título"
    assert updated.location == "Estante 4"


def test_update_missing_book(lib):
    with pytest.raises(NotFound):
        lib.update_book("nope", title="X")


def test_remove_book_refused_while_on_loan(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana)
    with pytest.raises(InvalidState):
        lib.remove_book(book.id)

    lib.return_loan(loan.id)
    lib.remove_book(book.id)
    with pytest.raises(NotFound):
        lib.get_book(book.id)


def test_remove_book_refused_with_waiting_reservations(lib, add_book, ana):
    book = add_book()
    lib.create_reservation(book.id, ana)
    with pytest.raises(InvalidState):
        lib.remove_book(book.id)


# ------------------------- Loans ------------------------- #
def test_loan_on_last_copy(lib, add_book, ana):
    book = add_book(total_copies=1)
    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 3, 1))

    assert loan.status == LoanStatus.ACTIVE
    assert loan.due_date == _utc(2024, 3, 15)
    assert loan.renewal_count == 0
    assert loan.fine == Decimal("0.00")
    assert _counters(lib, book.id) == (0, 1)
    assert not lib.get_book(book.id).is_available


def test_loan_without_copies_is_refused(lib, add_book, ana, bruno):
    book = add_book(total_copies=1)
    lib.create_loan(book.id, ana)
    with pytest.raises(InvalidState):
        lib.create_loan(book.id, bruno)
    assert _counters(lib, book.id) == (0, 1)
    assert len(lib.list_loans(book_id=book.id)) == 1


def test_loan_for_unknown_book(lib, ana):
    with pytest.raises(NotFound):
        lib.create_loan("missing", ana)


def test_invalid_borrower_takes_no_copy(lib, add_book):
    book = add_book(total_copies=1)
    with pytest.raises(ValidationError):
        lib.create_loan(book.id, Borrower("Ana", "not-an-email"))
    with pytest.raises(ValidationError):
        lib.create_loan(book.id, Borrower("", "ana@example.com"))
    assert _counters(lib, book.id) == (1, 1)


def test_renewal_cap(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 1, 1))

    for expected in range(1, 4):
        loan = lib.renew_loan(loan.id)
        assert loan.renewal_count == expected
        assert loan.status == LoanStatus.RENEWED
    assert loan.due_date == _utc(2024, 1, 1) + timedelta(days=14 * 4)

    with pytest.raises(LimitExceeded):
        lib.renew_loan(loan.id)
    assert lib.get_loan(loan.id).renewal_count == 3
    # Renewing never touches inventory
    assert _counters(lib, book.id) == (0, 1)


def test_return_computes_fine_and_restores_copy(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 1, 1))
    result = lib.return_loan(loan.id, return_date=_utc(2024, 1, 18))

    assert result.loan.status == LoanStatus.RETURNED
    assert result.loan.return_date == _utc(2024, 1, 18)
    assert result.loan.fine == Decimal("7.50")
    assert result.notified is None
    assert _counters(lib, book.id) == (1, 1)
    assert lib.get_loan(loan.id).fine == Decimal("7.50")


def test_return_on_time_has_no_fine(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 1, 1))
    assert lib.return_loan(loan.id, return_date=_utc(2024, 1, 15)).loan.fine == Decimal("0.00")


def test_returning_twice_fails(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana)
    lib.return_loan(loan.id)

    with pytest.raises(InvalidState):
        lib.return_loan(loan.id)
    with pytest.raises(NotFound):
        lib.return_loan(loan.id)
    with pytest.raises(InvalidState):
        lib.renew_loan(loan.id)
    assert _counters(lib, book.id) == (1, 1)


def test_return_before_loan_date_is_rejected(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 1, 10))
    with pytest.raises(ValidationError):
        lib.return_loan(loan.id, return_date=_utc(2024, 1, 9))
    assert lib.get_loan(loan.id).is_open


def test_counters_stay_in_bounds(lib, add_book, ana, bruno):
    book = add_book(total_copies=2)
    loans = [lib.create_loan(book.id, b) for b in (ana, bruno)]
    for loan in loans:
        available, total = _counters(lib, book.id)
        assert 0 <= available <= total
        lib.return_loan(loan.id)
    assert _counters(lib, book.id) == (2, 2)


def test_overdue_is_derived(lib, add_book, ana, bruno):
    book = add_book(total_copies=2)
    late = lib.create_loan(book.id, ana, loan_date=utcnow() - timedelta(days=20))
    lib.create_loan(book.id, bruno)

    overdue = lib.list_loans(status=LoanStatus.OVERDUE)
    assert [loan.id for loan in overdue] == [late.id]
    assert lib.get_loan(late.id).status == LoanStatus.ACTIVE
    assert len(lib.list_loans(status=LoanStatus.ACTIVE)) == 1


def test_update_and_delete_loan(lib, add_book, ana):
    book = add_book()
    loan = lib.create_loan(book.id, ana)

    updated = lib.update_loan(loan.id, phone="11 1234-5678", notes="Capa danificada")
    assert updated.borrower.phone == "11 1234-5678"
    assert updated.notes == "Capa danificada"

    with pytest.raises(InvalidState):
        lib.delete_loan(loan.id)
    lib.return_loan(loan.id)
    with pytest.raises(InvalidState):
        lib.update_loan(loan.id, notes="tarde demais")
    lib.delete_loan(loan.id)
    with pytest.raises(NotFound):
        lib.get_loan(loan.id)


def test_list_loans_by_email(lib, add_book, ana, bruno):
    book = add_book(total_copies=2)
    lib.create_loan(book.id, ana)
    lib.create_loan(book.id, bruno)
    assert [loan.borrower.name for loan in lib.list_loans(email="BRUNO@example.com")] == ["Bruno Lima"]


# ------------------------- Reservations ------------------------- #
def test_reservation_priorities_are_not_compacted(lib, add_book, ana, bruno):
    book = add_book()
    first = lib.create_reservation(book.id, ana)
    second = lib.create_reservation(book.id, bruno)
    assert (first.priority, second.priority) == (1, 2)

    lib.cancel_reservation(first.id)
    third = lib.create_reservation(book.id, Borrower("Carla", "carla@example.com"))
    assert third.priority == 3
    assert [r.id for r in lib.get_queue_for_book(book.id)] == [second.id, third.id]


def test_duplicate_reservation_is_allowed(lib, add_book, ana):
    book = add_book()
    lib.create_reservation(book.id, ana)
    lib.create_reservation(book.id, ana)
    assert len(lib.get_queue_for_book(book.id)) == 2


def test_reservation_for_unknown_book(lib, ana):
    with pytest.raises(NotFound):
        lib.create_reservation("missing", ana)
    with pytest.raises(NotFound):
        lib.get_queue_for_book("missing")


def test_notify_requires_available_copy(lib, add_book, ana, bruno):
    book = add_book()
    lib.create_loan(book.id, ana)
    reservation = lib.create_reservation(book.id, bruno)
    with pytest.raises(InvalidState):
        lib.notify_reservation(reservation.id)
    assert lib.get_reservation(reservation.id).status == ReservationStatus.ACTIVE


def test_notify_sets_pickup_window(lib, add_book, ana):
    book = add_book()
    reservation = lib.create_reservation(book.id, ana)
    now = _utc(2024, 6, 1, 12)
    notified = lib.notify_reservation(reservation.id, now=now)

    assert notified.status == ReservationStatus.NOTIFIED
    assert notified.notification_date == now
    assert notified.expiration_date == _utc(2024, 6, 8, 12)
    with pytest.raises(InvalidState):
        lib.notify_reservation(reservation.id)


def test_cancel_policy(lib, add_book, ana, bruno):
    book = add_book()
    reservation = lib.create_reservation(book.id, ana)
    assert lib.cancel_reservation(reservation.id).status == ReservationStatus.CANCELLED
    with pytest.raises(InvalidState):
        lib.cancel_reservation(reservation.id)

    served = lib.create_reservation(book.id, bruno)
    lib.fulfill_reservation(served.id)
    with pytest.raises(InvalidState):
        lib.cancel_reservation(served.id)


def test_fulfill_directly_from_active(lib, add_book, ana):
    book = add_book()
    reservation = lib.create_reservation(book.id, ana)
    result = lib.fulfill_reservation(reservation.id)
    assert result.reservation.status == ReservationStatus.FULFILLED
    assert result.loan is None
    # Inventory is untouched without checkout
    assert _counters(lib, book.id) == (1, 1)


def test_fulfill_with_checkout_lends_the_copy(lib, add_book, ana):
    book = add_book()
    reservation = lib.create_reservation(book.id, ana)
    lib.notify_reservation(reservation.id)
    result = lib.fulfill_reservation(reservation.id, checkout=True)

    assert result.reservation.status == ReservationStatus.FULFILLED
    assert result.loan.borrower.email == "ana@example.com"
    assert _counters(lib, book.id) == (0, 1)


def test_checkout_without_copy_rolls_back(lib, add_book, ana, bruno):
    book = add_book()
    lib.create_loan(book.id, bruno)
    reservation = lib.create_reservation(book.id, ana)
    with pytest.raises(InvalidState):
        lib.fulfill_reservation(reservation.id, checkout=True)
    assert lib.get_reservation(reservation.id).status == ReservationStatus.ACTIVE


def test_lapsed_notification_expires_lazily(lib, add_book, ana, bruno):
    book = add_book()
    stale = lib.create_reservation(book.id, ana)
    waiting = lib.create_reservation(book.id, bruno)
    lib.notify_reservation(stale.id, now=utcnow() - timedelta(days=10))

    assert [r.id for r in lib.get_queue_for_book(book.id)] == [waiting.id]
    assert [r.id for r in lib.list_reservations(status=ReservationStatus.EXPIRED)] == [stale.id]
    with pytest.raises(InvalidState):
        lib.fulfill_reservation(stale.id)

    expired = lib.expire_reservations()
    assert [r.id for r in expired] == [stale.id]
    assert lib.get_reservation(stale.id).status == ReservationStatus.EXPIRED
    assert lib.expire_reservations() == []


def test_return_notifies_next_in_line(lib, add_book, ana, bruno):
    book = add_book()
    loan = lib.create_loan(book.id, ana)
    first = lib.create_reservation(book.id, bruno)
    second = lib.create_reservation(book.id, Borrower("Carla", "carla@example.com"))

    result = lib.return_loan(loan.id)
    assert result.notified.id == first.id
    assert lib.get_reservation(first.id).status == ReservationStatus.NOTIFIED
    assert lib.get_reservation(second.id).status == ReservationStatus.ACTIVE


def test_return_does_not_notify_twice_for_one_copy(lib, add_book, ana, bruno):
    book = add_book(total_copies=2)
    first_loan = lib.create_loan(book.id, ana)
    second_loan = lib.create_loan(book.id, bruno)
    first = lib.create_reservation(book.id, Borrower("Carla", "carla@example.com"))
    second = lib.create_reservation(book.id, Borrower("Davi", "davi@example.com"))
    third = lib.create_reservation(book.id, Borrower("Eva", "eva@example.com"))

    assert lib.return_loan(first_loan.id).notified.id == first.id
    assert lib.return_loan(second_loan.id).notified.id == second.id
    assert lib.get_reservation(third.id).status == ReservationStatus.ACTIVE


def test_return_handoff_can_be_disabled(lib, add_book, ana, bruno):
    lib.auto_notify_on_return = False
    book = add_book()
    loan = lib.create_loan(book.id, ana)
    reservation = lib.create_reservation(book.id, bruno)
    assert lib.return_loan(loan.id).notified is None
    assert lib.get_reservation(reservation.id).status == ReservationStatus.ACTIVE


def test_closed_reservation_cannot_be_edited(lib, add_book, ana):
    book = add_book()
    reservation = lib.create_reservation(book.id, ana)
    assert lib.update_reservation(reservation.id, notes="Ligar à tarde").notes == "Ligar à tarde"
    lib.cancel_reservation(reservation.id)
    with pytest.raises(InvalidState):
        lib.update_reservation(reservation.id, notes="x")
    lib.delete_reservation(reservation.id)
    with pytest.raises(NotFound):
        lib.get_reservation(reservation.id)


def test_end_to_end_single_copy(lib, ana, bruno):
    book = lib.add_book(title="Harry Potter", author="J. K. Rowling", isbn="9780590353427",
                        category="Fantasia", total_copies=1, available_copies=1)

    loan = lib.create_loan(book.id, ana, loan_date=_utc(2024, 1, 1))
    assert _counters(lib, book.id) == (0, 1)

    with pytest.raises(InvalidState):
        lib.create_loan(book.id, bruno)

    result = lib.return_loan(loan.id, return_date=_utc(2024, 1, 16))
    assert _counters(lib, book.id) == (1, 1)
    assert result.loan.fine == Decimal("2.50")


# ------------------------- Authors and categories ------------------------- #
def test_author_crud(lib):
    author = lib.add_author(name="Machado de Assis", nationality="Brasileira",
                            genres=["Romance", "Conto"], birth_date="1839-06-21T00:00:00Z")
    assert author.active
    assert lib.get_author(author.id).genres == ["Romance", "Conto"]
    assert lib.get_author(author.id).birth_date == _utc(1839, 6, 21)

    updated = lib.update_author(author.id, active=False, total_books=9)
    assert (updated.active, updated.total_books) == (False, 9)
    assert [a.name for a in lib.list_authors()] == ["Machado de Assis"]

    lib.remove_author(author.id)
    with pytest.raises(NotFound):
        lib.remove_author(author.id)


def test_author_requires_name(lib):
    with pytest.raises(ValidationError):
        lib.add_author(nationality="Portuguesa")


def test_category_code_is_unique(lib):
    lib.add_category(name="Romance", code="ROM", color="#ff0000")
    with pytest.raises(ValidationError):
        lib.add_category(name="Romance histórico", code="ROM")

    other = lib.add_category(name="Poesia", code="POE", sort_order=2)
    with pytest.raises(ValidationError):
        lib.update_category(other.id, code="ROM")
    assert lib.update_category(other.id, active=False).active is False
    assert [c.code for c in lib.list_categories()] == ["POE", "ROM"]


# ------------------------- Statistics ------------------------- #
def test_statistics(lib, add_book, ana, bruno):
    lent_out = add_book(total_copies=1)
    add_book(total_copies=2)
    lib.create_loan(lent_out.id, ana, loan_date=utcnow() - timedelta(days=30))
    lib.create_reservation(lent_out.id, bruno)
    lib.add_author(name="Clarice Lispector")
    lib.add_category(name="Crônica", code="CRO")

    stats = lib.get_statistics()
    assert stats == {
        "total_books": 2,
        "available_books": 1,
        "active_loans": 1,
        "overdue_loans": 1,
        "active_reservations": 1,
        "total_categories": 1,
        "total_authors": 1,
    }


def test_data_persists_across_instances(lib, add_book):
    book = add_book()
    other = Library(db_file=lib.db_file)
    assert other.get_book(book.id).isbn == book.isbn
