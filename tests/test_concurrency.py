import gc
import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest

from errors import InvalidState, NotFound
from library import Library
from loan import Borrower


def _race(lib_for, book_id, attempts):
    barrier = threading.Barrier(attempts)

    def attempt(i):
        lib = lib_for(i)
        barrier.wait()
        try:
            return lib.create_loan(book_id, Borrower(f"Leitor {i}", f"leitor{i}@example.com"))
        except InvalidState:
            return None

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        return list(pool.map(attempt, range(attempts)))


def test_only_one_loan_wins_the_last_copy(lib, add_book):
    book = add_book(total_copies=1)
    results = _race(lambda i: lib, book.id, attempts=8)

    assert sum(1 for r in results if r is not None) == 1
    assert lib.get_book(book.id).available_copies == 0
    assert len(lib.list_loans(book_id=book.id)) == 1


def test_separate_instances_share_the_database_guard(lib, add_book):
    # Different Library objects do not share locks; the conditional UPDATE still holds
    book = add_book(total_copies=2)
    instances = [Library(db_file=lib.db_file) for _ in range(6)]
    results = _race(lambda i: instances[i], book.id, attempts=6)

    assert sum(1 for r in results if r is not None) == 2
    assert lib.get_book(book.id).available_copies == 0


def test_different_books_do_not_block_each_other(lib, add_book):
    books = [add_book(total_copies=1) for _ in range(4)]

    def lend(book):
        return lib.create_loan(book.id, Borrower("Ana", "ana@example.com"))

    with ThreadPoolExecutor(max_workers=4) as pool:
        loans = list(pool.map(lend, books))

    assert {loan.book_id for loan in loans} == {b.id for b in books}
    assert all(lib.get_book(b.id).available_copies == 0 for b in books)


def test_lock_registry_does_not_grow_on_unknown_books(lib, add_book):
    book = add_book()
    for i in range(200):
        with pytest.raises(NotFound):
            lib.create_loan(uuid4().hex, Borrower(f"Leitor {i}", f"leitor{i}@example.com"))
        with pytest.raises(NotFound):
            lib.create_reservation(uuid4().hex, Borrower(f"Leitor {i}", f"leitor{i}@example.com"))
    lib.remove_book(book.id)
    gc.collect()
    assert lib.inventory.tracked_books() == 0


def test_book_scope_is_shared_while_held(lib, add_book):
    book = add_book()
    with lib.inventory.book_scope(book.id):
        with lib.inventory.book_scope("outro-livro"):
            assert lib.inventory.tracked_books() == 2
        assert lib.inventory.tracked_books() == 1
        assert lib.inventory._lock_for(book.id) is lib.inventory._lock_for(book.id)
    gc.collect()
    assert lib.inventory.tracked_books() == 0
