"""Shared inventory counters.

``available_copies`` moves only through :meth:`Inventory.take_copy` (loan
created) and :meth:`Inventory.release_copy` (loan returned). Each move is a
single conditional UPDATE, so the check and the write cannot be split by a
concurrent request; callers additionally hold :meth:`Inventory.book_scope`
so requests for the same book queue up in-process instead of racing for
the database write lock.
"""

import logging
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from typing import Iterator

from errors import InvalidState, NotFound
from utils.time_utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class _BookLock:
    """Per-book mutex. Wraps ``threading.Lock`` so the registry can hold it weakly."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_BookLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class Inventory:
    def __init__(self) -> None:
        # Entries vanish once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, _BookLock]" = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def _lock_for(self, book_id: str) -> _BookLock:
        with self._registry_lock:
            lock = self._locks.get(book_id)
            if lock is None:
                lock = _BookLock()
                self._locks[book_id] = lock
            return lock

    def tracked_books(self) -> int:
        """Number of books with a live lock."""
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def book_scope(self, book_id: str) -> Iterator[None]:
        """Serialise operations on one book. Different books never contend."""
        lock = self._lock_for(book_id)
        with lock:
            yield

    def counters(self, conn: sqlite3.Connection, book_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT total_copies, available_copies FROM books WHERE id = ?", (book_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Livro não encontrado: {book_id}")
        return row

    def take_copy(self, conn: sqlite3.Connection, book_id: str) -> int:
        """Decrement the available count; returns the new count."""
        cursor = conn.execute(
            """
            UPDATE books
               SET available_copies = available_copies - 1, updated_at = ?
             WHERE id = ? AND available_copies > 0
            """,
            (to_iso(utcnow()), book_id),
        )
        if cursor.rowcount == 0:
            # Distinguish a missing book from an exhausted one
            self.counters(conn, book_id)
            logger.info(f"Loan refused for book {book_id}: no copies available")
            raise InvalidState("Nenhum exemplar disponível para este livro.")
        remaining = self.counters(conn, book_id)["available_copies"]
        logger.debug(f"Copy taken from book {book_id}, {remaining} left")
        return remaining

    def release_copy(self, conn: sqlite3.Connection, book_id: str) -> int:
        """Increment the available count; returns the new count."""
        cursor = conn.execute(
            """
            UPDATE books
               SET available_copies = available_copies + 1, updated_at = ?
             WHERE id = ? AND available_copies < total_copies
            """,
            (to_iso(utcnow()), book_id),
        )
        if cursor.rowcount == 0:
            self.counters(conn, book_id)
            raise InvalidState("Todos os exemplares deste livro já estão no acervo.")
        available = self.counters(conn, book_id)["available_copies"]
        logger.debug(f"Copy returned to book {book_id}, {available} available")
        return available

    def adjust_total(self, conn: sqlite3.Connection, book_id: str, new_total: int) -> None:
        """Change the number of owned copies, keeping the copies on loan constant."""
        row = self.counters(conn, book_id)
        on_loan = row["total_copies"] - row["available_copies"]
        if new_total < on_loan:
            raise InvalidState(
                f"Não é possível reduzir para {new_total} exemplares: {on_loan} estão emprestados."
            )
        conn.execute(
            """
            UPDATE books
               SET total_copies = ?, available_copies = ? - (total_copies - available_copies),
                   updated_at = ?
             WHERE id = ?
            """,
            (new_total, new_total, to_iso(utcnow()), book_id),
        )
        logger.info(f"Book {book_id} stock changed from {row['total_copies']} to {new_total} copies")
