import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

import database
from book import Book
from catalog import Author, Category
from config import settings
from database import get_db_connection, initialize_database, transaction
from errors import InvalidState, NotFound, ValidationError
from inventory import Inventory
from loan import OPEN_STATUSES, Borrower, Loan, LoanStatus
from loan_service import LoanService, new_id
from reservation import Reservation, ReservationStatus
from reservation_service import ReservationService
from utils.time_utils import ensure_utc, parse_iso, to_iso, utcnow
from utils.validators import ISBNValidator, TextValidator, parse_count

logger = logging.getLogger(__name__)

BOOK_DETAIL_FIELDS = ("publication_year", "publisher", "pages", "synopsis", "cover_url", "location")
BOOK_TEXT_FIELDS = ("title", "author", "category")
AUTHOR_FIELDS = (
    "name", "artistic_name", "biography", "birth_date", "death_date", "nationality",
    "genres", "photo_url", "website", "active", "total_books",
)
CATEGORY_FIELDS = ("name", "code", "description", "color", "active", "sort_order", "total_books")


class ReturnResult(NamedTuple):
    loan: Loan
    # Next reservation in line, notified because the returned copy freed up
    notified: Optional[Reservation]


class FulfillResult(NamedTuple):
    reservation: Reservation
    loan: Optional[Loan]


class Library:
    """Manages the collection and coordinates the loan and reservation workflows.

    Each circulation operation runs inside the book's scope and a single
    database transaction, so inventory counters, loans and reservations
    always change together.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)
        self.inventory = Inventory()
        self.loans = LoanService(self.inventory)
        self.reservations = ReservationService(self.inventory)
        self.auto_notify_on_return = settings.auto_notify_on_return

    # ------------------------- Connection helpers ------------------------- #
    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = get_db_connection(self.db_file)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _book_transaction(self, book_id: str) -> Iterator[sqlite3.Connection]:
        with self.inventory.book_scope(book_id):
            with transaction(self.db_file) as conn:
                yield conn

    # ------------------------- Books ------------------------- #
    def add_book(self, *, title: str, author: str, isbn: str, category: str,
                 total_copies: Any = 1, available_copies: Any = None, **details: Any) -> Book:
        """Register a title with every copy on the shelf.

        Copies leave the shelf only through loans, so an explicit
        ``available_copies`` must match ``total_copies``.
        """
        total = parse_count(total_copies, "quantidade_total")
        available = total if available_copies in (None, "") else parse_count(
            available_copies, "quantidade_disponivel")
        if available != total:
            raise ValidationError("quantidade_disponivel deve ser igual a quantidade_total no cadastro")
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError(f"ISBN inválido: {isbn or '(vazio)'}")

        now = utcnow()
        book = Book(
            id=new_id(),
            title=TextValidator.require(title, "titulo"),
            author=TextValidator.require(author, "autor"),
            isbn=isbn,
            category=TextValidator.require(category, "categoria"),
            total_copies=total,
            available_copies=available,
            created_at=now,
            updated_at=now,
            **self._book_details(details),
        )
        try:
            with transaction(self.db_file) as conn:
                conn.execute(
                    """
                    INSERT INTO books (
                        id, title, author, isbn, category, publication_year, publisher,
                        pages, synopsis, cover_url, location, total_copies,
                        available_copies, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book.id, book.title, book.author, book.isbn, book.category,
                        book.publication_year, book.publisher, book.pages, book.synopsis,
                        book.cover_url, book.location, book.total_copies,
                        book.available_copies, to_iso(now), to_iso(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Livro com ISBN {isbn} já existe.") from e
        logger.info(f"Book {book.id} added: {book.title} ({total} copies)")
        return book

    def get_book(self, book_id: str) -> Book:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFound(f"Livro não encontrado: {book_id}")
        return Book.from_row(row)

    def list_books(self, query: Optional[str] = None) -> List[Book]:
        """All books, newest first, optionally filtered by title, author or ISBN."""
        with self._read() as conn:
            if query:
                like = f"%{query.strip()}%"
                rows = conn.execute(
                    """
                    SELECT * FROM books
                     WHERE title LIKE ? OR author LIKE ? OR isbn LIKE ?
                     ORDER BY created_at DESC
                    """,
                    (like, like, like),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM books ORDER BY created_at DESC").fetchall()
        return [Book.from_row(row) for row in rows]

    def update_book(self, book_id: str, *, total_copies: Any = None, **fields: Any) -> Book:
        """Update catalog data. Changing total_copies shifts the available count by the same delta."""
        updates: Dict[str, Any] = {}
        for name in BOOK_TEXT_FIELDS:
            if fields.get(name) is not None:
                updates[name] = TextValidator.require(fields[name], name)
        if fields.get("isbn") is not None:
            isbn = ISBNValidator.normalize_isbn(fields["isbn"])
            if not ISBNValidator.is_valid_isbn(isbn):
                raise ValidationError(f"ISBN inválido: {isbn or '(vazio)'}")
            updates["isbn"] = isbn
        updates.update(self._book_details({k: v for k, v in fields.items() if k in BOOK_DETAIL_FIELDS}))

        try:
            with self._book_transaction(book_id) as conn:
                self.inventory.counters(conn, book_id)
                if total_copies is not None:
                    self.inventory.adjust_total(
                        conn, book_id, parse_count(total_copies, "quantidade_total"))
                if updates:
                    assignments = ", ".join(f"{name} = ?" for name in updates)
                    conn.execute(
                        f"UPDATE books SET {assignments}, updated_at = ? WHERE id = ?",
                        (*updates.values(), to_iso(utcnow()), book_id),
                    )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Livro com ISBN {updates.get('isbn')} já existe.") from e
        return self.get_book(book_id)

    def remove_book(self, book_id: str) -> None:
        with self._book_transaction(book_id) as conn:
            self.inventory.counters(conn, book_id)
            open_loans = [loan for loan in self.loans.list(conn, book_id=book_id) if loan.is_open]
            if open_loans:
                raise InvalidState(f"Livro possui {len(open_loans)} empréstimo(s) em aberto.")
            if self.reservations.queue_for_book(conn, book_id):
                raise InvalidState("Livro possui reservas em espera.")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book {book_id} removed")

    @staticmethod
    def _book_details(details: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(details) - set(BOOK_DETAIL_FIELDS)
        if unknown:
            raise ValidationError(f"Campos desconhecidos: {', '.join(sorted(unknown))}")
        cleaned: Dict[str, Any] = {}
        for name, value in details.items():
            if name in ("publication_year", "pages"):
                cleaned[name] = None if value in (None, "") else parse_count(value, name)
            else:
                cleaned[name] = TextValidator.optional(value)
        return cleaned

    # ------------------------- Loans ------------------------- #
    def create_loan(self, book_id: str, borrower: Borrower,
                    loan_date: Optional[datetime] = None, notes: Optional[str] = None) -> Loan:
        with self._book_transaction(book_id) as conn:
            return self.loans.create(conn, book_id, borrower, loan_date, notes)

    def renew_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        book_id = self.get_loan(loan_id).book_id
        with self._book_transaction(book_id) as conn:
            return self.loans.renew(conn, loan_id, now)

    def return_loan(self, loan_id: str, return_date: Optional[datetime] = None) -> ReturnResult:
        """Close a loan, put the copy back and offer it to the reservation queue."""
        book_id = self.get_loan(loan_id).book_id
        with self._book_transaction(book_id) as conn:
            loan = self.loans.return_loan(conn, loan_id, return_date)
            notified = None
            if self.auto_notify_on_return:
                notified = self._hand_off(conn, book_id)
        return ReturnResult(loan, notified)

    def _hand_off(self, conn: sqlite3.Connection, book_id: str) -> Optional[Reservation]:
        """Notify the next waiting reservation if a copy is not already promised to someone."""
        now = utcnow()
        queue = self.reservations.queue_for_book(conn, book_id, now)
        if not queue:
            return None
        pending = [r for r in queue if r.effective_status(now) == ReservationStatus.NOTIFIED]
        waiting = [r for r in queue if r.effective_status(now) == ReservationStatus.ACTIVE]
        available = self.inventory.counters(conn, book_id)["available_copies"]
        if not waiting or available <= len(pending):
            return None
        notified = self.reservations.notify(conn, waiting[0].id, now)
        logger.info(f"Book {book_id} returned, reservation {notified.id} is next in line")
        return notified

    def get_loan(self, loan_id: str) -> Loan:
        with self._read() as conn:
            return self.loans.get(conn, loan_id)

    def list_loans(self, book_id: Optional[str] = None, email: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        with self._read() as conn:
            return self.loans.list(conn, book_id=book_id, email=email, status=status)

    def update_loan(self, loan_id: str, **fields: Any) -> Loan:
        book_id = self.get_loan(loan_id).book_id
        with self._book_transaction(book_id) as conn:
            return self.loans.update_details(conn, loan_id, **fields)

    def delete_loan(self, loan_id: str) -> None:
        book_id = self.get_loan(loan_id).book_id
        with self._book_transaction(book_id) as conn:
            self.loans.delete(conn, loan_id)

    # ------------------------- Reservations ------------------------- #
    def create_reservation(self, book_id: str, borrower: Borrower,
                           reservation_date: Optional[datetime] = None,
                           notes: Optional[str] = None) -> Reservation:
        with self._book_transaction(book_id) as conn:
            return self.reservations.create(conn, book_id, borrower, reservation_date, notes)

    def notify_reservation(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        book_id = self.get_reservation(reservation_id).book_id
        with self._book_transaction(book_id) as conn:
            return self.reservations.notify(conn, reservation_id, now)

    def fulfill_reservation(self, reservation_id: str, checkout: bool = False,
                            now: Optional[datetime] = None) -> FulfillResult:
        """Mark a reservation served.

        With ``checkout`` the borrower also leaves with the copy: the loan is
        created in the same transaction, so a missing copy undoes the whole step.
        """
        book_id = self.get_reservation(reservation_id).book_id
        with self._book_transaction(book_id) as conn:
            reservation = self.reservations.fulfill(conn, reservation_id, now)
            loan = None
            if checkout:
                loan = self.loans.create(
                    conn, book_id, reservation.borrower, now,
                    notes=f"Reserva {reservation.id}",
                )
        return FulfillResult(reservation, loan)

    def cancel_reservation(self, reservation_id: str, now: Optional[datetime] = None) -> Reservation:
        book_id = self.get_reservation(reservation_id).book_id
        with self._book_transaction(book_id) as conn:
            return self.reservations.cancel(conn, reservation_id, now)

    def get_queue_for_book(self, book_id: str, now: Optional[datetime] = None) -> List[Reservation]:
        with self._read() as conn:
            return self.reservations.queue_for_book(conn, book_id, now)

    def expire_reservations(self, now: Optional[datetime] = None) -> List[Reservation]:
        with transaction(self.db_file) as conn:
            return self.reservations.expire_due(conn, now)

    def get_reservation(self, reservation_id: str) -> Reservation:
        with self._read() as conn:
            return self.reservations.get(conn, reservation_id)

    def list_reservations(self, book_id: Optional[str] = None,
                          status: Optional[ReservationStatus] = None) -> List[Reservation]:
        with self._read() as conn:
            return self.reservations.list(conn, book_id=book_id, status=status)

    def update_reservation(self, reservation_id: str, **fields: Any) -> Reservation:
        book_id = self.get_reservation(reservation_id).book_id
        with self._book_transaction(book_id) as conn:
            return self.reservations.update_details(conn, reservation_id, **fields)

    def delete_reservation(self, reservation_id: str) -> None:
        book_id = self.get_reservation(reservation_id).book_id
        with self._book_transaction(book_id) as conn:
            self.reservations.delete(conn, reservation_id)

    # ------------------------- Authors ------------------------- #
    def add_author(self, **fields: Any) -> Author:
        values = self._author_values(fields, require_name=True)
        now = utcnow()
        author = Author(id=new_id(), created_at=now, updated_at=now, **values)
        with transaction(self.db_file) as conn:
            conn.execute(
                """
                INSERT INTO authors (
                    id, name, artistic_name, biography, birth_date, death_date,
                    nationality, genres, photo_url, website, active, total_books,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    author.id, author.name, author.artistic_name, author.biography,
                    to_iso(author.birth_date), to_iso(author.death_date), author.nationality,
                    json.dumps(author.genres, ensure_ascii=False), author.photo_url,
                    author.website, int(author.active), author.total_books,
                    to_iso(now), to_iso(now),
                ),
            )
        return author

    def get_author(self, author_id: str) -> Author:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
        if row is None:
            raise NotFound(f"Autor não encontrado: {author_id}")
        return Author.from_row(row)

    def list_authors(self) -> List[Author]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM authors ORDER BY name ASC").fetchall()
        return [Author.from_row(row) for row in rows]

    def update_author(self, author_id: str, **fields: Any) -> Author:
        values = self._author_values(fields, require_name=False)
        self._update_row("authors", author_id, self._author_columns(values), "Autor")
        return self.get_author(author_id)

    def remove_author(self, author_id: str) -> None:
        self._delete_row("authors", author_id, "Autor")

    @staticmethod
    def _author_values(fields: Dict[str, Any], require_name: bool) -> Dict[str, Any]:
        unknown = set(fields) - set(AUTHOR_FIELDS)
        if unknown:
            raise ValidationError(f"Campos desconhecidos: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        if require_name or fields.get("name") is not None:
            values["name"] = TextValidator.require(fields.get("name"), "nome")
        for name in ("artistic_name", "biography", "nationality", "photo_url", "website"):
            if name in fields:
                values[name] = TextValidator.optional(fields[name])
        for name in ("birth_date", "death_date"):
            if name in fields:
                values[name] = Library._as_datetime(fields[name], name)
        if fields.get("genres") is not None:
            values["genres"] = [str(g).strip() for g in fields["genres"] if str(g).strip()]
        if fields.get("active") is not None:
            values["active"] = bool(fields["active"])
        if fields.get("total_books") is not None:
            values["total_books"] = parse_count(fields["total_books"], "total_livros")
        return values

    @staticmethod
    def _author_columns(values: Dict[str, Any]) -> Dict[str, Any]:
        columns = dict(values)
        for name in ("birth_date", "death_date"):
            if name in columns:
                columns[name] = to_iso(columns[name])
        if "genres" in columns:
            columns["genres"] = json.dumps(columns["genres"], ensure_ascii=False)
        if "active" in columns:
            columns["active"] = int(columns["active"])
        return columns

    # ------------------------- Categories ------------------------- #
    def add_category(self, **fields: Any) -> Category:
        values = self._category_values(fields, require_keys=True)
        now = utcnow()
        category = Category(id=new_id(), created_at=now, updated_at=now, **values)
        try:
            with transaction(self.db_file) as conn:
                conn.execute(
                    """
                    INSERT INTO categories (
                        id, name, code, description, color, active, sort_order,
                        total_books, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        category.id, category.name, category.code, category.description,
                        category.color, int(category.active), category.sort_order,
                        category.total_books, to_iso(now), to_iso(now),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError("Código de categoria já em uso.") from e
        return category

    def get_category(self, category_id: str) -> Category:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        if row is None:
            raise NotFound(f"Categoria não encontrada: {category_id}")
        return Category.from_row(row)

    def list_categories(self) -> List[Category]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM categories ORDER BY name ASC").fetchall()
        return [Category.from_row(row) for row in rows]

    def update_category(self, category_id: str, **fields: Any) -> Category:
        values = self._category_values(fields, require_keys=False)
        if "active" in values:
            values["active"] = int(values["active"])
        try:
            self._update_row("categories", category_id, values, "Categoria")
        except sqlite3.IntegrityError as e:
            raise ValidationError("Código de categoria já em uso.") from e
        return self.get_category(category_id)

    def remove_category(self, category_id: str) -> None:
        self._delete_row("categories", category_id, "Categoria")

    @staticmethod
    def _category_values(fields: Dict[str, Any], require_keys: bool) -> Dict[str, Any]:
        unknown = set(fields) - set(CATEGORY_FIELDS)
        if unknown:
            raise ValidationError(f"Campos desconhecidos: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for name, label in (("name", "nome"), ("code", "codigo")):
            if require_keys or fields.get(name) is not None:
                values[name] = TextValidator.require(fields.get(name), label)
        for name in ("description", "color"):
            if name in fields:
                values[name] = TextValidator.optional(fields[name])
        if fields.get("active") is not None:
            values["active"] = bool(fields["active"])
        if fields.get("sort_order") not in (None, ""):
            values["sort_order"] = parse_count(fields["sort_order"], "ordem", minimum=1)
        if fields.get("total_books") not in (None, ""):
            values["total_books"] = parse_count(fields["total_books"], "total_livros")
        return values

    # ------------------------- Shared row helpers ------------------------- #
    def _update_row(self, table: str, row_id: str, columns: Dict[str, Any], label: str) -> None:
        with transaction(self.db_file) as conn:
            if conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (row_id,)).fetchone() is None:
                raise NotFound(f"{label} não encontrado(a): {row_id}")
            if columns:
                assignments = ", ".join(f"{name} = ?" for name in columns)
                conn.execute(
                    f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?",
                    (*columns.values(), to_iso(utcnow()), row_id),
                )

    def _delete_row(self, table: str, row_id: str, label: str) -> None:
        with transaction(self.db_file) as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"{label} não encontrado(a): {row_id}")

    @staticmethod
    def _as_datetime(value: Any, field_name: str) -> Optional[datetime]:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return ensure_utc(value)
        try:
            return parse_iso(str(value))
        except ValueError as e:
            raise ValidationError(f"{field_name} deve ser uma data ISO-8601") from e

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Dashboard counters for the librarian home page."""
        now = ensure_utc(now) if now else utcnow()
        with self._read() as conn:
            total_books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            available_books = conn.execute(
                "SELECT COUNT(*) FROM books WHERE available_copies > 0").fetchone()[0]
            total_authors = conn.execute("SELECT COUNT(*) FROM authors").fetchone()[0]
            total_categories = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
            open_loans = [
                loan for loan in self.loans.list(conn) if loan.status in OPEN_STATUSES
            ]
            active_reservations = self.reservations.list(
                conn, status=ReservationStatus.ACTIVE, now=now)
        return {
            "total_books": total_books,
            "available_books": available_books,
            "active_loans": len(open_loans),
            "overdue_loans": sum(1 for loan in open_loans if loan.is_overdue(now)),
            "active_reservations": len(active_reservations),
            "total_categories": total_categories,
            "total_authors": total_authors,
        }
