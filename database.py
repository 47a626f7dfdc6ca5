import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# Make sure .env is loaded before DATABASE_FILE is resolved, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file, overridable per Library instance (tests use one file per test).
DATABASE_FILE = settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with rows addressable by column name."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so a
    check-then-update inside the block cannot interleave with another writer.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE NOT NULL,
                category TEXT NOT NULL,
                publication_year INTEGER,
                publisher TEXT,
                pages INTEGER,
                synopsis TEXT,
                cover_url TEXT,
                location TEXT,
                total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS authors (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                artistic_name TEXT,
                biography TEXT,
                birth_date TEXT,
                death_date TEXT,
                nationality TEXT,
                genres TEXT,
                photo_url TEXT,
                website TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                total_books INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT UNIQUE NOT NULL,
                description TEXT,
                color TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                sort_order INTEGER NOT NULL DEFAULT 1,
                total_books INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # 'overdue' is derived at read time and never stored
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                borrower_name TEXT NOT NULL,
                borrower_email TEXT NOT NULL,
                borrower_phone TEXT,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL CHECK(status IN ('active', 'renewed', 'returned')),
                fine TEXT NOT NULL DEFAULT '0.00',
                renewal_count INTEGER NOT NULL DEFAULT 0 CHECK(renewal_count >= 0),
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reservations (
                id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                borrower_name TEXT NOT NULL,
                borrower_email TEXT NOT NULL,
                borrower_phone TEXT,
                reservation_date TEXT NOT NULL,
                expiration_date TEXT,
                notification_date TEXT,
                status TEXT NOT NULL
                    CHECK(status IN ('active', 'notified', 'expired', 'cancelled', 'fulfilled')),
                priority INTEGER NOT NULL CHECK(priority >= 1),
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status ON loans(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_created_at ON loans(created_at)")
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_reservations_book_status ON reservations(book_id, status)"
        )
        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialise the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")
