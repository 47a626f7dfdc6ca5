import os
import tempfile

import pytest

# api.py builds its module-level Library at import time; keep that file out of the repo
os.environ.setdefault("LIBRARY_DB_FILE", os.path.join(tempfile.gettempdir(), "biblioteca_pytest.db"))

from library import Library  # noqa: E402
from loan import Borrower  # noqa: E402


def make_isbn(seq: int) -> str:
    """A valid ISBN-13 with the given sequence number, for tests that need many books."""
    body = f"978{seq:09d}"
    total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(body))
    return body + str((10 - total % 10) % 10)


@pytest.fixture
def lib(tmp_path, request):
    # Each test gets its own database file
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return Library(db_file=db_file)


@pytest.fixture
def add_book(lib):
    """Factory adding a book with a fresh ISBN: ``add_book(total_copies=2)``."""
    counter = iter(range(1, 10_000))

    def _add(total_copies=1, **fields):
        seq = next(counter)
        fields.setdefault("title", f"Livro {seq}")
        fields.setdefault("author", "Autor de Teste")
        fields.setdefault("category", "Ficção")
        fields.setdefault("isbn", make_isbn(seq))
        return lib.add_book(total_copies=total_copies, **fields)

    return _add


@pytest.fixture
def ana():
    return Borrower(name="Ana Souza", email="ana@example.com", phone="11 99999-0000")


@pytest.fixture
def bruno():
    return Borrower(name="Bruno Lima", email="bruno@example.com")
