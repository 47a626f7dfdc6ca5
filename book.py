from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from utils.time_utils import parse_iso


class Book:
    """A title in the collection together with its inventory counters."""

    def __init__(self, id: str, title: str, author: str, isbn: str, category: str,
                 total_copies: int = 1, available_copies: int | None = None,
                 publication_year: int | None = None, publisher: str | None = None,
                 pages: int | None = None, synopsis: str | None = None,
                 cover_url: str | None = None, location: str | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.category = category.strip()
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.publication_year = publication_year
        self.publisher = publisher
        self.pages = pages
        self.synopsis = synopsis
        self.cover_url = cover_url
        self.location = location
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_available(self) -> bool:
        # Always derived from the counter, never stored
        return self.available_copies > 0

    def __str__(self) -> str:
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies})"

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            isbn=row["isbn"],
            category=row["category"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            publication_year=row["publication_year"],
            publisher=row["publisher"],
            pages=row["pages"],
            synopsis=row["synopsis"],
            cover_url=row["cover_url"],
            location=row["location"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
