"""Author and category records managed alongside the books."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from utils.time_utils import parse_iso


@dataclass
class Author:
    id: str
    name: str
    artistic_name: Optional[str] = None
    biography: Optional[str] = None
    birth_date: Optional[datetime] = None
    death_date: Optional[datetime] = None
    nationality: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    photo_url: Optional[str] = None
    website: Optional[str] = None
    active: bool = True
    total_books: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Author":
        genres = row["genres"]
        return Author(
            id=row["id"],
            name=row["name"],
            artistic_name=row["artistic_name"],
            biography=row["biography"],
            birth_date=parse_iso(row["birth_date"]),
            death_date=parse_iso(row["death_date"]),
            nationality=row["nationality"],
            genres=json.loads(genres) if genres else [],
            photo_url=row["photo_url"],
            website=row["website"],
            active=bool(row["active"]),
            total_books=row["total_books"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )


@dataclass
class Category:
    id: str
    name: str
    code: str
    description: Optional[str] = None
    color: Optional[str] = None
    active: bool = True
    sort_order: int = 1
    total_books: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Category":
        return Category(
            id=row["id"],
            name=row["name"],
            code=row["code"],
            description=row["description"],
            color=row["color"],
            active=bool(row["active"]),
            sort_order=row["sort_order"],
            total_books=row["total_books"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
        )
