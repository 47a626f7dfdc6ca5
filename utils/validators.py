import re
from typing import Any, Optional

from errors import ValidationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalisation and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit():
                return False
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[-1])
        return False


class TextValidator:
    """Required-field checks for free text coming from forms."""

    @staticmethod
    def require(value: Optional[str], field_name: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"Campo obrigatório: {field_name}")
        return str(value).strip()

    @staticmethod
    def optional(value: Optional[str]) -> Optional[str]:
        # Empty strings from forms are stored as NULL
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class BorrowerValidator:
    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        value = TextValidator.require(email, "usuario_email")
        if not _EMAIL_RE.match(value):
            raise ValidationError(f"E-mail inválido: {value}")
        return value.lower()


def parse_count(value: Any, field_name: str, minimum: int = 0) -> int:
    """Parse a copy count (or similar) that may arrive as a string from a form."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} deve ser um número inteiro")
    try:
        number = int(str(value).strip()) if not isinstance(value, int) else value
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} deve ser um número inteiro") from exc
    if number < minimum:
        raise ValidationError(f"{field_name} deve ser maior ou igual a {minimum}")
    return number
