import re
from typing import Optional

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ISBNValidator:
    """ISBN validator for catalog entries.
    Accepts 10 or 13 digits once hyphens and spaces are stripped.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[\s-]", "", raw)

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        return s.isdigit() and len(s) in (10, 13)


class TextValidator:
    """Basic text validations and sanitization for catalog and user fields."""

    TITLE_MAX_LENGTH = 200
    AUTHOR_MAX_LENGTH = 100

    @staticmethod
    def _is_non_empty(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if not TextValidator._is_non_empty(title):
            return False
        return len(title.strip()) <= TextValidator.TITLE_MAX_LENGTH

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if not TextValidator._is_non_empty(author):
            return False
        t = author.strip()
        return not t.isdigit() and len(t) <= TextValidator.AUTHOR_MAX_LENGTH

    @staticmethod
    def validate_category(category: Optional[str]) -> bool:
        return TextValidator._is_non_empty(category)

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not email or len(email) > 254 or ".." in email:
            return False
        return bool(EMAIL_RE.match(email.strip()))

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags and surrounding whitespace
        return re.sub(r"<[^>]*>", "", text).strip()
