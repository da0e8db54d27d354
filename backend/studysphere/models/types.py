# backend/studysphere/models/types.py
"""
Custom SQLAlchemy types that work across different database backends.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import DateTime, Text, TypeDecorator

from ..core.crypto import decrypt_str, encrypt_str

if TYPE_CHECKING:
    from sqlalchemy.sql.type_api import TypeDecorator as _TypeDecorator

    TypeDecoratorProtocol = _TypeDecorator[Any]
else:
    TypeDecoratorProtocol = TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecoratorProtocol):
    """
    Timezone-aware datetime that always comes back in UTC.

    SQLite drops tzinfo on storage, which would make timestamps read back
    from it incomparable with freshly created ones.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        aware = as_utc(value)
        if dialect.name == "sqlite" and aware is not None:
            return aware.replace(tzinfo=None)
        return aware

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        return as_utc(value)


class EncryptedText(TypeDecoratorProtocol):
    """
    Text column encrypted with the configured Fernet key.

    Without a key values pass through unchanged, and plaintext rows written
    before a key existed still read back.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return encrypt_str(str(value))

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return decrypt_str(value)
