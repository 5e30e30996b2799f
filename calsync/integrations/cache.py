"""Database-backed response cache for provider reads.

Each call runs in its own short session so a storage failure never
poisons the caller's transaction; failures are logged and degrade to a
cache miss.
"""
import logging
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from calsync.core.config import CacheTTLConfig
from calsync.core.timeutil import Clock, utcnow
from calsync.models import CacheEntry

logger = logging.getLogger(__name__)


class ResponseCache:
    """Key/value cache with per-class TTLs."""

    def __init__(self, engine: Engine, ttls: CacheTTLConfig | None = None, now: Clock = utcnow):
        self.engine = engine
        self.ttls = ttls or CacheTTLConfig()
        self.now = now

    @staticmethod
    def make_key(prefix: str, *parts) -> str:
        """Join a prefix and parts with ``:``, e.g. ``make_key("google_calendar", 3, "calendars")``."""
        return ":".join([prefix, *(str(part) for part in parts)])

    def ttl_for(self, name: str | None) -> int:
        return self.ttls.ttl_for(name)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        try:
            with Session(self.engine) as session:
                entry = session.exec(
                    select(CacheEntry)
                    .where(CacheEntry.key == key)
                    .where(CacheEntry.expires_at > self.now())
                ).first()
                return entry.value if entry else None
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Upsert a value. Returns False when the write failed."""
        now = self.now()
        expires_at = now + timedelta(seconds=ttl if ttl is not None else self.ttls.default)
        try:
            with Session(self.engine) as session:
                entry = session.exec(select(CacheEntry).where(CacheEntry.key == key)).first()
                if entry:
                    entry.value = value
                    entry.expires_at = expires_at
                    entry.updated = now
                else:
                    entry = CacheEntry(key=key, value=value, expires_at=expires_at, created=now, updated=now)
                session.add(entry)
                session.commit()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return False

    def remember(self, key: str, compute: Callable[[], Any], ttl: int | None = None) -> Any:
        """Return the cached value or compute, store and return it.

        ``None`` results are returned but not stored. Exceptions from
        ``compute`` propagate and nothing is cached.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        value = compute()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def delete(self, key: str) -> bool:
        return self._delete_where(CacheEntry.key == key) is not None

    def clear_by_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with ``prefix``."""
        return self._delete_where(col(CacheEntry.key).startswith(prefix, autoescape=True)) or 0

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        return self._delete_where(CacheEntry.expires_at <= self.now()) or 0

    def _delete_where(self, condition) -> int | None:
        """Delete matching entries; None when the storage failed."""
        try:
            with Session(self.engine) as session:
                entries = session.exec(select(CacheEntry).where(condition)).all()
                for entry in entries:
                    session.delete(entry)
                session.commit()
                return len(entries)
        except SQLAlchemyError as e:
            logger.warning(f"Cache delete failed: {e}")
            return None
