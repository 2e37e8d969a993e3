# libs/adapters/idempotency.py
from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

import structlog
from sqlalchemy import delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from libs.adapters.errors import StoreError
from libs.contracts.fx_models import utcnow
from libs.storage.db import IdempotencyKeyOrm


class IdempotencyGate(Protocol):
    def try_reserve(self, key: str) -> bool:
        """
        True exactly once per key within the TTL window, False for every
        later call while the reservation is alive. Backend failures raise
        StoreError; never guess.
        """
        ...


class NoopIdempotencyGate:
    """Accepts every key; for local/dev setups that allow duplicate submissions."""

    def try_reserve(self, key: str) -> bool:
        return True


class InMemoryIdempotencyGate:
    def __init__(self, ttl: timedelta, clock: Callable[[], datetime] = utcnow) -> None:
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._expires: Dict[str, datetime] = {}

    def try_reserve(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            exp = self._expires.get(key)
            if exp is not None and exp > now:
                return False
            self._expires[key] = now + self.ttl
            if len(self._expires) > 10_000:
                self._evict(now)
            return True

    def _evict(self, now: datetime) -> None:
        for k in [k for k, exp in self._expires.items() if exp <= now]:
            del self._expires[k]


class SqlIdempotencyGate:
    """
    Reservation rows in ``idempotency_keys``:
      - expired rows for the key are deleted first
      - INSERT ... ON CONFLICT DO NOTHING decides first-vs-duplicate atomically
    """

    _DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

    def __init__(
        self,
        session_factory: sessionmaker,
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
        logger=None,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = ttl
        self.clock = clock
        self.log = logger or structlog.get_logger().bind(component="idempotency")

    def try_reserve(self, key: str) -> bool:
        now = self.clock()
        k = IdempotencyKeyOrm
        try:
            with self._session_factory.begin() as s:
                s.execute(delete(k).where(k.key == key, k.expires_at <= now))
                dialect_insert = self._DIALECTS.get(s.get_bind().dialect.name)
                if dialect_insert is None:
                    return self._reserve_portable(s, key, now)
                stmt = dialect_insert(k).values(key=key, expires_at=now + self.ttl)
                stmt = stmt.on_conflict_do_nothing(index_elements=[k.key])
                return s.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.log.error("idempotency.reserve_failed", key=key, error=str(e))
            raise StoreError(f"idempotency: {e}") from e

    def _reserve_portable(self, s, key: str, now: datetime) -> bool:
        try:
            with s.begin_nested():
                s.add(IdempotencyKeyOrm(key=key, expires_at=now + self.ttl))
                s.flush()
        except IntegrityError:
            return False
        return True


def build_idempotency_gate(kind: str, *, ttl: timedelta, session_factory: Optional[sessionmaker] = None):
    if kind == "noop":
        return NoopIdempotencyGate()
    if kind == "memory":
        return InMemoryIdempotencyGate(ttl)
    if kind == "sql":
        if session_factory is None:
            raise ValueError("sql idempotency needs a database session factory")
        return SqlIdempotencyGate(session_factory, ttl)
    raise ValueError(f"unknown idempotency backend: {kind!r}")
