# libs/adapters/repo_sql.py
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from libs.adapters.errors import NotFound, StoreError
from libs.adapters.repo import TxStores
from libs.contracts.fx_models import (
    ClaimedJob,
    Quote,
    QuoteHistory,
    QuoteSource,
    QuoteUpdate,
    QuoteUpdateStatus,
    allowed_sources,
    can_transition,
    ensure_utc,
    parse_pair,
    utcnow,
)
from libs.storage.db import QuoteHistoryOrm, QuoteOrm, QuoteUpdateOrm

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class _SqlStore:
    """
    Shared session handling:
      - unbound: every call runs in its own short transaction
      - bound (inside SqlUnitOfWork): reuse the caller's session, caller commits
    SQLAlchemy errors leave this layer as StoreError.
    """

    component = "sql"

    def __init__(self, session_factory: sessionmaker, *, session: Optional[Session] = None, logger=None):
        self._session_factory = session_factory
        self._bound = session
        self.log = logger or structlog.get_logger().bind(repo=self.component)

    def bind(self, session: Session):
        return type(self)(self._session_factory, session=session, logger=self.log)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            if self._bound is not None:
                yield self._bound
            else:
                with self._session_factory.begin() as s:
                    yield s
        except SQLAlchemyError as e:
            self.log.error("sql.exec_failed", error=str(e))
            raise StoreError(f"{self.component}: {e}") from e

    def ping(self) -> bool:
        with self._session() as s:
            s.execute(select(1))
        return True


class SqlJobStore(_SqlStore):
    component = "update_job"

    def create_queued(self, job_id: str, pair: str, requested_at: datetime) -> QuoteUpdate:
        row = QuoteUpdateOrm(
            id=job_id,
            pair=parse_pair(pair),
            status=QuoteUpdateStatus.QUEUED.value,
            requested_at=requested_at,
        )
        with self._session() as s:
            s.add(row)
            s.flush()
            out = self._to_domain(row)
        self.log.info("sql.create_queued", id=job_id, pair=out.pair)
        return out

    def get_by_id(self, job_id: str) -> QuoteUpdate:
        with self._session() as s:
            row = s.get(QuoteUpdateOrm, job_id)
            if row is None:
                raise NotFound(f"quote update {job_id}")
            return self._to_domain(row)

    def claim_queued(self, limit: int, *, now: datetime) -> List[ClaimedJob]:
        if limit <= 0:
            return []
        t = QuoteUpdateOrm
        # one statement: pick + flip; SKIP LOCKED keeps concurrent claimers disjoint on postgres,
        # sqlite serialises writers and ignores the locking clause
        candidates = (
            select(t.id)
            .where(t.status == QuoteUpdateStatus.QUEUED.value)
            .order_by(t.requested_at, t.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(t)
            .where(t.id.in_(candidates), t.status == QuoteUpdateStatus.QUEUED.value)
            .values(status=QuoteUpdateStatus.PROCESSING.value, claimed_at=now)
            .returning(t.id, t.pair, t.requested_at)
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            rows = s.execute(stmt).all()
        rows.sort(key=lambda r: (ensure_utc(r.requested_at), r.id))
        claimed = [ClaimedJob(id=r.id, pair=r.pair) for r in rows]
        self.log.info("sql.claim_success", limit=limit, claimed=len(claimed))
        return claimed

    def claim_by_id(self, job_id: str, *, now: datetime) -> Optional[ClaimedJob]:
        t = QuoteUpdateOrm
        stmt = (
            update(t)
            .where(t.id == job_id, t.status == QuoteUpdateStatus.QUEUED.value)
            .values(status=QuoteUpdateStatus.PROCESSING.value, claimed_at=now)
            .returning(t.id, t.pair)
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            row = s.execute(stmt).first()
            if row is None:
                if s.get(QuoteUpdateOrm, job_id) is None:
                    raise NotFound(f"quote update {job_id}")
                return None
        return ClaimedJob(id=row.id, pair=row.pair)

    def update_status(
        self,
        job_id: str,
        status: QuoteUpdateStatus,
        *,
        now: datetime,
        error: Optional[str] = None,
        price: Optional[float] = None,
    ) -> bool:
        t = QuoteUpdateOrm
        values = {"status": status.value, "error": error}
        if status == QuoteUpdateStatus.PROCESSING:
            values["claimed_at"] = now
        if status.terminal:
            values["completed_at"] = now
        if status == QuoteUpdateStatus.DONE:
            values["price"] = price
        # the WHERE on the current status is what stops a downgrade
        stmt = (
            update(t)
            .where(t.id == job_id, t.status.in_([s.value for s in allowed_sources(status)]))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        log = self.log.bind(id=job_id, status=status.value)
        with self._session() as s:
            res = s.execute(stmt)
            if res.rowcount == 1:
                log.info("sql.update_status_success")
                return True
            current = s.execute(select(t.status).where(t.id == job_id)).scalar_one_or_none()
        if current is None:
            log.warning("sql.update_status_no_rows")
            raise NotFound(f"quote update {job_id}")
        if can_transition(job_id, QuoteUpdateStatus(current), status):
            raise StoreError(f"update_job: status of {job_id} changed concurrently")
        log.info("sql.update_status_noop", current=current)
        return False

    def fail_stale(self, claimed_before: datetime, *, now: datetime, error: str) -> List[str]:
        t = QuoteUpdateOrm
        stmt = (
            update(t)
            .where(t.status == QuoteUpdateStatus.PROCESSING.value, t.claimed_at < claimed_before)
            .values(status=QuoteUpdateStatus.FAILED.value, error=error, completed_at=now)
            .returning(t.id)
            .execution_options(synchronize_session=False)
        )
        with self._session() as s:
            ids = list(s.execute(stmt).scalars())
        if ids:
            self.log.warning("sql.fail_stale", ids=ids)
        return ids

    @staticmethod
    def _to_domain(row: QuoteUpdateOrm) -> QuoteUpdate:
        requested_at = ensure_utc(row.requested_at)
        completed_at = ensure_utc(row.completed_at) if row.completed_at else None
        return QuoteUpdate(
            id=row.id,
            pair=row.pair,
            status=QuoteUpdateStatus(row.status),
            error=row.error,
            price=row.price,
            requested_at=requested_at,
            updated_at=completed_at or requested_at,
        )


class SqlQuoteStore(_SqlStore):
    component = "quote"

    def get_last(self, pair: str) -> Quote:
        key = parse_pair(pair)
        with self._session() as s:
            row = s.get(QuoteOrm, key)
            if row is None:
                raise NotFound(f"quote {key}")
            return Quote(pair=row.pair, price=row.price, updated_at=row.updated_at)

    def upsert(self, quote: Quote) -> None:
        values = {"pair": quote.pair, "price": quote.price, "updated_at": quote.updated_at}
        with self._session() as s:
            dialect_insert = _UPSERT_DIALECTS.get(s.get_bind().dialect.name)
            if dialect_insert is None:
                s.merge(QuoteOrm(**values))
                return
            stmt = dialect_insert(QuoteOrm).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[QuoteOrm.pair],
                set_={"price": stmt.excluded.price, "updated_at": stmt.excluded.updated_at},
            )
            s.execute(stmt)

    def append_history(self, entry: QuoteHistory) -> bool:
        values = {
            "pair": entry.pair,
            "price": entry.price,
            "quoted_at": entry.quoted_at,
            "source": entry.source.value,
            "update_id": entry.update_id,
            "inserted_at": utcnow(),
        }
        with self._session() as s:
            dialect_insert = _UPSERT_DIALECTS.get(s.get_bind().dialect.name)
            if dialect_insert is None:
                exists = s.execute(
                    select(QuoteHistoryOrm.id).where(
                        QuoteHistoryOrm.pair == entry.pair,
                        QuoteHistoryOrm.quoted_at == entry.quoted_at,
                        QuoteHistoryOrm.source == entry.source.value,
                    )
                ).first()
                if exists:
                    return False
                s.execute(insert(QuoteHistoryOrm).values(**values))
                return True
            stmt = dialect_insert(QuoteHistoryOrm).values(**values).on_conflict_do_nothing(
                index_elements=[QuoteHistoryOrm.pair, QuoteHistoryOrm.quoted_at, QuoteHistoryOrm.source]
            )
            inserted = s.execute(stmt).rowcount == 1
        if not inserted:
            self.log.info("sql.history_duplicate", pair=entry.pair, source=entry.source.value)
        return inserted

    def list_history(self, pair: str, limit: int = 30) -> List[QuoteHistory]:
        key = parse_pair(pair)
        h = QuoteHistoryOrm
        stmt = select(h).where(h.pair == key).order_by(h.quoted_at.desc(), h.id.desc()).limit(limit)
        with self._session() as s:
            rows = s.execute(stmt).scalars().all()
            return [
                QuoteHistory(
                    pair=r.pair,
                    price=r.price,
                    quoted_at=r.quoted_at,
                    source=QuoteSource(r.source),
                    update_id=r.update_id,
                )
                for r in rows
            ]


class SqlUnitOfWork:
    """Completion writes in one transaction: commit on success, rollback on any error."""

    def __init__(self, session_factory: sessionmaker, jobs: SqlJobStore, quotes: SqlQuoteStore):
        self._session_factory = session_factory
        self._jobs = jobs
        self._quotes = quotes

    @contextmanager
    def begin(self) -> Iterator[TxStores]:
        try:
            with self._session_factory.begin() as s:
                yield TxStores(jobs=self._jobs.bind(s), quotes=self._quotes.bind(s))
        except SQLAlchemyError as e:
            raise StoreError(f"unit of work: {e}") from e
