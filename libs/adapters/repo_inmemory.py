from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from libs.adapters.errors import NotFound
from libs.adapters.repo import TxStores
from libs.contracts.fx_models import (
    ClaimedJob,
    Quote,
    QuoteHistory,
    QuoteUpdate,
    QuoteUpdateStatus,
    can_transition,
    parse_pair,
)


class InMemoryJobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: Dict[str, QuoteUpdate] = {}
        self._claimed_at: Dict[str, datetime] = {}
        self._seq = 0
        # insertion order breaks ties between identical requested_at values
        self._order: Dict[str, int] = {}

    # ---- reads ----
    def get_by_id(self, job_id: str) -> QuoteUpdate:
        with self._lock:
            rec = self._by_id.get(job_id)
            if rec is None:
                raise NotFound(f"quote update {job_id}")
            return rec.model_copy()

    # ---- writes ----
    def create_queued(self, job_id: str, pair: str, requested_at: datetime) -> QuoteUpdate:
        rec = QuoteUpdate(
            id=job_id,
            pair=parse_pair(pair),
            status=QuoteUpdateStatus.QUEUED,
            requested_at=requested_at,
            updated_at=requested_at,
        )
        with self._lock:
            if job_id in self._by_id:
                raise ValueError(f"duplicate job id {job_id!r}")
            self._seq += 1
            self._order[job_id] = self._seq
            self._by_id[job_id] = rec
        return rec.model_copy()

    def claim_queued(self, limit: int, *, now: datetime) -> List[ClaimedJob]:
        if limit <= 0:
            return []
        with self._lock:
            queued = [r for r in self._by_id.values() if r.status == QuoteUpdateStatus.QUEUED]
            queued.sort(key=lambda r: (r.requested_at, self._order[r.id]))
            out: List[ClaimedJob] = []
            for rec in queued[:limit]:
                self._mark_processing(rec, now)
                out.append(ClaimedJob(id=rec.id, pair=rec.pair))
            return out

    def claim_by_id(self, job_id: str, *, now: datetime) -> Optional[ClaimedJob]:
        with self._lock:
            rec = self._by_id.get(job_id)
            if rec is None:
                raise NotFound(f"quote update {job_id}")
            if rec.status != QuoteUpdateStatus.QUEUED:
                return None
            self._mark_processing(rec, now)
            return ClaimedJob(id=rec.id, pair=rec.pair)

    def update_status(
        self,
        job_id: str,
        status: QuoteUpdateStatus,
        *,
        now: datetime,
        error: Optional[str] = None,
        price: Optional[float] = None,
    ) -> bool:
        with self._lock:
            rec = self._by_id.get(job_id)
            if rec is None:
                raise NotFound(f"quote update {job_id}")
            if not can_transition(job_id, rec.status, status):
                return False
            rec.status = status
            rec.error = error
            if status == QuoteUpdateStatus.PROCESSING:
                self._claimed_at[job_id] = now
            if status.terminal:
                rec.updated_at = now
            if status == QuoteUpdateStatus.DONE:
                rec.price = price
            return True

    def fail_stale(self, claimed_before: datetime, *, now: datetime, error: str) -> List[str]:
        with self._lock:
            stale = [
                r for r in self._by_id.values()
                if r.status == QuoteUpdateStatus.PROCESSING
                and self._claimed_at.get(r.id, now) < claimed_before
            ]
            for rec in stale:
                rec.status = QuoteUpdateStatus.FAILED
                rec.error = error
                rec.updated_at = now
            return [r.id for r in stale]

    def ping(self) -> bool:
        return True

    def _mark_processing(self, rec: QuoteUpdate, now: datetime) -> None:
        rec.status = QuoteUpdateStatus.PROCESSING
        self._claimed_at[rec.id] = now


class InMemoryQuoteStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: Dict[str, Quote] = {}
        self._history: List[QuoteHistory] = []
        self._history_keys: set[tuple[str, datetime, str]] = set()

    def get_last(self, pair: str) -> Quote:
        key = parse_pair(pair)
        with self._lock:
            q = self._latest.get(key)
            if q is None:
                raise NotFound(f"quote {key}")
            return q.model_copy()

    def upsert(self, quote: Quote) -> None:
        with self._lock:
            self._latest[quote.pair] = quote.model_copy()

    def append_history(self, entry: QuoteHistory) -> bool:
        key = (entry.pair, entry.quoted_at, entry.source.value)
        with self._lock:
            if key in self._history_keys:
                return False
            self._history_keys.add(key)
            self._history.append(entry.model_copy())
            return True

    def list_history(self, pair: str, limit: int = 30) -> List[QuoteHistory]:
        key = parse_pair(pair)
        with self._lock:
            rows = [h for h in self._history if h.pair == key]
        rows.sort(key=lambda h: h.quoted_at, reverse=True)
        return [h.model_copy() for h in rows[:limit]]

    def ping(self) -> bool:
        return True


class NoopUnitOfWork:
    """No transaction: callers write history -> quote -> status in that order."""

    def __init__(self, jobs, quotes) -> None:
        self._stores = TxStores(jobs=jobs, quotes=quotes)

    @contextmanager
    def begin(self) -> Iterator[TxStores]:
        yield self._stores
