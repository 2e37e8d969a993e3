# libs/adapters/repo.py
from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, NamedTuple, Optional, Protocol

from libs.contracts.fx_models import ClaimedJob, Quote, QuoteHistory, QuoteUpdate, QuoteUpdateStatus


class JobStore(Protocol):
    """
    Quote-update jobs (storage port).
    - every backend (memory / sql) keeps the same signatures and semantics
    - status only moves along queued -> processing -> {done|failed}
    """

    def create_queued(self, job_id: str, pair: str, requested_at: datetime) -> QuoteUpdate:
        ...

    def get_by_id(self, job_id: str) -> QuoteUpdate:
        """Raise NotFound for unknown ids, StoreError for backend failures."""
        ...

    def claim_queued(self, limit: int, *, now: datetime) -> List[ClaimedJob]:
        """
        Atomically move up to ``limit`` oldest queued jobs to processing and
        hand them to this caller only. Concurrent callers get disjoint sets.
        ``limit <= 0`` claims nothing.
        """
        ...

    def claim_by_id(self, job_id: str, *, now: datetime) -> Optional[ClaimedJob]:
        """Claim one specific job; None if it is no longer queued."""
        ...

    def update_status(
        self,
        job_id: str,
        status: QuoteUpdateStatus,
        *,
        now: datetime,
        error: Optional[str] = None,
        price: Optional[float] = None,
    ) -> bool:
        """
        Apply a status transition. Returns False when the job is already in
        that terminal status. Raises NotFound / InvalidTransition.
        """
        ...

    def fail_stale(self, claimed_before: datetime, *, now: datetime, error: str) -> List[str]:
        """Fail processing jobs claimed before ``claimed_before``; returns their ids."""
        ...

    def ping(self) -> bool:
        return True


class QuoteStore(Protocol):
    def get_last(self, pair: str) -> Quote:
        """Raise NotFound when the pair was never quoted."""
        ...

    def upsert(self, quote: Quote) -> None:
        ...

    def append_history(self, entry: QuoteHistory) -> bool:
        """Append one row; False when (pair, quoted_at, source) already exists."""
        ...

    def list_history(self, pair: str, limit: int = 30) -> List[QuoteHistory]:
        """Most recent first."""
        ...

    def ping(self) -> bool:
        return True


class TxStores(NamedTuple):
    jobs: JobStore
    quotes: QuoteStore


class UnitOfWork(Protocol):
    def begin(self) -> AbstractContextManager[TxStores]:
        """
        Scope for the completion writes. Transactional backends commit on
        clean exit and roll back on error; the no-op variant just yields
        the plain stores and relies on write ordering.
        """
        ...
