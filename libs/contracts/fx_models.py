# libs/contracts/fx_models.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from libs.adapters.errors import BadRequest, InvalidTransition, UnsupportedPair

# ---- currencies ----
SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "MXN"})

_PAIR_RE = re.compile(r"^[A-Z]{3}/[A-Z]{3}$")


def normalize_pair(value: str) -> str:
    return str(value or "").strip().upper()


def split_pair(value: str) -> tuple[str, str]:
    pair = normalize_pair(value)
    if not _PAIR_RE.match(pair):
        raise BadRequest(f"invalid pair format {value!r} (e.g. EUR/USD)")
    base, quote = pair.split("/")
    return base, quote


def is_supported_pair(value: str) -> bool:
    try:
        base, quote = split_pair(value)
    except BadRequest:
        return False
    return base in SUPPORTED_CURRENCIES and quote in SUPPORTED_CURRENCIES and base != quote


def parse_pair(value: str) -> str:
    """Return the canonical ``BASE/QUOTE`` form or raise.

    BadRequest for a malformed string, UnsupportedPair when either side is
    outside SUPPORTED_CURRENCIES or base == quote.
    """
    base, quote = split_pair(value)
    pair = f"{base}/{quote}"
    if not is_supported_pair(pair):
        raise UnsupportedPair(pair)
    return pair


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(v: datetime) -> datetime:
    # naive values come back from sqlite; treat them as UTC
    if v.tzinfo is None or v.utcoffset() is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


# ---- enums ----
class QuoteUpdateStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (QuoteUpdateStatus.DONE, QuoteUpdateStatus.FAILED)


class QuoteSource(StrEnum):
    POLLER = "poller"
    CHANNEL = "channel"
    DELEGATE = "delegate"


_TRANSITIONS: dict[QuoteUpdateStatus, frozenset[QuoteUpdateStatus]] = {
    QuoteUpdateStatus.QUEUED: frozenset({QuoteUpdateStatus.PROCESSING, QuoteUpdateStatus.FAILED}),
    QuoteUpdateStatus.PROCESSING: frozenset({QuoteUpdateStatus.DONE, QuoteUpdateStatus.FAILED}),
    QuoteUpdateStatus.DONE: frozenset(),
    QuoteUpdateStatus.FAILED: frozenset(),
}


def allowed_sources(new: QuoteUpdateStatus) -> frozenset[QuoteUpdateStatus]:
    """Statuses a job may be in for ``new`` to be applied."""
    return frozenset(s for s, targets in _TRANSITIONS.items() if new in targets)


def can_transition(job_id: str, current: QuoteUpdateStatus, new: QuoteUpdateStatus) -> bool:
    """
    True  -> apply the transition
    False -> same terminal status again (re-delivery), nothing to do
    raise -> anything else, including every move back to queued
    """
    if new in _TRANSITIONS[current]:
        return True
    if current == new and current.terminal:
        return False
    raise InvalidTransition(job_id, current.value, new.value)


# ---- models ----
class _PairModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    @field_validator("pair", mode="before", check_fields=False)
    @classmethod
    def _norm_pair(cls, v: str) -> str:
        return parse_pair(v)

    @field_validator("updated_at", "quoted_at", "requested_at", mode="after", check_fields=False)
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else v


class Quote(_PairModel):
    pair: str
    price: float = Field(gt=0)
    updated_at: datetime


class QuoteHistory(_PairModel):
    pair: str
    price: float = Field(gt=0)
    quoted_at: datetime
    source: QuoteSource
    update_id: Optional[str] = None


class QuoteUpdate(_PairModel):
    id: str = Field(min_length=1)
    pair: str
    status: QuoteUpdateStatus = QuoteUpdateStatus.QUEUED
    error: Optional[str] = None
    price: Optional[float] = None
    requested_at: datetime
    updated_at: datetime


class ClaimedJob(_PairModel):
    id: str
    pair: str
