# libs/adapters/errors.py
from __future__ import annotations


class FxRatesError(Exception):
    """Base class for every error raised by the quote-update pipeline."""


class BadRequest(FxRatesError):
    """Malformed input: missing idempotency key, bad pair format."""


class UnsupportedPair(BadRequest):
    def __init__(self, pair: str) -> None:
        super().__init__(f"unsupported pair: {pair!r}")
        self.pair = pair


class Conflict(FxRatesError):
    """Idempotency key already reserved."""

    def __init__(self, key: str) -> None:
        super().__init__(f"idempotency key already used: {key!r}")
        self.key = key


class NotFound(FxRatesError):
    def __init__(self, what: str) -> None:
        super().__init__(f"not found: {what}")
        self.what = what


class ProviderError(FxRatesError):
    """Fetching a quote failed (remote API, timeout, bad payload)."""


class StoreError(FxRatesError):
    """Backing store failed or refused a write."""


class InvalidTransition(StoreError):
    def __init__(self, job_id: str, current: str, new: str) -> None:
        super().__init__(f"job {job_id}: cannot move {current} -> {new}")
        self.job_id = job_id
        self.current = current
        self.new = new


class QueueFull(FxRatesError):
    """In-process dispatch queue rejected the job (backpressure)."""
