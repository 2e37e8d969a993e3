from __future__ import annotations
from typing import Protocol, runtime_checkable

from libs.contracts.fx_models import Quote


@runtime_checkable
class RateProvider(Protocol):
    """
    Contract for quote sources.

    Requirements (must be satisfied by implementers):
    - `source_name`: a short identifier for logging, e.g. "fake", "exchangeratesapi".
    - `get(pair)`: returns a complete Quote for the canonical pair (``EUR/USD``)
      with a timezone-aware `updated_at`. Any failure is raised as ProviderError.
    """

    source_name: str

    def get(self, pair: str) -> Quote:
        ...
