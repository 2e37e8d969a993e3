from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from libs.contracts.fx_models import Quote, parse_pair, utcnow


@dataclass(slots=True)
class FakeRateProvider:
    """Constant price for every pair; default provider for local runs and tests."""

    price: float = 1.2345
    clock: Callable[[], datetime] = field(default=utcnow)
    source_name: str = "fake"

    def get(self, pair: str) -> Quote:
        return Quote(pair=parse_pair(pair), price=self.price, updated_at=self.clock())
