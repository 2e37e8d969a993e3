from __future__ import annotations

from typing import Optional

import requests

from libs.adapters.errors import BadRequest, ProviderError
from libs.contracts.fx_models import Quote, parse_pair
from libs.connectors.exchangeratesapi import make_retrying_session


class RemoteRateClient:
    """
    Delegate transport: asks the rate server (apps/scheduler/rate_server.py)
    to fetch a quote and returns it as a local Quote.

    Wire shape:
      POST {base_url}/fetch  {"pair": "EUR/USD", "trace_id": "..."}
      200 -> {"pair": "EUR/USD", "price": 1.2345, "updated_at": "2024-01-01T00:00:00Z"}
      4xx/5xx -> {"code": int, "message": str}
    """

    source_name = "remote"

    def __init__(self, base_url: str, *, session=None, timeout_sec: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        # anything with a requests-style .post(url, json=..., timeout=...) works (FastAPI TestClient in tests)
        self.session = session or make_retrying_session()
        self.timeout_sec = timeout_sec

    def fetch(self, pair: str, trace_id: Optional[str] = None) -> Quote:
        canonical = parse_pair(pair)
        body = {"pair": canonical, "trace_id": trace_id or ""}
        try:
            r = self.session.post(f"{self.base_url}/fetch", json=body, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            raise ProviderError(f"remote fetch failed: {exc}") from exc
        if r.status_code != 200:
            raise ProviderError(f"remote fetch: status={r.status_code}, body={r.text[:500]}")
        try:
            return Quote.model_validate(r.json())
        except (ValueError, BadRequest) as exc:
            raise ProviderError(f"remote fetch: bad payload: {exc}") from exc

    def get(self, pair: str) -> Quote:
        return self.fetch(pair)
