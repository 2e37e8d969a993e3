from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from libs.adapters.errors import ProviderError
from libs.contracts.fx_models import SUPPORTED_CURRENCIES, Quote, parse_pair, split_pair, utcnow

LATEST_PATH = "/v1/latest"


def make_retrying_session(retries: int = 3, backoff_factor: float = 0.2) -> requests.Session:
    """requests.Session that retries connection errors and 5xx with exponential backoff."""
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "POST"}),
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class ExchangeRatesApiProvider:
    """
    exchangeratesapi.io `/v1/latest` client.

    The free plan only quotes against EUR, so cross pairs are derived:
      EUR/X -> rates[X]
      X/EUR -> 1 / rates[X]
      X/Y   -> rates[Y] / rates[X]
    """

    source_name = "exchangeratesapi"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_sec: float = 4.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or make_retrying_session()
        self.timeout_sec = timeout_sec

    def get(self, pair: str) -> Quote:
        if not self.base_url or not self.api_key:
            raise ProviderError("exchangeratesapi: missing configuration")
        canonical = parse_pair(pair)
        base_cur, quote_cur = split_pair(canonical)

        params = {"access_key": self.api_key, "symbols": ",".join(sorted(SUPPORTED_CURRENCIES))}
        try:
            r = self.session.get(f"{self.base_url}{LATEST_PATH}", params=params, timeout=self.timeout_sec)
        except requests.RequestException as exc:
            raise ProviderError(f"exchangeratesapi: request failed: {exc}") from exc
        if r.status_code != 200:
            raise ProviderError(f"exchangeratesapi: status={r.status_code}, body={r.text[:500]}")
        try:
            payload = r.json() or {}
        except ValueError as exc:
            raise ProviderError(f"exchangeratesapi: decode response: {exc}") from exc

        if not payload.get("success"):
            err = payload.get("error") or {}
            if err:
                raise ProviderError(f"exchangeratesapi: {err.get('code')} {err.get('info')}")
            raise ProviderError("exchangeratesapi: unsuccessful response")

        anchor = payload.get("base") or "EUR"
        rates = payload.get("rates") or {}

        def anchor_to(cur: str) -> float:
            if cur == anchor:
                return 1.0
            if cur not in rates:
                raise ProviderError(f"exchangeratesapi: missing rate for {cur}")
            return float(rates[cur])

        to_base = anchor_to(base_cur)
        to_quote = anchor_to(quote_cur)
        if to_base == 0:
            raise ProviderError("exchangeratesapi: zero rate for base currency")
        price = to_quote / to_base
        if price <= 0:
            raise ProviderError(f"exchangeratesapi: non-positive price for {canonical}")

        ts = payload.get("timestamp")
        updated_at = datetime.fromtimestamp(int(ts), tz=timezone.utc) if ts else utcnow()
        return Quote(pair=canonical, price=price, updated_at=updated_at)
