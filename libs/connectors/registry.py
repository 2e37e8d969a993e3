# libs/connectors/registry.py
from typing import Callable, Dict

from libs.storage.config import FxSettings
from .base import RateProvider
from .exchangeratesapi import ExchangeRatesApiProvider, make_retrying_session
from .fake import FakeRateProvider


def _fake(cfg: FxSettings) -> RateProvider:
    return FakeRateProvider(price=cfg.FAKE_PRICE)


def _exchangeratesapi(cfg: FxSettings) -> RateProvider:
    return ExchangeRatesApiProvider(
        base_url=cfg.EXCHANGE_API_BASE,
        api_key=cfg.EXCHANGE_API_KEY,
        session=make_retrying_session(cfg.HTTP_RETRIES, cfg.HTTP_BACKOFF_FACTOR),
        timeout_sec=cfg.HTTP_TIMEOUT_SECONDS,
    )


_REGISTRY: Dict[str, Callable[[FxSettings], RateProvider]] = {
    "fake": _fake,
    "exchangeratesapi": _exchangeratesapi,
}


def get_rate_provider(cfg: FxSettings) -> RateProvider:
    try:
        factory = _REGISTRY[cfg.PROVIDER]
    except KeyError:
        raise ValueError(f"unknown rate provider: {cfg.PROVIDER!r}")
    return factory(cfg)


def list_providers() -> list[str]:
    return list(_REGISTRY.keys())
