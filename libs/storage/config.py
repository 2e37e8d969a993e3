# libs/storage/config.py
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class FxSettings(BaseSettings):
    """
    Process configuration, read once at wiring time.

    Environment variables, e.g.:
      FXRATES_STORAGE=sql
      FXRATES_DATABASE_URL=postgresql+psycopg://fx:fx@localhost/fxrates
      FXRATES_WORKER_TYPE=poller
    """

    # Common
    ENV: str = "local"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Storage
    STORAGE: Literal["memory", "sql"] = "memory"
    DATABASE_URL: str = "sqlite:///fxrates.db"

    # Idempotency
    IDEMPOTENCY: Literal["memory", "sql", "noop"] = "memory"
    IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60

    # Provider
    PROVIDER: Literal["fake", "exchangeratesapi"] = "fake"
    FAKE_PRICE: float = 1.2345
    EXCHANGE_API_BASE: str = "https://api.exchangeratesapi.io"
    EXCHANGE_API_KEY: str = ""
    HTTP_TIMEOUT_SECONDS: float = 4.0
    HTTP_RETRIES: int = 3
    HTTP_BACKOFF_FACTOR: float = 0.2

    # Worker
    WORKER_TYPE: Literal["poller", "channel", "delegate", "none"] = "poller"
    WORKER_POLL_SECONDS: float = 0.25
    WORKER_BATCH_LIMIT: int = 10
    JOB_TIMEOUT_SECONDS: float = 5.0
    CLAIM_LEASE_SECONDS: Optional[float] = 60.0  # None/0 disables the stale-claim sweep
    PERSIST_ATTEMPTS: int = 3

    # Channel dispatcher
    CHAN_QUEUE_SIZE: int = 100
    CHAN_ENQUEUE_TIMEOUT_SECONDS: float = 0.05

    # Delegate (remote fetch)
    REMOTE_FETCH_URL: str = "http://worker:9090"
    DELEGATE_CONCURRENCY: int = 4
    RATE_SERVER_HOST: str = "0.0.0.0"
    RATE_SERVER_PORT: int = 9090

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    RUN_POLLER_IN_API: bool = False
    SHUTDOWN_GRACE_SECONDS: float = 10.0

    model_config = SettingsConfigDict(env_prefix="FXRATES_")
