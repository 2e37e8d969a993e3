# Worker process: python -m apps.scheduler.worker --mode poller
import argparse
import signal
import threading

import structlog
import uvicorn

from apps.api.deps import build_container, build_poller
from apps.scheduler.base import SupervisedWorker
from apps.scheduler.rate_server import create_rate_app
from libs.observability.logging import setup_logging
from libs.storage.config import FxSettings


def run_poller(cfg: FxSettings) -> None:
    log = structlog.get_logger().bind(component="worker")
    c = build_container(cfg)
    if cfg.STORAGE == "memory":
        # a memory store is private to this process; the API polls its own
        log.warning("worker.memory_storage", hint="set FXRATES_STORAGE=sql to share jobs with the API")
    sup = SupervisedWorker(build_poller(c))
    done = threading.Event()

    def _on_signal(signum, _frame):
        log.info("worker.signal", signal=signal.Signals(signum).name)
        done.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    sup.start()
    try:
        while not done.wait(0.5):
            if not sup.alive:
                log.error("worker.exited_unexpectedly")
                break
    finally:
        stopped = sup.stop(cfg.SHUTDOWN_GRACE_SECONDS)
        c.close()
        log.info("worker.shutdown", clean=stopped)


def run_rate_server(cfg: FxSettings) -> None:
    c = build_container(cfg)
    uvicorn.run(create_rate_app(c.provider), host=cfg.RATE_SERVER_HOST, port=cfg.RATE_SERVER_PORT)


def main(argv=None) -> None:
    p = argparse.ArgumentParser(description="fx-rates background worker")
    p.add_argument("--mode", choices=["poller", "rate-server"], default="poller")
    p.add_argument("--log-level", default=None)
    args = p.parse_args(argv)

    cfg = FxSettings()
    setup_logging(args.log_level or cfg.LOG_LEVEL, json=cfg.LOG_JSON)
    if args.mode == "rate-server":
        run_rate_server(cfg)
    else:
        run_poller(cfg)


if __name__ == "__main__":
    main()
