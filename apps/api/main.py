# apps/api/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse

from apps.api.deps import Container, attach_api_workers, build_container
from apps.api.routers import quotes
from libs.adapters.errors import BadRequest, Conflict, FxRatesError, NotFound, QueueFull
from libs.observability.logging import bind_request_context, setup_logging
from libs.storage.config import FxSettings

_STATUS = (
    (BadRequest, 400),
    (NotFound, 404),
    (Conflict, 409),
    (QueueFull, 503),
)


def _status_for(exc: FxRatesError) -> int:
    for cls, code in _STATUS:
        if isinstance(exc, cls):
            return code
    return 500


def _envelope(code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=code, content={"code": code, "message": message})


def create_app(settings: Optional[FxSettings] = None, container: Optional[Container] = None) -> FastAPI:
    cfg = settings or (container.settings if container else FxSettings())
    setup_logging(cfg.LOG_LEVEL, json=cfg.LOG_JSON)
    log = structlog.get_logger().bind(component="api")
    c = container or attach_api_workers(build_container(cfg))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        c.start_workers()
        log.info("api.started", workers=[w.worker.name for w in c.workers])
        try:
            yield
        finally:
            c.close()
            log.info("api.stopped")

    app = FastAPI(title="fx-rates API", lifespan=lifespan)
    app.state.container = c

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        trace_id = request.headers.get("X-Trace-Id") or request_id
        request.state.trace_id = trace_id
        bind_request_context(request_id, trace_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(FxRatesError)
    async def fx_error(request: Request, exc: FxRatesError):
        code = _status_for(exc)
        if code >= 500:
            log.error("api.error", path=request.url.path, error=str(exc), kind=type(exc).__name__)
        return _envelope(code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errs = exc.errors()
        msg = "; ".join(f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errs)
        return _envelope(400, msg or "invalid request")

    @app.get("/", response_class=HTMLResponse)
    def root():
        return """
        <html><body>
          <h1>FX Rates API</h1>
          <p>See <a href="/docs">/docs</a> for Swagger UI.</p>
        </body></html>
        """

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    def readyz():
        r = c.service.readiness()
        return JSONResponse(status_code=200 if r["ok"] else 503, content=r)

    app.include_router(quotes.router)
    return app


def main() -> None:
    """Serve the API: fx-rates-api (host/port from FXRATES_API_HOST / FXRATES_API_PORT)."""
    cfg = FxSettings()
    uvicorn.run(create_app(cfg), host=cfg.API_HOST, port=cfg.API_PORT)


if __name__ == "__main__":
    main()
