# apps/scheduler/rate_server.py
from __future__ import annotations

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from libs.adapters.errors import BadRequest, ProviderError
from libs.connectors.base import RateProvider
from libs.contracts.fx_models import parse_pair


class FetchRequest(BaseModel):
    pair: str
    trace_id: str = ""


def create_rate_app(provider: RateProvider, logger=None) -> FastAPI:
    """Remote fetch service used by the delegate driver (POST /fetch)."""
    log = logger or structlog.get_logger().bind(component="rate_server")
    app = FastAPI(title="fx-rates rate server")

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.post("/fetch")
    def fetch(req: FetchRequest):
        l = log.bind(pair=req.pair, trace_id=req.trace_id)
        try:
            pair = parse_pair(req.pair)
        except BadRequest as e:
            l.warning("rate_fetch.invalid_pair")
            return JSONResponse(status_code=400, content={"code": 400, "message": str(e)})
        try:
            q = provider.get(pair)
        except ProviderError as e:
            l.warning("rate_fetch.provider_error", error=str(e))
            return JSONResponse(status_code=502, content={"code": 502, "message": str(e)})
        l.info("rate_fetch.success", price=q.price)
        return q.model_dump(mode="json")

    return app
