# apps/api/routers/quotes.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from apps.api.deps import get_service
from apps.api.services.fx_rates import FxRatesService

router = APIRouter(tags=["quotes"])


class QuoteUpdateRequest(BaseModel):
    pair: str


class QuoteUpdateAccepted(BaseModel):
    update_id: str


class QuoteUpdateView(BaseModel):
    update_id: str
    pair: str
    status: str
    price: Optional[float] = None
    error: Optional[str] = None
    updated_at: datetime


class QuoteView(BaseModel):
    pair: str
    price: float
    updated_at: datetime


class HistoryEntryView(BaseModel):
    pair: str
    price: float
    quoted_at: datetime
    source: str
    update_id: Optional[str] = None


@router.post("/quote-updates", status_code=202, response_model=QuoteUpdateAccepted)
def request_quote_update(
    body: QuoteUpdateRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
    svc: FxRatesService = Depends(get_service),
):
    """Queue a refresh of ``pair``; poll GET /quote-updates/{update_id} for the outcome."""
    trace_id = getattr(request.state, "trace_id", None)
    update_id = svc.request_quote_update(body.pair, idempotency_key, trace_id=trace_id)
    return QuoteUpdateAccepted(update_id=update_id)


@router.get("/quote-updates/{update_id}", response_model=QuoteUpdateView)
def get_quote_update(update_id: str, svc: FxRatesService = Depends(get_service)):
    job = svc.get_quote_update(update_id)
    return QuoteUpdateView(
        update_id=job.id,
        pair=job.pair,
        status=job.status.value,
        price=job.price,
        error=job.error,
        updated_at=job.updated_at,
    )


@router.get("/quotes/last", response_model=QuoteView)
def get_last_quote(
    pair: str = Query(..., min_length=1),
    svc: FxRatesService = Depends(get_service),
):
    q = svc.get_last_quote(pair)
    return QuoteView(**q.model_dump())


@router.get("/quotes/history", response_model=List[HistoryEntryView])
def list_history(
    pair: str = Query(..., min_length=1),
    limit: int = Query(30, ge=1, le=500),
    svc: FxRatesService = Depends(get_service),
):
    """Newest first."""
    rows = svc.list_history(pair, limit=limit)
    return [
        HistoryEntryView(
            pair=r.pair,
            price=r.price,
            quoted_at=r.quoted_at,
            source=r.source.value,
            update_id=r.update_id,
        )
        for r in rows
    ]
