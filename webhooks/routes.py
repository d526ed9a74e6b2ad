"""
Webhook receiver route.

The body is read in full as raw bytes before anything else touches it; the
signature covers those exact bytes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_webhook_ingestor
from utils.errors import WebhookError
from webhooks.ingestion import WebhookIngestor
from webhooks.signature import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/jobber")
async def jobber_webhook(
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
) -> JSONResponse:
    """
    Accept a signed Jobber delivery.

    200 ``{"ok": true[, "deduped": true]}`` · 400 bad JSON · 401 bad
    signature · 500 persistence failure (Jobber retries on non-2xx).
    """
    raw_body = await request.body()
    try:
        result = await ingestor.ingest(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            request_id=getattr(request.state, "request_id", None),
        )
    except WebhookError as exc:
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    return JSONResponse(result.response_body())
