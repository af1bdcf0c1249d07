"""Webhook HTTP endpoints."""
import json
import logging
from typing import Generator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config.settings import settings
from src.billing.exceptions import InvalidSignatureError
from src.billing.webhooks import (
    PROVIDER,
    SIGNATURE_HEADERS,
    LemonSqueezyProcessor,
    record_webhook,
    verify_signature,
)
from src.persistence.database import get_session

logger = logging.getLogger(__name__)

app = FastAPI(title="Interview Signals Webhooks", version="0.1.0")


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; committed when the handler returns."""
    with get_session() as session:
        yield session


async def verified_body(request: Request) -> bytes:
    """Return the raw body after checking its signature header."""
    raw_body = await request.body()
    signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    if not verify_signature(settings.lemon_squeezy_signing_secret, raw_body, signature):
        raise InvalidSignatureError(PROVIDER)
    return raw_body


@app.exception_handler(InvalidSignatureError)
async def invalid_signature_handler(request: Request, exc: InvalidSignatureError) -> JSONResponse:
    logger.warning("%s", exc)
    return JSONResponse(status_code=401, content={"detail": "Invalid signature"})


@app.post("/webhooks/lemon_squeezy")
async def lemon_squeezy_webhook(
    request: Request,
    raw_body: bytes = Depends(verified_body),
    session: Session = Depends(get_db),
) -> dict:
    """
    Receive a Lemon Squeezy webhook.

    The event is stored first (idempotently), then processed once. A
    redelivery of an already handled event just reports its status.
    """
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    event, created = record_webhook(session, payload, event_id=request.headers.get("X-Event-Id"))
    session.commit()

    if event.status == "pending" and event.processed_at is None:
        LemonSqueezyProcessor(session, event).run()
        session.commit()
    elif not created:
        logger.info("Skipping already handled webhook %s (%s)", event.id, event.status)

    return {"status": event.status}


@app.get("/health")
async def health_check() -> dict:
    """Liveness probe."""
    return {"status": "healthy"}
