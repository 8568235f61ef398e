"""Provider webhook routes.

POST /webhooks/sendgrid           -- SendGrid event batch (JSON)
POST /webhooks/sendgrid/inbound   -- SendGrid Inbound Parse (form)
POST /webhooks/twilio             -- Twilio status callback (form)
POST /webhooks/twilio/inbound     -- Twilio inbound SMS (form)
GET  /webhooks/health             -- endpoint listing

Providers retry anything that is not 2xx, so every syntactically valid
request is acknowledged, whatever happened internally.  The only other
answers are 400 for an unparseable body and 401 for a bad signature.

Safety: bodies, sender addresses and signatures are never logged.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from commaudit.api.deps import get_webhook_store
from commaudit.core.errors import CommunicationAuditError, ProviderPayloadError
from commaudit.core.settings import get_settings
from commaudit.delivery.store import CommunicationLogStore
from commaudit.webhooks.normalizer import (
    PROVIDER_SENDGRID,
    PROVIDER_TWILIO,
    BatchResult,
    apply_inbound,
    apply_status_events,
    parse_sendgrid_batch,
    parse_sendgrid_inbound,
    parse_twilio_inbound,
    parse_twilio_status,
)
from commaudit.webhooks.responses import KIND_INBOUND, KIND_STATUS, acknowledge, reject
from commaudit.webhooks.signatures import (
    SENDGRID_SIGNATURE_HEADER,
    SENDGRID_TIMESTAMP_HEADER,
    TWILIO_SIGNATURE_HEADER,
    verify_sendgrid_signature,
    verify_twilio_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

WEBHOOK_ENDPOINTS = [
    "/webhooks/sendgrid",
    "/webhooks/sendgrid/inbound",
    "/webhooks/twilio",
    "/webhooks/twilio/inbound",
]


# ---------------------------------------------------------------------------
# Request readers
# ---------------------------------------------------------------------------


async def read_body(request: Request) -> bytes:
    return await request.body()


async def read_form(request: Request) -> dict[str, str]:
    """Text fields of a form post; file parts (attachments) are dropped."""
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _twilio_signature_ok(request: Request, form: dict[str, str]) -> bool:
    settings = get_settings()
    if not settings.twilio_validate_signatures:
        return True
    if not settings.twilio_auth_token:
        logger.error("TWILIO_VALIDATE_SIGNATURES is on but TWILIO_AUTH_TOKEN is not set")
        return False
    return verify_twilio_signature(
        settings.twilio_auth_token,
        str(request.url),
        form,
        request.headers.get(TWILIO_SIGNATURE_HEADER),
    )


def _sendgrid_signature_ok(request: Request, body: bytes) -> bool:
    public_key = get_settings().sendgrid_webhook_public_key
    if not public_key:
        return True
    return verify_sendgrid_signature(
        public_key,
        body,
        request.headers.get(SENDGRID_SIGNATURE_HEADER),
        request.headers.get(SENDGRID_TIMESTAMP_HEADER),
    )


# ---------------------------------------------------------------------------
# Status callbacks
# ---------------------------------------------------------------------------


@router.post("/sendgrid", summary="SendGrid event webhook")
def sendgrid_events(
    request: Request,
    body: bytes = Depends(read_body),
    store: CommunicationLogStore = Depends(get_webhook_store),
) -> Response:
    if not _sendgrid_signature_ok(request, body):
        logger.warning("Rejected SendGrid webhook with invalid signature")
        return reject(401, "Invalid signature")

    try:
        payload = json.loads(body or b"[]")
        events, errors = parse_sendgrid_batch(payload)
    except (ValueError, ProviderPayloadError) as exc:
        logger.warning("Rejected SendGrid webhook body: %s", type(exc).__name__)
        return reject(400, "Invalid JSON payload")

    result = BatchResult(skipped=len(errors))
    try:
        apply_status_events(store, events, result=result)
    except Exception:
        logger.exception("SendGrid batch failed after %d event(s)", result.received)
        store.db.rollback()

    logger.info(
        "SendGrid batch: applied=%d unmatched=%d skipped=%d failed=%d",
        result.applied, result.unmatched, result.skipped, result.failed,
    )
    return acknowledge(PROVIDER_SENDGRID, KIND_STATUS, result)


@router.post("/twilio", summary="Twilio status callback")
def twilio_status(
    request: Request,
    form: dict[str, str] = Depends(read_form),
    store: CommunicationLogStore = Depends(get_webhook_store),
) -> Response:
    if not _twilio_signature_ok(request, form):
        logger.warning("Rejected Twilio callback with invalid signature")
        return reject(401, "Invalid signature")

    result = BatchResult()
    try:
        event = parse_twilio_status(form)
    except ProviderPayloadError as exc:
        logger.warning("Skipping Twilio callback: %s", exc)
        result.skipped += 1
        return acknowledge(PROVIDER_TWILIO, KIND_STATUS, result)

    try:
        apply_status_events(store, [event], result=result)
    except Exception:
        logger.exception("Twilio callback for %s failed", event.external_id)
        store.db.rollback()
    return acknowledge(PROVIDER_TWILIO, KIND_STATUS, result)


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------


def _handle_inbound(store: CommunicationLogStore, message, provider: str) -> None:
    if message is None:
        logger.info("%s inbound message without correlation fields ignored", provider)
        return
    try:
        outcome = apply_inbound(store, message)
    except CommunicationAuditError as exc:
        logger.warning("%s inbound message %s not recorded: %s", provider, message.external_id, exc)
        return
    except Exception:
        logger.exception("%s inbound message %s failed", provider, message.external_id)
        store.db.rollback()
        return
    if outcome.opted_out or outcome.opted_in:
        logger.info(
            "Inbound %s: opted_out=%d opted_in=%d",
            message.external_id, len(outcome.opted_out), len(outcome.opted_in),
        )


@router.post("/twilio/inbound", summary="Twilio inbound SMS")
def twilio_inbound(
    request: Request,
    form: dict[str, str] = Depends(read_form),
    store: CommunicationLogStore = Depends(get_webhook_store),
) -> Response:
    if not _twilio_signature_ok(request, form):
        logger.warning("Rejected Twilio inbound message with invalid signature")
        return reject(401, "Invalid signature")
    _handle_inbound(store, parse_twilio_inbound(form), PROVIDER_TWILIO)
    return acknowledge(PROVIDER_TWILIO, KIND_INBOUND)


@router.post("/sendgrid/inbound", summary="SendGrid Inbound Parse")
def sendgrid_inbound(
    form: dict[str, str] = Depends(read_form),
    store: CommunicationLogStore = Depends(get_webhook_store),
) -> Response:
    _handle_inbound(store, parse_sendgrid_inbound(form), PROVIDER_SENDGRID)
    return acknowledge(PROVIDER_SENDGRID, KIND_INBOUND)


@router.get("/health", summary="Webhook endpoint health")
def webhook_health() -> dict:
    return {
        "status": "healthy",
        "endpoints": WEBHOOK_ENDPOINTS,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
