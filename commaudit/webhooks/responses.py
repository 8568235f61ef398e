"""Acknowledgment policy for provider webhooks.

Providers retry anything that is not 2xx, so what they receive is decided
here from the provider and endpoint kind alone.  Internal failures are
logged by the caller and do not change the answer.
"""
from __future__ import annotations

from starlette.responses import JSONResponse, Response

from commaudit.webhooks.normalizer import PROVIDER_TWILIO, BatchResult

TWIML_EMPTY_RESPONSE = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

KIND_STATUS = "status"
KIND_INBOUND = "inbound"


def acknowledge(provider: str, kind: str, result: BatchResult | None = None) -> Response:
    if provider == PROVIDER_TWILIO:
        return Response(content=TWIML_EMPTY_RESPONSE, media_type="application/xml")
    if kind == KIND_INBOUND:
        return JSONResponse({"received": True})
    return JSONResponse({"processed": result.processed if result is not None else 0})


def reject(status_code: int, detail: str) -> Response:
    """Non-2xx answer, reserved for bad signatures and unparseable bodies."""
    return JSONResponse(status_code=status_code, content={"detail": detail})
