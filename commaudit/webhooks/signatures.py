"""Provider webhook signature checks.

Twilio signs the full callback URL plus the sorted form parameters with
HMAC-SHA1 of the account auth token; SendGrid's signed event webhook
signs ``timestamp + raw body`` with an ECDSA P-256 key.
"""
from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

SENDGRID_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
SENDGRID_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"
TWILIO_SIGNATURE_HEADER = "X-Twilio-Signature"


def verify_twilio_signature(
    auth_token: str,
    url: str,
    params: Mapping[str, str],
    signature: str | None,
) -> bool:
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)


def _load_public_key(public_key: str) -> ec.EllipticCurvePublicKey:
    text = public_key.strip()
    if text.startswith("-----BEGIN"):
        return serialization.load_pem_public_key(text.encode("ascii"))
    return serialization.load_der_public_key(base64.b64decode(text))


def verify_sendgrid_signature(
    public_key: str,
    payload: bytes,
    signature: str | None,
    timestamp: str | None,
) -> bool:
    if not signature or not timestamp:
        return False
    try:
        key = _load_public_key(public_key)
        key.verify(
            base64.b64decode(signature),
            timestamp.encode("utf-8") + payload,
            ec.ECDSA(hashes.SHA256()),
        )
    except InvalidSignature:
        return False
    except (binascii.Error, ValueError, UnsupportedAlgorithm) as exc:
        logger.error("SendGrid signature check could not run: %s", type(exc).__name__)
        return False
    return True
