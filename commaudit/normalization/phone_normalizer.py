"""Phone number normalizer.

Converts any recognized phone string to E.164 format
(e.g. ``+12125551234``) so outbound recipients, inbound senders and
preference records compare equal.  Country-code inference uses
*default_region* when no international prefix is present.

Safety rule: raw values are never logged.
"""
from __future__ import annotations

import logging

import phonenumbers

logger = logging.getLogger(__name__)

_DEFAULT_REGION = "US"


def normalize_phone(raw: str | None, *, default_region: str = _DEFAULT_REGION) -> str | None:
    """Return *raw* in E.164 format, or ``None`` if it cannot be parsed.

    Parameters
    ----------
    raw:
        Phone string as supplied by a caller or a provider webhook.
    default_region:
        ISO-3166-1 alpha-2 country code assumed when *raw* carries no
        international dialling prefix.  Defaults to ``"US"``.

    Returns
    -------
    str | None
        E.164 string on success, or ``None`` when the input is empty,
        whitespace-only, or not a valid phone number.  Never raises.
    """
    if not raw or not raw.strip():
        return None

    try:
        parsed = phonenumbers.parse(raw, default_region)
    except phonenumbers.NumberParseException:
        logger.debug("phone_normalizer: could not parse input (length=%d)", len(raw))
        return None

    if not phonenumbers.is_valid_number(parsed):
        logger.debug("phone_normalizer: parsed but invalid number")
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
