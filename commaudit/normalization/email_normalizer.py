"""Email address normalizer.

Lowercases and strips an address and checks it has a deliverable shape
(one ``@``, a dotted domain, no whitespace).  The local part is kept
as-is: the stored value is the address the message was sent to.

Safety rule: raw values are never logged.
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_EMAIL_SHAPE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]{2,}$")
_MAX_LENGTH = 320


def normalize_email(raw: str | None) -> str | None:
    """Return *raw* lowercased and stripped, or ``None`` if it is not an address.

    ``"Name <addr@example.com>"`` display forms, as found in inbound mail
    headers, are reduced to the bare address.
    """
    if not raw or not raw.strip():
        return None

    stripped = raw.strip()
    if stripped.endswith(">") and "<" in stripped:
        stripped = stripped[stripped.rindex("<") + 1:-1].strip()

    candidate = stripped.lower()
    if len(candidate) > _MAX_LENGTH or not _EMAIL_SHAPE.match(candidate):
        logger.debug("normalize_email: not an address (length=%d)", len(candidate))
        return None
    return candidate
