"""Canonical delivery states and provider event mappings.

Every provider-specific event string is mapped into the canonical
vocabulary here, before any store logic runs.  Transitions are not
enforced: providers may skip states, so the store simply records the
most recent status it is given.
"""
from __future__ import annotations

from commaudit.core.errors import ProviderPayloadError, ValidationError

# ---------------------------------------------------------------------------
# Communication types
# ---------------------------------------------------------------------------

TYPE_EMAIL = "Email"
TYPE_SMS = "SMS"
TYPE_MESSAGE = "Message"

COMMUNICATION_TYPES = [TYPE_EMAIL, TYPE_SMS, TYPE_MESSAGE]
VALID_COMMUNICATION_TYPES: frozenset[str] = frozenset(COMMUNICATION_TYPES)

# ---------------------------------------------------------------------------
# Canonical delivery states
# ---------------------------------------------------------------------------

STATUS_QUEUED = "Queued"
STATUS_SENT = "Sent"
STATUS_DELIVERED = "Delivered"
STATUS_BOUNCED = "Bounced"
STATUS_FAILED = "Failed"
STATUS_DEFERRED = "Deferred"
STATUS_OPENED = "Opened"
STATUS_CLICKED = "Clicked"
STATUS_SPAM_REPORT = "SpamReport"
STATUS_UNSUBSCRIBED = "Unsubscribed"
STATUS_UNDELIVERED = "Undelivered"
STATUS_OPTED_OUT = "OptedOut"

DELIVERY_STATUSES = [
    STATUS_QUEUED,
    STATUS_SENT,
    STATUS_DELIVERED,
    STATUS_BOUNCED,
    STATUS_FAILED,
    STATUS_DEFERRED,
    STATUS_OPENED,
    STATUS_CLICKED,
    STATUS_SPAM_REPORT,
    STATUS_UNSUBSCRIBED,
    STATUS_UNDELIVERED,
    STATUS_OPTED_OUT,
]
VALID_DELIVERY_STATUSES: frozenset[str] = frozenset(DELIVERY_STATUSES)

#: States that count towards the delivery success rate.
SUCCESS_STATUSES: frozenset[str] = frozenset({STATUS_DELIVERED, STATUS_OPENED, STATUS_CLICKED})

#: States that set ``failure_reason`` on the log.
FAILURE_STATUSES: frozenset[str] = frozenset({STATUS_BOUNCED, STATUS_FAILED, STATUS_UNDELIVERED})

#: States that imply the recipient has read the message.
ENGAGEMENT_STATUSES: frozenset[str] = frozenset({STATUS_OPENED, STATUS_CLICKED})

# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

PROVIDER_EMAIL = "EmailProvider"
PROVIDER_SMS = "SmsProvider"

#: Concrete provider names accepted as aliases of the two provider roles.
_PROVIDER_ALIASES: dict[str, str] = {
    "emailprovider": PROVIDER_EMAIL,
    "sendgrid": PROVIDER_EMAIL,
    "smsprovider": PROVIDER_SMS,
    "twilio": PROVIDER_SMS,
}

EMAIL_EVENT_MAP: dict[str, str] = {
    "processed": STATUS_SENT,
    "delivered": STATUS_DELIVERED,
    "bounce": STATUS_BOUNCED,
    "dropped": STATUS_FAILED,
    "deferred": STATUS_DEFERRED,
    "open": STATUS_OPENED,
    "click": STATUS_CLICKED,
    "spamreport": STATUS_SPAM_REPORT,
    "unsubscribe": STATUS_UNSUBSCRIBED,
    "group_unsubscribe": STATUS_UNSUBSCRIBED,
}

SMS_EVENT_MAP: dict[str, str] = {
    "accepted": STATUS_QUEUED,
    "scheduled": STATUS_QUEUED,
    "queued": STATUS_QUEUED,
    "sending": STATUS_SENT,
    "sent": STATUS_SENT,
    "delivered": STATUS_DELIVERED,
    "undelivered": STATUS_FAILED,
    "failed": STATUS_FAILED,
    "received": STATUS_DELIVERED,
}

_EVENT_MAPS: dict[str, dict[str, str]] = {
    PROVIDER_EMAIL: EMAIL_EVENT_MAP,
    PROVIDER_SMS: SMS_EVENT_MAP,
}

# Delivery-log provider labels inferred from external id prefixes.
DELIVERY_PROVIDER_SENDGRID = "SendGrid"
DELIVERY_PROVIDER_TWILIO = "Twilio"
DELIVERY_PROVIDER_INTERNAL = "Internal"
DELIVERY_PROVIDER_UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def resolve_provider(provider: str) -> str:
    """Return the provider role for *provider* (case-insensitive)."""
    key = (provider or "").strip().lower()
    if key not in _PROVIDER_ALIASES:
        raise ProviderPayloadError(f"Unknown provider {provider!r}", provider=provider)
    return _PROVIDER_ALIASES[key]


def map_provider_event(provider: str, event: str) -> str:
    """Map a provider event string to its canonical delivery status.

    Raises ``ProviderPayloadError`` for unknown providers or events; callers
    log and skip, leaving the record in its current status.
    """
    role = resolve_provider(provider)
    key = (event or "").strip().lower()
    try:
        return _EVENT_MAPS[role][key]
    except KeyError:
        raise ProviderPayloadError(
            f"Unrecognized {role} event {event!r}", provider=provider
        ) from None


def infer_delivery_provider(external_id: str) -> str:
    """Guess the sending provider from the shape of an external message id."""
    lowered = external_id.lower()
    if lowered.startswith(("sendgrid-", "sg-")):
        return DELIVERY_PROVIDER_SENDGRID
    if lowered.startswith("twilio-") or external_id.startswith("SM"):
        return DELIVERY_PROVIDER_TWILIO
    if lowered.startswith("internal-"):
        return DELIVERY_PROVIDER_INTERNAL
    return DELIVERY_PROVIDER_UNKNOWN


def format_failure_detail(code: str | None = None, message: str | None = None) -> str | None:
    """Render a provider error as ``"Error {code}: {message}"`` when both are known."""
    code = (code or "").strip() or None
    message = (message or "").strip() or None
    if code and message:
        return f"Error {code}: {message}"
    if message:
        return message
    if code:
        return f"Error {code}"
    return None


# ---------------------------------------------------------------------------
# Input parsing (case-insensitive, for query filters)
# ---------------------------------------------------------------------------

_STATUS_LOOKUP = {s.lower(): s for s in DELIVERY_STATUSES}
_TYPE_LOOKUP = {t.lower(): t for t in COMMUNICATION_TYPES}


def parse_delivery_status(value: str, *, field: str = "deliveryStatus") -> str:
    canonical = _STATUS_LOOKUP.get((value or "").strip().lower())
    if canonical is None:
        raise ValidationError(
            f"Invalid delivery status {value!r}; must be one of {DELIVERY_STATUSES}",
            field=field,
        )
    return canonical


def parse_communication_type(value: str, *, field: str = "communicationType") -> str:
    canonical = _TYPE_LOOKUP.get((value or "").strip().lower())
    if canonical is None:
        raise ValidationError(
            f"Invalid communication type {value!r}; must be one of {COMMUNICATION_TYPES}",
            field=field,
        )
    return canonical
