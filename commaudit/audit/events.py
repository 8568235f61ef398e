"""Event type constants for the append-only delivery audit trail."""
from __future__ import annotations

EVENT_COMMUNICATION_RECORDED = "communication_recorded"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_STATUS_UNMATCHED = "status_unmatched"
EVENT_INBOUND_RECEIVED = "inbound_received"
EVENT_PREFERENCE_OPT_OUT = "preference_opt_out"
EVENT_PREFERENCE_OPT_IN = "preference_opt_in"
EVENT_EXPORT_REQUESTED = "export_requested"

VALID_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_COMMUNICATION_RECORDED,
    EVENT_STATUS_CHANGED,
    EVENT_STATUS_UNMATCHED,
    EVENT_INBOUND_RECEIVED,
    EVENT_PREFERENCE_OPT_OUT,
    EVENT_PREFERENCE_OPT_IN,
    EVENT_EXPORT_REQUESTED,
})

#: Events that describe a status and therefore require ``new_status``.
STATUS_EVENT_TYPES: frozenset[str] = frozenset({
    EVENT_STATUS_CHANGED,
    EVENT_STATUS_UNMATCHED,
})
