"""CSV and Excel rendering for communication log exports.

Rows are projected into ``LogRow`` first, so rendering needs no database
session and can run on a worker thread after the session is closed.

Pure logic is separated from ORM so it can be unit-tested without a database.
"""
from __future__ import annotations

import csv
import io
import json
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from commaudit.db.models import CommunicationLog, as_utc

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum characters of message content written to a CSV cell.
CSV_CONTENT_LIMIT = 1000

#: Excel's hard per-cell character limit.
EXCEL_CELL_LIMIT = 32767

EXCEL_LOG_SHEET = "Communication Logs"
EXCEL_SUMMARY_SHEET = "Summary"

_HEADER_FILL = PatternFill(start_color="D9D9D9", end_color="D9D9D9", fill_type="solid")

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

#: Leading characters that make spreadsheet applications evaluate a cell.
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
_SIGNED_NUMBER = re.compile(r"^[+-]?\d+(\.\d+)?$")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def export_columns(include_content: bool, include_metadata: bool) -> list[tuple[str, str]]:
    """Return ``(header, LogRow attribute)`` pairs in output order."""
    columns = [
        ("ID", "id"),
        ("Order ID", "order_id"),
        ("Communication Type", "communication_type"),
        ("Sender ID", "sender_id"),
        ("Recipient Email", "recipient_email"),
        ("Recipient Phone", "recipient_phone"),
        ("Subject", "subject"),
    ]
    if include_content:
        columns.append(("Content", "content"))
    columns += [
        ("Template Used", "template_used"),
        ("Delivery Status", "delivery_status"),
        ("External Message ID", "external_message_id"),
        ("Sent At", "sent_at"),
        ("Delivered At", "delivered_at"),
        ("Read At", "read_at"),
        ("Failure Reason", "failure_reason"),
    ]
    if include_metadata:
        columns.append(("Metadata", "metadata"))
    columns.append(("Created At", "created_at"))
    return columns


def sanitize_content(content: str | None, limit: int) -> str:
    """Flatten line breaks to spaces, drop control characters and cap at *limit*."""
    if not content:
        return ""
    flat = " ".join(content.replace("\r\n", "\n").replace("\r", "\n").split("\n"))
    flat = _CONTROL_CHARS.sub("", flat)
    if len(flat) > limit:
        return flat[: limit - 3] + "..."
    return flat


def guard_formula(text: str) -> str:
    """Prefix *text* with an apostrophe when a spreadsheet would evaluate it.

    Signed plain numbers, such as E.164 phone numbers, are left alone.
    """
    if text.startswith(_FORMULA_PREFIXES) and not _SIGNED_NUMBER.match(text):
        return "'" + text
    return text


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return ""
    return as_utc(value).strftime("%Y-%m-%d %H:%M:%S")


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)


@dataclass
class LogRow:
    """Detached projection of a CommunicationLog for rendering."""

    id: str
    order_id: str | None
    communication_type: str
    sender_id: str | None
    recipient_email: str | None
    recipient_phone: str | None
    subject: str | None
    content: str | None
    template_used: str | None
    delivery_status: str
    external_message_id: str | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    failure_reason: str | None
    metadata: dict | None
    created_at: datetime | None

    @classmethod
    def from_orm(cls, log: CommunicationLog) -> LogRow:
        return cls(
            id=str(log.id),
            order_id=str(log.order_id) if log.order_id else None,
            communication_type=log.communication_type,
            sender_id=log.sender_id,
            recipient_email=log.recipient_email,
            recipient_phone=log.recipient_phone,
            subject=log.subject,
            content=log.content,
            template_used=log.template_used,
            delivery_status=log.delivery_status,
            external_message_id=log.external_message_id,
            sent_at=as_utc(log.sent_at),
            delivered_at=as_utc(log.delivered_at),
            read_at=as_utc(log.read_at),
            failure_reason=log.failure_reason,
            metadata=log.metadata_json,
            created_at=as_utc(log.created_at),
        )

    @property
    def recipient(self) -> str:
        return self.recipient_email or self.recipient_phone or ""


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------


def build_csv_content(
    rows: list[LogRow],
    *,
    include_content: bool = False,
    include_metadata: bool = False,
) -> str:
    """Build CSV content as a string.  Pure function, no DB or IO."""
    columns = export_columns(include_content, include_metadata)
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([header for header, _ in columns])
    for row in rows:
        values = []
        for _, attr in columns:
            value = getattr(row, attr)
            if attr == "content":
                values.append(guard_formula(sanitize_content(value, CSV_CONTENT_LIMIT)))
            else:
                values.append(guard_formula(_format_value(value)))
        writer.writerow(values)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Excel
# ---------------------------------------------------------------------------


def _excel_cell(value: Any) -> Any:
    if isinstance(value, datetime):
        # openpyxl rejects tz-aware datetimes
        return as_utc(value).replace(tzinfo=None)
    text = _format_value(value)
    text = ILLEGAL_CHARACTERS_RE.sub("", text)
    if len(text) > EXCEL_CELL_LIMIT:
        text = text[: EXCEL_CELL_LIMIT - 3] + "..."
    return text


def build_excel_content(
    rows: list[LogRow],
    *,
    include_content: bool = False,
    include_metadata: bool = False,
    generated_at: datetime | None = None,
) -> bytes:
    """Build an .xlsx workbook with a log sheet and a summary sheet."""
    columns = export_columns(include_content, include_metadata)
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = EXCEL_LOG_SHEET

    sheet.append([header for header, _ in columns])
    for cell in sheet[1]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
    for row in rows:
        sheet.append([_excel_cell(getattr(row, attr)) for _, attr in columns])

    sheet.freeze_panes = "A2"
    sheet.auto_filter.ref = sheet.dimensions
    for index, (header, attr) in enumerate(columns, start=1):
        width = 60 if attr in {"content", "metadata", "failure_reason"} else max(len(header) + 2, 20)
        sheet.column_dimensions[get_column_letter(index)].width = width
    for row_cells in sheet.iter_rows(min_row=2):
        for cell in row_cells:
            if isinstance(cell.value, datetime):
                cell.number_format = "yyyy-mm-dd hh:mm:ss"
            elif cell.data_type == "f":
                # stored as text so the value is shown, never evaluated
                cell.data_type = "s"

    summary = workbook.create_sheet(EXCEL_SUMMARY_SHEET)
    generated_at = generated_at or datetime.now(timezone.utc)
    summary.append(["Communication Log Export"])
    summary["A1"].font = Font(bold=True, size=14)
    summary.append(["Generated At (UTC)", format_datetime(generated_at)])
    summary.append(["Total Records", len(rows)])
    summary.append([])
    summary.append(["Delivery Status", "Count"])
    for cell in summary[summary.max_row]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
    for status, count in sorted(Counter(r.delivery_status for r in rows).items()):
        summary.append([status, count])
    summary.append([])
    summary.append(["Communication Type", "Count"])
    for cell in summary[summary.max_row]:
        cell.font = Font(bold=True)
        cell.fill = _HEADER_FILL
    for communication_type, count in sorted(Counter(r.communication_type for r in rows).items()):
        summary.append([communication_type, count])
    summary.column_dimensions["A"].width = 28
    summary.column_dimensions["B"].width = 24

    buf = io.BytesIO()
    workbook.save(buf)
    return buf.getvalue()
