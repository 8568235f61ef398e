"""PDF rendering for exports and compliance reports.

Documents are built as HTML with ``string.Template`` and converted with
WeasyPrint.  Every interpolated value goes through ``html.escape``;
message content is never placed in a PDF.
"""
from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from string import Template

from commaudit.delivery.status import DELIVERY_STATUSES, FAILURE_STATUSES
from commaudit.export.renderers import LogRow, format_datetime
from commaudit.reporting.summary import DeliveryStatusSummary

logger = logging.getLogger(__name__)

DEFAULT_REPORT_TITLE = "Communication Compliance Report"
EXPORT_TITLE = "Communication Log Export"

_STYLE = """
@page { size: A4 landscape; margin: 1.5cm; }
body { font-family: Helvetica, Arial, sans-serif; font-size: 9pt; color: #222; }
h1 { font-size: 16pt; margin-bottom: 2pt; }
h2 { font-size: 12pt; margin-top: 16pt; border-bottom: 1px solid #999; }
.meta { color: #555; margin-bottom: 10pt; }
table { border-collapse: collapse; width: 100%; }
th { background: #d9d9d9; text-align: left; }
th, td { border: 1px solid #bbb; padding: 3pt 4pt; vertical-align: top; }
.bar { background: #4a7ebb; height: 9pt; }
.bar.failed { background: #c0504d; }
.footer { margin-top: 18pt; color: #777; font-size: 8pt; }
"""

_DOCUMENT = Template("""<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>$title</title><style>$style</style></head>
<body>
<h1>$title</h1>
<div class="meta">$meta</div>
$sections
<div class="footer">Generated $generated_at UTC. This report contains no message content.</div>
</body></html>
""")


def _e(value) -> str:
    return html.escape("" if value is None else str(value), quote=True)


def _table(headers: list[str], rows: list[list]) -> str:
    head = "".join(f"<th>{_e(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{_e(c)}</td>" for c in row) + "</tr>" for row in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _percentage(count: int, total: int) -> str:
    if total <= 0:
        return "0.0%"
    return f"{count / total * 100:.1f}%"


def _document(title: str, meta: str, sections: list[str], generated_at: datetime) -> str:
    return _DOCUMENT.substitute(
        title=_e(title),
        style=_STYLE,
        meta=meta,
        sections="\n".join(sections),
        generated_at=_e(format_datetime(generated_at)),
    )


# ---------------------------------------------------------------------------
# HTML builders (pure)
# ---------------------------------------------------------------------------


def build_export_html(rows: list[LogRow], *, generated_at: datetime | None = None) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    table = _table(
        ["Sent At", "Type", "Recipient", "Subject", "Status", "Delivered At", "Failure Reason"],
        [
            [
                format_datetime(r.sent_at),
                r.communication_type,
                r.recipient,
                r.subject or "",
                r.delivery_status,
                format_datetime(r.delivered_at),
                r.failure_reason or "",
            ]
            for r in rows
        ],
    )
    meta = f"{len(rows)} record(s)"
    return _document(EXPORT_TITLE, _e(meta), [table], generated_at)


def _breakdown(counts: dict[str, int], total: int, order: list[str] | None = None) -> str:
    keys = [k for k in (order or []) if k in counts] + sorted(k for k in counts if k not in (order or []))
    return _table(
        ["Category", "Count", "Percentage"],
        [[k, counts[k], _percentage(counts[k], total)] for k in keys],
    )


def _bar_chart(counts: dict[str, int], failed: frozenset[str] = frozenset()) -> str:
    if not counts:
        return "<p>No data.</p>"
    peak = max(counts.values()) or 1
    rows = []
    for label, count in counts.items():
        width = max(int(count / peak * 100), 1)
        css = "bar failed" if label in failed else "bar"
        rows.append(
            f"<tr><td style=\"width:20%\">{_e(label)}</td>"
            f"<td><div class=\"{css}\" style=\"width:{width}%\"></div></td>"
            f"<td style=\"width:10%\">{_e(count)}</td></tr>"
        )
    return "<table>" + "".join(rows) + "</table>"


def build_compliance_html(
    summary: DeliveryStatusSummary,
    *,
    title: str | None = None,
    include_failure_analysis: bool = True,
    include_charts: bool = True,
    generated_at: datetime | None = None,
) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    title = (title or "").strip() or DEFAULT_REPORT_TITLE
    total = summary.total_communications

    scope = str(summary.organization_id) if summary.organization_id else "All organizations"
    meta = (
        f"Reporting period: {_e(format_datetime(summary.date_from))} to "
        f"{_e(format_datetime(summary.date_to))}<br>Scope: {_e(scope)}"
    )

    sections = [
        "<h2>Summary</h2>",
        _table(
            ["Metric", "Value"],
            [
                ["Total communications", total],
                ["Delivery success rate", f"{summary.delivery_success_rate:.1f}%"],
                ["Failed or bounced", summary.failed_count],
                [
                    "Average delivery time (minutes)",
                    "n/a" if summary.average_delivery_time_minutes is None
                    else f"{summary.average_delivery_time_minutes:.1f}",
                ],
                ["Peak hour (UTC)", "n/a" if summary.peak_hour is None else f"{summary.peak_hour:02d}:00"],
            ],
        ),
        "<h2>Delivery Status Breakdown</h2>",
        _breakdown(summary.status_counts, total, DELIVERY_STATUSES),
        "<h2>Communication Type Breakdown</h2>",
        _breakdown(summary.type_counts, total),
    ]

    if include_failure_analysis:
        failed = summary.failed_count
        sections += [
            "<h2>Failure Analysis</h2>",
            _table(
                ["Metric", "Value"],
                [
                    ["Failed communications", failed],
                    ["Failure rate", _percentage(failed, total)],
                    ["Success rate", f"{summary.delivery_success_rate:.1f}%"],
                ],
            ),
        ]
        if summary.top_failure_reasons:
            sections.append(
                _table(
                    ["Failure reason", "Count", "Share of failures", "Last occurrence"],
                    [
                        [fr.reason, fr.count, f"{fr.percentage:.1f}%", format_datetime(fr.last_occurrence)]
                        for fr in summary.top_failure_reasons
                    ],
                )
            )
        else:
            sections.append("<p>No failure reasons recorded in this period.</p>")

    if include_charts:
        sections += [
            "<h2>Status Distribution</h2>",
            _bar_chart(summary.status_counts, FAILURE_STATUSES),
            "<h2>Daily Volume</h2>",
            _bar_chart(summary.daily_volume),
        ]

    return _document(title, meta, sections, generated_at)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_pdf(html_content: str) -> bytes:
    """Convert *html_content* to PDF bytes with WeasyPrint."""
    import weasyprint  # lazy: native dependency

    return weasyprint.HTML(string=html_content).write_pdf()
