"""camelCase response shapes shared by the audit, export and report routes."""
from __future__ import annotations

from datetime import datetime

from commaudit.db.models import CommunicationLog, DeliveryAuditEvent, ExportJob, as_utc
from commaudit.reporting.summary import DeliveryStatusSummary


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _str(value) -> str | None:
    return str(value) if value is not None else None


def serialize_log(log: CommunicationLog, *, include_content: bool = False) -> dict:
    body = {
        "id": str(log.id),
        "orderId": _str(log.order_id),
        "communicationType": log.communication_type,
        "senderId": log.sender_id,
        "recipientId": log.recipient_id,
        "recipientEmail": log.recipient_email,
        "recipientPhone": log.recipient_phone,
        "subject": log.subject,
        "templateUsed": log.template_used,
        "deliveryStatus": log.delivery_status,
        "externalMessageId": log.external_message_id,
        "sentAt": _iso(log.sent_at),
        "deliveredAt": _iso(log.delivered_at),
        "readAt": _iso(log.read_at),
        "failureReason": log.failure_reason,
        "metadata": log.metadata_json,
        "isArchived": bool(log.is_archived),
        "createdAt": _iso(log.created_at),
    }
    if include_content:
        body["content"] = log.content
    return body


def serialize_audit_event(event: DeliveryAuditEvent) -> dict:
    return {
        "eventId": str(event.audit_event_id),
        "eventType": event.event_type,
        "actor": event.actor,
        "externalId": event.external_id,
        "previousStatus": event.previous_status,
        "newStatus": event.new_status,
        "provider": event.provider,
        "detail": event.detail,
        "providerTimestamp": _iso(event.provider_timestamp),
        "timestamp": _iso(event.timestamp),
    }


def serialize_summary(summary: DeliveryStatusSummary) -> dict:
    return {
        "organizationId": _str(summary.organization_id),
        "dateFrom": _iso(summary.date_from),
        "dateTo": _iso(summary.date_to),
        "totalCommunications": summary.total_communications,
        "statusCounts": summary.status_counts,
        "typeCounts": summary.type_counts,
        "deliverySuccessRate": summary.delivery_success_rate,
        "dailyVolume": summary.daily_volume,
        "hourlyVolume": {str(hour): count for hour, count in summary.hourly_volume.items()},
        "peakHour": summary.peak_hour,
        "topFailureReasons": [
            {
                "reason": r.reason,
                "count": r.count,
                "percentage": r.percentage,
                "lastOccurrence": _iso(r.last_occurrence),
            }
            for r in summary.top_failure_reasons
        ],
        "averageDeliveryTimeMinutes": summary.average_delivery_time_minutes,
    }


def serialize_export_job(job: ExportJob) -> dict:
    return {
        "jobId": str(job.id),
        "status": job.status,
        "format": job.format,
        "recordCount": job.record_count,
        "estimatedSize": job.estimated_size,
        "fileName": job.file_name,
        "downloadUrl": job.download_url,
        "errorMessage": job.error_message,
        "createdAt": _iso(job.created_at),
        "completedAt": _iso(job.completed_at),
        "expiresAt": _iso(job.expires_at),
    }
