"""Tests for the communication audit routes.

Covers:
- Authentication (401) and role checks (403)
- POST/GET /communication-audit/search -- validation, tenant scoping, escaping
- GET /communication-audit/delivery-summary
- GET /communication-audit/orders/{order_id}
- GET /communication-audit/logs/{log_id}/events
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from commaudit.audit.events import EVENT_COMMUNICATION_RECORDED, EVENT_STATUS_CHANGED
from commaudit.core.security import create_access_token
from commaudit.db.models import CommunicationLog
from commaudit.delivery.store import CommunicationLogStore

ORG_A = UUID("11111111-1111-4111-8111-111111111111")
ORG_B = UUID("22222222-2222-4222-8222-222222222222")
STAFF_ROLE = "ColorGarbStaff"

BASE_TIME = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def add_log(db_session):
    def _add(order, **kwargs) -> CommunicationLog:
        kwargs.setdefault("communication_type", "Email")
        kwargs.setdefault("recipient_email", "director@example.org")
        kwargs.setdefault("subject", "Proof ready")
        kwargs.setdefault("content", "Your proof is ready for review")
        kwargs.setdefault("delivery_status", "Delivered")
        kwargs.setdefault("sent_at", BASE_TIME)
        log = CommunicationLog(order_id=order.id if order is not None else None, **kwargs)
        db_session.add(log)
        db_session.flush()
        return log

    return _add


@pytest.fixture()
def two_tenants(make_order, add_log):
    order_a = make_order(ORG_A, "CG-A001")
    order_b = make_order(ORG_B, "CG-B001")
    add_log(order_a, delivery_status="Delivered")
    add_log(order_a, delivery_status="Bounced", sent_at=BASE_TIME + timedelta(hours=1))
    add_log(order_b, delivery_status="Delivered")
    return order_a, order_b


def _staff(auth_headers):
    return auth_headers(STAFF_ROLE, None)


# ===========================================================================
# TestAuth
# ===========================================================================


class TestAuth:
    def test_missing_token_is_401(self, client):
        resp = client.post("/communication-audit/search", json={})
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Not authenticated"}
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_bad_token_is_401(self, client):
        resp = client.post(
            "/communication-audit/search", json={}, headers={"Authorization": "Bearer not.a.token"}
        )
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Could not validate credentials"}

    def test_expired_token_is_401(self, client):
        token = create_access_token("user-1", "Director", ORG_A, expires_minutes=-1)
        resp = client.post(
            "/communication-audit/search", json={}, headers={"Authorization": f"Bearer {token}"}
        )
        assert resp.status_code == 401

    def test_unknown_role_is_403(self, client, auth_headers):
        resp = client.post("/communication-audit/search", json={}, headers=auth_headers("Guest"))
        assert resp.status_code == 403

    def test_organization_role_without_organization_is_400(self, client, auth_headers):
        resp = client.post("/communication-audit/search", json={}, headers=auth_headers("Director", None))
        assert resp.status_code == 400
        assert resp.json()["field"] == "organizationId"


# ===========================================================================
# TestSearch
# ===========================================================================


class TestSearch:
    def test_director_sees_only_own_organization(self, client, auth_headers, two_tenants):
        resp = client.post(
            "/communication-audit/search",
            json={"organizationId": str(ORG_B)},
            headers=auth_headers("Director", ORG_A),
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["totalCount"] == 2
        order_a, _ = two_tenants
        assert {log["orderId"] for log in data["logs"]} == {str(order_a.id)}
        assert data["statusSummary"] == {"Delivered": 1, "Bounced": 1}

    def test_staff_can_search_across_organizations(self, client, auth_headers, two_tenants):
        resp = client.post("/communication-audit/search", json={}, headers=_staff(auth_headers))
        assert resp.json()["totalCount"] == 3

        resp = client.post(
            "/communication-audit/search", json={"organizationId": str(ORG_B)}, headers=_staff(auth_headers)
        )
        assert resp.json()["totalCount"] == 1

    def test_response_shape_and_paging(self, client, auth_headers, two_tenants):
        resp = client.post(
            "/communication-audit/search", json={"page": 1, "pageSize": 1}, headers=auth_headers()
        )
        data = resp.json()

        assert data["page"] == 1
        assert data["pageSize"] == 1
        assert data["hasNextPage"] is True
        log = data["logs"][0]
        assert log["deliveryStatus"] == "Bounced"
        assert log["sentAt"].startswith("2026-03-10T10:00:00")
        assert "content" not in log

    def test_content_only_when_requested(self, client, auth_headers, two_tenants):
        resp = client.post("/communication-audit/search", json={"includeContent": True}, headers=auth_headers())
        assert resp.json()["logs"][0]["content"] == "Your proof is ready for review"

    @pytest.mark.parametrize(
        "body, field",
        [
            ({"page": 0}, "page"),
            ({"pageSize": 0}, "pageSize"),
            ({"pageSize": 101}, "pageSize"),
            ({"sortBy": "recipient"}, "sortBy"),
            ({"deliveryStatus": ["Teleported"]}, "deliveryStatus"),
            ({"dateFrom": "2026-03-11", "dateTo": "2026-03-10"}, "dateFrom"),
        ],
    )
    def test_invalid_criteria_is_400(self, client, auth_headers, body, field):
        resp = client.post("/communication-audit/search", json=body, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.json()["field"] == field

    @pytest.mark.parametrize(
        "body, field",
        [({"page": "first"}, "page"), ({"includeContent": "maybe"}, "includeContent")],
    )
    def test_wrongly_typed_body_is_400(self, client, auth_headers, body, field):
        resp = client.post("/communication-audit/search", json=body, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.json()["field"] == field

    def test_non_object_body_is_400(self, client, auth_headers):
        resp = client.post("/communication-audit/search", json=["page", 1], headers=auth_headers())
        assert resp.status_code == 400

    def test_empty_body_searches_everything(self, client, auth_headers, two_tenants):
        resp = client.post("/communication-audit/search", headers=auth_headers())
        assert resp.status_code == 200
        assert resp.json()["totalCount"] == 2

    def test_markup_is_escaped_in_json(self, client, auth_headers, make_order, add_log):
        add_log(make_order(ORG_A), subject="<script>alert('x')</script> & more")

        resp = client.post("/communication-audit/search", json={}, headers=auth_headers())

        assert resp.status_code == 200
        assert b"<script>" not in resp.content
        assert b"&" not in resp.content
        assert b"\\u003cscript\\u003e" in resp.content
        assert resp.json()["logs"][0]["subject"] == "<script>alert('x')</script> & more"

    def test_get_with_query_parameters(self, client, auth_headers, two_tenants):
        resp = client.get(
            "/communication-audit/search",
            params=[("deliveryStatus", "Delivered"), ("deliveryStatus", "Bounced"), ("pageSize", "10")],
            headers=auth_headers(),
        )
        assert resp.status_code == 200
        assert resp.json()["totalCount"] == 2

        resp = client.get(
            "/communication-audit/search",
            params={"deliveryStatus": "bounced", "sortDirection": "ASC"},
            headers=auth_headers(),
        )
        assert resp.json()["totalCount"] == 1

    @pytest.mark.parametrize(
        "params, field",
        [({"page": "abc"}, "page"), ({"sortBy": "nope"}, "sortBy"), ({"pageSize": "500"}, "pageSize")],
    )
    def test_get_bad_parameter_is_400(self, client, auth_headers, params, field):
        resp = client.get("/communication-audit/search", params=params, headers=auth_headers())
        assert resp.status_code == 400
        assert resp.json()["field"] == field

    def test_malformed_order_id_matches_nothing(self, client, auth_headers, two_tenants):
        resp = client.post("/communication-audit/search", json={"orderId": "1 OR 1=1"}, headers=auth_headers())
        assert resp.status_code == 200
        assert resp.json()["totalCount"] == 0
        assert resp.json()["logs"] == []


# ===========================================================================
# TestDeliverySummary
# ===========================================================================


class TestDeliverySummary:
    URL = "/communication-audit/delivery-summary"

    def test_summary(self, client, auth_headers, two_tenants):
        resp = client.get(self.URL, params={"from": "2026-03-01", "to": "2026-03-31"}, headers=auth_headers())

        assert resp.status_code == 200
        data = resp.json()
        assert data["organizationId"] == str(ORG_A)
        assert data["totalCommunications"] == 2
        assert data["statusCounts"] == {"Delivered": 1, "Bounced": 1}
        assert data["deliverySuccessRate"] == 50.0
        assert data["dailyVolume"] == {"2026-03-10": 2}
        assert data["hourlyVolume"] == {"9": 1, "10": 1}
        assert data["topFailureReasons"] == []

    def test_director_cannot_read_other_organization(self, client, auth_headers, two_tenants):
        resp = client.get(
            self.URL,
            params={"organizationId": str(ORG_B), "from": "2026-03-01", "to": "2026-03-31"},
            headers=auth_headers("Finance", ORG_A),
        )
        assert resp.json()["organizationId"] == str(ORG_A)
        assert resp.json()["totalCommunications"] == 2

    def test_staff_all_organizations(self, client, auth_headers, two_tenants):
        resp = client.get(self.URL, params={"from": "2026-03-01", "to": "2026-03-31"}, headers=_staff(auth_headers))
        assert resp.json()["organizationId"] is None
        assert resp.json()["totalCommunications"] == 3

    @pytest.mark.parametrize(
        "params, field",
        [
            ({"to": "2026-03-31"}, "from"),
            ({"from": "2026-03-01"}, "to"),
            ({"from": "2026-03-31", "to": "2026-03-01"}, "from"),
            ({"from": "2025-01-01", "to": "2026-03-01"}, "to"),
            ({"from": "yesterday", "to": "2026-03-01"}, "from"),
            ({"from": "2026-03-01", "to": "2026-03-31", "organizationId": "org-a"}, "organizationId"),
        ],
    )
    def test_invalid_parameters_are_400(self, client, auth_headers, params, field):
        resp = client.get(self.URL, params=params, headers=_staff(auth_headers))
        assert resp.status_code == 400
        assert resp.json()["field"] == field


# ===========================================================================
# TestOrderHistory
# ===========================================================================


class TestOrderHistory:
    def test_order_history_in_send_order(self, client, auth_headers, two_tenants):
        order_a, _ = two_tenants

        resp = client.get(f"/communication-audit/orders/{order_a.id}", headers=auth_headers())

        assert resp.status_code == 200
        data = resp.json()
        assert data["orderNumber"] == "CG-A001"
        assert data["totalCount"] == 2
        assert [log["deliveryStatus"] for log in data["logs"]] == ["Delivered", "Bounced"]

    def test_other_organization_order_is_404(self, client, auth_headers, two_tenants):
        _, order_b = two_tenants
        resp = client.get(f"/communication-audit/orders/{order_b.id}", headers=auth_headers())
        assert resp.status_code == 404

    def test_staff_sees_any_order(self, client, auth_headers, two_tenants):
        _, order_b = two_tenants
        resp = client.get(f"/communication-audit/orders/{order_b.id}", headers=_staff(auth_headers))
        assert resp.status_code == 200

    @pytest.mark.parametrize("order_id", ["not-a-guid", str(uuid4())])
    def test_unknown_order_is_404(self, client, auth_headers, order_id):
        resp = client.get(f"/communication-audit/orders/{order_id}", headers=auth_headers())
        assert resp.status_code == 404


# ===========================================================================
# TestLogEvents
# ===========================================================================


class TestLogEvents:
    def test_event_trail(self, client, auth_headers, db_session, make_order):
        store = CommunicationLogStore(db_session)
        log = store.record(
            "Email", make_order(ORG_A).id, str(uuid4()), "Proof ready",
            recipient_email="director@example.org", external_id="msg-001",
        )
        store.update_delivery_status("msg-001", "Delivered")

        resp = client.get(f"/communication-audit/logs/{log.id}/events", headers=auth_headers())

        assert resp.status_code == 200
        data = resp.json()
        assert data["communicationLogId"] == str(log.id)
        assert [e["eventType"] for e in data["events"]] == [
            EVENT_COMMUNICATION_RECORDED,
            EVENT_STATUS_CHANGED,
        ]
        assert data["events"][1]["newStatus"] == "Delivered"

    def test_other_organization_log_is_404(self, client, auth_headers, make_order, add_log):
        log = add_log(make_order(ORG_B))
        resp = client.get(f"/communication-audit/logs/{log.id}/events", headers=auth_headers())
        assert resp.status_code == 404

    def test_unlinked_inbound_log_is_staff_only(self, client, auth_headers, add_log):
        log = add_log(None, communication_type="SMS", recipient_email=None, recipient_phone="+12125551234")

        assert client.get(f"/communication-audit/logs/{log.id}/events", headers=auth_headers()).status_code == 404
        staff = client.get(f"/communication-audit/logs/{log.id}/events", headers=_staff(auth_headers))
        assert staff.status_code == 200
        assert staff.json()["events"] == []
