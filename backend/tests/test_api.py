"""API tests for the visitor management endpoints."""

from datetime import date, datetime

from fastapi.testclient import TestClient

from vms.core.config import settings
from vms.models.notification import NotificationLog

API = "/api/v1"
RECEPTION = {"X-Actor-Role": "reception"}
MANAGER = {"X-Actor-Role": "general_manager"}
GATE = {"X-Actor-Role": "gate"}


def registration(host_id, day="2026-10-20", **overrides):
    body = {
        "entity_type": "guest",
        "first_name": "Grace",
        "last_name": "Wanjiru",
        "phone_number": "0722000111",
        "host_id": host_id,
        "visit_date": day,
    }
    body.update(overrides)
    return body


class TestHealth:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    def test_scheduler_status(self, client: TestClient):
        response = client.get("/health/scheduler")
        assert response.status_code == 200
        assert response.json()["enabled"] is False


class TestVisitEndpoints:
    """Registration, attendance and cancellation over HTTP."""

    def test_register_visit(self, client: TestClient, host, dispatcher):
        response = client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION)
        assert response.status_code == 201
        data = response.json()
        assert data["entity_created"] is True
        assert data["capacity_pending"] is False
        assert data["visit"]["status"] == "approved"
        assert data["visit"]["display_status"] == "scheduled"
        # Notifications are flushed after the response
        assert "registration_approved" in dispatcher.templates("0722000111")

    def test_register_unapproved_visit(self, client: TestClient, host):
        for day in ("2026-10-15", "2026-10-16", "2026-10-20", "2026-10-21"):
            client.post(f"{API}/visits/", json=registration(host.id, day), headers=RECEPTION)

        response = client.post(f"{API}/visits/", json=registration(host.id, "2026-10-22"), headers=RECEPTION)
        assert response.status_code == 201
        data = response.json()
        assert data["capacity_pending"] is True
        assert data["visit"]["display_status"] == "unapproved"
        assert data["quota"]["reasons"] == ["Monthly visit limit of 4 reached (5 visits)"]

    def test_validation_errors(self, client: TestClient):
        response = client.post(
            f"{API}/visits/",
            json={"entity_type": "guest", "visit_date": "2026-10-20"},
            headers=RECEPTION,
        )
        assert response.status_code == 422
        data = response.json()
        assert data["detail"] == "First name is required"
        assert "A host is required unless the visit is a courtesy visit" in data["errors"]

    def test_malformed_body(self, client: TestClient):
        response = client.post(
            f"{API}/visits/", json={"entity_type": "alien", "visit_date": "soon"}, headers=RECEPTION
        )
        assert response.status_code == 422
        assert len(response.json()["errors"]) == 2

    def test_duplicate_visit(self, client: TestClient, host):
        client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION)
        response = client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION)
        assert response.status_code == 409
        assert response.json()["detail"] == "This visitor already has a visit registered on this date"

    def test_missing_role_header(self, client: TestClient, host):
        response = client.post(f"{API}/visits/", json=registration(host.id))
        assert response.status_code == 422

    def test_forbidden_role(self, client: TestClient, host):
        response = client.post(f"{API}/visits/", json=registration(host.id), headers=GATE)
        assert response.status_code == 403

    def test_sign_in_and_out(self, client: TestClient, host):
        created = client.post(
            f"{API}/visits/", json=registration(host.id, date(2026, 10, 14).isoformat()), headers=RECEPTION
        ).json()
        visit_id = created["visit"]["id"]

        response = client.post(f"{API}/visits/{visit_id}/sign-in", json={"id_number": "12345678"}, headers=GATE)
        assert response.status_code == 200
        assert response.json()["display_status"] == "active"

        response = client.post(f"{API}/visits/{visit_id}/sign-in", headers=GATE)
        assert response.status_code == 409
        assert response.json()["detail"] == "Visitor already signed in"

        response = client.post(f"{API}/visits/{visit_id}/sign-out", headers=GATE)
        assert response.status_code == 200
        assert response.json()["display_status"] == "completed"

    def test_sign_in_future_visit(self, client: TestClient, host):
        created = client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION).json()
        response = client.post(f"{API}/visits/{created['visit']['id']}/sign-in", headers=GATE)
        assert response.status_code == 409

    def test_cancel(self, client: TestClient, host):
        created = client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION).json()
        response = client.post(f"{API}/visits/{created['visit']['id']}/cancel", headers=RECEPTION)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancelled_at"] is not None

    def test_get_unknown_visit(self, client: TestClient):
        response = client.get(f"{API}/visits/999", headers=RECEPTION)
        assert response.status_code == 404


class TestEntityEndpoints:
    """Visitor administration over HTTP."""

    def test_create_and_get(self, client: TestClient):
        response = client.post(
            f"{API}/entities/",
            json={"entity_type": "supplier", "first_name": "Sam", "last_name": "Supplies",
                  "phone_number": "0711000222"},
            headers=MANAGER,
        )
        assert response.status_code == 201
        entity_id = response.json()["id"]

        response = client.get(f"{API}/entities/{entity_id}", headers=RECEPTION)
        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_duplicate_phone_rejected(self, client: TestClient, host):
        response = client.post(
            f"{API}/entities/",
            json={"entity_type": "member", "first_name": "Other", "last_name": "Member",
                  "phone_number": host.phone_number},
            headers=MANAGER,
        )
        assert response.status_code == 422

    def test_update(self, client: TestClient, host):
        response = client.patch(
            f"{API}/entities/{host.id}", json={"receive_email": True, "email": "host@example.com"},
            headers=MANAGER,
        )
        assert response.status_code == 200
        assert response.json()["email"] == "host@example.com"

    def test_ban_cascades(self, client: TestClient, host):
        created = client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION).json()

        response = client.put(
            f"{API}/entities/{created['entity_id']}/status", json={"status": "banned"}, headers=MANAGER
        )
        assert response.status_code == 200
        assert response.json()["status_source"] == "admin"

        visits = client.get(f"{API}/entities/{created['entity_id']}/visits", headers=RECEPTION).json()
        assert [v["status"] for v in visits] == ["banned"]

        response = client.post(f"{API}/visits/", json=registration(host.id, "2026-10-21"), headers=RECEPTION)
        assert response.status_code == 403
        assert response.json()["detail"] == "Visitor is banned and cannot register a visit"

    def test_delete_refused_with_history(self, client: TestClient, host):
        client.post(f"{API}/visits/", json=registration(host.id), headers=RECEPTION)
        response = client.delete(f"{API}/entities/{host.id}", headers=MANAGER)
        assert response.status_code == 409

    def test_delete(self, client: TestClient, make_entity):
        entity = make_entity("supplier")
        response = client.delete(f"{API}/entities/{entity.id}", headers=MANAGER)
        assert response.status_code == 204
        assert client.get(f"{API}/entities/{entity.id}", headers=MANAGER).status_code == 404


class TestRecalculationEndpoints:
    def test_recalculate_entity(self, client: TestClient, make_entity, add_visit, host):
        guest = make_entity("guest")
        for day in (15, 16, 20, 21, 22):
            add_visit(guest, date(2026, 10, day), host=host)

        response = client.post(f"{API}/recalculation/entities/{guest.id}", headers=MANAGER)
        assert response.status_code == 200
        changes = response.json()["changes"]
        assert len(changes) == 1
        assert changes[0]["new_status"] == "unapproved"
        assert changes[0]["cause"] == "recalculation"

    def test_run_requires_permission(self, client: TestClient):
        response = client.post(f"{API}/recalculation/run", headers=RECEPTION)
        assert response.status_code == 403

    def test_run(self, client: TestClient):
        response = client.post(f"{API}/recalculation/run", headers=MANAGER)
        assert response.status_code == 200
        assert response.json()["failures"] == 0

    def test_sign_out_sweep(self, client: TestClient):
        response = client.post(f"{API}/recalculation/sign-out-sweep", headers=MANAGER)
        assert response.status_code == 200
        assert response.json() == {"signed_out": 0}


class TestDeliveryStatusCallback:
    def test_delivery_report(self, client: TestClient, db_session, monkeypatch):
        monkeypatch.setattr(settings, "sms_status_secret", "s3")
        db_session.add(NotificationLog(
            channel="sms", recipient="0712345678", template="signed_in", message="Welcome",
            message_id="8812", status="accepted", created_at=datetime(2026, 10, 14, 9),
        ))
        db_session.commit()

        response = client.post(
            f"{API}/notifications/delivery-status",
            data={"id": "8812", "status": "Delivered", "reason": "DeliveredToTerminal", "status_secret": "s3"},
        )
        assert response.status_code == 200
        assert response.json()["recorded"] is True

    def test_bad_secret(self, client: TestClient, monkeypatch):
        monkeypatch.setattr(settings, "sms_status_secret", "s3")
        response = client.post(
            f"{API}/notifications/delivery-status",
            data={"id": "8812", "status": "Delivered", "status_secret": "wrong"},
        )
        assert response.status_code == 403
