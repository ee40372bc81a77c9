"""
API Integration Tests — orders, audits, machines, sweeps.

Exercises the HTTP layer and its error mapping against a seeded database.
"""

import json
import uuid
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

from api.main import app
from conftest import DEVICE_SECRET, make_order
from core.config import Settings, get_settings
from core.security import sign_device_payload


@pytest.mark.asyncio
class TestHealth:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
class TestOrdersAPI:
    async def test_get_order_lists_allowed_transitions(self, client: AsyncClient, seeded_order):
        response = await client.get(f"/api/v1/orders/{seeded_order['order_id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "SUBMITTED"
        assert data["allowed_transitions"] == ["CONFIRMED", "AUTO_CONFIRMED", "QUEUED", "ABORTED"]

    async def test_transition(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/orders/{seeded_order['order_id']}/transition",
            json={"target_status": "CONFIRMED", "reason": "school called"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "CONFIRMED"
        assert data["confirmed_at"] is not None
        assert data["allowed_transitions"] == ["QUEUED", "ABORTED"]

    async def test_every_status_stamp_is_exposed(self, client: AsyncClient, test_db):
        order = make_order(status="PICKUP", pickup_at=datetime(2026, 3, 9, 8, 0, 0))
        test_db.add(order)
        await test_db.commit()

        response = await client.post(f"/api/v1/orders/{order.id}/transition", json={"target_status": "ONGOING"})
        assert response.status_code == 200
        data = response.json()
        for stamp in ("pickup_at", "ongoing_at", "done_at", "packaging_at", "delivery_at"):
            assert stamp in data
        assert data["pickup_at"] == "2026-03-09T08:00:00"
        assert data["ongoing_at"] is not None
        assert data["done_at"] is None

    async def test_invalid_transition_is_409(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/orders/{seeded_order['order_id']}/transition",
            json={"target_status": "DELIVERY"},
        )
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "InvalidTransition"
        assert data["current_status"] == "SUBMITTED"
        assert data["attempted_status"] == "DELIVERY"

    async def test_unknown_status_is_422(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/orders/{seeded_order['order_id']}/transition",
            json={"target_status": "TELEPORTED"},
        )
        assert response.status_code == 422

    async def test_missing_order_is_404(self, client: AsyncClient):
        response = await client.post(
            f"/api/v1/orders/{uuid.uuid4()}/transition",
            json={"target_status": "CONFIRMED"},
        )
        assert response.status_code == 404
        assert response.json()["entity"] == "Order"


@pytest.mark.asyncio
class TestAuditsAPI:
    async def test_publish_and_report(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/audits/students/{seeded_order['ada_id']}",
            json={"collected_dark": 3, "collected_light": 1, "notes": "extra shirt"},
        )
        assert response.status_code == 200
        audit = response.json()
        assert audit["has_discrepancy"] is True
        assert audit["dark_garments_discrepancy"] == 1
        assert audit["discrepancy_message"] == "Dark garments: collected 3 exceeds submitted 2"

        report_id = audit["audit_report_id"]
        response = await client.get(f"/api/v1/audits/{report_id}/report")
        assert response.status_code == 200
        view = response.json()
        assert view["summary"]["students_with_discrepancies"] == 1
        assert view["discrepancies"][0]["student_name"] == "Ada"

        response = await client.post(f"/api/v1/audits/{report_id}/complete")
        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

        response = await client.post(f"/api/v1/audits/{report_id}/complete")
        assert response.status_code == 422

    async def test_session_and_class_corrections(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/audits/sessions/{seeded_order['order_id']}",
            json={"total_garments": 10, "notes": "two spare shirts"},
        )
        assert response.status_code == 200
        report_id = response.json()["id"]
        assert response.json()["status"] == "IN_PROGRESS"

        response = await client.post(
            f"/api/v1/audits/classes/{seeded_order['class_a_id']}", json={"students_to_serve": 3}
        )
        assert response.status_code == 200
        assert response.json()["id"] == report_id

        view = (await client.get(f"/api/v1/audits/{report_id}/report")).json()
        assert view["session"]["total_garments"]["current"] == 10
        assert view["classes"][0]["students_to_serve"] == 3
        assert len(view["audit_trail"]) == 2

    async def test_empty_session_correction_is_422(self, client: AsyncClient, seeded_order):
        response = await client.post(f"/api/v1/audits/sessions/{seeded_order['order_id']}", json={})
        assert response.status_code == 422

    async def test_class_correction_failure_is_502(self, client: AsyncClient, seeded_order, failing_store):
        from api.deps import get_store

        app.dependency_overrides[get_store] = lambda: failing_store("audit:audit_report")

        response = await client.post(
            f"/api/v1/audits/classes/{seeded_order['class_b_id']}", json={"students_to_serve": 2}
        )
        assert response.status_code == 502
        data = response.json()
        assert data["stage"] == "audit_report"
        assert data["completed_stages"] == ["class"]
        assert data["class_id"] == str(seeded_order["class_b_id"])

    async def test_negative_counts_are_422(self, client: AsyncClient, seeded_order):
        response = await client.post(
            f"/api/v1/audits/students/{seeded_order['ada_id']}",
            json={"collected_dark": -1, "collected_light": 1},
        )
        assert response.status_code == 422

    async def test_unknown_student_is_404(self, client: AsyncClient):
        response = await client.post(
            f"/api/v1/audits/students/{uuid.uuid4()}",
            json={"collected_dark": 1, "collected_light": 1},
        )
        assert response.status_code == 404

    async def test_partial_failure_is_502_with_stage(self, client: AsyncClient, seeded_order, failing_store):
        from api.deps import get_store

        app.dependency_overrides[get_store] = lambda: failing_store("audit:audit_report")

        response = await client.post(
            f"/api/v1/audits/students/{seeded_order['ben_id']}",
            json={"collected_dark": 1, "collected_light": 2},
        )
        assert response.status_code == 502
        data = response.json()
        assert data["stage"] == "audit_report"
        assert data["completed_stages"] == ["student", "student_audit"]


@pytest.mark.asyncio
class TestMachinesAPI:
    async def test_signed_heartbeat(self, client: AsyncClient, seeded_machine):
        body = json.dumps({"is_printing": False, "firmware_version": "1.3.0"}).encode()
        response = await client.post(
            "/api/v1/machines/PRN-001/heartbeat",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Device-Signature": sign_device_payload(body, DEVICE_SECRET),
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["is_online"] is True
        assert data["firmware_version"] == "1.3.0"

    async def test_bad_signature_is_401(self, client: AsyncClient, seeded_machine):
        response = await client.post(
            "/api/v1/machines/PRN-001/heartbeat",
            content=b"{}",
            headers={"X-Device-Signature": "deadbeef"},
        )
        assert response.status_code == 401

    async def test_unknown_device_is_404(self, client: AsyncClient):
        response = await client.post("/api/v1/machines/PRN-404/heartbeat", content=b"{}")
        assert response.status_code == 404

    async def test_unsigned_heartbeat_when_signatures_disabled(self, client: AsyncClient, seeded_machine):
        app.dependency_overrides[get_settings] = lambda: Settings(require_device_signature=False)

        response = await client.post("/api/v1/machines/PRN-001/heartbeat", json={"is_printing": True})
        assert response.status_code == 200
        assert response.json()["is_printing"] is True

    async def test_malformed_body_is_422(self, client: AsyncClient, seeded_machine):
        app.dependency_overrides[get_settings] = lambda: Settings(require_device_signature=False)

        response = await client.post("/api/v1/machines/PRN-001/heartbeat", content=b"{not json")
        assert response.status_code == 422

    async def test_signed_print_events(self, client: AsyncClient, seeded_machine):
        async def post_event(event):
            body = json.dumps(event).encode()
            return await client.post(
                "/api/v1/machines/PRN-001/print-events",
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Device-Signature": sign_device_payload(body, DEVICE_SECRET),
                },
            )

        start = {"print_job_id": "job-7", "type": "START", "payload": {}, "idempotency_key": "job-7-start"}
        response = await post_event(start)
        assert response.status_code == 200
        data = response.json()
        assert data["duplicate"] is False
        assert data["type"] == "START"
        assert data["machine"]["is_printing"] is True
        assert data["machine"]["active_print_job"] == "job-7"

        replay = await post_event(start)
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True
        assert replay.json()["event_id"] == data["event_id"]

        response = await post_event({"print_job_id": "job-7", "type": "COMPLETE", "idempotency_key": "job-7-done"})
        assert response.status_code == 200
        assert response.json()["machine"]["is_printing"] is False

    async def test_print_event_bad_signature_is_401(self, client: AsyncClient, seeded_machine):
        response = await client.post(
            "/api/v1/machines/PRN-001/print-events",
            content=b'{"print_job_id": "job-1", "type": "START"}',
            headers={"X-Device-Signature": "deadbeef"},
        )
        assert response.status_code == 401

    async def test_print_event_unknown_type_is_422(self, client: AsyncClient, seeded_machine):
        app.dependency_overrides[get_settings] = lambda: Settings(require_device_signature=False)

        response = await client.post(
            "/api/v1/machines/PRN-001/print-events",
            json={"print_job_id": "job-1", "type": "EXPLODE"},
        )
        assert response.status_code == 422


@pytest.mark.asyncio
class TestProductionAPI:
    async def _start_production(self, test_db, order_id):
        from db.models import Order
        from workflow.states import OrderStatus

        order = await test_db.get(Order, order_id)
        order.status = OrderStatus.ONGOING
        await test_db.commit()

    async def test_serve_and_attend(self, client: AsyncClient, test_db, seeded_order):
        await self._start_production(test_db, seeded_order["order_id"])

        response = await client.post(f"/api/v1/production/students/{seeded_order['ada_id']}/serve", json={})
        assert response.status_code == 200
        assert response.json()["is_served"] is True
        assert response.json()["served_at"] is not None

        response = await client.post(f"/api/v1/production/classes/{seeded_order['class_a_id']}/attend")
        assert response.status_code == 200
        data = response.json()
        assert data["is_attended"] is True
        assert data["students_served"] == 1
        assert data["students_to_serve"] == 2

        response = await client.post(
            f"/api/v1/production/students/{seeded_order['ada_id']}/serve", json={"served": False}
        )
        assert response.status_code == 200
        assert response.json()["is_served"] is False

    async def test_serving_before_production_is_422(self, client: AsyncClient, seeded_order):
        response = await client.post(f"/api/v1/production/students/{seeded_order['ada_id']}/serve", json={})
        assert response.status_code == 422
        assert response.json()["current_status"] == "SUBMITTED"

    async def test_unknown_class_is_404(self, client: AsyncClient):
        response = await client.post(f"/api/v1/production/classes/{uuid.uuid4()}/attend", json={})
        assert response.status_code == 404


@pytest.mark.asyncio
class TestSweepsAPI:
    async def test_run_sweep(self, client: AsyncClient, test_db, sink):
        order = make_order(submitted_hours_ago=30, submission_time=datetime.utcnow() - timedelta(hours=30))
        test_db.add(order)
        await test_db.commit()

        response = await client.post("/api/v1/sweeps")
        assert response.status_code == 200
        data = response.json()
        assert data["jobs_run"] == [
            "auto_confirm",
            "device_liveness",
            "staff_metrics",
            "notifications",
            "audit_retention",
        ]
        assert data["errors"] == []
        assert data["reports"]["auto_confirm"]["processed"] == 1
