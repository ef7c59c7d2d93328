import unittest
import uuid

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db
from app.main import app
from app.models.service_request import Base
from app.services.bulk_request_service import bulk_progress


def _bulk_payload():
    return {
        "requester_name": "Ravi Kumar",
        "company_name": "Agri Fence Co",
        "contact_phone": "+919811111111",
        "priority": "high",
        "equipment_items": [
            {
                "equipment_type": "Energizer Product",
                "serial_number": "EN-1",
                "quantity": 3,
                "unit_price": 500,
                "issue_description": "No output",
                "severity": "high",
            },
            {
                "equipment_type": "Power Adapter",
                "quantity": 2,
                "unit_price": 120.5,
                "issue_description": "Overheating",
            },
        ],
    }


class BulkRequestApiTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.partner = CurrentUser(id=str(uuid.uuid4()), role="channel_partner", email="ravi@example.com")
        self.service = CurrentUser(id=str(uuid.uuid4()), role="service", email="desk@example.com")
        self.current_user = self.partner

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _create(self):
        self.current_user = self.partner
        resp = self.client.post("/api/v1/bulk-requests", json=_bulk_payload())
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_create_computes_totals(self):
        body = self._create()
        self.assertEqual(body["status"], "pending")
        self.assertEqual(body["total_equipment_count"], 5)
        self.assertEqual(body["estimated_total_value"], 1741.0)
        self.assertEqual(body["equipment_items"][0]["total_price"], 1500.0)
        self.assertEqual(body["contact_email"], "ravi@example.com")

    def test_customer_cannot_create_bulk_request(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="customer")
        resp = self.client.post("/api/v1/bulk-requests", json=_bulk_payload())
        self.assertEqual(resp.status_code, 403)

    def test_empty_equipment_list_is_rejected(self):
        payload = _bulk_payload()
        payload["equipment_items"] = []
        resp = self.client.post("/api/v1/bulk-requests", json=payload)
        self.assertEqual(resp.status_code, 422)

    def test_other_partner_cannot_see_request(self):
        body = self._create()
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="system_integrator")
        resp = self.client.get(f"/api/v1/bulk-requests/{body['id']}")
        self.assertEqual(resp.status_code, 403)
        resp = self.client.get("/api/v1/bulk-requests")
        self.assertEqual(resp.json()["total"], 0)

    def test_detail_includes_progress(self):
        body = self._create()
        resp = self.client.get(f"/api/v1/bulk-requests/{body['id']}")
        self.assertEqual(resp.status_code, 200)
        progress = resp.json()["progress"]
        self.assertEqual(progress["percent"], 20)
        self.assertTrue(progress["steps"][0]["current"])
        self.assertFalse(progress["cancelled"])

    def test_partner_cannot_start_review(self):
        body = self._create()
        resp = self.client.patch(f"/api/v1/bulk-requests/{body['id']}/status", json={"status": "under_review"})
        self.assertEqual(resp.status_code, 403)

    def test_bulk_status_moves_one_step_at_a_time(self):
        body = self._create()
        self.current_user = self.service
        resp = self.client.patch(f"/api/v1/bulk-requests/{body['id']}/status", json={"status": "in_progress"})
        self.assertEqual(resp.status_code, 400)

    def test_quote_and_approval_flow(self):
        body = self._create()
        self.current_user = self.service
        resp = self.client.post(
            f"/api/v1/bulk-requests/{body['id']}/quotes",
            json={"items": [{"description": "Repair 5 units", "cost": 1600}]},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        self.assertEqual(resp.json()["status"], "under_review")
        self.assertIsNone(resp.json()["quote"]["is_approved"])

        self.current_user = self.partner
        resp = self.client.post(f"/api/v1/bulk-requests/{body['id']}/quote/decision", json={"approved": True})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "approved")
        self.assertEqual(resp.json()["progress"]["percent"], 60)

        resp = self.client.post(f"/api/v1/bulk-requests/{body['id']}/quote/decision", json={"approved": False})
        self.assertEqual(resp.status_code, 409)

    def test_quote_rejected_once_work_started(self):
        body = self._create()
        url = f"/api/v1/bulk-requests/{body['id']}"
        self.current_user = self.service
        resp = self.client.post(f"{url}/quotes", json={"items": [{"description": "Repair 5 units", "cost": 1600}]})
        self.assertEqual(resp.status_code, 201, resp.text)
        self.current_user = self.partner
        resp = self.client.post(f"{url}/quote/decision", json={"approved": True})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.current_user = self.service
        resp = self.client.patch(f"{url}/status", json={"status": "in_progress"})
        self.assertEqual(resp.status_code, 200, resp.text)

        resp = self.client.post(f"{url}/quotes", json={"items": [{"description": "Extra parts", "cost": 250}]})
        self.assertEqual(resp.status_code, 409)
        resp = self.client.get(url)
        self.assertEqual(resp.json()["status"], "in_progress")
        self.assertTrue(resp.json()["quote"]["is_approved"])

    def test_quote_uses_item_estimate_currency(self):
        body = self._create()
        item_id = body["equipment_items"][0]["id"]
        self.current_user = self.service
        resp = self.client.patch(
            f"/api/v1/bulk-requests/{body['id']}/items/{item_id}",
            json={
                "epr_status": "Cost Estimation Preparation",
                "epr_cost_estimation": 40,
                "epr_cost_estimation_currency": "USD",
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)

        resp = self.client.post(
            f"/api/v1/bulk-requests/{body['id']}/quotes",
            json={"items": [{"description": "Repair 3 energizers", "cost": 120}]},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        quote = resp.json()["quote"]
        self.assertEqual(quote["currency"], "USD")
        self.assertEqual(quote["items"][0]["currency"], "USD")

    def test_partner_can_cancel_pending_request(self):
        body = self._create()
        resp = self.client.patch(f"/api/v1/bulk-requests/{body['id']}/status", json={"status": "cancelled"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["progress"]["cancelled"])
        self.assertEqual(resp.json()["progress"]["percent"], 0)

    def test_item_update_by_operator(self):
        body = self._create()
        item_id = body["equipment_items"][0]["id"]

        resp = self.client.patch(
            f"/api/v1/bulk-requests/{body['id']}/items/{item_id}",
            json={"item_status": "in_progress"},
        )
        self.assertEqual(resp.status_code, 403)

        self.current_user = self.service
        resp = self.client.patch(
            f"/api/v1/bulk-requests/{body['id']}/items/{item_id}",
            json={
                "item_status": "in_progress",
                "epr_status": "Cost Estimation Preparation",
                "epr_cost_estimation": 900,
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        item = resp.json()["equipment_items"][0]
        self.assertEqual(item["item_status"], "in_progress")
        self.assertEqual(item["epr_status"], "Cost Estimation Preparation")
        self.assertEqual(item["epr_cost_estimation"], 900.0)
        self.assertEqual(item["epr_cost_estimation_currency"], "INR")
        # Item-level EPR data leaves the bulk status alone.
        self.assertEqual(resp.json()["status"], "pending")

    def test_item_epr_cannot_skip_steps(self):
        body = self._create()
        item_id = body["equipment_items"][0]["id"]
        self.current_user = self.service
        resp = self.client.patch(
            f"/api/v1/bulk-requests/{body['id']}/items/{item_id}",
            json={"epr_status": "Approved"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_bulk_epr_updates(self):
        body = self._create()
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="epr", email="epr@example.com")
        resp = self.client.patch(
            f"/api/v1/bulk-requests/{body['id']}/epr",
            json={"epr_status": "Cost Estimation Preparation", "details": "Batch inspection"},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["epr_status"], "Cost Estimation Preparation")
        self.assertEqual(len(resp.json()["epr_timeline"]), 1)


class BulkProgressTests(unittest.TestCase):
    def test_completed_is_full(self):
        progress = bulk_progress("completed")
        self.assertEqual(progress["percent"], 100)
        self.assertTrue(all(step["completed"] for step in progress["steps"]))

    def test_cancelled_has_no_current_step(self):
        progress = bulk_progress("cancelled")
        self.assertTrue(progress["cancelled"])
        self.assertFalse(any(step["current"] for step in progress["steps"]))


if __name__ == "__main__":
    unittest.main()
