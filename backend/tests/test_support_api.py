import os
import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser, get_current_user
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.main import app
from app.models.service_request import AuditLog, Base


class SupportApiTests(unittest.TestCase):
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

        self.customer = CurrentUser(id=str(uuid.uuid4()), role="customer", email="asha@example.com")
        self.service = CurrentUser(id=str(uuid.uuid4()), role="service", email="desk@example.com")
        self.current_user = self.customer

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        self.client = TestClient(app)

        resp = self.client.post(
            "/api/v1/service-requests",
            json={
                "customer_name": "Asha Patel",
                "address": "12 Farm Road, Pune",
                "service_center": "Dubai",
                "serial_number": "PA-9",
                "product_type": "Power Adapter",
                "purchase_date": "2024-02-02",
                "fault_description": "Buzzing noise",
            },
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        self.request_id = resp.json()["id"]

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def _move_to(self, status):
        self.current_user = self.service
        resp = self.client.patch(f"/api/v1/service-requests/{self.request_id}/status", json={"status": status})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.current_user = self.customer

    def _complain(self, details="Still buzzing after repair"):
        return self.client.post(
            "/api/v1/complaints",
            json={"request_id": self.request_id, "complaint_details": details},
        )

    # Complaints

    def test_complaint_requires_finished_request(self):
        resp = self._complain()
        self.assertEqual(resp.status_code, 400)

    def test_complaint_on_completed_request(self):
        self._move_to("Completed")
        resp = self._complain()
        self.assertEqual(resp.status_code, 201, resp.text)
        body = resp.json()
        self.assertFalse(body["is_resolved"])
        self.assertEqual(body["serial_number"], "PA-9")
        self.assertEqual(body["request_status"], "Completed")

        resp = self.client.get("/api/v1/complaints", params={"resolved": "false"})
        self.assertEqual(len(resp.json()), 1)

    def test_complaint_on_cancelled_request(self):
        self._move_to("Cancelled")
        self.assertEqual(self._complain().status_code, 201)

    def test_complaint_details_required(self):
        self._move_to("Completed")
        self.assertEqual(self._complain(details="   ").status_code, 422)

    def test_other_customer_cannot_complain(self):
        self._move_to("Completed")
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="customer")
        self.assertEqual(self._complain().status_code, 403)

    def test_staff_resolves_complaint_and_customer_is_notified(self):
        self._move_to("Completed")
        complaint_id = self._complain().json()["id"]

        resp = self.client.patch(f"/api/v1/complaints/{complaint_id}", json={"is_resolved": True})
        self.assertEqual(resp.status_code, 403)

        self.current_user = self.service
        resp = self.client.patch(f"/api/v1/complaints/{complaint_id}", json={"is_resolved": True})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["is_resolved"])
        self.assertIsNotNone(resp.json()["resolved_at"])

        self.current_user = self.customer
        titles = [item["title"] for item in self.client.get("/api/v1/notifications").json()["items"]]
        self.assertIn("Complaint update", titles)

        db = self.SessionLocal()
        try:
            self.assertEqual(db.query(AuditLog).filter(AuditLog.action == "COMPLAINT_RESOLVED").count(), 1)
        finally:
            db.close()

    # Feedback

    def test_feedback_only_on_completed_requests(self):
        payload = {"service_request_id": self.request_id, "rating": 5, "comment": "Quick turnaround"}
        self.assertEqual(self.client.post("/api/v1/feedback", json=payload).status_code, 400)

        self._move_to("Completed")
        resp = self.client.post("/api/v1/feedback", json=payload)
        self.assertEqual(resp.status_code, 201, resp.text)
        self.assertEqual(resp.json()["rating"], 5)

        self.assertEqual(self.client.post("/api/v1/feedback", json=payload).status_code, 409)

    def test_feedback_rating_range(self):
        self._move_to("Completed")
        resp = self.client.post("/api/v1/feedback", json={"service_request_id": self.request_id, "rating": 6})
        self.assertEqual(resp.status_code, 422)

    def test_feedback_list_is_staff_only(self):
        self.assertEqual(self.client.get("/api/v1/feedback").status_code, 403)
        self.current_user = self.service
        self.assertEqual(self.client.get("/api/v1/feedback").status_code, 200)

    # Notifications

    def test_notifications_read_and_read_all(self):
        self._move_to("Diagnosis")
        self._move_to("Awaiting Approval")

        resp = self.client.get("/api/v1/notifications")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["unread_count"], 2)
        self.assertEqual(body["refresh_seconds"], get_settings().dashboard_refresh_seconds)

        first_id = body["items"][0]["id"]
        resp = self.client.post(f"/api/v1/notifications/{first_id}/read")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["read"])
        self.assertEqual(self.client.get("/api/v1/notifications").json()["unread_count"], 1)

        resp = self.client.post("/api/v1/notifications/read-all")
        self.assertEqual(resp.json(), {"updated": 1})
        self.assertEqual(self.client.get("/api/v1/notifications").json()["unread_count"], 0)

    def test_notification_of_another_customer_is_404(self):
        self._move_to("Diagnosis")
        notification_id = self.client.get("/api/v1/notifications").json()["items"][0]["id"]
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="customer")
        self.assertEqual(self.client.post(f"/api/v1/notifications/{notification_id}/read").status_code, 404)
        self.assertEqual(self.client.post("/api/v1/notifications/not-an-id/read").status_code, 404)

    # Chat and FAQ

    def test_chat_reports_status(self):
        resp = self.client.post("/api/v1/chat/messages", json={"message": f"status {self.request_id}"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["intent"], "status")
        self.assertEqual(resp.json()["request_ids"], [self.request_id])

    def test_chat_can_be_disabled(self):
        with patch.dict(os.environ, {"ENABLE_CHAT_ASSISTANT": "false"}):
            get_settings.cache_clear()
            resp = self.client.post("/api/v1/chat/messages", json={"message": "hello"})
        get_settings.cache_clear()
        self.assertEqual(resp.status_code, 404)

    def test_faq_search(self):
        resp = self.client.get("/api/v1/faq", params={"q": "serial number"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json())
        self.assertTrue(all("category" in item for item in resp.json()))


if __name__ == "__main__":
    unittest.main()
