import io
import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db
from app.core.storage import UploadedPhoto
from app.main import app
from app.models.service_request import AuditLog, Base, Notification, ServiceRequest


def _request_payload(**overrides):
    payload = {
        "customer_name": "Asha Patel",
        "customer_phone": "+919800000000",
        "address": "12 Farm Road, Pune",
        "service_center": "Maharashtra",
        "serial_number": "EN-10023",
        "product_type": "Energizer Product",
        "product_model": "X5",
        "purchase_date": "2024-05-01",
        "fault_description": "No pulse on the fence line",
        "is_warranty_claim": False,
    }
    payload.update(overrides)
    return payload


class ServiceRequestApiTests(unittest.TestCase):
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
        self.current_user = self.customer

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

    def _as(self, role, user_id=None):
        self.current_user = CurrentUser(id=user_id or str(uuid.uuid4()), role=role, email=f"{role}@example.com")

    def _as_customer(self):
        self.current_user = self.customer

    def _create_request(self, **overrides):
        self._as_customer()
        resp = self.client.post("/api/v1/service-requests", json=_request_payload(**overrides))
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def _count(self, model):
        db = self.SessionLocal()
        try:
            return db.query(model).count()
        finally:
            db.close()

    def test_create_request_starts_received(self):
        body = self._create_request()
        self.assertEqual(body["status"], "Received")
        self.assertEqual(body["customer_id"], self.customer.id)
        self.assertEqual(body["product_details"]["warranty_status"], "Out of Warranty")
        self.assertEqual(self._count(AuditLog), 1)

    def test_empty_fault_description_is_rejected_without_writes(self):
        resp = self.client.post("/api/v1/service-requests", json=_request_payload(fault_description="   "))
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(self._count(ServiceRequest), 0)
        self.assertEqual(self._count(AuditLog), 0)

    def test_future_purchase_date_is_rejected(self):
        resp = self.client.post("/api/v1/service-requests", json=_request_payload(purchase_date="2999-01-01"))
        self.assertEqual(resp.status_code, 422)

    def test_epr_role_cannot_file_requests(self):
        self._as("epr")
        resp = self.client.post("/api/v1/service-requests", json=_request_payload())
        self.assertEqual(resp.status_code, 403)

    def test_other_customer_cannot_read_request(self):
        body = self._create_request()
        self._as("customer")
        resp = self.client.get(f"/api/v1/service-requests/{body['id']}")
        self.assertEqual(resp.status_code, 403)

    def test_unknown_request_is_404(self):
        resp = self.client.get(f"/api/v1/service-requests/{uuid.uuid4()}")
        self.assertEqual(resp.status_code, 404)
        resp = self.client.get("/api/v1/service-requests/not-a-uuid")
        self.assertEqual(resp.status_code, 404)

    def test_list_is_scoped_to_customer(self):
        self._create_request(serial_number="EN-1")
        other = CurrentUser(id=str(uuid.uuid4()), role="customer")
        self.current_user = other
        self.client.post("/api/v1/service-requests", json=_request_payload(serial_number="EN-2"))

        self._as_customer()
        resp = self.client.get("/api/v1/service-requests")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["total"], 1)
        self.assertEqual(resp.json()["items"][0]["serial_number"], "EN-1")

        self._as("admin")
        resp = self.client.get("/api/v1/service-requests", params={"search": "en-2"})
        self.assertEqual(resp.json()["total"], 1)

    def test_status_update_by_customer_is_forbidden(self):
        body = self._create_request()
        resp = self.client.patch(f"/api/v1/service-requests/{body['id']}/status", json={"status": "Diagnosis"})
        self.assertEqual(resp.status_code, 403)

    def test_invalid_status_move_is_400(self):
        body = self._create_request()
        self._as("service")
        resp = self.client.patch(f"/api/v1/service-requests/{body['id']}/status", json={"status": "Completed"})
        self.assertEqual(resp.status_code, 200)
        resp = self.client.patch(f"/api/v1/service-requests/{body['id']}/status", json={"status": "Diagnosis"})
        self.assertEqual(resp.status_code, 400)

    def test_status_update_records_audit_and_notifies(self):
        body = self._create_request()
        self._as("service")
        resp = self.client.patch(
            f"/api/v1/service-requests/{body['id']}/status",
            json={"status": "Diagnosis", "note": "On the bench"},
        )
        self.assertEqual(resp.status_code, 200)
        detail = resp.json()
        self.assertEqual(detail["status"], "Diagnosis")
        self.assertEqual(detail["audit_log"][-1]["details"], "On the bench")
        self.assertEqual(self._count(Notification), 1)

        # Same status again is a no-op.
        resp = self.client.patch(f"/api/v1/service-requests/{body['id']}/status", json={"status": "Diagnosis"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._count(Notification), 1)

    def test_transitions_endpoint_lists_role_moves(self):
        body = self._create_request()
        resp = self.client.get(f"/api/v1/service-requests/{body['id']}/transitions")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["allowed_statuses"], [])

        self._as("cpr")
        resp = self.client.get(f"/api/v1/service-requests/{body['id']}/transitions")
        self.assertEqual(resp.json()["allowed_statuses"], ["Diagnosis"])

    def test_quote_approval_moves_to_repair(self):
        body = self._create_request()
        self._as("service")
        resp = self.client.post(
            f"/api/v1/service-requests/{body['id']}/quotes",
            json={"items": [{"description": "Replace output transformer", "cost": 1200}, {"description": "Labour", "cost": 300}]},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        quoted = resp.json()
        self.assertEqual(quoted["status"], "Awaiting Approval")
        self.assertEqual(quoted["quote"]["total_cost"], 1500.0)
        self.assertIsNone(quoted["quote"]["is_approved"])
        self.assertTrue(quoted["payment_required"])

        self._as_customer()
        resp = self.client.post(f"/api/v1/service-requests/{body['id']}/quote/decision", json={"approved": True})
        self.assertEqual(resp.status_code, 200, resp.text)
        decided = resp.json()
        self.assertEqual(decided["status"], "Repair in Progress")
        self.assertTrue(decided["quote"]["is_approved"])

        resp = self.client.post(f"/api/v1/service-requests/{body['id']}/quote/decision", json={"approved": False})
        self.assertEqual(resp.status_code, 409)

    def test_quote_decline_cancels_request(self):
        body = self._create_request()
        self._as("admin")
        self.client.post(
            f"/api/v1/service-requests/{body['id']}/quotes",
            json={"items": [{"description": "Board repair", "cost": 800}]},
        )
        self._as_customer()
        resp = self.client.post(f"/api/v1/service-requests/{body['id']}/quote/decision", json={"approved": False})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "Cancelled")
        self.assertFalse(resp.json()["quote"]["is_approved"])
        self.assertFalse(resp.json()["payment_required"])

    def test_customer_cannot_bypass_quote_with_status_update(self):
        body = self._create_request()
        self._as("service")
        self.client.post(
            f"/api/v1/service-requests/{body['id']}/quotes",
            json={"items": [{"description": "Board repair", "cost": 800}]},
        )

        resp = self.client.patch(f"/api/v1/service-requests/{body['id']}/status", json={"status": "Repair in Progress"})
        self.assertEqual(resp.status_code, 409)

        self._as_customer()
        url = f"/api/v1/service-requests/{body['id']}/status"
        self.assertEqual(self.client.patch(url, json={"status": "Repair in Progress"}).status_code, 403)
        self.assertEqual(self.client.patch(url, json={"status": "Cancelled"}).status_code, 403)
        resp = self.client.get(f"/api/v1/service-requests/{body['id']}/transitions")
        self.assertEqual(resp.json()["allowed_statuses"], [])

        resp = self.client.post(f"/api/v1/service-requests/{body['id']}/quote/decision", json={"approved": True})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "Repair in Progress")

    def test_customer_cannot_create_quote(self):
        body = self._create_request()
        resp = self.client.post(
            f"/api/v1/service-requests/{body['id']}/quotes",
            json={"items": [{"description": "Board repair", "cost": 800}]},
        )
        self.assertEqual(resp.status_code, 403)

    def test_quote_with_mixed_currencies_is_rejected(self):
        body = self._create_request()
        self._as("service")
        resp = self.client.post(
            f"/api/v1/service-requests/{body['id']}/quotes",
            json={
                "items": [
                    {"description": "Part", "cost": 10, "currency": "USD"},
                    {"description": "Labour", "cost": 300, "currency": "INR"},
                ]
            },
        )
        self.assertEqual(resp.status_code, 422)

    def test_second_quote_while_pending_is_409(self):
        body = self._create_request()
        self._as("service")
        url = f"/api/v1/service-requests/{body['id']}/quotes"
        self.assertEqual(self.client.post(url, json={"items": [{"description": "A", "cost": 1}]}).status_code, 201)
        self.assertEqual(self.client.post(url, json={"items": [{"description": "B", "cost": 2}]}).status_code, 409)

    def test_assignment_requires_staff(self):
        body = self._create_request()
        resp = self.client.patch(
            f"/api/v1/service-requests/{body['id']}/assignment",
            json={"assigned_technician": "Vikram"},
        )
        self.assertEqual(resp.status_code, 403)

        self._as("service")
        resp = self.client.patch(
            f"/api/v1/service-requests/{body['id']}/assignment",
            json={"assigned_technician": "Vikram", "notes": "Priority customer"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["assigned_technician"], "Vikram")
        self.assertEqual(resp.json()["notes"], "Priority customer")

    def test_photo_upload_stores_urls(self):
        body = self._create_request()
        buf = io.BytesIO()
        Image.new("RGB", (32, 32), color=(200, 30, 30)).save(buf, format="PNG")

        uploaded = UploadedPhoto(url="https://cdn.test/photo.png")
        with patch("app.services.request_service.upload_request_photo", return_value=uploaded) as upload:
            resp = self.client.post(
                f"/api/v1/service-requests/{body['id']}/photos",
                files=[("files", ("unit.png", buf.getvalue(), "image/png"))],
            )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["image_urls"], ["https://cdn.test/photo.png"])
        upload.assert_called_once()

    def test_photo_upload_rejects_non_images(self):
        body = self._create_request()
        with patch("app.services.request_service.upload_request_photo") as upload:
            resp = self.client.post(
                f"/api/v1/service-requests/{body['id']}/photos",
                files=[("files", ("notes.txt", b"hello", "text/plain"))],
            )
        self.assertEqual(resp.status_code, 400)
        upload.assert_not_called()


if __name__ == "__main__":
    unittest.main()
