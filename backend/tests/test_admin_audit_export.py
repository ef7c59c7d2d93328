import csv
import io
import unittest
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db
from app.main import app
from app.models.service_request import AuditLog, Base, Payment, ServiceRequest
from app.services.dashboard_read_models import AUDIT_EXPORT_HEADER, PAYMENT_EXPORT_HEADER, REQUEST_EXPORT_HEADER

BASE_TS = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class AdminAuditExportTests(unittest.TestCase):
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

        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="admin", email="admin@example.com")

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        self.client = TestClient(app)

        self.entity_id = uuid.uuid4()
        db = self.SessionLocal()
        try:
            for index in range(5):
                db.add(
                    AuditLog(
                        entity_type="service_request",
                        entity_id=self.entity_id if index < 3 else uuid.uuid4(),
                        action="STATUS_CHANGE" if index % 2 == 0 else "QUOTE_CREATED",
                        old_value=None,
                        new_value={"status": "Diagnosis"},
                        actor_type="service",
                        actor_id=uuid.uuid4(),
                        audit_meta={"index": index},
                        timestamp=BASE_TS + timedelta(minutes=index),
                    )
                )
            db.commit()
        finally:
            db.close()

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def test_cursor_pagination_walks_all_rows(self):
        seen = []
        cursor = None
        pages = 0
        while True:
            params = {"limit": 2}
            if cursor:
                params["cursor"] = cursor
            resp = self.client.get("/api/v1/admin/audit-logs", params=params)
            self.assertEqual(resp.status_code, 200, resp.text)
            body = resp.json()
            seen.extend(item["metadata"]["index"] for item in body["items"])
            pages += 1
            if not body["has_more"]:
                self.assertIsNone(body["next_cursor"])
                break
            cursor = body["next_cursor"]

        self.assertEqual(pages, 3)
        self.assertEqual(seen, [4, 3, 2, 1, 0])

    def test_filters(self):
        resp = self.client.get("/api/v1/admin/audit-logs", params={"entity_id": str(self.entity_id)})
        self.assertEqual(len(resp.json()["items"]), 3)

        resp = self.client.get("/api/v1/admin/audit-logs", params={"action": "QUOTE_CREATED"})
        self.assertEqual(len(resp.json()["items"]), 2)

        resp = self.client.get(
            "/api/v1/admin/audit-logs",
            params={"from_ts": (BASE_TS + timedelta(minutes=3)).isoformat()},
        )
        self.assertEqual(len(resp.json()["items"]), 2)

    def test_bad_parameters_are_400(self):
        self.assertEqual(
            self.client.get("/api/v1/admin/audit-logs", params={"cursor": "!!!"}).status_code,
            400,
        )
        self.assertEqual(
            self.client.get("/api/v1/admin/audit-logs", params={"entity_id": "nope"}).status_code,
            400,
        )
        resp = self.client.get(
            "/api/v1/admin/audit-logs",
            params={"from_ts": BASE_TS.isoformat(), "to_ts": (BASE_TS - timedelta(days=1)).isoformat()},
        )
        self.assertEqual(resp.status_code, 400)

    def test_non_admin_is_forbidden(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="service")
        self.assertEqual(self.client.get("/api/v1/admin/audit-logs").status_code, 403)
        self.assertEqual(self.client.get("/api/v1/admin/export/requests.csv").status_code, 403)

    def test_audit_csv_export(self):
        resp = self.client.get("/api/v1/admin/export/audit-logs.csv", params={"action": "STATUS_CHANGE"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/csv"))
        self.assertIn("audit_logs.csv", resp.headers["content-disposition"])

        rows = list(csv.reader(io.StringIO(resp.text)))
        self.assertEqual(rows[0], AUDIT_EXPORT_HEADER)
        self.assertEqual(len(rows), 4)
        self.assertEqual(rows[1][3], "STATUS_CHANGE")
        self.assertEqual(rows[1][-1], '{"index":4}')

    def test_request_and_payment_csv_export(self):
        db = self.SessionLocal()
        try:
            service_request = ServiceRequest(
                customer_id=uuid.uuid4(),
                customer_name="Asha Patel",
                address="12 Farm Road",
                service_center="Gujarat",
                serial_number="GM-1",
                product_type="Gate Motor Controller",
                purchase_date=date(2024, 1, 1),
                fault_description="Stuck, gate half open",
                status="Completed",
                payment_completed=True,
            )
            db.add(service_request)
            db.flush()
            db.add(
                Payment(
                    service_request_id=service_request.id,
                    customer_id=service_request.customer_id,
                    receipt="receipt_gm1",
                    amount=Decimal("99.5"),
                    currency="AED",
                    status="captured",
                )
            )
            db.commit()
        finally:
            db.close()

        resp = self.client.get("/api/v1/admin/export/requests.csv")
        rows = list(csv.reader(io.StringIO(resp.text)))
        self.assertEqual(rows[0], REQUEST_EXPORT_HEADER)
        self.assertEqual(rows[1][2], "Asha Patel")
        self.assertEqual(rows[1][4], "Gate Motor Controller")
        self.assertEqual(rows[1][-1], "yes")

        resp = self.client.get("/api/v1/admin/export/requests.csv", params={"status": "Received"})
        self.assertEqual(len(list(csv.reader(io.StringIO(resp.text)))), 1)

        resp = self.client.get("/api/v1/admin/export/payments.csv")
        rows = list(csv.reader(io.StringIO(resp.text)))
        self.assertEqual(rows[0], PAYMENT_EXPORT_HEADER)
        self.assertEqual(rows[1][3], "receipt_gm1")
        self.assertEqual(rows[1][6], "99.50")
        self.assertEqual(rows[1][7], "AED")


if __name__ == "__main__":
    unittest.main()
