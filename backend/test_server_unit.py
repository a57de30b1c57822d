import asyncio
import unittest
from unittest.mock import AsyncMock, Mock, patch

import jwt
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import server
from migrations.apply_coin_indexes import create_coin_indexes
from migrations.apply_request_indexes import create_request_indexes

TEST_SECRET = "unit-test-secret"


def auth_headers(user_id: str, user_type: str, role: str = "") -> dict:
    token = jwt.encode({"user_id": user_id, "user_type": user_type, "role": role}, TEST_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.db = AsyncMongoMockClient()["api_tests"]
        server.app.dependency_overrides[server.get_database] = lambda: self.db
        self.addCleanup(server.app.dependency_overrides.clear)

        for target, mock in (
            ("server.JWT_SECRET", TEST_SECRET),
            ("outbox.queue_notification", AsyncMock()),
            ("outbox.queue_request_fulfilled_email", Mock()),
            ("outbox.queue_reward_retry", Mock()),
        ):
            patcher = patch(target, new=mock)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.client = TestClient(server.app, raise_server_exceptions=False)
        self.student = auth_headers("stu-1", "student")
        self.expert = auth_headers("exp-1", "expert")
        self.admin = auth_headers("adm-1", "expert", role="admin")


class TestAuthAndHealth(ApiTestCase):
    def test_health_is_public(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("X-Request-ID", response.headers)

    def test_missing_or_bad_token(self):
        self.assertIn(self.client.get("/api/coins/balance").status_code, {401, 403})
        response = self.client.get("/api/coins/balance", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Invalid token")

    def test_unsupported_user_type_in_token(self):
        response = self.client.get("/api/coins/balance", headers=auth_headers("x-1", "robot"))
        self.assertEqual(response.status_code, 401)


class TestStartupIndexes(ApiTestCase):
    def test_startup_and_migrations_share_index_names(self):
        with patch("database.get_db", return_value=self.db), patch("notification_service.initialize_firebase"):
            asyncio.run(server.startup_checks())

        coin_indexes = asyncio.run(self.db.coins.index_information())
        paper_indexes = asyncio.run(self.db.paper_requests.index_information())
        self.assertIn("coins_user_unique", coin_indexes)
        self.assertIn("paper_requests_one_active", paper_indexes)
        self.assertEqual(paper_indexes["paper_requests_one_active"]["partialFilterExpression"], {"is_deleted": False})

        # Re-running the standalone migrations against a started app is a no-op.
        asyncio.run(create_coin_indexes(self.db))
        asyncio.run(create_request_indexes(self.db))
        self.assertEqual(set(asyncio.run(self.db.coins.index_information())), set(coin_indexes))


class TestCoinRoutes(ApiTestCase):
    def test_balance_defaults_to_hundred(self):
        response = self.client.get("/api/coins/balance", headers=self.student)
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["coins"], 100)
        self.assertEqual(body["data"]["user_type"], "student")

    def test_admin_only_adjustments(self):
        payload = {"user_id": "stu-1", "user_type": "student", "amount": 25}
        response = self.client.post("/api/coins/add", json=payload, headers=self.student)
        self.assertEqual(response.status_code, 403)

        response = self.client.post("/api/coins/add", json=payload, headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["total_coins"], 125)

        response = self.client.post(
            "/api/coins/deduct",
            json={"user_id": "stu-1", "user_type": "student", "amount": 500},
            headers=self.admin,
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("Insufficient coins", response.json()["detail"])

        response = self.client.post(
            "/api/coins/add",
            json={"user_id": "stu-1", "user_type": "student", "amount": 0},
            headers=self.admin,
        )
        self.assertEqual(response.status_code, 422)

    def test_request_creation_check_and_charge(self):
        response = self.client.get("/api/coins/check-request-creation", headers=self.student)
        self.assertTrue(response.json()["data"]["can_create_request"])

        response = self.client.post("/api/coins/process-request-creation", headers=self.student)
        self.assertEqual(response.json()["data"]["remaining_coins"], 90)

        response = self.client.get("/api/coins/transactions", headers=self.student)
        self.assertEqual(len(response.json()["data"]), 1)

    def test_admin_statistics(self):
        self.client.get("/api/coins/balance", headers=self.student)
        response = self.client.get("/api/admin/coins/statistics", headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["overview"]["total_users"], 1)

        response = self.client.get("/api/admin/coins/balance/exp-9/teacher", headers=self.admin)
        self.assertEqual(response.json()["data"]["user_type"], "expert")


class TestRequestWorkflowRoutes(ApiTestCase):
    def _create_document_request(self):
        response = self.client.post(
            "/api/user-requests/create",
            json={"type": "Document", "document_title": "Soil microbiomes", "document_doi": "10.1000/xyz"},
            headers=self.student,
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["data"]

    def _fulfill(self, request_id, headers=None):
        return self.client.post(
            "/api/paper-requests/fulfill-user-request",
            json={
                "user_request_id": request_id,
                "file_url": "https://files.example.com/soil.pdf",
                "public_id": "papers/soil",
                "paper_detail": {"title": "Soil microbiomes", "authors": ["Njeri"]},
            },
            headers=headers or self.expert,
        )

    def test_create_fulfill_confirm_round_trip(self):
        created = self._create_document_request()
        self.assertEqual(created["status"], "Pending")

        response = self._fulfill(created["id"])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["user_request"]["status"], "Approved")

        response = self.client.post(
            "/api/user-requests/updateFulfillmentStatus",
            json={"request_id": created["id"], "is_fulfilled": True},
            headers=self.student,
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["data"]["request"]["is_fulfilled"])
        self.assertEqual(response.json()["data"]["reward_status"], "credited")

        balance = self.client.get("/api/coins/balance", headers=self.expert).json()["data"]
        self.assertEqual(balance["coins"], 110)

        response = self.client.post(
            "/api/user-requests/updateFulfillmentStatus",
            json={"request_id": created["id"], "is_fulfilled": True},
            headers=self.student,
        )
        self.assertEqual(response.status_code, 404)
        balance = self.client.get("/api/coins/balance", headers=self.expert).json()["data"]
        self.assertEqual(balance["coins"], 110)

    def test_reject_and_listing(self):
        created = self._create_document_request()
        self._fulfill(created["id"])

        response = self.client.post(
            "/api/user-requests/updateFulfillmentStatus",
            json={"request_id": created["id"], "is_fulfilled": False},
            headers=self.student,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["request"]["status"], "Pending")
        self.assertEqual(response.json()["data"]["request"]["attachments"], [])

        response = self.client.post("/api/user-requests/getAll", json={}, headers=self.student)
        self.assertEqual(response.json()["data"]["total_count"], 1)

        response = self.client.post("/api/user-requests/website/open", json={}, headers=self.expert)
        self.assertEqual(response.json()["data"]["total_count"], 1)

        response = self.client.post(
            "/api/paper-requests/by-user-request",
            json={"user_request_id": created["id"]},
            headers=self.student,
        )
        self.assertEqual(response.json()["data"], [])

    def test_self_fulfillment_and_missing_file(self):
        created = self._create_document_request()
        response = self._fulfill(created["id"], headers=self.student)
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/paper-requests/fulfill-user-request",
            json={"user_request_id": created["id"], "paper_detail": {"title": "Soil"}},
            headers=self.expert,
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "File is required to fulfill a request")

    def test_status_update_is_admin_only(self):
        created = self._create_document_request()
        payload = {"request_id": created["id"], "status": "In Progress", "response_message": "On it"}
        response = self.client.post("/api/user-requests/updateStatus", json=payload, headers=self.student)
        self.assertEqual(response.status_code, 403)
        response = self.client.post("/api/user-requests/updateStatus", json=payload, headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["admin_response"]["responded_by"], "adm-1")

    def test_get_and_delete_are_owner_scoped(self):
        created = self._create_document_request()
        response = self.client.post(
            "/api/user-requests/getById", json={"request_id": created["id"]}, headers=self.expert
        )
        self.assertEqual(response.status_code, 404)

        response = self.client.post(
            "/api/user-requests/delete", json={"request_id": created["id"]}, headers=self.student
        )
        self.assertEqual(response.status_code, 200)
        response = self.client.post(
            "/api/user-requests/getById", json={"request_id": created["id"]}, headers=self.student
        )
        self.assertEqual(response.status_code, 404)


class TestNotificationRoutes(ApiTestCase):
    def setUp(self):
        super().setUp()
        asyncio.run(self._seed_notifications())

    async def _seed_notifications(self):
        await self.db.notifications.insert_many(
            [
                {
                    "id": f"n-{i}",
                    "recipient_id": "stu-1",
                    "recipient_model": "Student",
                    "type": "SYSTEM_ALERT",
                    "title": "Hello",
                    "message": "World",
                    "is_read": False,
                    "is_deleted": False,
                    "created_at": f"2024-01-0{i + 1}T00:00:00+00:00",
                }
                for i in range(3)
            ]
        )

    def test_inbox_flow(self):
        response = self.client.get("/api/notifications/unread-count", headers=self.student)
        self.assertEqual(response.json()["data"]["unread_count"], 3)

        response = self.client.put("/api/notifications/n-0/read", headers=self.student)
        self.assertEqual(response.status_code, 200)
        response = self.client.put("/api/notifications/n-0/read", headers=self.expert)
        self.assertEqual(response.status_code, 404)

        response = self.client.delete("/api/notifications/read", headers=self.student)
        self.assertEqual(response.json()["data"]["modified_count"], 1)

        response = self.client.put("/api/notifications/mark-all-read", headers=self.student)
        self.assertEqual(response.json()["data"]["modified_count"], 2)

        response = self.client.delete("/api/notifications/n-1", headers=self.student)
        self.assertEqual(response.status_code, 200)

        response = self.client.get("/api/notifications", headers=self.student)
        body = response.json()["data"]
        self.assertEqual([n["id"] for n in body["notifications"]], ["n-2"])
        self.assertEqual(body["unread_count"], 0)


if __name__ == "__main__":
    unittest.main()
