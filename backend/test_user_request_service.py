import asyncio
import unittest
import uuid
from unittest.mock import AsyncMock, Mock, patch

from mongomock_motor import AsyncMongoMockClient

import coin_service
import paper_request_service
import user_request_service
from errors import Conflict, InsufficientFunds, NotFound, ValidationFailed
from migrations.apply_coin_indexes import create_coin_indexes
from migrations.apply_request_indexes import create_request_indexes
from models import REWARD_CREDITED, REWARD_PENDING
from yielding_db import YieldingDatabase


class RequestWorkflowTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.client = AsyncMongoMockClient()
        self.db = self.client["request_tests"]
        await create_coin_indexes(self.db)
        await create_request_indexes(self.db)
        await self.db.students.insert_one(
            {"id": "stu-1", "first_name": "Amina", "last_name": "Otieno", "email": "amina@example.com"}
        )
        await self.db.profiles.insert_many(
            [
                {"id": "exp-1", "name": "Dr. Kamau", "email": "kamau@example.com"},
                {"id": "exp-2", "name": "Dr. Wanjiru", "email": "wanjiru@example.com"},
            ]
        )

        self.queue_notification = AsyncMock()
        self.queue_email = Mock()
        self.queue_reward_retry = Mock()
        patchers = [
            patch("outbox.queue_notification", new=self.queue_notification),
            patch("outbox.queue_request_fulfilled_email", new=self.queue_email),
            patch("outbox.queue_reward_retry", new=self.queue_reward_retry),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    async def _create_document_request(self, requester_id="stu-1", requester_type="student", **extra):
        payload = {
            "type": "Document",
            "document_doi": "10.1000/xyz123",
            "document_title": "Soil microbiomes",
            "document_type": "Journal Article",
            "document_author": "Njeri",
        }
        payload.update(extra)
        return await user_request_service.create_request(self.db, requester_id, requester_type, payload)

    async def _upload(self, request_id, uploader_id="exp-1", uploader_type="expert", doi="10.1000/xyz123", db=None):
        return await paper_request_service.fulfill_user_request_with_document(
            db if db is not None else self.db,
            user_request_id=request_id,
            uploaded_by=uploader_id,
            uploader_type=uploader_type,
            file_url="https://files.example.com/soil.pdf",
            public_id="papers/soil",
            paper_detail={"title": "Soil microbiomes", "authors": ["Njeri", "Ouma"], "doi": doi},
        )

    async def _coins(self, user_id, user_type):
        return (await coin_service.get_balance(self.db, user_id, user_type))["coins"]


class TestCreateRequest(RequestWorkflowTestCase):
    async def test_document_request_is_charged_and_pending(self):
        created = await self._create_document_request()

        self.assertEqual(created["status"], "Pending")
        self.assertFalse(created["is_fulfilled"])
        self.assertEqual(created["creation_charge"], 10)
        self.assertEqual(created["title"], "Soil microbiomes")
        self.assertEqual(created["description"], "10.1000/xyz123")
        self.assertEqual(created["requester"], {"user_id": "stu-1", "user_type": "student"})
        self.assertNotIn("_id", created)
        self.assertEqual(await self._coins("stu-1", "student"), 90)

    async def test_lab_and_data_requests_are_free_with_defaults(self):
        lab = await user_request_service.create_request(
            self.db,
            "stu-1",
            "student",
            {"type": "Lab", "lab_nature": "Chemistry Lab", "lab_needs": "Fume hood for two hours"},
        )
        self.assertEqual(lab["title"], "Chemistry Lab Request")
        self.assertEqual(lab["description"], "Fume hood for two hours")
        self.assertEqual(lab["priority"], "Medium")

        data = await user_request_service.create_request(
            self.db,
            "stu-1",
            "student",
            {"type": "Data", "data_type": "Dataset", "data_title": "Rainfall", "data_description": "2010-2020"},
        )
        self.assertEqual(data["title"], "Rainfall")
        self.assertEqual(data["data_details"]["type"], "Dataset")
        self.assertEqual(await self._coins("stu-1", "student"), 100)

    async def test_type_specific_validation(self):
        with self.assertRaises(ValidationFailed):
            await user_request_service.create_request(self.db, "stu-1", "student", {"type": "Lab"})
        with self.assertRaises(ValidationFailed):
            await user_request_service.create_request(
                self.db, "stu-1", "student", {"type": "Data", "data_type": "Dataset"}
            )
        with self.assertRaises(ValidationFailed):
            await user_request_service.create_request(self.db, "stu-1", "student", {"type": "Video"})
        with self.assertRaises(ValidationFailed):
            await self._create_document_request(document_type="Blog Post")

    async def test_document_request_needs_coins(self):
        await coin_service.get_balance(self.db, "stu-1", "student")
        await coin_service.deduct(self.db, "stu-1", "student", 95)

        with self.assertRaises(InsufficientFunds):
            await self._create_document_request()
        self.assertEqual(await self.db.user_requests.count_documents({}), 0)
        self.assertEqual(await self._coins("stu-1", "student"), 5)

    async def test_charge_is_refunded_when_insert_fails(self):
        taken_id = str(uuid.uuid4())
        await self.db.user_requests.insert_one({"id": taken_id, "is_deleted": False})

        with patch("user_request_service._new_request_id", return_value=taken_id):
            with self.assertRaises(Exception):
                await self._create_document_request()
        self.assertEqual(await self._coins("stu-1", "student"), 100)


class TestListingAndUpdates(RequestWorkflowTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.doc_request = await self._create_document_request()
        self.lab_request = await user_request_service.create_request(
            self.db,
            "stu-1",
            "student",
            {"type": "Lab", "lab_nature": "Physics Lab", "lab_needs": "Oscilloscope", "priority": "High"},
        )
        await user_request_service.create_request(
            self.db,
            "exp-2",
            "expert",
            {"type": "Lab", "lab_nature": "Biology Lab", "lab_needs": "Microscope"},
        )

    async def test_list_own_requests_with_filters(self):
        result = await user_request_service.list_requests(self.db, "stu-1")
        self.assertEqual(result["total_count"], 2)

        result = await user_request_service.list_requests(self.db, "stu-1", type="Lab")
        self.assertEqual([r["id"] for r in result["data"]], [self.lab_request["id"]])

        result = await user_request_service.list_requests(self.db, "stu-1", priority="High")
        self.assertEqual(result["total_count"], 1)

        with self.assertRaises(ValidationFailed):
            await user_request_service.list_requests(self.db, "stu-1", sort_by="requester")

    async def test_search_is_case_insensitive(self):
        result = await user_request_service.search_requests(self.db, "stu-1", "oscillo")
        self.assertEqual(result["total_count"], 1)
        result = await user_request_service.search_requests(self.db, "stu-1", "SOIL")
        self.assertEqual(result["data"][0]["id"], self.doc_request["id"])
        with self.assertRaises(ValidationFailed):
            await user_request_service.search_requests(self.db, "stu-1", "  ")

    async def test_open_requests_exclude_viewer_and_fulfilled(self):
        result = await user_request_service.list_open_requests(self.db, viewer_id="exp-2")
        self.assertEqual(result["total_count"], 2)

        await self._upload(self.doc_request["id"])
        result = await user_request_service.list_open_requests(self.db, viewer_id="exp-2")
        self.assertEqual([r["id"] for r in result["data"]], [self.lab_request["id"]])

    async def test_update_and_soft_delete(self):
        updated = await user_request_service.update_request(
            self.db, self.lab_request["id"], "stu-1", {"title": "Oscilloscope time", "status": "Approved"}
        )
        self.assertEqual(updated["title"], "Oscilloscope time")
        self.assertEqual(updated["status"], "Pending")

        with self.assertRaises(NotFound):
            await user_request_service.update_request(self.db, self.lab_request["id"], "exp-2", {"title": "x"})
        with self.assertRaises(ValidationFailed):
            await user_request_service.update_request(self.db, self.lab_request["id"], "stu-1", {})

        await user_request_service.delete_request(self.db, self.lab_request["id"], "stu-1")
        with self.assertRaises(NotFound):
            await user_request_service.get_request(self.db, self.lab_request["id"])
        with self.assertRaises(NotFound):
            await user_request_service.delete_request(self.db, self.lab_request["id"], "stu-1")

    async def test_admin_status_update_and_statistics(self):
        updated = await user_request_service.update_request_status(
            self.db, self.lab_request["id"], "In Progress", responded_by="admin-1", response_message="Booked"
        )
        self.assertEqual(updated["status"], "In Progress")
        self.assertEqual(updated["admin_response"]["responded_by"], "admin-1")
        self.assertIsNone(updated["fulfilled_by"])

        with self.assertRaises(ValidationFailed):
            await user_request_service.update_request_status(
                self.db, self.lab_request["id"], "Closed", responded_by="admin-1"
            )

        stats = await user_request_service.get_request_statistics(self.db, "stu-1")
        self.assertEqual(stats["total_requests"], 2)
        self.assertEqual(stats["pending_requests"], 1)
        self.assertEqual(stats["in_progress_requests"], 1)
        self.assertEqual(stats["type_breakdown"], {"Document": 1, "Lab": 1})


class TestFulfillmentLifecycle(RequestWorkflowTestCase):
    async def test_fulfill_then_confirm_rewards_fulfiller(self):
        created = await self._create_document_request()
        await self._upload(created["id"])

        uploaded = await user_request_service.get_request(self.db, created["id"])
        self.assertEqual(uploaded["status"], "Approved")
        self.assertFalse(uploaded["is_fulfilled"])
        self.assertEqual(uploaded["fulfilled_by"], {"user_id": "exp-1", "user_type": "expert"})
        self.assertIsNone(uploaded["admin_response"]["responded_by"])
        self.assertEqual(await self._coins("exp-1", "expert"), 100)

        result = await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")
        self.assertTrue(result["request"]["is_fulfilled"])
        self.assertIsNotNone(result["request"]["fulfilled_at"])
        self.assertEqual(result["reward_status"], REWARD_CREDITED)
        self.assertEqual(await self._coins("exp-1", "expert"), 110)

        stored = await self.db.user_requests.find_one({"id": created["id"]})
        self.assertEqual(stored["reward"]["status"], REWARD_CREDITED)
        self.assertEqual(stored["reward"]["reference"], f"fulfillment_reward:{created['id']}")

        notification = self.queue_notification.await_args_list[-1].args[1]
        self.assertEqual(notification["type"], "FULFILLMENT_APPROVED")
        self.assertEqual(notification["recipient_id"], "exp-1")
        self.assertEqual(notification["recipient_model"], "Profile")
        self.assertIn("Amina Otieno", notification["message"])

    async def test_second_confirm_is_not_found_and_pays_nothing(self):
        created = await self._create_document_request()
        await self._upload(created["id"])
        await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")

        with self.assertRaises(NotFound):
            await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")
        self.assertEqual(await self._coins("exp-1", "expert"), 110)

    async def test_confirm_requires_owner_and_upload(self):
        created = await self._create_document_request()
        with self.assertRaises(NotFound):
            await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")

        await self._upload(created["id"])
        with self.assertRaises(NotFound):
            await user_request_service.confirm_fulfillment(self.db, created["id"], "exp-2")

    async def test_reject_returns_request_to_pending(self):
        created = await self._create_document_request()
        await self._upload(created["id"])

        rejected = await user_request_service.reject_fulfillment(self.db, created["id"], "stu-1")
        self.assertEqual(rejected["status"], "Pending")
        self.assertFalse(rejected["is_fulfilled"])
        self.assertEqual(rejected["attachments"], [])
        self.assertIsNone(rejected["fulfilled_by"])
        self.assertIsNone(rejected["admin_response"]["response_message"])

        active = await paper_request_service.list_fulfillments(self.db, created["id"])
        self.assertEqual(active, [])
        retired = await paper_request_service.list_fulfillments(self.db, created["id"], include_retired=True)
        self.assertEqual(retired[0]["request_status"], "rejected")
        self.assertEqual(await self._coins("exp-1", "expert"), 100)

        notification = self.queue_notification.await_args_list[-1].args[1]
        self.assertEqual(notification["type"], "FULFILLMENT_REJECTED")
        self.assertEqual(notification["recipient_id"], "exp-1")

        with self.assertRaises(NotFound):
            await user_request_service.reject_fulfillment(self.db, created["id"], "stu-1")

    async def test_reject_after_several_uploads_clears_every_attachment(self):
        created = await self._create_document_request()
        await self._upload(created["id"], uploader_id="exp-1")
        second = await self._upload(created["id"], uploader_id="exp-2")
        self.assertEqual(len(second["user_request"]["attachments"]), 2)

        rejected = await user_request_service.reject_fulfillment(self.db, created["id"], "stu-1")

        self.assertEqual(rejected["attachments"], [])
        self.assertIsNone(rejected["fulfillment_id"])
        self.assertEqual(await paper_request_service.list_fulfillments(self.db, created["id"]), [])

    async def test_concurrent_uploads_leave_one_active_record(self):
        created = await self._create_document_request()
        db = YieldingDatabase(self.db)

        await asyncio.gather(
            self._upload(created["id"], uploader_id="exp-1", db=db),
            self._upload(created["id"], uploader_id="exp-2", db=db),
        )

        request_doc = await user_request_service.get_request(self.db, created["id"])
        active = await paper_request_service.list_fulfillments(self.db, created["id"])
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0]["id"], request_doc["fulfillment_id"])
        self.assertEqual(active[0]["fulfilled_by"], request_doc["fulfilled_by"])
        self.assertEqual(len(request_doc["attachments"]), 2)

        winner = request_doc["fulfilled_by"]["user_id"]
        await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")
        self.assertEqual(await self._coins(winner, "expert"), 110)

    async def test_concurrent_confirms_pay_one_reward(self):
        created = await self._create_document_request()
        await self._upload(created["id"])
        db = YieldingDatabase(self.db)

        results = await asyncio.gather(
            user_request_service.confirm_fulfillment(db, created["id"], "stu-1"),
            user_request_service.confirm_fulfillment(db, created["id"], "stu-1"),
            return_exceptions=True,
        )

        confirmed = [r for r in results if isinstance(r, dict)]
        self.assertEqual(len(confirmed), 1)
        self.assertIsInstance(next(r for r in results if not isinstance(r, dict)), NotFound)
        self.assertEqual(await self._coins("exp-1", "expert"), 110)
        self.assertEqual(
            await self.db.coin_transactions.count_documents({"reference": f"fulfillment_reward:{created['id']}"}),
            1,
        )

    async def test_at_most_one_reward_per_request(self):
        created = await self._create_document_request()
        await self._upload(created["id"], uploader_id="exp-1")
        await self._upload(created["id"], uploader_id="exp-2")

        active = await paper_request_service.list_fulfillments(self.db, created["id"])
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0]["fulfilled_by"]["user_id"], "exp-2")

        await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")
        self.assertEqual(await self._coins("exp-2", "expert"), 110)

        await user_request_service.reject_fulfillment(self.db, created["id"], "stu-1")
        await self._upload(created["id"], uploader_id="exp-1")
        result = await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")

        self.assertFalse(result["reward_granted"])
        self.assertTrue(result["request"]["is_fulfilled"])
        self.assertEqual(await self._coins("exp-1", "expert"), 100)
        self.assertEqual(await self._coins("exp-2", "expert"), 110)

    async def test_update_fulfillment_status_dispatches(self):
        created = await self._create_document_request()
        await self._upload(created["id"])

        result = await user_request_service.update_fulfillment_status(self.db, created["id"], "stu-1", True)
        self.assertEqual(result["message"], "Fulfillment confirmed")
        self.assertTrue(result["request"]["is_fulfilled"])

        result = await user_request_service.update_fulfillment_status(self.db, created["id"], "stu-1", False)
        self.assertEqual(result["message"], "Fulfillment rejected")
        self.assertEqual(result["request"]["status"], "Pending")

    async def test_admin_cannot_move_confirmed_request_off_approved(self):
        created = await self._create_document_request()
        await self._upload(created["id"])
        await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")

        with self.assertRaises(Conflict):
            await user_request_service.update_request_status(
                self.db, created["id"], "Rejected", responded_by="admin-1"
            )


class TestRewardRecovery(RequestWorkflowTestCase):
    async def _confirm_with_failing_ledger(self):
        created = await self._create_document_request()
        await self._upload(created["id"])
        with patch("coin_service.credit_once", new=AsyncMock(side_effect=RuntimeError("ledger down"))):
            result = await user_request_service.confirm_fulfillment(self.db, created["id"], "stu-1")
        return created, result

    async def test_confirm_succeeds_when_credit_fails(self):
        created, result = await self._confirm_with_failing_ledger()

        self.assertTrue(result["request"]["is_fulfilled"])
        self.assertEqual(result["reward_status"], REWARD_PENDING)
        self.queue_reward_retry.assert_called_once_with(created["id"])

        stored = await self.db.user_requests.find_one({"id": created["id"]})
        self.assertEqual(stored["reward"]["status"], REWARD_PENDING)
        self.assertEqual(stored["reward"]["attempts"], 1)
        self.assertEqual(stored["reward"]["last_error"], "ledger down")
        self.assertEqual(await self._coins("exp-1", "expert"), 100)

    async def test_pending_reward_is_applied_once(self):
        created, _ = await self._confirm_with_failing_ledger()

        outcome = await user_request_service.apply_pending_reward(self.db, created["id"])
        self.assertEqual(outcome, "credited")
        self.assertEqual(await self._coins("exp-1", "expert"), 110)

        outcome = await user_request_service.apply_pending_reward(self.db, created["id"])
        self.assertEqual(outcome, "not_pending")
        self.assertEqual(await self._coins("exp-1", "expert"), 110)

    async def test_reconcile_picks_up_stale_pending_rewards(self):
        created, _ = await self._confirm_with_failing_ledger()

        summary = await user_request_service.reconcile_pending_rewards(self.db, grace_seconds=300)
        self.assertEqual(summary["scanned"], 0)

        await self.db.user_requests.update_one(
            {"id": created["id"]}, {"$set": {"reward.created_at": "2000-01-01T00:00:00+00:00"}}
        )
        summary = await user_request_service.reconcile_pending_rewards(self.db, grace_seconds=300)
        self.assertEqual(summary, {"scanned": 1, "credited": 1, "failed": 0})
        self.assertEqual(await self._coins("exp-1", "expert"), 110)

        stored = await self.db.user_requests.find_one({"id": created["id"]})
        self.assertEqual(stored["reward"]["status"], REWARD_CREDITED)
        self.assertEqual(stored["reward"]["attempts"], 2)


if __name__ == "__main__":
    unittest.main()
