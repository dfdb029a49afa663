import asyncio
import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "dvision_test")

import notification_service
from mongo_fakes import FakeDb
from tasks import _async_runner, notifications, subscriptions

NOW = datetime(2026, 6, 10, 9, 0, tzinfo=timezone.utc)
REGULAR = {"id": "plan-r10", "type": "regular", "name": "CBSE 10 Monthly", "board": "CBSE", "classes": [10]}
PREP = {"id": "plan-jee", "type": "preparation", "name": "JEE Yearly", "class_id": "class-jee"}


class TestExpiryMessages(unittest.TestCase):
    def test_expiring_regular_plan(self):
        title, body = subscriptions.build_expiry_message(REGULAR, NOW + timedelta(hours=20), NOW, expired=False)
        self.assertEqual(title, "Subscription Expiring Soon")
        self.assertEqual(
            body,
            "Your class-based subscription for CBSE Class 10 is expiring in 1 day. Renew now to continue access.",
        )

    def test_expiring_uses_plural_days(self):
        _, body = subscriptions.build_expiry_message(REGULAR, NOW + timedelta(hours=30), NOW, expired=False)
        self.assertIn("expiring in 2 days.", body)

    def test_expired_preparation_plan(self):
        title, body = subscriptions.build_expiry_message(PREP, NOW, NOW, expired=True, class_name="JEE Mains")
        self.assertEqual(title, "Subscription Expired")
        self.assertEqual(
            body,
            "Your preparation subscription for JEE Mains has expired. Purchase a new plan to continue access.",
        )

    def test_preparation_without_class_name(self):
        self.assertEqual(subscriptions.describe_plan(PREP), ("preparation", "Preparation Class"))


class TestExpiryJob(unittest.IsolatedAsyncioTestCase):
    async def test_tomorrow_window_and_notifications(self):
        db = FakeDb()
        end = datetime(2026, 6, 11, 18, 0, tzinfo=timezone.utc)
        db.finds("payments", [{"id": "pay-1", "student_id": "stu-1", "subscription_plan_id": "plan-jee", "subscription_end_date": end.isoformat()}])
        db.returns("students", "find_one", {"id": "stu-1"})
        db.returns("subscription_plans", "find_one", PREP)
        db.returns("classes", "find_one", {"name": "JEE Mains"})
        notify = AsyncMock(return_value=True)
        with patch.object(subscriptions, "db", db), patch.object(subscriptions, "notify_account", notify):
            result = await subscriptions._notify_subscriptions(expired=False, now=NOW)

        self.assertEqual(result, {"found": 1, "notified": 1})
        query = db.payments.find.call_args.args[0]
        self.assertEqual(query["status"], "completed")
        self.assertEqual(query["subscription_end_date"]["$gte"], "2026-06-11T00:00:00+00:00")
        self.assertEqual(query["subscription_end_date"]["$lt"], "2026-06-12T00:00:00+00:00")
        args = notify.await_args.args
        self.assertEqual(args[1:3], ("student", "stu-1"))
        self.assertEqual(args[3], "Subscription Expiring Soon")
        self.assertIn("JEE Mains is expiring in 2 days", args[4])

    async def test_expired_today_skips_orphans(self):
        db = FakeDb()
        db.finds("payments", [{"id": "pay-2", "student_id": "gone", "subscription_plan_id": "plan-r10", "subscription_end_date": NOW.isoformat()}])
        notify = AsyncMock()
        with patch.object(subscriptions, "db", db), patch.object(subscriptions, "notify_account", notify):
            result = await subscriptions._notify_subscriptions(expired=True, now=NOW)
        self.assertEqual(result, {"found": 1, "notified": 0})
        notify.assert_not_awaited()
        self.assertEqual(db.payments.find.call_args.args[0]["subscription_end_date"]["$gte"], "2026-06-10T00:00:00+00:00")


class TestActivationNotifications(unittest.IsolatedAsyncioTestCase):
    def test_messages(self):
        messages = notifications.build_activation_messages({"name": "Asha"}, REGULAR, {"amount": 499.0})
        self.assertEqual(messages["student"]["title"], "Subscription Activated!")
        self.assertEqual(messages["agent"]["body"], "Asha has subscribed to CBSE 10 Monthly (₹499)")

    async def test_fan_out_to_student_agent_and_admins(self):
        db = FakeDb()
        db.returns(
            "payments",
            "find_one",
            {"id": "pay-1", "status": "completed", "student_id": "stu-1", "subscription_plan_id": "plan-r10", "amount": 499, "referral_agent_id": "agent-1"},
        )
        db.returns("students", "find_one", {"id": "stu-1", "name": "Asha"})
        db.returns("subscription_plans", "find_one", REGULAR)
        db.returns("agents", "find_one", {"id": "agent-1"})
        db.finds("admins", [{"id": "admin-1"}, {"id": "admin-2"}])
        notify = AsyncMock(side_effect=[True, True, False, True])
        with patch.object(notifications, "db", db), patch.object(notifications, "notify_account", notify):
            result = await notifications._notify_subscription_activated("pay-1")
        self.assertEqual(result, {"sent": 3, "targets": 4})
        roles = [call.args[1] for call in notify.await_args_list]
        self.assertEqual(roles, ["student", "agent", "admin", "admin"])

    async def test_pending_payment_is_skipped(self):
        db = FakeDb()
        db.returns("payments", "find_one", {"id": "pay-1", "status": "pending"})
        notify = AsyncMock()
        with patch.object(notifications, "db", db), patch.object(notifications, "notify_account", notify):
            result = await notifications._notify_subscription_activated("pay-1")
        self.assertEqual(result, {"sent": 0})
        notify.assert_not_awaited()


class TestNotifyAccount(unittest.IsolatedAsyncioTestCase):
    async def test_stores_notification_without_token(self):
        db = FakeDb()
        db.returns("teachers", "find_one", {"fcm_token": "  "})
        sent = await notification_service.notify_account(db, "teacher", "t-1", "Hello", "Body", {"k": 1})
        self.assertFalse(sent)
        stored = db.notifications.insert_one.await_args.args[0]
        self.assertEqual((stored["user_id"], stored["user_type"], stored["is_read"]), ("t-1", "teacher", False))

    async def test_unregistered_token_is_dropped(self):
        db = FakeDb()
        db.returns("students", "find_one", {"fcm_token": "tok-1"})
        with patch.object(notification_service, "send_push_notification", return_value=(False, "unregistered")):
            sent = await notification_service.notify_account(db, "student", "stu-1", "Hi", "Body")
        self.assertFalse(sent)
        query, update = db.students.update_one.await_args.args
        self.assertEqual(query, {"id": "stu-1", "fcm_token": "tok-1"})
        self.assertEqual(update["$unset"], {"fcm_token": ""})

    async def test_unknown_role(self):
        with self.assertRaises(ValueError):
            await notification_service.notify_account(FakeDb(), "parent", "p-1", "Hi", "Body")

    def test_push_data_values_are_strings(self):
        message = notification_service.build_push_message("tok", "T", "B", {"amount": 499, "ok": True})
        self.assertEqual(message.data, {"amount": "499", "ok": "True"})


class TestAsyncRunner(unittest.TestCase):
    def tearDown(self):
        if _async_runner._loop is not None:
            _async_runner._loop.close()
        _async_runner._forget_parent_loop()
        asyncio.set_event_loop(None)

    def test_tasks_share_one_loop(self):
        async def current_loop():
            return asyncio.get_running_loop()

        first = _async_runner.run_async(current_loop())
        self.assertIs(_async_runner.run_async(current_loop()), first)

    def test_forked_worker_starts_a_new_loop(self):
        parent = _async_runner.worker_loop()
        _async_runner._forget_parent_loop()
        child = _async_runner.worker_loop()
        self.assertIsNot(child, parent)
        parent.close()

    def test_closed_loop_is_replaced(self):
        loop = _async_runner.worker_loop()
        loop.close()
        self.assertFalse(_async_runner.worker_loop().is_closed())


if __name__ == "__main__":
    unittest.main()
