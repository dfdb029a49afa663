import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
from fastapi import HTTPException
from pymongo.errors import DuplicateKeyError

from mongo_fakes import FakeDb
from otp_service import TwoFactorOtpService
from otp_store import InMemoryOtpStore, MongoOtpStore, build_otp_store

TEST_PHONE = "+919685974247"
OVERRIDE_PHONE = "+917610416911"
REAL_PHONE = "+919876543210"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class OtpTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryOtpStore(clock=self.clock)
        self.service = TwoFactorOtpService(self.store)
        self.service.api_key = "key"
        self.service.expiry_seconds = 300
        self.service.cooldown_seconds = 60
        self.service.max_attempts = 3


class TestTestNumbers(OtpTestCase):
    async def test_test_number_skips_provider(self):
        with patch.object(self.service, "_request", new=AsyncMock()) as request:
            result = await self.service.send_otp(TEST_PHONE)
        request.assert_not_called()
        self.assertTrue(result["is_test"])
        self.assertIn("Use OTP: 123456", result["message"])
        await self.service.verify_otp(TEST_PHONE, "123456")
        self.assertIsNone(await self.store.get_session(TEST_PHONE))

    async def test_override_code(self):
        result = await self.service.send_otp(OVERRIDE_PHONE)
        self.assertIn("110211", result["message"])
        with self.assertRaises(HTTPException):
            await self.service.verify_otp(OVERRIDE_PHONE, "123456")
        await self.service.verify_otp(OVERRIDE_PHONE, "110211")

    async def test_test_number_has_no_cooldown(self):
        await self.service.send_otp(TEST_PHONE)
        await self.service.send_otp(TEST_PHONE)


class TestVerification(OtpTestCase):
    async def test_code_must_be_six_digits(self):
        for code in ("12345", "abcdef", None):
            with self.assertRaises(HTTPException) as ctx:
                await self.service.verify_otp(TEST_PHONE, code)
            self.assertEqual(ctx.exception.detail, "OTP must be a 6-digit number")

    async def test_missing_session(self):
        with self.assertRaises(HTTPException) as ctx:
            await self.service.verify_otp(TEST_PHONE, "123456")
        self.assertEqual(ctx.exception.detail, "OTP session expired. Please request a new OTP.")

    async def test_session_expires_with_lease(self):
        await self.service.send_otp(TEST_PHONE)
        self.clock.advance(301)
        with self.assertRaises(HTTPException) as ctx:
            await self.service.verify_otp(TEST_PHONE, "123456")
        self.assertIn("expired", ctx.exception.detail)

    async def test_attempts_invalidate_session(self):
        await self.service.send_otp(TEST_PHONE)
        for _ in range(2):
            with self.assertRaises(HTTPException) as ctx:
                await self.service.verify_otp(TEST_PHONE, "000000")
            self.assertEqual(ctx.exception.detail, "Invalid OTP. Please try again.")
        with self.assertRaises(HTTPException) as ctx:
            await self.service.verify_otp(TEST_PHONE, "000000")
        self.assertEqual(ctx.exception.detail, "Too many failed attempts. Please request a new OTP.")
        with self.assertRaises(HTTPException) as ctx:
            await self.service.verify_otp(TEST_PHONE, "123456")
        self.assertIn("expired", ctx.exception.detail)

    async def test_wrong_test_code_never_reaches_provider(self):
        await self.service.send_otp(TEST_PHONE)
        with patch.object(self.service, "_request", new=AsyncMock()) as request:
            with self.assertRaises(HTTPException) as ctx:
                await self.service.verify_otp(TEST_PHONE, "654321")
        self.assertEqual(ctx.exception.detail, "Invalid OTP. Please try again.")
        request.assert_not_awaited()
        self.assertEqual((await self.store.get_session(TEST_PHONE))["attempts"], 1)

    async def test_provider_verification(self):
        await self.store.acquire_session(REAL_PHONE, "sess-1", 300)
        responses = [{"Status": "Error", "Details": "OTP Mismatch"}, {"Status": "Success", "Details": "OTP Matched"}]
        with patch.object(self.service, "_request", new=AsyncMock(side_effect=responses)) as request:
            with self.assertRaises(HTTPException) as ctx:
                await self.service.verify_otp(REAL_PHONE, "111111")
            self.assertEqual(ctx.exception.detail, "OTP Mismatch")
            await self.service.verify_otp(REAL_PHONE, "222222")
        self.assertTrue(request.await_args.args[0].endswith("/SMS/VERIFY/sess-1/222222"))
        self.assertIsNone(await self.store.get_session(REAL_PHONE))

    async def test_provider_transport_failure(self):
        await self.store.acquire_session(REAL_PHONE, "sess-1", 300)
        with patch.object(self.service, "_request", new=AsyncMock(side_effect=httpx.ConnectError("down"))):
            with self.assertRaises(HTTPException) as ctx:
                await self.service.verify_otp(REAL_PHONE, "111111")
        self.assertEqual(ctx.exception.status_code, 500)


class TestSendWithProvider(OtpTestCase):
    async def test_cooldown_lease(self):
        success = {"Status": "Success", "Details": "sess-9"}
        with patch.object(self.service, "_request", new=AsyncMock(return_value=success)) as request:
            await self.service.send_otp(REAL_PHONE)
            self.assertTrue(request.await_args.args[0].endswith("/SMS/919876543210/AUTOGEN"))
            with self.assertRaises(HTTPException) as ctx:
                await self.service.send_otp(REAL_PHONE)
            self.assertEqual(ctx.exception.status_code, 429)
            self.assertEqual(ctx.exception.detail, "Please wait 60 seconds before requesting a new OTP")
            self.clock.advance(61)
            await self.service.send_otp(REAL_PHONE)
        session = await self.store.get_session(REAL_PHONE)
        self.assertEqual(session["session_id"], "sess-9")

    async def test_provider_rejection_releases_cooldown(self):
        responses = [{"Status": "Error", "Details": "Invalid Phone Number"}, {"Status": "Success", "Details": "sess-2"}]
        with patch.object(self.service, "_request", new=AsyncMock(side_effect=responses)):
            with self.assertRaises(HTTPException) as ctx:
                await self.service.send_otp(REAL_PHONE)
            self.assertEqual(ctx.exception.status_code, 400)
            self.assertEqual(ctx.exception.detail, "Invalid Phone Number")
            result = await self.service.send_otp(REAL_PHONE)
        self.assertEqual(result["session_id"], "sess-2")

    async def test_unconfigured_provider(self):
        self.service.api_key = ""
        with self.assertRaises(HTTPException) as ctx:
            await self.service.send_otp(REAL_PHONE)
        self.assertEqual(ctx.exception.status_code, 500)


class TestStoreFactory(unittest.TestCase):
    def test_memory_backend(self):
        with self.assertLogs("otp_store", level="WARNING"):
            self.assertIsInstance(build_otp_store("memory", None), InMemoryOtpStore)

    def test_mongo_backend_is_default(self):
        self.assertIsInstance(build_otp_store("mongo", FakeDb()), MongoOtpStore)


class TestMongoOtpStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.db = FakeDb()
        self.store = MongoOtpStore(self.db, clock=self.clock)

    async def test_session_upsert_resets_attempts(self):
        await self.store.acquire_session(REAL_PHONE, "sess-1", 300)
        query, update = self.db.otp_sessions.update_one.await_args.args
        self.assertEqual(query, {"phone": REAL_PHONE})
        self.assertEqual(update["$set"]["attempts"], 0)
        self.assertEqual(update["$set"]["expires_at"], self.clock.now + timedelta(seconds=300))
        self.assertTrue(self.db.otp_sessions.update_one.await_args.kwargs["upsert"])

    async def test_reads_only_live_sessions(self):
        self.assertIsNone(await self.store.get_session(REAL_PHONE))
        query = self.db.otp_sessions.find_one.await_args.args[0]
        self.assertEqual(query["expires_at"], {"$gt": self.clock.now})

    async def test_failures_release_session_at_limit(self):
        self.db.returns("otp_sessions", "find_one_and_update", {"phone": REAL_PHONE, "attempts": 2})
        self.assertEqual(await self.store.record_failure(REAL_PHONE, 3), 2)
        self.db.otp_sessions.delete_one.assert_not_awaited()
        update = self.db.otp_sessions.find_one_and_update.await_args.args[1]
        self.assertEqual(update, {"$inc": {"attempts": 1}})

        self.db.returns("otp_sessions", "find_one_and_update", {"phone": REAL_PHONE, "attempts": 3})
        self.assertEqual(await self.store.record_failure(REAL_PHONE, 3), 3)
        self.db.otp_sessions.delete_one.assert_awaited_once_with({"phone": REAL_PHONE})

    async def test_failure_without_live_session_counts_as_exhausted(self):
        self.assertEqual(await self.store.record_failure(REAL_PHONE, 3), 3)
        self.db.otp_sessions.delete_one.assert_not_awaited()

    async def test_cooldown_taken_only_when_expired(self):
        self.assertTrue(await self.store.acquire_cooldown(REAL_PHONE, 60))
        query, update = self.db.otp_cooldowns.update_one.await_args.args
        self.assertEqual(query, {"phone": REAL_PHONE, "expires_at": {"$lte": self.clock.now}})
        self.assertEqual(update["$set"]["expires_at"], self.clock.now + timedelta(seconds=60))

        self.db.otp_cooldowns.update_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        self.assertFalse(await self.store.acquire_cooldown(REAL_PHONE, 60))

    async def test_cooldown_remaining_with_naive_expiry(self):
        naive_expiry = (self.clock.now + timedelta(seconds=29.5)).replace(tzinfo=None)
        self.db.returns("otp_cooldowns", "find_one", {"expires_at": naive_expiry})
        self.assertEqual(await self.store.cooldown_remaining(REAL_PHONE), 30)

        self.db.returns("otp_cooldowns", "find_one", {"expires_at": (self.clock.now - timedelta(seconds=5)).replace(tzinfo=None)})
        self.assertEqual(await self.store.cooldown_remaining(REAL_PHONE), 0)

    async def test_indexes_expire_leases(self):
        await self.store.ensure_indexes()
        ttl_calls = [
            call for call in self.db.otp_sessions.create_index.await_args_list if call.kwargs.get("expireAfterSeconds") == 0
        ]
        self.assertEqual(len(ttl_calls), 1)
        self.db.otp_cooldowns.create_index.assert_any_await("phone", unique=True)


if __name__ == "__main__":
    unittest.main()
