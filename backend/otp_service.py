import hmac
import logging
import os
import re
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException

from phone_utils import national_suffix, provider_digits

logger = logging.getLogger(__name__)

TEST_NUMBERS = frozenset({"9685974247", "6261096283", "6264560457", "9928193969", "7610416911"})
TEST_OTP_DEFAULT = "123456"
TEST_OTP_OVERRIDES = {"7610416911": "110211"}

_OTP_PATTERN = re.compile(r"^\d{6}$")


class TwoFactorOtpService:
    """2Factor SMS OTP helper with leased sessions and resend cooldowns."""

    base_url = "https://2factor.in/API/V1"

    def __init__(self, store) -> None:
        self.store = store
        self.api_key = os.getenv("TWOFACTOR_API_KEY", "").strip()
        self.template_name = os.getenv("TWOFACTOR_TEMPLATE_NAME", "").strip()
        self.expiry_seconds = int(os.getenv("OTP_EXPIRY_MINUTES", "5")) * 60
        self.cooldown_seconds = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))
        self.max_attempts = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))
        self.timeout_seconds = float(os.getenv("OTP_PROVIDER_TIMEOUT_SECONDS", "10"))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def is_test_number(phone: str) -> bool:
        return national_suffix(phone) in TEST_NUMBERS

    @staticmethod
    def expected_test_code(phone: str) -> str:
        return TEST_OTP_OVERRIDES.get(national_suffix(phone), TEST_OTP_DEFAULT)

    async def _request(self, url: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(url)
        try:
            return response.json()
        except ValueError:
            return {"Status": "Error", "Details": response.text or f"HTTP {response.status_code}"}

    async def send_otp(self, phone: str) -> Dict[str, Any]:
        if self.is_test_number(phone):
            session_id = f"TEST_{int(time.time() * 1000)}_{phone}"
            await self.store.acquire_session(phone, session_id, self.expiry_seconds, is_test=True)
            logger.info("otp_test_session phone_suffix=%s", national_suffix(phone, 4))
            return {
                "session_id": session_id,
                "is_test": True,
                "message": f"OTP sent successfully (Test Mode - Use OTP: {self.expected_test_code(phone)})",
            }

        if not self.enabled:
            raise HTTPException(status_code=500, detail="OTP service is not configured")

        if not await self.store.acquire_cooldown(phone, self.cooldown_seconds):
            remaining = await self.store.cooldown_remaining(phone) or self.cooldown_seconds
            raise HTTPException(
                status_code=429,
                detail=f"Please wait {remaining} seconds before requesting a new OTP",
            )

        url = f"{self.base_url}/{self.api_key}/SMS/{provider_digits(phone)}/AUTOGEN"
        if self.template_name:
            url = f"{url}/{self.template_name}"
        try:
            payload = await self._request(url)
        except httpx.HTTPError as exc:
            await self.store.release_cooldown(phone)
            logger.error("otp_send_transport_failed phone_suffix=%s error=%s", national_suffix(phone, 4), exc)
            raise HTTPException(status_code=500, detail="Failed to send OTP. Please try again.")

        if payload.get("Status") != "Success":
            await self.store.release_cooldown(phone)
            logger.error("otp_send_rejected phone_suffix=%s details=%s", national_suffix(phone, 4), payload.get("Details"))
            raise HTTPException(status_code=400, detail=payload.get("Details") or "Failed to send OTP")

        session_id = payload.get("Details")
        await self.store.acquire_session(phone, session_id, self.expiry_seconds)
        return {"session_id": session_id, "is_test": False, "message": "OTP sent successfully"}

    async def verify_otp(self, phone: str, otp: Optional[str]) -> None:
        code = str(otp or "").strip()
        if not _OTP_PATTERN.match(code):
            raise HTTPException(status_code=400, detail="OTP must be a 6-digit number")

        session = await self.store.get_session(phone)
        if not session:
            raise HTTPException(status_code=400, detail="OTP session expired. Please request a new OTP.")

        if session.get("is_test") or self.is_test_number(phone):
            if hmac.compare_digest(code, self.expected_test_code(phone)):
                await self.store.release_session(phone)
                return
            raise await self._rejection(phone, "Invalid OTP. Please try again.")

        url = f"{self.base_url}/{self.api_key}/SMS/VERIFY/{session['session_id']}/{code}"
        try:
            payload = await self._request(url)
        except httpx.HTTPError as exc:
            logger.error("otp_verify_transport_failed phone_suffix=%s error=%s", national_suffix(phone, 4), exc)
            raise HTTPException(status_code=500, detail="Failed to verify OTP. Please try again.")

        if payload.get("Status") == "Success":
            await self.store.release_session(phone)
            return
        raise await self._rejection(phone, payload.get("Details") or "Invalid OTP. Please try again.")

    async def _rejection(self, phone: str, detail: str) -> HTTPException:
        """Count a failed attempt and build the error the caller raises."""
        attempts = await self.store.record_failure(phone, self.max_attempts)
        if attempts >= self.max_attempts:
            logger.warning("otp_session_invalidated phone_suffix=%s attempts=%s", national_suffix(phone, 4), attempts)
            return HTTPException(status_code=400, detail="Too many failed attempts. Please request a new OTP.")
        return HTTPException(status_code=400, detail=detail)
