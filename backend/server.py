from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any, Tuple
from collections import Counter
from datetime import datetime, timezone, timedelta
from urllib.parse import quote
import os
import logging
import asyncio
import uuid
import re
import sys
import json
import time
import bcrypt
import jwt

ROOT_DIR = Path(__file__).parent
# Ensure imports resolve to backend/* modules even when app is started from repo root.
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

from cashfree_service import CashfreeService
from content_defaults import APP_NAME, CONTACT_DEFAULT, DEFAULT_SLUG, DEFAULT_VERSION, DOCUMENT_DEFAULTS
from otp_service import TwoFactorOtpService
from otp_store import build_otp_store
from phone_utils import InvalidPhoneNumber, mask_phone, normalize_phone
from subscription_rules import (
    BOARDS,
    PLAN_DURATIONS,
    PLAN_TYPES,
    build_legacy_subscription,
    build_subscription_entry,
    collect_active_sources,
    compute_subscription_window,
    describe_conflict,
    duration_label,
    find_subscription_conflict,
    is_window_open,
    overlapping_classes,
    parse_iso,
    ref_id,
)

mongo_url = os.environ["MONGO_URL"]
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ["DB_NAME"]]

JWT_SECRET_FALLBACK = "dvisionacademytoken"
JWT_SECRET = os.environ.get("JWT_SECRET", "").strip() or JWT_SECRET_FALLBACK
JWT_EXPIRE = os.environ.get("JWT_EXPIRE", "30d").strip() or "30d"
AUTH_PER_MIN_LIMIT = int(os.environ.get("AUTH_PER_MIN_LIMIT", "20"))
OTP_STORE_BACKEND = os.environ.get("OTP_STORE_BACKEND", "mongo").strip().lower()
OTP_EXPIRY_MINUTES = int(os.environ.get("OTP_EXPIRY_MINUTES", "5"))
PAYMENT_SIGNATURE_POLICY = os.environ.get("PAYMENT_SIGNATURE_POLICY", "advisory").strip().lower()
PAYMENT_RETRY_WINDOW_MINUTES = int(os.environ.get("PAYMENT_RETRY_WINDOW_MINUTES", "5"))
MONGO_TRANSACTIONS_ENABLED = os.environ.get("MONGO_TRANSACTIONS_ENABLED", "true").lower() == "true"
FRONTEND_URL = os.environ.get("FRONTEND_URL", "https://dvisionacademy.com").strip().rstrip("/")
BACKEND_URL = os.environ.get("BACKEND_URL", "https://api.dvisionacademy.com").strip().rstrip("/")
STUDENT_APP_URL = os.environ.get("STUDENT_APP_URL", "https://dvisionacademy.com").strip().rstrip("/")
STUDENT_REGISTRATION_PATH = os.environ.get("STUDENT_REGISTRATION_PATH", "/registration").strip() or "/registration"
PAYMENT_METHODS = os.environ.get("CF_PAYMENT_METHODS", "cc,dc,upi,nb").strip() or "cc,dc,upi,nb"
ADMIN_PAGE_MAX_LIMIT = int(os.environ.get("ADMIN_PAGE_MAX_LIMIT", "100"))

PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled")
REFERRAL_STATUSES = ("pending", "completed", "paid")
ACCOUNT_COLLECTIONS = {
    "student": "students",
    "teacher": "teachers",
    "agent": "agents",
    "admin": "admins",
}

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

security = HTTPBearer(auto_error=False)
cashfree_service = CashfreeService()
otp_store = build_otp_store(OTP_STORE_BACKEND, db)
otp_service = TwoFactorOtpService(otp_store)
_transactions_supported = MONGO_TRANSACTIONS_ENABLED

app = FastAPI(title=f"{APP_NAME} API")
api_router = APIRouter(prefix="/api")


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PhoneRequest(ApiModel):
    phone: Optional[str] = None


class OtpVerifyRequest(ApiModel):
    phone: Optional[str] = None
    otp: Optional[str] = None


class StudentRegisterRequest(ApiModel):
    phone: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    student_class: Optional[Any] = Field(None, alias="class")
    board: Optional[str] = None
    ref: Optional[str] = None


class StudentProfileUpdateRequest(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None


class TeacherProfileUpdateRequest(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    experience: Optional[str] = None


class FcmTokenRequest(ApiModel):
    fcm_token: Optional[str] = Field(None, alias="fcmToken")


class AdminLoginRequest(ApiModel):
    email: Optional[str] = None
    password: Optional[str] = None


class AgentUpsertRequest(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class TeacherUpsertRequest(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    experience: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class ClassCreateRequest(ApiModel):
    type: str = "regular"
    board: Optional[str] = None
    class_number: Optional[int] = Field(None, alias="class")
    name: Optional[str] = None
    description: Optional[str] = None
    class_code: Optional[str] = Field(None, alias="classCode")
    is_active: bool = Field(True, alias="isActive")


class ClassUpdateRequest(ApiModel):
    type: Optional[str] = None
    board: Optional[str] = None
    class_number: Optional[Any] = Field(None, alias="class")
    name: Optional[str] = None
    description: Optional[str] = None
    class_code: Optional[str] = Field(None, alias="classCode")
    is_active: Optional[bool] = Field(None, alias="isActive")


class ReferralStatusUpdateRequest(ApiModel):
    status: Optional[str] = None


class SubscriptionPlanRequest(ApiModel):
    type: Optional[str] = None
    name: Optional[str] = None
    board: Optional[str] = None
    classes: Optional[List[Any]] = None
    class_id: Optional[str] = Field(None, alias="classId")
    duration: Optional[str] = None
    price: Optional[float] = None
    original_price: Optional[float] = Field(None, alias="originalPrice")
    description: Optional[str] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = Field(None, alias="isActive")
    validity_days: Optional[Any] = Field(None, alias="validityDays")


class CreateOrderRequest(ApiModel):
    plan_id: Optional[str] = Field(None, alias="planId")


class VerifyPaymentRequest(ApiModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    reference_id: Optional[str] = Field(None, alias="referenceId")
    payment_signature: Optional[str] = Field(None, alias="paymentSignature")
    tx_status: Optional[str] = Field(None, alias="txStatus")
    order_amount: Optional[Any] = Field(None, alias="orderAmount")


class ContentDocumentRequest(ApiModel):
    title: Optional[str] = None
    slug: Optional[str] = None
    version: Optional[str] = None
    content: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class NotificationIdsRequest(ApiModel):
    notification_ids: Optional[List[str]] = Field(None, alias="notificationIds")


class ContactInfoRequest(ApiModel):
    title: Optional[str] = None
    subtitle: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    address: Optional[str] = None
    support_hours: Optional[str] = Field(None, alias="supportHours")
    additional_notes: Optional[str] = Field(None, alias="additionalNotes")
    is_active: Optional[bool] = Field(None, alias="isActive")


class InMemoryRateLimiter:
    def __init__(self, clock=time.time):
        self._buckets: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._last_sweep = clock()

    def _sweep(self, threshold: float) -> None:
        stale = [key for key, events in self._buckets.items() if not events or events[-1] <= threshold]
        for key in stale:
            self._buckets.pop(key, None)

    async def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = self._clock()
        threshold = now - window_seconds
        async with self._lock:
            # Drop keys for clients that went quiet, at most once per window.
            if now - self._last_sweep >= window_seconds:
                self._sweep(threshold)
                self._last_sweep = now
            events = [t for t in self._buckets.get(key, []) if t > threshold]
            if len(events) >= limit:
                self._buckets[key] = events
                raise HTTPException(status_code=429, detail="Rate limit exceeded")
            events.append(now)
            self._buckets[key] = events


rate_limiter = InMemoryRateLimiter()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def success_response(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def extract_request_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


async def ensure_rate_limit(identity: str, bucket: str, limit: int) -> None:
    await rate_limiter.check(f"{bucket}:{identity}", limit=limit, window_seconds=60)


_DURATION_PATTERN = re.compile(r"^(\d+)\s*([smhd]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> timedelta:
    match = _DURATION_PATTERN.match(str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid duration: {value}")
    return timedelta(seconds=int(match.group(1)) * _DURATION_UNITS[match.group(2)])


def create_token(account_id: str, role: str) -> str:
    payload = {
        "id": account_id,
        "role": role,
        "exp": utc_now() + parse_duration(JWT_EXPIRE),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = None) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials.strip()
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        bearer = auth_header[7:].strip()
        if bearer:
            return bearer
    for candidate in (
        request.cookies.get("token"),
        request.headers.get("x-auth-token"),
        request.headers.get("token"),
        request.query_params.get("token"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def decode_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired, please login again")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token, please login again")
    if not payload.get("id") or not payload.get("role"):
        raise HTTPException(status_code=401, detail="Invalid token, please login again")
    return payload


async def load_account(payload: Dict[str, Any]) -> Dict[str, Any]:
    role = payload["role"]
    collection_name = ACCOUNT_COLLECTIONS.get(role)
    if not collection_name:
        raise HTTPException(status_code=401, detail="Invalid user role")
    account = await db[collection_name].find_one({"id": payload["id"]}, {"_id": 0, "password_hash": 0})
    if not account:
        raise HTTPException(status_code=401, detail="User not found")
    if account.get("is_active") is False:
        raise HTTPException(status_code=401, detail="Your account has been deactivated")
    account["role"] = role if role != "admin" else account.get("role", "admin")
    account["token_role"] = role
    return account


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    token = extract_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Not authorized to access this route")
    return await load_account(decode_token(token))


def require_roles(*roles: str):
    async def dependency(current_user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if current_user["token_role"] not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"User role '{current_user['token_role']}' is not authorized to access this route",
            )
        return current_user

    return dependency


require_student = require_roles("student")
require_teacher = require_roles("teacher")
require_agent = require_roles("agent")
require_admin = require_roles("admin")


async def get_optional_student(request: Request) -> Optional[Dict[str, Any]]:
    """Resolve a student from the request token without failing public routes."""
    token = extract_token(request)
    if not token:
        return None
    try:
        payload = decode_token(token)
    except HTTPException:
        return None
    if payload.get("role") != "student":
        return None
    return await db.students.find_one({"id": payload["id"]}, {"_id": 0})


def canonical_phone(raw: Optional[str]) -> str:
    if not raw or not str(raw).strip():
        raise HTTPException(status_code=400, detail="Please provide a phone number")
    try:
        return normalize_phone(raw)
    except InvalidPhoneNumber as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def parse_student_class(value: Any) -> int:
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail="Class must be between 1 and 12")
    if isinstance(value, str):
        value = re.sub(r"(th|st|nd|rd)", "", value, flags=re.IGNORECASE).strip()
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Class must be between 1 and 12")
    if parsed < 1 or parsed > 12:
        raise HTTPException(status_code=400, detail="Class must be between 1 and 12")
    return parsed


def parse_pagination(page: int, limit: int) -> Tuple[int, int, int]:
    page = max(1, page)
    limit = max(1, min(ADMIN_PAGE_MAX_LIMIT, limit))
    return page, limit, (page - 1) * limit


def public_account(account: Dict[str, Any]) -> Dict[str, Any]:
    hidden = {"password_hash", "token_role", "fcm_token_invalidated_at"}
    return {k: v for k, v in account.items() if k not in hidden}


async def record_security_event(event: str, **fields: Any) -> None:
    security_logger.warning("%s %s", event, " ".join(f"{k}={v}" for k, v in fields.items()))
    try:
        await db.security_events.insert_one(
            {"id": str(uuid.uuid4()), "event": event, "details": fields, "created_at": utc_now_iso()}
        )
    except Exception as exc:
        logger.error("security_event_persist_failed event=%s error=%s", event, exc)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.exception(
            "request_id=%s method=%s path=%s status=500 duration_ms=%s error=%s",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
            str(e),
        )
        raise
    duration_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_id=%s method=%s path=%s status=%s duration_ms=%s",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(
        "HTTPException request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    logger.warning("validation_error path=%s message=%s", request.url.path, message)
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    logger.exception("Unhandled server error: %s", exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


async def issue_otp(phone: str) -> Dict[str, Any]:
    result = await otp_service.send_otp(phone)
    return {
        "message": result["message"],
        "data": {
            "phone": mask_phone(phone),
            "expires_in": f"{OTP_EXPIRY_MINUTES} minutes",
            "is_test": result["is_test"],
        },
    }


async def verify_phone_otp(payload: OtpVerifyRequest) -> str:
    if not payload.phone or not payload.otp:
        raise HTTPException(status_code=400, detail="Please provide phone number and OTP")
    phone = canonical_phone(payload.phone)
    await otp_service.verify_otp(phone, payload.otp)
    return phone


def student_summary(student: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": student.get("id"),
        "name": student.get("name"),
        "phone": student.get("phone"),
        "email": student.get("email"),
        "class": student.get("class"),
        "board": student.get("board"),
        "is_phone_verified": bool(student.get("is_phone_verified")),
        "subscription": student.get("subscription"),
        "profile_image": student.get("profile_image"),
    }


async def touch_last_otp_sent(collection_name: str, phone: str) -> None:
    await db[collection_name].update_one({"phone": phone}, {"$set": {"last_otp_sent_at": utc_now_iso()}})


@api_router.get("/student/check-exists")
async def check_student_exists(phone: Optional[str] = None):
    canonical = canonical_phone(phone)
    student = await db.students.find_one({"phone": canonical}, {"_id": 0, "id": 1})
    return success_response({"exists": bool(student), "phone": mask_phone(canonical)})


async def resolve_referral_agent(ref: Optional[str]) -> Optional[str]:
    ref = (ref or "").strip()
    if not ref:
        return None
    agent = await db.agents.find_one({"id": ref, "is_active": {"$ne": False}}, {"_id": 0, "id": 1})
    if not agent:
        logger.warning("referral_ref_ignored ref=%s", ref)
        return None
    return agent["id"]


@api_router.post("/student/register")
async def register_student(payload: StudentRegisterRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = canonical_phone(payload.phone)

    existing = await db.students.find_one({"phone": phone}, {"_id": 0})
    if existing and existing.get("is_phone_verified"):
        raise HTTPException(
            status_code=400,
            detail="Student with this phone number already exists. Please login instead.",
        )
    if not payload.name or not payload.email or payload.student_class in (None, "") or not payload.board:
        raise HTTPException(
            status_code=400,
            detail="Please provide all required fields: name, email, class, and board",
        )
    student_class = parse_student_class(payload.student_class)
    if payload.board not in BOARDS:
        raise HTTPException(status_code=400, detail="Board must be CBSE or RBSE")

    now_iso = utc_now_iso()
    fields = {
        "name": payload.name.strip(),
        "email": payload.email.strip().lower(),
        "class": student_class,
        "board": payload.board,
        "is_phone_verified": False,
        "is_active": True,
        "updated_at": now_iso,
    }
    referral_agent_id = await resolve_referral_agent(payload.ref)
    if referral_agent_id and not (existing or {}).get("referral_agent_id"):
        fields["referral_agent_id"] = referral_agent_id
        fields["referred_at"] = now_iso

    if existing:
        await db.students.update_one({"id": existing["id"]}, {"$set": fields})
        student = {**existing, **fields}
    else:
        student = {
            "id": str(uuid.uuid4()),
            "phone": phone,
            "active_subscriptions": [],
            "subscription": None,
            "created_at": now_iso,
            **fields,
        }
        try:
            await db.students.insert_one(dict(student))
        except DuplicateKeyError:
            raise HTTPException(
                status_code=400,
                detail="Student with this phone number already exists. Please login instead.",
            )
        logger.info("student_registered student_id=%s referral_agent_id=%s", student["id"], referral_agent_id)

    otp = await issue_otp(phone)
    await touch_last_otp_sent("students", phone)
    message = (
        "Registration successful. OTP sent (Test Mode)"
        if otp["data"]["is_test"]
        else "Registration successful. OTP sent to your phone number"
    )
    return success_response({**otp["data"], "student": student_summary(student)}, message=message)


@api_router.post("/student/login")
async def login_student(payload: PhoneRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = canonical_phone(payload.phone)
    student = await db.students.find_one({"phone": phone}, {"_id": 0})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found. Please register first.")

    is_test = otp_service.is_test_number(phone)
    if not student.get("is_phone_verified"):
        if not is_test:
            raise HTTPException(
                status_code=400,
                detail="Phone number not verified. Please complete registration first.",
            )
        await db.students.update_one({"id": student["id"]}, {"$set": {"is_phone_verified": True}})

    otp = await issue_otp(phone)
    await touch_last_otp_sent("students", phone)
    return success_response(otp["data"], message=otp["message"])


@api_router.post("/student/send-otp")
async def send_student_otp(payload: PhoneRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = canonical_phone(payload.phone)
    otp = await issue_otp(phone)
    await touch_last_otp_sent("students", phone)
    return success_response(otp["data"], message=otp["message"])


@api_router.post("/student/resend-otp")
async def resend_student_otp(payload: PhoneRequest, request: Request):
    return await send_student_otp(payload, request)


@api_router.post("/student/verify-otp")
async def verify_student_otp(payload: OtpVerifyRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = await verify_phone_otp(payload)
    student = await db.students.find_one({"phone": phone}, {"_id": 0})
    if not student:
        raise HTTPException(status_code=404, detail="Student not found. Please register first.")

    was_unverified = not student.get("is_phone_verified")
    updates: Dict[str, Any] = {"is_phone_verified": True, "last_otp_sent_at": None, "updated_at": utc_now_iso()}
    legacy = student.get("subscription") or {}
    if legacy.get("status") == "active" and legacy.get("end_date") and not is_window_open(legacy["end_date"], utc_now()):
        updates["subscription.status"] = "expired"
        legacy = {**legacy, "status": "expired"}
    await db.students.update_one({"id": student["id"]}, {"$set": updates})
    student.update({"is_phone_verified": True, "subscription": legacy or None})

    logger.info("student_otp_verified student_id=%s new_user=%s", student["id"], was_unverified)
    return success_response(
        {
            "student": student_summary(student),
            "token": create_token(student["id"], "student"),
            "is_new_user": was_unverified,
        },
        message="Registration verified successfully" if was_unverified else "Login successful",
    )


async def load_plans_by_id(plan_ids) -> Dict[str, Dict[str, Any]]:
    ids = [plan_id for plan_id in set(plan_ids) if plan_id]
    if not ids:
        return {}
    plans = await db.subscription_plans.find({"id": {"$in": ids}}, {"_id": 0}).to_list(len(ids))
    return {plan["id"]: plan for plan in plans}


async def load_classes_by_id(class_ids) -> Dict[str, Dict[str, Any]]:
    ids = [class_id for class_id in set(class_ids) if class_id]
    if not ids:
        return {}
    classes = await db.classes.find({"id": {"$in": ids}}, {"_id": 0}).to_list(len(ids))
    return {doc["id"]: doc for doc in classes}


async def find_active_payments(student_id: str, now: datetime) -> List[Dict[str, Any]]:
    return (
        await db.payments.find(
            {"student_id": student_id, "status": "completed", "subscription_end_date": {"$gte": now.isoformat()}},
            {"_id": 0},
        )
        .sort("subscription_end_date", -1)
        .to_list(200)
    )


async def load_active_sources(student: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    payments = await find_active_payments(student["id"], now)
    plan_ids = [p.get("subscription_plan_id") for p in payments]
    legacy = student.get("subscription") or {}
    plan_ids.append(legacy.get("plan_id"))
    plans_by_id = await load_plans_by_id(plan_ids)
    return collect_active_sources(student, payments, plans_by_id, now)


async def build_student_subscriptions(student: Dict[str, Any]) -> Dict[str, Any]:
    """Active subscriptions from the embedded array and completed payments, de-duplicated by payment."""
    now = utc_now()
    entries = [e for e in student.get("active_subscriptions") or [] if is_window_open(e.get("end_date"), now)]
    payments = await find_active_payments(student["id"], now)
    plans_by_id = await load_plans_by_id(
        [e.get("plan_id") for e in entries] + [p.get("subscription_plan_id") for p in payments]
    )
    classes_by_id = await load_classes_by_id(ref_id(p.get("class_id")) for p in plans_by_id.values())

    def with_class(plan: Dict[str, Any]) -> Dict[str, Any]:
        class_id = ref_id(plan.get("class_id"))
        if class_id and class_id in classes_by_id:
            return {**plan, "class_info": classes_by_id[class_id]}
        return plan

    active: List[Dict[str, Any]] = []
    seen_payments = set()
    for entry in entries:
        plan = plans_by_id.get(entry.get("plan_id"))
        if not plan:
            continue
        seen_payments.add(entry.get("payment_id"))
        active.append({**entry, "plan": with_class(plan), "source": "active_subscriptions"})
    for payment in payments:
        plan = plans_by_id.get(payment.get("subscription_plan_id"))
        if payment["id"] in seen_payments or not plan:
            continue
        active.append(
            {
                "payment_id": payment["id"],
                "plan_id": plan["id"],
                "start_date": payment.get("subscription_start_date"),
                "end_date": payment.get("subscription_end_date"),
                "type": plan.get("type") or "regular",
                "amount": payment.get("amount"),
                "plan": with_class(plan),
                "source": "payment",
            }
        )

    class_based = [s for s in active if s["type"] == "regular"]
    preparation = [s for s in active if s["type"] == "preparation"]
    return {
        "active_subscriptions": active,
        "class_based_subscriptions": class_based,
        "preparation_subscriptions": preparation,
        "has_active_class_subscription": bool(class_based),
        "has_active_preparation_subscription": bool(preparation),
    }


@api_router.get("/student/me")
async def student_me(current_user: Dict[str, Any] = Depends(require_student)):
    subscriptions = await build_student_subscriptions(current_user)
    student = {
        **student_summary(current_user),
        "fcm_token": current_user.get("fcm_token"),
        "referral_agent_id": current_user.get("referral_agent_id"),
        "created_at": current_user.get("created_at"),
        **subscriptions,
    }
    return success_response({"student": student})


@api_router.put("/student/profile")
async def update_student_profile(
    payload: StudentProfileUpdateRequest,
    current_user: Dict[str, Any] = Depends(require_student),
):
    updates: Dict[str, Any] = {}
    if payload.name and payload.name.strip():
        updates["name"] = payload.name.strip()
    if payload.email and payload.email.strip():
        updates["email"] = payload.email.strip().lower()
    if updates:
        updates["updated_at"] = utc_now_iso()
        await db.students.update_one({"id": current_user["id"]}, {"$set": updates})
    return success_response(
        {"student": student_summary({**current_user, **updates})},
        message="Profile updated successfully",
    )


async def store_fcm_token(collection_name: str, account_id: str, payload: FcmTokenRequest) -> Dict[str, Any]:
    token = (payload.fcm_token or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="Please provide FCM token")
    await db[collection_name].update_one(
        {"id": account_id},
        {"$set": {"fcm_token": token, "fcm_token_updated_at": utc_now_iso()}},
    )
    return success_response(message="FCM token updated successfully")


@api_router.put("/student/fcm-token")
async def update_student_fcm_token(payload: FcmTokenRequest, current_user: Dict[str, Any] = Depends(require_student)):
    return await store_fcm_token("students", current_user["id"], payload)


TEACHER_PUBLIC_FIELDS = {"_id": 0, "id": 1, "name": 1, "email": 1, "profile_image": 1, "bio": 1, "experience": 1}


@api_router.get("/teacher")
async def list_active_teachers():
    teachers = await db.teachers.find({"is_active": True}, TEACHER_PUBLIC_FIELDS).sort("name", 1).to_list(500)
    return success_response({"teachers": teachers}, count=len(teachers))


@api_router.get("/teacher/check/{phone}")
async def check_teacher(phone: str):
    canonical = canonical_phone(phone)
    teacher = await db.teachers.find_one({"phone": canonical}, {"_id": 0, "is_active": 1})
    return success_response(
        {
            "exists": bool(teacher),
            "is_active": bool(teacher and teacher.get("is_active", True)),
            "phone": mask_phone(canonical),
        }
    )


@api_router.post("/teacher/send-otp")
async def send_teacher_otp(payload: PhoneRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = canonical_phone(payload.phone)
    otp = await issue_otp(phone)
    await touch_last_otp_sent("teachers", phone)
    return success_response(otp["data"], message=otp["message"])


@api_router.post("/teacher/resend-otp")
async def resend_teacher_otp(payload: PhoneRequest, request: Request):
    return await send_teacher_otp(payload, request)


@api_router.post("/teacher/verify-otp")
async def verify_teacher_otp(payload: OtpVerifyRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = await verify_phone_otp(payload)
    teacher = await db.teachers.find_one({"phone": phone}, {"_id": 0})
    if not teacher:
        raise HTTPException(status_code=404, detail="Teacher not found. Please contact admin to register your account.")
    if teacher.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Your account has been deactivated. Please contact admin.")

    await db.teachers.update_one(
        {"id": teacher["id"]},
        {"$set": {"is_phone_verified": True, "last_otp_sent_at": None, "updated_at": utc_now_iso()}},
    )
    teacher["is_phone_verified"] = True
    logger.info("teacher_otp_verified teacher_id=%s", teacher["id"])
    return success_response(
        {"teacher": public_account(teacher), "token": create_token(teacher["id"], "teacher")},
        message="Login successful",
    )


@api_router.get("/teacher/me")
async def teacher_me(current_user: Dict[str, Any] = Depends(require_teacher)):
    return success_response({"teacher": public_account(current_user)})


@api_router.put("/teacher/profile")
async def update_teacher_profile(
    payload: TeacherProfileUpdateRequest,
    current_user: Dict[str, Any] = Depends(require_teacher),
):
    updates = {k: v.strip() for k, v in payload.model_dump(exclude_unset=True).items() if isinstance(v, str) and v.strip()}
    if "email" in updates:
        updates["email"] = updates["email"].lower()
    if updates:
        updates["updated_at"] = utc_now_iso()
        await db.teachers.update_one({"id": current_user["id"]}, {"$set": updates})
    return success_response({"teacher": public_account({**current_user, **updates})}, message="Profile updated successfully")


@api_router.put("/teacher/fcm-token")
async def update_teacher_fcm_token(payload: FcmTokenRequest, current_user: Dict[str, Any] = Depends(require_teacher)):
    return await store_fcm_token("teachers", current_user["id"], payload)


@api_router.post("/agent/check-exists")
async def check_agent_exists(payload: PhoneRequest):
    phone = canonical_phone(payload.phone)
    agent = await db.agents.find_one({"phone": phone}, {"_id": 0, "id": 1, "is_active": 1})
    if not agent:
        return {
            "success": False,
            "exists": False,
            "message": "Agent account not found. Contact admin to create your account.",
        }
    if agent.get("is_active") is False:
        return {
            "success": False,
            "exists": True,
            "is_active": False,
            "message": "Your agent account has been deactivated. Please contact admin.",
        }
    return {"success": True, "exists": True, "is_active": True, "message": "Agent account found and active"}


async def find_active_agent(phone: str) -> Dict[str, Any]:
    agent = await db.agents.find_one({"phone": phone}, {"_id": 0})
    if not agent:
        raise HTTPException(status_code=404, detail="Agent account not found. Contact admin to create your account.")
    if agent.get("is_active") is False:
        raise HTTPException(status_code=403, detail="Your agent account has been deactivated. Please contact admin.")
    return agent


@api_router.post("/agent/send-otp")
async def send_agent_otp(payload: PhoneRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = canonical_phone(payload.phone)
    await find_active_agent(phone)
    otp = await issue_otp(phone)
    await touch_last_otp_sent("agents", phone)
    return success_response(otp["data"], message=otp["message"])


@api_router.post("/agent/verify-otp")
async def verify_agent_otp(payload: OtpVerifyRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    phone = await verify_phone_otp(payload)
    agent = await find_active_agent(phone)
    await db.agents.update_one(
        {"id": agent["id"]},
        {"$set": {"is_phone_verified": True, "last_otp_sent_at": None, "updated_at": utc_now_iso()}},
    )
    agent["is_phone_verified"] = True
    logger.info("agent_otp_verified agent_id=%s", agent["id"])
    return success_response(
        {"agent": public_account(agent), "token": create_token(agent["id"], "agent")},
        message="Login successful",
    )


@api_router.get("/agent/me")
async def agent_me(current_user: Dict[str, Any] = Depends(require_agent)):
    return success_response({"agent": public_account(current_user)})


@api_router.put("/agent/me")
async def update_agent_me(
    payload: StudentProfileUpdateRequest,
    current_user: Dict[str, Any] = Depends(require_agent),
):
    updates: Dict[str, Any] = {}
    if payload.name and payload.name.strip():
        updates["name"] = payload.name.strip()
    if payload.email is not None:
        updates["email"] = payload.email.strip().lower() or None
    if updates:
        updates["updated_at"] = utc_now_iso()
        await db.agents.update_one({"id": current_user["id"]}, {"$set": updates})
    return success_response({"agent": public_account({**current_user, **updates})}, message="Profile updated successfully")


def build_referral_link(agent_id: str) -> Dict[str, str]:
    path = STUDENT_REGISTRATION_PATH if STUDENT_REGISTRATION_PATH.startswith("/") else f"/{STUDENT_REGISTRATION_PATH}"
    link = f"{STUDENT_APP_URL}{path}?ref={quote(agent_id, safe='')}"
    share_message = f"Join {APP_NAME}! Register here: {link}"
    return {
        "referral_link": link,
        "share_message": share_message,
        "whatsapp_share_url": f"https://wa.me/?text={quote(share_message, safe='')}",
    }


@api_router.get("/agent/referral-link")
async def agent_referral_link(current_user: Dict[str, Any] = Depends(require_agent)):
    return success_response({"agent_id": current_user["id"], **build_referral_link(current_user["id"])})


def month_keys(now: datetime, months: int = 6) -> List[str]:
    keys = []
    year, month = now.year, now.month
    for _ in range(months):
        keys.append(f"{year}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys


@api_router.get("/agent/statistics")
async def agent_statistics(current_user: Dict[str, Any] = Depends(require_agent)):
    agent_id = current_user["id"]
    referred_students = (
        await db.students.find(
            {"referral_agent_id": agent_id},
            {"_id": 0, "id": 1, "name": 1, "phone": 1, "email": 1, "class": 1, "board": 1, "referred_at": 1, "created_at": 1},
        )
        .sort("referred_at", -1)
        .to_list(1000)
    )
    status_counts = Counter()
    async for record in db.referral_records.find({"agent_id": agent_id}, {"_id": 0, "status": 1}):
        status_counts[record.get("status", "pending")] += 1

    now = utc_now()
    keys = month_keys(now)
    window_start = f"{keys[-1]}-01"
    monthly: Dict[str, Dict[str, Any]] = {}
    records = await db.referral_records.find(
        {"agent_id": agent_id, "status": {"$in": ["completed", "paid"]}, "subscription_date": {"$gte": window_start}},
        {"_id": 0},
    ).to_list(5000)
    for record in records:
        key = str(record.get("subscription_date", ""))[:7]
        bucket = monthly.setdefault(key, {"month": key, "count": 0, "total_amount": 0})
        bucket["count"] += 1
        bucket["total_amount"] += record.get("amount") or 0
    breakdown = [monthly[k] for k in keys if k in monthly]

    recent = sorted(records, key=lambda r: r.get("subscription_date", ""), reverse=True)[:10]
    students_by_id = {s["id"]: s for s in referred_students}
    plans_by_id = await load_plans_by_id(r.get("subscription_plan_id") for r in recent)
    recent_referrals = [
        {
            **r,
            "student": students_by_id.get(r.get("student_id")),
            "plan_name": (plans_by_id.get(r.get("subscription_plan_id")) or {}).get("name"),
        }
        for r in recent
    ]
    return success_response(
        {
            "statistics": {
                "total_referrals": len(referred_students),
                "successful_subscriptions": status_counts["completed"] + status_counts["paid"],
                "pending_commissions": status_counts["completed"],
                "paid_commissions": status_counts["paid"],
            },
            "month_wise_breakdown": breakdown,
            "recent_referrals": recent_referrals,
            "recent_referral_students": [
                {**s, "referred_at": s.get("referred_at") or s.get("created_at")} for s in referred_students[:3]
            ],
            "referred_students": referred_students,
        }
    )


@api_router.put("/agent/fcm-token")
async def update_agent_fcm_token(payload: FcmTokenRequest, current_user: Dict[str, Any] = Depends(require_agent)):
    return await store_fcm_token("agents", current_user["id"], payload)


@api_router.post("/admin/login")
async def admin_login(payload: AdminLoginRequest, request: Request):
    await ensure_rate_limit(extract_request_ip(request), "auth", AUTH_PER_MIN_LIMIT)
    if not payload.email or not payload.password:
        raise HTTPException(status_code=400, detail="Please provide email and password")
    admin = await db.admins.find_one({"email": payload.email.strip().lower()}, {"_id": 0})
    if not admin or not admin.get("password_hash"):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if admin.get("is_active") is False:
        raise HTTPException(status_code=401, detail="Your account has been deactivated")
    if not verify_password(payload.password, admin["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    await db.admins.update_one({"id": admin["id"]}, {"$set": {"last_login_at": utc_now_iso()}})
    logger.info("admin_login admin_id=%s", admin["id"])
    return success_response(
        {"admin": public_account(admin), "token": create_token(admin["id"], "admin")},
        message="Login successful",
    )


@api_router.get("/admin/me")
async def admin_me(current_user: Dict[str, Any] = Depends(require_admin)):
    return success_response({"admin": public_account(current_user)})


async def ensure_phone_available(collection_name: str, phone: str, detail: str, exclude_id: Optional[str] = None) -> None:
    query: Dict[str, Any] = {"phone": phone}
    if exclude_id:
        query["id"] = {"$ne": exclude_id}
    if await db[collection_name].find_one(query, {"_id": 0, "id": 1}):
        raise HTTPException(status_code=400, detail=detail)


@api_router.post("/admin/agents", status_code=201)
async def admin_create_agent(payload: AgentUpsertRequest, current_user: Dict[str, Any] = Depends(require_admin)):
    if not payload.name or not payload.phone:
        raise HTTPException(status_code=400, detail="Please provide name and phone")
    phone = canonical_phone(payload.phone)
    await ensure_phone_available("agents", phone, "Agent with this phone number already exists")

    now_iso = utc_now_iso()
    agent = {
        "id": str(uuid.uuid4()),
        "name": payload.name.strip(),
        "phone": phone,
        "email": (payload.email or "").strip().lower() or None,
        "is_phone_verified": False,
        "is_active": True if payload.is_active is None else payload.is_active,
        "created_by": current_user["id"],
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    try:
        await db.agents.insert_one(dict(agent))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Agent with this phone number already exists")
    logger.info("agent_created agent_id=%s admin_id=%s", agent["id"], current_user["id"])
    return success_response({"agent": agent}, message="Agent created successfully")


@api_router.get("/admin/agents")
async def admin_list_agents(
    search: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    current_user: Dict[str, Any] = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"phone": pattern}, {"email": pattern}]
    agents = await db.agents.find(query, {"_id": 0}).sort("created_at", -1).to_list(1000)

    counts = Counter()
    async for student in db.students.find(
        {"referral_agent_id": {"$in": [a["id"] for a in agents]}}, {"_id": 0, "referral_agent_id": 1}
    ):
        counts[student["referral_agent_id"]] += 1
    for agent in agents:
        agent["total_referrals"] = counts[agent["id"]]
    return success_response({"agents": agents}, count=len(agents))


@api_router.put("/admin/agents/{agent_id}")
async def admin_update_agent(
    agent_id: str,
    payload: AgentUpsertRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    agent = await db.agents.find_one({"id": agent_id}, {"_id": 0})
    if not agent:
        raise HTTPException(status_code=404, detail="Agent not found")
    updates: Dict[str, Any] = {}
    if payload.name is not None and payload.name.strip():
        updates["name"] = payload.name.strip()
    if payload.email is not None:
        updates["email"] = payload.email.strip().lower() or None
    if payload.is_active is not None:
        updates["is_active"] = payload.is_active
    if payload.phone is not None:
        phone = canonical_phone(payload.phone)
        if phone != agent.get("phone"):
            await ensure_phone_available("agents", phone, "Phone number already in use by another agent", agent_id)
            updates["phone"] = phone
            updates["is_phone_verified"] = False
    if updates:
        updates["updated_at"] = utc_now_iso()
        await db.agents.update_one({"id": agent_id}, {"$set": updates})
    return success_response({"agent": {**agent, **updates}}, message="Agent updated successfully")


@api_router.post("/admin/teachers", status_code=201)
async def admin_create_teacher(payload: TeacherUpsertRequest, current_user: Dict[str, Any] = Depends(require_admin)):
    if not payload.name or not payload.phone:
        raise HTTPException(status_code=400, detail="Please provide name and phone")
    phone = canonical_phone(payload.phone)
    await ensure_phone_available("teachers", phone, "Teacher with this phone number already exists")

    now_iso = utc_now_iso()
    teacher = {
        "id": str(uuid.uuid4()),
        "name": payload.name.strip(),
        "phone": phone,
        "email": (payload.email or "").strip().lower() or None,
        "bio": payload.bio or "",
        "experience": payload.experience or "",
        "is_phone_verified": False,
        "is_active": True if payload.is_active is None else payload.is_active,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    try:
        await db.teachers.insert_one(dict(teacher))
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Teacher with this phone number already exists")
    logger.info("teacher_created teacher_id=%s admin_id=%s", teacher["id"], current_user["id"])
    return success_response({"teacher": teacher}, message="Teacher created successfully")


@api_router.get("/admin/teachers")
async def admin_list_teachers(
    search: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    current_user: Dict[str, Any] = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"phone": pattern}, {"email": pattern}]
    teachers = await db.teachers.find(query, {"_id": 0}).sort("created_at", -1).to_list(1000)
    return success_response({"teachers": teachers}, count=len(teachers))


@api_router.put("/admin/teachers/{teacher_id}")
async def admin_update_teacher(
    teacher_id: str,
    payload: TeacherUpsertRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    teacher = await db.teachers.find_one({"id": teacher_id}, {"_id": 0})
    if not teacher:
        raise HTTPException(status_code=404, detail="Teacher not found")
    updates: Dict[str, Any] = {}
    for field in ("name", "bio", "experience"):
        value = getattr(payload, field)
        if value is not None:
            updates[field] = value.strip()
    if payload.email is not None:
        updates["email"] = payload.email.strip().lower() or None
    if payload.is_active is not None:
        updates["is_active"] = payload.is_active
    if payload.phone is not None:
        phone = canonical_phone(payload.phone)
        if phone != teacher.get("phone"):
            await ensure_phone_available("teachers", phone, "Teacher with this phone number already exists", teacher_id)
            updates["phone"] = phone
            updates["is_phone_verified"] = False
    if updates:
        updates["updated_at"] = utc_now_iso()
        await db.teachers.update_one({"id": teacher_id}, {"$set": updates})
    return success_response({"teacher": {**teacher, **updates}}, message="Teacher updated successfully")


@api_router.get("/admin/students")
async def admin_list_students(
    board: Optional[str] = None,
    student_class: Optional[int] = Query(None, alias="class"),
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    page, limit, skip = parse_pagination(page, limit)
    query: Dict[str, Any] = {}
    if board:
        query["board"] = board
    if student_class is not None:
        query["class"] = student_class
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"phone": pattern}, {"email": pattern}]
    total = await db.students.count_documents(query)
    students = (
        await db.students.find(query, {"_id": 0, "fcm_token": 0})
        .sort("created_at", -1)
        .skip(skip)
        .limit(limit)
        .to_list(limit)
    )
    return success_response(
        {"students": students},
        count=len(students),
        total=total,
        page=page,
        pages=(total + limit - 1) // limit,
    )


@api_router.post("/admin/classes", status_code=201)
async def admin_create_class(payload: ClassCreateRequest, current_user: Dict[str, Any] = Depends(require_admin)):
    class_code = (payload.class_code or "").strip().upper()
    if payload.type == "regular":
        if payload.class_number is None or not payload.board or not class_code:
            raise HTTPException(status_code=400, detail="Please provide class, board, and classCode for regular class")
        if payload.board not in BOARDS:
            raise HTTPException(status_code=400, detail="Invalid board. Must be CBSE or RBSE")
        class_number = parse_student_class(payload.class_number)
    elif payload.type == "preparation":
        if not payload.name or not class_code:
            raise HTTPException(status_code=400, detail="Please provide name and classCode for preparation class")
        class_number = None
    else:
        raise HTTPException(status_code=400, detail='Invalid class type. Must be "regular" or "preparation"')

    if await db.classes.find_one({"class_code": class_code}, {"_id": 0, "id": 1}):
        raise HTTPException(status_code=400, detail="Class with this class code already exists")
    if payload.type == "regular":
        if await db.classes.find_one(
            {"type": "regular", "board": payload.board, "class": class_number}, {"_id": 0, "id": 1}
        ):
            raise HTTPException(status_code=400, detail=f"Class {class_number} with board {payload.board} already exists")
        name = payload.name or f"Class {class_number} ({payload.board})"
    else:
        name = payload.name.strip()
        if await db.classes.find_one({"type": "preparation", "name": name}, {"_id": 0, "id": 1}):
            raise HTTPException(status_code=400, detail=f'Preparation class "{name}" already exists')

    now_iso = utc_now_iso()
    doc = {
        "id": str(uuid.uuid4()),
        "type": payload.type,
        "class": class_number,
        "board": payload.board if payload.type == "regular" else None,
        "name": name,
        "description": payload.description or "",
        "class_code": class_code,
        "is_active": payload.is_active,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.classes.insert_one(dict(doc))
    logger.info("class_created class_id=%s type=%s", doc["id"], doc["type"])
    return success_response({"class": doc}, message="Class created successfully")


@api_router.get("/admin/classes")
async def admin_list_classes(
    class_type: Optional[str] = Query(None, alias="type"),
    board: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    current_user: Dict[str, Any] = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if class_type:
        query["type"] = class_type
    if board:
        query["board"] = board
    if is_active is not None:
        query["is_active"] = is_active
    classes = await db.classes.find(query, {"_id": 0}).sort([("type", 1), ("class", 1), ("name", 1)]).to_list(500)
    return success_response({"classes": classes}, count=len(classes))


async def load_class(class_id: str) -> Dict[str, Any]:
    doc = await db.classes.find_one({"id": class_id}, {"_id": 0})
    if not doc:
        raise HTTPException(status_code=404, detail=f"Class not found with id of {class_id}")
    return doc


@api_router.get("/admin/classes/{class_id}")
async def admin_get_class(class_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
    return success_response({"class": await load_class(class_id)})


@api_router.put("/admin/classes/{class_id}")
async def admin_update_class(
    class_id: str,
    payload: ClassUpdateRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    doc = await load_class(class_id)
    class_type = payload.type or doc.get("type") or "regular"
    if class_type not in ("regular", "preparation"):
        raise HTTPException(status_code=400, detail='Invalid class type. Must be "regular" or "preparation"')

    updates: Dict[str, Any] = {}
    class_code = (payload.class_code or "").strip().upper()
    if class_code and class_code != doc.get("class_code"):
        if await db.classes.find_one({"class_code": class_code, "id": {"$ne": class_id}}, {"_id": 0, "id": 1}):
            raise HTTPException(status_code=400, detail="Class with this class code already exists")
        updates["class_code"] = class_code

    if class_type == "regular":
        board = payload.board if payload.board is not None else doc.get("board")
        if board not in BOARDS:
            raise HTTPException(status_code=400, detail="Invalid board. Must be CBSE or RBSE")
        class_number = doc.get("class")
        if payload.class_number is not None or class_number is None:
            class_number = parse_student_class(payload.class_number)
        moved = (class_number, board) != (doc.get("class"), doc.get("board"))
        if moved:
            if await db.classes.find_one(
                {"type": "regular", "board": board, "class": class_number, "id": {"$ne": class_id}},
                {"_id": 0, "id": 1},
            ):
                raise HTTPException(status_code=400, detail=f"Class {class_number} with board {board} already exists")
        updates.update({"class": class_number, "board": board})
        if payload.name and payload.name.strip():
            updates["name"] = payload.name.strip()
        elif moved or class_type != doc.get("type"):
            updates["name"] = f"Class {class_number} ({board})"
    else:
        name = (payload.name or "").strip() or doc.get("name")
        if not name:
            raise HTTPException(status_code=400, detail="Please provide name for preparation class")
        if name != doc.get("name") and await db.classes.find_one(
            {"type": "preparation", "name": name, "id": {"$ne": class_id}}, {"_id": 0, "id": 1}
        ):
            raise HTTPException(status_code=400, detail=f'Preparation class "{name}" already exists')
        updates.update({"name": name, "class": None, "board": None})

    updates["type"] = class_type
    if payload.description is not None:
        updates["description"] = payload.description.strip()
    if payload.is_active is not None:
        updates["is_active"] = payload.is_active
    updates["updated_at"] = utc_now_iso()
    await db.classes.update_one({"id": class_id}, {"$set": updates})
    logger.info("class_updated class_id=%s fields=%s", class_id, ",".join(sorted(updates)))
    return success_response({"class": {**doc, **updates}}, message="Class updated successfully")


@api_router.delete("/admin/classes/{class_id}")
async def admin_delete_class(class_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
    result = await db.classes.delete_one({"id": class_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail=f"Class not found with id of {class_id}")
    logger.info("class_deleted class_id=%s admin_id=%s", class_id, current_user["id"])
    return success_response({}, message="Class deleted successfully")


@api_router.get("/admin/referrals")
async def admin_list_referrals(
    agent_id: Optional[str] = Query(None, alias="agentId"),
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    page, limit, skip = parse_pagination(page, limit)
    query: Dict[str, Any] = {}
    if agent_id:
        query["agent_id"] = agent_id
    if status:
        query["status"] = status
    total = await db.referral_records.count_documents(query)
    records = (
        await db.referral_records.find(query, {"_id": 0})
        .sort("subscription_date", -1)
        .skip(skip)
        .limit(limit)
        .to_list(limit)
    )

    agent_ids = list({r["agent_id"] for r in records if r.get("agent_id")})
    student_ids = list({r["student_id"] for r in records if r.get("student_id")})
    agents = {
        a["id"]: a
        for a in await db.agents.find({"id": {"$in": agent_ids}}, {"_id": 0, "id": 1, "name": 1, "phone": 1}).to_list(
            len(agent_ids) or 1
        )
    }
    students = {
        s["id"]: s
        for s in await db.students.find(
            {"id": {"$in": student_ids}}, {"_id": 0, "id": 1, "name": 1, "phone": 1, "class": 1, "board": 1}
        ).to_list(len(student_ids) or 1)
    }
    plans = await load_plans_by_id(r.get("subscription_plan_id") for r in records)
    for record in records:
        record["agent"] = agents.get(record.get("agent_id"))
        record["student"] = students.get(record.get("student_id"))
        plan = plans.get(record.get("subscription_plan_id"))
        record["plan"] = {"id": plan["id"], "name": plan.get("name"), "duration": plan.get("duration")} if plan else None
    return success_response(
        {"referrals": records},
        count=len(records),
        total=total,
        page=page,
        pages=(total + limit - 1) // limit,
    )


@api_router.put("/admin/referrals/{record_id}/status")
async def admin_update_referral_status(
    record_id: str,
    payload: ReferralStatusUpdateRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    if payload.status not in REFERRAL_STATUSES:
        raise HTTPException(status_code=400, detail="Please provide a valid status (pending, completed, or paid)")
    updates: Dict[str, Any] = {"status": payload.status, "updated_at": utc_now_iso()}
    if payload.status == "paid":
        updates["paid_at"] = updates["updated_at"]
    record = await db.referral_records.find_one_and_update(
        {"id": record_id},
        {"$set": updates},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not record:
        raise HTTPException(status_code=404, detail="Referral record not found")
    logger.info("referral_status_updated record_id=%s status=%s admin_id=%s", record_id, payload.status, current_user["id"])
    return success_response({"referral": record}, message="Referral status updated successfully")


def valid_plan_classes(classes: Optional[List[Any]]) -> List[int]:
    return sorted({c for c in classes or [] if isinstance(c, int) and not isinstance(c, bool) and 1 <= c <= 12})


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


async def ensure_regular_classes_exist(board: str, classes: List[int]) -> None:
    count = await db.classes.count_documents(
        {"board": board, "type": "regular", "class": {"$in": classes}, "is_active": True}
    )
    if count != len(classes):
        raise HTTPException(status_code=400, detail="Some classes do not exist for the selected board")


def notification_scope(current_user: Dict[str, Any]) -> Dict[str, Any]:
    return {"user_id": current_user["id"], "user_type": current_user["token_role"]}


@api_router.get("/notification")
async def list_notifications(current_user: Dict[str, Any] = Depends(get_current_user)):
    notifications = (
        await db.notifications.find(notification_scope(current_user), {"_id": 0})
        .sort("created_at", -1)
        .limit(100)
        .to_list(100)
    )
    return success_response({"notifications": notifications}, count=len(notifications))


@api_router.get("/notification/unread-count")
async def unread_notification_count(current_user: Dict[str, Any] = Depends(get_current_user)):
    unread = await db.notifications.count_documents({**notification_scope(current_user), "is_read": False})
    return success_response({"unread_count": unread})


@api_router.put("/notification/mark-read")
async def mark_notifications_read(
    payload: Optional[NotificationIdsRequest] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    """Mark the given notifications read, or every unread one when no ids are sent."""
    query = {**notification_scope(current_user), "is_read": False}
    if payload and payload.notification_ids:
        query["id"] = {"$in": payload.notification_ids}
    result = await db.notifications.update_many(query, {"$set": {"is_read": True, "read_at": utc_now_iso()}})
    return success_response({"modified_count": result.modified_count}, message="Notifications marked as read")


@api_router.delete("/notification/all")
async def delete_all_notifications(current_user: Dict[str, Any] = Depends(get_current_user)):
    result = await db.notifications.delete_many(notification_scope(current_user))
    return success_response(
        {"deleted_count": result.deleted_count}, message="All notifications deleted successfully"
    )


@api_router.delete("/notification")
async def delete_notifications(
    payload: Optional[NotificationIdsRequest] = None,
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if not payload or not payload.notification_ids:
        raise HTTPException(status_code=400, detail="Please provide notification IDs to delete")
    result = await db.notifications.delete_many(
        {**notification_scope(current_user), "id": {"$in": payload.notification_ids}}
    )
    return success_response(
        {"deleted_count": result.deleted_count},
        message=f"{result.deleted_count} notification(s) deleted successfully",
    )


async def load_preparation_class(class_id: str) -> Dict[str, Any]:
    prep_class = await db.classes.find_one({"id": class_id}, {"_id": 0})
    if not prep_class or prep_class.get("type") != "preparation" or not prep_class.get("is_active"):
        raise HTTPException(status_code=400, detail="Invalid or inactive preparation class")
    return prep_class


async def attach_class_info(plans: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    classes_by_id = await load_classes_by_id(ref_id(p.get("class_id")) for p in plans)
    for plan in plans:
        class_id = ref_id(plan.get("class_id"))
        if class_id:
            info = classes_by_id.get(class_id)
            plan["class_info"] = info if info and info.get("is_active", True) else None
    return plans


@api_router.get("/subscription-plans")
async def public_subscription_plans(
    request: Request,
    board: Optional[str] = None,
    student_class: Optional[str] = Query(None, alias="class"),
):
    student = await get_optional_student(request)
    now = utc_now()
    sources = await load_active_sources(student, now) if student else []

    regular_plans: List[Dict[str, Any]] = []
    class_number = None
    if student_class:
        try:
            class_number = int(student_class)
        except ValueError:
            logger.info("plans_invalid_class class=%s", student_class)
    if board and class_number is not None:
        regular_plans = (
            await db.subscription_plans.find(
                {"is_active": True, "type": "regular", "board": board, "classes": class_number, "duration": {"$ne": "demo"}},
                {"_id": 0},
            )
            .sort([("duration", 1), ("price", 1)])
            .to_list(200)
        )
    preparation_plans = (
        await db.subscription_plans.find(
            {"is_active": True, "type": "preparation", "duration": {"$ne": "demo"}},
            {"_id": 0},
        )
        .sort([("duration", 1), ("price", 1)])
        .to_list(200)
    )
    plans = await attach_class_info(regular_plans + preparation_plans)

    for plan in plans:
        conflict = find_subscription_conflict(plan, sources) if sources else None
        plan["is_disabled"] = conflict is not None
        if conflict is None:
            plan["disabled_reason"] = None
        elif plan.get("type") == "preparation":
            label = (plan.get("class_info") or {}).get("name") or "this preparation class"
            plan["disabled_reason"] = f"You already have an active subscription for {label}"
        else:
            plan["disabled_reason"] = "You already have an active subscription for this class"
    return success_response({"subscription_plans": plans}, count=len(plans))


@api_router.get("/subscription-plans/admin")
async def admin_list_plans(
    plan_type: Optional[str] = Query(None, alias="type"),
    board: Optional[str] = None,
    duration: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    student_class: Optional[int] = Query(None, alias="class"),
    current_user: Dict[str, Any] = Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if plan_type:
        query["type"] = plan_type
    if board:
        query["board"] = board
    if duration:
        query["duration"] = duration
    if is_active is not None:
        query["is_active"] = is_active
    if student_class is not None:
        query["classes"] = student_class
        query["type"] = "regular"
    plans = await db.subscription_plans.find(query, {"_id": 0}).sort("created_at", -1).to_list(1000)
    plans = await attach_class_info(plans)
    orphaned = [p["id"] for p in plans if p.get("type") == "preparation" and not p.get("class_info")]
    if orphaned:
        logger.warning("preparation_plans_missing_class count=%s plan_ids=%s", len(orphaned), ",".join(orphaned))
    return success_response({"subscription_plans": plans}, count=len(plans))


@api_router.get("/subscription-plans/admin/preparation-classes")
async def admin_plan_preparation_classes(current_user: Dict[str, Any] = Depends(require_admin)):
    classes = (
        await db.classes.find({"type": "preparation", "is_active": True}, {"_id": 0})
        .sort("name", 1)
        .to_list(200)
    )
    durations: Dict[str, set] = {}
    async for plan in db.subscription_plans.find({"type": "preparation"}, {"_id": 0, "class_id": 1, "duration": 1}):
        durations.setdefault(ref_id(plan.get("class_id")), set()).add(plan.get("duration"))
    available = []
    for doc in classes:
        missing = [d for d in PLAN_DURATIONS if d not in durations.get(doc.get("id"), set())]
        if missing:
            available.append({**doc, "missing_durations": missing})
    return success_response({"classes": available}, count=len(available))


@api_router.get("/subscription-plans/admin/classes/{board}")
async def admin_plan_classes_for_board(board: str, current_user: Dict[str, Any] = Depends(require_admin)):
    """Regular classes of a board together with the plan durations they still lack."""
    if board not in BOARDS:
        raise HTTPException(status_code=400, detail="Invalid board. Must be CBSE or RBSE")
    classes = (
        await db.classes.find({"board": board, "type": "regular", "is_active": True}, {"_id": 0})
        .sort("class", 1)
        .to_list(100)
    )
    durations: Dict[int, set] = {}
    async for plan in db.subscription_plans.find({"board": board, "type": "regular"}, {"_id": 0, "classes": 1, "duration": 1}):
        for klass in plan.get("classes") or []:
            durations.setdefault(klass, set()).add(plan.get("duration"))
    available = []
    for doc in classes:
        missing = [d for d in PLAN_DURATIONS if d not in durations.get(doc.get("class"), set())]
        if missing:
            available.append({**doc, "missing_durations": missing})
    return success_response({"classes": available}, count=len(available))


@api_router.get("/subscription-plans/admin/{plan_id}")
async def admin_get_plan(plan_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
    plan = await db.subscription_plans.find_one({"id": plan_id}, {"_id": 0})
    if not plan:
        raise HTTPException(status_code=404, detail=f"Subscription plan not found with id of {plan_id}")
    await attach_class_info([plan])
    return success_response({"subscription_plan": plan})


@api_router.post("/subscription-plans/admin", status_code=201)
async def admin_create_plan(payload: SubscriptionPlanRequest, current_user: Dict[str, Any] = Depends(require_admin)):
    plan_type = payload.type or "regular"
    if plan_type not in PLAN_TYPES:
        raise HTTPException(status_code=400, detail='Invalid plan type. Must be "regular" or "preparation"')
    duration = payload.duration
    if duration not in PLAN_DURATIONS:
        raise HTTPException(
            status_code=400,
            detail="Invalid duration. Must be monthly, quarterly, half_yearly, yearly, or demo",
        )
    if duration == "demo" and not is_positive_int(payload.validity_days):
        raise HTTPException(
            status_code=400,
            detail="For demo plans, please provide validityDays (must be a positive integer)",
        )
    if not payload.name:
        raise HTTPException(status_code=400, detail="Please provide plan name")
    if duration != "demo" and payload.price is None:
        raise HTTPException(status_code=400, detail="Please provide price")

    price = payload.price if payload.price is not None else 0
    now_iso = utc_now_iso()
    plan: Dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "type": plan_type,
        "name": payload.name.strip(),
        "duration": duration,
        "price": price,
        "original_price": payload.original_price or price,
        "description": payload.description or "",
        "features": payload.features or [],
        "is_active": True if payload.is_active is None else payload.is_active,
        "validity_days": payload.validity_days if duration == "demo" else None,
        "board": None,
        "classes": [],
        "class_id": None,
        "created_by": current_user["id"],
        "created_at": now_iso,
        "updated_at": now_iso,
    }

    if plan_type == "regular":
        if not payload.board or not payload.classes:
            raise HTTPException(status_code=400, detail="Please provide board and classes for regular plan")
        if payload.board not in BOARDS:
            raise HTTPException(status_code=400, detail="Invalid board. Must be CBSE or RBSE")
        classes = valid_plan_classes(payload.classes)
        if not classes:
            raise HTTPException(status_code=400, detail="Please provide valid classes (numbers between 1-12)")
        await ensure_regular_classes_exist(payload.board, classes)
        existing = await db.subscription_plans.find(
            {"board": payload.board, "type": "regular", "duration": duration},
            {"_id": 0, "classes": 1},
        ).to_list(500)
        conflicting = overlapping_classes(classes, existing)
        if conflicting:
            raise HTTPException(
                status_code=400,
                detail=(
                    f"{duration_label(duration)} subscription plan already exists for Class "
                    f"{', '.join(str(c) for c in conflicting)}. Please update the existing plan instead of creating a new one."
                ),
            )
        plan["board"] = payload.board
        plan["classes"] = classes
    else:
        if not payload.class_id:
            raise HTTPException(status_code=400, detail="Please provide classId for preparation plan")
        prep_class = await load_preparation_class(payload.class_id)
        if await db.subscription_plans.find_one(
            {"class_id": payload.class_id, "type": "preparation", "duration": duration}, {"_id": 0, "id": 1}
        ):
            raise HTTPException(
                status_code=400,
                detail=(
                    f"{duration_label(duration)} subscription plan already exists for {prep_class.get('name')}. "
                    "Please update the existing plan instead of creating a new one."
                ),
            )
        plan["class_id"] = payload.class_id

    await db.subscription_plans.insert_one(dict(plan))
    logger.info("plan_created plan_id=%s type=%s duration=%s", plan["id"], plan_type, duration)
    await attach_class_info([plan])
    return success_response({"subscription_plan": plan}, message="Subscription plan created successfully")


@api_router.put("/subscription-plans/admin/{plan_id}")
async def admin_update_plan(
    plan_id: str,
    payload: SubscriptionPlanRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    plan = await db.subscription_plans.find_one({"id": plan_id}, {"_id": 0})
    if not plan:
        raise HTTPException(status_code=404, detail=f"Subscription plan not found with id of {plan_id}")
    fields = payload.model_dump(exclude_unset=True)
    duration = fields.get("duration")
    if duration is not None and duration not in PLAN_DURATIONS:
        raise HTTPException(
            status_code=400,
            detail="Invalid duration. Must be monthly, quarterly, half_yearly, yearly, or demo",
        )
    if duration == "demo" and not is_positive_int(payload.validity_days):
        raise HTTPException(
            status_code=400,
            detail="For demo plans, please provide validityDays (must be a positive integer)",
        )

    plan_type = payload.type or plan.get("type") or "regular"
    if plan_type not in PLAN_TYPES:
        raise HTTPException(status_code=400, detail='Invalid plan type. Must be "regular" or "preparation"')
    updates: Dict[str, Any] = {}
    if plan_type != plan.get("type"):
        updates["type"] = plan_type
        if plan_type == "regular":
            updates["class_id"] = None
        else:
            updates["board"] = None
            updates["classes"] = []

    if plan_type == "regular":
        board = fields.get("board")
        if board is not None and board not in BOARDS:
            raise HTTPException(status_code=400, detail="Invalid board. Must be CBSE or RBSE")
        if board is not None:
            updates["board"] = board
        if payload.classes is not None:
            classes = valid_plan_classes(payload.classes)
            if not classes:
                raise HTTPException(status_code=400, detail="Please provide valid classes (numbers between 1-12)")
            await ensure_regular_classes_exist(board or plan.get("board"), classes)
            updates["classes"] = classes
    elif payload.class_id:
        await load_preparation_class(payload.class_id)
        updates["class_id"] = payload.class_id

    for field in ("name", "duration", "description", "features", "is_active"):
        if field in fields:
            updates[field] = fields[field]
    if "price" in fields:
        updates["price"] = 0 if duration == "demo" and fields["price"] is None else fields["price"]
    if "original_price" in fields:
        updates["original_price"] = fields["original_price"]
    elif duration == "demo" and "price" in fields:
        updates["original_price"] = fields["price"] or 0
    if duration == "demo":
        updates["validity_days"] = payload.validity_days
    elif duration is not None:
        updates["validity_days"] = None

    updates["updated_at"] = utc_now_iso()
    await db.subscription_plans.update_one({"id": plan_id}, {"$set": updates})
    plan.update(updates)
    await attach_class_info([plan])
    logger.info("plan_updated plan_id=%s fields=%s", plan_id, ",".join(sorted(updates)))
    return success_response({"subscription_plan": plan}, message="Subscription plan updated successfully")


@api_router.delete("/subscription-plans/admin/{plan_id}")
async def admin_delete_plan(plan_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
    result = await db.subscription_plans.delete_one({"id": plan_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail=f"Subscription plan not found with id of {plan_id}")
    logger.info("plan_deleted plan_id=%s admin_id=%s", plan_id, current_user["id"])
    return success_response({}, message="Subscription plan deleted successfully")


def enqueue_activation_notifications(payment_id: str) -> None:
    try:
        from tasks.notifications import send_subscription_activated_notifications

        send_subscription_activated_notifications.delay(payment_id)
    except Exception as exc:
        logger.warning("activation_notifications_enqueue_failed payment_id=%s error=%s", payment_id, exc)


async def run_in_transaction(apply_writes):
    """Run the writes in one Mongo transaction, or in order when the deployment has none."""
    global _transactions_supported
    if _transactions_supported:
        try:
            async with await client.start_session() as session:
                return await session.with_transaction(apply_writes)
        except OperationFailure as exc:
            # IllegalOperation: standalone servers reject transactions.
            if exc.code != 20:
                raise
            _transactions_supported = False
            logger.warning("transactions_unsupported error=%s", exc)
    return await apply_writes(None)


async def activate_subscription(
    payment: Dict[str, Any],
    plan: Dict[str, Any],
    student: Dict[str, Any],
    gateway_payment_id: Optional[str] = None,
    source: str = "verify",
) -> Dict[str, Any]:
    """Grant the plan for a paid order.

    The subscription entry, the referral record and the payment transition are
    each guarded by the payment id, so repeating the unit after a partial run
    completes it without duplicating anything. Only the caller that moves the
    payment out of pending enqueues notifications.
    """
    payment_id = payment["id"]
    existing = next(
        (e for e in student.get("active_subscriptions") or [] if e.get("payment_id") == payment_id),
        None,
    )
    if existing and parse_iso(existing.get("start_date")) and parse_iso(existing.get("end_date")):
        start, end = parse_iso(existing["start_date"]), parse_iso(existing["end_date"])
    else:
        start, end = compute_subscription_window(plan, utc_now())
    entry = build_subscription_entry(plan, payment_id, start, end)
    now_iso = utc_now_iso()
    referral_agent_id = student.get("referral_agent_id")

    async def apply_writes(session):
        await db.students.update_one(
            {"id": student["id"], "active_subscriptions.payment_id": {"$ne": payment_id}},
            {
                "$push": {"active_subscriptions": entry},
                "$set": {"subscription": build_legacy_subscription(plan, start, end), "updated_at": now_iso},
            },
            session=session,
        )
        if referral_agent_id:
            try:
                await db.referral_records.update_one(
                    {"payment_id": payment_id},
                    {
                        "$setOnInsert": {
                            "id": str(uuid.uuid4()),
                            "agent_id": referral_agent_id,
                            "student_id": student["id"],
                            "payment_id": payment_id,
                            "subscription_plan_id": plan["id"],
                            "amount": payment.get("amount"),
                            "subscription_date": start.isoformat(),
                            "status": "completed",
                            "created_at": now_iso,
                        }
                    },
                    upsert=True,
                    session=session,
                )
            except DuplicateKeyError:
                if session is not None:
                    raise
        result = await db.payments.update_one(
            {"id": payment_id, "status": "pending"},
            {
                "$set": {
                    "status": "completed",
                    "subscription_start_date": start.isoformat(),
                    "subscription_end_date": end.isoformat(),
                    "gateway_payment_id": gateway_payment_id or payment.get("gateway_payment_id"),
                    "referral_agent_id": referral_agent_id,
                    "completed_via": source,
                    "updated_at": now_iso,
                }
            },
            session=session,
        )
        return result.modified_count == 1

    won = await run_in_transaction(apply_writes)
    if won:
        logger.info(
            "subscription_activated payment_id=%s student_id=%s plan_id=%s source=%s end_date=%s",
            payment_id,
            student["id"],
            plan["id"],
            source,
            entry["end_date"],
        )
        enqueue_activation_notifications(payment_id)
    else:
        logger.info("subscription_activation_noop payment_id=%s source=%s", payment_id, source)
    return {"activated": won, "subscription": entry}


async def mark_payment_closed(payment_id: str, status: str, reason: Optional[str]) -> bool:
    result = await db.payments.update_one(
        {"id": payment_id, "status": "pending"},
        {"$set": {"status": status, "metadata.failure_reason": reason, "updated_at": utc_now_iso()}},
    )
    return result.modified_count == 1


@api_router.post("/payment/create-order")
async def create_payment_order(payload: CreateOrderRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    if current_user["token_role"] != "student":
        raise HTTPException(status_code=403, detail="Only students can create payment orders")
    if not payload.plan_id:
        raise HTTPException(status_code=400, detail="Please provide a subscription plan ID")
    plan = await db.subscription_plans.find_one({"id": payload.plan_id}, {"_id": 0})
    if not plan:
        raise HTTPException(status_code=404, detail="Subscription plan not found")
    if not plan.get("is_active"):
        raise HTTPException(status_code=400, detail="This subscription plan is not available")

    student = current_user
    if plan.get("type", "regular") == "regular":
        if plan.get("board") != student.get("board"):
            raise HTTPException(status_code=400, detail="This plan is not available for your board")
        if student.get("class") not in (plan.get("classes") or []):
            raise HTTPException(status_code=400, detail="This plan is not available for your class")

    now = utc_now()
    sources = await load_active_sources(student, now)
    conflict = find_subscription_conflict(plan, sources)
    if conflict:
        class_name = None
        class_id = ref_id(plan.get("class_id"))
        if plan.get("type") == "preparation" and class_id:
            prep_class = await db.classes.find_one({"id": class_id}, {"_id": 0, "name": 1})
            class_name = (prep_class or {}).get("name")
        logger.info("order_blocked_active_subscription student_id=%s plan_id=%s origin=%s", student["id"], plan["id"], conflict["origin"])
        raise HTTPException(status_code=400, detail=describe_conflict(plan, class_name))

    window_start = (now - timedelta(minutes=PAYMENT_RETRY_WINDOW_MINUTES)).isoformat()
    recent = await db.payments.find_one(
        {
            "student_id": student["id"],
            "subscription_plan_id": plan["id"],
            "status": {"$in": ["pending", "completed"]},
            "created_at": {"$gte": window_start},
        },
        {"_id": 0, "id": 1},
    )
    if recent:
        raise HTTPException(
            status_code=429,
            detail="You already have a pending or recent payment for this plan. Please wait a moment and try again.",
        )
    if not cashfree_service.enabled:
        raise HTTPException(
            status_code=500,
            detail="Cashfree credentials are not configured. Please contact administrator.",
        )

    order_id = cashfree_service.build_order_id(student["id"], int(time.time() * 1000))
    amount = plan.get("price") or 0
    metadata = {
        "plan_name": plan.get("name"),
        "plan_type": plan.get("type"),
        "duration": plan.get("duration"),
        "board": plan.get("board"),
        "classes": plan.get("classes"),
        "class_id": ref_id(plan.get("class_id")),
    }
    order_data = {
        "order_id": order_id,
        "order_amount": amount,
        "order_currency": "INR",
        "order_note": f"Subscription: {plan.get('name')}",
        "customer_details": {
            "customer_id": student["id"],
            "customer_name": student.get("name") or "Student",
            "customer_email": student.get("email") or "",
            "customer_phone": national_phone(student.get("phone")),
        },
        "order_meta": {
            "return_url": f"{FRONTEND_URL}/payment/return?order_id={order_id}",
            "notify_url": f"{BACKEND_URL}/api/payment/webhook",
            "payment_methods": PAYMENT_METHODS,
        },
        "order_tags": {k: str(v) for k, v in metadata.items() if v not in (None, [], "")},
    }
    result = await cashfree_service.create_order(order_data)
    if not result["success"]:
        raise HTTPException(status_code=502, detail=result.get("error") or "Failed to create payment order")
    order = result["order"]

    now_iso = utc_now_iso()
    payment = {
        "id": str(uuid.uuid4()),
        "student_id": student["id"],
        "subscription_plan_id": plan["id"],
        "order_id": order_id,
        "gateway_order_id": order.get("cf_order_id"),
        "amount": amount,
        "currency": "INR",
        "status": "pending",
        "payment_method": "cashfree",
        "metadata": metadata,
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db.payments.insert_one(dict(payment))
    logger.info("payment_order_created order_id=%s student_id=%s plan_id=%s amount=%s", order_id, student["id"], plan["id"], amount)
    return success_response(
        {
            "order_id": order_id,
            "payment_session_id": order.get("payment_session_id"),
            "amount": amount,
            "currency": "INR",
            "client_id": cashfree_service.client_id,
            "environment": "production" if cashfree_service.is_production else "sandbox",
            "payment_id": payment["id"],
        },
        message="Payment order created successfully",
    )


def national_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    return digits[-10:] if len(digits) > 10 else digits


async def apply_signature_policy(payment: Dict[str, Any], payload: VerifyPaymentRequest) -> None:
    if not (payload.reference_id and payload.payment_signature and payload.tx_status):
        return
    amount = payload.order_amount if payload.order_amount is not None else payment.get("amount")
    if cashfree_service.verify_payment_signature(
        payment["order_id"], amount, payload.reference_id, payload.tx_status, payload.payment_signature
    ):
        return
    await record_security_event(
        "payment_signature_mismatch",
        order_id=payment["order_id"],
        student_id=payment["student_id"],
        policy=PAYMENT_SIGNATURE_POLICY,
    )
    if PAYMENT_SIGNATURE_POLICY == "strict":
        raise HTTPException(status_code=400, detail="Payment signature verification failed")


@api_router.post("/payment/verify-payment")
async def verify_payment(payload: VerifyPaymentRequest, current_user: Dict[str, Any] = Depends(get_current_user)):
    if current_user["token_role"] != "student":
        raise HTTPException(status_code=403, detail="Only students can verify payments")
    if not payload.order_id:
        raise HTTPException(status_code=400, detail="Please provide order ID")
    payment = await db.payments.find_one({"order_id": payload.order_id, "student_id": current_user["id"]}, {"_id": 0})
    if not payment:
        raise HTTPException(status_code=404, detail="Payment record not found")

    status = payment.get("status")
    if status == "completed":
        raise HTTPException(status_code=400, detail="Payment already verified")
    if status in ("failed", "cancelled"):
        raise HTTPException(status_code=400, detail=f"Payment is {status} and cannot be verified")

    result = await cashfree_service.get_order(payment["order_id"])
    if not result["success"]:
        raise HTTPException(status_code=502, detail=result.get("error") or "Unable to verify payment with gateway")
    order_status = (result["order"].get("order_status") or "UNKNOWN").upper()
    if order_status != "PAID":
        await mark_payment_closed(payment["id"], "failed", f"Order status: {order_status}")
        logger.info("payment_not_paid order_id=%s status=%s", payment["order_id"], order_status)
        raise HTTPException(status_code=400, detail=f"Payment not completed. Status: {order_status}")

    await apply_signature_policy(payment, payload)

    plan = await db.subscription_plans.find_one({"id": payment["subscription_plan_id"]}, {"_id": 0})
    if not plan:
        raise HTTPException(status_code=404, detail="Subscription plan not found")
    activation = await activate_subscription(payment, plan, current_user, payload.reference_id, source="verify")
    payment = await db.payments.find_one({"id": payment["id"]}, {"_id": 0})
    logger.info("payment_verified order_id=%s student_id=%s activated=%s", payload.order_id, current_user["id"], activation["activated"])
    return success_response(
        {"payment": payment, "subscription": activation["subscription"], "plan": plan},
        message="Payment verified and subscription activated successfully",
    )


async def handle_webhook_success(order_id: str, data: Dict[str, Any]) -> str:
    payment_info = data.get("payment") or {}
    if (payment_info.get("payment_status") or "").upper() != "SUCCESS":
        return "ignored_status"
    payment = await db.payments.find_one({"order_id": order_id}, {"_id": 0})
    if not payment:
        return "payment_not_found"
    if payment.get("status") != "pending":
        return f"already_{payment.get('status')}"
    result = await cashfree_service.get_order(order_id)
    if not result["success"] or (result["order"].get("order_status") or "").upper() != "PAID":
        logger.warning("webhook_order_not_paid order_id=%s", order_id)
        return "order_not_paid"
    plan = await db.subscription_plans.find_one({"id": payment["subscription_plan_id"]}, {"_id": 0})
    student = await db.students.find_one({"id": payment["student_id"]}, {"_id": 0})
    if not plan or not student:
        logger.error("webhook_activation_missing_refs order_id=%s plan=%s student=%s", order_id, bool(plan), bool(student))
        return "missing_refs"
    gateway_payment_id = payment_info.get("cf_payment_id")
    activation = await activate_subscription(
        payment, plan, student, str(gateway_payment_id) if gateway_payment_id else None, source="webhook"
    )
    return "activated" if activation["activated"] else "already_completed"


@api_router.post("/payment/webhook")
async def payment_webhook(request: Request):
    raw_body = await request.body()
    signature = request.headers.get("x-webhook-signature")
    timestamp = request.headers.get("x-webhook-timestamp")
    if not cashfree_service.verify_webhook_signature(timestamp, raw_body, signature):
        await record_security_event("webhook_invalid_signature", ip=extract_request_ip(request))
        return {"success": False, "message": "Invalid signature", "acknowledged": True}

    try:
        body = json.loads(raw_body.decode("utf-8") or "{}")
    except ValueError:
        logger.warning("webhook_invalid_json")
        return {"success": False, "message": "Invalid payload", "acknowledged": True}

    event_type = body.get("type")
    data = body.get("data") or {}
    order_id = (data.get("order") or {}).get("order_id")
    outcome = "ignored"
    try:
        if not order_id:
            outcome = "missing_order_id"
        elif event_type == "PAYMENT_SUCCESS_WEBHOOK":
            outcome = await handle_webhook_success(order_id, data)
        elif event_type == "PAYMENT_FAILURE_WEBHOOK":
            reason = (data.get("payment") or {}).get("payment_message") or "Payment failed"
            payment = await db.payments.find_one({"order_id": order_id}, {"_id": 0, "id": 1})
            outcome = "failed" if payment and await mark_payment_closed(payment["id"], "failed", reason) else "noop"
        elif event_type in ("PAYMENT_USER_DROPPED", "PAYMENT_USER_DROPPED_WEBHOOK"):
            payment = await db.payments.find_one({"order_id": order_id}, {"_id": 0, "id": 1})
            outcome = (
                "cancelled"
                if payment and await mark_payment_closed(payment["id"], "cancelled", "User dropped the payment")
                else "noop"
            )
    except Exception as exc:
        logger.exception("webhook_processing_failed type=%s order_id=%s error=%s", event_type, order_id, exc)
        return {"success": False, "message": "Webhook processing failed", "acknowledged": True}

    logger.info("webhook_processed type=%s order_id=%s outcome=%s", event_type, order_id, outcome)
    return {"success": True, "message": "Webhook processed", "acknowledged": True, "outcome": outcome}


@api_router.get("/payment/history")
async def payment_history(current_user: Dict[str, Any] = Depends(get_current_user)):
    if current_user["token_role"] != "student":
        raise HTTPException(status_code=403, detail="Only students can view payment history")
    payments = await db.payments.find({"student_id": current_user["id"]}, {"_id": 0}).sort("created_at", -1).to_list(500)
    plans = await load_plans_by_id(p.get("subscription_plan_id") for p in payments)
    for payment in payments:
        plan = plans.get(payment.get("subscription_plan_id"))
        payment["plan"] = (
            {k: plan.get(k) for k in ("id", "name", "type", "board", "duration", "price")} if plan else None
        )
    return success_response({"payments": payments}, count=len(payments))


def created_at_range(start_date: Optional[str], end_date: Optional[str]) -> Dict[str, Any]:
    bounds: Dict[str, Any] = {}
    for key, value in (("$gte", start_date), ("$lte", end_date)):
        if not value:
            continue
        parsed = parse_iso(value)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Invalid date: {value}")
        bounds[key] = parsed.isoformat()
    return bounds


@api_router.get("/payment/admin")
async def admin_list_payments(
    status: Optional[str] = None,
    student_id: Optional[str] = Query(None, alias="studentId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    page, limit, skip = parse_pagination(page, limit)
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if student_id:
        query["student_id"] = student_id
    bounds = created_at_range(start_date, end_date)
    if bounds:
        query["created_at"] = bounds
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        matching_students = await db.students.find(
            {"$or": [{"name": pattern}, {"phone": pattern}, {"email": pattern}]}, {"_id": 0, "id": 1}
        ).to_list(1000)
        clauses: List[Dict[str, Any]] = [{"order_id": pattern}, {"gateway_payment_id": pattern}]
        if matching_students:
            clauses.append({"student_id": {"$in": [s["id"] for s in matching_students]}})
        query["$or"] = clauses

    total = await db.payments.count_documents(query)
    payments = await db.payments.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)
    student_ids = list({p["student_id"] for p in payments})
    students = {
        s["id"]: s
        for s in await db.students.find(
            {"id": {"$in": student_ids}}, {"_id": 0, "id": 1, "name": 1, "phone": 1, "email": 1, "class": 1, "board": 1}
        ).to_list(len(student_ids) or 1)
    }
    plans = await attach_class_info(list((await load_plans_by_id(p.get("subscription_plan_id") for p in payments)).values()))
    plans_by_id = {plan["id"]: plan for plan in plans}
    for payment in payments:
        payment["student"] = students.get(payment["student_id"])
        payment["plan"] = plans_by_id.get(payment.get("subscription_plan_id"))
        payment.setdefault("gateway_payment_id", None)

    completed = [p for p in payments if p.get("status") == "completed"]
    return success_response(
        {
            "payments": payments,
            "revenue": {
                "total": sum(p.get("amount") or 0 for p in completed),
                "total_transactions": len(completed),
            },
        },
        count=len(payments),
        total=total,
        page=page,
        pages=(total + limit - 1) // limit,
    )


@api_router.get("/payment/admin/stats")
async def admin_payment_stats(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    current_user: Dict[str, Any] = Depends(require_admin),
):
    match: Dict[str, Any] = {}
    bounds = created_at_range(start_date, end_date)
    if bounds:
        match["created_at"] = bounds
    grouped = await db.payments.aggregate(
        [
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "amount": {"$sum": "$amount"}}},
        ]
    ).to_list(20)
    by_status = {row["_id"]: row for row in grouped}
    stats: Dict[str, Any] = {"total": sum(row["count"] for row in grouped)}
    for status in PAYMENT_STATUSES:
        stats[status] = by_status.get(status, {}).get("count", 0)
    stats["total_revenue"] = by_status.get("completed", {}).get("amount", 0)
    stats["revenue_by_status"] = {
        "completed": by_status.get("completed", {}).get("amount", 0),
        "pending": by_status.get("pending", {}).get("amount", 0),
    }
    return success_response({"stats": stats})


CONTENT_COLLECTIONS = {
    "about": "about_us",
    "privacy": "privacy_policies",
    "terms": "terms_conditions",
}
CONTACT_COLLECTION = "contact_infos"
SEED_KEY = "default"


async def seed_if_empty(collection_name: str, defaults: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Insert the default document once, even when several requests race on an empty collection."""
    collection = db[collection_name]
    if await collection.count_documents({}) > 0:
        return None
    now_iso = utc_now_iso()
    doc = {"id": str(uuid.uuid4()), **defaults, "is_active": True, "created_at": now_iso, "updated_at": now_iso}
    try:
        seeded = await collection.find_one_and_update(
            {"seed_key": SEED_KEY},
            {"$setOnInsert": doc},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        seeded = await collection.find_one({"seed_key": SEED_KEY}, {"_id": 0})
    logger.info("content_seeded collection=%s id=%s", collection_name, (seeded or {}).get("id"))
    return seeded


async def current_document(kind: str) -> Optional[Dict[str, Any]]:
    collection_name = CONTENT_COLLECTIONS[kind]
    query = {"slug": DEFAULT_SLUG, "is_active": True}
    doc = await db[collection_name].find_one(query, {"_id": 0}, sort=[("created_at", -1)])
    if doc:
        return doc
    defaults = {**DOCUMENT_DEFAULTS[kind], "slug": DEFAULT_SLUG, "version": DEFAULT_VERSION}
    seeded = await seed_if_empty(collection_name, defaults)
    if seeded and seeded.get("is_active"):
        return seeded
    return await db[collection_name].find_one(query, {"_id": 0}, sort=[("created_at", -1)])


def register_document_routes(kind: str) -> None:
    collection_name = CONTENT_COLLECTIONS[kind]
    title = DOCUMENT_DEFAULTS[kind]["title"]

    async def get_public_document():
        doc = await current_document(kind)
        if not doc:
            raise HTTPException(status_code=404, detail=f"{title} not found")
        return success_response({kind: doc})

    async def list_documents(current_user: Dict[str, Any] = Depends(require_admin)):
        docs = await db[collection_name].find({}, {"_id": 0}).sort("created_at", -1).to_list(200)
        return success_response({kind: docs}, count=len(docs))

    async def create_document(payload: ContentDocumentRequest, current_user: Dict[str, Any] = Depends(require_admin)):
        if not payload.content or not payload.content.strip():
            raise HTTPException(status_code=400, detail=f"Please provide {title} content")
        now_iso = utc_now_iso()
        doc = {
            "id": str(uuid.uuid4()),
            "title": (payload.title or title).strip(),
            "slug": (payload.slug or DEFAULT_SLUG).strip(),
            "version": (payload.version or DEFAULT_VERSION).strip(),
            "content": payload.content,
            "is_active": True if payload.is_active is None else payload.is_active,
            "updated_by": current_user["id"],
            "created_at": now_iso,
            "updated_at": now_iso,
        }
        await db[collection_name].insert_one(dict(doc))
        logger.info("content_created kind=%s id=%s", kind, doc["id"])
        return success_response({kind: doc}, message=f"{title} created successfully")

    async def update_document(
        doc_id: str,
        payload: ContentDocumentRequest,
        current_user: Dict[str, Any] = Depends(require_admin),
    ):
        updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
        if "content" in updates and not str(updates["content"]).strip():
            raise HTTPException(status_code=400, detail=f"Please provide {title} content")
        updates.update({"updated_by": current_user["id"], "updated_at": utc_now_iso()})
        doc = await db[collection_name].find_one_and_update(
            {"id": doc_id},
            {"$set": updates},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise HTTPException(status_code=404, detail=f"{title} not found")
        return success_response({kind: doc}, message=f"{title} updated successfully")

    async def delete_document(doc_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
        result = await db[collection_name].delete_one({"id": doc_id})
        if result.deleted_count == 0:
            raise HTTPException(status_code=404, detail=f"{title} not found")
        logger.info("content_deleted kind=%s id=%s", kind, doc_id)
        return success_response({}, message=f"{title} deleted successfully")

    api_router.add_api_route(f"/{kind}", get_public_document, methods=["GET"])
    api_router.add_api_route(f"/{kind}/admin", list_documents, methods=["GET"])
    api_router.add_api_route(f"/{kind}", create_document, methods=["POST"], status_code=201)
    api_router.add_api_route(f"/{kind}/{{doc_id}}", update_document, methods=["PUT"])
    api_router.add_api_route(f"/{kind}/{{doc_id}}", delete_document, methods=["DELETE"])


for _kind in CONTENT_COLLECTIONS:
    register_document_routes(_kind)


async def active_contact_items() -> List[Dict[str, Any]]:
    collection = db[CONTACT_COLLECTION]
    items = await collection.find({"is_active": True}, {"_id": 0}).sort("created_at", 1).to_list(50)
    if items:
        return items
    seeded = await seed_if_empty(CONTACT_COLLECTION, CONTACT_DEFAULT)
    if seeded:
        return [seeded]
    return await collection.find({"is_active": True}, {"_id": 0}).sort("created_at", 1).to_list(50)


@api_router.get("/contact")
async def get_contact_info():
    items = await active_contact_items()
    return success_response({"contacts": items}, count=len(items))


@api_router.get("/contact/admin")
async def admin_list_contact_info(current_user: Dict[str, Any] = Depends(require_admin)):
    items = await db[CONTACT_COLLECTION].find({}, {"_id": 0}).sort("created_at", -1).to_list(200)
    return success_response({"contacts": items}, count=len(items))


@api_router.post("/contact", status_code=201)
async def admin_create_contact_info(payload: ContactInfoRequest, current_user: Dict[str, Any] = Depends(require_admin)):
    if not payload.email or not payload.email.strip():
        raise HTTPException(status_code=400, detail="Please provide a support email address")
    now_iso = utc_now_iso()
    fields = payload.model_dump(exclude={"is_active"})
    item = {
        "id": str(uuid.uuid4()),
        **{k: (v or CONTACT_DEFAULT.get(k, "")) for k, v in fields.items()},
        "email": payload.email.strip(),
        "is_active": True if payload.is_active is None else payload.is_active,
        "updated_by": current_user["id"],
        "created_at": now_iso,
        "updated_at": now_iso,
    }
    await db[CONTACT_COLLECTION].insert_one(dict(item))
    logger.info("contact_created id=%s", item["id"])
    return success_response({"contact": item}, message="Contact information created successfully")


@api_router.put("/contact/{item_id}")
async def admin_update_contact_info(
    item_id: str,
    payload: ContactInfoRequest,
    current_user: Dict[str, Any] = Depends(require_admin),
):
    updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "email" in updates and not updates["email"].strip():
        raise HTTPException(status_code=400, detail="Please provide a support email address")
    updates.update({"updated_by": current_user["id"], "updated_at": utc_now_iso()})
    item = await db[CONTACT_COLLECTION].find_one_and_update(
        {"id": item_id},
        {"$set": updates},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not item:
        raise HTTPException(status_code=404, detail="Contact information not found")
    return success_response({"contact": item}, message="Contact information updated successfully")


@api_router.delete("/contact/{item_id}")
async def admin_delete_contact_info(item_id: str, current_user: Dict[str, Any] = Depends(require_admin)):
    result = await db[CONTACT_COLLECTION].delete_one({"id": item_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Contact information not found")
    return success_response({}, message="Contact information deleted successfully")


@api_router.get("/health")
async def health():
    return {"status": "ok", "time": utc_now_iso()}


@api_router.get("/config")
async def runtime_config():
    return success_response(
        {
            "app_name": APP_NAME,
            "payment_gateway_enabled": cashfree_service.enabled,
            "payment_environment": "production" if cashfree_service.is_production else "sandbox",
            "payment_signature_policy": PAYMENT_SIGNATURE_POLICY,
            "otp_enabled": otp_service.enabled,
            "otp_expiry_minutes": OTP_EXPIRY_MINUTES,
            "transactions_enabled": _transactions_supported,
        }
    )


def validate_settings() -> None:
    if PAYMENT_SIGNATURE_POLICY not in ("advisory", "strict"):
        raise RuntimeError("PAYMENT_SIGNATURE_POLICY must be 'advisory' or 'strict'")
    if OTP_STORE_BACKEND not in ("mongo", "memory"):
        raise RuntimeError("OTP_STORE_BACKEND must be 'mongo' or 'memory'")
    try:
        parse_duration(JWT_EXPIRE)
    except ValueError:
        raise RuntimeError(f"JWT_EXPIRE is not a valid duration: {JWT_EXPIRE}")
    if OTP_EXPIRY_MINUTES < 1 or otp_service.max_attempts < 1:
        raise RuntimeError("OTP_EXPIRY_MINUTES and OTP_MAX_ATTEMPTS must be positive")
    if cashfree_service.enabled and cashfree_service.is_production:
        for name, url in (("FRONTEND_URL", FRONTEND_URL), ("BACKEND_URL", BACKEND_URL)):
            if not url.startswith("https://"):
                raise RuntimeError(f"{name} must use https when the payment gateway runs in production mode")
    if JWT_SECRET == JWT_SECRET_FALLBACK:
        logger.warning("jwt_secret_fallback_in_use set JWT_SECRET to override")
    if not cashfree_service.enabled:
        logger.warning("payment_gateway_not_configured")
    if not otp_service.enabled:
        logger.warning("otp_provider_not_configured only test numbers can sign in")


@app.on_event("startup")
async def startup_tasks():
    validate_settings()

    await db.students.create_index("id", unique=True)
    await db.students.create_index("phone", unique=True)
    await db.students.create_index("referral_agent_id")
    await db.students.create_index("active_subscriptions.end_date")
    await db.teachers.create_index("id", unique=True)
    await db.teachers.create_index("phone", unique=True)
    await db.agents.create_index("id", unique=True)
    await db.agents.create_index("phone", unique=True)
    await db.admins.create_index("id", unique=True)
    await db.admins.create_index("email", unique=True)
    await db.classes.create_index("id", unique=True)
    await db.classes.create_index("class_code", unique=True, sparse=True)
    await db.subscription_plans.create_index("id", unique=True)
    await db.subscription_plans.create_index([("type", 1), ("board", 1), ("duration", 1)])
    await db.payments.create_index("id", unique=True)
    await db.payments.create_index("order_id", unique=True)
    await db.payments.create_index([("student_id", 1), ("status", 1)])
    await db.payments.create_index("created_at")
    await db.referral_records.create_index("id", unique=True)
    await db.referral_records.create_index("payment_id", unique=True)
    await db.referral_records.create_index([("agent_id", 1), ("subscription_date", -1)])
    for collection_name in (*CONTENT_COLLECTIONS.values(), CONTACT_COLLECTION):
        await db[collection_name].create_index(
            "seed_key",
            unique=True,
            partialFilterExpression={"seed_key": {"$exists": True}},
        )
        await db[collection_name].create_index([("slug", 1), ("is_active", 1), ("created_at", -1)])
    await db.notifications.create_index([("user_id", 1), ("created_at", -1)])
    await db.security_events.create_index([("event", 1), ("created_at", -1)])
    await otp_store.ensure_indexes()
    logger.info("startup_complete otp_store=%s transactions=%s", OTP_STORE_BACKEND, _transactions_supported)


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
