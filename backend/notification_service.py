import json
import logging
import os
import uuid
from base64 import b64decode
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, messaging

logger = logging.getLogger(__name__)

ANDROID_CHANNEL_ID = "dvision_academy_channel"
ROLE_COLLECTIONS = {
    "student": "students",
    "teacher": "teachers",
    "agent": "agents",
    "admin": "admins",
}

_firebase_initialized = False


def _from_base64(raw: str) -> Dict[str, Any]:
    return json.loads(b64decode(raw).decode("utf-8"))


def _from_inline_json(raw: str) -> Dict[str, Any]:
    # Hosting dashboards tend to wrap the value in quotes and escape newlines.
    return json.loads(raw.strip('"').replace("\\n", "\n"))


# Checked in order; the first variable that is set wins even if it fails to parse.
_CREDENTIAL_SOURCES: Tuple[Tuple[str, str, Callable[[str], Any]], ...] = (
    ("FIREBASE_SERVICE_ACCOUNT_JSON_BASE64", "base64", _from_base64),
    ("FIREBASE_SERVICE_ACCOUNT_JSON", "json", _from_inline_json),
    ("FIREBASE_SERVICE_ACCOUNT_PATH", "file", lambda path: path),
)


def firebase_enabled() -> bool:
    return os.environ.get("FIREBASE_ENABLED", "false").strip().lower() == "true"


def load_service_account() -> Optional[credentials.Base]:
    for env_name, kind, loader in _CREDENTIAL_SOURCES:
        raw = os.environ.get(env_name, "").strip()
        if not raw:
            continue
        if kind == "file" and not os.path.exists(raw):
            logger.warning("firebase_credentials_file_missing path=%s", raw)
            return None
        try:
            return credentials.Certificate(loader(raw))
        except Exception as exc:
            logger.error("firebase_credentials_invalid source=%s error=%s", kind, exc)
            return None
    return None


def initialize_firebase() -> bool:
    global _firebase_initialized
    if _firebase_initialized or firebase_admin._apps:
        _firebase_initialized = True
        return True
    if not firebase_enabled():
        logger.info("firebase_disabled")
        return False

    cred = load_service_account()
    if cred is None:
        logger.warning("firebase_credentials_missing_or_invalid")
        return False
    try:
        firebase_admin.initialize_app(cred)
    except Exception as exc:
        logger.error("firebase_init_failed error=%s", exc)
        return False
    _firebase_initialized = True
    logger.info("firebase_initialized")
    return True


def build_push_message(
    fcm_token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None
) -> messaging.Message:
    """FCM only accepts string values in the data payload."""
    return messaging.Message(
        token=fcm_token,
        notification=messaging.Notification(title=title, body=body),
        data={str(key): str(value) for key, value in (data or {}).items()},
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(channel_id=ANDROID_CHANNEL_ID, sound="default"),
        ),
        apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))),
    )


def send_push_notification(
    fcm_token: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, str]:
    """Returns (sent, reason); reason is "unregistered" when the token should be dropped."""
    if not fcm_token:
        return False, "missing_token"
    if not initialize_firebase():
        return False, "firebase_not_ready"
    try:
        messaging.send(build_push_message(fcm_token, title, body, data))
    except messaging.UnregisteredError:
        logger.warning("push_send_unregistered_token")
        return False, "unregistered"
    except Exception as exc:
        logger.error("push_send_failed error=%s", exc)
        return False, "error"
    return True, "sent"


async def record_notification(
    db,
    role: str,
    account_id: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]],
    notification_type: str,
) -> Dict[str, Any]:
    doc = {
        "id": str(uuid.uuid4()),
        "user_id": account_id,
        "user_type": role,
        "title": title,
        "body": body,
        "data": data or {},
        "type": notification_type,
        "is_read": False,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    await db.notifications.insert_one(dict(doc))
    return doc


async def notify_account(
    db,
    role: str,
    account_id: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    notification_type: str = "info",
) -> bool:
    """Store an in-app notification for the account and push it over FCM."""
    collection_name = ROLE_COLLECTIONS.get(role)
    if not collection_name:
        raise ValueError(f"Unknown notification role: {role}")
    record = await record_notification(db, role, account_id, title, body, data, notification_type)

    collection = db[collection_name]
    account = await collection.find_one({"id": account_id}, {"_id": 0, "fcm_token": 1})
    token = ((account or {}).get("fcm_token") or "").strip()
    if not token:
        logger.info("push_skip_no_token role=%s account_id=%s", role, account_id)
        return False

    sent, reason = send_push_notification(token, title=title, body=body, data=data)
    if reason == "unregistered":
        await collection.update_one(
            {"id": account_id, "fcm_token": token},
            {"$unset": {"fcm_token": ""}, "$set": {"fcm_token_invalidated_at": record["created_at"]}},
        )
    if not sent:
        logger.info("push_not_sent role=%s account_id=%s reason=%s", role, account_id, reason)
    return sent
