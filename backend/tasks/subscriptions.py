import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from task_queue import celery_app
from tasks._async_runner import run_async
from notification_service import notify_account
from server import db

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _day_window(day: datetime) -> Tuple[str, str]:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return start.isoformat(), (start + timedelta(days=1)).isoformat()


def describe_plan(plan: Dict[str, Any], class_name: Optional[str] = None) -> Tuple[str, str]:
    if (plan.get("type") or "regular") == "regular":
        classes = ", ".join(str(c) for c in plan.get("classes") or [])
        return "class-based", f"{plan.get('board')} Class {classes}"
    return "preparation", class_name or "Preparation Class"


def build_expiry_message(
    plan: Dict[str, Any],
    end_date: datetime,
    now: datetime,
    expired: bool,
    class_name: Optional[str] = None,
) -> Tuple[str, str]:
    plan_type, plan_name = describe_plan(plan, class_name)
    if expired:
        return (
            "Subscription Expired",
            f"Your {plan_type} subscription for {plan_name} has expired. Purchase a new plan to continue access.",
        )
    days = max(1, math.ceil((end_date - now).total_seconds() / 86400))
    return (
        "Subscription Expiring Soon",
        f"Your {plan_type} subscription for {plan_name} is expiring in {days} day{'' if days == 1 else 's'}. "
        "Renew now to continue access.",
    )


@celery_app.task(name="tasks.subscriptions.notify_expiring_subscriptions")
def notify_expiring_subscriptions() -> Dict[str, int]:
    return run_async(_notify_subscriptions(expired=False))


@celery_app.task(name="tasks.subscriptions.notify_expired_subscriptions")
def notify_expired_subscriptions() -> Dict[str, int]:
    return run_async(_notify_subscriptions(expired=True))


async def _notify_subscriptions(expired: bool, now: Optional[datetime] = None) -> Dict[str, int]:
    current = now or _utc_now()
    window_start, window_end = _day_window(current if expired else current + timedelta(days=1))
    payments = await db.payments.find(
        {"status": "completed", "subscription_end_date": {"$gte": window_start, "$lt": window_end}},
        {"_id": 0},
    ).to_list(5000)

    notified = 0
    for payment in payments:
        student = await db.students.find_one({"id": payment["student_id"]}, {"_id": 0, "id": 1})
        plan = await db.subscription_plans.find_one({"id": payment.get("subscription_plan_id")}, {"_id": 0})
        if not student or not plan:
            continue
        class_name = None
        if plan.get("class_id"):
            prep_class = await db.classes.find_one({"id": plan["class_id"]}, {"_id": 0, "name": 1})
            class_name = (prep_class or {}).get("name")

        end_date = datetime.fromisoformat(payment["subscription_end_date"])
        title, body = build_expiry_message(plan, end_date, current, expired, class_name)
        notification_type = "subscription_expired" if expired else "subscription_expiry"
        data = {
            "type": notification_type,
            "payment_id": payment["id"],
            "plan_id": plan["id"],
            "end_date": payment["subscription_end_date"],
        }
        try:
            await notify_account(db, "student", student["id"], title, body, data, notification_type=notification_type)
            notified += 1
        except Exception as exc:
            logger.error("expiry_notify_failed payment_id=%s error=%s", payment["id"], exc)

    logger.info(
        "expiry_notifications_done kind=%s window_start=%s found=%s notified=%s",
        "expired" if expired else "expiring",
        window_start,
        len(payments),
        notified,
    )
    return {"found": len(payments), "notified": notified}
