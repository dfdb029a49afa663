import logging
from typing import Any, Dict, List

from task_queue import celery_app
from tasks._async_runner import run_async
from notification_service import notify_account
from server import db

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.notifications.send_subscription_activated_notifications")
def send_subscription_activated_notifications(payment_id: str) -> Dict[str, Any]:
    return run_async(_notify_subscription_activated(payment_id))


def format_rupees(amount: Any) -> str:
    if isinstance(amount, float) and amount.is_integer():
        amount = int(amount)
    return f"₹{amount}"


def build_activation_messages(
    student: Dict[str, Any],
    plan: Dict[str, Any],
    payment: Dict[str, Any],
) -> Dict[str, Dict[str, str]]:
    plan_name = plan.get("name") or "your plan"
    student_name = student.get("name") or "A student"
    amount = format_rupees(payment.get("amount") or 0)
    return {
        "student": {
            "title": "Subscription Activated!",
            "body": f"Your subscription for {plan_name} has been activated successfully.",
        },
        "agent": {
            "title": "Student Subscribed!",
            "body": f"{student_name} has subscribed to {plan_name} ({amount})",
        },
        "admin": {
            "title": "New Subscription",
            "body": f"{student_name} purchased {plan_name} for {amount}",
        },
    }


async def _notify_subscription_activated(payment_id: str) -> Dict[str, Any]:
    payment = await db.payments.find_one({"id": payment_id}, {"_id": 0})
    if not payment or payment.get("status") != "completed":
        logger.warning("activation_notify_skipped payment_id=%s reason=not_completed", payment_id)
        return {"sent": 0}
    student = await db.students.find_one({"id": payment["student_id"]}, {"_id": 0})
    plan = await db.subscription_plans.find_one({"id": payment["subscription_plan_id"]}, {"_id": 0})
    if not student or not plan:
        logger.warning("activation_notify_skipped payment_id=%s reason=missing_refs", payment_id)
        return {"sent": 0}

    messages = build_activation_messages(student, plan, payment)
    data = {"type": "subscription_activated", "payment_id": payment_id, "plan_id": plan["id"]}
    targets: List[tuple] = [("student", student["id"])]

    agent_id = payment.get("referral_agent_id") or student.get("referral_agent_id")
    if agent_id:
        agent = await db.agents.find_one({"id": agent_id, "is_active": {"$ne": False}}, {"_id": 0, "id": 1})
        if agent:
            targets.append(("agent", agent["id"]))
    async for admin in db.admins.find({"is_active": {"$ne": False}}, {"_id": 0, "id": 1}):
        targets.append(("admin", admin["id"]))

    sent = 0
    for role, account_id in targets:
        message = messages[role]
        try:
            if await notify_account(
                db, role, account_id, message["title"], message["body"], data, notification_type="subscription"
            ):
                sent += 1
        except Exception as exc:
            logger.error(
                "activation_notify_failed payment_id=%s role=%s account_id=%s error=%s",
                payment_id,
                role,
                account_id,
                exc,
            )
    logger.info("activation_notified payment_id=%s targets=%s pushed=%s", payment_id, len(targets), sent)
    return {"sent": sent, "targets": len(targets)}
