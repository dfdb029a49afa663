import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

PLAN_TYPES = ("regular", "preparation")
PLAN_DURATIONS = ("monthly", "quarterly", "half_yearly", "yearly", "demo")
BOARDS = ("CBSE", "RBSE")
DURATION_MONTHS = {"monthly": 1, "quarterly": 3, "half_yearly": 6, "yearly": 12}
DEFAULT_DEMO_DAYS = 7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_subscription_window(plan: Dict[str, Any], start: datetime) -> Tuple[datetime, datetime]:
    duration = plan.get("duration")
    if duration in DURATION_MONTHS:
        return start, add_months(start, DURATION_MONTHS[duration])
    if duration == "demo":
        days = plan.get("validity_days")
        if not isinstance(days, int) or isinstance(days, bool) or days < 1:
            days = DEFAULT_DEMO_DAYS
        return start, start + timedelta(days=days)
    logger.warning("plan_unknown_duration plan_id=%s duration=%s", plan.get("id"), duration)
    return start, add_months(start, 1)


def ref_id(value: Any) -> Optional[str]:
    """Resolve a reference that may be stored raw or as an embedded document."""
    if value is None:
        return None
    if isinstance(value, dict):
        inner = value.get("id") or value.get("_id")
        return str(inner) if inner else None
    text = str(value).strip()
    return text or None


def build_subscription_entry(
    plan: Dict[str, Any],
    payment_id: str,
    start: datetime,
    end: datetime,
) -> Dict[str, Any]:
    plan_type = plan.get("type") or "regular"
    entry: Dict[str, Any] = {
        "plan_id": plan["id"],
        "payment_id": payment_id,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "type": plan_type,
    }
    if plan_type == "regular":
        classes = plan.get("classes") or []
        entry["board"] = plan.get("board")
        entry["class"] = classes[0] if classes else None
    elif plan_type == "preparation":
        entry["class_id"] = ref_id(plan.get("class_id"))
    return entry


def build_legacy_subscription(plan: Dict[str, Any], start: datetime, end: datetime) -> Dict[str, Any]:
    return {
        "status": "active",
        "plan_id": plan["id"],
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
    }


def is_window_open(end_value: Any, now: datetime) -> bool:
    end = parse_iso(end_value)
    return end is not None and end >= now


def _source_from_plan(plan: Dict[str, Any], end_value: Any, origin: str) -> Dict[str, Any]:
    return {
        "type": plan.get("type") or "regular",
        "board": plan.get("board"),
        "classes": list(plan.get("classes") or []),
        "class_id": ref_id(plan.get("class_id")),
        "end_date": end_value,
        "origin": origin,
    }


def collect_active_sources(
    student: Dict[str, Any],
    active_payments: Iterable[Dict[str, Any]],
    plans_by_id: Dict[str, Dict[str, Any]],
    now: datetime,
) -> List[Dict[str, Any]]:
    """Flatten every record that can prove an active subscription.

    The embedded array, completed payments and the legacy single subscription
    can diverge, so all three are consulted. Payment and legacy records are
    resolved through their plan.
    """
    sources: List[Dict[str, Any]] = []
    for entry in student.get("active_subscriptions") or []:
        if not is_window_open(entry.get("end_date"), now):
            continue
        klass = entry.get("class")
        sources.append(
            {
                "type": entry.get("type") or "regular",
                "board": entry.get("board"),
                "classes": [klass] if klass is not None else [],
                "class_id": ref_id(entry.get("class_id")),
                "end_date": entry.get("end_date"),
                "origin": "active_subscriptions",
            }
        )

    for payment in active_payments:
        if not is_window_open(payment.get("subscription_end_date"), now):
            continue
        plan = plans_by_id.get(payment.get("subscription_plan_id"))
        if plan:
            sources.append(_source_from_plan(plan, payment.get("subscription_end_date"), "payment"))

    legacy = student.get("subscription") or {}
    if legacy.get("status") == "active" and is_window_open(legacy.get("end_date"), now):
        plan = plans_by_id.get(legacy.get("plan_id"))
        if plan:
            sources.append(_source_from_plan(plan, legacy.get("end_date"), "legacy"))
    return sources


def find_subscription_conflict(
    plan: Dict[str, Any],
    sources: Iterable[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    plan_type = plan.get("type") or "regular"
    if plan_type == "regular":
        plan_classes = set(plan.get("classes") or [])
        for source in sources:
            if source["type"] != "regular" or source.get("board") != plan.get("board"):
                continue
            if plan_classes.intersection(source.get("classes") or []):
                return source
        return None

    if plan_type == "preparation":
        class_id = ref_id(plan.get("class_id"))
        if not class_id:
            logger.warning("conflict_check_missing_class_id plan_id=%s", plan.get("id"))
            return None
        for source in sources:
            if source["type"] == "preparation" and source.get("class_id") == class_id:
                return source
    return None


def describe_conflict(plan: Dict[str, Any], class_name: Optional[str] = None) -> str:
    if (plan.get("type") or "regular") == "regular":
        classes = ", ".join(str(c) for c in plan.get("classes") or [])
        return (
            f"You already have an active subscription for {plan.get('board')} Class {classes}. "
            "Please wait until your current subscription expires before subscribing to another "
            "plan for the same class."
        )
    label = class_name or "this preparation class"
    return (
        f"You already have an active subscription for {label}. Please wait until your current "
        "subscription expires before subscribing to another plan for the same preparation class."
    )


def overlapping_classes(requested: Iterable[int], existing_plans: Iterable[Dict[str, Any]]) -> List[int]:
    wanted = set(requested)
    found: List[int] = []
    for existing in existing_plans:
        for klass in existing.get("classes") or []:
            if klass in wanted and klass not in found:
                found.append(klass)
    return sorted(found)


def duration_label(duration: str) -> str:
    return duration[:1].upper() + duration[1:]
