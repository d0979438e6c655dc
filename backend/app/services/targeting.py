"""Ad-set payload rules: targeting, promoted object, goals, schedule, and budget."""

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from app.services.currency import get_minimum_budget

# With Advantage+ audience Meta rejects age_min above 25 and age_max below 65
ADVANTAGE_MAX_AGE_MIN = 25
ADVANTAGE_MIN_AGE_MAX = 65

GOAL_TRAFFIC = "traffic"
GOAL_LEADS = "leads"
GOAL_ENGAGEMENT = "engagement"

PAYMENT_METHOD_SUBCODE = 1359188


def map_gender(genders: list[str] | None) -> list[int] | None:
    """Meta gender codes: 0 all, 1 male, 2 female. Only the first entry counts."""
    if not genders:
        return None
    gender = str(genders[0]).lower()
    if gender == "male":
        return [1]
    if gender == "female":
        return [2]
    return [0]


def _interests(targeting: dict) -> list[dict]:
    flexible_spec = targeting.get("FlexibleSpec") or []
    if not flexible_spec:
        return []
    interests = (flexible_spec[0] or {}).get("interests") or []
    return [{"id": i.get("id"), "name": i.get("name")} for i in interests]


def build_targeting(ad_set: dict, advantage_audience: bool = True) -> dict:
    """Build the Graph API ``targeting`` object for one ad-set proposal."""
    age_range = ad_set.get("age_range") or {}
    age_min = age_range.get("min") or 18
    age_max = age_range.get("max") or 65
    if advantage_audience:
        age_min = min(age_min, ADVANTAGE_MAX_AGE_MIN)
        age_max = max(age_max, ADVANTAGE_MIN_AGE_MAX)

    source = ad_set.get("targeting") or {}
    countries = (source.get("GeoLocations") or {}).get("Countries") or ["US"]

    targeting = {
        "age_min": age_min,
        "age_max": age_max,
        "geo_locations": {"countries": countries},
    }

    genders = map_gender(ad_set.get("genders"))
    if genders is not None:
        targeting["genders"] = genders

    interests = _interests(source)
    if interests:
        targeting["flexible_spec"] = [{"interests": interests}]

    if advantage_audience:
        targeting["targeting_automation"] = {"advantage_audience": 1}
    return targeting


def resolve_goal(campaign_goal: str | None, objective: str | None) -> str | None:
    """Pick the goal that drives promoted object and optimization.

    Engagement wins, then traffic, then leads; the default goal name is
    ``Traffic`` when the project carries none.
    """
    goal = campaign_goal or "Traffic"
    if goal == "Engagement" or objective == "OUTCOME_ENGAGEMENT":
        return GOAL_ENGAGEMENT
    if goal == "Traffic" or objective == "OUTCOME_TRAFFIC":
        return GOAL_TRAFFIC
    if goal == "Leads" or objective == "OUTCOME_LEADS":
        return GOAL_LEADS
    return None


def build_promoted_object(goal: str | None, pixel_id: str | None, page_id: str | None) -> dict | None:
    if goal == GOAL_ENGAGEMENT:
        return {"page_id": page_id} if page_id else None
    if not pixel_id:
        return None
    if goal == GOAL_TRAFFIC:
        return {"pixel_id": pixel_id, "custom_event_type": "PAGE_VIEW"}
    if goal == GOAL_LEADS:
        promoted = {"pixel_id": pixel_id, "custom_event_type": "LEAD"}
        if page_id:
            promoted["object_id"] = page_id
        return promoted
    return None


def optimization_goal(goal: str | None) -> str:
    return "POST_ENGAGEMENT" if goal == GOAL_ENGAGEMENT else "LINK_CLICKS"


def normalize_end_time(end_date: str | None) -> str | None:
    """Normalize a project end date to a UTC ISO-8601 timestamp.

    Date-only values mean the end of that day in UTC.
    """
    if not end_date:
        return None
    if "T" in end_date:
        parsed = datetime.fromisoformat(end_date.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        parsed = parsed.astimezone(timezone.utc)
    else:
        parsed = datetime.fromisoformat(end_date).replace(
            hour=23, minute=59, second=59, tzinfo=timezone.utc
        )
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.") + f"{parsed.microsecond // 1000:03d}Z"


def to_minor_units(amount: float) -> int:
    """Whole currency units to cents/paise, rounding halves up."""
    return int(math.floor(float(amount) * 100 + 0.5))


@dataclass
class BudgetPlan:
    usd: float
    converted: float
    minor_units: int
    currency: str
    clamped: bool = False


def normalize_budget(usd: float, rate: float, currency: str) -> BudgetPlan:
    """Convert a USD daily budget into the account currency's minor units."""
    converted = float(usd) * rate
    minimum = get_minimum_budget(currency)
    clamped = converted < minimum
    if clamped:
        converted = minimum
    return BudgetPlan(
        usd=float(usd),
        converted=converted,
        minor_units=to_minor_units(converted),
        currency=currency,
        clamped=clamped,
    )


def is_payment_method_error(error: dict | None) -> bool:
    error = error or {}
    return (
        error.get("error_subcode") == PAYMENT_METHOD_SUBCODE
        or error.get("error_user_title") == "No payment method"
    )
