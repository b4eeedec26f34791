"""
Cost estimation and accounting.

`estimate_cost` is exact (no rounding); aggregates round to cents for display.
Months are UTC calendar months.
"""
import logging
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from kenkyu.database import SessionLocal
from kenkyu.models import CostLog, utcnow
from kenkyu.notifications import send_budget_alert
from kenkyu.settings import BUDGET_THRESHOLD_KEY, BUDGET_ALERT_PREFIX, get_float, get_bool, set_setting

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "o3-deep-research"

# USD per million tokens: (input, output)
PRICING = {
    "o3-deep-research": (10.0, 40.0),
    "o4-mini-deep-research": (2.0, 8.0),
}

MAX_HISTORY_MONTHS = 24


class Usage(BaseModel):
    """Token usage reported by the provider."""
    model_config = {"populate_by_name": True}

    input_tokens: int = Field(default=0, ge=0, alias="inputTokens")
    output_tokens: int = Field(default=0, ge=0, alias="outputTokens")


def estimate_cost(usage: Union[Usage, dict, None], model: str = DEFAULT_MODEL) -> Optional[float]:
    """USD cost of a response, or None when usage is unknown."""
    if usage is None:
        return None
    if isinstance(usage, dict):
        usage = Usage.model_validate(usage)
    input_price, output_price = PRICING.get(model, PRICING[DEFAULT_MODEL])
    return usage.input_tokens * input_price / 1_000_000 + usage.output_tokens * output_price / 1_000_000


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_bounds(at: Optional[datetime] = None):
    """[start, end) of the UTC month containing `at`, as naive UTC datetimes."""
    at = at or utcnow()
    start = _month_start(at.year, at.month)
    end = _month_start(*_shift_month(at.year, at.month, 1))
    return start, end


def monthly_cost(session: Session, at: Optional[datetime] = None) -> dict:
    start, end = month_bounds(at)
    total, count = session.query(
        func.coalesce(func.sum(CostLog.cost_usd), 0.0),
        func.count(CostLog.id),
    ).filter(CostLog.timestamp >= start, CostLog.timestamp < end).one()
    return {
        "total_cost": round(float(total), 2),
        "job_count": count,
        "month_start": start.isoformat(),
        "month_end": end.isoformat(),
    }


def cost_by_provider(session: Session, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list[dict]:
    q = session.query(
        CostLog.provider,
        func.sum(CostLog.cost_usd),
        func.count(CostLog.id),
    )
    if start is not None:
        q = q.filter(CostLog.timestamp >= start)
    if end is not None:
        q = q.filter(CostLog.timestamp < end)
    rows = q.group_by(CostLog.provider).order_by(CostLog.provider).all()
    return [
        {"provider": provider, "total_cost": round(float(total or 0), 2), "job_count": count}
        for provider, total, count in rows
    ]


def cost_history(session: Session, months: int = 6, now: Optional[datetime] = None) -> list[dict]:
    """Totals for the last `months` UTC months (current month included), oldest first."""
    months = max(1, min(months, MAX_HISTORY_MONTHS))
    now = now or utcnow()

    buckets = {}
    for offset in range(months - 1, -1, -1):
        year, month = _shift_month(now.year, now.month, -offset)
        buckets[(year, month)] = {"month": f"{year:04d}-{month:02d}", "total_cost": 0.0, "job_count": 0}

    first_year, first_month = next(iter(buckets))
    logs = session.query(CostLog).filter(
        CostLog.timestamp >= _month_start(first_year, first_month)
    ).all()
    for log in logs:
        entry = buckets.get((log.timestamp.year, log.timestamp.month))
        if entry:
            entry["total_cost"] += log.cost_usd
            entry["job_count"] += 1

    for entry in buckets.values():
        entry["total_cost"] = round(entry["total_cost"], 2)
    return list(buckets.values())


def check_budget_alert(current_cost: float) -> bool:
    """
    Alert once per month when the month's spend reaches the configured
    `budget_threshold`. Returns whether an alert was dispatched.
    """
    session = SessionLocal()
    try:
        threshold = get_float(session, BUDGET_THRESHOLD_KEY)
        if threshold is None or threshold <= 0:
            return False

        monthly = monthly_cost(session)
        if monthly["total_cost"] < threshold:
            return False

        marker = BUDGET_ALERT_PREFIX + monthly["month_start"][:7]
        if get_bool(session, marker):
            return False

        set_setting(session, marker, "true")
        session.commit()
    finally:
        session.close()

    logger.warning(
        f"[COSTS] Budget threshold reached: ${monthly['total_cost']:.2f} / ${threshold:.2f}"
    )
    send_budget_alert(monthly, threshold, current_cost)
    return True
