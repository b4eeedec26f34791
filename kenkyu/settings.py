"""
Key/value settings stored in the `settings` table.
Read on every decision; nothing here is cached.
"""
from typing import Optional

from sqlalchemy.orm import Session

from kenkyu.models import Setting

GLOBAL_PAUSE_KEY = "global_schedules_paused"
ADMISSION_LOCK_KEY = "admission_lock"
BUDGET_THRESHOLD_KEY = "budget_threshold"
BUDGET_ALERT_PREFIX = "budget_alert_sent_"

# Keys the settings endpoint may read and write
PUBLIC_KEYS = (
    BUDGET_THRESHOLD_KEY,
    "notification_telegram_enabled",
    "notification_email_enabled",
    "telegram_bot_token",
    "telegram_chat_id",
    "resend_api_key",
    "notification_email",
)

SECRET_KEYS = ("telegram_bot_token", "resend_api_key")

TRUE_VALUES = ("1", "true", "yes", "on")


def get_setting(session: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = session.get(Setting, key)
    return row.value if row else default


def set_setting(session: Session, key: str, value) -> None:
    """Upsert a setting. Caller commits."""
    value = "" if value is None else str(value)
    row = session.get(Setting, key)
    if row:
        row.value = value
    else:
        session.add(Setting(key=key, value=value))


def get_bool(session: Session, key: str) -> bool:
    return (get_setting(session, key) or "").strip().lower() in TRUE_VALUES


def get_float(session: Session, key: str) -> Optional[float]:
    raw = get_setting(session, key)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def is_globally_paused(session: Session) -> bool:
    return get_bool(session, GLOBAL_PAUSE_KEY)


def ensure_lock_rows(session: Session) -> None:
    """Create the sentinel rows that serialise admission decisions."""
    if session.get(Setting, ADMISSION_LOCK_KEY) is None:
        session.add(Setting(key=ADMISSION_LOCK_KEY, value="0"))


def public_settings(session: Session) -> dict:
    """Settings exposed over the API, secrets masked."""
    result = {}
    for key in PUBLIC_KEYS:
        value = get_setting(session, key)
        if key in SECRET_KEYS and value:
            value = "****" + value[-4:]
        result[key] = value
    return result
