"""
Outbound notifications - Telegram and email (Resend).
Channels and credentials come from the settings table. Delivery failures are
logged and never propagate.
"""
import logging
from typing import Optional

import requests

from kenkyu.database import SessionLocal
from kenkyu.models import ResearchJob, Stock
from kenkyu.settings import get_bool, get_setting

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
RESEND_API = "https://api.resend.com/emails"
EMAIL_FROM = "Kenkyu <notifications@kenkyu.local>"
SUMMARY_CHARS = 300


def send_telegram(bot_token: str, chat_id: str, text: str) -> bool:
    url = f"{TELEGRAM_API}/bot{bot_token}/sendMessage"
    try:
        resp = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=15)
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.error(f"[NOTIFY] Telegram delivery failed: {e}")
        return False


def send_email(api_key: str, to_email: str, subject: str, text: str) -> bool:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    payload = {"from": EMAIL_FROM, "to": [to_email], "subject": subject, "text": text}
    try:
        resp = requests.post(RESEND_API, json=payload, headers=headers, timeout=15)
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.error(f"[NOTIFY] Email delivery failed: {e}")
        return False


def notify(subject: str, text: str) -> dict:
    """Send to every enabled and configured channel. Returns {channel: sent}."""
    session = SessionLocal()
    try:
        telegram = None
        if get_bool(session, "notification_telegram_enabled"):
            telegram = (get_setting(session, "telegram_bot_token"), get_setting(session, "telegram_chat_id"))
        email = None
        if get_bool(session, "notification_email_enabled"):
            email = (get_setting(session, "resend_api_key"), get_setting(session, "notification_email"))
    finally:
        session.close()

    sent = {}
    if telegram:
        if all(telegram):
            sent["telegram"] = send_telegram(*telegram, f"{subject}\n\n{text}")
        else:
            logger.info("[NOTIFY] Telegram not configured, skipping")
    if email:
        if all(email):
            sent["email"] = send_email(email[0], email[1], subject, text)
        else:
            logger.info("[NOTIFY] Email not configured, skipping")
    return sent


def format_job_message(job: ResearchJob, tickers: list[str]):
    """Plain-text (subject, body) for a finished job."""
    label = ", ".join(tickers) if tickers else "Discovery research"
    subject = f"Research {job.status}: {label}"

    lines = []
    if job.cost_usd is not None:
        lines.append(f"Cost: ${job.cost_usd:.2f}")
    if job.duration_ms:
        lines.append(f"Duration: {round(job.duration_ms / 1000)}s")
    if job.status == "completed" and job.result:
        summary = job.result[:SUMMARY_CHARS]
        if len(job.result) > SUMMARY_CHARS:
            summary += "..."
        lines.append("")
        lines.append(summary)
    elif job.error:
        lines.append(f"Error: {job.error}")
    return subject, "\n".join(lines)


def dispatch_job_notification(job_id: int) -> Optional[dict]:
    """Notify about a job that reached a terminal status."""
    session = SessionLocal()
    try:
        job = session.get(ResearchJob, job_id)
        if not job or job.status not in ("completed", "failed"):
            return None
        stocks = session.query(Stock).filter(Stock.id.in_(job.stock_ids or [])).all()
        by_id = {s.id: s.ticker for s in stocks}
        tickers = [by_id[i] for i in (job.stock_ids or []) if i in by_id]
        subject, text = format_job_message(job, tickers)
    finally:
        session.close()

    return notify(subject, text)


def send_budget_alert(monthly: dict, threshold: float, current_cost: float) -> dict:
    percentage = round(monthly["total_cost"] / threshold * 100)
    text = "\n".join([
        f"Monthly spend: ${monthly['total_cost']:.2f} / ${threshold:.2f} ({percentage}%)",
        f"Jobs this month: {monthly['job_count']}",
        f"Latest job cost: ${current_cost:.2f}",
    ])
    return notify("Budget alert", text)
