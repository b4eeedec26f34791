"""
Research job lifecycle.

    pending -> running -> completed | failed
    failed  -> pending   (manual retry)
    failed  -> running   (armed automatic retry only)

Every transition is a locked read-modify-write in its own transaction.
Provider calls happen outside transactions, and follow-up tasks (start,
retry timers, notifications, budget checks) are queued only after commit.
"""
import logging
import os
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from kenkyu.admission import require_admission
from kenkyu.costs import check_budget_alert, estimate_cost
from kenkyu.database import SessionLocal
from kenkyu.errors import InputError, NotFoundError, TransitionError
from kenkyu.events import CompletedEvent, FailedEvent, InProgressEvent, ProviderEvent, WebhookPayloadError, decode_event
from kenkyu.models import ResearchJob, Prompt, Stock, CostLog, ACTIVE_STATUSES, TERMINAL_STATUSES, utcnow
from kenkyu.notifications import dispatch_job_notification
from kenkyu.provider import provider, ProviderError, ProviderNotConfigured, SUPPORTED_PROVIDERS
from kenkyu.retry import MAX_RETRIES, exhausted_message, next_retry_delay
from kenkyu.tasks import tasks

logger = logging.getLogger(__name__)

MAX_RESULT_CHARS = 500_000
TRUNCATION_MARKER = "\n\n[Result truncated due to size limits]"
CANCELLED_ERROR = "Cancelled by user"

STALE_JOB_TIMEOUT_MINUTES = int(os.environ.get("STALE_JOB_TIMEOUT_MINUTES", "60"))
SWEEP_INTERVAL_SECONDS = 300

# Provider-signalled failures retry only while attempts remain under the cap
SIGNAL_RETRY_LIMIT = MAX_RETRIES - 1


def truncate_result(text: str) -> str:
    if len(text) > MAX_RESULT_CHARS:
        return text[:MAX_RESULT_CHARS] + TRUNCATION_MARKER
    return text


def render_prompt(template: str, tickers: list[str], today: Optional[date] = None) -> str:
    """Substitute {{STOCKS}}, {{TICKER}} and {{DATE}} into a prompt snapshot."""
    today = today or utcnow().date()
    text = template.replace("{{STOCKS}}", ", ".join(tickers))
    text = text.replace("{{TICKER}}", tickers[0] if tickers else "")
    return text.replace("{{DATE}}", today.isoformat())


def resolve_tickers(session: Session, stock_ids: Iterable[int]) -> list[str]:
    """Tickers in selection order; ids that no longer exist are skipped."""
    stock_ids = list(stock_ids or [])
    if not stock_ids:
        return []
    by_id = dict(session.query(Stock.id, Stock.ticker).filter(Stock.id.in_(stock_ids)).all())
    return [by_id[i] for i in stock_ids if i in by_id]


def _lock_job(session: Session, job_id: int) -> Optional[ResearchJob]:
    return session.query(ResearchJob).filter(ResearchJob.id == job_id).with_for_update().first()


def _get_job_or_404(session: Session, job_id: int) -> ResearchJob:
    job = _lock_job(session, job_id)
    if not job:
        raise NotFoundError("Research job not found")
    return job


def _duration_ms(started: Optional[datetime], finished: datetime) -> Optional[int]:
    if started is None:
        return None
    return int((finished - started).total_seconds() * 1000)


# ============================================================================
# Creation
# ============================================================================

def insert_pending_job(session: Session, prompt_id: int, stock_ids: Iterable[int],
                       provider_name: str = "openai", schedule_id: Optional[int] = None) -> ResearchJob:
    """Validate, admit and add a pending job to `session`. Caller commits."""
    if provider_name not in SUPPORTED_PROVIDERS:
        raise InputError(f"Unsupported provider: {provider_name}")

    prompt = session.get(Prompt, prompt_id)
    if not prompt:
        raise InputError("Prompt not found")

    stock_ids = list(stock_ids or [])
    if stock_ids:
        known = {row[0] for row in session.query(Stock.id).filter(Stock.id.in_(stock_ids))}
        missing = [i for i in stock_ids if i not in known]
        if missing:
            raise InputError(f"Unknown stock ids: {missing}")

    require_admission(session)

    job = ResearchJob(
        prompt_id=prompt.id,
        prompt_snapshot=prompt.template,
        stock_ids=stock_ids,
        provider=provider_name,
        status="pending",
        attempts=0,
        schedule_id=schedule_id,
    )
    session.add(job)
    session.flush()
    return job


def create_job(prompt_id: int, stock_ids: Iterable[int], provider_name: str = "openai",
               schedule_id: Optional[int] = None) -> ResearchJob:
    """Create a pending job and queue its first start."""
    session = SessionLocal()
    try:
        job = insert_pending_job(session, prompt_id, stock_ids, provider_name, schedule_id)
        session.commit()
    finally:
        session.close()

    tasks.enqueue(start_job, job.id)
    logger.info(f"[JOBS] Created job {job.id} (prompt={prompt_id}, stocks={job.stock_ids})")
    return job


# ============================================================================
# Start / attempts
# ============================================================================

def start_job(job_id: int):
    """Begin an attempt: pending, or failed with an armed retry, becomes running."""
    session = SessionLocal()
    try:
        job = _lock_job(session, job_id)
        if not job:
            logger.warning(f"[JOBS] Start skipped: job {job_id} no longer exists")
            return
        if not (job.status == "pending" or (job.status == "failed" and job.retry_at is not None)):
            logger.info(f"[JOBS] Start skipped: job {job_id} is {job.status}")
            return

        job.attempts += 1
        attempt = job.attempts
        now = utcnow()

        if attempt > MAX_RETRIES:
            job.status = "failed"
            job.error = f"Exceeded maximum retries ({MAX_RETRIES})"
            job.completed_at = now
            job.retry_at = None
            session.commit()
            exceeded = True
        else:
            job.status = "running"
            job.error = None
            job.completed_at = None
            job.external_job_id = None
            job.retry_at = None
            job.started_at = now
            prompt_text = render_prompt(job.prompt_snapshot, resolve_tickers(session, job.stock_ids))
            session.commit()
            exceeded = False
    finally:
        session.close()

    if exceeded:
        logger.warning(f"[JOBS] Job {job_id} exceeded maximum retries ({MAX_RETRIES})")
        tasks.enqueue(dispatch_job_notification, job_id)
        return

    logger.info(f"[JOBS] Starting job {job_id} (attempt {attempt}/{MAX_RETRIES})")
    try:
        external_id = provider.submit(prompt_text)
    except ProviderNotConfigured as e:
        logger.error(f"[JOBS] Job {job_id}: {e}")
        fail_attempt(job_id, str(e), attempt=attempt, limit=0, exhausted=False)
        return
    except ProviderError as e:
        logger.error(f"[JOBS] Job {job_id} submission failed: {e}")
        fail_attempt(job_id, str(e), attempt=attempt, limit=MAX_RETRIES)
        return

    _record_submission(job_id, attempt, external_id)


def _record_submission(job_id: int, attempt: int, external_id: str):
    """
    Store the response id for this attempt, once. A cancelled attempt cancels the remote response.

    The id is write-once per attempt: start_job and retry_job clear it before a
    new attempt, so a job's external_job_id always names its latest response and
    webhooks for earlier attempts no longer match.
    """
    session = SessionLocal()
    try:
        job = _lock_job(session, job_id)
        live = (
            job is not None
            and job.status == "running"
            and job.attempts == attempt
            and job.external_job_id is None
        )
        if live:
            job.external_job_id = external_id
            session.commit()
    finally:
        session.close()

    if live:
        logger.info(f"[JOBS] Job {job_id} running as {external_id}")
    else:
        logger.info(f"[JOBS] Job {job_id} no longer running; cancelling {external_id}")
        provider.cancel(external_id)


def fail_attempt(job_id: int, error: str, attempt: Optional[int] = None,
                 limit: int = SIGNAL_RETRY_LIMIT, exhausted: bool = True) -> str:
    """
    Record a failed attempt of a running job, arming a backoff retry when the
    policy allows one. `attempt`, when given, must still be the job's current
    attempt. Returns "retrying", "failed" or "duplicate".
    """
    session = SessionLocal()
    try:
        job = _lock_job(session, job_id)
        if not job or job.status != "running" or (attempt is not None and job.attempts != attempt):
            return "duplicate"

        now = utcnow()
        delay = next_retry_delay(job.attempts, limit)
        job.status = "failed"
        job.completed_at = now
        if delay is None:
            job.error = exhausted_message(error) if exhausted else error
            job.retry_at = None
        else:
            job.error = error
            job.retry_at = now + timedelta(seconds=delay)
        retry_at = job.retry_at
        attempts = job.attempts
        session.commit()
    finally:
        session.close()

    if retry_at is not None:
        logger.warning(f"[JOBS] Job {job_id} attempt {attempts} failed, retrying in {delay}s: {error}")
        tasks.run_at(retry_at, start_job, job_id)
        return "retrying"

    logger.error(f"[JOBS] Job {job_id} failed permanently: {error}")
    tasks.enqueue(dispatch_job_notification, job_id)
    return "failed"


# ============================================================================
# Finalize
# ============================================================================

def finalize_job(job_id: int, status: str, result: Optional[str] = None,
                 cost_usd: Optional[float] = None, error: Optional[str] = None) -> bool:
    """
    Resolve a running job to completed or failed. Returns whether it applied;
    any other status (already finalized, cancelled, retrying) is a no-op.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Cannot finalize to '{status}'")

    session = SessionLocal()
    try:
        job = _lock_job(session, job_id)
        if not job or job.status != "running":
            return False

        now = utcnow()
        if status == "completed":
            job.result = truncate_result(result or "")
            job.cost_usd = cost_usd
            job.duration_ms = _duration_ms(job.started_at, now)
            if cost_usd is not None:
                session.add(CostLog(job_id=job.id, provider=job.provider, cost_usd=cost_usd, timestamp=now))
        else:
            job.error = error
        job.status = status
        job.completed_at = now
        job.retry_at = None
        session.commit()
    finally:
        session.close()

    logger.info(f"[JOBS] Job {job_id} {status}" + (f" (cost ${cost_usd:.4f})" if cost_usd is not None else ""))
    tasks.enqueue(dispatch_job_notification, job_id)
    if status == "completed" and cost_usd is not None:
        tasks.enqueue(check_budget_alert, cost_usd)
    return True


def apply_event(job_id: int, event: ProviderEvent) -> str:
    """Apply a provider result to a job. Returns the outcome string."""
    if isinstance(event, CompletedEvent):
        cost = estimate_cost(event.usage, provider.model)
        applied = finalize_job(job_id, "completed", result=event.output or "", cost_usd=cost)
        return "completed" if applied else "duplicate"
    if isinstance(event, FailedEvent):
        return fail_attempt(job_id, event.error)
    if isinstance(event, InProgressEvent):
        return "in_progress"
    return "ignored"


# ============================================================================
# User actions
# ============================================================================

def cancel_job(job_id: int) -> ResearchJob:
    session = SessionLocal()
    try:
        job = _get_job_or_404(session, job_id)
        if job.status not in ACTIVE_STATUSES:
            raise TransitionError(f"Only pending or running jobs can be cancelled (job is {job.status})")
        external_id = job.external_job_id
        job.status = "failed"
        job.error = CANCELLED_ERROR
        job.completed_at = utcnow()
        job.retry_at = None
        session.commit()
    finally:
        session.close()

    logger.info(f"[JOBS] Cancelled job {job_id}")
    if external_id:
        tasks.enqueue(provider.cancel, external_id)
    return job


def retry_job(job_id: int) -> ResearchJob:
    session = SessionLocal()
    try:
        job = _get_job_or_404(session, job_id)
        if job.status != "failed":
            raise TransitionError(f"Only failed jobs can be retried (job is {job.status})")
        # An armed automatic retry already holds its slot
        if job.retry_at is None:
            require_admission(session)
        if job.attempts >= MAX_RETRIES:
            job.attempts = 0
        job.status = "pending"
        job.error = None
        job.completed_at = None
        job.retry_at = None
        job.external_job_id = None
        session.commit()
    finally:
        session.close()

    logger.info(f"[JOBS] Retrying job {job_id}")
    tasks.enqueue(start_job, job_id)
    return job


def delete_job(job_id: int):
    session = SessionLocal()
    try:
        job = _get_job_or_404(session, job_id)
        if job.status not in TERMINAL_STATUSES:
            raise TransitionError("Cancel the job before deleting it")
        session.delete(job)
        session.commit()
    finally:
        session.close()
    logger.info(f"[JOBS] Deleted job {job_id}")


def toggle_favorite(job_id: int) -> ResearchJob:
    session = SessionLocal()
    try:
        job = _get_job_or_404(session, job_id)
        job.is_favorited = not job.is_favorited
        session.commit()
    finally:
        session.close()
    return job


# ============================================================================
# Recovery & maintenance
# ============================================================================

def recover_jobs():
    """On startup, re-queue pending jobs and re-arm persisted automatic retries."""
    session = SessionLocal()
    try:
        pending = [row[0] for row in session.query(ResearchJob.id).filter(ResearchJob.status == "pending")]
        retries = session.query(ResearchJob.id, ResearchJob.retry_at).filter(
            ResearchJob.status == "failed",
            ResearchJob.retry_at.isnot(None),
        ).all()
    finally:
        session.close()

    for job_id in pending:
        tasks.enqueue(start_job, job_id)
    for job_id, retry_at in retries:
        tasks.run_at(retry_at, start_job, job_id)

    if pending or retries:
        logger.warning(f"[JOBS] Recovered {len(pending)} pending jobs and {len(retries)} armed retries")


def sweep_stale_jobs() -> dict:
    """
    Poll running jobs older than STALE_JOB_TIMEOUT_MINUTES. Terminal results
    are applied; anything else counts as a failed attempt.
    """
    cutoff = utcnow() - timedelta(minutes=STALE_JOB_TIMEOUT_MINUTES)
    session = SessionLocal()
    try:
        stale = session.query(ResearchJob.id, ResearchJob.attempts, ResearchJob.external_job_id).filter(
            ResearchJob.status == "running",
            ResearchJob.started_at < cutoff,
        ).all()
    finally:
        session.close()

    outcomes = {}
    for job_id, attempt, external_id in stale:
        if not external_id:
            outcomes[job_id] = fail_attempt(job_id, "No provider response recorded before timeout", attempt=attempt)
            continue

        try:
            event = decode_event(provider.retrieve(external_id))
        except (ProviderError, WebhookPayloadError) as e:
            outcomes[job_id] = fail_attempt(job_id, f"Status check failed: {e}", attempt=attempt)
            continue

        if isinstance(event, (CompletedEvent, FailedEvent)):
            outcomes[job_id] = apply_event(job_id, event)
        else:
            provider.cancel(external_id)
            outcomes[job_id] = fail_attempt(
                job_id, f"Timed out after {STALE_JOB_TIMEOUT_MINUTES} minutes", attempt=attempt
            )

    if stale:
        logger.warning(f"[JOBS] Stale sweep: {outcomes}")
    return outcomes
