"""
Recurring research schedules.

A schedule owns at most one armed timer: `next_run_at` and `next_task_id`
are written together in the schedule's transaction, and the matching task is
created (or cancelled) only after that transaction commits. A timer that
fires with a handle the row no longer holds exits without side effects.
"""
import logging
import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from kenkyu.cron import next_run_at, parse_cron, validate_timezone
from kenkyu.database import SessionLocal
from kenkyu.errors import CapacityError, InputError, NotFoundError
from kenkyu.jobs import insert_pending_job, start_job
from kenkyu.models import Prompt, ResearchJob, Schedule, Stock, SELECTION_TYPES, utcnow
from kenkyu.provider import SUPPORTED_PROVIDERS
from kenkyu.settings import GLOBAL_PAUSE_KEY, is_globally_paused, set_setting
from kenkyu.tasks import tasks

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name", "prompt_id", "selection_type", "selection_tags", "selection_stock_ids",
    "provider", "cron", "timezone", "enabled",
)
TIMING_FIELDS = ("cron", "timezone", "enabled")


class TimerPlan:
    """Timer changes decided inside a transaction, applied after it commits."""

    def __init__(self):
        self.cancels = []
        self.arms = []

    def arm(self, schedule: Schedule, now: Optional[datetime] = None):
        when = next_run_at(schedule.cron, schedule.timezone, now or utcnow())
        handle = uuid.uuid4().hex
        if schedule.next_task_id:
            self.cancels.append(schedule.next_task_id)
        schedule.next_run_at = when.replace(tzinfo=None)
        schedule.next_task_id = handle
        self.arms.append((schedule.id, handle, when))

    def disarm(self, schedule: Schedule):
        if schedule.next_task_id:
            self.cancels.append(schedule.next_task_id)
        schedule.next_run_at = None
        schedule.next_task_id = None

    def sync(self, session: Session, schedule: Schedule, now: Optional[datetime] = None):
        """Arm when enabled and not globally paused; otherwise disarm."""
        if schedule.enabled and not is_globally_paused(session):
            self.arm(schedule, now)
        else:
            self.disarm(schedule)

    def apply(self):
        for handle in self.cancels:
            tasks.cancel(handle)
        for schedule_id, handle, when in self.arms:
            tasks.run_at(when, execute_scheduled_run, schedule_id, handle, task_id=handle)
            logger.info(f"[SCHEDULER] Schedule {schedule_id} armed for {when.isoformat()}")


def _lock_schedule(session: Session, schedule_id: int) -> Optional[Schedule]:
    return session.query(Schedule).filter(Schedule.id == schedule_id).with_for_update().first()


def _get_schedule_or_404(session: Session, schedule_id: int) -> Schedule:
    schedule = _lock_schedule(session, schedule_id)
    if not schedule:
        raise NotFoundError("Schedule not found")
    return schedule


# ============================================================================
# Stock selection
# ============================================================================

def validate_selection(session: Session, selection_type: str, tags: Iterable[str], stock_ids: Iterable[int]):
    if selection_type not in SELECTION_TYPES:
        raise InputError(f"Invalid stock selection '{selection_type}'. Use one of: {', '.join(SELECTION_TYPES)}")
    if selection_type == "tagged" and not list(tags or []):
        raise InputError("Tagged selection requires at least one tag")
    if selection_type == "specific":
        stock_ids = list(stock_ids or [])
        if not stock_ids:
            raise InputError("Specific selection requires at least one stock")
        known = {row[0] for row in session.query(Stock.id).filter(Stock.id.in_(stock_ids))}
        missing = [i for i in stock_ids if i not in known]
        if missing:
            raise InputError(f"Unknown stock ids: {missing}")


def resolve_stock_selection(session: Session, schedule: Schedule) -> list[int]:
    """Stock ids a run of this schedule covers right now."""
    if schedule.selection_type == "none":
        return []
    if schedule.selection_type == "specific":
        wanted = list(schedule.selection_stock_ids or [])
        known = {row[0] for row in session.query(Stock.id).filter(Stock.id.in_(wanted))}
        return [i for i in wanted if i in known]

    stocks = session.query(Stock).order_by(Stock.id).all()
    if schedule.selection_type == "all":
        return [s.id for s in stocks]

    tags = set(schedule.selection_tags or [])
    return [s.id for s in stocks if tags.intersection(s.tags or [])]


# ============================================================================
# Execution
# ============================================================================

def execute_scheduled_run(schedule_id: int, task_id: Optional[str] = None):
    """
    Timer callback: create this occurrence's job, record the run and arm the
    next one. A run rejected by admission is dropped, not deferred. If anything
    else fails the schedule is still re-armed.
    """
    plan = TimerPlan()
    job_id = None
    rearm = False
    session = SessionLocal()
    try:
        schedule = _lock_schedule(session, schedule_id)
        if not schedule:
            logger.info(f"[SCHEDULER] Schedule {schedule_id} no longer exists")
            return
        if task_id is not None and schedule.next_task_id != task_id:
            logger.info(f"[SCHEDULER] Stale timer {task_id} for schedule {schedule_id}, ignoring")
            return
        if not schedule.enabled or is_globally_paused(session):
            logger.info(f"[SCHEDULER] Schedule {schedule_id} disabled or paused, skipping")
            return

        rearm = True
        stock_ids = resolve_stock_selection(session, schedule)
        try:
            with session.begin_nested():
                job = insert_pending_job(session, schedule.prompt_id, stock_ids, schedule.provider, schedule.id)
            job_id = job.id
        except CapacityError as e:
            logger.warning(f"[SCHEDULER] Schedule {schedule_id} occurrence dropped: {e}")
        except InputError as e:
            logger.error(f"[SCHEDULER] Schedule {schedule_id} run failed: {e}")

        schedule.last_run_at = utcnow()
        plan.sync(session, schedule)
        session.commit()
        rearm = False
    finally:
        session.close()
        if rearm:
            arm_schedule(schedule_id)

    plan.apply()
    if job_id is not None:
        logger.info(f"[SCHEDULER] Schedule {schedule_id} created job {job_id}")
        tasks.enqueue(start_job, job_id)


def arm_schedule(schedule_id: int) -> Optional[datetime]:
    """(Re)compute and arm the next run, or disarm when disabled or paused."""
    plan = TimerPlan()
    session = SessionLocal()
    try:
        schedule = _lock_schedule(session, schedule_id)
        if not schedule:
            return None
        plan.sync(session, schedule)
        next_run = schedule.next_run_at
        session.commit()
    finally:
        session.close()
    plan.apply()
    return next_run


# ============================================================================
# CRUD
# ============================================================================

def _validate_fields(session: Session, fields: dict):
    if "name" in fields and not (fields["name"] or "").strip():
        raise InputError("Schedule name is required")
    if "cron" in fields:
        parse_cron(fields["cron"])
    if "timezone" in fields:
        validate_timezone(fields["timezone"])
    if "prompt_id" in fields and not session.get(Prompt, fields["prompt_id"]):
        raise InputError("Prompt not found")
    if "provider" in fields and fields["provider"] not in SUPPORTED_PROVIDERS:
        raise InputError(f"Unsupported provider: {fields['provider']}")


def create_schedule(name: str, prompt_id: int, cron: str, timezone: str = "UTC",
                    selection_type: str = "all", selection_tags: Optional[list] = None,
                    selection_stock_ids: Optional[list] = None, provider: str = "openai",
                    enabled: bool = True) -> Schedule:
    fields = dict(name=name, prompt_id=prompt_id, cron=cron.strip(), timezone=timezone.strip(), provider=provider)
    plan = TimerPlan()
    session = SessionLocal()
    try:
        _validate_fields(session, fields)
        validate_selection(session, selection_type, selection_tags, selection_stock_ids)
        schedule = Schedule(
            selection_type=selection_type,
            selection_tags=list(selection_tags or []),
            selection_stock_ids=list(selection_stock_ids or []),
            enabled=enabled,
            **fields,
        )
        session.add(schedule)
        session.flush()
        plan.sync(session, schedule)
        session.commit()
    finally:
        session.close()

    plan.apply()
    logger.info(f"[SCHEDULER] Created schedule {schedule.id} '{schedule.name}' (cron={schedule.cron}, tz={schedule.timezone})")
    return schedule


def update_schedule(schedule_id: int, updates: dict) -> Schedule:
    unknown = set(updates) - set(UPDATABLE_FIELDS)
    if unknown:
        raise InputError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")
    # Every updatable column is NOT NULL
    nulls = sorted(key for key, value in updates.items() if value is None)
    if nulls:
        raise InputError(f"Schedule fields cannot be null: {', '.join(nulls)}")
    updates = {k: (v.strip() if k in ("cron", "timezone") and isinstance(v, str) else v) for k, v in updates.items()}

    plan = TimerPlan()
    session = SessionLocal()
    try:
        schedule = _get_schedule_or_404(session, schedule_id)
        _validate_fields(session, updates)
        if {"selection_type", "selection_tags", "selection_stock_ids"} & set(updates):
            validate_selection(
                session,
                updates.get("selection_type", schedule.selection_type),
                updates.get("selection_tags", schedule.selection_tags),
                updates.get("selection_stock_ids", schedule.selection_stock_ids),
            )

        timing_changed = any(
            key in updates and updates[key] != getattr(schedule, key) for key in TIMING_FIELDS
        )
        for key, value in updates.items():
            setattr(schedule, key, value)
        schedule.updated_at = utcnow()
        if timing_changed:
            plan.sync(session, schedule)
        session.commit()
    finally:
        session.close()

    plan.apply()
    return schedule


def delete_schedule(schedule_id: int):
    plan = TimerPlan()
    session = SessionLocal()
    try:
        schedule = _get_schedule_or_404(session, schedule_id)
        plan.disarm(schedule)
        session.delete(schedule)
        session.commit()
    finally:
        session.close()
    plan.apply()
    logger.info(f"[SCHEDULER] Deleted schedule {schedule_id}")


def toggle_schedule(schedule_id: int) -> Schedule:
    plan = TimerPlan()
    session = SessionLocal()
    try:
        schedule = _get_schedule_or_404(session, schedule_id)
        schedule.enabled = not schedule.enabled
        schedule.updated_at = utcnow()
        plan.sync(session, schedule)
        session.commit()
    finally:
        session.close()
    plan.apply()
    logger.info(f"[SCHEDULER] Schedule {schedule_id} {'enabled' if schedule.enabled else 'disabled'}")
    return schedule


# ============================================================================
# Global pause & recovery
# ============================================================================

def _sync_all(session: Session, plan: TimerPlan) -> int:
    schedules = session.query(Schedule).order_by(Schedule.id).with_for_update().all()
    for schedule in schedules:
        plan.sync(session, schedule)
    return sum(1 for s in schedules if s.next_task_id)


def set_global_pause(paused: bool) -> bool:
    """Pause or resume every schedule, cancelling or re-arming all timers at once."""
    plan = TimerPlan()
    session = SessionLocal()
    try:
        set_setting(session, GLOBAL_PAUSE_KEY, "true" if paused else "false")
        session.flush()
        armed = _sync_all(session, plan)
        session.commit()
    finally:
        session.close()
    plan.apply()
    logger.info(f"[SCHEDULER] Global pause {'on' if paused else 'off'} ({armed} schedules armed)")
    return paused


def toggle_global_pause() -> bool:
    session = SessionLocal()
    try:
        paused = is_globally_paused(session)
    finally:
        session.close()
    return set_global_pause(not paused)


def recover_schedules() -> int:
    """On startup, arm every enabled schedule; timers do not survive a restart."""
    plan = TimerPlan()
    session = SessionLocal()
    try:
        armed = _sync_all(session, plan)
        session.commit()
    finally:
        session.close()
    # Handles from the previous process are gone
    plan.cancels = []
    plan.apply()
    logger.info(f"[SCHEDULER] Recovered {armed} schedules")
    return armed


# ============================================================================
# Queries
# ============================================================================

def upcoming_runs(session: Session, limit: int = 10) -> list[Schedule]:
    return session.query(Schedule).filter(
        Schedule.enabled == True,
        Schedule.next_run_at.isnot(None),
    ).order_by(Schedule.next_run_at).limit(limit).all()


def schedule_history(session: Session, schedule_id: int, limit: int = 20) -> list[ResearchJob]:
    limit = max(1, min(limit, 100))
    return session.query(ResearchJob).filter(
        ResearchJob.schedule_id == schedule_id
    ).order_by(ResearchJob.created_at.desc(), ResearchJob.id.desc()).limit(limit).all()
