"""
Job admission - a global ceiling on concurrently active research jobs.

The count is always taken from the job table, inside the same transaction as
the insert or transition it guards, while holding the admission lock row.
"""
import logging

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from kenkyu.errors import CapacityError
from kenkyu.models import ResearchJob, Setting, ACTIVE_STATUSES
from kenkyu.settings import ADMISSION_LOCK_KEY

logger = logging.getLogger(__name__)

MAX_CONCURRENT_JOBS = 5


def lock_admission(session: Session):
    """Serialise admission decisions. FOR UPDATE on PostgreSQL; SQLite already holds the write lock."""
    session.query(Setting).filter(Setting.key == ADMISSION_LOCK_KEY).with_for_update().first()


def count_active_jobs(session: Session) -> int:
    """Pending and running jobs, plus failed jobs holding an armed automatic retry."""
    return session.query(ResearchJob).filter(or_(
        ResearchJob.status.in_(ACTIVE_STATUSES),
        and_(ResearchJob.status == "failed", ResearchJob.retry_at.isnot(None)),
    )).count()


def try_admit(session: Session) -> bool:
    """Whether one more job may become active. Takes the admission lock."""
    lock_admission(session)
    active = count_active_jobs(session)
    if active >= MAX_CONCURRENT_JOBS:
        logger.info(f"[ADMISSION] Rejected: {active} active jobs (max {MAX_CONCURRENT_JOBS})")
        return False
    return True


def require_admission(session: Session):
    """Raise CapacityError when the ceiling is reached."""
    if not try_admit(session):
        raise CapacityError(f"Maximum of {MAX_CONCURRENT_JOBS} concurrent jobs allowed")
