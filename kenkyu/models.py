"""
SQLAlchemy models for the research engine: watchlist, prompts, jobs, schedules, costs.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, JSON,
    Boolean, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

JOB_STATUSES = ("pending", "running", "completed", "failed")
ACTIVE_STATUSES = ("pending", "running")
TERMINAL_STATUSES = ("completed", "failed")
SELECTION_TYPES = ("all", "tagged", "specific", "none")
PROMPT_TYPES = ("single-stock", "multi-stock", "discovery")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Watchlist & Prompts
# ============================================================================

class Stock(Base):
    """A stock on the watchlist."""
    __tablename__ = "stocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String(10), nullable=False, unique=True)   # e.g. AAPL, SHOP.TO
    exchange = Column(String(20), nullable=False)
    company_name = Column(String(200), nullable=False)
    sector = Column(String(100))
    notes = Column(Text)
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Stock {self.ticker} ({self.exchange})>"


class Prompt(Base):
    """A research prompt template. Supports {{STOCKS}}, {{TICKER}} and {{DATE}}."""
    __tablename__ = "prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    type = Column(String(20), nullable=False, default="single-stock")
    template = Column(Text, nullable=False)
    default_provider = Column(String(20), nullable=False, default="openai")
    is_built_in = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ============================================================================
# Research Jobs
# ============================================================================

class ResearchJob(Base):
    """One execution of a prompt against a set of stocks."""
    __tablename__ = "research_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prompt_id = Column(Integer, ForeignKey("prompts.id", ondelete="SET NULL"))
    prompt_snapshot = Column(Text, nullable=False)              # Template text at creation time
    stock_ids = Column(JSON, nullable=False, default=list)
    provider = Column(String(20), nullable=False, default="openai")
    status = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    external_job_id = Column(String(200), unique=True)          # Provider response id, matched by webhooks
    result = Column(Text)
    error = Column(Text)
    cost_usd = Column(Float)
    duration_ms = Column(Integer)
    schedule_id = Column(Integer, ForeignKey("schedules.id", ondelete="SET NULL"))
    is_favorited = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime)                               # Start of the current attempt
    completed_at = Column(DateTime)
    retry_at = Column(DateTime)                                 # Armed automatic retry, if any

    cost_logs = relationship("CostLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_research_job_status",
        ),
        CheckConstraint(
            "(status IN ('completed', 'failed') AND completed_at IS NOT NULL) OR "
            "(status IN ('pending', 'running') AND completed_at IS NULL)",
            name="ck_research_job_completed_at",
        ),
        CheckConstraint("attempts >= 0", name="ck_research_job_attempts"),
        Index("ix_research_jobs_status", "status"),
        Index("ix_research_jobs_schedule", "schedule_id"),
        Index("ix_research_jobs_created", "created_at"),
    )

    def __repr__(self):
        return f"<ResearchJob {self.id} ({self.status}, attempts={self.attempts})>"


class CostLog(Base):
    """Append-only cost record for a completed job."""
    __tablename__ = "cost_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("research_jobs.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(20), nullable=False)
    cost_usd = Column(Float, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    job = relationship("ResearchJob", back_populates="cost_logs")

    __table_args__ = (
        Index("ix_cost_logs_job", "job_id"),
        Index("ix_cost_logs_timestamp", "timestamp"),
    )


# ============================================================================
# Schedules
# ============================================================================

class Schedule(Base):
    """A recurring research job template."""
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    prompt_id = Column(Integer, ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False)
    selection_type = Column(String(20), nullable=False, default="all")   # all, tagged, specific, none
    selection_tags = Column(JSON, nullable=False, default=list)
    selection_stock_ids = Column(JSON, nullable=False, default=list)
    provider = Column(String(20), nullable=False, default="openai")
    cron = Column(String(100), nullable=False)                           # e.g. "0 9 * * 1-5"
    timezone = Column(String(100), nullable=False, default="UTC")
    enabled = Column(Boolean, default=True, nullable=False)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime)
    next_task_id = Column(String(64))                                    # Handle of the armed timer
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(next_run_at IS NULL AND next_task_id IS NULL) OR "
            "(next_run_at IS NOT NULL AND next_task_id IS NOT NULL)",
            name="ck_schedule_timer_pair",
        ),
    )

    def __repr__(self):
        return f"<Schedule {self.name} (cron={self.cron}, tz={self.timezone})>"


# ============================================================================
# Settings
# ============================================================================

class Setting(Base):
    """Key/value runtime settings (global pause, budget, notification channels)."""
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
