"""
FastAPI application - REST API for the research engine.
Run with: python -m kenkyu
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kenkyu import costs, jobs, schedules, webhooks
from kenkyu.admission import MAX_CONCURRENT_JOBS, count_active_jobs
from kenkyu.database import SessionLocal, init_db
from kenkyu.errors import EngineError, InputError
from kenkyu.models import ResearchJob, Schedule, Stock, Prompt, ACTIVE_STATUSES, JOB_STATUSES, PROMPT_TYPES
from kenkyu.settings import PUBLIC_KEYS, BUDGET_THRESHOLD_KEY, is_globally_paused, public_settings, set_setting
from kenkyu.tasks import tasks

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Kenkyu Research Engine", version="1.0.0")

API_KEY = os.environ.get("KENKYU_API_KEY")
ALLOW_INSECURE = os.environ.get("KENKYU_ALLOW_INSECURE", "false").lower() == "true"
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("KENKYU_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

STALE_SWEEP_TASK_ID = "stale-job-sweep"

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect administrative endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="KENKYU_API_KEY is not configured. Set it or enable KENKYU_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def _iso(value):
    return value.isoformat() if value else None


def job_to_dict(j: ResearchJob, include_result: bool = True) -> dict:
    data = {
        "id": j.id,
        "prompt_id": j.prompt_id,
        "stock_ids": j.stock_ids,
        "provider": j.provider,
        "status": j.status,
        "attempts": j.attempts,
        "external_job_id": j.external_job_id,
        "error": j.error,
        "cost_usd": j.cost_usd,
        "duration_ms": j.duration_ms,
        "schedule_id": j.schedule_id,
        "is_favorited": j.is_favorited,
        "created_at": _iso(j.created_at),
        "started_at": _iso(j.started_at),
        "completed_at": _iso(j.completed_at),
        "retry_at": _iso(j.retry_at),
    }
    if include_result:
        data["prompt_snapshot"] = j.prompt_snapshot
        data["result"] = j.result
    return data


def schedule_to_dict(s: Schedule) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "prompt_id": s.prompt_id,
        "selection_type": s.selection_type,
        "selection_tags": s.selection_tags,
        "selection_stock_ids": s.selection_stock_ids,
        "provider": s.provider,
        "cron": s.cron,
        "timezone": s.timezone,
        "enabled": s.enabled,
        "last_run_at": _iso(s.last_run_at),
        "next_run_at": _iso(s.next_run_at),
        "created_at": _iso(s.created_at),
        "updated_at": _iso(s.updated_at),
    }


def stock_to_dict(s: Stock) -> dict:
    return {
        "id": s.id, "ticker": s.ticker, "exchange": s.exchange,
        "company_name": s.company_name, "sector": s.sector, "tags": s.tags,
    }


def prompt_to_dict(p: Prompt) -> dict:
    return {
        "id": p.id, "name": p.name, "description": p.description, "type": p.type,
        "template": p.template, "default_provider": p.default_provider, "is_built_in": p.is_built_in,
    }


# ============================================================================
# Pydantic Models
# ============================================================================

class JobCreate(BaseModel):
    prompt_id: int
    stock_ids: list[int] = []
    provider: str = "openai"


class ScheduleCreate(BaseModel):
    name: str
    prompt_id: int
    cron: str
    timezone: str = "UTC"
    selection_type: str = "all"
    selection_tags: list[str] = []
    selection_stock_ids: list[int] = []
    provider: str = "openai"
    enabled: bool = True


class ScheduleUpdate(BaseModel):
    name: Optional[str] = None
    prompt_id: Optional[int] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    selection_type: Optional[str] = None
    selection_tags: Optional[list[str]] = None
    selection_stock_ids: Optional[list[int]] = None
    provider: Optional[str] = None
    enabled: Optional[bool] = None


class StockCreate(BaseModel):
    ticker: str = Field(min_length=1, max_length=10)
    exchange: str
    company_name: str
    sector: Optional[str] = None
    tags: list[str] = []


class PromptCreate(BaseModel):
    name: str = Field(min_length=1)
    template: str = Field(min_length=1)
    description: str = ""
    type: str = "single-stock"
    default_provider: str = "openai"


class SettingsUpdate(BaseModel):
    values: dict[str, Optional[str]]


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    tasks.start()
    jobs.recover_jobs()
    schedules.recover_schedules()
    tasks.every(jobs.SWEEP_INTERVAL_SECONDS, jobs.sweep_stale_jobs, STALE_SWEEP_TASK_ID)
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] KENKYU_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] KENKYU_API_KEY is not set. Administrative API endpoints will reject requests.")
    if not webhooks.WEBHOOK_SECRET:
        logger.warning("[SECURITY] WEBHOOK_SECRET is not set. Webhook signatures are not verified.")
    logger.info("[APP] Kenkyu research engine started")


@app.on_event("shutdown")
async def shutdown():
    tasks.shutdown()


@app.get("/api/health")
def health():
    return {"status": "ok"}


# ============================================================================
# API - Research Jobs
# ============================================================================

@app.get("/api/jobs")
def list_jobs(
    status: Optional[str] = Query(default=None),
    favorites: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    _auth: None = Depends(require_admin_api_key),
):
    """List research jobs, newest first."""
    if status is not None and status not in JOB_STATUSES:
        raise HTTPException(400, f"Invalid status '{status}'")
    session = SessionLocal()
    try:
        q = session.query(ResearchJob)
        if status:
            q = q.filter(ResearchJob.status == status)
        if favorites:
            q = q.filter(ResearchJob.is_favorited == True)
        rows = q.order_by(ResearchJob.created_at.desc(), ResearchJob.id.desc()).limit(limit).all()
        return {"jobs": [job_to_dict(j, include_result=False) for j in rows]}
    finally:
        session.close()


@app.get("/api/jobs/active")
def list_active_jobs(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        rows = session.query(ResearchJob).filter(
            ResearchJob.status.in_(ACTIVE_STATUSES)
        ).order_by(ResearchJob.created_at.asc()).all()
        return {
            "jobs": [job_to_dict(j, include_result=False) for j in rows],
            "max_concurrent": MAX_CONCURRENT_JOBS,
        }
    finally:
        session.close()


@app.post("/api/jobs")
def create_job(payload: JobCreate, _auth: None = Depends(require_admin_api_key)):
    """Create a research job and start it."""
    job = jobs.create_job(payload.prompt_id, payload.stock_ids, payload.provider)
    return job_to_dict(job)


@app.get("/api/jobs/{job_id}")
def get_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        j = session.get(ResearchJob, job_id)
        if not j:
            raise HTTPException(404, "Research job not found")
        return job_to_dict(j)
    finally:
        session.close()


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    return job_to_dict(jobs.cancel_job(job_id))


@app.post("/api/jobs/{job_id}/retry")
def retry_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    return job_to_dict(jobs.retry_job(job_id))


@app.post("/api/jobs/{job_id}/favorite")
def toggle_favorite(job_id: int, _auth: None = Depends(require_admin_api_key)):
    job = jobs.toggle_favorite(job_id)
    return {"id": job.id, "is_favorited": job.is_favorited}


@app.delete("/api/jobs/{job_id}")
def delete_job(job_id: int, _auth: None = Depends(require_admin_api_key)):
    """Delete a finished job and its cost records."""
    jobs.delete_job(job_id)
    return {"status": "deleted"}


# ============================================================================
# API - Schedules
# ============================================================================

@app.get("/api/schedules")
def list_schedules(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        rows = session.query(Schedule).order_by(Schedule.id).all()
        return {"schedules": [schedule_to_dict(s) for s in rows]}
    finally:
        session.close()


@app.get("/api/schedules/upcoming")
def upcoming_runs(limit: int = Query(default=10, ge=1, le=100), _auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"upcoming": [
            {
                "schedule_id": s.id,
                "schedule_name": s.name,
                "prompt_id": s.prompt_id,
                "next_run_at": _iso(s.next_run_at),
                "timezone": s.timezone,
            }
            for s in schedules.upcoming_runs(session, limit)
        ]}
    finally:
        session.close()


@app.post("/api/schedules")
def create_schedule(payload: ScheduleCreate, _auth: None = Depends(require_admin_api_key)):
    schedule = schedules.create_schedule(**payload.model_dump())
    return schedule_to_dict(schedule)


@app.get("/api/schedules/{schedule_id}")
def get_schedule(schedule_id: int, _auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        s = session.get(Schedule, schedule_id)
        if not s:
            raise HTTPException(404, "Schedule not found")
        return schedule_to_dict(s)
    finally:
        session.close()


@app.put("/api/schedules/{schedule_id}")
def update_schedule(schedule_id: int, updates: ScheduleUpdate, _auth: None = Depends(require_admin_api_key)):
    schedule = schedules.update_schedule(schedule_id, updates.model_dump(exclude_unset=True))
    return schedule_to_dict(schedule)


@app.delete("/api/schedules/{schedule_id}")
def delete_schedule(schedule_id: int, _auth: None = Depends(require_admin_api_key)):
    schedules.delete_schedule(schedule_id)
    return {"status": "deleted"}


@app.post("/api/schedules/{schedule_id}/toggle")
def toggle_schedule(schedule_id: int, _auth: None = Depends(require_admin_api_key)):
    return schedule_to_dict(schedules.toggle_schedule(schedule_id))


@app.get("/api/schedules/{schedule_id}/history")
def schedule_history(
    schedule_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    _auth: None = Depends(require_admin_api_key),
):
    session = SessionLocal()
    try:
        rows = schedules.schedule_history(session, schedule_id, limit)
        return {"jobs": [job_to_dict(j, include_result=False) for j in rows]}
    finally:
        session.close()


@app.get("/api/global-pause")
def get_global_pause(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"paused": is_globally_paused(session)}
    finally:
        session.close()


@app.post("/api/global-pause/toggle")
def toggle_global_pause(_auth: None = Depends(require_admin_api_key)):
    return {"paused": schedules.toggle_global_pause()}


# ============================================================================
# API - Costs
# ============================================================================

@app.get("/api/costs/monthly")
def monthly_cost(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return costs.monthly_cost(session)
    finally:
        session.close()


@app.get("/api/costs/providers")
def cost_by_provider(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"providers": costs.cost_by_provider(session)}
    finally:
        session.close()


@app.get("/api/costs/history")
def cost_history(months: int = Query(default=6, ge=1, le=costs.MAX_HISTORY_MONTHS),
                 _auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"history": costs.cost_history(session, months)}
    finally:
        session.close()


# ============================================================================
# API - Settings, Stocks, Prompts
# ============================================================================

@app.get("/api/settings")
def get_settings(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return public_settings(session)
    finally:
        session.close()


@app.put("/api/settings")
def update_settings(payload: SettingsUpdate, _auth: None = Depends(require_admin_api_key)):
    unknown = [key for key in payload.values if key not in PUBLIC_KEYS]
    if unknown:
        raise InputError(f"Unknown settings: {', '.join(sorted(unknown))}")
    threshold = payload.values.get(BUDGET_THRESHOLD_KEY)
    if threshold:
        try:
            if float(threshold) < 0:
                raise ValueError
        except ValueError:
            raise InputError("budget_threshold must be a non-negative number")

    session = SessionLocal()
    try:
        for key, value in payload.values.items():
            set_setting(session, key, value)
        session.commit()
        return public_settings(session)
    finally:
        session.close()


@app.get("/api/stocks")
def list_stocks(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"stocks": [stock_to_dict(s) for s in session.query(Stock).order_by(Stock.ticker).all()]}
    finally:
        session.close()


@app.post("/api/stocks")
def create_stock(payload: StockCreate, _auth: None = Depends(require_admin_api_key)):
    ticker = payload.ticker.strip().upper()
    session = SessionLocal()
    try:
        if session.query(Stock).filter(Stock.ticker == ticker).first():
            raise HTTPException(409, f"Stock '{ticker}' already exists")
        stock = Stock(
            ticker=ticker,
            exchange=payload.exchange.strip().upper(),
            company_name=payload.company_name.strip(),
            sector=payload.sector,
            tags=payload.tags,
        )
        session.add(stock)
        session.commit()
        return stock_to_dict(stock)
    finally:
        session.close()


@app.get("/api/prompts")
def list_prompts(_auth: None = Depends(require_admin_api_key)):
    session = SessionLocal()
    try:
        return {"prompts": [prompt_to_dict(p) for p in session.query(Prompt).order_by(Prompt.id).all()]}
    finally:
        session.close()


@app.post("/api/prompts")
def create_prompt(payload: PromptCreate, _auth: None = Depends(require_admin_api_key)):
    if payload.type not in PROMPT_TYPES:
        raise InputError(f"Invalid prompt type '{payload.type}'")
    session = SessionLocal()
    try:
        prompt = Prompt(**payload.model_dump())
        session.add(prompt)
        session.commit()
        return prompt_to_dict(prompt)
    finally:
        session.close()


# ============================================================================
# API - Queue & Webhook
# ============================================================================

@app.get("/api/queue")
def get_queue_status(_auth: None = Depends(require_admin_api_key)):
    """Pending timers and the admission count."""
    session = SessionLocal()
    try:
        active = count_active_jobs(session)
    finally:
        session.close()
    return {
        "active_jobs": active,
        "max_concurrent": MAX_CONCURRENT_JOBS,
        "tasks": tasks.get_pending(),
    }


@app.post("/api/research-callback")
async def research_callback(request: Request):
    """Provider completion webhook. Answers 200 for anything acted on or safely ignored."""
    body = await request.body()
    signature = request.headers.get(webhooks.SIGNATURE_HEADER)
    outcome = await run_in_threadpool(webhooks.handle_webhook, body, signature, webhooks.WEBHOOK_SECRET)
    return {"outcome": outcome}
