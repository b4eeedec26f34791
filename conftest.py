import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# Point the engine at a throwaway database before any kenkyu module imports it
_DB_DIR = tempfile.mkdtemp(prefix="kenkyu-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["KENKYU_ALLOW_INSECURE"] = "true"
os.environ.pop("WEBHOOK_SECRET", None)

from kenkyu import notifications  # noqa: E402
from kenkyu.database import SessionLocal, engine, init_db  # noqa: E402
from kenkyu.models import Base, Prompt, ResearchJob, Stock  # noqa: E402
from kenkyu.provider import ProviderError, provider  # noqa: E402
from kenkyu.tasks import tasks  # noqa: E402


class RecordingTasks:
    """Stands in for the APScheduler-backed task queue; nothing runs until asked."""

    def __init__(self):
        self.pending = {}
        self.cancelled = []

    def run_at(self, when, func, *args, task_id=None):
        task_id = task_id or uuid.uuid4().hex
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self.pending[task_id] = (when, func, args)
        return task_id

    def run_after(self, delay_seconds, func, *args):
        return self.run_at(datetime.now(timezone.utc) + timedelta(seconds=delay_seconds), func, *args)

    def enqueue(self, func, *args):
        return self.run_after(0, func, *args)

    def cancel(self, task_id):
        if task_id in self.pending:
            del self.pending[task_id]
            self.cancelled.append(task_id)
            return True
        return False

    def every(self, seconds, func, task_id):
        self.pending[task_id] = (None, func, ())

    def get_pending(self):
        return [{"task_id": tid, "name": func.__name__, "next_run": when.isoformat() if when else None}
                for tid, (when, func, _) in self.pending.items()]

    def named(self, name):
        """[(task_id, when, args)] of pending tasks calling a function named `name`."""
        return [(tid, when, args) for tid, (when, func, args) in self.pending.items() if func.__name__ == name]

    def run(self, task_id):
        _, func, args = self.pending.pop(task_id)
        return func(*args)

    def run_named(self, name):
        """Run every currently pending task named `name` once. Returns how many ran."""
        ids = [tid for tid, _, _ in self.named(name)]
        for tid in ids:
            self.run(tid)
        return len(ids)


class FakeProvider:
    def __init__(self):
        self.submitted = []
        self.cancelled = []
        self.responses = {}
        self.submit_error = None
        self.on_submit = None
        self._counter = 0

    def submit(self, prompt):
        if self.submit_error is not None:
            self.submitted.append((None, prompt))
            raise self.submit_error
        self._counter += 1
        external_id = f"resp_{self._counter}"
        self.submitted.append((external_id, prompt))
        if self.on_submit:
            self.on_submit(external_id)
        return external_id

    def retrieve(self, external_id):
        if external_id not in self.responses:
            raise ProviderError(f"Unknown response {external_id}")
        return self.responses[external_id]

    def cancel(self, external_id):
        self.cancelled.append(external_id)
        return True


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture(autouse=True)
def task_queue(monkeypatch):
    recorder = RecordingTasks()
    for name in ("run_at", "run_after", "enqueue", "cancel", "every", "get_pending"):
        monkeypatch.setattr(tasks, name, getattr(recorder, name))
    return recorder


@pytest.fixture(autouse=True)
def fake_provider(monkeypatch):
    fake = FakeProvider()
    monkeypatch.setattr(provider, "submit", fake.submit)
    monkeypatch.setattr(provider, "retrieve", fake.retrieve)
    monkeypatch.setattr(provider, "cancel", fake.cancel)
    monkeypatch.setattr(provider, "model", "o3-deep-research")
    return fake


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    sent = []

    def record(subject, text):
        sent.append((subject, text))
        return {}

    monkeypatch.setattr(notifications, "notify", record)
    return sent


@pytest.fixture
def make_prompt():
    def _make(template="Research {{STOCKS}} on {{DATE}}", name="Test prompt", type="multi-stock"):
        session = SessionLocal()
        try:
            prompt = Prompt(name=name, template=template, type=type)
            session.add(prompt)
            session.commit()
            return prompt
        finally:
            session.close()
    return _make


@pytest.fixture
def make_stock():
    def _make(ticker, tags=None, exchange="NASDAQ"):
        session = SessionLocal()
        try:
            stock = Stock(ticker=ticker, exchange=exchange, company_name=f"{ticker} Corp", tags=tags or [])
            session.add(stock)
            session.commit()
            return stock
        finally:
            session.close()
    return _make


def load_job(job_id):
    session = SessionLocal()
    try:
        return session.get(ResearchJob, job_id)
    finally:
        session.close()


def update_job(job_id, **fields):
    session = SessionLocal()
    try:
        job = session.get(ResearchJob, job_id)
        for key, value in fields.items():
            setattr(job, key, value)
        session.commit()
    finally:
        session.close()
