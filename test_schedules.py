import pytest

from kenkyu import jobs, schedules
from kenkyu.cron import CronError
from kenkyu.database import SessionLocal
from kenkyu.errors import InputError, NotFoundError
from kenkyu.models import ResearchJob, Schedule, Stock


def load_schedule(schedule_id):
    session = SessionLocal()
    try:
        return session.get(Schedule, schedule_id)
    finally:
        session.close()


def scheduled_jobs(schedule_id):
    session = SessionLocal()
    try:
        return session.query(ResearchJob).filter(ResearchJob.schedule_id == schedule_id).all()
    finally:
        session.close()


def timers(task_queue):
    """{handle: schedule_id} of armed schedule timers."""
    return {tid: args[0] for tid, _, args in task_queue.named("execute_scheduled_run")}


def assert_single_timer(task_queue, schedule_id):
    schedule = load_schedule(schedule_id)
    armed = timers(task_queue)
    assert armed == {schedule.next_task_id: schedule_id}
    when, _, _ = task_queue.pending[schedule.next_task_id]
    assert when.replace(tzinfo=None) == schedule.next_run_at


@pytest.fixture
def daily(make_prompt):
    def _make(**kwargs):
        kwargs.setdefault("name", "Morning brief")
        kwargs.setdefault("cron", "0 9 * * *")
        return schedules.create_schedule(prompt_id=make_prompt().id, **kwargs)
    return _make


# ============================================================================
# Create / validate
# ============================================================================

def test_create_arms_exactly_one_timer(daily, task_queue):
    schedule = daily(timezone="America/New_York")
    assert schedule.next_run_at is not None
    assert_single_timer(task_queue, schedule.id)


def test_create_disabled_schedule_has_no_timer(daily, task_queue):
    schedule = daily(enabled=False)
    assert schedule.next_run_at is None
    assert schedule.next_task_id is None
    assert timers(task_queue) == {}


def test_create_rejects_bad_cron(daily):
    with pytest.raises(CronError, match="expected 5 fields"):
        daily(cron="0 9 * *")


def test_create_rejects_bad_timezone(daily):
    with pytest.raises(InputError, match="Invalid timezone"):
        daily(timezone="Atlantis/Capital")


def test_create_requires_existing_prompt():
    with pytest.raises(InputError, match="Prompt not found"):
        schedules.create_schedule("x", 999, "0 9 * * *")


@pytest.mark.parametrize("kwargs,message", [
    ({"selection_type": "tagged"}, "at least one tag"),
    ({"selection_type": "specific"}, "at least one stock"),
    ({"selection_type": "specific", "selection_stock_ids": [77]}, "Unknown stock ids"),
    ({"selection_type": "sector"}, "Invalid stock selection"),
])
def test_create_validates_selection(daily, kwargs, message):
    with pytest.raises(InputError, match=message):
        daily(**kwargs)


def test_failed_create_arms_nothing(daily, task_queue):
    with pytest.raises(InputError):
        daily(selection_type="tagged")
    assert timers(task_queue) == {}


# ============================================================================
# Toggle / update / delete
# ============================================================================

def test_toggle_round_trip_leaves_one_timer(daily, task_queue):
    schedule = daily()
    first_handle = schedule.next_task_id

    disabled = schedules.toggle_schedule(schedule.id)
    assert disabled.enabled is False
    assert disabled.next_task_id is None
    assert timers(task_queue) == {}
    assert first_handle in task_queue.cancelled

    enabled = schedules.toggle_schedule(schedule.id)
    assert enabled.enabled is True
    assert enabled.next_task_id != first_handle
    assert_single_timer(task_queue, schedule.id)


def test_update_cron_rearms(daily, task_queue):
    schedule = daily()
    updated = schedules.update_schedule(schedule.id, {"cron": "30 17 * * 1-5"})
    assert updated.cron == "30 17 * * 1-5"
    assert updated.next_run_at.minute == 30
    assert schedule.next_task_id in task_queue.cancelled
    assert_single_timer(task_queue, schedule.id)


def test_update_name_keeps_timer(daily, task_queue):
    schedule = daily()
    schedules.update_schedule(schedule.id, {"name": "Evening brief"})
    assert task_queue.cancelled == []
    assert load_schedule(schedule.id).next_task_id == schedule.next_task_id


def test_update_rejects_invalid_values(daily, task_queue):
    schedule = daily()
    with pytest.raises(CronError):
        schedules.update_schedule(schedule.id, {"cron": "61 * * * *"})
    with pytest.raises(InputError, match="Unknown schedule fields"):
        schedules.update_schedule(schedule.id, {"next_task_id": "x"})
    assert load_schedule(schedule.id).cron == "0 9 * * *"
    assert_single_timer(task_queue, schedule.id)


@pytest.mark.parametrize("field", ["enabled", "selection_tags", "selection_stock_ids", "cron", "name"])
def test_update_rejects_null_values(daily, task_queue, field):
    schedule = daily()
    with pytest.raises(InputError, match=f"cannot be null: {field}"):
        schedules.update_schedule(schedule.id, {field: None})
    unchanged = load_schedule(schedule.id)
    assert unchanged.enabled is True
    assert unchanged.selection_tags == []
    assert_single_timer(task_queue, schedule.id)


def test_delete_cancels_timer(daily, task_queue):
    schedule = daily()
    schedules.delete_schedule(schedule.id)
    assert load_schedule(schedule.id) is None
    assert timers(task_queue) == {}
    with pytest.raises(NotFoundError):
        schedules.delete_schedule(schedule.id)


def test_delete_keeps_history_jobs(daily, task_queue):
    schedule = daily()
    task_queue.run(schedule.next_task_id)
    schedules.delete_schedule(schedule.id)

    session = SessionLocal()
    try:
        job = session.query(ResearchJob).one()
        assert job.schedule_id is None
    finally:
        session.close()


# ============================================================================
# Execution
# ============================================================================

def test_fired_timer_creates_job_and_rearms(daily, make_stock, task_queue):
    aapl = make_stock("AAPL")
    schedule = daily()
    task_queue.run(schedule.next_task_id)

    created = scheduled_jobs(schedule.id)
    assert len(created) == 1
    assert created[0].status == "pending"
    assert created[0].stock_ids == [aapl.id]
    assert [args for _, _, args in task_queue.named("start_job")] == [(created[0].id,)]

    fired = load_schedule(schedule.id)
    assert fired.last_run_at is not None
    assert fired.next_task_id != schedule.next_task_id
    assert_single_timer(task_queue, schedule.id)


def test_stale_timer_has_no_effect(daily, task_queue):
    schedule = daily()
    schedules.execute_scheduled_run(schedule.id, "not-the-current-handle")
    assert scheduled_jobs(schedule.id) == []
    assert load_schedule(schedule.id).last_run_at is None
    assert_single_timer(task_queue, schedule.id)


def test_timer_for_deleted_schedule_is_ignored():
    schedules.execute_scheduled_run(4242, "whatever")


def test_occurrence_over_capacity_is_dropped_but_rearmed(daily, make_prompt, task_queue):
    prompt = make_prompt()
    for _ in range(5):
        jobs.create_job(prompt.id, [])
    schedule = daily()

    task_queue.run(schedule.next_task_id)

    assert scheduled_jobs(schedule.id) == []
    fired = load_schedule(schedule.id)
    assert fired.last_run_at is not None
    assert_single_timer(task_queue, schedule.id)


def test_prompt_removed_after_arming_still_rearms(daily, task_queue, monkeypatch):
    schedule = daily()

    def reject(*args, **kwargs):
        raise InputError("Prompt not found")

    monkeypatch.setattr(schedules, "insert_pending_job", reject)
    task_queue.run(schedule.next_task_id)
    assert scheduled_jobs(schedule.id) == []
    assert_single_timer(task_queue, schedule.id)


def test_unexpected_failure_still_rearms(daily, task_queue, monkeypatch):
    schedule = daily()

    def explode(*args, **kwargs):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(schedules, "resolve_stock_selection", explode)
    with pytest.raises(RuntimeError):
        task_queue.run(schedule.next_task_id)
    assert load_schedule(schedule.id).next_task_id != schedule.next_task_id
    assert_single_timer(task_queue, schedule.id)


@pytest.mark.parametrize("selection,expected", [
    ({"selection_type": "all"}, ["AAPL", "MSFT", "SHOP"]),
    ({"selection_type": "tagged", "selection_tags": ["tech"]}, ["AAPL", "MSFT"]),
    ({"selection_type": "none"}, []),
])
def test_selection_resolves_at_run_time(daily, make_stock, task_queue, selection, expected):
    make_stock("AAPL", tags=["tech", "us"])
    make_stock("MSFT", tags=["tech"])
    make_stock("SHOP", tags=["canada"], exchange="TSX")
    schedule = daily(**selection)
    task_queue.run(schedule.next_task_id)

    job = scheduled_jobs(schedule.id)[0]
    session = SessionLocal()
    try:
        assert jobs.resolve_tickers(session, job.stock_ids) == expected
    finally:
        session.close()


def test_specific_selection_skips_deleted_stocks(daily, make_stock, task_queue):
    a, b = make_stock("AAPL"), make_stock("MSFT")
    schedule = daily(selection_type="specific", selection_stock_ids=[b.id, a.id])

    session = SessionLocal()
    try:
        session.delete(session.get(Stock, a.id))
        session.commit()
    finally:
        session.close()

    task_queue.run(schedule.next_task_id)
    assert scheduled_jobs(schedule.id)[0].stock_ids == [b.id]


# ============================================================================
# Global pause & recovery
# ============================================================================

def test_global_pause_disarms_and_resume_rearms(daily, task_queue):
    first, second = daily(), daily(name="Weekly", cron="@weekly")
    off = daily(name="Off", enabled=False)

    assert schedules.toggle_global_pause() is True
    assert timers(task_queue) == {}
    assert load_schedule(first.id).next_run_at is None

    assert schedules.toggle_global_pause() is False
    assert set(timers(task_queue).values()) == {first.id, second.id}
    assert load_schedule(off.id).next_task_id is None


def test_paused_schedule_does_not_run_or_arm_on_toggle(daily, task_queue):
    schedule = daily(enabled=False)
    schedules.set_global_pause(True)
    enabled = schedules.toggle_schedule(schedule.id)
    assert enabled.enabled is True
    assert enabled.next_task_id is None
    assert timers(task_queue) == {}


def test_recover_arms_enabled_schedules(daily, task_queue):
    schedule = daily()
    daily(name="Off", enabled=False)
    task_queue.pending.clear()

    assert schedules.recover_schedules() == 1
    assert_single_timer(task_queue, schedule.id)
    assert task_queue.cancelled == []


# ============================================================================
# Queries
# ============================================================================

def test_upcoming_runs_are_ordered(daily):
    later = daily(name="Leap day", cron="0 0 29 2 *")
    sooner = daily(name="Every minute", cron="* * * * *")
    daily(name="Off", enabled=False)

    session = SessionLocal()
    try:
        upcoming = schedules.upcoming_runs(session)
    finally:
        session.close()
    assert [s.id for s in upcoming][:1] == [sooner.id]
    assert {s.id for s in upcoming} == {later.id, sooner.id}


def test_history_lists_newest_first(daily, task_queue):
    schedule = daily()
    task_queue.run(schedule.next_task_id)
    task_queue.run(load_schedule(schedule.id).next_task_id)

    session = SessionLocal()
    try:
        history = schedules.schedule_history(session, schedule.id)
    finally:
        session.close()
    assert len(history) == 2
    assert history[0].id > history[1].id
