import json

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import kenkyu.app as app_module
from kenkyu import webhooks

# No context manager: startup (real scheduler, recovery) is not run
client = TestClient(app_module.app)


# ============================================================================
# API key guard
# ============================================================================

def test_require_admin_api_key_rejects_when_missing_key(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", None)
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("any")
    assert exc.value.status_code == 503


def test_require_admin_api_key_rejects_invalid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    with pytest.raises(HTTPException) as exc:
        app_module.require_admin_api_key("wrong")
    assert exc.value.status_code == 401


def test_require_admin_api_key_accepts_valid_value(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert app_module.require_admin_api_key("secret") is None


def test_endpoints_require_key_when_configured(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert client.get("/api/jobs").status_code == 401
    assert client.get("/api/jobs", headers={"X-API-Key": "secret"}).status_code == 200


def test_health_and_webhook_are_public(monkeypatch):
    monkeypatch.setattr(app_module, "ALLOW_INSECURE", False)
    monkeypatch.setattr(app_module, "API_KEY", "secret")
    assert client.get("/api/health").json() == {"status": "ok"}
    resp = client.post("/api/research-callback", content=json.dumps({"id": "resp_x", "status": "completed"}))
    assert resp.status_code == 200


# ============================================================================
# Jobs
# ============================================================================

def test_create_and_fetch_job(make_prompt, make_stock, task_queue):
    prompt = make_prompt()
    stock = make_stock("AAPL")

    resp = client.post("/api/jobs", json={"prompt_id": prompt.id, "stock_ids": [stock.id]})
    assert resp.status_code == 200
    created = resp.json()
    assert created["status"] == "pending"
    assert created["stock_ids"] == [stock.id]

    task_queue.run_named("start_job")
    job = client.get(f"/api/jobs/{created['id']}").json()
    assert job["status"] == "running"
    assert job["external_job_id"] == "resp_1"

    active = client.get("/api/jobs/active").json()
    assert [j["id"] for j in active["jobs"]] == [created["id"]]
    assert active["max_concurrent"] == 5


def test_sixth_job_is_a_conflict(make_prompt):
    prompt = make_prompt()
    for _ in range(5):
        assert client.post("/api/jobs", json={"prompt_id": prompt.id}).status_code == 200
    resp = client.post("/api/jobs", json={"prompt_id": prompt.id})
    assert resp.status_code == 409
    assert resp.json() == {"detail": "Maximum of 5 concurrent jobs allowed"}


def test_unknown_prompt_is_a_bad_request():
    resp = client.post("/api/jobs", json={"prompt_id": 999})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Prompt not found"


def test_missing_job_is_not_found():
    assert client.get("/api/jobs/999").status_code == 404
    assert client.post("/api/jobs/999/cancel").status_code == 404


def test_cancel_retry_favorite_delete(make_prompt, task_queue):
    job_id = client.post("/api/jobs", json={"prompt_id": make_prompt().id}).json()["id"]

    assert client.delete(f"/api/jobs/{job_id}").status_code == 409

    cancelled = client.post(f"/api/jobs/{job_id}/cancel").json()
    assert cancelled["status"] == "failed"
    assert cancelled["error"] == "Cancelled by user"
    assert client.post(f"/api/jobs/{job_id}/cancel").status_code == 409

    assert client.post(f"/api/jobs/{job_id}/favorite").json() == {"id": job_id, "is_favorited": True}
    assert client.get("/api/jobs", params={"favorites": True}).json()["jobs"][0]["id"] == job_id

    assert client.post(f"/api/jobs/{job_id}/retry").json()["status"] == "pending"
    client.post(f"/api/jobs/{job_id}/cancel")
    assert client.delete(f"/api/jobs/{job_id}").json() == {"status": "deleted"}


def test_list_jobs_rejects_unknown_status():
    assert client.get("/api/jobs", params={"status": "done"}).status_code == 400


# ============================================================================
# Webhook
# ============================================================================

def test_webhook_completes_job(make_prompt, task_queue):
    job_id = client.post("/api/jobs", json={"prompt_id": make_prompt().id}).json()["id"]
    task_queue.run_named("start_job")

    payload = {"id": "resp_1", "status": "completed", "output": "done",
               "usage": {"inputTokens": 500_000, "outputTokens": 100_000}}
    resp = client.post("/api/research-callback", content=json.dumps(payload))
    assert resp.json() == {"outcome": "completed"}

    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["cost_usd"] == pytest.approx(9.0)


def test_webhook_signature_enforced_when_secret_set(monkeypatch):
    monkeypatch.setattr(webhooks, "WEBHOOK_SECRET", "whsec")
    raw = json.dumps({"id": "resp_1", "status": "completed"}).encode()

    assert client.post("/api/research-callback", content=raw).status_code == 401
    resp = client.post(
        "/api/research-callback",
        content=raw,
        headers={webhooks.SIGNATURE_HEADER: webhooks.sign(raw, "whsec")},
    )
    assert resp.status_code == 200
    assert resp.json() == {"outcome": "not_found"}


def test_non_ascii_signature_is_unauthorized(monkeypatch):
    monkeypatch.setattr(webhooks, "WEBHOOK_SECRET", "s3cret")
    resp = client.post(
        "/api/research-callback",
        content=json.dumps({"id": "resp_1", "status": "completed"}).encode(),
        headers={webhooks.SIGNATURE_HEADER: "caf\xe9".encode("latin-1")},
    )
    assert resp.status_code == 401


def test_malformed_webhook_is_a_bad_request():
    resp = client.post("/api/research-callback", content=b"{not json")
    assert resp.status_code == 400


# ============================================================================
# Schedules & global pause
# ============================================================================

def test_schedule_crud(make_prompt, task_queue):
    prompt = make_prompt()
    resp = client.post("/api/schedules", json={
        "name": "Weekday open", "prompt_id": prompt.id, "cron": "30 9 * * 1-5", "timezone": "America/New_York",
    })
    assert resp.status_code == 200
    schedule = resp.json()
    assert schedule["next_run_at"] is not None

    updated = client.put(f"/api/schedules/{schedule['id']}", json={"name": "Open bell"}).json()
    assert updated["name"] == "Open bell"
    assert updated["cron"] == "30 9 * * 1-5"

    toggled = client.post(f"/api/schedules/{schedule['id']}/toggle").json()
    assert toggled["enabled"] is False
    assert toggled["next_run_at"] is None

    assert client.get("/api/schedules/upcoming").json() == {"upcoming": []}
    assert client.get(f"/api/schedules/{schedule['id']}/history").json() == {"jobs": []}
    assert client.delete(f"/api/schedules/{schedule['id']}").json() == {"status": "deleted"}
    assert client.get(f"/api/schedules/{schedule['id']}").status_code == 404


def test_schedule_update_with_null_is_rejected(make_prompt, task_queue):
    schedule = client.post("/api/schedules", json={
        "name": "Daily", "prompt_id": make_prompt().id, "cron": "0 9 * * *",
    }).json()
    resp = client.put(f"/api/schedules/{schedule['id']}", json={"enabled": None})
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Schedule fields cannot be null: enabled"}
    assert client.get(f"/api/schedules/{schedule['id']}").json()["enabled"] is True


def test_schedule_with_bad_cron_is_rejected(make_prompt):
    resp = client.post("/api/schedules", json={"name": "Bad", "prompt_id": make_prompt().id, "cron": "0 9 * *"})
    assert resp.status_code == 400
    assert "expected 5 fields, got 4" in resp.json()["detail"]


def test_global_pause_toggle():
    assert client.get("/api/global-pause").json() == {"paused": False}
    assert client.post("/api/global-pause/toggle").json() == {"paused": True}
    assert client.get("/api/global-pause").json() == {"paused": True}
    assert client.post("/api/global-pause/toggle").json() == {"paused": False}


# ============================================================================
# Costs, settings, stocks, prompts, queue
# ============================================================================

def test_cost_endpoints_when_empty():
    assert client.get("/api/costs/monthly").json()["total_cost"] == 0
    assert client.get("/api/costs/providers").json() == {"providers": []}
    assert len(client.get("/api/costs/history", params={"months": 3}).json()["history"]) == 3


def test_settings_mask_secrets():
    resp = client.put("/api/settings", json={"values": {
        "telegram_bot_token": "123456:ABCDEF", "telegram_chat_id": "42", "budget_threshold": "25",
    }})
    assert resp.status_code == 200
    settings = client.get("/api/settings").json()
    assert settings["telegram_bot_token"] == "****CDEF"
    assert settings["telegram_chat_id"] == "42"
    assert settings["budget_threshold"] == "25"


@pytest.mark.parametrize("values", [{"admission_lock": "1"}, {"budget_threshold": "-5"}, {"budget_threshold": "abc"}])
def test_settings_rejects_bad_values(values):
    assert client.put("/api/settings", json={"values": values}).status_code == 400


def test_stocks_and_prompts():
    resp = client.post("/api/stocks", json={"ticker": "shop.to", "exchange": "tsx", "company_name": "Shopify"})
    assert resp.json()["ticker"] == "SHOP.TO"
    dup = client.post("/api/stocks", json={"ticker": "SHOP.TO", "exchange": "TSX", "company_name": "Shopify"})
    assert dup.status_code == 409
    assert [s["ticker"] for s in client.get("/api/stocks").json()["stocks"]] == ["SHOP.TO"]

    prompt = client.post("/api/prompts", json={"name": "Deep dive", "template": "Analyse {{TICKER}}"}).json()
    assert prompt["type"] == "single-stock"
    assert client.post("/api/prompts", json={"name": "x", "template": "y", "type": "essay"}).status_code == 400


def test_queue_reports_active_jobs(make_prompt):
    client.post("/api/jobs", json={"prompt_id": make_prompt().id})
    queue = client.get("/api/queue").json()
    assert queue["active_jobs"] == 1
    assert queue["max_concurrent"] == 5
    assert [t["name"] for t in queue["tasks"]] == ["start_job"]
