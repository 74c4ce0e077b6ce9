import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from tallypoint.collector_app import create_app
from tallypoint.config import Settings
from tallypoint.errors import StorageError
from tallypoint.store import EventFilter, MemoryEventStore

REPLACEMENT = {
    "userId": "user_abc123",
    "appVersion": "1.4.0",
    "os": "win32",
    "success": True,
    "method": "Win32DirectReplacer",
    "targetApp": "notepad.exe",
    "textLength": 120,
    "responseTimeMs": 85,
}


class CrashingStore(MemoryEventStore):
    def append(self, event):
        raise RuntimeError("unexpected")


class BrokenStore(MemoryEventStore):
    def append(self, event):
        raise StorageError("disk on fire")

    def query_replacements(self, flt=EventFilter()):
        raise StorageError("disk on fire")

    def summarize_replacements(self, group_by=None, flt=EventFilter(), limit=None):
        raise StorageError("disk on fire")

    def ping(self):
        raise StorageError("disk on fire")


# ----------------------------
# Open routes
# ----------------------------
def test_health_needs_no_token(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert "timestamp" in body


def test_landing_lists_endpoints(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["endpoints"]["overview"] == "/api/metrics/overview"


def test_unknown_route_is_json_404(client, auth):
    resp = client.get("/api/nope", headers=auth)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Not found"}


def test_wrong_method_is_json_405(client, auth):
    resp = client.get("/api/analytics/error", headers=auth)
    assert resp.status_code == 405
    assert "error" in resp.json()


def test_options_preflight_is_empty_200(client):
    resp = client.options(
        "/api/metrics/overview",
        headers={"Origin": "https://dashboard.example", "Access-Control-Request-Method": "GET"},
    )
    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["access-control-allow-origin"] == "*"

    unknown = client.options("/api/nope")
    assert unknown.status_code == 200
    assert unknown.content == b""


def test_cors_header_on_reads(client, auth):
    resp = client.get("/api/metrics/overview", headers={**auth, "Origin": "https://dashboard.example"})
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"


def test_request_id_header(client):
    resp = client.get("/api/health", headers={"x-request-id": "abc123"})
    assert resp.headers["x-tallypoint-request-id"] == "abc123"
    assert client.get("/api/health").headers["x-tallypoint-request-id"]


# ----------------------------
# Auth gate
# ----------------------------
@pytest.mark.parametrize("path", [
    "/api/metrics/overview",
    "/api/metrics/usage",
    "/api/metrics/errors",
    "/api/metrics/users",
    "/api/metrics/apps",
    "/api/metrics/methods",
    "/api/metrics/real-time",
])
def test_metrics_reject_missing_and_wrong_token_identically(client, auth, path):
    missing = client.get(path)
    wrong = client.get(path, headers={"Authorization": "Bearer not-it"})
    wrong_scheme = client.get(path, headers={"Authorization": "Basic test-secret"})

    for resp in (missing, wrong, wrong_scheme):
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    assert client.get(path, headers=auth).status_code == 200


def test_ingest_checks_token_before_body(client):
    resp = client.post(
        "/api/analytics/text-replacement",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 401


def test_token_prefix_is_not_enough(client):
    resp = client.get("/api/metrics/overview", headers={"Authorization": "Bearer test-secre"})
    assert resp.status_code == 401


# ----------------------------
# Ingestion
# ----------------------------
def test_replacement_ingest_bumps_overview(client, auth):
    before = client.get("/api/metrics/overview", headers=auth).json()["totalReplacements"]

    resp = client.post("/api/analytics/text-replacement", json=REPLACEMENT, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert isinstance(body["id"], int)

    after = client.get("/api/metrics/overview", headers=auth).json()["totalReplacements"]
    assert after == before + 1


def test_ids_are_never_reused(client, auth):
    ids = {client.post("/api/analytics/text-replacement", json=REPLACEMENT, headers=auth).json()["id"]
           for _ in range(5)}
    assert len(ids) == 5


def test_replacement_defaults_and_aliases(client, auth):
    payload = {"userId": "u", "success": False, "method": "TextPatternReplacer", "targetApp": "code.exe",
               "responseTime": 40, "timestamp": "1999-01-01T00:00:00Z", "extra": "ignored"}
    resp = client.post("/api/analytics/text-replacement", json=payload,
                       headers={**auth, "User-Agent": "AuraText/2.0"})
    assert resp.status_code == 200

    store = client.app.state.store
    [rec] = store.query_replacements()
    assert rec.text_length == 0
    assert rec.response_time_ms == 40
    assert rec.user_agent == "AuraText/2.0"
    assert rec.ip_address == "testclient"
    assert rec.timestamp.year != 1999


def test_error_and_user_action_ingest(client, auth):
    err = client.post("/api/analytics/error", headers=auth, json={
        "userId": "u", "appVersion": "1.4.0", "os": "darwin",
        "errorType": "AccessDenied", "errorMessage": "target window refused input",
        "stackTrace": "at replace()",
    })
    act = client.post("/api/analytics/user-action", headers=auth, json={
        "userId": "u", "actionType": "hotkey_pressed",
    })
    assert err.status_code == 200 and err.json()["success"] is True
    assert act.status_code == 200 and act.json()["success"] is True

    errors = client.get("/api/metrics/errors", headers=auth).json()
    assert errors[0]["errorType"] == "AccessDenied"
    assert errors[0]["targetApp"] is None


@pytest.mark.parametrize("path,payload,field", [
    ("/api/analytics/text-replacement", {k: v for k, v in REPLACEMENT.items() if k != "userId"}, "userId"),
    ("/api/analytics/text-replacement", {**REPLACEMENT, "success": "true"}, "success"),
    ("/api/analytics/text-replacement", {**REPLACEMENT, "textLength": -1}, "textLength"),
    ("/api/analytics/text-replacement", {**REPLACEMENT, "textLength": 2**70}, "textLength"),
    ("/api/analytics/text-replacement", {**REPLACEMENT, "responseTimeMs": 2**63}, "responseTimeMs"),
    ("/api/analytics/text-replacement", {**REPLACEMENT, "userId": "   "}, "userId"),
    ("/api/analytics/text-replacement", {k: v for k, v in REPLACEMENT.items() if k != "targetApp"}, "targetApp"),
    ("/api/analytics/error", {"userId": "u", "errorType": "X"}, "errorMessage"),
    ("/api/analytics/user-action", {"userId": "u"}, "actionType"),
    ("/api/analytics/user-action", {"userId": 12, "actionType": "click"}, "userId"),
])
def test_invalid_payloads_are_rejected_without_writing(client, auth, path, payload, field):
    resp = client.post(path, json=payload, headers=auth)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Validation failed"
    assert any(field in d["field"] for d in body["details"])

    store = client.app.state.store
    assert store.query_replacements() == []
    assert store.query_errors() == []
    assert store.query_user_actions() == []


@pytest.mark.parametrize("content", [b"{not json", b"[1, 2]", b""])
def test_malformed_body_is_400(client, auth, content):
    resp = client.post("/api/analytics/error", content=content,
                       headers={**auth, "Content-Type": "application/json"})
    assert resp.status_code == 400
    assert "error" in resp.json()


# ----------------------------
# Metrics
# ----------------------------
def test_errors_limit_param(client, auth):
    for i in range(3):
        client.post("/api/analytics/error", headers=auth,
                    json={"userId": "u", "errorType": "E", "errorMessage": f"m{i}"})

    two = client.get("/api/metrics/errors?limit=2", headers=auth).json()
    assert [e["errorMessage"] for e in two] == ["m2", "m1"]

    fallback = client.get("/api/metrics/errors?limit=abc", headers=auth)
    assert fallback.status_code == 200
    assert len(fallback.json()) == 3


def test_breakdowns_over_http(client, auth):
    for user, app, method in (("a", "notepad.exe", "M1"), ("b", "notepad.exe", "M2"), ("a", "excel.exe", "M1")):
        client.post("/api/analytics/text-replacement", headers=auth,
                    json={**REPLACEMENT, "userId": user, "targetApp": app, "method": method})

    apps = client.get("/api/metrics/apps", headers=auth).json()
    assert [a["targetApp"] for a in apps] == ["notepad.exe", "excel.exe"]
    assert {a["targetApp"] for a in apps} <= {"notepad.exe", "excel.exe"}

    methods = client.get("/api/metrics/methods", headers=auth).json()
    assert methods[0] == {"method": "M1", "usageCount": 2, "avgResponseTimeMs": 85, "successRatePct": 100.0}

    users = client.get("/api/metrics/users", headers=auth).json()
    assert [u["userId"] for u in users] == ["a", "b"]


def test_time_series_over_http(clocked_client, auth, clock):
    clocked_client.post("/api/analytics/text-replacement", json=REPLACEMENT, headers=auth)

    usage = clocked_client.get("/api/metrics/usage", headers=auth).json()
    assert usage == [{"date": "2026-03-10", "replacementCount": 1, "uniqueUserCount": 1}]

    rt = clocked_client.get("/api/metrics/real-time", headers=auth).json()
    assert rt == [{"minuteBucket": "2026-03-10T12:00:00+00:00", "replacementCount": 1, "uniqueUserCount": 1}]

    clock.now = datetime(2026, 3, 10, 14, 0, 0, tzinfo=timezone.utc)
    assert clocked_client.get("/api/metrics/real-time", headers=auth).json() == []
    assert len(clocked_client.get("/api/metrics/real-time?minutes=180", headers=auth).json()) == 1


# ----------------------------
# Storage failures
# ----------------------------
def test_storage_failure_is_generic_500(auth):
    app = create_app(Settings(token="test-secret", store="memory"), store=BrokenStore())
    with TestClient(app) as c:
        ingest = c.post("/api/analytics/text-replacement", json=REPLACEMENT, headers=auth)
        assert ingest.status_code == 500
        assert ingest.json() == {"error": "Database error"}
        assert "disk on fire" not in ingest.text

        overview = c.get("/api/metrics/overview", headers=auth)
        assert overview.status_code == 500
        assert overview.json() == {"error": "Database error"}

        health = c.get("/api/health")
        assert health.status_code == 200
        assert health.json()["status"] == "degraded"
        assert health.json()["database"] == "unavailable"


def test_unexpected_failure_is_json_500(auth):
    app = create_app(Settings(token="test-secret", store="memory"), store=CrashingStore())
    with TestClient(app, raise_server_exceptions=False) as c:
        resp = c.post("/api/analytics/text-replacement", json=REPLACEMENT, headers=auth)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}
    assert "unexpected" not in resp.text


def test_app_starts_when_database_is_unreachable(tmp_path, auth):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    settings = Settings(token="test-secret", db_path=str(blocker / "events.db"), db_timeout_s=0.1)

    with TestClient(create_app(settings)) as c:
        assert c.get("/api/health").json()["database"] == "unavailable"
        resp = c.post("/api/analytics/user-action", headers=auth, json={"userId": "u", "actionType": "a"})
        assert resp.status_code == 500


def test_access_log_file(tmp_path, auth):
    log_path = tmp_path / "access.log"
    settings = Settings(token="test-secret", store="memory", access_log=str(log_path))
    with TestClient(create_app(settings)) as c:
        c.get("/api/metrics/overview", headers=auth)

    lines = [json.loads(ln) for ln in log_path.read_text().splitlines()]
    assert lines[-1]["path"] == "/api/metrics/overview"
    assert lines[-1]["status"] == 200
    assert lines[-1]["duration_ms"] >= 0
