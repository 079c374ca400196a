from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Tuple

from fastapi.testclient import TestClient

from pilot_bridge.broker.app import create_app
from pilot_bridge.broker.engine import CorrelationEngine
from pilot_bridge.config.loader import BrokerConfig


def _make_client(**overrides: Any) -> Tuple[TestClient, CorrelationEngine]:
    engine = CorrelationEngine(BrokerConfig(**overrides))
    engine.start()
    return TestClient(create_app(engine=engine)), engine


def _queue_in_background(app: Any, body: Dict[str, Any]) -> Tuple[threading.Thread, Dict[str, Any]]:
    """
    在后台线程发起一个阻塞的 `/queue` 调用。

    返回：
    - 线程与结果 dict（完成后包含 `status` 与 `body`）
    """

    got: Dict[str, Any] = {}

    def _worker() -> None:
        resp = TestClient(app).post("/queue", json=body)
        got["status"] = resp.status_code
        got["body"] = resp.json()

    t = threading.Thread(target=_worker, daemon=True)
    t.start()
    return t, got


def _poll_until_requests(client: TestClient, *, timeout_sec: float = 2.0) -> List[Dict[str, Any]]:
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        resp = client.get("/poll")
        assert resp.status_code == 200, resp.text
        requests = resp.json()["requests"]
        if requests:
            return requests
        time.sleep(0.01)
    raise AssertionError("no queued request observed within timeout")


def test_poll_on_empty_queue_returns_empty_list() -> None:
    client, _engine = _make_client()
    resp = client.get("/poll")
    assert resp.status_code == 200
    assert resp.json() == {"requests": []}
    assert resp.headers["access-control-allow-origin"] == "*"


def test_queue_poll_response_round_trip() -> None:
    client, _engine = _make_client()
    t, got = _queue_in_background(client.app, {"operation": "op1", "params": {"a": 1}, "timeout": 2_000})

    requests = _poll_until_requests(client)
    assert len(requests) == 1
    req = requests[0]
    assert req["operation"] == "op1"
    assert req["params"] == {"a": 1}
    assert req["id"].startswith("req_")

    resp = client.post("/response", json={"id": req["id"], "success": True, "data": "ok"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "matched": True}

    t.join(timeout=2.0)
    assert got == {"status": 200, "body": {"success": True, "data": "ok"}}


def test_queue_host_failure_is_reported_as_result_not_http_error() -> None:
    client, _engine = _make_client()
    t, got = _queue_in_background(client.app, {"operation": "boom", "timeout": 2_000})

    req = _poll_until_requests(client)[0]
    client.post("/response", json={"id": req["id"], "success": False, "error": "Unknown operation: boom"})

    t.join(timeout=2.0)
    assert got["status"] == 200
    assert got["body"] == {"success": False, "error": "Unknown operation: boom", "errorKind": "operation"}


def test_queue_timeout_names_operation() -> None:
    client, _engine = _make_client()
    resp = client.post("/queue", json={"operation": "echo", "params": {"msg": "hi"}, "timeout": 50})
    assert resp.status_code == 200
    assert resp.json() == {"success": False, "error": "Request timeout: echo", "errorKind": "timeout"}


def test_queue_over_capacity_returns_503() -> None:
    client, engine = _make_client(max_queue=1)
    t, got = _queue_in_background(client.app, {"operation": "first", "timeout": 2_000})

    deadline = time.time() + 2.0
    while time.time() < deadline and engine.snapshot().queued_requests < 1:
        time.sleep(0.01)

    resp = client.post("/queue", json={"operation": "second"})
    assert resp.status_code == 503
    body = resp.json()
    assert body["success"] is False
    assert body["errorKind"] == "capacity"

    req = _poll_until_requests(client)[0]
    client.post("/response", json={"id": req["id"], "success": True, "data": 1})
    t.join(timeout=2.0)
    assert got["body"] == {"success": True, "data": 1}


def test_queue_after_shutdown_returns_503_stopped() -> None:
    client, engine = _make_client()
    engine.shutdown()
    resp = client.post("/queue", json={"operation": "x"})
    assert resp.status_code == 503
    assert resp.json() == {"success": False, "error": "Bridge stopped", "errorKind": "stopped"}


def test_shutdown_releases_blocked_queue_callers() -> None:
    client, engine = _make_client()
    t, got = _queue_in_background(client.app, {"operation": "wait", "timeout": 5_000})

    deadline = time.time() + 2.0
    while time.time() < deadline and engine.snapshot().pending_requests < 1:
        time.sleep(0.01)

    assert engine.shutdown() == 1
    t.join(timeout=2.0)
    assert got["status"] == 503
    assert got["body"]["errorKind"] == "stopped"


def test_response_for_unknown_id_is_acknowledged_as_unmatched() -> None:
    client, _engine = _make_client()
    resp = client.post("/response", json={"id": "req_unknown", "success": True, "data": None})
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "matched": False}
    assert client.get("/health").json()["unmatchedResults"] == 1


def test_malformed_json_is_rejected_with_400() -> None:
    client, engine = _make_client()
    resp = client.post("/queue", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["errorKind"] == "validation"
    assert engine.snapshot().queued_requests == 0


def test_invalid_fields_are_rejected_with_400() -> None:
    client, _engine = _make_client()

    resp = client.post("/queue", json={"params": {}})
    assert resp.status_code == 400
    assert resp.json()["errorKind"] == "validation"

    resp = client.post("/queue", json={"operation": "x", "timeout": 0})
    assert resp.status_code == 400

    resp = client.post("/response", json={"id": "req_1", "success": "yes"})
    assert resp.status_code == 400
    assert resp.headers["access-control-allow-origin"] == "*"


def test_oversized_body_is_rejected_with_413_before_engine() -> None:
    client, engine = _make_client(max_body_bytes=64)
    payload = b'{"operation":"x","params":"' + b"a" * 200 + b'"}'
    resp = client.post("/queue", content=payload, headers={"content-type": "application/json"})
    assert resp.status_code == 413
    body = resp.json()
    assert body["success"] is False
    assert body["errorKind"] == "validation"
    assert "64" in body["error"]
    assert engine.snapshot().queued_requests == 0
    assert engine.snapshot().last_request_at is None


def test_options_returns_204_with_cors_headers_on_any_path() -> None:
    client, _engine = _make_client()
    for path in ("/queue", "/poll", "/does-not-exist"):
        resp = client.options(path)
        assert resp.status_code == 204
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
        assert resp.headers["access-control-allow-headers"] == "Content-Type"


def test_unknown_path_returns_404() -> None:
    client, _engine = _make_client()
    assert client.get("/nope").status_code == 404


def test_health_reports_live_transitions_and_counts() -> None:
    now: Dict[str, float] = {"mono": 10.0}
    engine = CorrelationEngine(BrokerConfig(health_ttl_ms=15_000), clock=lambda: now["mono"])
    engine.start()
    client = TestClient(create_app(engine=engine))

    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["role"] == "owner"
    assert body["live"] is False
    assert body["pluginConnected"] is False
    assert body["pendingRequests"] == 0
    assert body["queuedRequests"] == 0
    assert body["lastPollAt"] is None

    assert client.get("/poll").status_code == 200
    body = client.get("/health").json()
    assert body["live"] is True
    assert isinstance(body["lastPollAt"], int)

    now["mono"] += 15.001
    assert client.get("/health").json()["live"] is False
