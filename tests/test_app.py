from __future__ import annotations

import asyncio
from typing import List, Sequence

import pytest
import requests
from fastapi.testclient import TestClient

from usagetrack import app as app_module
from usagetrack.app import create_app
from usagetrack.config import TrackerConfig


class RecordingSink:
    def __init__(self):
        self.batches: List[List[str]] = []

    def submit(self, lines: Sequence[str]) -> None:
        self.batches.append(list(lines))


class FakeUpstreamResponse:
    status_code = 201
    content = b'{"stored": true}'
    headers = {
        "Content-Type": "application/json",
        "Content-Encoding": "gzip",
        "Content-Length": "999",
        "Connection": "close",
        "X-Upstream-Id": "req-42",
    }


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


def client_for(sink: RecordingSink, **settings) -> TestClient:
    return TestClient(create_app(TrackerConfig(**settings), writer=sink))


def test_healthz(sink: RecordingSink) -> None:
    res = client_for(sink).get("/healthz")

    assert res.status_code == 200
    assert res.json() == {"ok": True, "uploads": True}


def test_upload_parses_and_submits(sink: RecordingSink, read_log) -> None:
    client = client_for(sink)

    res = client.post("/logs/upload", content=read_log("indesign-multi-session-1-2.log"))

    assert res.status_code == 200
    assert res.json() == {"ok": True, "sessions": 2}
    (batch,) = sink.batches
    assert len(batch) == 2
    assert batch[0].startswith("log-session,sessionId=71c3be08-52d4-4e9a-a0f6-3b9e1d2c7f45 launchDuration=2010000,")
    assert all(',clientIp="testclient:50000"' in line for line in batch)


def test_upload_without_sessions_submits_nothing(sink: RecordingSink) -> None:
    res = client_for(sink).put("/anything", content=b"hello")

    assert res.json() == {"ok": True, "sessions": 0}
    assert sink.batches == []


def test_upload_uses_forwarding_header(sink: RecordingSink, read_log) -> None:
    client = client_for(sink, client_ip_header="X-Forwarded-For", client_ip_hop="last")

    client.post(
        "/",
        content=read_log("indesign-single-session-1.log"),
        headers={"X-Forwarded-For": "203.0.113.7, 198.51.100.4"},
    )

    (batch,) = sink.batches
    assert ',clientIp="198.51.100.4"' in batch[0]


def test_oversized_upload_is_not_parsed(sink: RecordingSink, read_log) -> None:
    client = client_for(sink, max_body_bytes=64)

    res = client.post("/", content=read_log("indesign-single-session-1.log"))

    assert res.json() == {"ok": True, "sessions": 0}
    assert sink.batches == []


def test_upload_is_forwarded_upstream(sink: RecordingSink, read_log, monkeypatch) -> None:
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append((method, url, kwargs))
        return FakeUpstreamResponse()

    monkeypatch.setattr(app_module.requests, "request", fake_request)
    client = client_for(sink, upstream_url="http://logs.internal:8080/")
    body = read_log("indesign-single-session-1.log")

    res = client.post(
        "/v1/logs?product=IDSN",
        content=body,
        headers={
            "Content-Type": "text/plain",
            "Authorization": "Bearer upload-token",
            "User-Agent": "InDesign/19.2",
            "X-Adobe-Client": "ngl",
            "Connection": "keep-alive",
        },
    )

    assert res.status_code == 201
    assert res.json() == {"stored": True}
    assert res.headers["x-upstream-id"] == "req-42"
    assert "content-encoding" not in res.headers
    (method, url, kwargs) = calls[0]
    assert method == "POST"
    assert url == "http://logs.internal:8080/v1/logs?product=IDSN"
    assert kwargs["data"] == body.encode("utf-8")
    forwarded = {k.lower(): v for k, v in kwargs["headers"].items()}
    assert forwarded["content-type"] == "text/plain"
    assert forwarded["authorization"] == "Bearer upload-token"
    assert forwarded["user-agent"] == "InDesign/19.2"
    assert forwarded["x-adobe-client"] == "ngl"
    for hop in ("host", "connection", "content-length"):
        assert hop not in forwarded
    assert len(sink.batches) == 1


def test_upload_parses_off_the_event_loop(sink: RecordingSink, read_log, monkeypatch) -> None:
    loops = []
    real_parse = app_module.parse_bytes

    def recording_parse(body, client, matchers=None):
        try:
            loops.append(asyncio.get_running_loop())
        except RuntimeError:
            loops.append(None)
        return real_parse(body, client, matchers)

    monkeypatch.setattr(app_module, "parse_bytes", recording_parse)
    client = client_for(sink)

    res = client.post("/", content=read_log("indesign-single-session-1.log"))

    assert res.json() == {"ok": True, "sessions": 1}
    assert loops == [None]


def test_upstream_failure_is_502(sink: RecordingSink, monkeypatch) -> None:
    def fake_request(method, url, **kwargs):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(app_module.requests, "request", fake_request)
    client = client_for(sink, upstream_url="http://logs.internal:8080")

    res = client.post("/v1/logs", content=b"")

    assert res.status_code == 502


def test_without_writer_uploads_are_disabled() -> None:
    client = TestClient(create_app(TrackerConfig()))

    assert client.get("/healthz").json() == {"ok": True, "uploads": False}
