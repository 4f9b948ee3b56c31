"""FastAPI endpoint tests for IST analysis, chat history and class reports."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
from engines.ist_analysis import IstAnalysisEngine
from engines.ist_classifier import StaticIstClassifier
from errors import ClassifierError, StorageUnavailableError, UpstreamUnavailable
from repositories import InMemoryChatHistoryRepository, JsonIstEventRepository
from schemas import IstEvent

TOKEN = "secret-token"
BASE = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _serialize_response(messages):
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _run_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    headers: Optional[dict] = None,
):
    body = b""
    raw_headers = [(b"host", b"testserver")]
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode(), value.encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        raw_headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": raw_headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    async def _call():
        await app.app(scope, receive, send)
        return _serialize_response(messages)

    return asyncio.run(_call())


def _auth(token=TOKEN):
    return {"Authorization": f"Bearer {token}"}


class _FailingClassifier:
    def __init__(self, error):
        self.error = error

    async def classify(self, message_text, course_context=None):
        raise self.error


class _UnreachableRepository:
    def query_events(self, course_id, *, since=None, until=None):
        raise StorageUnavailableError("connection refused")

    def upsert_event(self, event):
        raise StorageUnavailableError("connection refused")


@pytest.fixture
def service(ist_env, monkeypatch):
    repository = JsonIstEventRepository(ist_env / "ist_events.json")
    history = InMemoryChatHistoryRepository()
    engine = IstAnalysisEngine(StaticIstClassifier(), repository, chat_history=history, model_version="ist-test")
    monkeypatch.setattr(app, "TOKENS", {TOKEN: "teacher-anna"})
    monkeypatch.setattr(app, "_ANALYSIS_ENGINE", engine)
    monkeypatch.setattr(app, "get_chat_history_repository", lambda: history)
    return engine


def _analyze_body(**overrides):
    body = {
        "threadId": "thread-1",
        "messageId": "m1",
        "messageText": "Can you explain Bayes theorem?",
        "courseId": "stats-101",
    }
    body.update(overrides)
    return body


def test_health(service):
    status, payload = _run_app("GET", "/health")
    assert status == 200
    assert payload == {"status": "ok", "storage_mode": "local"}


def test_analyze_requires_authentication(service):
    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body())
    assert status == 401
    assert payload["code"] == "unauthenticated"

    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth("wrong"))
    assert status == 401


def test_analyze_rejects_empty_message(service):
    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(messageText="  "), headers=_auth())
    assert status == 400
    assert payload["code"] == "invalid-argument"

    status, payload = _run_app("POST", "/ist/analyze", payload={"messageText": "Hi"}, headers=_auth())
    assert status == 400


def test_analyze_records_the_event(service):
    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth())

    assert status == 200
    assert payload["persisted"] is True
    assert payload["storageError"] is None
    analysis = payload["analysis"]
    assert analysis["intent"]["primary"] == "ASK_EXPLANATION"
    assert [skill["displayName"] for skill in analysis["skills"]] == ["Bayes Theorem", "Probability"]
    assert analysis["metadata"]["uid"] == "teacher-anna"
    assert analysis["metadata"]["fallback"] is False

    event = service.repository.get_event("thread-1", "m1")
    assert event is not None
    assert event.course_id == "stats-101"


@pytest.mark.parametrize(
    "headers, query",
    [
        ({"X-Token": TOKEN}, None),
        (None, {"token": TOKEN}),
        ({"Authorization": f"Token {TOKEN}"}, None),
    ],
)
def test_analyze_accepts_alternative_token_locations(service, headers, query):
    status, _ = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=headers, query=query)
    assert status == 200


def test_analyze_returns_fallback_when_classifier_is_overloaded(service, monkeypatch):
    monkeypatch.setattr(service, "classifier", _FailingClassifier(UpstreamUnavailable("HTTP 503")))

    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth())

    assert status == 200
    assert payload["persisted"] is False
    assert payload["analysis"]["metadata"]["fallback"] is True
    assert payload["analysis"]["intent"]["primary"] == "UNCLASSIFIED"
    assert service.repository.get_event("thread-1", "m1") is None


def test_analyze_surfaces_classifier_errors(service, monkeypatch):
    monkeypatch.setattr(service, "classifier", _FailingClassifier(ClassifierError("Classifier HTTP 500")))

    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth())

    assert status == 502
    assert payload == {"detail": "Classifier HTTP 500", "code": "classifier-error"}


def test_analyze_reports_storage_failures_alongside_the_analysis(service, monkeypatch):
    monkeypatch.setattr(service, "repository", _UnreachableRepository())

    status, payload = _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth())

    assert status == 200
    assert payload["persisted"] is False
    assert payload["storageError"] == "connection refused"
    assert payload["analysis"]["skills"]


def test_thread_history(service):
    status, payload = _run_app("GET", "/ist/threads/thread-1/history")
    assert status == 401

    _run_app("POST", "/ist/analyze", payload=_analyze_body(), headers=_auth())
    status, payload = _run_app("GET", "/ist/threads/thread-1/history", headers=_auth())

    assert status == 200
    assert [(m["role"], m["content"], m["messageId"]) for m in payload] == [
        ("student", "Can you explain Bayes theorem?", "m1")
    ]

    status, payload = _run_app("GET", "/ist/threads/unknown/history", headers=_auth())
    assert status == 200
    assert payload == []


def _seed_events(path):
    store = JsonIstEventRepository(path)
    store.append_event(IstEvent(id="e1", course_id="stats-101", skills=["Bayes Theorem", "bayes   theorem"], created_at=BASE))
    store.append_event(IstEvent(id="e2", course_id="stats-101", skills=["Probability"], created_at=BASE + timedelta(hours=1)))
    store.append_event(IstEvent(id="e3", course_id="stats-101", skills=[], created_at=BASE + timedelta(hours=2)))
    store.append_event(IstEvent(id="e4", course_id="bpmn-201", skills=["Swimlanes"], created_at=BASE))


def test_report_for_course_without_events_is_empty(ist_env):
    status, payload = _run_app("GET", "/teacher/courses/stats-101/ist-report")

    assert status == 200
    assert payload["status"] == "empty"
    report = payload["report"]
    assert report["totalEvents"] == 0
    assert report["topSkills"] == []
    assert report["gaps"] == []


def test_report_aggregates_stored_events(ist_env):
    _seed_events(ist_env / "ist_events.json")

    status, payload = _run_app("GET", "/teacher/courses/stats-101/ist-report")

    assert status == 200
    assert payload["status"] == "success"
    report = payload["report"]
    assert report["courseId"] == "stats-101"
    assert report["totalEvents"] == 3
    assert report["eventsWithSkills"] == 2
    assert report["uniqueSkillsCount"] == 2
    assert report["topSkills"] == [
        {"skill": "bayes theorem", "count": 1, "share": 0.5},
        {"skill": "probability", "count": 1, "share": 0.5},
    ]
    assert report["gaps"] == []


def test_report_options_and_time_range(ist_env):
    _seed_events(ist_env / "ist_events.json")

    status, payload = _run_app(
        "GET",
        "/teacher/courses/stats-101/ist-report",
        query={"max_skills": 1, "gap_threshold": 0.6, "since": (BASE + timedelta(minutes=30)).isoformat()},
    )

    assert status == 200
    report = payload["report"]
    assert report["totalEvents"] == 2
    assert [stat["skill"] for stat in report["topSkills"]] == ["probability"]
    assert report["gapThreshold"] == 0.6


@pytest.mark.parametrize("query", [{"max_skills": -1}, {"gap_threshold": 1.5}, {"since": "not-a-date"}])
def test_report_rejects_invalid_options(ist_env, query):
    status, _ = _run_app("GET", "/teacher/courses/stats-101/ist-report", query=query)
    assert status == 422


def test_report_distinguishes_malformed_source_data(ist_env):
    (ist_env / "ist_events.json").write_text("{broken", encoding="utf-8")

    status, payload = _run_app("GET", "/teacher/courses/stats-101/ist-report")

    assert status == 500
    assert payload["code"] == "malformed-source-data"


def test_report_distinguishes_unreachable_backend(ist_env, monkeypatch):
    monkeypatch.setattr(app, "get_event_repository", lambda: _UnreachableRepository())

    status, payload = _run_app("GET", "/teacher/courses/stats-101/ist-report")

    assert status == 503
    assert payload["code"] == "storage-unavailable"


def test_report_with_unknown_storage_mode_is_a_configuration_error(ist_env, monkeypatch):
    monkeypatch.setenv("IST_STORAGE_MODE", "firestore")

    status, payload = _run_app("GET", "/teacher/courses/stats-101/ist-report")

    assert status == 500
    assert payload["code"] == "configuration-error"
