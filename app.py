# app.py - IST Class Reports v1.0.0
# - POST /ist/analyze: classify one student message and upsert its IST event
# - GET  /teacher/courses/{course_id}/ist-report: aggregated, per-course skill report
# - GET  /ist/threads/{thread_id}/history: chat history of a thread

import logging
import os
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from engines.class_report import compute_teacher_class_report
from engines.ist_analysis import IstAnalysisEngine
from engines.ist_classifier import create_classifier
from env_validation import load_settings, parse_api_tokens, validate_environment
from errors import IstError, Unauthenticated
from repositories import get_chat_history_repository, get_ist_event_repository
from repositories.base import IstEventRepository
from schemas import (
    AnalyzeMessageRequest,
    AnalyzeMessageResponse,
    ChatMessage,
    ClassReportResponse,
)

logger = logging.getLogger(__name__)

TOKENS: dict[str, str] = parse_api_tokens(os.getenv("IST_API_TOKENS"))

_IDENTIFIED_PATHS = frozenset({"/ist/analyze"})
_IDENTIFIED_PREFIXES = ("/ist/threads/",)

_ANALYSIS_ENGINE: Optional[IstAnalysisEngine] = None
_ANALYSIS_ENGINE_LOCK = threading.Lock()


def get_analysis_engine() -> IstAnalysisEngine:
    global _ANALYSIS_ENGINE
    engine = _ANALYSIS_ENGINE
    if engine is not None:
        return engine
    with _ANALYSIS_ENGINE_LOCK:
        if _ANALYSIS_ENGINE is None:
            settings = load_settings()
            _ANALYSIS_ENGINE = IstAnalysisEngine(
                create_classifier(settings),
                get_ist_event_repository(),
                chat_history=get_chat_history_repository(),
                model_version=settings.model_version,
            )
        return _ANALYSIS_ENGINE


def get_event_repository() -> IstEventRepository:
    return get_ist_event_repository()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        TOKENS.update(load_settings().api_tokens)
        # Resolve the storage backend now so a bad IST_STORAGE_MODE stops startup.
        engine = get_analysis_engine()
        logger.info("IST service ready (repository: %r)", engine.repository)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="IST Class Reports", version="1.0.0", lifespan=_lifespan)


@app.exception_handler(IstError)
async def _ist_error_handler(_: Request, exc: IstError):
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _authenticate_request(request: Request) -> Optional[str]:
    header_token = _extract_token(request.headers.get("authorization"))
    if header_token and header_token in TOKENS:
        return TOKENS[header_token]
    alt_header = request.headers.get("x-token")
    if alt_header and alt_header in TOKENS:
        return TOKENS[alt_header]
    query_token = request.query_params.get("token")
    if query_token and query_token in TOKENS:
        return TOKENS[query_token]
    return None


@app.middleware("http")
async def _resolve_identity(request: Request, call_next):
    # Identity is only resolved here; handlers decide whether it is required.
    normalized_path = _normalize_path(request.url.path)
    if normalized_path in _IDENTIFIED_PATHS or normalized_path.startswith(_IDENTIFIED_PREFIXES):
        request.state.user_id = _authenticate_request(request)
    return await call_next(request)


@app.get("/health")
def health():
    settings = load_settings()
    return {"status": "ok", "storage_mode": settings.storage_mode.value}


@app.post("/ist/analyze", response_model=AnalyzeMessageResponse)
async def ist_analyze(body: AnalyzeMessageRequest, request: Request):
    uid = getattr(request.state, "user_id", None)
    outcome = await get_analysis_engine().analyze(
        body.thread_id,
        body.message_text,
        uid,
        body.message_id,
        course_id=body.course_id,
        course_material=body.course_material,
    )
    return AnalyzeMessageResponse(
        analysis=outcome.analysis,
        persisted=outcome.persisted,
        storage_error=outcome.storage_error.message if outcome.storage_error else None,
    )


@app.get("/ist/threads/{thread_id}/history", response_model=list[ChatMessage])
def ist_thread_history(thread_id: str, request: Request):
    if not getattr(request.state, "user_id", None):
        raise Unauthenticated("User must be authenticated to read chat history.")
    return get_chat_history_repository().get_history(thread_id)


@app.get("/teacher/courses/{course_id}/ist-report", response_model=ClassReportResponse)
def teacher_ist_report(
    course_id: str,
    max_skills: Optional[int] = Query(default=None, ge=0),
    gap_threshold: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
):
    settings = load_settings()
    events = get_event_repository().query_events(course_id, since=since, until=until)
    report = compute_teacher_class_report(
        events,
        course_id,
        max_skills=settings.report_max_skills if max_skills is None else max_skills,
        gap_threshold=settings.report_gap_threshold if gap_threshold is None else gap_threshold,
    )
    status = "empty" if report.total_events == 0 else "success"
    logger.info(
        "IST class report for %s: status=%s events=%d unique_skills=%d",
        course_id,
        status,
        report.total_events,
        report.unique_skills_count,
    )
    return ClassReportResponse(status=status, report=report)
