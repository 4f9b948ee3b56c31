"""Pydantic schemas for IST events, message analyses and class reports."""

from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from engines.skill_normalizer import normalize_skill, skill_slug

__all__ = [
    "IntentLabel",
    "SkillRole",
    "TrajectoryStatus",
    "IntentResult",
    "SkillTag",
    "SuggestedNode",
    "Trajectory",
    "AnalysisMetadata",
    "ClassifierOutput",
    "AnalysisRecord",
    "IstEvent",
    "ChatMessage",
    "SkillStat",
    "TeacherClassReport",
    "AnalyzeMessageRequest",
    "AnalyzeMessageResponse",
    "ClassReportResponse",
    "parse_json_safe",
    "utcnow",
]

IntentLabel = Literal[
    "GREETING",
    "END_CONVERSATION",
    "ASK_EXPLANATION",
    "ASK_QUESTION",
    "PROVIDE_ANSWER",
    "OFF_TOPIC",
    "UNCLASSIFIED",
]
SkillRole = Literal["FOCUS", "PREREQUISITE", "RELATED"]
TrajectoryStatus = Literal["ON_TRACK", "OFF_TRACK", "NEUTRAL"]

_CAMEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp_unit(value: Any) -> Any:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return value
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return max(0.0, min(1.0, number))


class IntentResult(BaseModel):
    model_config = _CAMEL_CONFIG

    labels: List[IntentLabel] = Field(default_factory=list)
    primary: IntentLabel = Field(description="Primary classified intent of the student's message.")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence of the intent classification.")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Any:
        return _clamp_unit(value)

    @field_validator("primary", mode="before")
    @classmethod
    def _upper_primary(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _ensure_primary_listed(self) -> "IntentResult":
        if self.primary not in self.labels:
            self.labels.insert(0, self.primary)
        return self


class SkillTag(BaseModel):
    model_config = _CAMEL_CONFIG

    id: str = Field(description="Stable slug identifying the skill.")
    display_name: str = Field(description="Human readable skill label as shown to teachers.")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    role: SkillRole = "RELATED"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Any:
        return _clamp_unit(value)

    @field_validator("role", mode="before")
    @classmethod
    def _upper_role(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class SuggestedNode(BaseModel):
    model_config = _CAMEL_CONFIG

    id: str
    reason: str = ""
    priority: int = Field(default=1, ge=1, description="1 is the most urgent suggestion.")


class Trajectory(BaseModel):
    model_config = _CAMEL_CONFIG

    current_nodes: List[str] = Field(default_factory=list)
    suggested_next_nodes: List[SuggestedNode] = Field(default_factory=list)
    status: TrajectoryStatus = "NEUTRAL"
    reasoning: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class AnalysisMetadata(BaseModel):
    model_config = _CAMEL_CONFIG

    processed_at: datetime = Field(default_factory=utcnow)
    model_version: str
    thread_id: str
    message_id: str
    uid: str
    course_id: str | None = None
    fallback: bool = Field(
        default=False,
        description="True when the analysis is a placeholder returned while the classifier was unavailable.",
    )
    notice: str | None = None


def _coerce_skill_entries(value: Any) -> Any:
    if isinstance(value, dict) and "items" in value:
        value = value["items"]
    if not isinstance(value, list):
        return value
    coerced: list[Any] = []
    for entry in value:
        if isinstance(entry, str):
            key = normalize_skill(entry)
            if key is None:
                continue
            coerced.append({"id": skill_slug(key), "displayName": " ".join(entry.split())})
        elif isinstance(entry, dict) and "id" not in entry:
            label = entry.get("displayName") or entry.get("display_name")
            key = normalize_skill(label)
            if key is None:
                continue
            coerced.append({**entry, "id": skill_slug(key)})
        else:
            coerced.append(entry)
    return coerced


class ClassifierOutput(BaseModel):
    """Structured result returned by an IST classifier for one message."""

    model_config = _CAMEL_CONFIG

    intent: IntentResult
    skills: List[SkillTag] = Field(default_factory=list)
    trajectory: Trajectory = Field(default_factory=Trajectory)

    @field_validator("skills", mode="before")
    @classmethod
    def _coerce_skills(cls, value: Any) -> Any:
        return _coerce_skill_entries(value)


class AnalysisRecord(ClassifierOutput):
    """Classifier output stamped with processing metadata."""

    metadata: AnalysisMetadata

    @property
    def key(self) -> tuple[str, str]:
        return (self.metadata.thread_id, self.metadata.message_id)


class IstEvent(BaseModel):
    """One stored IST event. ``skills`` is deliberately untyped."""

    model_config = {**_CAMEL_CONFIG, "extra": "ignore"}

    id: str
    course_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    skills: Any = None
    thread_id: str | None = None
    message_id: str | None = None
    uid: str | None = None
    intent: str | None = None
    trajectory_status: str | None = None
    analysis: Dict[str, Any] | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def from_analysis(cls, record: AnalysisRecord) -> "IstEvent":
        meta = record.metadata
        return cls(
            id=f"{meta.thread_id}:{meta.message_id}",
            course_id=meta.course_id,
            created_at=meta.processed_at,
            skills=[skill.display_name for skill in record.skills],
            thread_id=meta.thread_id,
            message_id=meta.message_id,
            uid=meta.uid,
            intent=record.intent.primary,
            trajectory_status=record.trajectory.status,
            analysis=record.model_dump(mode="json", by_alias=True),
            updated_at=meta.processed_at,
        )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ChatMessage(BaseModel):
    model_config = _CAMEL_CONFIG

    role: Literal["student", "tutor", "system"] = "student"
    content: str
    message_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class SkillStat(BaseModel):
    model_config = _CAMEL_CONFIG

    skill: str
    count: int = Field(ge=0)
    share: float = Field(ge=0.0, le=1.0, description="Share of all skill assignments, not of events.")


class TeacherClassReport(BaseModel):
    model_config = _CAMEL_CONFIG

    course_id: str
    total_events: int = 0
    events_with_skills: int = 0
    unique_skills_count: int = 0
    total_skill_assignments: int = 0
    gap_threshold: float = 0.02
    top_skills: List[SkillStat] = Field(default_factory=list)
    gaps: List[SkillStat] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class AnalyzeMessageRequest(BaseModel):
    # Emptiness is checked by the analysis engine so it can answer with invalid-argument.
    model_config = _CAMEL_CONFIG

    thread_id: str | None = None
    message_text: str | None = None
    message_id: str | None = None
    course_id: str | None = None
    course_material: str | None = None


class AnalyzeMessageResponse(BaseModel):
    model_config = _CAMEL_CONFIG

    analysis: AnalysisRecord
    persisted: bool
    storage_error: str | None = None


class ClassReportResponse(BaseModel):
    model_config = _CAMEL_CONFIG

    status: Literal["success", "empty"]
    report: TeacherClassReport


_T = TypeVar("_T", bound=BaseModel)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", flags=re.DOTALL)


def _strip_wrappers(text: str) -> str:
    cleaned = _THINK_RE.sub("", text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            _, end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        return text[start:end], start, end
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse model output ``text`` into ``model``.

    ``<think>`` blocks and a surrounding Markdown code fence are removed first.
    When the remainder is not valid JSON for ``model`` the first JSON object is
    extracted, provided nothing but whitespace follows it.
    """
    cleaned = _strip_wrappers(text)
    first_error: Exception | None = None
    try:
        return model.model_validate_json(cleaned)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(cleaned)
    except ValueError:
        raise first_error from None

    if cleaned[end:].strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    return model.model_validate_json(snippet)
