"""Analysis producer: classify a student message and record the IST event."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from env_validation import DEFAULT_MODEL_VERSION
from engines.ist_classifier import IstClassifier
from errors import InvalidArgument, StorageError, Unauthenticated, UpstreamUnavailable
from repositories.base import ChatHistoryRepository, IstEventRepository
from schemas import (
    AnalysisMetadata,
    AnalysisRecord,
    ChatMessage,
    ClassifierOutput,
    IntentResult,
    IstEvent,
    Trajectory,
    utcnow,
)

logger = logging.getLogger(__name__)

FALLBACK_MODEL_VERSION = "ist-fallback"
FALLBACK_NOTICE = (
    "The IST classifier is temporarily unavailable because the upstream model is overloaded. "
    "This placeholder analysis was not recorded; please try again in a bit."
)

__all__ = [
    "AnalysisOutcome",
    "FALLBACK_MODEL_VERSION",
    "FALLBACK_NOTICE",
    "IstAnalysisEngine",
    "build_fallback_analysis",
]


@dataclass
class AnalysisOutcome:
    """Result of :meth:`IstAnalysisEngine.analyze`.

    ``analysis`` is always usable. ``storage_error`` is set when the analysis
    succeeded but recording it failed; callers decide whether to surface it.
    """

    analysis: AnalysisRecord
    persisted: bool = False
    storage_error: Optional[StorageError] = None

    @property
    def fallback(self) -> bool:
        return self.analysis.metadata.fallback


def build_fallback_analysis(
    thread_id: str,
    message_id: str,
    uid: str,
    course_id: Optional[str] = None,
) -> AnalysisRecord:
    """Placeholder analysis returned while the classifier is overloaded.

    It carries no skills, a neutral trajectory and ``metadata.fallback=True``
    so it can never be mistaken for a real classification.
    """
    return AnalysisRecord(
        intent=IntentResult(labels=["UNCLASSIFIED"], primary="UNCLASSIFIED", confidence=0.0),
        skills=[],
        trajectory=Trajectory(status="NEUTRAL"),
        metadata=AnalysisMetadata(
            processed_at=utcnow(),
            model_version=FALLBACK_MODEL_VERSION,
            thread_id=thread_id,
            message_id=message_id,
            uid=uid,
            course_id=course_id,
            fallback=True,
            notice=FALLBACK_NOTICE,
        ),
    )


class IstAnalysisEngine:
    """Validates requests, calls the classifier and upserts the resulting event."""

    def __init__(
        self,
        classifier: IstClassifier,
        repository: IstEventRepository,
        *,
        chat_history: Optional[ChatHistoryRepository] = None,
        model_version: str = DEFAULT_MODEL_VERSION,
    ):
        self.classifier = classifier
        self.repository = repository
        self.chat_history = chat_history
        self.model_version = model_version

    @staticmethod
    def _validate(thread_id: Optional[str], message_text: Optional[str], uid: Optional[str]) -> None:
        if not uid or not str(uid).strip():
            raise Unauthenticated("User must be authenticated to call analyzeMessage.")
        if not thread_id or not str(thread_id).strip() or not message_text or not str(message_text).strip():
            raise InvalidArgument("threadId and messageText are required.")

    def _stamp(
        self,
        output: ClassifierOutput,
        *,
        thread_id: str,
        message_id: str,
        uid: str,
        course_id: Optional[str],
    ) -> AnalysisRecord:
        return AnalysisRecord(
            intent=output.intent,
            skills=output.skills,
            trajectory=output.trajectory,
            metadata=AnalysisMetadata(
                processed_at=utcnow(),
                model_version=self.model_version,
                thread_id=thread_id,
                message_id=message_id,
                uid=uid,
                course_id=course_id,
            ),
        )

    async def _persist(self, record: AnalysisRecord, message_text: str) -> Optional[StorageError]:
        event = IstEvent.from_analysis(record)
        try:
            await asyncio.to_thread(self.repository.upsert_event, event)
        except StorageError as exc:
            logger.error(
                "Failed to record IST event thread=%s message=%s: %s",
                record.metadata.thread_id,
                record.metadata.message_id,
                exc,
                exc_info=True,
            )
            return exc

        if self.chat_history is not None:
            self.chat_history.append_message(
                record.metadata.thread_id,
                ChatMessage(role="student", content=message_text, message_id=record.metadata.message_id),
            )
        return None

    async def analyze(
        self,
        thread_id: Optional[str],
        message_text: Optional[str],
        uid: Optional[str],
        message_id: Optional[str] = None,
        *,
        course_id: Optional[str] = None,
        course_material: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Classify ``message_text`` and upsert the IST event keyed by (thread_id, message_id).

        Raises ``Unauthenticated`` or ``InvalidArgument`` before any external
        call, and ``ClassifierError`` when classification fails for good. An
        overloaded classifier yields the fallback analysis, which is not stored.
        """
        self._validate(thread_id, message_text, uid)
        message_id = (message_id or "").strip() or uuid4().hex

        try:
            output = await self.classifier.classify(message_text, course_context=course_material)
        except UpstreamUnavailable as exc:
            logger.warning("IST classifier unavailable for thread=%s: %s", thread_id, exc)
            fallback = build_fallback_analysis(thread_id, message_id, uid, course_id)
            return AnalysisOutcome(analysis=fallback, persisted=False)

        record = self._stamp(
            output,
            thread_id=thread_id,
            message_id=message_id,
            uid=uid,
            course_id=course_id,
        )
        storage_error = await self._persist(record, message_text)
        return AnalysisOutcome(
            analysis=record,
            persisted=storage_error is None,
            storage_error=storage_error,
        )
