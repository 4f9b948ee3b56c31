"""Classifiers turning a student message into intent, skills and trajectory."""

from __future__ import annotations

import json
import logging
from time import perf_counter
from typing import Any, Dict, Optional, Protocol, get_args
from uuid import uuid4

import httpx
from pydantic import ValidationError

from env_validation import ClassifierMode, IstSettings
from errors import ClassifierError, ConfigurationError, UpstreamUnavailable
from prompts.analysis import AnalysisPrompt, get_prompt
from schemas import ClassifierOutput, IntentLabel, SkillRole, TrajectoryStatus, parse_json_safe

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("ist.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

# Overload and gateway timeouts are retried by the caller later, not surfaced as failures.
TRANSIENT_STATUS_CODES = frozenset({429, 503, 504})

_CLASSIFIABLE_INTENTS = tuple(label for label in get_args(IntentLabel) if label != "UNCLASSIFIED")

__all__ = [
    "IstClassifier",
    "LlmIstClassifier",
    "StaticIstClassifier",
    "TRANSIENT_STATUS_CODES",
    "create_classifier",
]


class IstClassifier(Protocol):
    async def classify(self, message_text: str, course_context: Optional[str] = None) -> ClassifierOutput:
        ...


def _extract_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        try:
            content = data["choices"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ClassifierError(f"Unexpected LLM response: {str(data)[:300]}") from None
    if not isinstance(content, str):
        raise ClassifierError(f"LLM response content is {type(content).__name__}, expected text.")
    return content


class LlmIstClassifier:
    """Classifier backed by an OpenAI-style chat completion endpoint (GPT4All)."""

    def __init__(
        self,
        api_url: str,
        model_id: str,
        *,
        timeout: float = 30.0,
        prompt: Optional[AnalysisPrompt] = None,
        client: Optional[httpx.AsyncClient] = None,
        temperature: float = 0.0,
    ):
        self.api_url = api_url
        self.model_id = model_id
        self.timeout = timeout
        self.prompt = prompt or get_prompt()
        self.temperature = temperature
        self._client = client

    def _payload(self, message_text: str, course_context: Optional[str]) -> Dict[str, Any]:
        messages = self.prompt.build_messages(
            message_text,
            course_context,
            intent_labels=_CLASSIFIABLE_INTENTS,
            skill_roles=get_args(SkillRole),
            trajectory_statuses=get_args(TrajectoryStatus),
        )
        return {"model": self.model_id, "messages": messages, "temperature": self.temperature}

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.api_url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload)

    async def classify(self, message_text: str, course_context: Optional[str] = None) -> ClassifierOutput:
        payload = self._payload(message_text, course_context)
        request_id = str(uuid4())
        start = perf_counter()
        outcome = "error"
        status_code: Optional[int] = None
        try:
            try:
                response = await self._post(payload)
                status_code = response.status_code
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code in TRANSIENT_STATUS_CODES:
                    outcome = "unavailable"
                    raise UpstreamUnavailable(
                        f"Classifier overloaded (HTTP {exc.response.status_code})."
                    ) from exc
                raise ClassifierError(
                    f"Classifier HTTP {exc.response.status_code}: {exc.response.text[:300]}"
                ) from exc
            except httpx.TimeoutException as exc:
                outcome = "timeout"
                raise UpstreamUnavailable("Classifier request timed out.") from exc
            except httpx.RequestError as exc:
                outcome = "unavailable"
                raise UpstreamUnavailable(f"Classifier unreachable: {exc}") from exc
            except ValueError as exc:
                raise ClassifierError(f"Classifier returned non-JSON body: {exc}") from exc

            content = _extract_content(data)
            try:
                result = parse_json_safe(content, ClassifierOutput)
            except (ValidationError, ValueError) as exc:
                raise ClassifierError(f"Classifier output does not match the analysis schema: {exc}") from exc
            outcome = "ok"
            return result
        finally:
            log_record = {
                "event": "ist_classify",
                "request_id": request_id,
                "model": self.model_id,
                "prompt_version": self.prompt.prompt_version,
                "status_code": status_code,
                "outcome": outcome,
                "latency_ms": int((perf_counter() - start) * 1000),
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


class StaticIstClassifier:
    """Deterministic classifier for local development and demos."""

    def __init__(self, output: Optional[Dict[str, Any]] = None):
        self._output = output or {
            "intent": {"labels": ["ASK_EXPLANATION"], "primary": "ASK_EXPLANATION", "confidence": 0.95},
            "skills": [
                {"id": "bayes-theorem", "displayName": "Bayes Theorem", "confidence": 0.9, "role": "FOCUS"},
                {"id": "probability", "displayName": "Probability", "confidence": 0.98, "role": "PREREQUISITE"},
            ],
            "trajectory": {
                "currentNodes": ["introduction-to-probability"],
                "suggestedNextNodes": [
                    {
                        "id": "bayes-theorem-explained",
                        "reason": "The user is asking a direct question about this topic.",
                        "priority": 1,
                    }
                ],
                "status": "ON_TRACK",
            },
        }

    async def classify(self, message_text: str, course_context: Optional[str] = None) -> ClassifierOutput:
        return ClassifierOutput.model_validate(self._output)


def create_classifier(settings: IstSettings) -> IstClassifier:
    if settings.classifier_mode is ClassifierMode.STATIC:
        return StaticIstClassifier()
    if settings.classifier_mode is ClassifierMode.LLM:
        return LlmIstClassifier(
            settings.gpt4all_url,
            settings.model_id,
            timeout=settings.classifier_timeout,
        )
    raise ConfigurationError(f"Unsupported classifier mode: {settings.classifier_mode}")
