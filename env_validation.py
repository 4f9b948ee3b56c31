"""Environment variable validation and management."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from errors import ConfigurationError

logger = logging.getLogger(__name__)


class EnvironmentError(ConfigurationError):
    """Raised when required environment variables are missing or invalid."""


class StorageMode(str, Enum):
    """Recognised IST event storage backends."""

    LOCAL = "local"
    RELATIONAL = "relational"


class ClassifierMode(str, Enum):
    LLM = "llm"
    STATIC = "static"


DEFAULT_EVENTS_PATH = os.path.join("data", "ist_events.json")
DEFAULT_GPT4ALL_URL = "http://localhost:4891/v1/chat/completions"
DEFAULT_MODEL_ID = "DeepSeek-R1-Distill-Qwen-14B"
DEFAULT_MODEL_VERSION = "ist-v1"


@dataclass(frozen=True)
class IstSettings:
    storage_mode: StorageMode
    events_path: str
    db_path: str
    db_max_connections: int
    classifier_mode: ClassifierMode
    gpt4all_url: str
    model_id: str
    model_version: str
    classifier_timeout: float
    api_tokens: Dict[str, str]
    report_max_skills: int
    report_gap_threshold: float


def parse_storage_mode(value: Optional[str]) -> StorageMode:
    """Resolve ``value`` to a :class:`StorageMode`, failing fast on unknown names."""
    raw = (value or StorageMode.LOCAL.value).strip().lower()
    try:
        return StorageMode(raw)
    except ValueError:
        allowed = ", ".join(mode.value for mode in StorageMode)
        raise ConfigurationError(
            f"Unknown IST_STORAGE_MODE: {value!r}. Use one of: {allowed}."
        ) from None


def parse_classifier_mode(value: Optional[str]) -> ClassifierMode:
    raw = (value or ClassifierMode.LLM.value).strip().lower()
    try:
        return ClassifierMode(raw)
    except ValueError:
        allowed = ", ".join(mode.value for mode in ClassifierMode)
        raise ConfigurationError(
            f"Unknown IST_CLASSIFIER: {value!r}. Use one of: {allowed}."
        ) from None


def parse_api_tokens(value: Optional[str]) -> Dict[str, str]:
    """Parse ``token:uid`` pairs separated by commas."""
    tokens: Dict[str, str] = {}
    if not value:
        return tokens
    for chunk in value.split(","):
        entry = chunk.strip()
        if not entry:
            continue
        token, sep, uid = entry.partition(":")
        if not sep or not token.strip() or not uid.strip():
            logger.warning("Ignoring malformed IST_API_TOKENS entry")
            continue
        tokens[token.strip()] = uid.strip()
    return tokens


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails and ConfigurationError when a
    backend selection names an unknown option.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "IST_STORAGE_MODE": os.getenv("IST_STORAGE_MODE") or StorageMode.LOCAL.value,
        "IST_EVENTS_PATH": os.getenv("IST_EVENTS_PATH") or DEFAULT_EVENTS_PATH,
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    parse_storage_mode(os.getenv("IST_STORAGE_MODE"))
    parse_classifier_mode(os.getenv("IST_CLASSIFIER"))

    optional_vars = {
        "GPT4ALL_URL": "Chat completion endpoint used by the IST classifier",
        "IST_API_TOKENS": "Bearer tokens accepted by the analysis endpoint",
    }

    url_vars = {"GPT4ALL_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s: %r; using %s", env_name, raw, default)
        return default


def safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid float for %s: %r; using %s", env_name, raw, default)
        return default


def load_settings(storage_mode: Optional[StorageMode] = None) -> IstSettings:
    """Read the current environment into an :class:`IstSettings` snapshot.

    An explicit ``storage_mode`` replaces ``IST_STORAGE_MODE``, which is then not read.
    """
    db_path = os.getenv("IST_DB_PATH") or os.getenv("DB_PATH") or "data.db"
    return IstSettings(
        storage_mode=storage_mode or parse_storage_mode(os.getenv("IST_STORAGE_MODE")),
        events_path=os.getenv("IST_EVENTS_PATH") or DEFAULT_EVENTS_PATH,
        db_path=db_path,
        db_max_connections=max(1, safe_int("IST_DB_MAX_CONNECTIONS", 5)),
        classifier_mode=parse_classifier_mode(os.getenv("IST_CLASSIFIER")),
        gpt4all_url=os.getenv("GPT4ALL_URL", DEFAULT_GPT4ALL_URL),
        model_id=os.getenv("MODEL_ID", DEFAULT_MODEL_ID),
        model_version=os.getenv("IST_MODEL_VERSION", DEFAULT_MODEL_VERSION),
        classifier_timeout=safe_float("IST_CLASSIFIER_TIMEOUT", 30.0),
        api_tokens=parse_api_tokens(os.getenv("IST_API_TOKENS")),
        report_max_skills=safe_int("IST_REPORT_MAX_SKILLS", 10),
        report_gap_threshold=safe_float("IST_REPORT_GAP_THRESHOLD", 0.02),
    )
