"""Backend selection for IST event storage and chat history.

``IST_STORAGE_MODE`` picks the event store once per process:

- ``local`` (default): JSON file at ``IST_EVENTS_PATH``
- ``relational``: SQLite database at ``IST_DB_PATH``

Unknown modes raise :class:`errors.ConfigurationError` at selection time.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional, Union

from env_validation import IstSettings, StorageMode, load_settings, parse_storage_mode
from repositories.base import ChatHistoryRepository, IstEventRepository
from repositories.chat_history import InMemoryChatHistoryRepository
from repositories.json_store import JsonIstEventRepository
from repositories.sqlite_store import SqliteIstEventRepository

logger = logging.getLogger(__name__)

__all__ = [
    "ChatHistoryRepository",
    "InMemoryChatHistoryRepository",
    "IstEventRepository",
    "JsonIstEventRepository",
    "SqliteIstEventRepository",
    "create_ist_event_repository",
    "get_chat_history_repository",
    "get_ist_event_repository",
    "reset_chat_history_repository",
    "reset_ist_event_repository",
]

_REPOSITORY_FACTORIES: Dict[StorageMode, Callable[[IstSettings], IstEventRepository]] = {
    StorageMode.LOCAL: lambda settings: JsonIstEventRepository(settings.events_path),
    StorageMode.RELATIONAL: lambda settings: SqliteIstEventRepository(
        settings.db_path, max_connections=settings.db_max_connections
    ),
}

_event_repository: Optional[IstEventRepository] = None
_event_repository_lock = threading.Lock()

_chat_history_repository: Optional[ChatHistoryRepository] = None
_chat_history_lock = threading.Lock()


def create_ist_event_repository(
    mode: Union[StorageMode, str, None] = None,
    settings: Optional[IstSettings] = None,
) -> IstEventRepository:
    """Build a new repository for ``mode`` (defaults to ``IST_STORAGE_MODE``)."""
    if isinstance(mode, StorageMode):
        selected = mode
    elif mode:
        selected = parse_storage_mode(mode)
    else:
        settings = settings or load_settings()
        selected = settings.storage_mode
    settings = settings or load_settings(storage_mode=selected)
    repository = _REPOSITORY_FACTORIES[selected](settings)
    logger.info("[IST][Repository] Using %s storage: %r", selected.value, repository)
    return repository


def get_ist_event_repository() -> IstEventRepository:
    """Return the process-wide event repository, creating it on first use."""
    global _event_repository
    repository = _event_repository
    if repository is not None:
        return repository
    with _event_repository_lock:
        if _event_repository is None:
            _event_repository = create_ist_event_repository()
        return _event_repository


def reset_ist_event_repository() -> None:
    global _event_repository
    with _event_repository_lock:
        repository, _event_repository = _event_repository, None
    close = getattr(repository, "close", None)
    if callable(close):
        close()


def get_chat_history_repository() -> ChatHistoryRepository:
    global _chat_history_repository
    repository = _chat_history_repository
    if repository is not None:
        return repository
    with _chat_history_lock:
        if _chat_history_repository is None:
            _chat_history_repository = InMemoryChatHistoryRepository()
        return _chat_history_repository


def reset_chat_history_repository() -> None:
    global _chat_history_repository
    with _chat_history_lock:
        _chat_history_repository = None
