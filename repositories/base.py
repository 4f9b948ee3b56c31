"""Capability interfaces implemented by IST storage backends."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from errors import InvalidArgument
from schemas import ChatMessage, IstEvent


@runtime_checkable
class IstEventRepository(Protocol):
    """Append/query access to IST events.

    Implementations raise :class:`errors.StorageError` (or a subclass) on I/O
    failures. Writes sharing a ``(thread_id, message_id)`` key serialize inside
    the backend; the last upsert wins.
    """

    def append_event(self, event: IstEvent) -> None:
        ...

    def upsert_event(self, event: IstEvent) -> None:
        ...

    def query_events(
        self,
        course_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[IstEvent]:
        ...

    def get_event(self, thread_id: str, message_id: str) -> Optional[IstEvent]:
        ...


@runtime_checkable
class ChatHistoryRepository(Protocol):
    def get_history(self, thread_id: str) -> List[ChatMessage]:
        ...

    def append_message(self, thread_id: str, message: ChatMessage) -> None:
        ...


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def within_range(
    created_at: datetime,
    since: Optional[datetime],
    until: Optional[datetime],
) -> bool:
    """``since`` is inclusive, ``until`` exclusive."""
    moment = as_utc(created_at)
    if since is not None and moment < as_utc(since):
        return False
    if until is not None and moment >= as_utc(until):
        return False
    return True


def require_upsert_key(event: IstEvent) -> tuple[str, str]:
    if not event.thread_id or not event.message_id:
        raise InvalidArgument("IST events need thread_id and message_id to be upserted.")
    return event.thread_id, event.message_id
