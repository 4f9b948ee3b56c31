"""IST event storage in a local JSON file.

The file holds a JSON array of camelCase event objects, the same shape as the
mock datasets used for teacher reports. It is rewritten atomically on every
write.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from errors import MalformedEventDataError, StorageError, StorageUnavailableError
from repositories.base import as_utc, require_upsert_key, within_range
from schemas import IstEvent, utcnow

logger = logging.getLogger(__name__)

_PATH_LOCKS: Dict[str, threading.RLock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
        return lock


class JsonIstEventRepository:
    """File-backed :class:`repositories.base.IstEventRepository`."""

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path).expanduser()
        self._lock = _lock_for(self.path)

    def __repr__(self) -> str:
        return f"JsonIstEventRepository({str(self.path)!r})"

    # -------------- raw file access --------------
    def _load_raw(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot read IST events from {self.path}: {exc}") from exc
        if not text.strip():
            return []
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedEventDataError(f"IST event file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise MalformedEventDataError(f"IST event file {self.path} must contain a JSON array.")
        for index, entry in enumerate(payload):
            if not isinstance(entry, dict):
                raise MalformedEventDataError(
                    f"IST event #{index} in {self.path} is {type(entry).__name__}, expected an object."
                )
        return payload

    def _write_raw(self, records: List[Dict[str, Any]]) -> None:
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(records, handle, ensure_ascii=False, indent=2, default=str)
                handle.write("\n")
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot write IST events to {self.path}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temporary file %s", tmp_name)

    @staticmethod
    def _to_event(raw: Dict[str, Any]) -> IstEvent:
        try:
            return IstEvent.model_validate(raw)
        except ValidationError as exc:
            raise MalformedEventDataError(f"Invalid IST event record: {exc}") from exc

    @staticmethod
    def _course_of(raw: Dict[str, Any]) -> Any:
        return raw["courseId"] if "courseId" in raw else raw.get("course_id")

    @staticmethod
    def _matches_key(raw: Dict[str, Any], thread_id: str, message_id: str) -> bool:
        return (
            (raw.get("threadId") or raw.get("thread_id")) == thread_id
            and (raw.get("messageId") or raw.get("message_id")) == message_id
        )

    # -------------- repository API --------------
    def append_event(self, event: IstEvent) -> None:
        with self._lock:
            records = self._load_raw()
            if any(str(raw.get("id")) == event.id for raw in records):
                raise StorageError(f"IST event {event.id} already exists.")
            records.append(event.to_json_dict())
            self._write_raw(records)

    def upsert_event(self, event: IstEvent) -> None:
        thread_id, message_id = require_upsert_key(event)
        with self._lock:
            records = self._load_raw()
            payload = event.to_json_dict()
            for index, raw in enumerate(records):
                if not self._matches_key(raw, thread_id, message_id):
                    continue
                payload["id"] = raw.get("id", payload["id"])
                payload["createdAt"] = raw.get("createdAt") or raw.get("created_at") or payload["createdAt"]
                payload["updatedAt"] = utcnow().isoformat()
                records[index] = payload
                break
            else:
                records.append(payload)
            self._write_raw(records)
        logger.debug("Upserted IST event for thread=%s message=%s", thread_id, message_id)

    def query_events(
        self,
        course_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[IstEvent]:
        with self._lock:
            records = self._load_raw()
        # Only records of the requested course are validated.
        events = [self._to_event(raw) for raw in records if self._course_of(raw) == course_id]
        selected = [event for event in events if within_range(event.created_at, since, until)]
        selected.sort(key=lambda event: (as_utc(event.created_at), event.id))
        return selected

    def get_event(self, thread_id: str, message_id: str) -> Optional[IstEvent]:
        with self._lock:
            records = self._load_raw()
        for raw in records:
            if self._matches_key(raw, thread_id, message_id):
                return self._to_event(raw)
        return None
