"""In-process chat history store."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Deque, Dict, List

from schemas import ChatMessage


class InMemoryChatHistoryRepository:
    """Keeps the most recent messages per thread for the lifetime of the process.

    Unknown threads have an empty history. Nothing survives a restart.
    """

    def __init__(self, max_messages_per_thread: int = 200):
        self.max_messages_per_thread = max(1, int(max_messages_per_thread))
        self._threads: Dict[str, Deque[ChatMessage]] = defaultdict(
            lambda: deque(maxlen=self.max_messages_per_thread)
        )
        self._lock = threading.Lock()

    def get_history(self, thread_id: str) -> List[ChatMessage]:
        with self._lock:
            if thread_id not in self._threads:
                return []
            return list(self._threads[thread_id])

    def append_message(self, thread_id: str, message: ChatMessage) -> None:
        with self._lock:
            self._threads[thread_id].append(message)
