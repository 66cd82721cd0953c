# -*- coding: utf-8 -*-

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

from dmarcworker.storage.queue_storage import QueueStorage


class MemoryQueueStorage(QueueStorage):
    """Process-local queue storage, for tests and one-shot runs"""

    def __init__(self):
        self._lock = threading.Lock()
        self._transaction_lock = threading.RLock()
        self._entries: Dict[str, Any] = {}
        self._timer: Optional[int] = None

    @contextmanager
    def transaction(self):
        with self._transaction_lock:
            yield

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._entries.get(key))

    def put(self, key: str, value: Any):
        with self._lock:
            self._entries[key] = copy.deepcopy(value)

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def list(self, prefix: str) -> list[tuple[str, Any]]:
        with self._lock:
            return [
                (key, copy.deepcopy(self._entries[key]))
                for key in sorted(self._entries)
                if key.startswith(prefix)
            ]

    def get_timer(self) -> Optional[int]:
        with self._lock:
            return self._timer

    def set_timer(self, scheduled_at: Optional[int]):
        with self._lock:
            self._timer = scheduled_at
