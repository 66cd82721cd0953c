# -*- coding: utf-8 -*-

from __future__ import annotations

from abc import ABC
from typing import Any, ContextManager, Optional


class StorageError(RuntimeError):
    """Raised when queue storage cannot be read or written"""


class QueueStorage(ABC):
    """
    Interface for the durable key-value storage behind a reply queue

    Values are JSON-serializable objects. The timer is a single optional
    epoch-millisecond value for the whole queue.
    """

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def put(self, key: str, value: Any):
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def list(self, prefix: str) -> list[tuple[str, Any]]:
        """Returns ``(key, value)`` pairs whose key starts with ``prefix``,
        ordered by key"""
        raise NotImplementedError

    def get_timer(self) -> Optional[int]:
        raise NotImplementedError

    def set_timer(self, scheduled_at: Optional[int]):
        raise NotImplementedError

    def transaction(self) -> ContextManager[None]:
        """
        Returns a context manager that holds an exclusive write lock on the
        queue until it exits

        Every queue sharing the underlying store waits for the lock, so a
        read-modify-write inside the block is atomic across instances and
        processes. Nested calls in the same thread join the outer block.
        """
        raise NotImplementedError

    def close(self):
        return
