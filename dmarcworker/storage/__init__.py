from dmarcworker.storage.queue_storage import QueueStorage, StorageError
from dmarcworker.storage.memory import MemoryQueueStorage
from dmarcworker.storage.sqlite import SQLiteQueueStorage

__all__ = [
    "QueueStorage",
    "StorageError",
    "MemoryQueueStorage",
    "SQLiteQueueStorage",
]
