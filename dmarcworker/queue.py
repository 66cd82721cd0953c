# -*- coding: utf-8 -*-

"""A durable delayed-delivery queue for acknowledgment replies"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from dmarcworker.log import logger
from dmarcworker.reply import ReplySender
from dmarcworker.storage import QueueStorage, StorageError
from dmarcworker.types import FireResult, PendingJob, ReplyMessage

JOB_KEY_PREFIX = "job:"
MAX_ATTEMPTS = 5
BASE_BACKOFF = 5 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _earliest(current: Optional[int], candidate: int) -> int:
    if current is None or candidate < current:
        return candidate
    return current


class ReplyQueue(object):
    """
    Holds pending replies keyed by report ID and delivers them when due

    The queue is driven by one timer for all jobs. The timer is stored with
    the jobs and holds the earliest time any job may be due; callers fire the
    queue when it expires. Firing early is harmless.

    Enqueueing and firing each run inside one storage transaction, so
    queues in other threads or processes that share the storage never see
    or overwrite a half-finished update. A fire holds the transaction while
    it sends, and a concurrent enqueue waits for it to finish.
    """

    def __init__(
        self,
        storage: QueueStorage,
        sender: ReplySender,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        base_backoff: int = BASE_BACKOFF,
        send_timeout: Optional[float] = 30.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Args:
            storage: Durable storage for jobs and the timer
            sender: Delivers a reply, raising on failure
            max_attempts (int): Failed sends before a job is dropped
            base_backoff (int): Delay before the first retry, in milliseconds;
                doubled for every further failure
            send_timeout (float): Seconds to wait for one send before counting
                it as failed, or ``None`` to wait indefinitely
            clock: Returns the current time in epoch milliseconds
        """
        self.storage = storage
        self.sender = sender
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.send_timeout = send_timeout
        self._clock = clock or _now_ms

    def now(self) -> int:
        return self._clock()

    def backoff(self, attempts: int) -> int:
        """Milliseconds to wait after the given number of failed attempts"""
        return self.base_backoff * 2 ** (attempts - 1)

    def enqueue(self, message: ReplyMessage) -> None:
        """
        Adds a reply to the queue, replacing any pending reply for the same
        report

        Args:
            message (dict): The reply to send at ``message["send_at"]``
        """
        key = JOB_KEY_PREFIX + message["report_id"]
        job: PendingJob = {"message": dict(message), "attempts": 0}
        with self.storage.transaction():
            self.storage.put(key, job)
            current_timer = self.storage.get_timer()
            if current_timer is None or message["send_at"] < current_timer:
                self.storage.set_timer(message["send_at"])
        logger.debug(
            "Queued reply for report {0} at {1}".format(
                message["report_id"], message["send_at"]
            )
        )

    def _send(self, message: ReplyMessage):
        if self.send_timeout is None:
            self.sender.send(message)
            return
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(self.sender.send, message)
            try:
                future.result(timeout=self.send_timeout)
            except FutureTimeoutError:
                raise TimeoutError(
                    "send timed out after {0} seconds".format(self.send_timeout)
                )
        finally:
            executor.shutdown(wait=False)

    def fire(self) -> FireResult:
        """
        Sends every due reply and reschedules the timer

        Failed sends are retried with exponential backoff and dropped after
        ``max_attempts`` failures. Storage errors are not handled here.

        Returns:
            dict: The report IDs that were sent, retried and dropped, and the
            new timer value
        """
        result: FireResult = {
            "sent": [],
            "retried": [],
            "dropped": [],
            "next_wake": None,
        }
        with self.storage.transaction():
            now = self.now()
            next_wake = None
            for key, job in self.storage.list(JOB_KEY_PREFIX):
                message = job["message"]
                report_id = message["report_id"]
                if message["send_at"] > now:
                    next_wake = _earliest(next_wake, message["send_at"])
                    continue

                try:
                    self._send(message)
                except Exception as error:
                    attempts = job["attempts"] + 1
                    if attempts >= self.max_attempts:
                        logger.error(
                            "Dropping reply for report {0} after {1} attempts: "
                            "{2}".format(report_id, attempts, error.__str__())
                        )
                        self.storage.delete(key)
                        result["dropped"].append(report_id)
                        continue
                    retry_at = now + self.backoff(attempts)
                    retry_message = dict(message)
                    retry_message["send_at"] = retry_at
                    updated_job: PendingJob = {
                        "message": retry_message,
                        "attempts": attempts,
                    }
                    self.storage.put(key, updated_job)
                    logger.warning(
                        "Reply for report {0} failed (attempt {1}), retrying "
                        "at {2}: {3}".format(
                            report_id, attempts, retry_at, error.__str__()
                        )
                    )
                    next_wake = _earliest(next_wake, retry_at)
                    result["retried"].append(report_id)
                else:
                    self.storage.delete(key)
                    result["sent"].append(report_id)

            self.storage.set_timer(next_wake)
            result["next_wake"] = next_wake

        return result

    def pending_jobs(self) -> list[PendingJob]:
        return [job for _, job in self.storage.list(JOB_KEY_PREFIX)]

    def get_job(self, report_id: str) -> Optional[PendingJob]:
        return self.storage.get(JOB_KEY_PREFIX + report_id)

    def next_wake(self) -> Optional[int]:
        return self.storage.get_timer()


class QueueRunner(object):
    """Fires a reply queue whenever its timer expires"""

    def __init__(self, queue: ReplyQueue, check_timeout: float = 60):
        """
        Args:
            queue: The queue to run
            check_timeout (float): Longest time to sleep between timer checks,
                in seconds
        """
        self.queue = queue
        self.check_timeout = check_timeout
        self._wakeup = threading.Event()
        self._stopped = threading.Event()

    def enqueue(self, message: ReplyMessage):
        """Enqueues a reply and wakes the watch loop to reschedule"""
        self.queue.enqueue(message)
        self._wakeup.set()

    def run_pending(self) -> Optional[FireResult]:
        """Fires the queue if its timer has expired"""
        next_wake = self.queue.next_wake()
        if next_wake is None or next_wake > self.queue.now():
            return None
        return self.queue.fire()

    def _seconds_until_wake(self) -> float:
        next_wake = self.queue.next_wake()
        if next_wake is None:
            return self.check_timeout
        remaining = (next_wake - self.queue.now()) / 1000
        return max(0.0, min(self.check_timeout, remaining))

    def watch(self):
        """Runs the queue until ``stop`` is called"""
        logger.info("Watching reply queue")
        self._stopped.clear()
        while not self._stopped.is_set():
            delay = self.check_timeout
            try:
                self.run_pending()
                delay = self._seconds_until_wake()
            except StorageError as e:
                logger.error("Reply queue storage error: {0}".format(e.__str__()))
            self._wakeup.wait(delay)
            self._wakeup.clear()
        logger.info("Stopped watching reply queue")

    def stop(self):
        self._stopped.set()
        self._wakeup.set()
