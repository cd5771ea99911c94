"""Bounded, per-recipient ordered execution of notification sends."""

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class SendDispatcher:
    """Runs send callables keyed by recipient.

    Sends submitted for the same key run one at a time in submission order.
    """

    def __init__(self):
        self._failures: Deque[Dict] = deque(maxlen=100)
        self._failures_lock = threading.Lock()

    def submit(self, key: int, fn: Callable[[], None], label: str = "") -> Future:
        raise NotImplementedError

    def shutdown(self, wait: bool = True):
        pass

    def record_failure(self, key: int, label: str, error: Exception):
        logger.warning("Notification %s to user %s failed: %s", label or "send", key, error)
        with self._failures_lock:
            self._failures.append({
                "user_id": key,
                "notification_type": label or None,
                "error": str(error),
                "failed_at": datetime.now(),
            })

    def recent_failures(self) -> List[Dict]:
        with self._failures_lock:
            return list(self._failures)

    def _run(self, key: int, fn: Callable[[], None], label: str):
        try:
            fn()
        except Exception as e:
            self.record_failure(key, label, e)
            raise


class StripedDispatcher(SendDispatcher):
    """N single-thread lanes; a recipient always lands on the same lane"""

    def __init__(self, max_workers: int = 8):
        super().__init__()
        self.max_workers = max(1, max_workers)
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"fanout-{i}")
            for i in range(self.max_workers)
        ]

    def submit(self, key: int, fn: Callable[[], None], label: str = "") -> Future:
        lane = self._lanes[hash(key) % self.max_workers]
        return lane.submit(self._run, key, fn, label)

    def shutdown(self, wait: bool = True):
        for lane in self._lanes:
            lane.shutdown(wait=wait)


class SynchronousDispatcher(SendDispatcher):
    """Runs each send inline; used by tests and scripts"""

    def submit(self, key: int, fn: Callable[[], None], label: str = "") -> Future:
        future: Future = Future()
        try:
            self._run(key, fn, label)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(None)
        return future


_default_dispatcher: Optional[StripedDispatcher] = None
_default_lock = threading.Lock()


def get_default_dispatcher(max_workers: int = 8) -> StripedDispatcher:
    """Process-wide dispatcher, created on first use"""
    global _default_dispatcher
    with _default_lock:
        if _default_dispatcher is None:
            _default_dispatcher = StripedDispatcher(max_workers=max_workers)
        return _default_dispatcher


def shutdown_default_dispatcher():
    global _default_dispatcher
    with _default_lock:
        if _default_dispatcher is not None:
            _default_dispatcher.shutdown(wait=True)
            _default_dispatcher = None
