import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.schedules.materializer import TripMaterializer

logger = logging.getLogger(__name__)


class WindowScheduler:
    """Background thread that keeps every recurring schedule's window filled.

    ``run_once`` does one pass and can be called directly; ``start`` repeats
    it every ``interval_seconds`` until ``stop``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: float = 3600,
        clock: Clock = system_clock,
        window_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.window_days = window_days
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        db = self.session_factory()
        try:
            created = TripMaterializer(db, clock=self.clock, window_days=self.window_days).materialize_active_windows()
        finally:
            db.close()
        if created:
            logger.info("Window scheduler created %d trip(s)", created)
        return created

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="window-scheduler", daemon=True)
        self._thread.start()
        logger.info("Window scheduler started, every %s seconds", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Window scheduler stopped")

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Window materialization pass failed")
            self._stop.wait(self.interval_seconds)
