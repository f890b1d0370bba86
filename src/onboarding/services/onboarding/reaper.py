from __future__ import annotations

import logging
import threading
from typing import Optional

from src.onboarding.services.onboarding.service import OnboardingService

logger = logging.getLogger("onboarding")


class StaleSessionReaper:
    """Background thread that expires idle sessions every ``interval_seconds``.

    Expiry also happens on demand whenever an owner starts or resumes a
    session, so the reaper only matters for owners who never come back.
    """

    def __init__(self, service: OnboardingService, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._service = service
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        expired = self._service.expire_all_stale_sessions()
        if expired:
            logger.info("Stale session sweep expired %s session(s)", expired)
        return expired

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="stale-session-reaper", daemon=True)
        self._thread.start()
        logger.info("Started stale session reaper (interval=%ss)", self._interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                # Keep sweeping on the next tick.
                logger.exception("Stale session sweep failed")
