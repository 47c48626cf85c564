"""
Background retention sweeping for the HUMANITY GATE engine.

Canonical vectors are kept only for the retention window; digests are kept
permanently. The sweeper periodically evicts expired vectors from the
uniqueness index and the store, and reaps capture sessions whose window
passed without a finalize call so their raw frames are wiped.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional

import structlog

from .exceptions import HumanityGateError
from .uniqueness_index import UniquenessIndex

# Initialize structured logger
logger = structlog.get_logger(__name__)


class RetentionSweeper:
    """
    Periodic eviction of expired vectors and abandoned sessions.

    Parameters
    ----------
    index : UniquenessIndex
        Index whose expired vectors are evicted.
    store : object, optional
        Registration store; purged when it offers ``purge_expired``.
    session_reaper : Callable[[], int], optional
        Callable that discards expired capture sessions, typically
        ``RegistrationEngine.reap_expired_sessions``.
    interval_seconds : float, optional
        Time between sweeps. Defaults to the index's retention config.
    clock : Callable[[], float], default=time.time
        Wall clock passed to eviction.
    """

    def __init__(
        self,
        index: UniquenessIndex,
        store: Optional[Any] = None,
        session_reaper: Optional[Callable[[], int]] = None,
        interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.index = index
        self.store = store
        self.session_reaper = session_reaper
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else index.retention.sweep_interval_seconds
        )
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self._clock = clock
        self.worker: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.sweeps = 0

    def run_once(self) -> Dict[str, int]:
        """
        Run one sweep.

        Returns
        -------
        Dict[str, int]
            Counts of evicted vectors, purged stored vectors and reaped
            sessions.
        """
        now = self._clock()
        result = {
            "evicted_vectors": self.index.evict_expired(now),
            "purged_vectors": 0,
            "reaped_sessions": 0,
        }

        purge = getattr(self.store, "purge_expired", None)
        if callable(purge):
            result["purged_vectors"] = purge(now)

        if self.session_reaper is not None:
            result["reaped_sessions"] = self.session_reaper()

        self.sweeps += 1
        logger.debug("Retention sweep completed", **result)
        return result

    def _loop(self) -> None:
        while not self.stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except HumanityGateError as e:
                # Next sweep retries; eviction is idempotent
                logger.error("Retention sweep failed", **e.to_dict())
            except Exception as e:
                logger.error(
                    "Retention sweep failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def start(self) -> None:
        """Start sweeping on a daemon thread."""
        if self.worker is not None and self.worker.is_alive():
            return
        self.stop_event.clear()
        self.worker = threading.Thread(
            target=self._loop, name="humanity-gate-retention", daemon=True
        )
        self.worker.start()
        logger.info("Retention sweeper started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 3.0) -> None:
        """Stop the sweeper thread and wait for it to exit."""
        self.stop_event.set()
        if self.worker is not None and self.worker.is_alive():
            self.worker.join(timeout=timeout)
        self.worker = None
        logger.info("Retention sweeper stopped", sweeps=self.sweeps)

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()
