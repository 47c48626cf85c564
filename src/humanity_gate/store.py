"""
Persistence ports for the HUMANITY GATE engine.

The engine never owns durable storage. It talks to a `RegistrationStore`
through two writes, a permanent identity record and a retention-bounded
feature vector, and one delete used by revocation. Any backend that
implements those three calls can be plugged in; `InMemoryRegistrationStore`
is the reference implementation used by the CLI and the tests.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import numpy as np
import structlog

from .data_models import IdentityRecord

# Initialize structured logger
logger = structlog.get_logger(__name__)


@runtime_checkable
class RegistrationStore(Protocol):
    """Durable storage for accepted registrations."""

    def save_identity(self, record: IdentityRecord) -> None:
        """Persist the permanent identity record. Must raise on failure."""
        ...

    def save_feature_vector(
        self, user_ref: str, vector: np.ndarray, ttl_seconds: float
    ) -> None:
        """Persist the canonical vector for at most `ttl_seconds`."""
        ...

    def delete_user(self, user_ref: str) -> bool:
        """Remove everything stored for a user."""
        ...


class InMemoryRegistrationStore:
    """
    Thread-safe, process-local registration store.

    Parameters
    ----------
    clock : Callable[[], float], default=time.time
        Wall clock used to expire feature vectors.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._identities: Dict[str, IdentityRecord] = {}
        self._vectors: Dict[str, Tuple[np.ndarray, float]] = {}

    def save_identity(self, record: IdentityRecord) -> None:
        with self._lock:
            self._identities[record.user_ref] = record
        logger.debug("Identity record saved", digest_preview=record.digest[:16] + "...")

    def save_feature_vector(
        self, user_ref: str, vector: np.ndarray, ttl_seconds: float
    ) -> None:
        expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._vectors[user_ref] = (np.array(vector, dtype=np.float64), expires_at)

    def delete_user(self, user_ref: str) -> bool:
        with self._lock:
            had_identity = self._identities.pop(user_ref, None) is not None
            vector = self._vectors.pop(user_ref, None)
        if vector is not None:
            vector[0].fill(0.0)
        return had_identity or vector is not None

    def get_identity(self, user_ref: str) -> Optional[IdentityRecord]:
        with self._lock:
            return self._identities.get(user_ref)

    def get_feature_vector(self, user_ref: str) -> Optional[np.ndarray]:
        """Return a copy of a user's vector if it has not expired."""
        now = self._clock()
        with self._lock:
            stored = self._vectors.get(user_ref)
            if stored is None or stored[1] <= now:
                return None
            return stored[0].copy()

    def purge_expired(self, now: Optional[float] = None) -> int:
        """
        Delete feature vectors whose time-to-live has passed.

        Returns
        -------
        int
            Number of vectors purged.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired: List[str] = [
                ref for ref, (_, expires_at) in self._vectors.items() if expires_at <= now
            ]
            for ref in expired:
                self._vectors.pop(ref)[0].fill(0.0)

        if expired:
            logger.info("Expired feature vectors purged", purged=len(expired))
        return len(expired)

    def identity_count(self) -> int:
        with self._lock:
            return len(self._identities)

    def vector_count(self) -> int:
        with self._lock:
            return len(self._vectors)
