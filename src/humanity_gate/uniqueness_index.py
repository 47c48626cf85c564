"""
Similarity-searchable uniqueness registry for the HUMANITY GATE engine.

Every accepted fingerprint lands here. The index answers "is any
registered fingerprint within d_min of this one?" without scanning the
whole population, and makes the lookup-then-insert of a registration a
single atomic step so that two near-identical registrations racing each
other can never both be accepted.

Structure
---------
* Random-hyperplane locality-sensitive hashing over unit vectors:
  ``n_tables`` tables, each keyed by ``n_bits`` projection signs. A lookup
  probes every table's primary bucket plus all single-bit-flip neighbours,
  then computes exact Euclidean distances on the candidates.
* An arena of striped locks keyed by a coarse hash of (table, bucket).
  A registration locks exactly the stripes of the buckets it probes, in
  sorted order, with one shared deadline. Registrations in unrelated
  regions of the space do not block each other.
* A digest map that outlives vector retention. Once an entry's vector
  expires it only takes part in digest-equality checks.
"""

import math
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np
import structlog

from .config import IndexConfig, RetentionConfig
from .data_models import Fingerprint, IndexMatch, UniquenessIndexEntry
from .exceptions import (
    DuplicateFingerprintError,
    IndexTimeoutError,
    IndexUnavailableError,
    UniquenessIndexError,
)

# Initialize structured logger
logger = structlog.get_logger(__name__)

BucketKey = Tuple[int, int]  # (table, bucket)


def expected_recall(distance: float, n_tables: int, n_bits: int) -> float:
    """
    Lower bound on the probability that a vector at `distance` from a
    registered unit vector shares at least one primary bucket with it.

    Multi-probing only raises the real recall above this bound. Useful for
    calibrating ``match_distance`` against table and bit counts.

    Examples
    --------
    >>> expected_recall(0.25, n_tables=8, n_bits=6) > 0.99
    True
    """
    cosine = float(np.clip(1.0 - distance ** 2 / 2.0, -1.0, 1.0))
    bit_agreement = 1.0 - math.acos(cosine) / math.pi
    table_hit = bit_agreement ** n_bits
    return 1.0 - (1.0 - table_hit) ** n_tables


class UniquenessIndex:
    """
    Partitioned, lock-scoped index of registered fingerprints.

    Parameters
    ----------
    dimension : int
        Length of the canonical fingerprint vectors.
    config : IndexConfig, optional
        Distance threshold, LSH shape, lock arena and timeout.
    retention : RetentionConfig, optional
        Vector retention window.
    clock : Callable[[], float], default=time.time
        Wall clock in seconds, injectable for tests.

    Examples
    --------
    >>> index = UniquenessIndex(dimension=56)
    >>> index.register(fingerprint, user_ref="user-1")
    >>> index.lookup(fingerprint.vector).user_ref
    'user-1'
    """

    def __init__(
        self,
        dimension: int,
        config: Optional[IndexConfig] = None,
        retention: Optional[RetentionConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if dimension < 1:
            raise UniquenessIndexError("dimension must be at least 1", operation="init")

        self.dimension = dimension
        self.config = config or IndexConfig()
        self.retention = retention or RetentionConfig()
        self._clock = clock

        rng = np.random.default_rng(self.config.seed)
        self._planes = rng.standard_normal(
            (self.config.n_tables, self.config.n_bits, dimension)
        )
        self._bit_values = 1 << np.arange(self.config.n_bits)

        self._tables: List[Dict[int, Set[str]]] = [
            {} for _ in range(self.config.n_tables)
        ]
        self._entries: Dict[str, UniquenessIndexEntry] = {}
        self._digests: Dict[str, str] = {}

        self._stripes = [threading.Lock() for _ in range(self.config.lock_stripes)]
        # Guards the Python containers; never held while waiting on a stripe
        self._state_lock = threading.Lock()

        logger.info(
            "UniquenessIndex initialized",
            dimension=dimension,
            match_distance=self.config.match_distance,
            n_tables=self.config.n_tables,
            n_bits=self.config.n_bits,
            lock_stripes=self.config.lock_stripes,
            expected_recall=round(
                expected_recall(
                    self.config.match_distance, self.config.n_tables, self.config.n_bits
                ),
                6,
            ),
        )

    # ------------------------------------------------------------------
    # Hashing and locking
    # ------------------------------------------------------------------
    def _validate_vector(self, vector: np.ndarray) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float64)
        if vector.shape != (self.dimension,):
            raise UniquenessIndexError(
                f"Expected vector of shape ({self.dimension},), got {vector.shape}",
                operation="validate",
            )
        if not np.isfinite(vector).all():
            raise UniquenessIndexError(
                "Vector contains non-finite values", operation="validate"
            )
        return vector

    def _bucket_keys(self, vector: np.ndarray) -> Tuple[List[BucketKey], List[BucketKey]]:
        """Return the primary bucket per table and the full probe set."""
        projections = self._planes @ vector  # (n_tables, n_bits)
        codes = ((projections >= 0).astype(np.int64) * self._bit_values).sum(axis=1)

        primary = [(t, int(code)) for t, code in enumerate(codes)]
        probes = list(primary)
        for t, code in primary:
            for bit in range(self.config.n_bits):
                probes.append((t, code ^ (1 << bit)))
        return primary, probes

    def _stripe_for_bucket(self, key: BucketKey) -> int:
        return hash(key) % len(self._stripes)

    def _stripe_for_token(self, token: str) -> int:
        # Fixed, process-independent hash so digest stripes are stable
        return int.from_bytes(token.encode("utf-8")[:8].ljust(8, b"\0"), "big") % len(
            self._stripes
        )

    @contextmanager
    def _locked(self, stripe_ids: Sequence[int], operation: str) -> Iterator[None]:
        """
        Hold a set of stripe locks, acquired in sorted order under one deadline.

        Raises
        ------
        IndexTimeoutError
            If every lock could not be taken before the deadline.
        """
        timeout = self.config.lock_timeout_seconds
        deadline = time.monotonic() + timeout
        acquired: List[threading.Lock] = []
        try:
            for stripe_id in sorted(set(stripe_ids)):
                remaining = deadline - time.monotonic()
                lock = self._stripes[stripe_id]
                if remaining <= 0 or not lock.acquire(timeout=remaining):
                    logger.warning(
                        "Index lock wait expired",
                        operation=operation,
                        timeout_seconds=timeout,
                        stripes_held=len(acquired),
                    )
                    raise IndexTimeoutError(operation, timeout)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def _live_vector(
        self, entry: UniquenessIndexEntry, now: float
    ) -> Optional[np.ndarray]:
        # Single read; eviction may clear entry.vector concurrently
        vector = entry.vector
        if vector is None or entry.vector_expires_at <= now:
            return None
        return vector

    def _find_match(
        self,
        vector: np.ndarray,
        digest: Optional[str],
        probes: Sequence[BucketKey],
    ) -> Optional[IndexMatch]:
        with self._state_lock:
            candidate_refs: Set[str] = set()
            for table, code in probes:
                candidate_refs.update(self._tables[table].get(code, ()))
            candidates = [
                self._entries[ref] for ref in candidate_refs if ref in self._entries
            ]
            digest_owner = self._digests.get(digest) if digest else None

        now = self._clock()
        best: Optional[Tuple[float, float, UniquenessIndexEntry]] = None
        for entry in candidates:
            retained = self._live_vector(entry, now)
            if retained is None:
                continue
            distance = float(np.linalg.norm(retained - vector))
            if distance > self.config.match_distance:
                continue
            rank = (distance, entry.registered_at, entry)
            if best is None or rank[:2] < best[:2]:
                best = rank

        if best is not None:
            distance, _, entry = best
            return IndexMatch(
                user_ref=entry.user_ref,
                digest=entry.digest,
                distance=distance,
                matched_by="vector",
            )

        if digest_owner is not None:
            return IndexMatch(
                user_ref=digest_owner, digest=digest, distance=None, matched_by="digest"
            )

        return None

    def lookup(
        self, vector: np.ndarray, digest: Optional[str] = None
    ) -> Optional[IndexMatch]:
        """
        Find the nearest retained registration within d_min.

        Falls back to digest equality, which also covers registrations whose
        vector has already expired.

        Parameters
        ----------
        vector : np.ndarray
            Canonical fingerprint vector.
        digest : str, optional
            Fingerprint digest.

        Returns
        -------
        Optional[IndexMatch]
            The match, or None if no registration is close enough.
        """
        vector = self._validate_vector(vector)
        _, probes = self._bucket_keys(vector)
        return self._find_match(vector, digest, probes)

    def nearest(self, vector: np.ndarray) -> Optional[IndexMatch]:
        """
        Return the closest retained candidate regardless of d_min.

        Only entries sharing a probed bucket are considered, so very distant
        registrations are not reported.
        """
        vector = self._validate_vector(vector)
        _, probes = self._bucket_keys(vector)
        with self._state_lock:
            refs: Set[str] = set()
            for table, code in probes:
                refs.update(self._tables[table].get(code, ()))
            candidates = [self._entries[r] for r in refs if r in self._entries]

        now = self._clock()
        best: Optional[IndexMatch] = None
        for entry in candidates:
            retained = self._live_vector(entry, now)
            if retained is None:
                continue
            distance = float(np.linalg.norm(retained - vector))
            if best is None or distance < best.distance:
                best = IndexMatch(entry.user_ref, entry.digest, distance, "vector")
        return best

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def insert(
        self,
        vector: np.ndarray,
        digest: str,
        user_ref: str,
        on_commit: Optional[Callable[[UniquenessIndexEntry], None]] = None,
    ) -> UniquenessIndexEntry:
        """
        Atomically check for a duplicate and insert a new registration.

        The lookup and the insert run inside one critical section over the
        stripes of every probed bucket, the digest and the user reference.
        `on_commit` runs inside that section before the entry becomes
        visible; if it raises, nothing is inserted.

        Parameters
        ----------
        vector : np.ndarray
            Canonical fingerprint vector.
        digest : str
            Fingerprint digest.
        user_ref : str
            Opaque reference of the registering user.
        on_commit : Callable, optional
            Durable-write callback (the persistence hook).

        Returns
        -------
        UniquenessIndexEntry
            The new entry.

        Raises
        ------
        DuplicateFingerprintError
            If a registration within d_min, with the same digest, or with the
            same user reference already exists.
        IndexTimeoutError
            If the critical section could not be entered in time.
        IndexUnavailableError
            If `on_commit` failed.
        """
        vector = self._validate_vector(vector)
        if not digest:
            raise UniquenessIndexError("digest cannot be empty", operation="insert")
        if not user_ref:
            raise UniquenessIndexError("user_ref cannot be empty", operation="insert")

        primary, probes = self._bucket_keys(vector)
        stripe_ids = [self._stripe_for_bucket(key) for key in probes]
        stripe_ids.append(self._stripe_for_token(digest))
        stripe_ids.append(self._stripe_for_token(user_ref))

        with self._locked(stripe_ids, "insert"):
            match = self._find_match(vector, digest, probes)
            if match is not None:
                logger.info(
                    "Duplicate fingerprint detected",
                    matched_by=match.matched_by,
                    distance=match.distance,
                )
                raise DuplicateFingerprintError(
                    match.user_ref, match.distance, match.matched_by
                )

            with self._state_lock:
                user_taken = user_ref in self._entries
            if user_taken:
                raise DuplicateFingerprintError(user_ref, None, "user_ref")

            registered_at = self._clock()
            entry = UniquenessIndexEntry(
                user_ref=user_ref,
                digest=digest,
                vector=vector.copy(),
                registered_at=registered_at,
                vector_expires_at=registered_at + self.retention.vector_retention_seconds,
                bucket_keys=tuple(primary),
            )

            if on_commit is not None:
                try:
                    on_commit(entry)
                except Exception as e:
                    logger.error(
                        "Registration write failed; nothing committed",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise IndexUnavailableError(
                        f"Persistence callback failed: {e}", operation="insert"
                    ) from e

            with self._state_lock:
                self._entries[user_ref] = entry
                self._digests[digest] = user_ref
                for table, code in primary:
                    self._tables[table].setdefault(code, set()).add(user_ref)

        logger.info(
            "Fingerprint registered",
            digest_preview=digest[:16] + "...",
            population=len(self._entries),
        )

        return entry

    def register(
        self,
        fingerprint: Fingerprint,
        user_ref: str,
        on_commit: Optional[Callable[[UniquenessIndexEntry], None]] = None,
    ) -> UniquenessIndexEntry:
        """Register a canonical fingerprint; see `insert`."""
        return self.insert(fingerprint.vector, fingerprint.digest, user_ref, on_commit)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def _drop_from_buckets(self, entry: UniquenessIndexEntry) -> None:
        for table, code in entry.bucket_keys:
            bucket = self._tables[table].get(code)
            if bucket is None:
                continue
            bucket.discard(entry.user_ref)
            if not bucket:
                del self._tables[table][code]

    def evict_expired(self, now: Optional[float] = None) -> int:
        """
        Drop vectors whose retention window has passed, keeping digests.

        Runs outside any registration transaction: each entry is handled
        under its own short lock scope, and an entry whose locks are busy is
        left for the next sweep.

        Returns
        -------
        int
            Number of vectors evicted.
        """
        now = self._clock() if now is None else now
        with self._state_lock:
            expired = [
                entry
                for entry in self._entries.values()
                if entry.vector is not None and entry.vector_expires_at <= now
            ]

        evicted = 0
        for entry in expired:
            stripe_ids = [self._stripe_for_bucket(key) for key in entry.bucket_keys]
            try:
                with self._locked(stripe_ids, "evict"):
                    with self._state_lock:
                        if self._entries.get(entry.user_ref) is not entry:
                            continue
                        self._drop_from_buckets(entry)
                        entry.vector = None
                        entry.bucket_keys = ()
                    evicted += 1
            except IndexTimeoutError:
                logger.debug("Eviction deferred; entry busy")

        if evicted:
            logger.info("Expired fingerprint vectors evicted", evicted=evicted)
        return evicted

    def remove(self, user_ref: str) -> bool:
        """
        Remove a registration entirely, digest included.

        Returns
        -------
        bool
            True if the user was registered.
        """
        with self._state_lock:
            entry = self._entries.get(user_ref)
        if entry is None:
            return False

        stripe_ids = [self._stripe_for_bucket(key) for key in entry.bucket_keys]
        stripe_ids.append(self._stripe_for_token(entry.digest))
        stripe_ids.append(self._stripe_for_token(user_ref))

        with self._locked(stripe_ids, "remove"):
            with self._state_lock:
                if self._entries.get(user_ref) is not entry:
                    return False
                self._drop_from_buckets(entry)
                del self._entries[user_ref]
                if self._digests.get(entry.digest) == user_ref:
                    del self._digests[entry.digest]

        logger.info("Registration removed from index")
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_entry(self, user_ref: str) -> Optional[UniquenessIndexEntry]:
        with self._state_lock:
            return self._entries.get(user_ref)

    def retained_vector(self, user_ref: str) -> Optional[np.ndarray]:
        """Return a copy of a user's retained vector, if still retained."""
        entry = self.get_entry(user_ref)
        if entry is None:
            return None
        retained = self._live_vector(entry, self._clock())
        return None if retained is None else retained.copy()

    def __len__(self) -> int:
        with self._state_lock:
            return len(self._entries)

    def stats(self) -> Dict[str, float]:
        """Population and occupancy statistics."""
        with self._state_lock:
            retained = sum(1 for e in self._entries.values() if e.vector is not None)
            buckets = [len(b) for table in self._tables for b in table.values()]
            total = len(self._entries)

        return {
            "registrations": total,
            "retained_vectors": retained,
            "digest_only": total - retained,
            "occupied_buckets": len(buckets),
            "max_bucket_size": max(buckets) if buckets else 0,
            "mean_bucket_size": float(np.mean(buckets)) if buckets else 0.0,
            "match_distance": self.config.match_distance,
            "dimension": self.dimension,
        }
