"""
Registration gate for the HUMANITY GATE engine.

`RegistrationEngine` is the public face of the pipeline. It owns the open
capture sessions and drives each one through

    capture -> modality scoring -> fusion -> canonicalization -> index

producing exactly one `RegistrationDecision` per session. Every known
failure is mapped to a decision outcome; the session's raw frames are
wiped on every path, including unexpected errors, which propagate after
the session has been discarded.

Examples
--------
>>> engine = RegistrationEngine()
>>> session_id = engine.begin_session("user-1")
>>> engine.submit_frame(session_id, "facial", sample, ts)
>>> decision = engine.finalize(session_id)
>>> decision.outcome
<RegistrationOutcome.ACCEPTED: 'ACCEPTED'>
"""

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np
import structlog

from .capture_session import CaptureSession
from .config import EngineConfig
from .constants import SESSION_REAP_GRACE_SECONDS, VERIFICATION_THRESHOLDS
from .data_models import (
    FusedResult,
    IdentityRecord,
    Modality,
    RegistrationDecision,
    RegistrationOutcome,
    UniquenessIndexEntry,
    VerificationResult,
)
from .exceptions import (
    BiometricProcessingError,
    CanonicalizationError,
    CaptureError,
    ConfigurationError,
    DigestGenerationError,
    DuplicateFingerprintError,
    FusionError,
    IndexTimeoutError,
    IndexUnavailableError,
    InsufficientFramesError,
    LowEntropyError,
    RegistrationStateError,
    SessionNotFoundError,
)
from .fingerprint import FingerprintCanonicalizer
from .fusion import FusionEngine
from .quality_assessment import score_modalities
from .retention import RetentionSweeper
from .store import InMemoryRegistrationStore, RegistrationStore
from .uniqueness_index import UniquenessIndex

# Initialize structured logger
logger = structlog.get_logger(__name__)


class AttemptState(str, Enum):
    """Pipeline stage of one registration attempt."""

    CAPTURING = "CAPTURING"
    SCORING = "SCORING"
    CANONICALIZING = "CANONICALIZING"
    MATCHING = "MATCHING"
    ACCEPTED = "ACCEPTED"
    REJECTED_LOW_QUALITY = "REJECTED_LOW_QUALITY"
    REJECTED_LOW_ENTROPY = "REJECTED_LOW_ENTROPY"
    REJECTED_DUPLICATE = "REJECTED_DUPLICATE"
    RETRY_INSUFFICIENT_FRAMES = "RETRY_INSUFFICIENT_FRAMES"
    RETRY_INDEX_UNAVAILABLE = "RETRY_INDEX_UNAVAILABLE"

    @property
    def is_terminal(self) -> bool:
        return self not in _TRANSITIONS


_TRANSITIONS: Dict[AttemptState, frozenset] = {
    AttemptState.CAPTURING: frozenset(
        {AttemptState.SCORING, AttemptState.RETRY_INSUFFICIENT_FRAMES}
    ),
    AttemptState.SCORING: frozenset(
        {AttemptState.CANONICALIZING, AttemptState.REJECTED_LOW_QUALITY}
    ),
    AttemptState.CANONICALIZING: frozenset(
        {
            AttemptState.MATCHING,
            AttemptState.REJECTED_LOW_ENTROPY,
            AttemptState.REJECTED_LOW_QUALITY,
            AttemptState.RETRY_INDEX_UNAVAILABLE,
        }
    ),
    AttemptState.MATCHING: frozenset(
        {
            AttemptState.ACCEPTED,
            AttemptState.REJECTED_DUPLICATE,
            AttemptState.RETRY_INDEX_UNAVAILABLE,
        }
    ),
}


class RegistrationAttempt:
    """
    State machine of one registration attempt.

    Only forward transitions listed in the transition table are allowed;
    anything else raises `RegistrationStateError`.
    """

    def __init__(self, session_id: str, user_ref: str) -> None:
        self.session_id = session_id
        self.user_ref = user_ref
        self.state = AttemptState.CAPTURING
        self.history: List[AttemptState] = [self.state]

    def advance(self, new_state: AttemptState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            raise RegistrationStateError(
                self.session_id, self.state.value, new_state.value
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def outcome(self) -> RegistrationOutcome:
        if not self.state.is_terminal:
            raise RegistrationStateError(self.session_id, self.state.value, "outcome")
        return RegistrationOutcome(self.state.value)


class RegistrationEngine:
    """
    Multimodal, Sybil-resistant registration engine.

    The engine owns a `RetentionSweeper` over its index, store and open
    sessions. It runs between `start()` and `close()`, or for the life of a
    `with` block. Expired vectors are ignored on read even without a sweep.

    Parameters
    ----------
    config : EngineConfig, optional
        Engine configuration; validated on construction.
    store : RegistrationStore, optional
        Durable storage for accepted registrations. An in-memory store is
        used when omitted.
    index : UniquenessIndex, optional
        Shared uniqueness index. Built from `config` when omitted.
    clock : Callable[[], float], default=time.time
        Wall clock in seconds, shared by sessions, index and store.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[RegistrationStore] = None,
        index: Optional[UniquenessIndex] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self._clock = clock

        self.canonicalizer = FingerprintCanonicalizer(self.config.fingerprint)
        self.fusion = FusionEngine(self.config.fusion)
        self.store = store if store is not None else InMemoryRegistrationStore(clock)
        self.index = index or UniquenessIndex(
            self.canonicalizer.dimension,
            self.config.index,
            self.config.retention,
            clock,
        )
        if self.index.dimension != self.canonicalizer.dimension:
            raise ConfigurationError(
                "Index dimension does not match the canonical fingerprint",
                context={
                    "index_dimension": self.index.dimension,
                    "fingerprint_dimension": self.canonicalizer.dimension,
                },
            )

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="humanity-gate-scorer",
        )
        self._sessions: Dict[str, CaptureSession] = {}
        self._sessions_lock = threading.Lock()
        self._outcomes: Counter = Counter()
        self._stats_lock = threading.Lock()
        self.sweeper = RetentionSweeper(
            self.index, self.store, self.reap_expired_sessions, clock=clock
        )

        logger.info(
            "RegistrationEngine initialized",
            fingerprint_dimension=self.canonicalizer.dimension,
            max_workers=self.config.max_workers,
            match_distance=self.config.index.match_distance,
        )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    def begin_session(self, user_ref: str) -> str:
        """
        Open a capture session for a user.

        Returns
        -------
        str
            Session identifier for `submit_frame` and `finalize`.
        """
        session = CaptureSession.begin(
            user_ref,
            self.config.capture,
            clock=self._clock,
            facial_dim=self.config.fingerprint.facial_dim,
        )
        with self._sessions_lock:
            self._sessions[session.session_id] = session
        return session.session_id

    def _get_session(self, session_id: str) -> CaptureSession:
        with self._sessions_lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _pop_session(self, session_id: str) -> CaptureSession:
        with self._sessions_lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def submit_frame(
        self,
        session_id: str,
        modality: "Modality | str",
        sample: Mapping,
        timestamp: float,
    ) -> None:
        """
        Buffer one frame into an open session.

        Raises
        ------
        CaptureError
            If the session is unknown or the frame is rejected. A rejected
            frame is dropped; the session stays open.
        """
        session = self._get_session(session_id)
        try:
            session.submit_frame(modality, sample, timestamp)
        except CaptureError as e:
            logger.debug("Frame rejected", session_id=session_id, error_code=e.error_code)
            raise

    def cancel_session(self, session_id: str) -> bool:
        """Discard an open session and wipe its frames."""
        with self._sessions_lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.discard()
        return True

    def reap_expired_sessions(self, now: Optional[float] = None) -> int:
        """
        Discard sessions left open past their deadline plus a grace period.

        Returns
        -------
        int
            Number of sessions reaped.
        """
        now = self._clock() if now is None else now
        with self._sessions_lock:
            expired = [
                sid
                for sid, session in self._sessions.items()
                if now > session.deadline + SESSION_REAP_GRACE_SECONDS
            ]
            reaped = [self._sessions.pop(sid) for sid in expired]

        for session in reaped:
            session.discard()

        if reaped:
            logger.info("Abandoned capture sessions reaped", reaped=len(reaped))
        return len(reaped)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def _identity_record(self, entry: UniquenessIndexEntry) -> IdentityRecord:
        return IdentityRecord(
            user_ref=entry.user_ref,
            digest=entry.digest,
            registered_at=datetime.fromtimestamp(entry.registered_at, tz=timezone.utc),
        )

    def _persist(self, entry: UniquenessIndexEntry) -> None:
        """Durable write run inside the index critical section."""
        self.store.save_identity(self._identity_record(entry))
        try:
            self.store.save_feature_vector(
                entry.user_ref,
                entry.vector,
                self.config.retention.vector_retention_seconds,
            )
        except Exception:
            self.store.delete_user(entry.user_ref)
            raise

    def _decide(
        self,
        attempt: RegistrationAttempt,
        state: AttemptState,
        fused: Optional[FusedResult] = None,
        **fields: Any,
    ) -> RegistrationDecision:
        attempt.advance(state)
        decision = RegistrationDecision(
            outcome=attempt.outcome,
            session_id=attempt.session_id,
            user_ref=attempt.user_ref,
            composite_score=fused.composite_score if fused else None,
            classification=fused.classification if fused else None,
            **fields,
        )

        with self._stats_lock:
            self._outcomes[decision.outcome.value] += 1

        logger.info(
            "Registration decided",
            session_id=attempt.session_id,
            outcome=decision.outcome.value,
            composite_score=decision.composite_score,
            reason=decision.reason,
        )

        return decision

    def finalize(self, session_id: str) -> RegistrationDecision:
        """
        Close a session and run it through the registration pipeline.

        The session is removed and its frames wiped whatever the outcome.

        Parameters
        ----------
        session_id : str
            Session returned by `begin_session`.

        Returns
        -------
        RegistrationDecision
            The single decision for this session.

        Raises
        ------
        SessionNotFoundError
            If the session is unknown or was already finalized.
        """
        session = self._pop_session(session_id)
        attempt = RegistrationAttempt(session_id, session.user_ref)
        try:
            return self._run_pipeline(session, attempt)
        except Exception as e:
            logger.error(
                "Registration pipeline failed",
                session_id=session_id,
                state=attempt.state.value,
                error_type=type(e).__name__,
            )
            raise
        finally:
            session.discard()

    def _run_pipeline(
        self, session: CaptureSession, attempt: RegistrationAttempt
    ) -> RegistrationDecision:
        try:
            summary = session.close()
        except InsufficientFramesError as e:
            return self._decide(
                attempt, AttemptState.RETRY_INSUFFICIENT_FRAMES, reason=e.error_code
            )
        except BiometricProcessingError as e:
            # Frames arrived but were unusable
            return self._decide(
                attempt,
                AttemptState.RETRY_INSUFFICIENT_FRAMES,
                reason=e.error_code or "feature_extraction_failed",
            )

        attempt.advance(AttemptState.SCORING)
        scores = score_modalities(summary, self.config.thresholds, self._executor)
        try:
            fused = self.fusion.fuse(scores)
        except FusionError as e:
            return self._decide(
                attempt, AttemptState.REJECTED_LOW_QUALITY, reason=e.error_code
            )
        if not fused.is_accepted:
            return self._decide(
                attempt,
                AttemptState.REJECTED_LOW_QUALITY,
                fused,
                reason="composite_below_minimum",
            )

        attempt.advance(AttemptState.CANONICALIZING)
        try:
            fingerprint = self.canonicalizer.canonicalize(summary)
        except LowEntropyError as e:
            logger.warning(
                "Low-entropy fingerprint rejected, possible spoofing attempt",
                session_id=attempt.session_id,
                entropy=round(e.entropy, 4),
                minimum_entropy=e.minimum_entropy,
            )
            return self._decide(
                attempt, AttemptState.REJECTED_LOW_ENTROPY, fused, reason=e.error_code
            )
        except CanonicalizationError as e:
            return self._decide(
                attempt, AttemptState.REJECTED_LOW_QUALITY, fused, reason=e.error_code
            )
        except DigestGenerationError as e:
            logger.error(
                "Fingerprint digest failed",
                session_id=attempt.session_id,
                **e.to_dict(),
            )
            return self._decide(
                attempt,
                AttemptState.RETRY_INDEX_UNAVAILABLE,
                fused,
                reason=e.error_code,
            )

        attempt.advance(AttemptState.MATCHING)
        try:
            entry = self.index.register(
                fingerprint, attempt.user_ref, on_commit=self._persist
            )
        except DuplicateFingerprintError as e:
            return self._decide(
                attempt,
                AttemptState.REJECTED_DUPLICATE,
                fused,
                digest=fingerprint.digest,
                matched_user_ref=e.matched_user_ref,
                matched_distance=e.distance,
                reason=f"matched_by_{e.matched_by}",
            )
        except (IndexTimeoutError, IndexUnavailableError) as e:
            return self._decide(
                attempt,
                AttemptState.RETRY_INDEX_UNAVAILABLE,
                fused,
                digest=fingerprint.digest,
                reason=e.error_code,
            )
        finally:
            # Index and store hold their own copies
            fingerprint.vector.fill(0.0)

        return self._decide(
            attempt,
            AttemptState.ACCEPTED,
            fused,
            digest=entry.digest,
            identity_record=self._identity_record(entry),
        )

    # ------------------------------------------------------------------
    # Verification and revocation
    # ------------------------------------------------------------------
    def verify_identity(
        self, session_id: str, user_ref: str, context: str = "default"
    ) -> VerificationResult:
        """
        Verify a fresh capture against a user's retained fingerprint (1:1).

        Similarity is the cosine similarity of the two canonical unit
        vectors, compared against the threshold of `context`. Verification
        is only possible while the user's vector is still retained.

        Parameters
        ----------
        session_id : str
            Closed-over capture session of the claimant.
        user_ref : str
            Registered user the claimant claims to be.
        context : str, default="default"
            One of ``VERIFICATION_THRESHOLDS``.

        Returns
        -------
        VerificationResult
            Match flag, similarity and the applied threshold.
        """
        if context not in VERIFICATION_THRESHOLDS:
            raise ValueError(
                f"Unknown verification context '{context}', "
                f"expected one of {sorted(VERIFICATION_THRESHOLDS)}"
            )
        threshold = VERIFICATION_THRESHOLDS[context]

        session = self._pop_session(session_id)

        def rejected(reason: str) -> VerificationResult:
            logger.info("Verification rejected", session_id=session_id, reason=reason)
            return VerificationResult(
                user_ref=user_ref,
                matched=False,
                similarity=0.0,
                threshold=threshold,
                reason=reason,
            )

        try:
            try:
                summary = session.close()
            except (InsufficientFramesError, BiometricProcessingError) as e:
                return rejected(e.error_code or "capture_failed")

            scores = score_modalities(summary, self.config.thresholds, self._executor)
            try:
                fused = self.fusion.fuse(scores)
            except FusionError:
                return rejected("low_quality")
            if not fused.is_accepted:
                return rejected("low_quality")

            try:
                fingerprint = self.canonicalizer.canonicalize(summary)
            except LowEntropyError:
                return rejected("low_entropy")
            except (CanonicalizationError, DigestGenerationError) as e:
                return rejected(e.error_code or "canonicalization_failed")

            reference = self.index.retained_vector(user_ref)
            if reference is None:
                fingerprint.vector.fill(0.0)
                return rejected("no_retained_vector")

            distance = float(np.linalg.norm(fingerprint.vector - reference))
            similarity = float(np.clip(1.0 - distance ** 2 / 2.0, -1.0, 1.0))
            fingerprint.vector.fill(0.0)
            reference.fill(0.0)
        finally:
            session.discard()

        matched = similarity >= threshold
        logger.info(
            "Verification completed",
            session_id=session_id,
            matched=matched,
            similarity=round(similarity, 4),
            threshold=threshold,
            context=context,
        )

        return VerificationResult(
            user_ref=user_ref,
            matched=matched,
            similarity=similarity,
            threshold=threshold,
            distance=distance,
            reason=None if matched else "similarity_below_threshold",
        )

    def revoke(self, user_ref: str) -> bool:
        """
        Delete a user's registration from the index and the store.

        Returns
        -------
        bool
            True if anything was removed.
        """
        removed_from_index = self.index.remove(user_ref)
        removed_from_store = self.store.delete_user(user_ref)
        removed = bool(removed_from_index or removed_from_store)
        logger.info("Registration revoked", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def stats(self) -> Dict[str, Any]:
        """Outcome counters, open sessions and index occupancy."""
        with self._sessions_lock:
            active = len(self._sessions)
        with self._stats_lock:
            outcomes = dict(self._outcomes)
        return {
            "active_sessions": active,
            "outcomes": outcomes,
            "index": self.index.stats(),
        }

    def start(self) -> "RegistrationEngine":
        """Start background retention sweeping."""
        self.sweeper.start()
        return self

    def close(self) -> None:
        """Stop sweeping, discard open sessions and shut down the scoring pool."""
        if self.sweeper.running:
            self.sweeper.stop()
        with self._sessions_lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.discard()
        self._executor.shutdown(wait=True)
        logger.info("RegistrationEngine closed", discarded_sessions=len(sessions))

    def __enter__(self) -> "RegistrationEngine":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
