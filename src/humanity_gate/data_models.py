"""
Data models for the HUMANITY GATE engine.

This module defines the records that flow through the uniqueness pipeline,
from per-modality measurements to the final registration decision. All
models are dataclasses; the ones produced once per session are frozen.
Raw frames never appear here: the earliest record is the extracted
measurement set.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .constants import BLINK, FACIAL, HEAD_MOVEMENT, POINTER


class Modality(str, Enum):
    """Biometric signal sources captured during a session."""

    FACIAL = FACIAL
    BLINK = BLINK
    HEAD_MOVEMENT = HEAD_MOVEMENT
    POINTER = POINTER

    @classmethod
    def parse(cls, value: "Modality | str") -> "Modality":
        """Accept either an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = [m.value for m in cls]
            raise ValueError(f"Unknown modality '{value}', expected one of {valid}")


class QualityClass(str, Enum):
    """Classification of a fused composite score."""

    REJECTED = "REJECTED"
    ACCEPTED = "ACCEPTED"
    EXCELLENT = "EXCELLENT"

    @property
    def is_accepted(self) -> bool:
        return self is not QualityClass.REJECTED


class RegistrationOutcome(str, Enum):
    """Final outcome of one registration attempt."""

    ACCEPTED = "ACCEPTED"
    REJECTED_DUPLICATE = "REJECTED_DUPLICATE"
    REJECTED_LOW_QUALITY = "REJECTED_LOW_QUALITY"
    REJECTED_LOW_ENTROPY = "REJECTED_LOW_ENTROPY"
    RETRY_INSUFFICIENT_FRAMES = "RETRY_INSUFFICIENT_FRAMES"
    RETRY_INDEX_UNAVAILABLE = "RETRY_INDEX_UNAVAILABLE"

    @property
    def is_retryable(self) -> bool:
        """Whether the same human may try again with a new session."""
        return self not in (
            RegistrationOutcome.ACCEPTED,
            RegistrationOutcome.REJECTED_DUPLICATE,
        )


# =============================================================================
# Measurements extracted from buffered frames
# =============================================================================
@dataclass(frozen=True)
class FacialMeasurements:
    """Aggregated facial micro-movement measurements."""

    movement: float
    confidence: float
    stability: float
    frame_count: int


@dataclass(frozen=True)
class BlinkMeasurements:
    """Detected blinks with their durations and preceding intervals."""

    durations_ms: Tuple[float, ...]
    intervals_ms: Tuple[float, ...]

    @property
    def count(self) -> int:
        return len(self.durations_ms)


@dataclass(frozen=True)
class HeadMovementMeasurements:
    """Head pose dynamics over the session."""

    rotation_range_deg: float
    smoothness: float
    rotations_from_origin_deg: Tuple[float, ...]
    frame_count: int


@dataclass(frozen=True)
class PointerMeasurements:
    """Pointer path dynamics over the session."""

    event_count: int
    path_complexity: float
    timing_variability: float


@dataclass(frozen=True)
class ModalityFeatures:
    """
    Extracted measurements and fixed-size feature vector of one modality.

    Parameters
    ----------
    modality : Modality
        Source modality.
    measurements : object
        One of the measurement records above, consumed by the scorers.
    vector : np.ndarray
        Fixed-size numeric summary consumed by the canonicalizer.
    frame_count : int
        Number of frames the measurements were derived from.
    """

    modality: Modality
    measurements: Any
    vector: np.ndarray
    frame_count: int

    def __post_init__(self) -> None:
        if not isinstance(self.vector, np.ndarray) or self.vector.ndim != 1:
            raise ValueError("vector must be a 1D numpy array")
        if not np.isfinite(self.vector).all():
            raise ValueError("vector contains non-finite values")
        if self.frame_count < 0:
            raise ValueError("frame_count cannot be negative")


@dataclass(frozen=True)
class CaptureSummary:
    """
    Output of a closed capture session.

    Holds extracted features only; raw frames are wiped before this record
    is created.
    """

    session_id: str
    user_ref: str
    frame_count: int
    features: Dict[Modality, ModalityFeatures]
    started_at: float
    closed_at: float

    @property
    def modalities(self) -> Tuple[Modality, ...]:
        return tuple(self.features.keys())


# =============================================================================
# Scoring and fusion
# =============================================================================
@dataclass(frozen=True)
class ModalityScore:
    """
    Bounded quality score of one modality.

    Parameters
    ----------
    modality : Modality
        Scored modality.
    value : float
        Quality in [0, 1].
    passed : bool
        Whether every modality threshold was met.
    stability : float
        Stability or variance metric in [0, 1] used as a tie-break input.
    details : dict
        Diagnostic values behind the score.
    """

    modality: Modality
    value: float
    passed: bool
    stability: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.value <= 1.0:
            raise ValueError(f"score value must lie in [0, 1], got {self.value}")
        if not 0.0 <= self.stability <= 1.0:
            raise ValueError(f"stability must lie in [0, 1], got {self.stability}")

    @property
    def effective_value(self) -> float:
        """Value contributed to fusion: failing modalities contribute 0."""
        return self.value if self.passed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modality": self.modality.value,
            "value": self.value,
            "passed": self.passed,
            "stability": self.stability,
            "details": self.details,
        }


@dataclass(frozen=True)
class FusedResult:
    """Composite quality of a session and its classification."""

    composite_score: float
    classification: QualityClass
    weights: Dict[Modality, float]
    scores: Dict[Modality, ModalityScore]
    stability: float = 0.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.composite_score <= 100.0:
            raise ValueError(
                f"composite_score must lie in [0, 100], got {self.composite_score}"
            )

    @property
    def is_accepted(self) -> bool:
        return self.classification.is_accepted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "composite_score": self.composite_score,
            "classification": self.classification.value,
            "weights": {m.value: w for m, w in self.weights.items()},
            "scores": {m.value: s.to_dict() for m, s in self.scores.items()},
            "stability": self.stability,
        }


# =============================================================================
# Fingerprint and index records
# =============================================================================
@dataclass(frozen=True)
class Fingerprint:
    """
    Canonical similarity key and its storage digest.

    Parameters
    ----------
    vector : np.ndarray
        Fixed-dimension unit vector searched by the uniqueness index.
    digest : str
        Hex Argon2id digest of the quantized vector; the only artifact kept
        permanently.
    entropy : float
        Normalized entropy estimate in [0, 1].
    modalities : tuple of Modality
        Modalities that contributed non-zero blocks.
    """

    vector: np.ndarray
    digest: str
    entropy: float
    modalities: Tuple[Modality, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.vector, np.ndarray) or self.vector.ndim != 1:
            raise ValueError("vector must be a 1D numpy array")
        if not self.digest:
            raise ValueError("digest cannot be empty")

    @property
    def digest_preview(self) -> str:
        return self.digest[:16] + "..."


@dataclass
class UniquenessIndexEntry:
    """
    One registered identity inside the uniqueness index.

    `vector` is None once the retention window has passed; from then on
    the entry only participates in digest-equality checks.
    """

    user_ref: str
    digest: str
    vector: Optional[np.ndarray]
    registered_at: float
    vector_expires_at: float
    bucket_keys: Tuple[Tuple[int, int], ...] = ()

    @property
    def has_vector(self) -> bool:
        return self.vector is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_ref": self.user_ref,
            "digest": self.digest,
            "has_vector": self.has_vector,
            "registered_at": self.registered_at,
            "vector_expires_at": self.vector_expires_at,
        }


@dataclass(frozen=True)
class IndexMatch:
    """Result of a successful index lookup."""

    user_ref: str
    digest: str
    distance: Optional[float]
    matched_by: str  # "vector" or "digest"


@dataclass(frozen=True)
class IdentityRecord:
    """Permanent record handed to the external user-profile store."""

    user_ref: str
    digest: str
    registered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_ref": self.user_ref,
            "digest": self.digest,
            "registered_at": self.registered_at.isoformat(),
        }


# =============================================================================
# Decisions
# =============================================================================
@dataclass(frozen=True)
class RegistrationDecision:
    """
    Immutable decision for one capture session.

    Parameters
    ----------
    outcome : RegistrationOutcome
        The decision.
    session_id : str
        Session the decision belongs to.
    user_ref : str
        Caller's opaque user reference.
    composite_score : float, optional
        Fused quality, when scoring ran.
    classification : QualityClass, optional
        Fused classification, when scoring ran.
    digest : str, optional
        Fingerprint digest, when canonicalization ran.
    matched_user_ref : str, optional
        Existing registration matched by a duplicate.
    matched_distance : float, optional
        Distance to that registration (None for digest-only matches).
    reason : str, optional
        Machine-readable reason or error code.
    identity_record : IdentityRecord, optional
        Record persisted for an accepted registration.
    """

    outcome: RegistrationOutcome
    session_id: str
    user_ref: str
    composite_score: Optional[float] = None
    classification: Optional[QualityClass] = None
    digest: Optional[str] = None
    matched_user_ref: Optional[str] = None
    matched_distance: Optional[float] = None
    reason: Optional[str] = None
    identity_record: Optional[IdentityRecord] = None
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def accepted(self) -> bool:
        return self.outcome is RegistrationOutcome.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "retryable": self.outcome.is_retryable,
            "session_id": self.session_id,
            "user_ref": self.user_ref,
            "composite_score": self.composite_score,
            "classification": (
                self.classification.value if self.classification else None
            ),
            "digest": self.digest,
            "matched_user_ref": self.matched_user_ref,
            "matched_distance": self.matched_distance,
            "reason": self.reason,
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a 1:1 verification against a retained fingerprint."""

    user_ref: str
    matched: bool
    similarity: float
    threshold: float
    distance: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_ref": self.user_ref,
            "matched": self.matched,
            "similarity": self.similarity,
            "threshold": self.threshold,
            "distance": self.distance,
            "reason": self.reason,
        }
