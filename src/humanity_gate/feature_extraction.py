"""
Per-modality feature extraction for the HUMANITY GATE engine.

The landmark and movement extractors run outside this package and deliver
one numeric sample per frame. This module validates those samples, encodes
them into compact arrays for the session buffers, and reduces a closed
buffer into the measurements consumed by the scorers plus a fixed-size
vector consumed by the canonicalizer.

All functions are pure; none of them retains the frames they are given.
"""

import math
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import structlog

from .constants import (
    BLINK_FEATURE_DIM,
    FACIAL_FEATURE_DIM,
    HEAD_FEATURE_DIM,
    POINTER_FEATURE_DIM,
)
from .data_models import (
    BlinkMeasurements,
    FacialMeasurements,
    HeadMovementMeasurements,
    Modality,
    ModalityFeatures,
    PointerMeasurements,
)
from .exceptions import BiometricProcessingError
from .normalization import normalize_vector
from .utils import safe_divide

# Initialize structured logger
logger = structlog.get_logger(__name__)

# A buffered frame: (timestamp in seconds, encoded sample)
Frame = Tuple[float, np.ndarray]

# Scalar fields expected in each modality's sample
SAMPLE_FIELDS: Dict[Modality, Tuple[str, ...]] = {
    Modality.FACIAL: ("movement", "confidence"),
    Modality.BLINK: ("duration_ms",),
    Modality.HEAD_MOVEMENT: ("yaw", "pitch", "roll"),
    Modality.POINTER: ("x", "y"),
}


def _finite_float(sample: Mapping, key: str) -> float:
    if key not in sample:
        raise ValueError(f"missing field '{key}'")
    try:
        value = float(sample[key])
    except (TypeError, ValueError):
        raise ValueError(f"field '{key}' must be numeric")
    if not math.isfinite(value):
        raise ValueError(f"field '{key}' must be finite")
    return value


def encode_sample(modality: Modality, sample: Mapping) -> np.ndarray:
    """
    Validate a raw sample and encode it as a flat float64 array.

    Parameters
    ----------
    modality : Modality
        Modality the sample belongs to.
    sample : Mapping
        Extractor output for one frame.

    Returns
    -------
    np.ndarray
        Encoded sample. Facial samples are laid out as
        ``[movement, confidence, *landmarks]``.

    Raises
    ------
    ValueError
        If the sample is missing fields or holds non-finite values.
    """
    if not isinstance(sample, Mapping):
        raise ValueError(f"sample must be a mapping, got {type(sample).__name__}")

    values = [_finite_float(sample, key) for key in SAMPLE_FIELDS[modality]]

    if modality is Modality.FACIAL:
        landmarks = sample.get("landmarks")
        if landmarks is None:
            raise ValueError("missing field 'landmarks'")
        landmark_array = np.asarray(landmarks, dtype=np.float64).reshape(-1)
        if landmark_array.size == 0:
            raise ValueError("field 'landmarks' cannot be empty")
        if not np.isfinite(landmark_array).all():
            raise ValueError("field 'landmarks' must be finite")
        return np.concatenate([np.asarray(values, dtype=np.float64), landmark_array])

    if modality is Modality.BLINK and values[0] < 0:
        raise ValueError("field 'duration_ms' cannot be negative")

    return np.asarray(values, dtype=np.float64)


def _sorted_frames(frames: Sequence[Frame]) -> List[Frame]:
    return sorted(frames, key=lambda frame: frame[0])


def _pad_and_average(vectors: List[np.ndarray]) -> np.ndarray:
    # Landmark counts may differ between frames; pad to the longest first
    max_len = max(len(v) for v in vectors)
    padded = [np.pad(v, (0, max_len - len(v)), "constant") for v in vectors]
    return np.mean(np.vstack(padded), axis=0)


def extract_facial_features(
    frames: Sequence[Frame], facial_dim: int = FACIAL_FEATURE_DIM
) -> ModalityFeatures:
    """
    Reduce facial frames to movement, confidence, stability and landmarks.

    Stability is ``1 / (1 + cv)`` where ``cv`` is the coefficient of
    variation of the per-frame movement magnitude: steady micro-movement
    scores close to 1, erratic movement decays towards 0.
    """
    ordered = _sorted_frames(frames)
    movements = np.array([values[0] for _, values in ordered])
    confidences = np.array([values[1] for _, values in ordered])

    movement = float(np.mean(movements))
    confidence = float(np.mean(confidences))
    movement_std = float(np.std(movements))
    if movement > 0:
        stability = 1.0 / (1.0 + movement_std / movement)
    else:
        stability = 1.0 if movement_std == 0 else 0.0

    mean_landmarks = _pad_and_average([values[2:] for _, values in ordered])
    vector = normalize_vector(mean_landmarks, facial_dim)

    measurements = FacialMeasurements(
        movement=movement,
        confidence=confidence,
        stability=float(np.clip(stability, 0.0, 1.0)),
        frame_count=len(ordered),
    )

    logger.debug(
        "Facial features extracted",
        frame_count=len(ordered),
        landmark_dim=len(mean_landmarks),
    )

    return ModalityFeatures(Modality.FACIAL, measurements, vector, len(ordered))


def extract_blink_features(frames: Sequence[Frame]) -> ModalityFeatures:
    """
    Reduce blink events to durations and inter-blink intervals.

    One frame is one detected blink; the interval of a blink is the time
    since the previous blink, so the first blink has none.
    """
    ordered = _sorted_frames(frames)
    timestamps = np.array([ts for ts, _ in ordered])
    durations = np.array([values[0] for _, values in ordered])
    intervals = np.diff(timestamps) * 1000.0 if len(ordered) > 1 else np.array([])

    span_minutes = (
        float(timestamps[-1] - timestamps[0]) / 60.0 if len(ordered) > 1 else 0.0
    )

    vector = np.array(
        [
            float(len(ordered)),
            float(np.mean(durations)) if durations.size else 0.0,
            float(np.std(durations)) if durations.size else 0.0,
            float(np.min(durations)) if durations.size else 0.0,
            float(np.max(durations)) if durations.size else 0.0,
            float(np.mean(intervals)) if intervals.size else 0.0,
            float(np.std(intervals)) if intervals.size else 0.0,
            safe_divide(float(len(ordered)), span_minutes),
        ],
        dtype=np.float64,
    )

    measurements = BlinkMeasurements(
        durations_ms=tuple(float(d) for d in durations),
        intervals_ms=tuple(float(i) for i in intervals),
    )

    return ModalityFeatures(
        Modality.BLINK, measurements, normalize_vector(vector, BLINK_FEATURE_DIM),
        len(ordered),
    )


def extract_head_movement_features(frames: Sequence[Frame]) -> ModalityFeatures:
    """
    Reduce head poses to rotation range, smoothness and per-frame rotation.

    Smoothness is ``1 / (1 + mean |jerk|)`` with jerk taken as the third
    difference of the pose series (degrees per frame cubed). Fewer than four
    poses cannot demonstrate smooth motion and score 0.
    """
    ordered = _sorted_frames(frames)
    poses = np.vstack([values for _, values in ordered])

    ranges = np.ptp(poses, axis=0)
    rotation_range = float(np.max(ranges))

    if len(poses) >= 4:
        jerk = np.diff(poses, n=3, axis=0)
        mean_jerk = float(np.mean(np.linalg.norm(jerk, axis=1)))
        smoothness = 1.0 / (1.0 + mean_jerk)
    else:
        smoothness = 0.0

    rotations = np.linalg.norm(poses - poses[0], axis=1)
    steps = np.linalg.norm(np.diff(poses, axis=0), axis=1) if len(poses) > 1 else []

    vector = np.array(
        [
            *np.mean(poses, axis=0),
            *ranges,
            smoothness,
            float(np.mean(steps)) if len(steps) else 0.0,
        ],
        dtype=np.float64,
    )

    measurements = HeadMovementMeasurements(
        rotation_range_deg=rotation_range,
        smoothness=smoothness,
        rotations_from_origin_deg=tuple(float(r) for r in rotations),
        frame_count=len(ordered),
    )

    return ModalityFeatures(
        Modality.HEAD_MOVEMENT,
        measurements,
        normalize_vector(vector, HEAD_FEATURE_DIM),
        len(ordered),
    )


def extract_pointer_features(frames: Sequence[Frame]) -> ModalityFeatures:
    """
    Reduce pointer events to path complexity and timing variability.

    Complexity is ``1 - displacement / path_length`` (0 for a straight
    line). Timing variability is the coefficient of variation of the
    inter-event intervals, capped at 1.
    """
    ordered = _sorted_frames(frames)
    timestamps = np.array([ts for ts, _ in ordered])
    points = np.vstack([values for _, values in ordered])

    if len(points) > 1:
        step_lengths = np.linalg.norm(np.diff(points, axis=0), axis=1)
        intervals = np.diff(timestamps)
    else:
        step_lengths = np.array([])
        intervals = np.array([])

    path_length = float(np.sum(step_lengths))
    displacement = float(np.linalg.norm(points[-1] - points[0]))
    complexity = 1.0 - safe_divide(displacement, path_length, default=1.0)

    if intervals.size and float(np.mean(intervals)) > 0:
        variability = min(1.0, float(np.std(intervals)) / float(np.mean(intervals)))
    else:
        variability = 0.0

    moving = intervals > 0
    speeds = step_lengths[moving] / intervals[moving] if intervals.size else np.array([])

    vector = np.array(
        [
            float(len(ordered)),
            complexity,
            variability,
            path_length,
            displacement,
            float(np.mean(speeds)) if speeds.size else 0.0,
            float(np.std(speeds)) if speeds.size else 0.0,
            float(np.mean(intervals)) * 1000.0 if intervals.size else 0.0,
        ],
        dtype=np.float64,
    )

    measurements = PointerMeasurements(
        event_count=len(ordered),
        path_complexity=float(np.clip(complexity, 0.0, 1.0)),
        timing_variability=variability,
    )

    return ModalityFeatures(
        Modality.POINTER,
        measurements,
        normalize_vector(vector, POINTER_FEATURE_DIM),
        len(ordered),
    )


_EXTRACTORS: Dict[Modality, Callable[..., ModalityFeatures]] = {
    Modality.BLINK: extract_blink_features,
    Modality.HEAD_MOVEMENT: extract_head_movement_features,
    Modality.POINTER: extract_pointer_features,
}


def extract_modality_features(
    modality: Modality,
    frames: Sequence[Frame],
    facial_dim: int = FACIAL_FEATURE_DIM,
) -> ModalityFeatures:
    """
    Dispatch a modality buffer to its extractor.

    Raises
    ------
    BiometricProcessingError
        If the buffer is empty or the extractor fails.
    """
    if not frames:
        raise BiometricProcessingError(
            f"No frames to extract for modality '{modality.value}'",
            processing_stage="feature_extraction",
        )

    try:
        if modality is Modality.FACIAL:
            return extract_facial_features(frames, facial_dim)
        return _EXTRACTORS[modality](frames)
    except BiometricProcessingError:
        raise
    except (ValueError, FloatingPointError) as e:
        raise BiometricProcessingError(
            f"Feature extraction failed for '{modality.value}': {e}",
            processing_stage="feature_extraction",
        )
