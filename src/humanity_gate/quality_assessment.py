"""
Modality quality scoring for the HUMANITY GATE engine.

Each scorer turns one modality's extracted measurements into a bounded
quality value in [0, 1] and a pass flag against that modality's thresholds.
Scorers are pure and side-effect free, so a session's modalities can be
scored concurrently on worker threads.

A failing modality scores 0 instead of aborting the pipeline; fusion then
decides whether the remaining modalities carry the session.
"""

from concurrent.futures import Executor
from typing import Callable, Dict, Optional

import numpy as np
import structlog

from .config import (
    BlinkThresholds,
    FacialThresholds,
    HeadMovementThresholds,
    ModalityThresholds,
    PointerThresholds,
)
from .data_models import (
    BlinkMeasurements,
    CaptureSummary,
    FacialMeasurements,
    HeadMovementMeasurements,
    Modality,
    ModalityFeatures,
    ModalityScore,
    PointerMeasurements,
)
from .exceptions import BiometricProcessingError
from .utils import safe_divide, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


def _clip01(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


def _failed(modality: Modality, reason: str, stability: float = 0.0, **details) -> ModalityScore:
    return ModalityScore(
        modality=modality,
        value=0.0,
        passed=False,
        stability=_clip01(stability),
        details={"reason": reason, **details},
    )


def score_facial(
    measurements: FacialMeasurements, thresholds: FacialThresholds = FacialThresholds()
) -> ModalityScore:
    """
    Score facial micro-movement.

    Any measurement below its floor scores 0. Otherwise movement is clamped
    to ``[min_movement, max_movement]`` and mapped to a balance factor that
    is 1 at the centre of that range and 0.5 at its edges; the score is
    ``confidence * stability * balance``.

    Parameters
    ----------
    measurements : FacialMeasurements
        Aggregated facial measurements.
    thresholds : FacialThresholds
        Facial floors and movement range.

    Returns
    -------
    ModalityScore
        Facial quality score.
    """
    confidence = _clip01(measurements.confidence)
    stability = _clip01(measurements.stability)

    if measurements.movement < thresholds.min_movement:
        return _failed(
            Modality.FACIAL, "movement_below_minimum", stability,
            movement=measurements.movement,
        )
    if confidence < thresholds.min_confidence:
        return _failed(
            Modality.FACIAL, "confidence_below_minimum", stability,
            confidence=confidence,
        )
    if stability < thresholds.min_stability:
        return _failed(
            Modality.FACIAL, "stability_below_minimum", stability,
            stability=stability,
        )

    clamped = min(measurements.movement, thresholds.max_movement)
    half_range = (thresholds.max_movement - thresholds.min_movement) / 2.0
    centre = thresholds.min_movement + half_range
    balance = 1.0 - 0.5 * safe_divide(abs(clamped - centre), half_range)

    value = _clip01(confidence * stability * balance)

    return ModalityScore(
        modality=Modality.FACIAL,
        value=value,
        passed=True,
        stability=stability,
        details={
            "movement": clamped,
            "confidence": confidence,
            "balance": balance,
        },
    )


def score_blink(
    measurements: BlinkMeasurements, thresholds: BlinkThresholds = BlinkThresholds()
) -> ModalityScore:
    """
    Score the blink pattern.

    The count must lie in ``[min_count, max_count]``. The score is the
    fraction of blinks whose duration lies in ``duration_range_ms`` and
    whose preceding interval lies in ``interval_range_ms``; the first blink
    has no preceding interval and is judged on duration alone.
    """
    count = measurements.count
    intervals = np.asarray(measurements.intervals_ms, dtype=np.float64)
    if intervals.size and float(np.mean(intervals)) > 0:
        stability = 1.0 / (1.0 + float(np.std(intervals)) / float(np.mean(intervals)))
    else:
        stability = 0.0

    if not thresholds.min_count <= count <= thresholds.max_count:
        return _failed(Modality.BLINK, "blink_count_out_of_range", stability, count=count)

    low_d, high_d = thresholds.duration_range_ms
    low_i, high_i = thresholds.interval_range_ms

    passing = 0
    for i, duration in enumerate(measurements.durations_ms):
        duration_ok = low_d <= duration <= high_d
        interval_ok = i == 0 or low_i <= measurements.intervals_ms[i - 1] <= high_i
        if duration_ok and interval_ok:
            passing += 1

    value = _clip01(passing / count)

    return ModalityScore(
        modality=Modality.BLINK,
        value=value,
        passed=passing > 0,
        stability=_clip01(stability),
        details={"count": count, "passing_blinks": passing},
    )


def score_head_movement(
    measurements: HeadMovementMeasurements,
    thresholds: HeadMovementThresholds = HeadMovementThresholds(),
) -> ModalityScore:
    """
    Score head movement.

    The rotation range must lie in ``[min_angle, max_angle]`` and smoothness
    must reach ``min_smoothness``. The score is the smoothness-weighted
    fraction of frames whose rotation from the first pose stays within
    ``max_angle``.
    """
    smoothness = _clip01(measurements.smoothness)
    rotation = measurements.rotation_range_deg

    if not thresholds.min_angle <= rotation <= thresholds.max_angle:
        return _failed(
            Modality.HEAD_MOVEMENT, "rotation_out_of_range", smoothness,
            rotation_range_deg=rotation,
        )
    if smoothness < thresholds.min_smoothness:
        return _failed(
            Modality.HEAD_MOVEMENT, "smoothness_below_minimum", smoothness,
            smoothness=smoothness,
        )

    rotations = np.asarray(measurements.rotations_from_origin_deg, dtype=np.float64)
    pass_rate = (
        float(np.mean(rotations <= thresholds.max_angle)) if rotations.size else 0.0
    )
    value = _clip01(smoothness * pass_rate)

    return ModalityScore(
        modality=Modality.HEAD_MOVEMENT,
        value=value,
        passed=value > 0,
        stability=smoothness,
        details={
            "rotation_range_deg": rotation,
            "smoothness": smoothness,
            "pass_rate": pass_rate,
        },
    )


def score_pointer(
    measurements: PointerMeasurements,
    thresholds: PointerThresholds = PointerThresholds(),
) -> ModalityScore:
    """
    Score pointer dynamics.

    Requires ``min_movements`` events, path complexity of at least
    ``min_complexity`` and timing variability of at least
    ``min_variability``. The score is the weighted mean of complexity and
    variability.
    """
    complexity = _clip01(measurements.path_complexity)
    variability = _clip01(measurements.timing_variability)
    stability = 1.0 - variability

    if measurements.event_count < thresholds.min_movements:
        return _failed(
            Modality.POINTER, "too_few_movements", stability,
            event_count=measurements.event_count,
        )
    if complexity < thresholds.min_complexity:
        return _failed(
            Modality.POINTER, "complexity_below_minimum", stability,
            path_complexity=complexity,
        )
    if variability < thresholds.min_variability:
        return _failed(
            Modality.POINTER, "variability_below_minimum", stability,
            timing_variability=variability,
        )

    total_weight = thresholds.complexity_weight + thresholds.variability_weight
    value = _clip01(
        safe_divide(
            thresholds.complexity_weight * complexity
            + thresholds.variability_weight * variability,
            total_weight,
        )
    )

    return ModalityScore(
        modality=Modality.POINTER,
        value=value,
        passed=True,
        stability=_clip01(stability),
        details={"path_complexity": complexity, "timing_variability": variability},
    )


_SCORERS: Dict[Modality, Callable[[object, ModalityThresholds], ModalityScore]] = {
    Modality.FACIAL: lambda m, t: score_facial(m, t.facial),
    Modality.BLINK: lambda m, t: score_blink(m, t.blink),
    Modality.HEAD_MOVEMENT: lambda m, t: score_head_movement(m, t.head_movement),
    Modality.POINTER: lambda m, t: score_pointer(m, t.pointer),
}


def score_modality(
    features: ModalityFeatures, thresholds: Optional[ModalityThresholds] = None
) -> ModalityScore:
    """Score one modality's extracted features."""
    thresholds = thresholds or ModalityThresholds()
    return _SCORERS[features.modality](features.measurements, thresholds)


@timer
def score_modalities(
    summary: CaptureSummary,
    thresholds: Optional[ModalityThresholds] = None,
    executor: Optional[Executor] = None,
) -> Dict[Modality, ModalityScore]:
    """
    Score every modality present in a capture summary.

    Parameters
    ----------
    summary : CaptureSummary
        Closed session output.
    thresholds : ModalityThresholds, optional
        Thresholds to score against; defaults apply when omitted.
    executor : Executor, optional
        Pool to score modalities concurrently. Scored inline when omitted.

    Returns
    -------
    Dict[Modality, ModalityScore]
        One score per present modality.
    """
    thresholds = thresholds or ModalityThresholds()
    features = list(summary.features.values())

    try:
        if executor is None:
            scores = [score_modality(f, thresholds) for f in features]
        else:
            scores = list(executor.map(lambda f: score_modality(f, thresholds), features))
    except (ValueError, TypeError) as e:
        raise BiometricProcessingError(
            f"Modality scoring failed: {e}",
            processing_stage="quality_assessment",
            sample_id=summary.session_id,
        )

    result = {score.modality: score for score in scores}

    logger.info(
        "Modality scoring completed",
        session_id=summary.session_id,
        scores={m.value: round(s.value, 4) for m, s in result.items()},
        failed=[m.value for m, s in result.items() if not s.passed],
    )

    return result
