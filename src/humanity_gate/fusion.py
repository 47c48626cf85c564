"""
Multimodal score fusion for the HUMANITY GATE engine.

This module combines per-modality quality scores into one composite score
in [0, 100] and applies the acceptance gates. Configured weights are
redistributed over the modalities actually present in a session, so a user
without a pointer device is judged on the other three modalities instead of
being penalised for the missing one.

Fusion is a pure function of its inputs: no randomness, no state.
"""

from typing import Dict, Mapping, Optional

import numpy as np
import structlog

from .config import FusionConfig
from .constants import COMPOSITE_PRECISION
from .data_models import FusedResult, Modality, ModalityScore, QualityClass
from .exceptions import FusionError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def classify_composite(
    composite_score: float,
    minimum_score: float,
    excellent_score: float,
) -> QualityClass:
    """
    Classify a composite score against the quality gates.

    Boundaries are inclusive on the upper class: ``minimum_score`` itself is
    ACCEPTED and ``excellent_score`` itself is EXCELLENT.

    Examples
    --------
    >>> classify_composite(69.999, 70.0, 90.0)
    <QualityClass.REJECTED: 'REJECTED'>
    >>> classify_composite(70.0, 70.0, 90.0)
    <QualityClass.ACCEPTED: 'ACCEPTED'>
    """
    if composite_score >= excellent_score:
        return QualityClass.EXCELLENT
    if composite_score >= minimum_score:
        return QualityClass.ACCEPTED
    return QualityClass.REJECTED


class FusionEngine:
    """
    Weighted fusion of modality quality scores.

    Parameters
    ----------
    config : FusionConfig, optional
        Weights and gates. Defaults apply when omitted.

    Examples
    --------
    >>> engine = FusionEngine()
    >>> result = engine.fuse({
    ...     Modality.FACIAL: ModalityScore(Modality.FACIAL, 0.8, True),
    ...     Modality.BLINK: ModalityScore(Modality.BLINK, 0.75, True),
    ...     Modality.HEAD_MOVEMENT: ModalityScore(Modality.HEAD_MOVEMENT, 0.65, True),
    ...     Modality.POINTER: ModalityScore(Modality.POINTER, 0.5, True),
    ... })
    >>> result.composite_score
    72.5
    """

    def __init__(self, config: Optional[FusionConfig] = None) -> None:
        self.config = config or FusionConfig()
        self.weights = self._validate_fusion_weights(self.config.weights)

        logger.debug(
            "FusionEngine initialized",
            fusion_weights={m.value: w for m, w in self.weights.items()},
            minimum_score=self.config.minimum_score,
            excellent_score=self.config.excellent_score,
        )

    def _validate_fusion_weights(
        self, weights: Mapping[str, float]
    ) -> Dict[Modality, float]:
        """
        Validate configured weights and key them by modality.

        Raises
        ------
        FusionError
            If a weight is negative, a modality is unknown or all weights are
            zero.
        """
        parsed: Dict[Modality, float] = {}
        for name, weight in weights.items():
            try:
                modality = Modality.parse(name)
            except ValueError as e:
                raise FusionError(str(e), modalities=list(weights.keys()))
            if weight < 0:
                raise FusionError(
                    f"Fusion weight for '{modality.value}' must be non-negative, got {weight}",
                    modalities=list(weights.keys()),
                )
            parsed[modality] = float(weight)

        if sum(parsed.values()) <= 0:
            raise FusionError(
                "Fusion weights cannot all be zero", modalities=list(weights.keys())
            )

        return parsed

    def effective_weights(self, present: "list[Modality]") -> Dict[Modality, float]:
        """
        Redistribute configured weights over the present modalities.

        Raises
        ------
        FusionError
            If none of the present modalities carries weight.
        """
        raw = {m: self.weights.get(m, 0.0) for m in present}
        total = sum(raw.values())
        if total <= 0:
            raise FusionError(
                "No weighted modality present",
                modalities=[m.value for m in present],
            )
        return {m: w / total for m, w in raw.items()}

    def fuse(self, scores: Mapping[Modality, ModalityScore]) -> FusedResult:
        """
        Fuse modality scores into a classified composite.

        Composite = Σ(weight_i × score_i × 100) over present modalities, with
        weights renormalised to sum to 1 and failing modalities contributing
        0.

        Parameters
        ----------
        scores : Mapping[Modality, ModalityScore]
            Scores of the modalities present in the session.

        Returns
        -------
        FusedResult
            Composite score and classification.

        Raises
        ------
        FusionError
            If no scores are given or none of them carries weight.
        """
        if not scores:
            raise FusionError("Cannot fuse an empty score set", modalities=[])

        for modality, score in scores.items():
            if score.modality is not modality:
                raise FusionError(
                    f"Score for '{score.modality.value}' filed under '{modality.value}'",
                    modalities=[m.value for m in scores],
                )

        weights = self.effective_weights(list(scores.keys()))

        composite = sum(
            weights[m] * scores[m].effective_value * 100.0 for m in scores
        )
        composite = round(float(np.clip(composite, 0.0, 100.0)), COMPOSITE_PRECISION)

        stability = round(
            float(sum(weights[m] * scores[m].stability for m in scores)),
            COMPOSITE_PRECISION,
        )

        classification = classify_composite(
            composite, self.config.minimum_score, self.config.excellent_score
        )

        result = FusedResult(
            composite_score=composite,
            classification=classification,
            weights=weights,
            scores=dict(scores),
            stability=float(np.clip(stability, 0.0, 1.0)),
        )

        logger.info(
            "Score fusion completed",
            composite_score=composite,
            classification=classification.value,
            modalities=[m.value for m in scores],
        )

        return result


def calculate_fusion_quality_metrics(vector: np.ndarray) -> Dict[str, float]:
    """
    Calculate descriptive metrics for a canonical fingerprint vector.

    Parameters
    ----------
    vector : np.ndarray
        Canonical fingerprint vector.

    Returns
    -------
    Dict[str, float]
        Basic statistics, sparsity and uniqueness indicators.
    """
    metrics = {}

    metrics["mean"] = float(np.mean(vector))
    metrics["std"] = float(np.std(vector))
    metrics["min"] = float(np.min(vector))
    metrics["max"] = float(np.max(vector))
    metrics["norm"] = float(np.linalg.norm(vector))

    # Proportion of non-zero elements
    metrics["sparsity"] = float(np.count_nonzero(vector)) / len(vector)

    metrics["dynamic_range"] = metrics["max"] - metrics["min"]

    metrics["unique_values"] = len(np.unique(vector))
    metrics["uniqueness_ratio"] = metrics["unique_values"] / len(vector)

    return metrics
