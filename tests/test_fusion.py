import numpy as np
import pytest

from humanity_gate.config import FusionConfig
from humanity_gate.data_models import Modality, ModalityScore, QualityClass
from humanity_gate.exceptions import FusionError
from humanity_gate.fusion import (
    FusionEngine,
    calculate_fusion_quality_metrics,
    classify_composite,
)


def make_scores(facial=0.8, blink=0.75, head=0.65, pointer=0.5, failed=()):
    values = {
        Modality.FACIAL: facial,
        Modality.BLINK: blink,
        Modality.HEAD_MOVEMENT: head,
        Modality.POINTER: pointer,
    }
    return {
        m: ModalityScore(m, v, passed=m not in failed)
        for m, v in values.items()
        if v is not None
    }


@pytest.fixture
def fusion():
    return FusionEngine()


def test_weighted_composite(fusion):
    result = fusion.fuse(make_scores())

    # 0.4*80 + 0.3*75 + 0.2*65 + 0.1*50
    assert result.composite_score == pytest.approx(72.5)
    assert result.classification is QualityClass.ACCEPTED
    assert result.is_accepted


@pytest.mark.parametrize(
    "score, expected",
    [
        (69.999, QualityClass.REJECTED),
        (70.0, QualityClass.ACCEPTED),
        (89.999, QualityClass.ACCEPTED),
        (90.0, QualityClass.EXCELLENT),
        (100.0, QualityClass.EXCELLENT),
        (0.0, QualityClass.REJECTED),
    ],
)
def test_classification_boundaries(score, expected):
    assert classify_composite(score, 70.0, 90.0) is expected


def test_missing_modality_weights_are_renormalized(fusion):
    result = fusion.fuse(make_scores(pointer=None))

    assert Modality.POINTER not in result.weights
    assert sum(result.weights.values()) == pytest.approx(1.0)
    assert result.weights[Modality.FACIAL] == pytest.approx(0.4 / 0.9)
    assert result.composite_score == pytest.approx((32 + 22.5 + 13) / 0.9)


def test_failed_modality_contributes_zero(fusion):
    result = fusion.fuse(make_scores(failed=(Modality.FACIAL,)))

    assert result.composite_score == pytest.approx(22.5 + 13 + 5)
    assert result.classification is QualityClass.REJECTED


def test_composite_is_monotonic_in_each_score(fusion):
    rng = np.random.default_rng(3)
    for _ in range(50):
        base = rng.uniform(0, 1, 4)
        modality = int(rng.integers(0, 4))
        bumped = base.copy()
        bumped[modality] = min(1.0, bumped[modality] + rng.uniform(0, 0.5))

        low = fusion.fuse(make_scores(*base)).composite_score
        high = fusion.fuse(make_scores(*bumped)).composite_score
        assert high >= low


def test_fusion_is_deterministic(fusion):
    scores = make_scores(0.91, 0.33, 0.77, 0.12)
    assert fusion.fuse(scores).composite_score == fusion.fuse(scores).composite_score


def test_composite_stays_in_range(fusion):
    assert fusion.fuse(make_scores(1.0, 1.0, 1.0, 1.0)).composite_score == 100.0
    assert fusion.fuse(make_scores(0.0, 0.0, 0.0, 0.0)).composite_score == 0.0


def test_empty_scores_rejected(fusion):
    with pytest.raises(FusionError):
        fusion.fuse({})


def test_mislabelled_score_rejected(fusion):
    with pytest.raises(FusionError):
        fusion.fuse({Modality.FACIAL: ModalityScore(Modality.BLINK, 0.5, True)})


def test_only_zero_weight_modalities_rejected():
    fusion = FusionEngine(
        FusionConfig(weights={"facial": 1.0, "blink": 0.0, "head_movement": 0.0, "pointer": 0.0})
    )
    with pytest.raises(FusionError):
        fusion.fuse({Modality.BLINK: ModalityScore(Modality.BLINK, 0.9, True)})


@pytest.mark.parametrize(
    "weights",
    [
        {"facial": -0.1, "blink": 1.0},
        {"facial": 0.0, "blink": 0.0},
        {"iris": 1.0},
    ],
)
def test_invalid_weights_rejected(weights):
    with pytest.raises(FusionError):
        FusionEngine(FusionConfig(weights=weights))


def test_fusion_quality_metrics():
    vector = np.array([0.6, 0.8, 0.0, 0.0])
    metrics = calculate_fusion_quality_metrics(vector)

    assert metrics["norm"] == pytest.approx(1.0)
    assert metrics["sparsity"] == pytest.approx(0.5)
    assert metrics["dynamic_range"] == pytest.approx(0.8)
    assert metrics["unique_values"] == 3
