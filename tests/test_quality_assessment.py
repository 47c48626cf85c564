from concurrent.futures import ThreadPoolExecutor

import pytest

from humanity_gate.data_models import (
    BlinkMeasurements,
    FacialMeasurements,
    HeadMovementMeasurements,
    Modality,
    PointerMeasurements,
)
from humanity_gate.quality_assessment import (
    score_blink,
    score_facial,
    score_head_movement,
    score_modalities,
    score_pointer,
)
from humanity_gate.simulation import summarize_frames


class TestFacial:
    def test_centred_movement_scores_confidence_times_stability(self):
        score = score_facial(FacialMeasurements(0.5, 0.9, 0.9, 40))
        assert score.passed
        assert score.value == pytest.approx(0.81)

    def test_edge_movement_halves_balance(self):
        score = score_facial(FacialMeasurements(0.9, 1.0, 1.0, 40))
        assert score.value == pytest.approx(0.5)

    def test_movement_above_range_is_clamped(self):
        clamped = score_facial(FacialMeasurements(0.99, 1.0, 1.0, 40))
        assert clamped.value == pytest.approx(0.5)

    @pytest.mark.parametrize(
        "measurements, reason",
        [
            (FacialMeasurements(0.05, 0.9, 0.9, 40), "movement_below_minimum"),
            (FacialMeasurements(0.5, 0.69, 0.9, 40), "confidence_below_minimum"),
            (FacialMeasurements(0.5, 0.9, 0.79, 40), "stability_below_minimum"),
        ],
    )
    def test_floors(self, measurements, reason):
        score = score_facial(measurements)
        assert not score.passed
        assert score.value == 0.0
        assert score.details["reason"] == reason


class TestBlink:
    def test_all_blinks_in_range(self):
        score = score_blink(BlinkMeasurements((200.0, 210.0, 190.0), (3000.0, 3100.0)))
        assert score.passed
        assert score.value == pytest.approx(1.0)

    def test_partial_pass(self):
        # Second blink too long, third blink follows too quickly
        score = score_blink(
            BlinkMeasurements((200.0, 500.0, 200.0, 200.0), (3000.0, 1000.0, 3000.0))
        )
        assert score.value == pytest.approx(0.5)
        assert score.details["passing_blinks"] == 2

    @pytest.mark.parametrize("count", [2, 21])
    def test_count_out_of_range(self, count):
        durations = tuple([200.0] * count)
        intervals = tuple([3000.0] * (count - 1))
        score = score_blink(BlinkMeasurements(durations, intervals))
        assert not score.passed
        assert score.value == 0.0


class TestHeadMovement:
    def test_smooth_rotation_in_range(self):
        score = score_head_movement(
            HeadMovementMeasurements(10.0, 0.9, (0.0, 5.0, 10.0, 5.0), 4)
        )
        assert score.passed
        assert score.value == pytest.approx(0.9)

    def test_pass_rate_scales_score(self):
        score = score_head_movement(
            HeadMovementMeasurements(14.0, 1.0, (0.0, 5.0, 16.0, 20.0), 4)
        )
        assert score.value == pytest.approx(0.5)

    @pytest.mark.parametrize(
        "rotation, smoothness", [(1.9, 0.9), (15.1, 0.9), (10.0, 0.59)]
    )
    def test_gates(self, rotation, smoothness):
        score = score_head_movement(
            HeadMovementMeasurements(rotation, smoothness, (0.0, 1.0), 2)
        )
        assert not score.passed
        assert score.value == 0.0


class TestPointer:
    def test_weighted_mean(self):
        score = score_pointer(PointerMeasurements(20, 0.8, 0.5))
        assert score.passed
        assert score.value == pytest.approx(0.6 * 0.8 + 0.4 * 0.5)

    @pytest.mark.parametrize(
        "measurements",
        [
            PointerMeasurements(9, 0.8, 0.5),
            PointerMeasurements(20, 0.49, 0.5),
            PointerMeasurements(20, 0.8, 0.29),
        ],
    )
    def test_gates(self, measurements):
        score = score_pointer(measurements)
        assert not score.passed
        assert score.value == 0.0


def test_scores_are_bounded(subject):
    summary = summarize_frames(subject.session_frames(session_seed=1))
    for score in score_modalities(summary).values():
        assert 0.0 <= score.value <= 1.0
        assert 0.0 <= score.stability <= 1.0


def test_parallel_scoring_matches_inline(subject):
    summary = summarize_frames(subject.session_frames(session_seed=1))
    inline = score_modalities(summary)
    with ThreadPoolExecutor(max_workers=4) as executor:
        parallel = score_modalities(summary, executor=executor)

    assert set(parallel) == set(Modality)
    for modality in inline:
        assert parallel[modality].value == inline[modality].value


def test_synthetic_subject_passes_every_modality(subject):
    summary = summarize_frames(subject.session_frames(session_seed=1))
    scores = score_modalities(summary)
    assert all(score.passed for score in scores.values()), {
        m.value: s.details for m, s in scores.items()
    }
