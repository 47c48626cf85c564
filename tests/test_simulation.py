import numpy as np
import pytest

from humanity_gate.data_models import Modality
from humanity_gate.fingerprint import FingerprintCanonicalizer
from humanity_gate.simulation import (
    SyntheticSubject,
    measure_match_rates,
    summarize_frames,
)
from humanity_gate.utils import generate_session_id, safe_divide


def test_frames_are_ordered_and_inside_the_window(subject):
    frames = subject.session_frames(session_seed=1)
    offsets = [offset for _, _, offset in frames]

    assert offsets == sorted(offsets)
    assert 0.0 <= offsets[0] and offsets[-1] <= 15.0
    counts = {m: sum(1 for f in frames if f[0] is m) for m in Modality}
    assert counts[Modality.FACIAL] == 40
    assert counts[Modality.HEAD_MOVEMENT] == 40
    assert 4 <= counts[Modality.BLINK] <= 5
    assert counts[Modality.POINTER] == 30


def test_subject_without_pointer():
    frames = SyntheticSubject(seed=3, include_pointer=False).session_frames()
    assert all(modality is not Modality.POINTER for modality, _, _ in frames)


def test_sessions_are_reproducible(subject):
    assert subject.session_frames(session_seed=4) == subject.session_frames(session_seed=4)
    assert subject.session_frames() == SyntheticSubject(seed=7).session_frames()
    assert subject.session_frames(session_seed=4) != subject.session_frames(session_seed=5)


def test_summarize_frames(subject):
    summary = summarize_frames(subject.session_frames(session_seed=1), session_id="s-1")

    assert summary.session_id == "s-1"
    assert summary.frame_count == len(subject.session_frames(session_seed=1))
    assert set(summary.modalities) == set(Modality)
    assert summary.features[Modality.FACIAL].vector.shape == (32,)


def test_match_rates_separate_genuine_from_impostor(fast_config):
    subjects = [SyntheticSubject(seed=100 + i) for i in range(5)]
    results = measure_match_rates(
        subjects, 0.25, FingerprintCanonicalizer(fast_config.fingerprint)
    )

    assert results["genuine_comparisons"] == 5
    assert results["impostor_comparisons"] == 10
    assert results["fnmr"] == 0.0
    assert results["fmr"] == 0.0
    assert results["max_genuine_distance"] < 0.25 < results["min_impostor_distance"]


def test_match_rates_at_extreme_distances():
    subjects = [SyntheticSubject(seed=200 + i) for i in range(3)]

    tight = measure_match_rates(subjects, 1e-9)
    assert tight["fnmr"] == 1.0
    assert tight["fmr"] == 0.0

    loose = measure_match_rates(subjects, 2.0)
    assert loose["fnmr"] == 0.0
    assert loose["fmr"] == 1.0


def test_single_session_has_no_genuine_pairs():
    results = measure_match_rates([SyntheticSubject(seed=1)], 0.25, sessions_per_subject=1)
    assert results["genuine_comparisons"] == 0
    assert results["impostor_comparisons"] == 0
    assert results["max_genuine_distance"] is None


class TestUtils:
    def test_session_ids_are_unique_hex(self):
        ids = {generate_session_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 32 and int(i, 16) >= 0 for i in ids)

    @pytest.mark.parametrize(
        "numerator, denominator, default, expected",
        [(10, 2, 0.0, 5.0), (10, 0, 0.0, 0.0), (1, 0, np.inf, np.inf)],
    )
    def test_safe_divide(self, numerator, denominator, default, expected):
        assert safe_divide(numerator, denominator, default) == expected
