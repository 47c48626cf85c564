from dataclasses import replace

import numpy as np
import pytest

from humanity_gate.config import FingerprintConfig
from humanity_gate.constants import FINGERPRINT_DIM
from humanity_gate.data_models import CaptureSummary, Modality
from humanity_gate.exceptions import (
    CanonicalizationError,
    DigestGenerationError,
    LowEntropyError,
)
from humanity_gate.fingerprint import FingerprintCanonicalizer, estimate_entropy
from humanity_gate.simulation import SyntheticSubject, summarize_frames


@pytest.fixture
def canonicalizer(fast_config):
    return FingerprintCanonicalizer(fast_config.fingerprint)


@pytest.fixture
def summary(subject):
    return summarize_frames(subject.session_frames(session_seed=1))


def test_canonical_vector_shape_and_norm(canonicalizer, summary):
    vector, present = canonicalizer.canonical_vector(summary)

    assert canonicalizer.dimension == FINGERPRINT_DIM == 56
    assert vector.shape == (56,)
    assert np.linalg.norm(vector) == pytest.approx(1.0)
    assert present.all()


def test_missing_modality_is_a_zero_block(canonicalizer):
    subject = SyntheticSubject(seed=11, include_pointer=False)
    vector, present = canonicalizer.canonical_vector(
        summarize_frames(subject.session_frames(session_seed=1))
    )

    # Pointer is the last 8-component block
    np.testing.assert_array_equal(vector[-8:], np.zeros(8))
    assert not present[-8:].any()
    assert present[:-8].all()
    assert np.linalg.norm(vector) == pytest.approx(1.0)


def test_canonicalize_is_deterministic(canonicalizer, summary):
    first = canonicalizer.canonicalize(summary)
    second = canonicalizer.canonicalize(summary)

    np.testing.assert_array_equal(first.vector, second.vector)
    assert first.digest == second.digest
    assert len(first.digest) == 64
    assert first.entropy >= canonicalizer.config.min_entropy
    assert first.modalities == (
        Modality.FACIAL,
        Modality.BLINK,
        Modality.HEAD_MOVEMENT,
        Modality.POINTER,
    )


def test_digest_depends_on_key(canonicalizer, summary):
    other = FingerprintCanonicalizer(replace(canonicalizer.config, digest_key="another-key"))
    assert canonicalizer.canonicalize(summary).digest != other.canonicalize(summary).digest


def test_same_subject_sessions_are_close_but_digests_differ(canonicalizer, subject):
    first = canonicalizer.canonicalize(summarize_frames(subject.session_frames(session_seed=1)))
    second = canonicalizer.canonicalize(summarize_frames(subject.session_frames(session_seed=2)))

    assert np.linalg.norm(first.vector - second.vector) < 0.25
    assert first.digest != second.digest


def test_verify_digest(canonicalizer, summary):
    fingerprint = canonicalizer.canonicalize(summary)

    assert canonicalizer.verify_digest(fingerprint.vector, fingerprint.digest)
    assert not canonicalizer.verify_digest(fingerprint.vector, "0" * 64)
    assert not canonicalizer.verify_digest(np.array([]), fingerprint.digest)


def test_quantize_layout(canonicalizer):
    vector = np.array([0.014, -0.026, 0.0])
    levels = np.frombuffer(canonicalizer.quantize(vector), dtype="<i4")
    np.testing.assert_array_equal(levels, [1, -3, 0])


@pytest.mark.parametrize(
    "vector", [np.array([]), np.array([np.nan, 1.0]), np.ones((2, 2)), [0.1, 0.2]]
)
def test_compute_digest_rejects_bad_vectors(canonicalizer, vector):
    with pytest.raises(DigestGenerationError):
        canonicalizer.compute_digest(vector)


def test_featureless_capture_is_low_entropy(canonicalizer):
    spoof = SyntheticSubject(seed=5, static_landmarks=True)
    with pytest.raises(LowEntropyError) as exc_info:
        canonicalizer.canonicalize(summarize_frames(spoof.session_frames(session_seed=1)))

    assert exc_info.value.entropy < exc_info.value.minimum_entropy


def test_empty_summary_rejected(canonicalizer):
    empty = CaptureSummary("s", "u", 0, {}, 0.0, 0.0)
    with pytest.raises(CanonicalizationError):
        canonicalizer.canonicalize(empty)


def test_estimate_entropy_extremes():
    assert estimate_entropy(np.zeros(16), 0.01) == 0.0
    assert estimate_entropy(np.arange(16) * 0.1, 0.01) == pytest.approx(1.0)
    assert estimate_entropy(np.array([0.5]), 0.01) == 0.0

    half = np.concatenate([np.zeros(8), np.arange(1, 9) * 0.1])
    assert 0.0 < estimate_entropy(half, 0.01) < 1.0


def test_salt_is_derived_from_key():
    a = FingerprintCanonicalizer(FingerprintConfig(digest_key="k1", digest_rounds=1, digest_memory_cost_kb=64))
    b = FingerprintCanonicalizer(FingerprintConfig(digest_key="k1", digest_rounds=1, digest_memory_cost_kb=64))
    c = FingerprintCanonicalizer(FingerprintConfig(digest_key="k2", digest_rounds=1, digest_memory_cost_kb=64))

    assert a._salt == b._salt
    assert a._salt != c._salt
    assert len(a._salt) == 16
