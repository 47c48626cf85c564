import threading
import time

import numpy as np
import pytest

from humanity_gate.config import IndexConfig, RetentionConfig
from humanity_gate.constants import FINGERPRINT_DIM
from humanity_gate.exceptions import (
    DuplicateFingerprintError,
    IndexTimeoutError,
    IndexUnavailableError,
    UniquenessIndexError,
)
from humanity_gate.uniqueness_index import UniquenessIndex, expected_recall

DIM = FINGERPRINT_DIM


def perturb(vector, distance, rng):
    """Rotate a unit vector so the chord to the original has the given length."""
    direction = rng.normal(size=vector.shape)
    direction -= direction.dot(vector) * vector
    direction /= np.linalg.norm(direction)
    angle = 2.0 * np.arcsin(distance / 2.0)
    return np.cos(angle) * vector + np.sin(angle) * direction


@pytest.fixture
def index(clock):
    return UniquenessIndex(DIM, clock=clock)


def test_insert_then_lookup_finds_exact_vector(index, unit_vectors):
    vector = unit_vectors(1)[0]
    entry = index.insert(vector, "digest-a", "user-a")

    match = index.lookup(vector)
    assert match.user_ref == "user-a"
    assert match.distance == pytest.approx(0.0)
    assert match.matched_by == "vector"
    assert entry.vector_expires_at == entry.registered_at + 24 * 3600
    assert len(index) == 1


def test_distant_vector_has_no_match(index, unit_vectors):
    first, second = unit_vectors(2)
    index.insert(first, "digest-a", "user-a")
    assert index.lookup(second) is None


def test_match_threshold_is_inclusive_of_d_min(index, unit_vectors):
    rng = np.random.default_rng(1)
    vector = unit_vectors(1)[0]
    index.insert(vector, "digest-a", "user-a")

    assert index.lookup(perturb(vector, 0.24, rng)).user_ref == "user-a"
    assert index.lookup(perturb(vector, 0.26, rng)) is None


def test_nearest_ignores_threshold(index, unit_vectors):
    rng = np.random.default_rng(2)
    vector = unit_vectors(1)[0]
    index.insert(vector, "digest-a", "user-a")

    nearest = index.nearest(perturb(vector, 0.3, rng))
    assert nearest.user_ref == "user-a"
    assert nearest.distance == pytest.approx(0.3)


def test_recall_on_seeded_population(index, unit_vectors):
    vectors = unit_vectors(200, seed=11)
    for i, vector in enumerate(vectors):
        index.insert(vector, f"digest-{i}", f"user-{i}")

    rng = np.random.default_rng(12)
    missed = []
    for i, vector in enumerate(vectors):
        query = perturb(vector, rng.uniform(0.2, 0.24), rng)
        match = index.lookup(query)
        if match is None or match.user_ref != f"user-{i}":
            missed.append(i)

    assert missed == []


def test_near_duplicate_insert_rejected(index, unit_vectors):
    rng = np.random.default_rng(3)
    vector = unit_vectors(1)[0]
    index.insert(vector, "digest-a", "user-a")

    with pytest.raises(DuplicateFingerprintError) as exc_info:
        index.insert(perturb(vector, 0.1, rng), "digest-b", "user-b")

    assert exc_info.value.matched_user_ref == "user-a"
    assert exc_info.value.distance == pytest.approx(0.1)
    assert exc_info.value.matched_by == "vector"
    assert len(index) == 1


def test_no_two_retained_vectors_closer_than_d_min(index, unit_vectors):
    rng = np.random.default_rng(4)
    seeds = unit_vectors(30, seed=5)
    attempts = [v for s in seeds for v in (s, perturb(s, rng.uniform(0.0, 0.4), rng))]

    for i, vector in enumerate(attempts):
        try:
            index.insert(vector, f"digest-{i}", f"user-{i}")
        except DuplicateFingerprintError:
            pass

    retained = [
        index.retained_vector(ref)
        for ref in (f"user-{i}" for i in range(len(attempts)))
        if index.get_entry(ref) is not None
    ]
    for i in range(len(retained)):
        for j in range(i + 1, len(retained)):
            assert np.linalg.norm(retained[i] - retained[j]) > 0.25


def test_same_user_ref_cannot_register_twice(index, unit_vectors):
    first, second = unit_vectors(2)
    index.insert(first, "digest-a", "user-a")

    with pytest.raises(DuplicateFingerprintError) as exc_info:
        index.insert(second, "digest-b", "user-a")
    assert exc_info.value.matched_by == "user_ref"


def test_same_digest_is_a_duplicate(index, unit_vectors):
    first, second = unit_vectors(2)
    index.insert(first, "digest-a", "user-a")

    with pytest.raises(DuplicateFingerprintError) as exc_info:
        index.insert(second, "digest-a", "user-b")
    assert exc_info.value.matched_by == "digest"
    assert exc_info.value.distance is None


def test_concurrent_identical_registrations_admit_one(index, unit_vectors):
    vector = unit_vectors(1)[0]
    workers = 8
    barrier = threading.Barrier(workers)
    accepted, duplicates = [], []

    def attempt(i):
        barrier.wait()
        try:
            index.insert(vector.copy(), f"digest-{i}", f"user-{i}")
            accepted.append(i)
        except DuplicateFingerprintError:
            duplicates.append(i)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(accepted) == 1
    assert len(duplicates) == workers - 1
    assert len(index) == 1


@pytest.mark.parametrize("distance", [0.05, 0.15, 0.24])
def test_concurrent_near_duplicates_admit_one(index, unit_vectors, distance):
    rng = np.random.default_rng(21)
    bases = unit_vectors(20, seed=22)

    for i, base in enumerate(bases):
        pair = (base, perturb(base, distance, rng))
        barrier = threading.Barrier(len(pair))
        accepted = []

        def attempt(j):
            barrier.wait()
            try:
                index.insert(pair[j], f"digest-{i}-{j}", f"user-{i}-{j}")
                accepted.append(j)
            except DuplicateFingerprintError:
                pass

        threads = [threading.Thread(target=attempt, args=(j,)) for j in range(len(pair))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(accepted) == 1, f"pair {i} at distance {distance}"

    assert len(index) == len(bases)


def test_eviction_races_with_readers_and_writers(clock, unit_vectors):
    index = UniquenessIndex(
        DIM, retention=RetentionConfig(vector_retention_seconds=100.0), clock=clock
    )
    old = unit_vectors(50, seed=31)
    for i, vector in enumerate(old):
        index.insert(vector, f"old-digest-{i}", f"old-{i}")
    clock.advance(50.0)
    fresh = unit_vectors(50, seed=32)
    # Past the old entries' expiry, before the fresh ones'
    cutoff = clock() + 70.0

    barrier = threading.Barrier(4)
    errors = []
    evicted = []

    def evictor():
        barrier.wait()
        deadline = time.monotonic() + 10.0
        while sum(evicted) < len(old) and time.monotonic() < deadline:
            evicted.append(index.evict_expired(cutoff))

    def reader():
        barrier.wait()
        try:
            for _ in range(5):
                for i, vector in enumerate(old):
                    match = index.lookup(vector)
                    if match is not None and match.user_ref != f"old-{i}":
                        errors.append(match)
                    index.nearest(vector)
                    index.retained_vector(f"old-{i}")
        except Exception as e:
            errors.append(e)

    def writer():
        barrier.wait()
        try:
            for i, vector in enumerate(fresh):
                index.insert(vector, f"fresh-digest-{i}", f"fresh-{i}")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=t) for t in (evictor, reader, reader, writer)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sum(evicted) == len(old)
    assert len(index) == len(old) + len(fresh)
    for i, vector in enumerate(old):
        assert index.lookup(vector) is None
        assert index.lookup(vector, f"old-digest-{i}").matched_by == "digest"
    for i, vector in enumerate(fresh):
        assert index.lookup(vector).user_ref == f"fresh-{i}"


def test_busy_locks_raise_timeout(clock, unit_vectors):
    index = UniquenessIndex(
        DIM, IndexConfig(lock_stripes=1, lock_timeout_seconds=0.05), clock=clock
    )
    index._stripes[0].acquire()
    try:
        with pytest.raises(IndexTimeoutError):
            index.insert(unit_vectors(1)[0], "digest-a", "user-a")
    finally:
        index._stripes[0].release()

    assert len(index) == 0
    # Locks are usable again once released
    index.insert(unit_vectors(1)[0], "digest-a", "user-a")


def test_failed_commit_inserts_nothing(index, unit_vectors):
    vector = unit_vectors(1)[0]

    def failing_write(entry):
        raise RuntimeError("disk full")

    with pytest.raises(IndexUnavailableError) as exc_info:
        index.insert(vector, "digest-a", "user-a", on_commit=failing_write)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert len(index) == 0
    assert index.lookup(vector, "digest-a") is None
    index.insert(vector, "digest-a", "user-a")


def test_commit_runs_before_entry_is_visible(index, unit_vectors):
    seen = []

    def write(entry):
        seen.append((entry.user_ref, index.get_entry(entry.user_ref)))

    index.insert(unit_vectors(1)[0], "digest-a", "user-a", on_commit=write)
    assert seen == [("user-a", None)]
    assert index.get_entry("user-a") is not None


class TestRetention:
    @pytest.fixture
    def short_index(self, clock):
        return UniquenessIndex(
            DIM, retention=RetentionConfig(vector_retention_seconds=100.0), clock=clock
        )

    def test_eviction_keeps_digest(self, short_index, clock, unit_vectors):
        vector = unit_vectors(1)[0]
        short_index.insert(vector, "digest-a", "user-a")

        clock.advance(50.0)
        assert short_index.evict_expired() == 0

        clock.advance(51.0)
        assert short_index.evict_expired() == 1
        assert short_index.evict_expired() == 0

        assert short_index.retained_vector("user-a") is None
        assert short_index.lookup(vector) is None
        match = short_index.lookup(vector, "digest-a")
        assert match.matched_by == "digest"
        assert match.user_ref == "user-a"

        stats = short_index.stats()
        assert stats["registrations"] == 1
        assert stats["digest_only"] == 1
        assert stats["occupied_buckets"] == 0

    def test_expired_registration_still_blocks_same_digest(self, short_index, clock, unit_vectors):
        vector = unit_vectors(1)[0]
        short_index.insert(vector, "digest-a", "user-a")
        clock.advance(101.0)
        short_index.evict_expired()

        with pytest.raises(DuplicateFingerprintError):
            short_index.insert(vector, "digest-a", "user-b")

    def test_expired_vector_is_ignored_before_eviction(self, short_index, clock, unit_vectors):
        rng = np.random.default_rng(6)
        vector = unit_vectors(1)[0]
        short_index.insert(vector, "digest-a", "user-a")
        clock.advance(100.0)

        assert short_index.lookup(vector) is None
        assert short_index.nearest(vector) is None
        assert short_index.retained_vector("user-a") is None
        assert short_index.lookup(vector, "digest-a").matched_by == "digest"

        short_index.insert(perturb(vector, 0.1, rng), "digest-b", "user-b")
        assert short_index.evict_expired() == 1

    def test_busy_entry_is_deferred(self, clock, unit_vectors):
        index = UniquenessIndex(
            DIM,
            IndexConfig(lock_stripes=1, lock_timeout_seconds=0.05),
            RetentionConfig(vector_retention_seconds=10.0),
            clock=clock,
        )
        index.insert(unit_vectors(1)[0], "digest-a", "user-a")
        clock.advance(11.0)

        index._stripes[0].acquire()
        try:
            assert index.evict_expired() == 0
        finally:
            index._stripes[0].release()
        assert index.evict_expired() == 1


def test_retained_vector_is_a_copy(index, unit_vectors):
    vector = unit_vectors(1)[0]
    index.insert(vector, "digest-a", "user-a")

    copy = index.retained_vector("user-a")
    copy[:] = 0.0
    np.testing.assert_allclose(index.retained_vector("user-a"), vector)


def test_remove(index, unit_vectors):
    vector = unit_vectors(1)[0]
    index.insert(vector, "digest-a", "user-a")

    assert index.remove("user-a")
    assert not index.remove("user-a")
    assert index.lookup(vector, "digest-a") is None
    assert index.stats()["occupied_buckets"] == 0

    index.insert(vector, "digest-a", "user-b")


@pytest.mark.parametrize(
    "vector", [np.ones(DIM - 1), np.full(DIM, np.nan), np.ones((2, DIM))]
)
def test_rejects_malformed_vectors(index, vector):
    with pytest.raises(UniquenessIndexError):
        index.lookup(vector)


def test_rejects_empty_identifiers(index, unit_vectors):
    vector = unit_vectors(1)[0]
    with pytest.raises(UniquenessIndexError):
        index.insert(vector, "", "user-a")
    with pytest.raises(UniquenessIndexError):
        index.insert(vector, "digest-a", "")


def test_stats(index, unit_vectors):
    for i, vector in enumerate(unit_vectors(10)):
        index.insert(vector, f"digest-{i}", f"user-{i}")

    stats = index.stats()
    assert stats["registrations"] == 10
    assert stats["retained_vectors"] == 10
    assert stats["occupied_buckets"] <= 10 * 8
    assert stats["max_bucket_size"] >= 1
    assert stats["dimension"] == DIM


def test_expected_recall():
    assert expected_recall(0.0, 8, 6) == pytest.approx(1.0)
    assert expected_recall(0.25, 8, 6) > 0.99
    assert expected_recall(0.5, 8, 6) < expected_recall(0.25, 8, 6)
    assert expected_recall(0.25, 8, 12) < expected_recall(0.25, 8, 6)
