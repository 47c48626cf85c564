"""Shared fixtures for the HUMANITY GATE test suite."""

import numpy as np
import pytest

from humanity_gate.config import EngineConfig, FingerprintConfig
from humanity_gate.registration_gate import RegistrationEngine
from humanity_gate.simulation import SyntheticSubject


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    """Default engine configuration with a cheap digest."""
    return EngineConfig().with_overrides(
        fingerprint=FingerprintConfig(digest_rounds=1, digest_memory_cost_kb=64),
        max_workers=2,
    )


@pytest.fixture
def engine(fast_config, clock):
    engine = RegistrationEngine(fast_config, clock=clock)
    yield engine
    engine.close()


@pytest.fixture
def subject():
    return SyntheticSubject(seed=7)


@pytest.fixture
def other_subject():
    return SyntheticSubject(seed=8)


@pytest.fixture
def submit_frames(clock):
    """Submit synthetic frames into an engine session at session-relative offsets."""

    def _submit(engine, session_id, frames):
        start = clock()
        for modality, sample, offset in frames:
            engine.submit_frame(session_id, modality, sample, start + offset)

    return _submit


@pytest.fixture
def register(engine, submit_frames):
    """Run one full registration attempt and return its decision."""

    def _register(user_ref, frames, target=None):
        target = target or engine
        session_id = target.begin_session(user_ref)
        submit_frames(target, session_id, frames)
        return target.finalize(session_id)

    return _register


@pytest.fixture
def unit_vectors():
    """Factory of seeded random unit vectors."""

    def _make(count: int, dim: int = 56, seed: int = 0) -> np.ndarray:
        rng = np.random.default_rng(seed)
        vectors = rng.normal(size=(count, dim))
        return vectors / np.linalg.norm(vectors, axis=1, keepdims=True)

    return _make
