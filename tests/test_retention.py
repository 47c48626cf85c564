import time
from datetime import datetime, timezone

import numpy as np
import pytest

from humanity_gate.config import RetentionConfig
from humanity_gate.data_models import IdentityRecord
from humanity_gate.registration_gate import RegistrationEngine
from humanity_gate.retention import RetentionSweeper
from humanity_gate.store import InMemoryRegistrationStore, RegistrationStore
from humanity_gate.uniqueness_index import UniquenessIndex


def identity(user_ref):
    return IdentityRecord(user_ref, "ab" * 32, datetime.now(timezone.utc))


class TestInMemoryStore:
    def test_satisfies_protocol(self, clock):
        assert isinstance(InMemoryRegistrationStore(clock), RegistrationStore)

    def test_vectors_expire(self, clock):
        store = InMemoryRegistrationStore(clock)
        store.save_identity(identity("alice"))
        store.save_feature_vector("alice", np.ones(4), ttl_seconds=10.0)

        assert store.get_feature_vector("alice") is not None
        clock.advance(10.0)
        assert store.get_feature_vector("alice") is None

        assert store.purge_expired() == 1
        assert store.purge_expired() == 0
        assert store.vector_count() == 0
        # Digest records are permanent
        assert store.get_identity("alice") is not None

    def test_purge_zero_fills(self, clock):
        store = InMemoryRegistrationStore(clock)
        store.save_feature_vector("alice", np.ones(4), ttl_seconds=1.0)
        stored = store._vectors["alice"][0]

        clock.advance(2.0)
        store.purge_expired()
        assert not np.any(stored)

    def test_returned_vector_is_a_copy(self, clock):
        store = InMemoryRegistrationStore(clock)
        store.save_feature_vector("alice", np.ones(4), ttl_seconds=10.0)

        store.get_feature_vector("alice")[:] = 0.0
        np.testing.assert_array_equal(store.get_feature_vector("alice"), np.ones(4))

    def test_delete_user(self, clock):
        store = InMemoryRegistrationStore(clock)
        store.save_identity(identity("alice"))
        store.save_feature_vector("alice", np.ones(4), ttl_seconds=10.0)

        assert store.delete_user("alice")
        assert not store.delete_user("alice")
        assert store.identity_count() == 0
        assert store.vector_count() == 0


class TestRetentionSweeper:
    def test_run_once_sweeps_index_store_and_sessions(self, fast_config, clock, register, engine, subject):
        register("alice", subject.session_frames(session_seed=1))
        engine.begin_session("bob")

        sweeper = RetentionSweeper(
            engine.index,
            store=engine.store,
            session_reaper=engine.reap_expired_sessions,
            interval_seconds=1.0,
            clock=clock,
        )
        assert sweeper.run_once() == {
            "evicted_vectors": 0,
            "purged_vectors": 0,
            "reaped_sessions": 0,
        }

        clock.advance(fast_config.retention.vector_retention_seconds + 1.0)
        assert sweeper.run_once() == {
            "evicted_vectors": 1,
            "purged_vectors": 1,
            "reaped_sessions": 1,
        }
        assert sweeper.sweeps == 2
        assert engine.index.stats()["digest_only"] == 1
        assert engine.store.get_identity("alice") is not None

    def test_store_without_purge_is_skipped(self, clock):
        index = UniquenessIndex(4, clock=clock)
        sweeper = RetentionSweeper(index, store=object(), interval_seconds=1.0, clock=clock)
        assert sweeper.run_once()["purged_vectors"] == 0

    def test_interval_defaults_to_retention_config(self, clock):
        index = UniquenessIndex(
            4, retention=RetentionConfig(sweep_interval_seconds=5.0), clock=clock
        )
        assert RetentionSweeper(index).interval_seconds == 5.0

    @pytest.mark.parametrize("interval", [0.0, -1.0])
    def test_invalid_interval(self, clock, interval):
        with pytest.raises(ValueError):
            RetentionSweeper(UniquenessIndex(4, clock=clock), interval_seconds=interval)

    def test_background_thread(self, clock):
        index = UniquenessIndex(4, clock=clock)
        sweeper = RetentionSweeper(index, interval_seconds=0.01, clock=clock)

        sweeper.start()
        try:
            assert sweeper.running
            deadline = time.monotonic() + 2.0
            while sweeper.sweeps < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sweeper.stop()

        assert sweeper.sweeps >= 2
        assert not sweeper.running

    def test_sweeper_survives_unexpected_store_errors(self, clock):
        class FlakyStore:
            calls = 0

            def purge_expired(self, now):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("backend down")
                return 0

        store = FlakyStore()
        sweeper = RetentionSweeper(
            UniquenessIndex(4, clock=clock), store, interval_seconds=0.01, clock=clock
        )
        sweeper.start()
        try:
            deadline = time.monotonic() + 5.0
            while sweeper.sweeps < 1 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert sweeper.running
        finally:
            sweeper.stop()

        assert store.calls >= 2
        assert sweeper.sweeps >= 1

    def test_engine_owns_its_sweeper(self, fast_config, clock):
        engine = RegistrationEngine(fast_config, clock=clock)
        assert not engine.sweeper.running
        assert engine.sweeper.index is engine.index
        assert engine.sweeper.store is engine.store
        assert (
            engine.sweeper.interval_seconds
            == fast_config.retention.sweep_interval_seconds
        )
        engine.close()

        with RegistrationEngine(fast_config, clock=clock) as engine:
            assert engine.sweeper.running
        assert not engine.sweeper.running

    def test_engine_sweeper_is_wired_to_index_store_and_sessions(
        self, fast_config, clock, register, engine, subject
    ):
        register("alice", subject.session_frames(session_seed=1))
        engine.begin_session("bob")

        clock.advance(fast_config.retention.vector_retention_seconds + 1.0)
        assert engine.sweeper.run_once() == {
            "evicted_vectors": 1,
            "purged_vectors": 1,
            "reaped_sessions": 1,
        }
