"""Tests for the persisted key pool."""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from keygate.app.core.security import SecretsTokenGenerator, SequenceTokenGenerator
from keygate.app.exceptions import EmptyPoolError, StoreIOError
from keygate.app.services.token_store import TokenStore


class TestTakeOne:
    """Tests for removing keys from the pool."""

    def test_takes_keys_head_first(self, make_store):
        """Keys are issued in pool order."""
        store = make_store(["A", "B", "C"])

        assert store.take_one() == "A"
        assert store.take_one() == "B"
        assert store.snapshot() == ["C"]

    def test_empty_pool_raises(self, make_store):
        """Taking from an empty pool raises EmptyPoolError."""
        store = make_store([])

        with pytest.raises(EmptyPoolError):
            store.take_one()

    def test_missing_pool_file_is_empty(self, pool_path):
        """A store without a pool file behaves as an empty pool."""
        store = TokenStore(pool_path)

        assert store.is_initialized is False
        assert len(store) == 0
        with pytest.raises(EmptyPoolError):
            store.take_one()

    def test_take_is_persisted_before_returning(self, make_store, pool_path):
        """A second store over the same files never sees a taken key."""
        store = make_store(["A", "B", "C"])
        store.take_one()

        reopened = TokenStore(pool_path)
        assert reopened.snapshot() == ["B", "C"]

    def test_failed_persist_keeps_key(self, make_store, pool_path):
        """If the removal cannot be recorded, the key stays at the head."""
        store = make_store(["A", "B"])

        with patch.object(TokenStore, "_append_consumed", side_effect=OSError("disk full")):
            with pytest.raises(StoreIOError):
                store.take_one()

        assert store.snapshot() == ["A", "B"]
        assert store.take_one() == "A"
        assert TokenStore(pool_path).snapshot() == ["B"]

    def test_failed_fsync_rolls_back_consumed_log(self, make_store, pool_path):
        """A key written to the log but not synced is not lost on restart."""
        store = make_store(["A", "B", "C"])
        real_fsync = os.fsync
        calls = []

        def failing_first_fsync(fd):
            calls.append(fd)
            if len(calls) == 1:
                raise OSError("fsync failed")
            real_fsync(fd)

        with patch("keygate.app.services.token_store.os.fsync", side_effect=failing_first_fsync):
            with pytest.raises(StoreIOError):
                store.take_one()

        assert store.snapshot() == ["A", "B", "C"]
        assert TokenStore(pool_path).snapshot() == ["A", "B", "C"]

        assert store.take_one() == "A"
        assert TokenStore(pool_path).snapshot() == ["B", "C"]


class TestGenerate:
    """Tests for adding freshly generated keys."""

    def test_generate_appends_in_order(self, make_store, pool_path):
        """Generated keys are appended after existing ones and persisted."""
        store = make_store(["A"], generator=SequenceTokenGenerator(["B", "C"]))

        assert store.generate(2) == ["B", "C"]
        assert store.snapshot() == ["A", "B", "C"]
        assert pool_path.read_text() == "A\nB\nC\n"

    def test_generate_creates_pool_file(self, pool_path):
        """Generating into a missing pool creates the file."""
        store = TokenStore(pool_path, generator=SequenceTokenGenerator(["A"]))

        store.generate(1)

        assert store.is_initialized is True
        assert pool_path.read_text() == "A\n"

    def test_generate_uses_urlsafe_keys(self, pool_path):
        """Default keys are 32 random bytes in unpadded base64url."""
        store = TokenStore(pool_path, generator=SecretsTokenGenerator(32))

        keys = store.generate(20)

        assert len(set(keys)) == 20
        for key in keys:
            assert len(key) == 43
            assert "\n" not in key and "=" not in key

    def test_generate_replaces_colliding_keys(self, make_store):
        """A generated key already in the pool is discarded."""
        store = make_store(["A"], generator=SequenceTokenGenerator(["A", "B", "B", "C"]))

        assert store.generate(2) == ["B", "C"]
        assert store.snapshot() == ["A", "B", "C"]

    def test_generate_zero_is_noop(self, make_store, pool_path):
        """generate(0) does not touch the pool."""
        store = make_store(["A"])

        assert store.generate(0) == []
        assert pool_path.read_text() == "A\n"

    def test_generate_negative_raises(self, make_store):
        store = make_store(["A"])

        with pytest.raises(ValueError):
            store.generate(-1)

    def test_failed_write_leaves_pool_unchanged(self, make_store, pool_path):
        """A failed batch write neither adds keys nor damages the pool."""
        store = make_store(["A", "B"], generator=SequenceTokenGenerator(["C"]))

        with patch(
            "keygate.app.services.token_store._atomic_write_lines",
            side_effect=OSError("read-only file system"),
        ):
            with pytest.raises(StoreIOError):
                store.generate(1)

        assert store.snapshot() == ["A", "B"]
        assert pool_path.read_text() == "A\nB\n"


class TestPersistence:
    """Tests for the pool file and consumed log layout."""

    def test_restart_durability(self, pool_path):
        """Generate 5, restart, take 1: the other 4 remain in order."""
        original = TokenStore(pool_path).generate(5)

        restarted = TokenStore(pool_path)
        taken = restarted.take_one()

        assert taken == original[0]
        assert TokenStore(pool_path).snapshot() == original[1:]

    def test_load_subtracts_consumed_log(self, make_store, pool_path):
        """Keys listed in the consumed log are not in the pool."""
        store = make_store(["A", "B", "C"])
        store.consumed_path.write_text("B\n")

        assert store.snapshot() == ["A", "C"]

    def test_compaction_after_threshold(self, make_store, pool_path):
        """Reaching the threshold folds the log into the pool file."""
        store = make_store(["A", "B", "C", "D"], compact_threshold=2)

        store.take_one()
        assert store.consumed_path.read_text() == "A\n"

        store.take_one()
        assert not store.consumed_path.exists()
        assert pool_path.read_text() == "C\nD\n"

    def test_generate_compacts(self, make_store, pool_path):
        """A batch rewrite drops keys consumed so far from the pool file."""
        store = make_store(["A", "B"], generator=SequenceTokenGenerator(["C"]))
        store.take_one()

        store.generate(1)

        assert pool_path.read_text() == "B\nC\n"
        assert not store.consumed_path.exists()

    def test_stale_consumed_log_is_harmless(self, make_store, pool_path):
        """A crash between pool rewrite and log removal loses nothing."""
        store = make_store(["B", "C"])
        store.consumed_path.write_text("A\n")

        assert store.snapshot() == ["B", "C"]

    def test_torn_consumed_record_is_repaired(self, make_store, pool_path):
        """A partial trailing record does not corrupt later appends."""
        store = make_store(["AAAA", "BBBB", "CCCC"])
        store.consumed_path.write_text("AAAA\nBB")

        assert store.take_one() == "BBBB"
        assert store.consumed_path.read_text() == "AAAA\nBB\nBBBB\n"
        assert TokenStore(pool_path).snapshot() == ["CCCC"]

    def test_duplicate_pool_lines_issued_once(self, make_store):
        """A key listed twice in the pool file is issued only once."""
        store = make_store(["A", "B", "A", "C"])

        taken = [store.take_one() for _ in range(3)]

        assert taken == ["A", "B", "C"]
        with pytest.raises(EmptyPoolError):
            store.take_one()

    def test_blank_lines_ignored(self, pool_path):
        pool_path.write_text("A\n\n  \nB\n")

        assert TokenStore(pool_path).snapshot() == ["A", "B"]

    def test_unreadable_pool_raises(self, pool_path):
        """A pool path that cannot be read surfaces as StoreIOError."""
        pool_path.mkdir()

        with pytest.raises(StoreIOError):
            TokenStore(pool_path).load()


class TestConcurrency:
    """Concurrent takes never hand out the same key twice."""

    @staticmethod
    def _race(store: TokenStore, callers: int) -> tuple[list[str], int]:
        barrier = threading.Barrier(callers)
        taken: list[str] = []
        empty = 0
        lock = threading.Lock()

        def take() -> None:
            nonlocal empty
            barrier.wait()
            try:
                token = store.take_one()
            except EmptyPoolError:
                with lock:
                    empty += 1
                return
            with lock:
                taken.append(token)

        with ThreadPoolExecutor(max_workers=callers) as pool:
            for future in [pool.submit(take) for _ in range(callers)]:
                future.result()
        return taken, empty

    def test_more_callers_than_keys(self, make_store, pool_path):
        """With M keys and N > M callers exactly M succeed, all distinct."""
        keys = [f"key{i:03d}" for i in range(40)]
        store = make_store(keys, compact_threshold=7)

        taken, empty = self._race(store, 64)

        assert sorted(taken) == sorted(keys)
        assert len(set(taken)) == 40
        assert empty == 24
        assert TokenStore(pool_path).snapshot() == []

    def test_fewer_callers_than_keys(self, make_store, pool_path):
        """The remaining pool is the initial pool minus the issued prefix."""
        keys = [f"key{i:03d}" for i in range(100)]
        store = make_store(keys, compact_threshold=9)

        taken, empty = self._race(store, 60)

        assert empty == 0
        assert len(set(taken)) == 60
        assert set(taken) == set(keys[:60])
        assert TokenStore(pool_path).snapshot() == keys[60:]
