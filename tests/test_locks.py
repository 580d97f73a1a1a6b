"""
Tests for reports.locks.KeyedLocks.
"""

import threading
import time

import pytest

from reports.locks import KeyedLocks


class TestKeyedLocks:
    def test_same_key_never_held_twice(self):
        locks = KeyedLocks()
        guard = threading.Lock()
        active = [0]
        peak = [0]

        def work():
            for _ in range(5):
                with locks.hold("kind"):
                    with guard:
                        active[0] += 1
                        peak[0] = max(peak[0], active[0])
                    time.sleep(0.002)
                    with guard:
                        active[0] -= 1

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert peak[0] == 1
        assert len(locks) == 0

    def test_waiter_blocks_until_release(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def wait_for_key():
            with locks.hold(("pending", 1)):
                entered.set()

        with locks.hold(("pending", 1)):
            waiter = threading.Thread(target=wait_for_key)
            waiter.start()
            assert not entered.wait(0.1)
        assert entered.wait(5)
        waiter.join(timeout=5)

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks()
        entered = threading.Event()

        def take_other_key():
            with locks.hold(("pending", 2)):
                entered.set()

        with locks.hold(("pending", 1)):
            other = threading.Thread(target=take_other_key)
            other.start()
            assert entered.wait(5)
            other.join(timeout=5)

    def test_entries_dropped_after_release(self):
        locks = KeyedLocks()
        assert len(locks) == 0
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
            assert len(locks) == 1
        assert len(locks) == 0

    def test_released_when_body_raises(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        with locks.hold("a"):
            pass
