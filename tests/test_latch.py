"""Tests for the one-way trust latch."""

import threading

from toolgate.trust.latch import TrustLatch


class TestTrustLatch:
    def test_trusted_stays_trusted(self):
        latch = TrustLatch()
        assert latch.observe("c1", True) is True
        assert not latch.is_tainted("c1")

    def test_taint_is_one_way(self):
        latch = TrustLatch()
        assert latch.observe("c1", False) is False
        assert latch.observe("c1", True) is False
        assert latch.is_tainted("c1")

    def test_reset(self):
        latch = TrustLatch()
        latch.observe("c1", False)
        assert latch.reset("c1") is True
        assert latch.observe("c1", True) is True
        assert latch.reset("c1") is False

    def test_len(self):
        latch = TrustLatch()
        latch.observe("a", False)
        latch.observe("b", True)
        latch.observe("c", False)
        assert len(latch) == 2

    def test_racing_observers(self):
        latch = TrustLatch()
        results: list[bool] = []

        def observe(trusted: bool):
            results.append(latch.observe("c1", trusted))

        threads = [threading.Thread(target=observe, args=(i % 2 == 0,)) for i in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert latch.is_tainted("c1")
        assert latch.observe("c1", True) is False
