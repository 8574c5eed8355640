import threading
from unittest.mock import patch

from workqueue import WorkQueue


class TestWorkQueue:
    def test_fifo_and_dedupe(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.add("b")
        queue.add("a")
        assert len(queue) == 2
        assert queue.get() == "a"
        assert queue.get() == "b"

    def test_key_in_flight_is_not_handed_out_twice(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        key = queue.get()
        queue.add("a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert queue.get() == "a"

    def test_done_without_readd(self) -> None:
        queue = WorkQueue()
        queue.add("a")
        queue.done(queue.get())
        assert len(queue) == 0

    def test_shut_down_wakes_getters(self) -> None:
        queue = WorkQueue()
        results = []
        worker = threading.Thread(target=lambda: results.append(queue.get()))
        worker.start()
        queue.shut_down()
        worker.join(timeout=5)
        assert results == [None]
        assert queue.get() is None

    def test_add_after_shut_down_is_ignored(self) -> None:
        queue = WorkQueue()
        queue.shut_down()
        queue.add("a")
        assert len(queue) == 0


class TestRateLimiting:
    def test_backoff_doubles_and_caps(self) -> None:
        queue = WorkQueue(base_delay=1, max_delay=5)
        with patch.object(queue, "add_after") as add_after:
            delays = [queue.add_rate_limited("a") for _ in range(5)]
        assert delays == [1, 2, 4, 5, 5]
        add_after.assert_called_with("a", 5)

    def test_forget_resets(self) -> None:
        queue = WorkQueue(base_delay=1)
        with patch.object(queue, "add_after"):
            queue.add_rate_limited("a")
            queue.add_rate_limited("a")
            queue.forget("a")
            assert queue.retry_delay("a") == 0
            assert queue.add_rate_limited("a") == 1

    def test_add_after_zero_adds_now(self) -> None:
        queue = WorkQueue()
        queue.add_after("a", 0)
        assert queue.get() == "a"
