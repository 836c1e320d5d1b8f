"""
Timer Queue Tests — deferred, cancelable work in session time.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from timers import TimerQueue


class TestTimerQueue:

    def test_fires_only_when_due(self):
        q = TimerQueue()
        fired = []
        q.call_at("s1", 200.0, lambda: fired.append("a"))
        assert q.run_due("s1", 199.0) == 0
        assert q.run_due("s1", 200.0) == 1
        assert fired == ["a"]
        assert q.pending("s1") == 0

    def test_order_by_time_then_insertion(self):
        q = TimerQueue()
        fired = []
        q.call_at("s", 50.0, lambda: fired.append(2))
        q.call_at("s", 10.0, lambda: fired.append(1))
        q.call_at("s", 50.0, lambda: fired.append(3))
        q.run_due("s", 100.0)
        assert fired == [1, 2, 3]

    def test_cancelled_handle_never_runs(self):
        q = TimerQueue()
        fired = []
        handle = q.call_at("s", 10.0, lambda: fired.append(1))
        handle.cancel()
        assert handle.cancelled() and handle.done()
        assert q.run_due("s", 100.0) == 0
        assert fired == []

    def test_keys_are_isolated(self):
        q = TimerQueue()
        fired = []
        q.call_at("a", 10.0, lambda: fired.append("a"))
        q.call_at("b", 10.0, lambda: fired.append("b"))
        q.run_due("a", 100.0)
        assert fired == ["a"]
        assert q.pending("b") == 1

    def test_cancel_all_for_key(self):
        q = TimerQueue()
        handles = [q.call_at("s", float(t), lambda: None) for t in range(5)]
        q.call_at("other", 1.0, lambda: None)
        assert q.cancel_all("s") == 5
        assert all(h.cancelled() for h in handles)
        assert len(q) == 1

    def test_callback_may_schedule_more_work(self):
        q = TimerQueue()
        fired = []

        def first():
            fired.append("first")
            q.call_at("s", 30.0, lambda: fired.append("second"))

        q.call_at("s", 10.0, first)
        q.run_due("s", 20.0)
        assert fired == ["first"]
        q.run_due("s", 30.0)
        assert fired == ["first", "second"]

    def test_fired_handle_is_done(self):
        q = TimerQueue()
        handle = q.call_at("s", 0.0, lambda: None)
        q.run_due("s", 0.0)
        assert handle.done() and not handle.cancelled()
