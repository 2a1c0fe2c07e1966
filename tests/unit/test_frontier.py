"""
Tests for the priority frontier.
"""

import pytest
from vortex.protocols import Request
from vortex.scheduler.frontier import Frontier


def _push(frontier: Frontier, path: str, priority: float, host: str = "example.com"):
    request = Request(url=f"https://{host}/{path}")
    return frontier.push(request, priority, fingerprint=f"{host}/{path}")


@pytest.mark.unit
class TestFrontierOrdering:
    """Higher priority first, insertion order within a tier."""

    def test_priority_then_fifo(self):
        frontier = Frontier()
        _push(frontier, "low", -1.0)
        _push(frontier, "first", 0.0)
        _push(frontier, "high", 2.0)
        _push(frontier, "second", 0.0)

        order = []
        while (entry := frontier.pop()) is not None:
            order.append(entry.request.url.rsplit("/", 1)[1])
        assert order == ["high", "first", "second", "low"]

    def test_iteration_is_sorted_and_non_destructive(self):
        frontier = Frontier()
        _push(frontier, "b", 0.0)
        _push(frontier, "a", 1.0)
        assert [entry.fingerprint for entry in frontier] == ["example.com/a", "example.com/b"]
        assert len(frontier) == 2


@pytest.mark.unit
class TestFrontierMembership:
    """Live fingerprints are tracked for duplicate detection."""

    def test_duplicate_push_rejected(self):
        frontier = Frontier()
        _push(frontier, "a", 0.0)
        with pytest.raises(ValueError):
            _push(frontier, "a", 1.0)

    def test_pop_releases_fingerprint(self):
        frontier = Frontier()
        _push(frontier, "a", 0.0)
        assert "example.com/a" in frontier
        frontier.pop()
        assert "example.com/a" not in frontier
        assert len(frontier) == 0
        assert frontier.hosts() == []
        _push(frontier, "a", 0.0)

    def test_hosts_lists_pending_hosts(self):
        frontier = Frontier()
        _push(frontier, "a", 0.0, host="one.test")
        _push(frontier, "b", 0.0, host="two.test")
        assert sorted(frontier.hosts()) == ["one.test", "two.test"]

    def test_clear(self):
        frontier = Frontier()
        _push(frontier, "a", 0.0)
        frontier.clear()
        assert len(frontier) == 0
        assert frontier.pop() is None


@pytest.mark.unit
class TestFrontierSkipAndReprioritize:
    """Skipping and re-prioritizing keep every entry accounted for."""

    def test_skipped_entries_stay_queued(self):
        frontier = Frontier()
        _push(frontier, "a", 5.0, host="busy.test")
        _push(frontier, "b", 1.0, host="idle.test")

        entry = frontier.pop(skip_host=lambda host: host == "busy.test")
        assert entry.request.host == "idle.test"
        assert len(frontier) == 1
        assert frontier.pop().request.host == "busy.test"

    def test_pop_returns_none_when_everything_skipped(self):
        frontier = Frontier()
        _push(frontier, "a", 0.0)
        assert frontier.pop(skip_host=lambda host: True) is None
        assert len(frontier) == 1

    def test_skipped_host_checked_once_per_pop(self):
        frontier = Frontier()
        for i in range(200):
            _push(frontier, str(i), 10.0, host="backoff.test")
        _push(frontier, "ok", 0.0, host="idle.test")

        checked = []

        def skip(host):
            checked.append(host)
            return host == "backoff.test"

        assert frontier.pop(skip_host=skip).request.host == "idle.test"
        assert checked == ["backoff.test", "idle.test"]
        assert len(frontier) == 200
        assert frontier.pop().request.url == "https://backoff.test/0"

    def test_reprioritized_host_reordered_against_others(self):
        frontier = Frontier()
        _push(frontier, "a", 5.0, host="one.test")
        _push(frontier, "b", 1.0, host="two.test")
        frontier.reprioritize("one.test", lambda entry: -5.0)

        assert frontier.pop(skip_host=lambda host: False).request.host == "two.test"
        assert frontier.pop().priority == -5.0

    def test_reprioritize_moves_host_entries(self):
        frontier = Frontier()
        _push(frontier, "a", 1.0, host="slow.test")
        _push(frontier, "b", 0.0, host="fast.test")

        changed = frontier.reprioritize("slow.test", lambda entry: entry.priority - 10.0)

        assert changed == 1
        assert len(frontier) == 2
        first = frontier.pop()
        assert first.request.host == "fast.test"
        second = frontier.pop()
        assert second.priority == -9.0
        assert second.request.priority == -9.0

    def test_reprioritize_keeps_fifo_within_tier(self):
        frontier = Frontier()
        _push(frontier, "a", 1.0, host="one.test")
        _push(frontier, "b", 0.0, host="two.test")
        frontier.reprioritize("one.test", lambda entry: 0.0)

        # Same tier now; "a" was inserted first.
        assert frontier.pop().request.host == "one.test"
        assert frontier.pop().request.host == "two.test"

    def test_unchanged_priority_is_not_counted(self):
        frontier = Frontier()
        _push(frontier, "a", 1.0)
        assert frontier.reprioritize("example.com", lambda entry: entry.priority) == 0

    def test_many_reprioritizations_compact_the_heap(self):
        frontier = Frontier()
        for i in range(10):
            _push(frontier, str(i), 0.0)
        for step in range(1, 50):
            frontier.reprioritize("example.com", lambda entry, step=step: float(step))
        assert len(frontier) == 10
        assert len(frontier._host_heaps["example.com"]) <= 2 * len(frontier) + 64 + 10
        popped = [frontier.pop() for _ in range(10)]
        assert all(entry is not None for entry in popped)
        assert frontier.pop() is None
