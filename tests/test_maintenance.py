"""Tests for the background maintenance worker."""

import threading

import pytest

from vislam.mapping import MapMaintenance


class FakeStore:
    """Records maintenance requests; optionally fails on given keyframes."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)
        self.gate = threading.Event()
        self.gate.set()

    def run_maintenance(self, keyframe_id):
        self.gate.wait(5.0)
        if keyframe_id in self.fail_on:
            raise RuntimeError(f"boom {keyframe_id}")
        self.calls.append(keyframe_id)


@pytest.fixture
def worker():
    store = FakeStore(fail_on={2})
    maintenance = MapMaintenance(store, max_pending=2)
    yield maintenance, store
    maintenance.stop()


class TestMapMaintenance:
    """Test suite for MapMaintenance."""

    def test_not_started(self):
        """Test that requests are refused before start."""
        maintenance = MapMaintenance(FakeStore())

        assert not maintenance.is_running
        assert not maintenance.request(0)
        assert maintenance.wait_idle()  # returns immediately

    def test_processes_in_order(self, worker):
        """Test that queued keyframes are refined in request order."""
        maintenance, store = worker
        maintenance.start()

        assert maintenance.request(0)
        assert maintenance.request(1)
        assert maintenance.wait_idle(timeout=5.0)

        assert store.calls == [0, 1]
        assert maintenance.passes == 2

    def test_failure_keeps_worker_alive(self, worker):
        """Test that a failed pass is logged and the worker continues."""
        maintenance, store = worker
        maintenance.start()

        maintenance.request(2)
        maintenance.request(3)
        maintenance.wait_idle(timeout=5.0)

        assert maintenance.is_running
        assert store.calls == [3]
        assert maintenance.passes == 1

    def test_full_queue_drops_requests(self, worker):
        """Test that requests beyond capacity are dropped."""
        maintenance, store = worker
        store.gate.clear()
        maintenance.start()

        results = [maintenance.request(k) for k in (10, 11, 12, 13)]
        store.gate.set()
        maintenance.wait_idle(timeout=5.0)

        assert results[:2] == [True, True]
        assert not results[-1]
        assert store.calls == [10, 11, 12][: len(store.calls)]

    def test_stop(self, worker):
        """Test that stop ends the thread and refuses further requests."""
        maintenance, _ = worker
        maintenance.start()

        maintenance.stop()

        assert not maintenance.is_running
        assert not maintenance.request(0)

    def test_wait_idle_timeout(self, worker):
        """Test that a timed-out wait reports pending work and leaves no helper thread."""
        maintenance, store = worker
        store.gate.clear()
        maintenance.start()
        maintenance.request(0)
        threads = threading.active_count()

        assert not maintenance.wait_idle(timeout=0.05)
        assert threading.active_count() == threads

        store.gate.set()
        assert maintenance.wait_idle(timeout=5.0)
        assert store.calls == [0]
