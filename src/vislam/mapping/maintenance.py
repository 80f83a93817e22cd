"""Background map maintenance thread.

Runs bundle adjustment on the covisibility window of each new keyframe
while the foreground keeps tracking and integrating. The store computes
on a snapshot and applies corrections under its lock, so the foreground
never observes a half-applied pass.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .map_store import MapStore

logger = logging.getLogger(__name__)

# Sentinel asking the worker to exit
_SHUTDOWN = object()


class MapMaintenance:
    """Worker thread consuming keyframe ids and refining the map.

    Requests beyond ``max_pending`` are dropped; a later keyframe's window
    overlaps the dropped one, so skipping a pass only delays refinement.
    """

    def __init__(self, store: MapStore, max_pending: int = 10) -> None:
        """Initialize the maintenance worker.

        Args:
            store: Map store to refine
            max_pending: Queue capacity
        """
        self._store = store
        self._queue: queue.Queue = queue.Queue(maxsize=max_pending)
        self._thread: threading.Thread | None = None
        self._passes = 0

    def start(self) -> None:
        """Start the worker thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="vislam-maintenance", daemon=True
        )
        self._thread.start()

    def request(self, keyframe_id: int) -> bool:
        """Queue a maintenance pass centered on a keyframe.

        Returns:
            True if queued, False if the queue is full or stopped
        """
        if not self.is_running:
            return False
        try:
            self._queue.put_nowait(keyframe_id)
            return True
        except queue.Full:
            logger.debug("Maintenance queue full, dropped keyframe %d", keyframe_id)
            return False

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until all queued requests are processed.

        Returns:
            True if the queue drained, False if ``timeout`` expired first
        """
        if not self.is_running:
            return True
        with self._queue.all_tasks_done:
            return self._queue.all_tasks_done.wait_for(
                lambda: self._queue.unfinished_tasks == 0, timeout
            )

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the worker to finish its current pass and exit."""
        if self._thread is None:
            return
        self._queue.put(_SHUTDOWN)
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Maintenance thread did not stop within %.1f s", timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _SHUTDOWN:
                    return
                self._store.run_maintenance(item)
                self._passes += 1
            except Exception:
                # Keep the worker alive; a failed pass leaves the map as it was
                logger.exception("Maintenance pass for keyframe %s failed", item)
            finally:
                self._queue.task_done()

    @property
    def is_running(self) -> bool:
        """Return True while the worker thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def passes(self) -> int:
        """Return the number of completed maintenance passes."""
        return self._passes
