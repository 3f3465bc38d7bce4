"""
Operator process: a resync loop feeding a work queue drained by workers.

The resync loop lists every record in scope and enqueues its key, which
is how new records and edits are discovered. Workers call
``Reconciler.reconcile`` and schedule the next call from the result:
``requeue`` re-adds the key after a short backoff, ``requeue_after``
schedules it after the given delay. The queue guarantees that one record
is never reconciled by two workers at once.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Tuple

from progressive_deploy.config import OperatorConfig
from progressive_deploy.controller.queue import ShutDown, WorkQueue
from progressive_deploy.delivery.reconciler import Reconciler, ReconcileResult
from progressive_deploy.store import RecordStore, StoreError

logger = logging.getLogger(__name__)

Key = Tuple[str, str]

REQUEUE_BACKOFF_SECONDS = 0.5


class Operator:
    """Runs reconcile workers and the resync loop until stopped."""

    def __init__(
        self,
        reconciler: Reconciler,
        store: RecordStore,
        config: Optional[OperatorConfig] = None,
        queue: Optional[WorkQueue] = None,
    ) -> None:
        self.reconciler = reconciler
        self.store = store
        self.config = config or OperatorConfig()
        self.queue = queue if queue is not None else WorkQueue()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Operator already started")
        logger.info(
            "Starting operator: namespace=%s workers=%d resync=%.0fs",
            self.config.namespace or "<all>", self.config.workers, self.config.resync_seconds,
        )
        resync = threading.Thread(target=self._resync_loop, name="pd-resync", daemon=True)
        self._threads.append(resync)
        for i in range(self.config.workers):
            self._threads.append(
                threading.Thread(target=self._worker, name=f"pd-worker-{i}", daemon=True)
            )
        for t in self._threads:
            t.start()

    def stop(self, timeout: float = 5.0) -> None:
        logger.info("Stopping operator")
        self._stop.set()
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def wait(self) -> None:
        """Block until ``stop()`` is called."""
        self._stop.wait()

    # -- Loops --

    def resync(self) -> int:
        """Enqueue every record in scope; returns how many were enqueued."""
        try:
            records = self.store.list_records(self.config.namespace)
        except StoreError as exc:
            logger.warning("Failed to list ProgressiveDeployments: %s", exc)
            return 0
        for record in records:
            self.queue.add((record.namespace, record.name))
        logger.debug("Resync enqueued %d records", len(records))
        return len(records)

    def _resync_loop(self) -> None:
        while not self._stop.is_set():
            self.resync()
            self._stop.wait(self.config.resync_seconds)

    def _worker(self) -> None:
        while not self._stop.is_set():
            try:
                key = self.queue.get(timeout=1.0)
            except ShutDown:
                return
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: Key) -> Optional[ReconcileResult]:
        """Reconcile one key and schedule its follow-up."""
        namespace, name = key
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception:
            logger.exception("Unhandled error reconciling %s/%s", namespace, name)
            self.queue.add_after(key, self.config.retry_seconds)
            return None

        logger.debug("Reconciled %s/%s: %s", namespace, name, result.to_dict())
        if result.requeue:
            self.queue.add_after(key, REQUEUE_BACKOFF_SECONDS)
        elif result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        return result
