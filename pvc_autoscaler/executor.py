"""Resize workers.

A dispatcher pops actions from the work queue and hands each one to a bounded
thread pool. Workers claim the claim's dedup marker, honour the backoff
recorded in its status annotation and apply the resize. The marker is
released on every path out of `process`.
"""

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum

from kubernetes.client.exceptions import ApiException

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.errors import ResizeError, StatusDecodeError, StatusEncodeError
from pvc_autoscaler.evaluator import apply_resize, get_requested_storage
from pvc_autoscaler.models import ResizeAction
from pvc_autoscaler.quantity import format_storage
from pvc_autoscaler.status import AnnotationStateStore
from pvc_autoscaler.watch_set import DedupMarkers, WatchSet
from pvc_autoscaler.work_queue import RateLimitingQueue

logger = get_logger("executor")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResizeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEFERRED = "deferred"
    REQUEUED = "requeued"
    ALREADY_IN_FLIGHT = "already_in_flight"
    DROPPED = "dropped"

    def __str__(self):
        return self.value


class DedupExecutor:
    def __init__(
        self,
        kube,
        work_queue: RateLimitingQueue,
        watch_set: WatchSet,
        markers: DedupMarkers,
        state_store: AnnotationStateStore,
        retry_after: float,
        max_workers: int = 4,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.kube = kube
        self.work_queue = work_queue
        self.watch_set = watch_set
        self.markers = markers
        self.state_store = state_store
        self.retry_after = retry_after
        self.max_workers = max_workers
        self.clock = clock
        self._slots = threading.BoundedSemaphore(max_workers)
        self._pool: ThreadPoolExecutor | None = None

    def process(self, action: ResizeAction) -> ResizeOutcome:
        """Run one resize attempt for a dequeued action."""
        identity = action.identity
        if not self.markers.claim(identity):
            logger.debug(f"resize of {identity} already in flight, dropping duplicate")
            return ResizeOutcome.ALREADY_IN_FLIGHT
        try:
            return self._process_claimed(action)
        finally:
            self.markers.release(identity)

    def _process_claimed(self, action: ResizeAction) -> ResizeOutcome:
        identity = action.identity

        if identity not in self.watch_set:
            logger.info(f"{identity} is no longer watched, dropping its resize")
            self.work_queue.forget(action)
            return ResizeOutcome.DROPPED

        try:
            pvc = self.kube.get_object(identity)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{identity} no longer exists, dropping its resize")
                self.work_queue.forget(action)
                return ResizeOutcome.DROPPED
            logger.error(f"could not fetch {identity}: {e.reason or e}")
            self.work_queue.add_rate_limited(action)
            return ResizeOutcome.REQUEUED

        current = get_requested_storage(pvc)
        if current is not None and current >= action.new_capacity_bytes:
            logger.info(
                f"{identity} already requests {format_storage(current)}, dropping stale resize "
                f"to {format_storage(action.new_capacity_bytes)}"
            )
            self.work_queue.forget(action)
            return ResizeOutcome.DROPPED

        try:
            status = self.state_store.decode(pvc)
        except StatusDecodeError as e:
            logger.warning(f"{e}, retrying later")
            self.work_queue.add_rate_limited(action)
            return ResizeOutcome.REQUEUED

        now = self.clock()
        wait = status.retry_remaining(self.retry_after, now)
        if wait > 0:
            logger.info(
                f"last resize of {identity} failed at {status.last_failed_attempt.isoformat()}, "
                f"retrying in {wait:.0f}s"
            )
            self.work_queue.add_after(action, wait)
            return ResizeOutcome.DEFERRED

        try:
            apply_resize(self.kube, pvc, action, now)
        except ResizeError as e:
            logger.error(f"failed to resize pvc {identity}: {e}")
            try:
                self.state_store.record_failed_attempt(pvc, now)
            except StatusEncodeError as se:
                logger.error(f"could not encode status for {identity}: {se}")
                self.work_queue.add_after(action, self.retry_after)
                return ResizeOutcome.FAILED
            except ApiException as pe:
                logger.warning(f"could not record failed attempt on {identity}: {pe.reason or pe}")
            self.work_queue.add_after(action, self.retry_after)
            return ResizeOutcome.FAILED

        self.work_queue.forget(action)
        self.watch_set.delete(identity)
        logger.info(
            f"pvc {identity} resized from {format_storage(current or 0)} "
            f"to {format_storage(action.new_capacity_bytes)}, no longer watched"
        )
        return ResizeOutcome.SUCCEEDED

    def _work(self, action: ResizeAction) -> None:
        try:
            self.process(action)
        except Exception as e:
            logger.error(f"resize worker for {action.identity} crashed: {e}")
            self.work_queue.add_rate_limited(action)
        finally:
            self._slots.release()

    def run(self, stop: threading.Event | None = None) -> None:
        """Dispatch queued actions to the worker pool until the queue shuts down."""
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="resize"
        )
        while stop is None or not stop.is_set():
            action = self.work_queue.get()
            if action is None:
                break
            self.work_queue.done(action)
            self._slots.acquire()
            self._pool.submit(self._work, action)
        logger.debug("dispatcher stopped")

    def drain(self) -> None:
        """Wait for in-flight workers to finish."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
