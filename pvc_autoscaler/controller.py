import threading
from collections.abc import Callable
from typing_extensions import override

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.config import AutoscalerConfig
from pvc_autoscaler.evaluator import DecisionEvaluator
from pvc_autoscaler.executor import DedupExecutor
from pvc_autoscaler.status import AnnotationStateStore
from pvc_autoscaler.synchronizer import WatchSetSynchronizer
from pvc_autoscaler.watch_set import DedupMarkers, WatchSet
from pvc_autoscaler.work_queue import RateLimitingQueue

logger = get_logger("controller")


class Ticker(threading.Thread):
    """Calls `fn` every `interval` seconds; a slow call delays the next tick."""

    def __init__(
        self, interval: float, fn: Callable[[], object], stop: threading.Event, name: str
    ):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.fn = fn
        self.stop = stop

    @override
    def run(self) -> None:
        while not self.stop.wait(self.interval):
            try:
                self.fn()
            except Exception as e:
                logger.error(f"failed to reconcile: {e}")


class PVCAutoscaler:
    """Wires the watch set, evaluator and resize workers together.

    Threads: the watch feed, the ingress consumer that owns watch set updates,
    the ticker running one evaluation cycle per polling interval, and the
    dispatcher feeding the resize worker pool.
    """

    def __init__(self, kube, metrics, config: AutoscalerConfig):
        self.kube = kube
        self.metrics = metrics
        self.config = config

        self.watch_set = WatchSet()
        self.markers = DedupMarkers()
        self.queue = RateLimitingQueue(name="pvcs")
        self.state_store = AnnotationStateStore(kube)

        self.synchronizer = WatchSetSynchronizer(
            kube, self.watch_set, self.markers, self.queue, self.state_store
        )
        self.evaluator = DecisionEvaluator(
            kube, metrics, self.watch_set, self.queue.add, config.reconcile_timeout
        )
        self.executor = DedupExecutor(
            kube,
            self.queue,
            self.watch_set,
            self.markers,
            self.state_store,
            retry_after=config.retry_after,
            max_workers=config.max_workers,
        )

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def reconcile(self):
        return self.evaluator.run_cycle()

    def start(self) -> None:
        self.synchronizer.bootstrap()
        self._threads = [
            threading.Thread(
                target=self.synchronizer.run_feed, args=(self._stop,), name="watch-feed", daemon=True
            ),
            threading.Thread(
                target=self.synchronizer.run_ingress, args=(self._stop,), name="watch-ingress", daemon=True
            ),
            threading.Thread(
                target=self.executor.run, args=(self._stop,), name="dispatcher", daemon=True
            ),
            Ticker(self.config.polling_interval, self.reconcile, self._stop, name="ticker"),
        ]
        for t in self._threads:
            t.start()
        logger.info("pvc-autoscaler ready")

    def stop(self, timeout: float | None = 10.0) -> None:
        """Stop every loop, wait for in-flight resizes, then drop dedup markers."""
        if self._stop.is_set():
            return
        logger.info("stopping pvc-autoscaler")
        self._stop.set()
        self.kube.stop_watch()
        self.queue.shut_down()
        for t in self._threads:
            t.join(timeout=timeout)
        self.executor.drain()
        self.markers.clear()
        logger.info("pvc-autoscaler stopped")

    def wait(self, timeout: float | None = None) -> bool:
        return self._stop.wait(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
