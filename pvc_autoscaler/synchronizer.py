"""Keeps the watch set equal to the claims that have autoscaling enabled.

A bulk listing seeds the watch set, then a watch stream delivers add, update
and delete events. Both go through one ingress queue and are applied by a
single consumer, so listings and events never interleave: a relisting is
applied at the point it was taken and later events land on top of it.
"""

import queue
import threading
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1PersistentVolumeClaim

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.config import STATUS_ANNOTATION, is_enabled
from pvc_autoscaler.errors import StatusEncodeError
from pvc_autoscaler.models import Identity
from pvc_autoscaler.status import AnnotationStateStore, init_status_annotation
from pvc_autoscaler.watch_set import DedupMarkers, WatchSet
from pvc_autoscaler.work_queue import RateLimitingQueue

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
RESYNC = "RESYNC"
ERROR = "ERROR"

WATCH_RETRY_SECONDS = 5.0

logger = get_logger("synchronizer")


@dataclass
class WatchEvent:
    type: str
    new: V1PersistentVolumeClaim | None = None
    old: V1PersistentVolumeClaim | None = None
    listing: list[V1PersistentVolumeClaim] = field(default_factory=list)


class ResourceExpired(Exception):
    """The watch resourceVersion is too old and a fresh listing is needed."""


def _object_key(pvc: V1PersistentVolumeClaim) -> str:
    return pvc.metadata.uid or str(Identity.of(pvc))


def _annotations(pvc: V1PersistentVolumeClaim | None) -> dict[str, str]:
    if pvc is None or pvc.metadata is None:
        return {}
    return pvc.metadata.annotations or {}


class WatchSetSynchronizer:
    def __init__(
        self,
        kube,
        watch_set: WatchSet,
        markers: DedupMarkers,
        work_queue: RateLimitingQueue,
        state_store: AnnotationStateStore,
    ):
        self.kube = kube
        self.watch_set = watch_set
        self.markers = markers
        self.work_queue = work_queue
        self.state_store = state_store
        self.resource_version: str | None = None
        self._ingress: queue.Queue[WatchEvent] = queue.Queue()
        # last object seen per uid, so a MODIFIED event can be compared with its predecessor
        self._known: dict[str, V1PersistentVolumeClaim] = {}
        # uids of enabled claims already taken into the watch set; owned by the ingress consumer
        self._admitted: set[str] = set()

    def _watchable(self, pvc: V1PersistentVolumeClaim) -> V1PersistentVolumeClaim:
        try:
            init_status_annotation(pvc)
        except StatusEncodeError as e:
            logger.error(f"Failed to write status annotation to {Identity.of(pvc)}: {e}")
        return pvc

    def list_claims(self) -> WatchEvent:
        items, resource_version = self.kube.list_objects()
        self.resource_version = resource_version
        self._known = {_object_key(pvc): pvc for pvc in items}
        return WatchEvent(type=RESYNC, listing=items)

    def bootstrap(self) -> int:
        """List every claim and seed the watch set; returns how many are watched."""
        self.apply(self.list_claims())
        count = len(self.watch_set)
        logger.info(
            f"There are {count} PersistentVolumeClaims with autoscaling enabled in the cluster"
        )
        return count

    def submit(self, event: WatchEvent) -> None:
        self._ingress.put(event)

    def apply(self, event: WatchEvent) -> None:
        if event.type == RESYNC:
            self.on_resync(event.listing)
        elif event.type == ADDED:
            self.on_add(event.new)
        elif event.type == MODIFIED:
            self.on_update(event.old, event.new)
        elif event.type == DELETED:
            self.on_delete(event.new)
        else:
            logger.warning(f"Ignoring unknown event type {event.type}")

    def on_resync(self, listing: list[V1PersistentVolumeClaim]) -> None:
        """Reconcile the watch set with a full listing.

        Claims admitted before only get their snapshot refreshed, so a claim
        dropped after a successful resize is not watched again. Claims that
        are gone or disabled are removed.
        """
        enabled = {
            Identity.of(pvc): pvc for pvc in listing if is_enabled(_annotations(pvc))
        }
        for identity in self.watch_set.identities() - set(enabled):
            self.watch_set.delete(identity)
            logger.info(f"stop watching {identity}")

        admitted: set[str] = set()
        for identity, pvc in enabled.items():
            key = _object_key(pvc)
            admitted.add(key)
            if key in self._admitted:
                self.watch_set.refresh(identity, self._watchable(pvc))
            else:
                self.watch_set.store(identity, self._watchable(pvc))
                logger.info(f"start watching {identity}")
        self._admitted = admitted

    def on_add(self, pvc: V1PersistentVolumeClaim) -> None:
        if not is_enabled(_annotations(pvc)):
            return
        identity = Identity.of(pvc)
        self._admitted.add(_object_key(pvc))
        self.watch_set.store(identity, self._watchable(pvc))
        logger.info(f"start watching {identity}")

    def on_update(
        self, old: V1PersistentVolumeClaim | None, new: V1PersistentVolumeClaim
    ) -> None:
        new_id = Identity.of(new)
        old_id = Identity.of(old) if old is not None else new_id
        was_enabled = is_enabled(_annotations(old))
        now_enabled = is_enabled(_annotations(new))

        if not was_enabled and now_enabled:
            self._admitted.add(_object_key(new))
            self.watch_set.replace(old_id, new_id, self._watchable(new))
            logger.info(f"start watching {new_id}")
        elif was_enabled and not now_enabled:
            self._admitted.discard(_object_key(new))
            self.watch_set.delete(old_id)
            self.watch_set.delete(new_id)
            logger.info(f"stop watching {new_id}")
        elif was_enabled and now_enabled and old_id != new_id:
            self.watch_set.replace(old_id, new_id, self._watchable(new))
            logger.info(f"start watching {new_id} (was {old_id})")
        elif now_enabled:
            # claims dropped after a successful resize stay dropped
            self.watch_set.refresh(new_id, self._watchable(new))

    def on_delete(self, pvc: V1PersistentVolumeClaim) -> None:
        identity = Identity.of(pvc)
        self._admitted.discard(_object_key(pvc))
        if self.watch_set.delete(identity):
            logger.info(f"stop watching {identity}, the claim was deleted")
        self.markers.release(identity)
        self.work_queue.discard(identity)
        if STATUS_ANNOTATION in _annotations(pvc):
            self.state_store.clear(pvc)

    def run_ingress(self, stop: threading.Event, poll: float = 0.5) -> None:
        """Apply queued events until `stop` is set."""
        while not stop.is_set():
            try:
                event = self._ingress.get(timeout=poll)
            except queue.Empty:
                continue
            try:
                self.apply(event)
            except Exception as e:
                logger.error(f"Failed to apply {event.type} event: {e}")
            finally:
                self._ingress.task_done()

    def process_pending(self) -> int:
        """Apply whatever is queued right now without blocking."""
        applied = 0
        while True:
            try:
                event = self._ingress.get_nowait()
            except queue.Empty:
                return applied
            try:
                self.apply(event)
                applied += 1
            except Exception as e:
                logger.error(f"Failed to apply {event.type} event: {e}")
            finally:
                self._ingress.task_done()

    def join_ingress(self) -> None:
        """Block until every submitted event has been applied."""
        self._ingress.join()

    def _to_event(self, event_type: str, obj: Any) -> WatchEvent:
        if event_type == ERROR:
            code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            if code == 410:
                raise ResourceExpired(str(obj))
            raise ApiException(status=code, reason=f"watch error: {obj}")

        key = _object_key(obj)
        if obj.metadata.resource_version:
            self.resource_version = obj.metadata.resource_version
        if event_type == DELETED:
            self._known.pop(key, None)
            return WatchEvent(type=DELETED, new=obj)
        old = self._known.get(key)
        self._known[key] = obj
        if event_type == MODIFIED:
            return WatchEvent(type=MODIFIED, new=obj, old=old)
        return WatchEvent(type=event_type, new=obj)

    def run_feed(self, stop: threading.Event) -> None:
        """Stream cluster events into the ingress queue until `stop` is set."""
        while not stop.is_set():
            try:
                for event_type, obj in self.kube.watch(self.resource_version):
                    if stop.is_set():
                        break
                    self.submit(self._to_event(event_type, obj))
            except ResourceExpired:
                logger.info("watch expired, listing claims again")
                self._relist(stop)
            except ApiException as e:
                if e.status == 410:
                    logger.info("watch expired, listing claims again")
                    self._relist(stop)
                    continue
                logger.error(f"watch failed: {e}")
                stop.wait(WATCH_RETRY_SECONDS)
            except Exception as e:
                logger.error(f"watch failed: {e}")
                stop.wait(WATCH_RETRY_SECONDS)

    def _relist(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.submit(self.list_claims())
                return
            except Exception as e:
                logger.error(f"could not list PersistentVolumeClaims: {e}")
                stop.wait(WATCH_RETRY_SECONDS)
