import copy
import threading
from datetime import datetime, timezone

import pytest
from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import (
    V1ObjectMeta,
    V1PersistentVolumeClaim,
    V1PersistentVolumeClaimCondition,
    V1PersistentVolumeClaimSpec,
    V1PersistentVolumeClaimStatus,
    V1VolumeResourceRequirements,
)

from pvc_autoscaler.config import ENABLED_ANNOTATION
from pvc_autoscaler.errors import MetricsClientError
from pvc_autoscaler.models import Identity, UsageSample

GI = 1 << 30


def make_pvc(
    name: str = "data",
    namespace: str = "default",
    annotations: dict[str, str] | None = None,
    enabled: bool = True,
    request: str | None = "10Gi",
    limit: str | None = "1Ti",
    capacity: str | None = None,
    phase: str = "Bound",
    volume_mode: str | None = "Filesystem",
    storage_class: str | None = "expandable",
    uid: str | None = None,
    resize_pending: bool = False,
) -> V1PersistentVolumeClaim:
    annotations = dict(annotations or {})
    if enabled:
        annotations.setdefault(ENABLED_ANNOTATION, "true")
    requests = {"storage": request} if request is not None else None
    limits = {"storage": limit} if limit is not None else None
    conditions = None
    if resize_pending:
        conditions = [
            V1PersistentVolumeClaimCondition(type="FileSystemResizePending", status="True")
        ]
    return V1PersistentVolumeClaim(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            uid=uid or f"uid-{namespace}-{name}",
            resource_version="1",
        ),
        spec=V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class,
            volume_mode=volume_mode,
            resources=V1VolumeResourceRequirements(requests=requests, limits=limits),
        ),
        status=V1PersistentVolumeClaimStatus(
            phase=phase,
            capacity={"storage": capacity or request} if (capacity or request) else None,
            conditions=conditions,
        ),
    )


class FakeKubeClient:
    """In-memory stand-in for KubeClient."""

    def __init__(self, pvcs=(), storage_classes=None):
        self.objects: dict[Identity, V1PersistentVolumeClaim] = {
            Identity.of(p): copy.deepcopy(p) for p in pvcs
        }
        self.storage_classes = (
            storage_classes if storage_classes is not None else {"expandable": True, "fixed": False}
        )
        self.updates: list[V1PersistentVolumeClaim] = []
        self.patches: list[tuple[Identity, dict]] = []
        self.fail_updates = False
        self.fail_patches = False
        self.update_gate: threading.Event | None = None
        self.update_started = threading.Event()
        self.watch_events: list[tuple[str, object]] = []
        self.watch_calls = 0
        self._watch_stop = threading.Event()
        self._version = 1

    def list_objects(self, timeout=None):
        return [copy.deepcopy(p) for p in self.objects.values()], str(self._version)

    def get_object(self, identity, timeout=None):
        if identity not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[identity])

    def update_object(self, pvc, timeout=None):
        self.update_started.set()
        if self.update_gate is not None:
            self.update_gate.wait(5)
        if self.fail_updates:
            raise ApiException(status=500, reason="failed to update PVC")
        self._version += 1
        stored = copy.deepcopy(pvc)
        stored.metadata.resource_version = str(self._version)
        self.objects[Identity.of(pvc)] = stored
        self.updates.append(copy.deepcopy(stored))
        return stored

    def patch_annotations(self, identity, annotations, timeout=None):
        if self.fail_patches:
            raise ApiException(status=500, reason="patch rejected")
        if identity not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.patches.append((identity, dict(annotations)))
        pvc = self.objects[identity]
        current = pvc.metadata.annotations or {}
        for k, v in annotations.items():
            if v is None:
                current.pop(k, None)
            else:
                current[k] = v
        pvc.metadata.annotations = current
        return copy.deepcopy(pvc)

    def is_expansion_allowed(self, storage_class_name, timeout=None):
        if storage_class_name not in self.storage_classes:
            raise ApiException(status=404, reason="Not Found")
        return self.storage_classes[storage_class_name]

    def watch(self, resource_version, timeout_seconds=60):
        self.watch_calls += 1
        events, self.watch_events = self.watch_events, []
        for event in events:
            yield event
        self._watch_stop.wait(0.05)

    def stop_watch(self):
        self._watch_stop.set()


class FakeMetricsClient:
    def __init__(self, samples=None):
        self.samples: dict[Identity, UsageSample] = samples or {}
        self.error: str | None = None
        self.calls = 0

    def fetch_usage_samples(self, timeout=None):
        self.calls += 1
        if self.error:
            raise MetricsClientError(self.error)
        return dict(self.samples)


class RecordingQueue:
    """Collects what the executor asks of the work queue."""

    def __init__(self):
        self.added = []
        self.added_after = []
        self.rate_limited = []
        self.forgotten = []

    def add(self, item):
        self.added.append(item)

    def add_after(self, item, delay):
        self.added_after.append((item, delay))

    def add_rate_limited(self, item):
        self.rate_limited.append(item)

    def forget(self, item):
        self.forgotten.append(item)


@pytest.fixture
def kube():
    return FakeKubeClient()


@pytest.fixture
def metrics():
    return FakeMetricsClient()


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
