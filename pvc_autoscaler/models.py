from dataclasses import dataclass
from typing import NamedTuple

from kubernetes.client.models import V1PersistentVolumeClaim


class Identity(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def of(cls, pvc: V1PersistentVolumeClaim) -> "Identity":
        return cls(namespace=pvc.metadata.namespace, name=pvc.metadata.name)


@dataclass(frozen=True)
class UsageSample:
    """Volume stats reported by the metrics backend for one claim."""

    used_bytes: int
    capacity_bytes: int


@dataclass
class ResizeAction:
    """A queued request to grow one claim.

    `pvc` is the snapshot the decision was made on, `new_capacity_bytes` the
    requested size and `previous_capacity_bytes` the capacity sample that gets
    persisted as the previous-capacity marker.
    """

    pvc: V1PersistentVolumeClaim
    new_capacity_bytes: int
    previous_capacity_bytes: int

    @property
    def identity(self) -> Identity:
        return Identity.of(self.pvc)
