"""Lock-guarded containers shared by the watcher, ticker and worker threads."""

import threading

from kubernetes.client.models import V1PersistentVolumeClaim

from pvc_autoscaler.models import Identity


class WatchSet:
    """Claims currently monitored, keyed by identity."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Identity, V1PersistentVolumeClaim] = {}

    def store(self, identity: Identity, pvc: V1PersistentVolumeClaim) -> None:
        with self._lock:
            self._entries[identity] = pvc

    def delete(self, identity: Identity) -> bool:
        with self._lock:
            return self._entries.pop(identity, None) is not None

    def replace(
        self, old: Identity, new: Identity, pvc: V1PersistentVolumeClaim
    ) -> None:
        """Drop `old` and store `new` in one step."""
        with self._lock:
            self._entries.pop(old, None)
            self._entries[new] = pvc

    def refresh(self, identity: Identity, pvc: V1PersistentVolumeClaim) -> bool:
        """Replace the snapshot only if the identity is already watched."""
        with self._lock:
            if identity not in self._entries:
                return False
            self._entries[identity] = pvc
            return True

    def get(self, identity: Identity) -> V1PersistentVolumeClaim | None:
        with self._lock:
            return self._entries.get(identity)

    def snapshot(self) -> list[tuple[Identity, V1PersistentVolumeClaim]]:
        with self._lock:
            return list(self._entries.items())

    def identities(self) -> set[Identity]:
        with self._lock:
            return set(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DedupMarkers:
    """Identities claimed by a resize worker.

    Advisory only: whoever gets True from `claim` must call `release` on every
    exit path or the identity stays stuck until restart.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: set[Identity] = set()

    def claim(self, identity: Identity) -> bool:
        with self._lock:
            if identity in self._claimed:
                return False
            self._claimed.add(identity)
            return True

    def release(self, identity: Identity) -> None:
        with self._lock:
            self._claimed.discard(identity)

    def clear(self) -> None:
        with self._lock:
            self._claimed.clear()

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)
