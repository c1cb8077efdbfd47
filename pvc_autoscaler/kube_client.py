"""Thin wrapper around the Kubernetes API calls the autoscaler needs."""

from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client.models import V1PersistentVolumeClaim

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.models import Identity

logger = get_logger("kube")


class KubeClient:
    def __init__(
        self,
        core: client.CoreV1Api,
        storage: client.StorageV1Api,
        request_timeout: float | None = None,
    ):
        self.core = core
        self.storage = storage
        self.request_timeout = request_timeout
        self._watch: watch.Watch | None = None

    def _timeout(self, timeout: float | None) -> dict[str, Any]:
        t = timeout if timeout is not None else self.request_timeout
        return {"_request_timeout": t} if t is not None else {}

    def list_objects(
        self, timeout: float | None = None
    ) -> tuple[list[V1PersistentVolumeClaim], str | None]:
        """List claims in every namespace, returning the items and the list resourceVersion."""
        pvcl = self.core.list_persistent_volume_claim_for_all_namespaces(
            **self._timeout(timeout)
        )
        resource_version = pvcl.metadata.resource_version if pvcl.metadata else None
        return list(pvcl.items or []), resource_version

    def get_object(
        self, identity: Identity, timeout: float | None = None
    ) -> V1PersistentVolumeClaim:
        return self.core.read_namespaced_persistent_volume_claim(
            name=identity.name, namespace=identity.namespace, **self._timeout(timeout)
        )

    def update_object(
        self, pvc: V1PersistentVolumeClaim, timeout: float | None = None
    ) -> V1PersistentVolumeClaim:
        """Replace the claim; rejected with 409 if its resourceVersion is stale."""
        return self.core.replace_namespaced_persistent_volume_claim(
            name=pvc.metadata.name,
            namespace=pvc.metadata.namespace,
            body=pvc,
            **self._timeout(timeout),
        )

    def patch_annotations(
        self,
        identity: Identity,
        annotations: dict[str, str | None],
        timeout: float | None = None,
    ) -> V1PersistentVolumeClaim:
        """Merge-patch metadata annotations; a None value removes the key."""
        return self.core.patch_namespaced_persistent_volume_claim(
            name=identity.name,
            namespace=identity.namespace,
            body={"metadata": {"annotations": annotations}},
            **self._timeout(timeout),
        )

    def is_expansion_allowed(
        self, storage_class_name: str, timeout: float | None = None
    ) -> bool:
        sc = self.storage.read_storage_class(
            name=storage_class_name, **self._timeout(timeout)
        )
        return bool(sc.allow_volume_expansion)

    def watch(
        self, resource_version: str | None, timeout_seconds: int = 60
    ) -> Iterator[tuple[str, V1PersistentVolumeClaim]]:
        """Stream (event type, claim) pairs starting after `resource_version`."""
        w = watch.Watch()
        self._watch = w
        kwargs: dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            for event in w.stream(
                self.core.list_persistent_volume_claim_for_all_namespaces, **kwargs
            ):
                yield event["type"], event["object"]
        finally:
            self._watch = None

    def stop_watch(self) -> None:
        w = self._watch
        if w is not None:
            w.stop()


def create_kube_client(
    kubeconfig: str | None = None, request_timeout: float | None = None
) -> KubeClient:
    """Load cluster credentials, in-cluster unless a kubeconfig path is given."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
    else:
        config.load_incluster_config()
    logger.info("Kubernetes client ready")
    return KubeClient(client.CoreV1Api(), client.StorageV1Api(), request_timeout)
