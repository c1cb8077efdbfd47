"""Per-cycle resize decisions.

Once per polling interval every watched claim is checked against the latest
volume stats. A claim is skipped (logged, never fatal) as soon as one
precondition fails; claims that cross their usage threshold produce a
ResizeAction that is handed to the work queue.
"""

import copy
import time
from collections.abc import Callable
from datetime import datetime, timezone

from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1PersistentVolumeClaim

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.config import (
    CEILING_ANNOTATION,
    DEFAULT_INCREASE,
    DEFAULT_THRESHOLD,
    INCREASE_ANNOTATION,
    PREVIOUS_CAPACITY_ANNOTATION,
    STATUS_ANNOTATION,
    THRESHOLD_ANNOTATION,
)
from pvc_autoscaler.errors import (
    AutoscalerError,
    MetricsClientError,
    NotResizableError,
    ResizeError,
    StatusDecodeError,
)
from pvc_autoscaler.models import Identity, ResizeAction, UsageSample
from pvc_autoscaler.quantity import (
    ceil_to_gibibyte,
    convert_percentage_to_bytes,
    format_storage,
    parse_storage,
)
from pvc_autoscaler.status import AutoscalerStatus, decode_status, encode_status

FILESYSTEM_MODE = "Filesystem"
CLAIM_BOUND = "Bound"
RESIZE_PENDING_CONDITION = "FileSystemResizePending"

logger = get_logger("evaluator")


def get_storage_ceiling(pvc: V1PersistentVolumeClaim) -> int:
    """Return the ceiling in bytes: the annotation, else the storage limit, else 0."""
    annotation = (pvc.metadata.annotations or {}).get(CEILING_ANNOTATION)
    if annotation:
        return parse_storage(annotation)
    resources = pvc.spec.resources if pvc.spec else None
    limits = resources.limits if resources and resources.limits else {}
    if "storage" in limits:
        return parse_storage(limits["storage"])
    return 0


def get_requested_storage(pvc: V1PersistentVolumeClaim) -> int | None:
    resources = pvc.spec.resources if pvc.spec else None
    requests = resources.requests if resources and resources.requests else {}
    if "storage" not in requests:
        return None
    return parse_storage(requests["storage"])


def check_resizable(pvc: V1PersistentVolumeClaim) -> None:
    """Raise NotResizableError unless the claim can be grown."""
    try:
        ceiling = get_storage_ceiling(pvc)
    except ValueError as e:
        raise NotResizableError(f"invalid storage ceiling in the annotation: {e}") from e
    if ceiling == 0:
        raise NotResizableError("the storage ceiling is zero")

    volume_mode = pvc.spec.volume_mode if pvc.spec else None
    if volume_mode is not None and volume_mode != FILESYSTEM_MODE:
        raise NotResizableError("the associated volume must be formatted with a filesystem")

    phase = pvc.status.phase if pvc.status else None
    if phase != CLAIM_BOUND:
        raise NotResizableError("not bound to any pod")


def is_resize_pending(pvc: V1PersistentVolumeClaim) -> bool:
    conditions = (pvc.status.conditions if pvc.status else None) or []
    return any(
        c.type == RESIZE_PENDING_CONDITION and c.status == "True" for c in conditions
    )


def apply_resize(
    kube, pvc: V1PersistentVolumeClaim, action: ResizeAction, now: datetime | None = None
) -> V1PersistentVolumeClaim:
    """Write the new requested size and previous-capacity marker in one update.

    A copy of `pvc` is changed and sent as a conditional replace, so the
    caller keeps the unmodified claim. Any API failure is raised as
    ResizeError without retrying.
    """
    identity = Identity.of(pvc)
    pvc = copy.deepcopy(pvc)
    now = now or datetime.now(timezone.utc)

    if pvc.spec.resources.requests is None:
        pvc.spec.resources.requests = {}
    pvc.spec.resources.requests["storage"] = format_storage(action.new_capacity_bytes)

    if pvc.metadata.annotations is None:
        pvc.metadata.annotations = {}
    annotations = pvc.metadata.annotations
    annotations[PREVIOUS_CAPACITY_ANNOTATION] = str(action.previous_capacity_bytes)
    try:
        status = decode_status(pvc)
    except StatusDecodeError:
        status = AutoscalerStatus()
    status.last_scale_time = now
    annotations[STATUS_ANNOTATION] = encode_status(status)

    logger.debug(f"update storage for {identity}")
    try:
        return kube.update_object(pvc)
    except ApiException as e:
        raise ResizeError(f"failed to update PVC {identity}: {e.reason or e}") from e


class DecisionEvaluator:
    def __init__(
        self,
        kube,
        metrics,
        watch_set,
        submit: Callable[[ResizeAction], None],
        timeout: float,
    ):
        self.kube = kube
        self.metrics = metrics
        self.watch_set = watch_set
        self.submit = submit
        self.timeout = timeout

    def run_cycle(self) -> list[ResizeAction]:
        """Evaluate every watched claim once; returns the submitted actions."""
        deadline = time.monotonic() + self.timeout
        try:
            samples = self.metrics.fetch_usage_samples(timeout=self.timeout)
        except MetricsClientError as e:
            logger.error(f"could not fetch the PersistentVolumeClaims metrics: {e}")
            return []
        logger.debug("fetched metrics")

        submitted: list[ResizeAction] = []
        entries = self.watch_set.snapshot()
        for i, (identity, pvc) in enumerate(entries):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(
                    f"reconcile timed out, {len(entries) - i} claims left for the next cycle"
                )
                break
            logger.debug(f"processing pvc {identity}")
            try:
                action = self.evaluate(identity, pvc, samples, remaining)
            except Exception as e:
                logger.error(f"failed to evaluate {identity}: {e}")
                continue
            if action is None:
                continue
            self.submit(action)
            submitted.append(action)
            logger.info(
                f"pvc {identity} queued for resize from "
                f"{format_storage(get_requested_storage(pvc) or 0)} to "
                f"{format_storage(action.new_capacity_bytes)}"
            )
        return submitted

    def evaluate(
        self,
        identity: Identity,
        pvc: V1PersistentVolumeClaim,
        samples: dict[Identity, UsageSample],
        timeout: float | None = None,
    ) -> ResizeAction | None:
        annotations = pvc.metadata.annotations or {}

        storage_class = pvc.spec.storage_class_name if pvc.spec else None
        if not storage_class:
            logger.error(f"{identity} has no StorageClass")
            return None
        try:
            expandable = self.kube.is_expansion_allowed(storage_class, timeout=timeout)
        except ApiException as e:
            logger.error(f"could not get StorageClass {storage_class} for {identity}: {e.reason or e}")
            return None
        if not expandable:
            logger.error(
                f"the StorageClass {storage_class} of {identity} does not allow volume expansion"
            )
            return None

        try:
            check_resizable(pvc)
        except NotResizableError as e:
            logger.error(f"the PersistentVolumeClaim {identity} is not resizable: {e}")
            return None

        sample = samples.get(identity)
        if sample is None:
            logger.info(f"no metrics for {identity} in this cycle")
            return None

        try:
            threshold = convert_percentage_to_bytes(
                annotations.get(THRESHOLD_ANNOTATION), sample.capacity_bytes, DEFAULT_THRESHOLD
            )
        except ValueError as e:
            logger.error(f"failed to convert threshold annotation for {identity}: {e}")
            return None

        requested = get_requested_storage(pvc)
        if not requested:
            logger.info(f"skip {identity} because its requested capacity is not set yet")
            return None

        try:
            increase = convert_percentage_to_bytes(
                annotations.get(INCREASE_ANNOTATION), requested, DEFAULT_INCREASE
            )
        except ValueError as e:
            logger.error(f"failed to convert increase annotation for {identity}: {e}")
            return None

        if self.waiting_for_resize(identity, pvc, sample):
            return None

        ceiling = get_storage_ceiling(pvc)
        if requested >= ceiling:
            logger.info(f"volume storage limit reached for {identity}")
            return None

        if sample.used_bytes < threshold:
            logger.debug(f"pvc {identity} usage below threshold")
            return None

        new_capacity = ceil_to_gibibyte(requested + increase)
        if new_capacity > ceiling:
            new_capacity = ceiling
        return ResizeAction(
            pvc=pvc,
            new_capacity_bytes=new_capacity,
            previous_capacity_bytes=sample.capacity_bytes,
        )

    def waiting_for_resize(
        self, identity: Identity, pvc: V1PersistentVolumeClaim, sample: UsageSample
    ) -> bool:
        """True while a previous resize has not been accepted by the volume yet."""
        marker = (pvc.metadata.annotations or {}).get(PREVIOUS_CAPACITY_ANNOTATION)
        if marker is not None:
            try:
                previous = int(marker)
            except ValueError as e:
                raise AutoscalerError(
                    f"failed to parse previous capacity annotation {marker!r}"
                ) from e
            if previous == sample.capacity_bytes:
                logger.info(f"pvc {identity} is still waiting to accept the resize")
                return True
        if is_resize_pending(pvc):
            logger.info(f"pvc {identity} has a filesystem resize pending")
            return True
        return False
