"""Controller state persisted on the claim itself.

The only durable state is a small JSON record kept in the status annotation:

    {"lastScaleTime": "2026-01-01T00:00:00Z", "lastFailedAttempt": "0001-01-01T00:00:00Z"}

The zero timestamp (year 1) means "never". There is no other store, so every
write is an optimistic read-modify-write of the claim's annotations.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1PersistentVolumeClaim

from pvc_autoscaler.autoscaler_logger import get_logger
from pvc_autoscaler.config import STATUS_ANNOTATION
from pvc_autoscaler.errors import StatusDecodeError, StatusEncodeError
from pvc_autoscaler.models import Identity

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

logger = get_logger("status")


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: Any) -> datetime:
    if value is None or value == "":
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AutoscalerStatus:
    last_scale_time: datetime = ZERO_TIME
    last_failed_attempt: datetime = ZERO_TIME

    def has_failed_attempt(self) -> bool:
        return self.last_failed_attempt > ZERO_TIME

    def retry_remaining(self, retry_after: float, now: datetime) -> float:
        """Seconds left before a failed attempt may be retried, 0 if none."""
        if not self.has_failed_attempt():
            return 0.0
        elapsed = (now - self.last_failed_attempt).total_seconds()
        return max(0.0, retry_after - elapsed)


def encode_status(status: AutoscalerStatus) -> str:
    try:
        return json.dumps(
            {
                "lastScaleTime": _format_time(status.last_scale_time),
                "lastFailedAttempt": _format_time(status.last_failed_attempt),
            }
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise StatusEncodeError(f"failed to encode autoscaler status: {e}") from e


def decode_status(pvc: V1PersistentVolumeClaim) -> AutoscalerStatus:
    """Read the status record from the claim; a missing annotation is the zero record."""
    annotations = pvc.metadata.annotations or {}
    raw = annotations.get(STATUS_ANNOTATION)
    if raw is None:
        return AutoscalerStatus()

    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("status annotation is not a JSON object")
        return AutoscalerStatus(
            last_scale_time=_parse_time(data.get("lastScaleTime")),
            last_failed_attempt=_parse_time(data.get("lastFailedAttempt")),
        )
    except (TypeError, ValueError) as e:
        raise StatusDecodeError(
            f"malformed status annotation on {Identity.of(pvc)}: {e}"
        ) from e


def init_status_annotation(pvc: V1PersistentVolumeClaim) -> bool:
    """Set the default status record on the snapshot if it has none.

    Returns True if the annotation was added.
    """
    annotations = pvc.metadata.annotations
    if annotations is not None and STATUS_ANNOTATION in annotations:
        return False
    if annotations is None:
        annotations = {}
        pvc.metadata.annotations = annotations
    annotations[STATUS_ANNOTATION] = encode_status(AutoscalerStatus())
    return True


def remove_status_annotation(pvc: V1PersistentVolumeClaim) -> None:
    if pvc.metadata.annotations:
        pvc.metadata.annotations.pop(STATUS_ANNOTATION, None)


class AnnotationStateStore:
    """Reads and writes the status record through the cluster API."""

    def __init__(self, kube):
        self.kube = kube

    def decode(self, pvc: V1PersistentVolumeClaim) -> AutoscalerStatus:
        return decode_status(pvc)

    def encode(self, status: AutoscalerStatus) -> str:
        return encode_status(status)

    def record_failed_attempt(
        self, pvc: V1PersistentVolumeClaim, when: datetime
    ) -> None:
        """Stamp `lastFailedAttempt` on the claim.

        A malformed existing record is replaced by a fresh one. Raises
        StatusEncodeError if the record cannot be encoded and ApiException if
        the patch is rejected. The snapshot is updated in place either way so
        that the next attempt sees the backoff.
        """
        try:
            status = decode_status(pvc)
        except StatusDecodeError as e:
            logger.warning(f"{e}; resetting it")
            status = AutoscalerStatus()
        status.last_failed_attempt = when
        value = encode_status(status)

        if pvc.metadata.annotations is None:
            pvc.metadata.annotations = {}
        pvc.metadata.annotations[STATUS_ANNOTATION] = value
        self.kube.patch_annotations(Identity.of(pvc), {STATUS_ANNOTATION: value})

    def clear(self, pvc: V1PersistentVolumeClaim) -> None:
        """Best-effort removal of the status annotation, a no-op if the claim is gone."""
        identity = Identity.of(pvc)
        remove_status_annotation(pvc)
        try:
            self.kube.patch_annotations(identity, {STATUS_ANNOTATION: None})
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{identity} already gone, nothing to clear")
                return
            logger.warning(f"Failed to clear status annotation on {identity}: {e}")
