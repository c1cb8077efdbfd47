import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeKubeClient, make_pvc
from pvc_autoscaler.config import STATUS_ANNOTATION
from pvc_autoscaler.errors import StatusDecodeError
from pvc_autoscaler.models import Identity
from pvc_autoscaler.status import (
    ZERO_TIME,
    AnnotationStateStore,
    AutoscalerStatus,
    decode_status,
    encode_status,
    init_status_annotation,
    remove_status_annotation,
)


def test_missing_annotation_decodes_to_zero_record():
    status = decode_status(make_pvc())
    assert status == AutoscalerStatus()
    assert not status.has_failed_attempt()


def test_zero_record_encoding():
    assert json.loads(encode_status(AutoscalerStatus())) == {
        "lastScaleTime": "0001-01-01T00:00:00Z",
        "lastFailedAttempt": "0001-01-01T00:00:00Z",
    }


def test_decode_reads_timestamps(now):
    pvc = make_pvc(annotations={
        STATUS_ANNOTATION: json.dumps({"lastScaleTime": "2026-10-19T12:00:00Z"})
    })
    status = decode_status(pvc)
    assert status.last_scale_time == now
    assert status.last_failed_attempt == ZERO_TIME


def test_encoded_status_decodes_back(now):
    pvc = make_pvc(annotations={
        STATUS_ANNOTATION: encode_status(AutoscalerStatus(last_failed_attempt=now))
    })
    assert decode_status(pvc).last_failed_attempt == now


@pytest.mark.parametrize("raw", ["{not json", "[]", '{"lastFailedAttempt": 12}', '{"lastScaleTime": "yesterday"}'])
def test_malformed_annotation_is_a_decode_error(raw):
    with pytest.raises(StatusDecodeError):
        decode_status(make_pvc(annotations={STATUS_ANNOTATION: raw}))


def test_retry_remaining(now):
    status = AutoscalerStatus(last_failed_attempt=now - timedelta(seconds=100))
    assert status.retry_remaining(300, now) == pytest.approx(200)
    assert status.retry_remaining(60, now) == 0
    assert AutoscalerStatus().retry_remaining(300, now) == 0


def test_init_status_annotation_is_idempotent(now):
    pvc = make_pvc()
    assert init_status_annotation(pvc)
    assert pvc.metadata.annotations[STATUS_ANNOTATION] == encode_status(AutoscalerStatus())

    existing = encode_status(AutoscalerStatus(last_scale_time=now))
    pvc = make_pvc(annotations={STATUS_ANNOTATION: existing})
    assert not init_status_annotation(pvc)
    assert pvc.metadata.annotations[STATUS_ANNOTATION] == existing


def test_init_status_annotation_without_annotations():
    pvc = make_pvc(enabled=False)
    pvc.metadata.annotations = None
    init_status_annotation(pvc)
    assert STATUS_ANNOTATION in pvc.metadata.annotations


def test_remove_status_annotation():
    pvc = make_pvc(annotations={STATUS_ANNOTATION: encode_status(AutoscalerStatus())})
    remove_status_annotation(pvc)
    assert STATUS_ANNOTATION not in pvc.metadata.annotations


def test_record_failed_attempt_patches_the_claim(now):
    pvc = make_pvc()
    kube = FakeKubeClient([pvc])
    store = AnnotationStateStore(kube)

    store.record_failed_attempt(pvc, now)

    identity = Identity.of(pvc)
    assert decode_status(pvc).last_failed_attempt == now
    assert decode_status(kube.objects[identity]).last_failed_attempt == now
    assert list(kube.patches[0][1]) == [STATUS_ANNOTATION]


def test_record_failed_attempt_replaces_malformed_record(now):
    pvc = make_pvc(annotations={STATUS_ANNOTATION: "garbage"})
    kube = FakeKubeClient([pvc])
    AnnotationStateStore(kube).record_failed_attempt(pvc, now)
    assert decode_status(pvc).last_failed_attempt == now


def test_clear_ignores_missing_claim():
    pvc = make_pvc(annotations={STATUS_ANNOTATION: encode_status(AutoscalerStatus())})
    kube = FakeKubeClient()
    AnnotationStateStore(kube).clear(pvc)
    assert STATUS_ANNOTATION not in pvc.metadata.annotations
    assert kube.patches == []


def test_clear_removes_annotation_from_live_claim():
    pvc = make_pvc(annotations={STATUS_ANNOTATION: encode_status(AutoscalerStatus())})
    kube = FakeKubeClient([pvc])
    AnnotationStateStore(kube).clear(pvc)
    assert STATUS_ANNOTATION not in kube.objects[Identity.of(pvc)].metadata.annotations


def test_naive_timestamps_are_utc():
    naive = datetime(2026, 1, 1, 8, 30)
    encoded = json.loads(encode_status(AutoscalerStatus(last_scale_time=naive)))
    assert encoded["lastScaleTime"] == "2026-01-01T08:30:00Z"
    assert datetime(2026, 1, 1, 8, 30, tzinfo=timezone.utc) == decode_status(
        make_pvc(annotations={STATUS_ANNOTATION: json.dumps(encoded)})
    ).last_scale_time
