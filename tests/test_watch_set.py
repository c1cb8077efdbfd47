import threading

from conftest import make_pvc
from pvc_autoscaler.models import Identity
from pvc_autoscaler.watch_set import DedupMarkers, WatchSet


def test_store_replace_and_delete():
    ws = WatchSet()
    a, b = Identity("default", "a"), Identity("default", "b")
    ws.store(a, make_pvc("a"))
    ws.replace(a, b, make_pvc("b"))
    assert ws.identities() == {b}
    assert ws.delete(b)
    assert not ws.delete(b)
    assert len(ws) == 0


def test_refresh_only_updates_watched_entries():
    ws = WatchSet()
    a = Identity("default", "a")
    assert not ws.refresh(a, make_pvc("a"))
    assert a not in ws
    ws.store(a, make_pvc("a", request="1Gi"))
    assert ws.refresh(a, make_pvc("a", request="2Gi"))
    assert ws.get(a).spec.resources.requests["storage"] == "2Gi"


def test_snapshot_is_detached():
    ws = WatchSet()
    ws.store(Identity("default", "a"), make_pvc("a"))
    snapshot = ws.snapshot()
    ws.clear()
    assert len(snapshot) == 1
    assert len(ws) == 0


def test_concurrent_claims_only_one_wins():
    markers = DedupMarkers()
    identity = Identity("default", "data")
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        won = markers.claim(identity)
        with lock:
            results.append(won)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert identity in markers
    markers.release(identity)
    assert markers.claim(identity)
