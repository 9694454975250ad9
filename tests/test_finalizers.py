from datetime import datetime, timezone

import pytest

from snapkeeper.api import Cluster
from snapkeeper.errors import CONTROLLER_UPDATE_FAIL_MSG, ApiError, ControllerUpdateError
from snapkeeper.events import EventRecorder
from snapkeeper.finalizers import FinalizerMixin
from snapkeeper.objects import (
    GROUP_NAME,
    PVC_FINALIZER,
    SNAPSHOT_KIND,
    VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER,
    VOLUME_SNAPSHOT_BOUND_FINALIZER,
    VOLUME_SNAPSHOT_CONTENT_FINALIZER,
    ClaimPhase,
    ObjectMeta,
    ObjectReference,
    PersistentVolumeClaim,
    TypedLocalReference,
    VolumeSnapshot,
    VolumeSnapshotContent,
    VolumeSnapshotContentSpec,
    VolumeSnapshotSource,
    VolumeSnapshotSpec,
    VolumeSnapshotStatus,
)
from snapkeeper.status import StatusMixin
from snapkeeper.store import Store

NS = "default"


class Host(FinalizerMixin, StatusMixin):
    def __init__(self, cluster):
        self.cluster = cluster
        self.snapshot_store = Store()
        self.content_store = Store()
        self.event_recorder = EventRecorder()
        self.create_snapshot_content_retry_count = 3


def make_snapshot(name="snap1-1", uid="snapuid1-1", pvc="claim1-1", content_name=None,
                  ready=False, bound=None, finalizers=()):
    source = (
        VolumeSnapshotSource(persistent_volume_claim_name=pvc)
        if pvc
        else VolumeSnapshotSource(volume_snapshot_content_name=content_name)
    )
    return VolumeSnapshot(
        metadata=ObjectMeta(name=name, namespace=NS, uid=uid, resource_version="1",
                            finalizers=list(finalizers)),
        spec=VolumeSnapshotSpec(source=source, volume_snapshot_class_name="gold"),
        status=VolumeSnapshotStatus(ready_to_use=ready,
                                    bound_volume_snapshot_content_name=bound),
    )


def make_claim(name="claim1-1", finalizer=False, phase=ClaimPhase.BOUND,
               data_source=None, deleting=False):
    return PersistentVolumeClaim(
        metadata=ObjectMeta(
            name=name, namespace=NS, uid="pvc-uid", resource_version="1",
            finalizers=[PVC_FINALIZER] if finalizer else [],
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        volume_name="volume1-1",
        phase=phase,
        data_source=data_source,
    )


def make_content(name="content1-1", snap_name="snap1-1", snap_uid="snapuid1-1"):
    ref = ObjectReference(kind=SNAPSHOT_KIND, namespace=NS, name=snap_name, uid=snap_uid) \
        if snap_name else ObjectReference()
    return VolumeSnapshotContent(
        metadata=ObjectMeta(name=name, resource_version="1"),
        spec=VolumeSnapshotContentSpec(volume_snapshot_ref=ref, driver="csi-mock-plugin"),
    )


def test_add_content_finalizer_saves_and_caches():
    content = make_content()
    cluster = Cluster(contents=[content])
    host = Host(cluster)
    host.add_content_finalizer(content)
    assert cluster.get_content(content.name).metadata.finalizers == [
        VOLUME_SNAPSHOT_CONTENT_FINALIZER
    ]
    assert host.content_store.get_by_key(content.name).metadata.finalizers == [
        VOLUME_SNAPSHOT_CONTENT_FINALIZER
    ]
    assert content.metadata.finalizers == []


def test_add_content_finalizer_conflict_raises_update_error():
    content = make_content()
    cluster = Cluster(contents=[content])
    stale = make_content()
    stale.metadata.resource_version = "0"
    with pytest.raises(ControllerUpdateError) as info:
        Host(cluster).add_content_finalizer(stale)
    assert CONTROLLER_UPDATE_FAIL_MSG in str(info.value)
    assert cluster.get_content(content.name).metadata.finalizers == []


def test_add_snapshot_finalizer_both_in_order():
    snapshot = make_snapshot()
    cluster = Cluster(snapshots=[snapshot])
    host = Host(cluster)
    host.add_snapshot_finalizer(snapshot, True, True)
    expected = [VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER, VOLUME_SNAPSHOT_BOUND_FINALIZER]
    assert cluster.get_snapshot(NS, snapshot.name).metadata.finalizers == expected
    assert host.snapshot_store.get_by_key(snapshot.key()).metadata.finalizers == expected


def test_add_snapshot_finalizer_bound_only():
    snapshot = make_snapshot()
    cluster = Cluster(snapshots=[snapshot])
    Host(cluster).add_snapshot_finalizer(snapshot, False, True)
    assert cluster.get_snapshot(NS, snapshot.name).metadata.finalizers == [
        VOLUME_SNAPSHOT_BOUND_FINALIZER
    ]


def test_remove_snapshot_finalizer_nothing_requested_leaves_object():
    snapshot = make_snapshot(finalizers=[VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER])
    cluster = Cluster(snapshots=[snapshot])
    Host(cluster).remove_snapshot_finalizer(snapshot, False, False)
    stored = cluster.get_snapshot(NS, snapshot.name)
    assert stored.metadata.resource_version == snapshot.metadata.resource_version
    assert stored.metadata.finalizers == [VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER]


def test_remove_snapshot_finalizer_source_only():
    snapshot = make_snapshot(
        finalizers=[VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER, VOLUME_SNAPSHOT_BOUND_FINALIZER]
    )
    cluster = Cluster(snapshots=[snapshot])
    host = Host(cluster)
    host.remove_snapshot_finalizer(snapshot, True, False)
    assert cluster.get_snapshot(NS, snapshot.name).metadata.finalizers == [
        VOLUME_SNAPSHOT_BOUND_FINALIZER
    ]
    assert host.snapshot_store.get_by_key(snapshot.key()).metadata.finalizers == [
        VOLUME_SNAPSHOT_BOUND_FINALIZER
    ]


def test_remove_snapshot_finalizer_api_error():
    snapshot = make_snapshot(finalizers=[VOLUME_SNAPSHOT_BOUND_FINALIZER])
    cluster = Cluster(snapshots=[snapshot])
    cluster.inject_error("update", "volumesnapshots", ApiError("mock update error"))
    with pytest.raises(ControllerUpdateError) as info:
        Host(cluster).remove_snapshot_finalizer(snapshot, False, True)
    assert "mock update error" in str(info.value)
    assert cluster.get_snapshot(NS, snapshot.name).metadata.finalizers == [
        VOLUME_SNAPSHOT_BOUND_FINALIZER
    ]


def test_ensure_pvc_finalizer_adds_finalizer():
    claim = make_claim()
    cluster = Cluster(claims=[claim], snapshots=[make_snapshot()])
    Host(cluster).ensure_pvc_finalizer(make_snapshot())
    assert PVC_FINALIZER in cluster.get_claim(NS, claim.name).metadata.finalizers


def test_ensure_pvc_finalizer_ignores_pre_provisioned_snapshot():
    claim = make_claim()
    cluster = Cluster(claims=[claim])
    snapshot = make_snapshot(pvc=None, content_name="content1-1")
    Host(cluster).ensure_pvc_finalizer(snapshot)
    assert cluster.get_claim(NS, claim.name).metadata.finalizers == []


def test_ensure_pvc_finalizer_missing_claim():
    cluster = Cluster()
    with pytest.raises(ControllerUpdateError) as info:
        Host(cluster).ensure_pvc_finalizer(make_snapshot())
    assert "cannot get claim from snapshot" in str(info.value)


def test_ensure_pvc_finalizer_claim_being_deleted():
    claim = make_claim(deleting=True)
    cluster = Cluster(claims=[claim])
    with pytest.raises(ControllerUpdateError) as info:
        Host(cluster).ensure_pvc_finalizer(make_snapshot())
    assert "being deleted" in str(info.value)
    assert cluster.get_claim(NS, claim.name).metadata.finalizers == []


def test_ensure_pvc_finalizer_already_present_does_not_update():
    claim = make_claim(finalizer=True)
    cluster = Cluster(claims=[claim])
    Host(cluster).ensure_pvc_finalizer(make_snapshot())
    stored = cluster.get_claim(NS, claim.name)
    assert stored.metadata.resource_version == claim.metadata.resource_version
    assert stored.metadata.finalizers == [PVC_FINALIZER]


def test_check_and_remove_pvc_finalizer_when_snapshot_ready():
    claim = make_claim(finalizer=True)
    snapshot = make_snapshot(ready=True)
    cluster = Cluster(claims=[claim], snapshots=[snapshot])
    Host(cluster).check_and_remove_pvc_finalizer(snapshot)
    assert PVC_FINALIZER not in cluster.get_claim(NS, claim.name).metadata.finalizers


def test_check_and_remove_pvc_finalizer_kept_while_snapshot_unready():
    claim = make_claim(finalizer=True)
    snapshot = make_snapshot(ready=False)
    cluster = Cluster(claims=[claim], snapshots=[snapshot])
    Host(cluster).check_and_remove_pvc_finalizer(snapshot)
    assert cluster.get_claim(NS, claim.name).metadata.finalizers == [PVC_FINALIZER]


def test_check_and_remove_pvc_finalizer_missing_claim_is_quiet():
    cluster = Cluster(snapshots=[make_snapshot()])
    Host(cluster).check_and_remove_pvc_finalizer(make_snapshot())
    assert cluster.list_claims(NS) == []


def test_check_and_remove_pvc_finalizer_update_error_propagates():
    claim = make_claim(finalizer=True)
    snapshot = make_snapshot(ready=True)
    cluster = Cluster(claims=[claim], snapshots=[snapshot])
    cluster.inject_error("update", "persistentvolumeclaims", ApiError("mock update error"))
    with pytest.raises(ControllerUpdateError):
        Host(cluster).check_and_remove_pvc_finalizer(snapshot)
    assert cluster.get_claim(NS, claim.name).metadata.finalizers == [PVC_FINALIZER]


def test_is_pvc_being_used_skips_pre_provisioned():
    claim = make_claim()
    prebound = make_snapshot(name="snap-static", pvc=None, content_name="content1-1")
    cluster = Cluster(claims=[claim], snapshots=[prebound])
    assert Host(cluster).is_pvc_being_used(claim, prebound) is False


def test_is_pvc_being_used_by_other_unready_snapshot():
    claim = make_claim()
    ready = make_snapshot(name="snap-a", ready=True)
    unready = make_snapshot(name="snap-b", ready=False)
    cluster = Cluster(claims=[claim], snapshots=[ready, unready])
    assert Host(cluster).is_pvc_being_used(claim, ready) is True


def test_is_pvc_being_used_list_error():
    claim = make_claim()
    snapshot = make_snapshot()
    cluster = Cluster(claims=[claim], snapshots=[snapshot])
    cluster.inject_error("list", "volumesnapshots", ApiError("mock list error"))
    assert Host(cluster).is_pvc_being_used(claim, snapshot) is False


def _restore_claim(phase, api_group=GROUP_NAME, kind=SNAPSHOT_KIND, name="snap1-1"):
    return make_claim(
        name="restore",
        phase=phase,
        data_source=TypedLocalReference(api_group=api_group, kind=kind, name=name),
    )


@pytest.mark.parametrize(
    "claim, expected",
    [
        (_restore_claim(ClaimPhase.PENDING), True),
        (_restore_claim(ClaimPhase.BOUND), False),
        (_restore_claim(ClaimPhase.PENDING, api_group="other.group"), False),
        (_restore_claim(ClaimPhase.PENDING, kind="PersistentVolumeClaim"), False),
        (_restore_claim(ClaimPhase.PENDING, name="snap-other"), False),
        (make_claim(phase=ClaimPhase.PENDING), False),
    ],
)
def test_is_volume_being_created_from_snapshot(claim, expected):
    cluster = Cluster(claims=[claim])
    assert Host(cluster).is_volume_being_created_from_snapshot(make_snapshot()) is expected


def test_is_volume_being_created_from_snapshot_list_error():
    cluster = Cluster(claims=[_restore_claim(ClaimPhase.PENDING)])
    cluster.inject_error("list", "persistentvolumeclaims", ApiError("mock list error"))
    assert Host(cluster).is_volume_being_created_from_snapshot(make_snapshot()) is False


def test_is_snapshot_content_being_used_when_bound():
    content = make_content()
    snapshot = make_snapshot(bound=content.name)
    cluster = Cluster(snapshots=[snapshot], contents=[content])
    assert Host(cluster).is_snapshot_content_being_used(content) is True


def test_is_snapshot_content_being_used_uid_mismatch():
    content = make_content(snap_uid="snapuid-old")
    snapshot = make_snapshot(bound=content.name)
    cluster = Cluster(snapshots=[snapshot], contents=[content])
    assert Host(cluster).is_snapshot_content_being_used(content) is False


def test_is_snapshot_content_being_used_snapshot_missing():
    content = make_content()
    cluster = Cluster(contents=[content])
    assert Host(cluster).is_snapshot_content_being_used(content) is False


def test_is_snapshot_content_being_used_without_ref():
    content = make_content(snap_name="")
    cluster = Cluster(contents=[content], snapshots=[make_snapshot(bound=content.name)])
    assert Host(cluster).is_snapshot_content_being_used(content) is False