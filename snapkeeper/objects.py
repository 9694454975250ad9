"""Data model for volume snapshots, snapshot contents, classes, claims and volumes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

GROUP_NAME = "snapshot.storage.k8s.io"
SNAPSHOT_KIND = "VolumeSnapshot"
SNAPSHOT_API_VERSION = f"{GROUP_NAME}/v1beta1"

VOLUME_SNAPSHOT_CONTENT_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshotcontent-bound-protection"
)
VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshot-as-source-protection"
)
VOLUME_SNAPSHOT_BOUND_FINALIZER = (
    "snapshot.storage.kubernetes.io/volumesnapshot-bound-protection"
)
PVC_FINALIZER = "snapshot.storage.kubernetes.io/pvc-as-source-protection"

ANN_VOLUME_SNAPSHOT_BEING_DELETED = (
    "snapshot.storage.kubernetes.io/volumesnapshot-being-deleted"
)
ANN_DELETION_SECRET_REF_NAME = "snapshot.storage.kubernetes.io/deletion-secret-name"
ANN_DELETION_SECRET_REF_NAMESPACE = (
    "snapshot.storage.kubernetes.io/deletion-secret-namespace"
)
IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION = (
    "snapshot.storage.kubernetes.io/is-default-class"
)

SNAPSHOTTER_SECRET_NAME_KEY = "csi.storage.k8s.io/snapshotter-secret-name"
SNAPSHOTTER_SECRET_NAMESPACE_KEY = "csi.storage.k8s.io/snapshotter-secret-namespace"

CONTENT_NAME_PREFIX = "snapcontent-"


class DeletionPolicy(str, enum.Enum):
    """What happens to the backing snapshot when its content object goes away."""

    DELETE = "Delete"
    RETAIN = "Retain"


class ClaimPhase(str, enum.Enum):
    """Lifecycle phase of a persistent volume claim."""

    PENDING = "Pending"
    BOUND = "Bound"
    LOST = "Lost"


@dataclass
class ObjectMeta:
    """Metadata shared by every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    self_link: str = ""
    finalizers: List[str] = field(default_factory=list)
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None


@dataclass
class ObjectReference:
    """A pointer to another object, by kind, namespace, name and uid."""

    kind: str = ""
    api_version: str = ""
    namespace: str = ""
    name: str = ""
    uid: str = ""
    resource_version: str = ""


@dataclass
class _Resource:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def uid(self) -> str:
        return self.metadata.uid


@dataclass
class VolumeSnapshotSource:
    """Where a snapshot comes from: a claim (dynamic) or an existing content (pre-provisioned)."""

    persistent_volume_claim_name: Optional[str] = None
    volume_snapshot_content_name: Optional[str] = None


@dataclass
class VolumeSnapshotSpec:
    source: VolumeSnapshotSource = field(default_factory=VolumeSnapshotSource)
    volume_snapshot_class_name: Optional[str] = None


@dataclass
class VolumeSnapshotError:
    time: Optional[datetime] = None
    message: Optional[str] = None


@dataclass
class VolumeSnapshotStatus:
    bound_volume_snapshot_content_name: Optional[str] = None
    creation_time: Optional[datetime] = None
    ready_to_use: Optional[bool] = None
    restore_size: Optional[int] = None
    error: Optional[VolumeSnapshotError] = None


@dataclass
class VolumeSnapshot(_Resource):
    """A user's request for a snapshot of a volume."""

    spec: VolumeSnapshotSpec = field(default_factory=VolumeSnapshotSpec)
    status: Optional[VolumeSnapshotStatus] = None

    def key(self) -> str:
        """The namespace/name key of this snapshot."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def is_ready(self) -> bool:
        """True when the status says the snapshot is ready to use."""
        return self.status is not None and self.status.ready_to_use is True

    def is_deletion_candidate(self) -> bool:
        """True when the snapshot is being deleted and still holds one of our finalizers."""
        finalizers = self.metadata.finalizers
        return self.metadata.deletion_timestamp is not None and (
            VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER in finalizers
            or VOLUME_SNAPSHOT_BOUND_FINALIZER in finalizers
        )

    def bound_content_name(self) -> Optional[str]:
        """Name of the content this snapshot is bound to, or None when unset or empty."""
        if self.status is None:
            return None
        return self.status.bound_volume_snapshot_content_name or None


@dataclass
class VolumeSnapshotContentSource:
    volume_handle: Optional[str] = None
    snapshot_handle: Optional[str] = None


@dataclass
class VolumeSnapshotContentSpec:
    volume_snapshot_ref: ObjectReference = field(default_factory=ObjectReference)
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    driver: str = ""
    volume_snapshot_class_name: Optional[str] = None
    source: VolumeSnapshotContentSource = field(
        default_factory=VolumeSnapshotContentSource
    )


@dataclass
class VolumeSnapshotContentStatus:
    snapshot_handle: Optional[str] = None
    creation_time: Optional[int] = None  # nanoseconds since the epoch
    restore_size: Optional[int] = None
    ready_to_use: Optional[bool] = None
    error: Optional[VolumeSnapshotError] = None


@dataclass
class VolumeSnapshotContent(_Resource):
    """The cluster-scoped record of an actual snapshot on the storage system."""

    spec: VolumeSnapshotContentSpec = field(default_factory=VolumeSnapshotContentSpec)
    status: Optional[VolumeSnapshotContentStatus] = None


@dataclass
class VolumeSnapshotClass(_Resource):
    driver: str = ""
    parameters: Dict[str, str] = field(default_factory=dict)
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE


@dataclass
class TypedLocalReference:
    api_group: Optional[str] = None
    kind: str = ""
    name: str = ""


@dataclass
class PersistentVolumeClaim(_Resource):
    volume_name: str = ""
    storage_class_name: Optional[str] = None
    data_source: Optional[TypedLocalReference] = None
    phase: ClaimPhase = ClaimPhase.PENDING


@dataclass
class PersistentVolume(_Resource):
    """A volume; csi_volume_handle is None when the volume is not backed by CSI."""

    csi_driver: str = ""
    csi_volume_handle: Optional[str] = None
    storage_class_name: str = ""


@dataclass
class StorageClass(_Resource):
    provisioner: str = ""


def snapshot_ref_key(ref: Optional[ObjectReference]) -> str:
    """The namespace/name key of the snapshot a reference points to, or '' if none."""
    if ref is None or not ref.name:
        return ""
    return f"{ref.namespace}/{ref.name}"


def content_name_for_snapshot(snapshot: VolumeSnapshot) -> str:
    """The name given to a dynamically created content for this snapshot."""
    return CONTENT_NAME_PREFIX + snapshot.metadata.uid


def is_volume_snapshot_ref_set(
    snapshot: VolumeSnapshot, content: VolumeSnapshotContent
) -> bool:
    """True when the content's snapshot reference points at exactly this snapshot."""
    ref = content.spec.volume_snapshot_ref
    return (
        ref.name == snapshot.metadata.name
        and ref.namespace == snapshot.metadata.namespace
        and ref.uid == snapshot.metadata.uid
    )


def is_snapshot_bound(snapshot: VolumeSnapshot, content: VolumeSnapshotContent) -> bool:
    """True when snapshot and content point at each other."""
    return (
        is_volume_snapshot_ref_set(snapshot, content)
        and snapshot.bound_content_name() is not None
    )