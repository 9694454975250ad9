"""Lookups and dynamic creation of snapshot contents for a controller."""

from __future__ import annotations

import copy
import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from snapkeeper.errors import (
    AlreadyExistsError,
    ApiError,
    ControllerUpdateError,
    NotFoundError,
)
from snapkeeper.events import EVENT_TYPE_WARNING
from snapkeeper.finalizers import _source_claim
from snapkeeper.objects import (
    ANN_DELETION_SECRET_REF_NAME,
    ANN_DELETION_SECRET_REF_NAMESPACE,
    IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION,
    SNAPSHOT_API_VERSION,
    SNAPSHOT_KIND,
    SNAPSHOTTER_SECRET_NAME_KEY,
    SNAPSHOTTER_SECRET_NAMESPACE_KEY,
    ClaimPhase,
    ObjectMeta,
    ObjectReference,
    PersistentVolume,
    PersistentVolumeClaim,
    StorageClass,
    VolumeSnapshot,
    VolumeSnapshotClass,
    VolumeSnapshotContent,
    VolumeSnapshotContentSource,
    VolumeSnapshotContentSpec,
    content_name_for_snapshot,
)

if TYPE_CHECKING:
    from snapkeeper.api import Cluster
    from snapkeeper.events import EventRecorder
    from snapkeeper.store import Store

logger = logging.getLogger(__name__)

SecretReference = Tuple[str, str]


def _secret_reference(parameters: Dict[str, str]) -> Optional[SecretReference]:
    """The (name, namespace) of the snapshotter secret named by class parameters, if any."""
    name = parameters.get(SNAPSHOTTER_SECRET_NAME_KEY)
    namespace = parameters.get(SNAPSHOTTER_SECRET_NAMESPACE_KEY)
    if name is None and namespace is None:
        return None
    if name is None or namespace is None:
        raise ValueError(
            "either name and namespace for snapshotter secrets must be specified, or neither"
        )
    return name, namespace


def _snapshot_reference(snapshot: VolumeSnapshot) -> ObjectReference:
    return ObjectReference(
        kind=SNAPSHOT_KIND,
        api_version=SNAPSHOT_API_VERSION,
        namespace=snapshot.namespace,
        name=snapshot.name,
        uid=snapshot.uid,
        resource_version=snapshot.metadata.resource_version,
    )


def _is_default_class(snapshot_class: VolumeSnapshotClass) -> bool:
    return (
        snapshot_class.metadata.annotations.get(IS_DEFAULT_SNAPSHOT_CLASS_ANNOTATION)
        == "true"
    )


class ProvisioningMixin:
    """Content lookup and dynamic provisioning for a controller.

    The host provides cluster, snapshot_store, content_store, event_recorder,
    create_snapshot_content_retry_count, create_snapshot_content_interval
    (seconds), ensure_pvc_finalizer, store_snapshot_update,
    store_content_update and update_snapshot_error_status_with_event.
    """

    cluster: "Cluster"
    snapshot_store: "Store"
    content_store: "Store"
    event_recorder: "EventRecorder"
    create_snapshot_content_retry_count: int
    create_snapshot_content_interval: float

    def _report_error(
        self, snapshot: VolumeSnapshot, reason: str, message: str
    ) -> None:
        try:
            self.update_snapshot_error_status_with_event(
                snapshot, EVENT_TYPE_WARNING, reason, message
            )
        except (ApiError, ValueError) as err:
            logger.debug("cannot save error status of %s: %s", snapshot.key(), err)

    def create_snapshot_content(
        self, snapshot: VolumeSnapshot
    ) -> Optional[VolumeSnapshotContent]:
        """Create the content object for a dynamically provisioned snapshot."""
        logger.info("creating content for snapshot %s", snapshot.key())
        self.ensure_pvc_finalizer(snapshot)

        try:
            snapshot_class, volume, content_name, secret_ref = (
                self.get_create_snapshot_input(snapshot)
            )
        except (ApiError, ValueError) as err:
            message = (
                f"failed to get input parameters to create snapshot {snapshot.name}: {err}"
            )
            kind = ApiError if isinstance(err, ApiError) else ValueError
            raise kind(message) from err

        if volume.csi_volume_handle is None:
            raise ValueError(
                f"cannot find CSI PersistentVolumeSource for volume {volume.name}"
            )

        content = VolumeSnapshotContent(
            metadata=ObjectMeta(name=content_name),
            spec=VolumeSnapshotContentSpec(
                volume_snapshot_ref=_snapshot_reference(snapshot),
                source=VolumeSnapshotContentSource(
                    volume_handle=volume.csi_volume_handle
                ),
                volume_snapshot_class_name=snapshot_class.name,
                deletion_policy=snapshot_class.deletion_policy,
                driver=snapshot_class.driver,
            ),
        )
        if secret_ref is not None:
            secret_name, secret_namespace = secret_ref
            content.metadata.annotations[ANN_DELETION_SECRET_REF_NAME] = secret_name
            content.metadata.annotations[ANN_DELETION_SECRET_REF_NAMESPACE] = (
                secret_namespace
            )

        saved: Optional[VolumeSnapshotContent] = None
        failure: Optional[ApiError] = None
        for _ in range(self.create_snapshot_content_retry_count):
            try:
                saved = self.cluster.create_content(content)
                failure = None
                logger.debug("volume snapshot content %s saved", content.name)
                break
            except AlreadyExistsError:
                logger.debug(
                    "volume snapshot content %s for snapshot %s already exists, reusing",
                    content.name,
                    snapshot.key(),
                )
                saved = copy.deepcopy(content)
                failure = None
                break
            except ApiError as err:
                failure = err
                logger.debug(
                    "failed to save volume snapshot content %s for snapshot %s: %s",
                    content.name,
                    snapshot.key(),
                    err,
                )
                time.sleep(self.create_snapshot_content_interval)

        if failure is not None:
            message = (
                "Error creating volume snapshot content object for snapshot "
                f"{snapshot.key()}: {failure}."
            )
            logger.error(message)
            self.event_recorder.event(
                snapshot, EVENT_TYPE_WARNING, "CreateSnapshotContentFailed", message
            )
            raise ControllerUpdateError(snapshot.key(), str(failure)) from failure

        if saved is not None:
            try:
                self.store_content_update(saved)
            except ValueError as err:
                logger.error("failed to update content store %s", err)
        return saved

    def get_create_snapshot_input(
        self, snapshot: VolumeSnapshot
    ) -> Tuple[VolumeSnapshotClass, PersistentVolume, str, Optional[SecretReference]]:
        """The class, source volume, content name and secret reference for a new content."""
        class_name = snapshot.spec.volume_snapshot_class_name
        if class_name is None:
            raise ValueError(
                f"failed to take snapshot {snapshot.name} without a snapshot class"
            )
        snapshot_class = self.get_snapshot_class(class_name)
        volume = self.get_volume_from_volume_snapshot(snapshot)
        content_name = content_name_for_snapshot(snapshot)
        secret_ref = _secret_reference(snapshot_class.parameters)
        return snapshot_class, volume, content_name, secret_ref

    def get_match_snapshot_content(
        self, snapshot: VolumeSnapshot
    ) -> Optional[VolumeSnapshotContent]:
        """The cached content that refers to this snapshot with the same class, if any."""
        class_name = snapshot.spec.volume_snapshot_class_name
        for content in self.content_store.list():
            ref = content.spec.volume_snapshot_ref
            if (
                ref.name == snapshot.name
                and ref.namespace == snapshot.namespace
                and ref.uid == snapshot.uid
                and content.spec.volume_snapshot_class_name is not None
                and class_name is not None
                and content.spec.volume_snapshot_class_name == class_name
            ):
                return content
        logger.debug("no VolumeSnapshotContent for VolumeSnapshot %s found", snapshot.key())
        return None

    def find_content_from_store(self, snapshot: VolumeSnapshot) -> VolumeSnapshotContent:
        """The cached content the snapshot names in its source or its status."""
        content_name = ""
        if snapshot.spec.source.volume_snapshot_content_name is not None:
            content_name = snapshot.spec.source.volume_snapshot_content_name
        elif (
            snapshot.status is not None
            and snapshot.status.bound_volume_snapshot_content_name is not None
        ):
            content_name = snapshot.status.bound_volume_snapshot_content_name
        if not content_name:
            raise ValueError(f"content name not found for snapshot {snapshot.key()}")

        content = self.content_store.get_by_key(content_name)
        if content is None:
            self._report_error(
                snapshot, "SnapshotContentMissing", "VolumeSnapshotContent is missing"
            )
            raise NotFoundError(
                f"snapshot {snapshot.key()} is bound to a non-existing content {content_name}"
            )
        if not isinstance(content, VolumeSnapshotContent):
            raise TypeError(f"expected volume snapshot content, got {content!r}")
        return content

    def content_exists(self, snapshot: VolumeSnapshot) -> Optional[VolumeSnapshotContent]:
        """The cached content bound to the snapshot, or its default-named content, or None."""
        if (
            snapshot.status is not None
            and snapshot.status.bound_volume_snapshot_content_name is not None
        ):
            content_name = snapshot.status.bound_volume_snapshot_content_name
        else:
            content_name = content_name_for_snapshot(snapshot)
        content = self.content_store.get_by_key(content_name)
        if content is None:
            return None
        if not isinstance(content, VolumeSnapshotContent):
            raise TypeError(
                "Cannot convert object from snapshot content store to "
                f"VolumeSnapshotContent {content_name!r}: {content!r}"
            )
        return content

    def get_snapshot_class(self, class_name: str) -> VolumeSnapshotClass:
        try:
            return self.cluster.get_class(class_name)
        except ApiError as err:
            message = (
                f"failed to retrieve snapshot class {class_name} from the informer: {err}"
            )
            logger.error(message)
            raise ApiError(message) from err

    def set_default_snapshot_class(
        self, snapshot: VolumeSnapshot
    ) -> Tuple[Optional[VolumeSnapshotClass], VolumeSnapshot]:
        """Give the snapshot the one default class whose driver provisions its storage class."""
        if snapshot.spec.source.volume_snapshot_content_name is not None:
            logger.debug(
                "no snapshot class needed for pre-provisioned snapshot %s", snapshot.name
            )
            return None, snapshot

        storage_class = self.get_storage_class_from_volume_snapshot(snapshot)
        defaults: List[VolumeSnapshotClass] = [
            snapshot_class
            for snapshot_class in self.cluster.list_classes()
            if _is_default_class(snapshot_class)
            and storage_class.provisioner == snapshot_class.driver
        ]
        if not defaults:
            raise ValueError("cannot find default snapshot class")
        if len(defaults) > 1:
            raise ValueError(f"{len(defaults)} default snapshot classes were found")

        chosen = defaults[0]
        clone = copy.deepcopy(snapshot)
        clone.spec.volume_snapshot_class_name = chosen.name
        try:
            saved = self.cluster.update_snapshot(clone)
        except ApiError as err:
            logger.debug(
                "updating VolumeSnapshot[%s] default class failed %s", snapshot.key(), err
            )
            raise
        try:
            self.store_snapshot_update(saved)
        except ValueError as err:
            logger.debug("%s: cannot update internal cache: %s", snapshot.key(), err)
        return chosen, saved

    def get_claim_from_volume_snapshot(
        self, snapshot: VolumeSnapshot
    ) -> PersistentVolumeClaim:
        """The claim the snapshot is taken from."""
        return _source_claim(self.cluster, snapshot)

    def get_volume_from_volume_snapshot(self, snapshot: VolumeSnapshot) -> PersistentVolume:
        """The volume bound to the snapshot's source claim."""
        pvc = self.get_claim_from_volume_snapshot(snapshot)
        if pvc.phase != ClaimPhase.BOUND:
            raise ValueError(
                f"the PVC {pvc.name} is not yet bound to a PV, "
                "will not attempt to take a snapshot"
            )
        pv_name = pvc.volume_name
        try:
            return self.cluster.get_volume(pv_name)
        except ApiError as err:
            raise ApiError(
                f"failed to retrieve PV {pv_name} from the API server: {err}"
            ) from err

    def get_storage_class_from_volume_snapshot(
        self, snapshot: VolumeSnapshot
    ) -> StorageClass:
        """The storage class of the snapshot's source claim, or of its volume."""
        pvc = self.get_claim_from_volume_snapshot(snapshot)
        storage_class_name = pvc.storage_class_name or ""
        if not storage_class_name:
            storage_class_name = self.get_volume_from_volume_snapshot(
                snapshot
            ).storage_class_name
        if not storage_class_name:
            raise ValueError(
                "cannot figure out the snapshot class automatically, "
                "please specify one in snapshot spec"
            )
        return self.cluster.get_storage_class(storage_class_name)