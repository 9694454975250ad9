"""Protection finalizers on snapshots, snapshot contents and source claims."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING

from snapkeeper.errors import ApiError, ControllerUpdateError
from snapkeeper.objects import (
    GROUP_NAME,
    PVC_FINALIZER,
    SNAPSHOT_KIND,
    VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER,
    VOLUME_SNAPSHOT_BOUND_FINALIZER,
    VOLUME_SNAPSHOT_CONTENT_FINALIZER,
    ClaimPhase,
    PersistentVolumeClaim,
    VolumeSnapshot,
    VolumeSnapshotContent,
    is_snapshot_bound,
)

if TYPE_CHECKING:
    from snapkeeper.api import Cluster
    from snapkeeper.store import Store

logger = logging.getLogger(__name__)


def _without(items, unwanted: str):
    return [item for item in items if item != unwanted]


def _source_claim(cluster: "Cluster", snapshot: VolumeSnapshot) -> PersistentVolumeClaim:
    """The claim a dynamically provisioned snapshot is taken from."""
    pvc_name = snapshot.spec.source.persistent_volume_claim_name
    if pvc_name is None:
        raise ValueError("the snapshot source PVC name is not specified")
    if not pvc_name:
        raise ValueError(f"the PVC name is not specified in snapshot {snapshot.key()}")
    try:
        return cluster.get_claim(snapshot.namespace, pvc_name)
    except ApiError as err:
        raise ApiError(f"failed to retrieve PVC {pvc_name} from the lister: {err}") from err


class FinalizerMixin:
    """Adding and removing finalizers for a controller.

    The host provides cluster, snapshot_store, content_store,
    store_snapshot_update and store_content_update.
    """

    cluster: "Cluster"
    snapshot_store: "Store"
    content_store: "Store"

    def add_content_finalizer(self, content: VolumeSnapshotContent) -> None:
        """Put the bound-protection finalizer on a content."""
        clone = copy.deepcopy(content)
        clone.metadata.finalizers.append(VOLUME_SNAPSHOT_CONTENT_FINALIZER)
        try:
            self.cluster.update_content(clone)
        except ApiError as err:
            raise ControllerUpdateError(content.name, str(err)) from err
        try:
            self.store_content_update(clone)
        except ValueError as err:
            logger.error("failed to update content store %s", err)
        logger.debug("added protection finalizer to volume snapshot content %s", content.name)

    def add_snapshot_finalizer(
        self,
        snapshot: VolumeSnapshot,
        add_source_finalizer: bool,
        add_bound_finalizer: bool,
    ) -> None:
        """Put the requested protection finalizers on a snapshot."""
        clone = copy.deepcopy(snapshot)
        if add_source_finalizer:
            clone.metadata.finalizers.append(VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER)
        if add_bound_finalizer:
            clone.metadata.finalizers.append(VOLUME_SNAPSHOT_BOUND_FINALIZER)
        try:
            self.cluster.update_snapshot(clone)
        except ApiError as err:
            raise ControllerUpdateError(snapshot.name, str(err)) from err
        try:
            self.store_snapshot_update(clone)
        except ValueError as err:
            logger.error("failed to update snapshot store %s", err)
        logger.debug("added protection finalizer to volume snapshot %s", snapshot.key())

    def remove_snapshot_finalizer(
        self,
        snapshot: VolumeSnapshot,
        remove_source_finalizer: bool,
        remove_bound_finalizer: bool,
    ) -> None:
        """Take the requested protection finalizers off a snapshot."""
        if not remove_source_finalizer and not remove_bound_finalizer:
            return
        clone = copy.deepcopy(snapshot)
        if remove_source_finalizer:
            clone.metadata.finalizers = _without(
                clone.metadata.finalizers, VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER
            )
        if remove_bound_finalizer:
            clone.metadata.finalizers = _without(
                clone.metadata.finalizers, VOLUME_SNAPSHOT_BOUND_FINALIZER
            )
        try:
            self.cluster.update_snapshot(clone)
        except ApiError as err:
            raise ControllerUpdateError(snapshot.name, str(err)) from err
        try:
            self.store_snapshot_update(clone)
        except ValueError as err:
            logger.error("failed to update snapshot store %s", err)
        logger.debug("removed protection finalizer from volume snapshot %s", snapshot.key())

    def ensure_pvc_finalizer(self, snapshot: VolumeSnapshot) -> None:
        """Make sure the snapshot's source claim carries the protection finalizer."""
        if snapshot.spec.source.persistent_volume_claim_name is None:
            return
        try:
            pvc = _source_claim(self.cluster, snapshot)
        except (ApiError, ValueError) as err:
            logger.info(
                "cannot get claim from snapshot [%s]: [%s] Claim may be deleted already.",
                snapshot.name,
                err,
            )
            raise ControllerUpdateError(snapshot.name, "cannot get claim from snapshot") from err

        if pvc.metadata.deletion_timestamp is not None:
            logger.error(
                "cannot add finalizer on claim [%s] for snapshot [%s]: claim is being deleted",
                pvc.name,
                snapshot.name,
            )
            raise ControllerUpdateError(
                pvc.name, "cannot add finalizer on claim because it is being deleted"
            )

        if PVC_FINALIZER not in pvc.metadata.finalizers:
            clone = copy.deepcopy(pvc)
            clone.metadata.finalizers.append(PVC_FINALIZER)
            try:
                self.cluster.update_claim(clone)
            except ApiError as err:
                logger.error(
                    "cannot add finalizer on claim [%s] for snapshot [%s]: [%s]",
                    pvc.name,
                    snapshot.name,
                    err,
                )
                raise ControllerUpdateError(clone.name, str(err)) from err
            logger.info("added protection finalizer to persistent volume claim %s", pvc.name)

    def remove_pvc_finalizer(
        self, pvc: PersistentVolumeClaim, snapshot: VolumeSnapshot
    ) -> None:
        """Take the protection finalizer off a source claim."""
        clone = copy.deepcopy(pvc)
        clone.metadata.finalizers = _without(clone.metadata.finalizers, PVC_FINALIZER)
        try:
            self.cluster.update_claim(clone)
        except ApiError as err:
            raise ControllerUpdateError(clone.name, str(err)) from err
        logger.debug("removed protection finalizer from persistent volume claim %s", pvc.name)

    def is_pvc_being_used(
        self, pvc: PersistentVolumeClaim, snapshot: VolumeSnapshot
    ) -> bool:
        """True while some unready snapshot in the namespace is being taken from pvc."""
        try:
            snapshots = self.cluster.list_snapshots(snapshot.namespace)
        except ApiError:
            return False
        for snap in snapshots:
            source = snap.spec.source
            if (
                source.persistent_volume_claim_name is None
                and source.volume_snapshot_content_name is not None
            ):
                continue
            if (
                source.persistent_volume_claim_name is not None
                and source.persistent_volume_claim_name == pvc.name
                and not snap.is_ready()
            ):
                logger.info(
                    "keeping PVC %s/%s, it is used by snapshot %s",
                    pvc.namespace,
                    pvc.name,
                    snap.key(),
                )
                return True
        return False

    def check_and_remove_pvc_finalizer(self, snapshot: VolumeSnapshot) -> None:
        """Remove the source claim's finalizer once no snapshot in creation needs it."""
        if snapshot.spec.source.persistent_volume_claim_name is None:
            return
        try:
            pvc = _source_claim(self.cluster, snapshot)
        except (ApiError, ValueError) as err:
            logger.info(
                "cannot get claim from snapshot [%s]: [%s] Claim may be deleted already. "
                "No need to remove finalizer on the claim.",
                snapshot.name,
                err,
            )
            return
        if PVC_FINALIZER in pvc.metadata.finalizers and not self.is_pvc_being_used(
            pvc, snapshot
        ):
            logger.info(
                "checkandRemovePVCFinalizer[%s]: remove finalizer for PVC %s",
                snapshot.name,
                pvc.name,
            )
            self.remove_pvc_finalizer(pvc, snapshot)

    def is_volume_being_created_from_snapshot(self, snapshot: VolumeSnapshot) -> bool:
        """True when a pending claim in the namespace uses the snapshot as its data source."""
        try:
            claims = self.cluster.list_claims(snapshot.namespace)
        except ApiError as err:
            logger.error(
                "failed to retrieve PVCs to check if volume snapshot %s is being used: %s",
                snapshot.key(),
                err,
            )
            return False
        for pvc in claims:
            source = pvc.data_source
            if (
                source is not None
                and source.name == snapshot.name
                and source.kind == SNAPSHOT_KIND
                and source.api_group == GROUP_NAME
                and pvc.phase == ClaimPhase.PENDING
            ):
                logger.info(
                    "volume %s is being created from snapshot %s", pvc.name, source.name
                )
                return True
        return False

    def is_snapshot_content_being_used(self, content: VolumeSnapshotContent) -> bool:
        """True when the snapshot the content refers to exists and is bound to it."""
        ref = content.spec.volume_snapshot_ref
        if ref.name and ref.namespace:
            try:
                snapshot = self.cluster.get_snapshot(ref.namespace, ref.name)
            except ApiError as err:
                logger.info(
                    "cannot get snapshot %s from api server: [%s]. "
                    "VolumeSnapshot object may be deleted already.",
                    ref.name,
                    err,
                )
                return False
            if is_snapshot_bound(snapshot, content):
                return True
        return False