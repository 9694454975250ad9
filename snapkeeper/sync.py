"""Reconciliation of snapshots and snapshot contents."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Optional

from snapkeeper.errors import (
    ApiError,
    ControllerUpdateError,
    NotFoundError,
    is_controller_update_fail_error,
)
from snapkeeper.events import EVENT_TYPE_WARNING
from snapkeeper.objects import (
    ANN_VOLUME_SNAPSHOT_BEING_DELETED,
    VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER,
    VOLUME_SNAPSHOT_BOUND_FINALIZER,
    VOLUME_SNAPSHOT_CONTENT_FINALIZER,
    DeletionPolicy,
    VolumeSnapshot,
    VolumeSnapshotContent,
    is_snapshot_bound,
    is_volume_snapshot_ref_set,
    snapshot_ref_key,
)

if TYPE_CHECKING:
    from snapkeeper.api import Cluster
    from snapkeeper.events import EventRecorder
    from snapkeeper.store import Store, WorkQueue

logger = logging.getLogger(__name__)


def _needs_content_finalizer(content: VolumeSnapshotContent) -> bool:
    return (
        content.metadata.deletion_timestamp is None
        and VOLUME_SNAPSHOT_CONTENT_FINALIZER not in content.metadata.finalizers
    )


def _needs_source_finalizer(snapshot: VolumeSnapshot) -> bool:
    return (
        snapshot.metadata.deletion_timestamp is None
        and VOLUME_SNAPSHOT_AS_SOURCE_FINALIZER not in snapshot.metadata.finalizers
    )


def _needs_bound_finalizer(snapshot: VolumeSnapshot) -> bool:
    return (
        snapshot.metadata.deletion_timestamp is None
        and VOLUME_SNAPSHOT_BOUND_FINALIZER not in snapshot.metadata.finalizers
        and snapshot.bound_content_name() is not None
    )


def _content_is_ready(content: VolumeSnapshotContent) -> bool:
    return content.status is not None and content.status.ready_to_use is True


class SyncMixin:
    """The decisions taken for each snapshot and content.

    The host provides cluster, snapshot_store, content_store, event_recorder,
    snapshot_queue, create_snapshot_content_retry_count and the methods of
    the status, finalizer and provisioning mixins.
    """

    cluster: "Cluster"
    snapshot_store: "Store"
    content_store: "Store"
    event_recorder: "EventRecorder"
    snapshot_queue: "WorkQueue"
    create_snapshot_content_retry_count: int

    def _record_sync_error(self, snapshot: VolumeSnapshot, reason: str, message: str) -> None:
        try:
            self.update_snapshot_error_status_with_event(
                snapshot, EVENT_TYPE_WARNING, reason, message
            )
        except (ApiError, ValueError) as err:
            logger.debug("cannot save error status of %s: %s", snapshot.key(), err)

    def _update_status_with_retries(
        self, snapshot: VolumeSnapshot, content: VolumeSnapshotContent
    ) -> None:
        failure: Optional[Exception] = None
        for _ in range(self.create_snapshot_content_retry_count):
            try:
                self.update_snapshot_status(snapshot, content)
                failure = None
                break
            except (ApiError, ControllerUpdateError) as err:
                failure = err
                logger.debug("failed to update snapshot %s status: %s", snapshot.key(), err)
        if failure is not None:
            self._record_sync_error(
                snapshot,
                "SnapshotStatusUpdateFailed",
                f"Snapshot status update failed, {failure}",
            )
            raise failure

    def sync_content(self, content: VolumeSnapshotContent) -> None:
        """Reconcile one content with the snapshot it refers to."""
        logger.debug("synchronizing VolumeSnapshotContent[%s]", content.name)
        snapshot_name = snapshot_ref_key(content.spec.volume_snapshot_ref)

        if _needs_content_finalizer(content):
            self.add_content_finalizer(content)
            return

        if not content.spec.volume_snapshot_ref.uid:
            logger.debug(
                "VolumeSnapshotContent[%s] is pre-bound to VolumeSnapshot %s",
                content.name,
                snapshot_name,
            )
            return

        snapshot = self.snapshot_store.get_by_key(snapshot_name)
        if snapshot is not None and not isinstance(snapshot, VolumeSnapshot):
            raise TypeError(
                f"cannot convert object from snapshot cache to snapshot {content.name!r}: "
                f"{snapshot!r}"
            )

        if snapshot is not None and snapshot.uid != content.spec.volume_snapshot_ref.uid:
            logger.debug(
                "VolumeSnapshotContent[%s]: snapshot %s has a different UID, "
                "the old one must have been deleted",
                content.name,
                snapshot_name,
            )
            snapshot = None
        elif snapshot is not None and _content_is_ready(content):
            self.snapshot_queue.add(snapshot_name)

        if snapshot is None or snapshot.is_deletion_candidate():
            if ANN_VOLUME_SNAPSHOT_BEING_DELETED not in content.metadata.annotations:
                clone = copy.deepcopy(content)
                clone.metadata.annotations[ANN_VOLUME_SNAPSHOT_BEING_DELETED] = "yes"
                try:
                    saved = self.cluster.update_content(clone)
                except ApiError as err:
                    raise ControllerUpdateError(content.name, str(err)) from err
                self.store_content_update(saved)
                logger.debug(
                    "set annotation %s on content %s",
                    ANN_VOLUME_SNAPSHOT_BEING_DELETED,
                    content.name,
                )

    def sync_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Reconcile one snapshot."""
        logger.debug("synchronizing VolumeSnapshot[%s]", snapshot.key())
        self.process_finalizers_and_delete_content(snapshot)
        if not snapshot.is_ready():
            self.sync_unready_snapshot(snapshot)
        else:
            self.sync_ready_snapshot(snapshot)

    def process_finalizers_and_delete_content(self, snapshot: VolumeSnapshot) -> None:
        """Add or remove finalizers and delete the bound content when that is due."""
        content = self.content_exists(snapshot)
        delete_content = (
            content is not None and content.spec.deletion_policy == DeletionPolicy.DELETE
        )
        snapshot_bound = content is not None and is_snapshot_bound(snapshot, content)
        if snapshot_bound:
            logger.info(
                "VolumeSnapshot %s is bound to VolumeSnapshotContent %s",
                snapshot.name,
                content.name,
            )

        self.check_and_remove_snapshot_finalizers_and_delete_content(
            snapshot, content, delete_content
        )
        self.check_and_add_snapshot_finalizers(snapshot, snapshot_bound, delete_content)

        try:
            self.check_and_remove_pvc_finalizer(snapshot)
        except (ApiError, ControllerUpdateError, ValueError) as err:
            logger.error(
                "error check and remove PVC finalizer for snapshot [%s]: %s",
                snapshot.name,
                err,
            )
            self.event_recorder.event(
                snapshot,
                EVENT_TYPE_WARNING,
                "ErrorPVCFinalizer",
                "Error check and remove PVC Finalizer for VolumeSnapshot",
            )

    def check_and_remove_snapshot_finalizers_and_delete_content(
        self,
        snapshot: VolumeSnapshot,
        content: Optional[VolumeSnapshotContent],
        delete_content: bool,
    ) -> None:
        """For a snapshot being deleted, delete its content and drop its finalizers when allowed."""
        if not snapshot.is_deletion_candidate():
            return
        in_use = self.is_volume_being_created_from_snapshot(snapshot)

        if content is not None and delete_content and not in_use:
            try:
                self.cluster.delete_content(content.name)
            except ApiError as err:
                self.event_recorder.event(
                    snapshot,
                    EVENT_TYPE_WARNING,
                    "SnapshotContentObjectDeleteError",
                    "Failed to delete snapshot content API object",
                )
                raise ApiError(
                    f"failed to delete VolumeSnapshotContent {content.name} "
                    f"from API server: {err}"
                ) from err

        if not in_use or content is None:
            logger.debug("remove finalizer for VolumeSnapshot[%s]", snapshot.key())
            self.remove_snapshot_finalizer(snapshot, not in_use, content is None)

    def check_and_add_snapshot_finalizers(
        self, snapshot: VolumeSnapshot, snapshot_bound: bool, delete_content: bool
    ) -> None:
        """Add the source and bound finalizers the snapshot should carry but lacks."""
        add_source = _needs_source_finalizer(snapshot)
        add_bound = _needs_bound_finalizer(snapshot) and snapshot_bound and delete_content
        if not (add_source or add_bound):
            return
        try:
            self.add_snapshot_finalizer(snapshot, add_source, add_bound)
        except ControllerUpdateError as err:
            logger.error("cannot add finalizer to snapshot %s: %s", snapshot.key(), err)

    def sync_ready_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Check that a ready snapshot is still bound both ways; report it otherwise."""
        content_name = snapshot.bound_content_name()
        if content_name is None:
            return
        content = self.content_store.get_by_key(content_name)
        if content is None:
            self.update_snapshot_error_status_with_event(
                snapshot,
                EVENT_TYPE_WARNING,
                "SnapshotContentMissing",
                "VolumeSnapshotContent is missing",
            )
            return
        if not isinstance(content, VolumeSnapshotContent):
            raise TypeError(
                "Cannot convert object from snapshot content store to "
                f"VolumeSnapshotContent {content_name!r}: {content!r}"
            )
        if not is_volume_snapshot_ref_set(snapshot, content):
            self.update_snapshot_error_status_with_event(
                snapshot,
                EVENT_TYPE_WARNING,
                "SnapshotMisbound",
                "VolumeSnapshotContent is not bound to the VolumeSnapshot correctly",
            )

    def sync_unready_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Bind a snapshot that is not ready yet, creating its content when needed."""
        key = snapshot.key()
        source = snapshot.spec.source

        if source.volume_snapshot_content_name is not None:
            content = self.find_content_from_store(snapshot)
            try:
                new_content = self.check_and_bind_snapshot_content(snapshot, content)
            except (ApiError, ValueError) as err:
                self._record_sync_error(
                    snapshot,
                    "SnapshotBindFailed",
                    f"Snapshot failed to bind VolumeSnapshotContent, {err}",
                )
                kind = ApiError if isinstance(err, ApiError) else ValueError
                raise kind(
                    f"snapshot {key} is bound, but VolumeSnapshotContent {content.name} "
                    f"is not bound to the VolumeSnapshot correctly, {err}"
                ) from err
            self._update_status_with_retries(snapshot, new_content)
            return

        matched = self.get_match_snapshot_content(snapshot)
        if matched is not None:
            if matched.spec.source.snapshot_handle is not None:
                self._record_sync_error(
                    snapshot,
                    "SnapshotHandleNotFound",
                    f"Snapshot handle not found in content {matched.name}",
                )
                raise ValueError(
                    "snapshotHandle should not be set in the content for dynamic "
                    f"provisioning for snapshot {key}"
                )
            self.bind_and_update_volume_snapshot(matched, snapshot)
            return

        status = snapshot.status
        if status is not None and status.bound_volume_snapshot_content_name is not None:
            bound = self.content_store.get_by_key(status.bound_volume_snapshot_content_name)
            if bound is None:
                if snapshot.metadata.deletion_timestamp is None:
                    self._record_sync_error(
                        snapshot,
                        "SnapshotContentNotFound",
                        f"Content for snapshot {key} not found, "
                        "but deletion timestamp not set on snapshot",
                    )
                    raise NotFoundError(
                        f"content for snapshot {key} not found without deletion "
                        "timestamp on snapshot"
                    )
                logger.debug("content for snapshot %s not found, it may be deleted", key)
            elif not isinstance(bound, VolumeSnapshotContent):
                raise TypeError(f"expected volume snapshot content, got {bound!r}")
            return

        if status is None or status.error is None or is_controller_update_fail_error(
            status.error
        ):
            if source.persistent_volume_claim_name is None:
                self._record_sync_error(
                    snapshot,
                    "SnapshotPVCSourceMissing",
                    f"PVC source for snapshot {key} is missing",
                )
                raise ValueError(f"expected PVC source for snapshot {key} but got nil")
            try:
                content = self.create_snapshot_content(snapshot)
            except (ApiError, ValueError, ControllerUpdateError) as err:
                self._record_sync_error(
                    snapshot,
                    "SnapshotContentCreationFailed",
                    f"Failed to create snapshot content with error {err}",
                )
                raise
            if content is not None:
                self._update_status_with_retries(snapshot, content)