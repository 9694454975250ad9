"""Status bookkeeping of snapshots: binding, status updates and error reporting."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from snapkeeper.errors import ApiError, ControllerUpdateError
from snapkeeper.objects import (
    VolumeSnapshot,
    VolumeSnapshotContent,
    VolumeSnapshotError,
    VolumeSnapshotStatus,
)
from snapkeeper.store import store_object_update

if TYPE_CHECKING:
    from snapkeeper.api import Cluster
    from snapkeeper.events import EventRecorder
    from snapkeeper.store import Store

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _from_unix_nanos(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


class StatusMixin:
    """Snapshot status handling for a controller.

    The host provides cluster, snapshot_store, content_store,
    event_recorder and create_snapshot_content_retry_count.
    """

    cluster: "Cluster"
    snapshot_store: "Store"
    content_store: "Store"
    event_recorder: "EventRecorder"
    create_snapshot_content_retry_count: int

    def store_snapshot_update(self, snapshot: VolumeSnapshot) -> bool:
        return store_object_update(self.snapshot_store, snapshot, "snapshot")

    def store_content_update(self, content: VolumeSnapshotContent) -> bool:
        return store_object_update(self.content_store, content, "content")

    def update_snapshot_status(
        self, snapshot: VolumeSnapshot, content: VolumeSnapshotContent
    ) -> VolumeSnapshot:
        """Bring the snapshot's status in line with the content's status.

        Returns the saved snapshot, or the current one when nothing changed.
        """
        content_status = content.status
        created_at: Optional[datetime] = None
        size: Optional[int] = None
        ready = False
        if content_status is not None:
            if content_status.creation_time is not None:
                created_at = _from_unix_nanos(content_status.creation_time)
            size = content_status.restore_size
            if content_status.ready_to_use is not None:
                ready = content_status.ready_to_use

        try:
            current = self.cluster.get_snapshot(snapshot.namespace, snapshot.name)
        except ApiError as err:
            raise ApiError(
                f"error get snapshot {snapshot.key()} from api server: {err}"
            ) from err

        if current.status is None:
            new_status = VolumeSnapshotStatus(
                bound_volume_snapshot_content_name=content.name,
                ready_to_use=ready,
                creation_time=created_at,
                restore_size=size,
            )
            updated = True
        else:
            new_status = copy.deepcopy(current.status)
            updated = False
            if new_status.bound_volume_snapshot_content_name is None:
                new_status.bound_volume_snapshot_content_name = content.name
                updated = True
            if new_status.creation_time is None and created_at is not None:
                new_status.creation_time = created_at
                updated = True
            if new_status.ready_to_use is None or new_status.ready_to_use != ready:
                new_status.ready_to_use = ready
                updated = True
                if ready and new_status.error is not None:
                    new_status.error = None
            if size is not None and (
                new_status.restore_size is None
                or (new_status.restore_size == 0 and size > 0)
            ):
                new_status.restore_size = size
                updated = True

        if not updated:
            return current

        clone = copy.deepcopy(current)
        clone.status = new_status
        try:
            return self.cluster.update_snapshot_status(clone)
        except ApiError as err:
            raise ControllerUpdateError(snapshot.key(), str(err)) from err

    def update_snapshot_error_status_with_event(
        self, snapshot: VolumeSnapshot, event_type: str, reason: str, message: str
    ) -> None:
        """Save an error on the snapshot's status and emit an event, unless that error is already set."""
        status = snapshot.status
        if status is not None and status.error is not None and status.error.message == message:
            logger.debug("%s: the same error %r is already set", snapshot.key(), message)
            return
        clone = copy.deepcopy(snapshot)
        if clone.status is None:
            clone.status = VolumeSnapshotStatus()
        clone.status.error = VolumeSnapshotError(
            time=datetime.now(timezone.utc), message=message
        )
        clone.status.ready_to_use = False
        saved = self.cluster.update_snapshot_status(clone)
        self.event_recorder.event(saved, event_type, reason, message)
        self.store_snapshot_update(saved)

    def check_and_bind_snapshot_content(
        self, snapshot: VolumeSnapshot, content: VolumeSnapshotContent
    ) -> VolumeSnapshotContent:
        """Bind a pre-provisioned content to the snapshot it names.

        Raises ValueError when the content refers to a different snapshot.
        """
        ref = content.spec.volume_snapshot_ref
        if ref.name != snapshot.name or (ref.uid and ref.uid != snapshot.uid):
            raise ValueError(
                f"Could not bind snapshot {snapshot.name} and content {content.name}, "
                "the VolumeSnapshotRef does not match"
            )
        if ref.uid and content.spec.volume_snapshot_class_name is not None:
            return content
        clone = copy.deepcopy(content)
        clone.spec.volume_snapshot_ref.uid = snapshot.uid
        if snapshot.spec.volume_snapshot_class_name is not None:
            clone.spec.volume_snapshot_class_name = snapshot.spec.volume_snapshot_class_name
        saved = self.cluster.update_content(clone)
        self.store_content_update(saved)
        return saved

    def bind_and_update_volume_snapshot(
        self, content: VolumeSnapshotContent, snapshot: VolumeSnapshot
    ) -> VolumeSnapshot:
        """Record the binding to content in the snapshot's status, retrying on failure."""
        try:
            current = self.cluster.get_snapshot(snapshot.namespace, snapshot.name)
        except ApiError as err:
            raise ApiError(
                f"error get snapshot {snapshot.key()} from api server: {err}"
            ) from err

        snapshot_copy = copy.deepcopy(current)
        failure: Optional[Exception] = None
        for _ in range(self.create_snapshot_content_retry_count):
            try:
                snapshot_copy = self.update_snapshot_status(snapshot_copy, content)
                failure = None
                break
            except (ApiError, ControllerUpdateError) as err:
                failure = err
                logger.debug("failed to update snapshot %s status: %s", snapshot.key(), err)

        if failure is not None:
            self.update_snapshot_error_status_with_event(
                snapshot_copy,
                "Warning",
                "SnapshotStatusUpdateFailed",
                f"Snapshot status update failed, {failure}",
            )
            raise failure

        try:
            self.store_snapshot_update(snapshot_copy)
        except ValueError as err:
            logger.error("%s", err)
        return snapshot_copy