"""The common snapshot controller: work queues, caches and workers."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, List, Optional

from snapkeeper.api import Cluster
from snapkeeper.errors import ApiError, ConflictError, ControllerUpdateError, NotFoundError
from snapkeeper.events import EVENT_TYPE_WARNING, EventRecorder
from snapkeeper.finalizers import FinalizerMixin
from snapkeeper.objects import (
    VolumeSnapshot,
    VolumeSnapshotClass,
    VolumeSnapshotContent,
    snapshot_ref_key,
)
from snapkeeper.provisioning import ProvisioningMixin
from snapkeeper.status import StatusMixin
from snapkeeper.store import Store, WorkQueue, meta_namespace_key, split_meta_namespace_key
from snapkeeper.sync import SyncMixin

logger = logging.getLogger(__name__)

_SYNC_ERRORS = (ApiError, ControllerUpdateError, ValueError, TypeError)
_POLL_INTERVAL = 0.1


class CommonController(SyncMixin, ProvisioningMixin, FinalizerMixin, StatusMixin):
    """Keeps snapshots and snapshot contents bound and protected.

    Work is driven by two queues of object keys. Workers take keys off
    the queues, look the objects up on the cluster and reconcile them;
    objects gone from the cluster but still cached are handled as deletions.
    """

    def __init__(
        self,
        cluster: Cluster,
        *,
        event_recorder: Optional[EventRecorder] = None,
        create_snapshot_content_retry_count: int = 10,
        create_snapshot_content_interval: float = 10.0,
        resync_period: float = 60.0,
    ) -> None:
        self.cluster = cluster
        self.event_recorder = event_recorder or EventRecorder("snapshot-controller")
        self.create_snapshot_content_retry_count = create_snapshot_content_retry_count
        self.create_snapshot_content_interval = create_snapshot_content_interval
        self.resync_period = resync_period
        self.snapshot_store = Store()
        self.content_store = Store()
        self.snapshot_queue = WorkQueue()
        self.content_queue = WorkQueue()

    # Queueing -----------------------------------------------------------

    def enqueue_snapshot_work(self, obj: Any) -> None:
        """Queue the key of a snapshot; anything else is ignored."""
        if isinstance(obj, VolumeSnapshot):
            key = meta_namespace_key(obj)
            logger.debug("enqueued %r for sync", key)
            self.snapshot_queue.add(key)

    def enqueue_content_work(self, obj: Any) -> None:
        """Queue the key of a snapshot content; anything else is ignored."""
        if isinstance(obj, VolumeSnapshotContent):
            key = meta_namespace_key(obj)
            logger.debug("enqueued %r for sync", key)
            self.content_queue.add(key)

    # Workers ------------------------------------------------------------

    def process_next_snapshot(self, timeout: Optional[float] = None) -> bool:
        """Handle one snapshot key from the queue; False when none arrived in time."""
        key = self.snapshot_queue.get(timeout)
        if key is None:
            return False
        try:
            self._handle_snapshot_key(key)
        finally:
            self.snapshot_queue.done(key)
        return True

    def _handle_snapshot_key(self, key: str) -> None:
        logger.debug("snapshotWorker[%s]", key)
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError as err:
            logger.error("error getting namespace & name of snapshot %r: %s", key, err)
            return
        try:
            snapshot = self.cluster.get_snapshot(namespace, name)
        except NotFoundError:
            snapshot = None
        except ApiError as err:
            logger.info("error getting snapshot %r: %s", key, err)
            return

        if snapshot is not None:
            try:
                new_snapshot = self.check_and_update_snapshot_class(snapshot)
            except _SYNC_ERRORS as err:
                logger.debug("snapshot class check failed for %r: %s", key, err)
                return
            self.update_snapshot(new_snapshot)
            return

        cached = self.snapshot_store.get_by_key(key)
        if cached is None:
            logger.info("deletion of snapshot %r was already processed", key)
            return
        if not isinstance(cached, VolumeSnapshot):
            logger.error("expected vs, got %r", cached)
            return
        try:
            new_snapshot = self.check_and_update_snapshot_class(cached)
        except _SYNC_ERRORS as err:
            logger.debug("snapshot class check failed for %r: %s", key, err)
            return
        self.delete_snapshot(new_snapshot)

    def process_next_content(self, timeout: Optional[float] = None) -> bool:
        """Handle one content key from the queue; False when none arrived in time."""
        key = self.content_queue.get(timeout)
        if key is None:
            return False
        try:
            self._handle_content_key(key)
        finally:
            self.content_queue.done(key)
        return True

    def _handle_content_key(self, key: str) -> None:
        logger.debug("contentWorker[%s]", key)
        try:
            _, name = split_meta_namespace_key(key)
        except ValueError as err:
            logger.debug("error getting name of snapshotContent %r: %s", key, err)
            return
        try:
            content = self.cluster.get_content(name)
        except NotFoundError:
            content = None
        except ApiError as err:
            logger.info("error getting content %r: %s", key, err)
            return

        if content is not None:
            self.update_content(content)
            return

        cached = self.content_store.get_by_key(key)
        if cached is None:
            logger.info("deletion of content %r was already processed", key)
            return
        if not isinstance(cached, VolumeSnapshotContent):
            logger.error("expected content, got %r", cached)
            return
        self.delete_content(cached)

    # Event handling -----------------------------------------------------

    def check_and_update_snapshot_class(self, snapshot: VolumeSnapshot) -> VolumeSnapshot:
        """Make sure the snapshot names an existing class, choosing the default if it names none."""
        class_name = snapshot.spec.volume_snapshot_class_name
        snapshot_class: Optional[VolumeSnapshotClass]
        new_snapshot = snapshot
        if class_name is not None:
            try:
                snapshot_class = self.get_snapshot_class(class_name)
            except ApiError as err:
                logger.error("checkAndUpdateSnapshotClass failed to getSnapshotClass %s", err)
                self._report_class_error(
                    snapshot,
                    "GetSnapshotClassFailed",
                    f"Failed to get snapshot class with error {err}",
                )
                raise
        else:
            try:
                snapshot_class, new_snapshot = self.set_default_snapshot_class(snapshot)
            except _SYNC_ERRORS as err:
                logger.error("checkAndUpdateSnapshotClass failed to setDefaultClass %s", err)
                self._report_class_error(
                    snapshot,
                    "SetDefaultSnapshotClassFailed",
                    f"Failed to set default snapshot class with error {err}",
                )
                raise
        if snapshot_class is not None:
            logger.debug(
                "VolumeSnapshotClass [%s] Driver [%s]", snapshot_class.name, snapshot_class.driver
            )
        return new_snapshot

    def _report_class_error(self, snapshot: VolumeSnapshot, reason: str, message: str) -> None:
        try:
            self.update_snapshot_error_status_with_event(
                snapshot, EVENT_TYPE_WARNING, reason, message
            )
        except (ApiError, ValueError) as err:
            logger.debug("cannot save error status of %s: %s", snapshot.key(), err)

    def update_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Cache the snapshot and reconcile it unless it is an old version."""
        logger.debug("updateSnapshot %r", snapshot.key())
        try:
            is_new = self.store_snapshot_update(snapshot)
        except ValueError as err:
            logger.error("%s", err)
            return
        if not is_new:
            return
        try:
            self.sync_snapshot(snapshot)
        except ConflictError as err:
            logger.info("could not sync claim %r: %s", snapshot.key(), err)
        except _SYNC_ERRORS as err:
            logger.error("could not sync volume %r: %s", snapshot.key(), err)

    def update_content(self, content: VolumeSnapshotContent) -> None:
        """Cache the content and reconcile it unless it is an old version."""
        try:
            is_new = self.store_content_update(content)
        except ValueError as err:
            logger.error("%s", err)
            return
        if not is_new:
            return
        try:
            self.sync_content(content)
        except ConflictError as err:
            logger.info("could not sync content %r: %s", content.name, err)
        except _SYNC_ERRORS as err:
            logger.error("could not sync content %r: %s", content.name, err)

    def delete_snapshot(self, snapshot: VolumeSnapshot) -> None:
        """Forget a deleted snapshot and schedule a sync of its bound content."""
        try:
            self.snapshot_store.delete(snapshot)
        except KeyError:
            pass
        logger.debug("snapshot %r deleted", snapshot.key())
        content_name = snapshot.bound_content_name() or ""
        if not content_name:
            logger.debug("deleteSnapshot[%r]: content not bound", snapshot.key())
            return
        logger.debug(
            "deleteSnapshot[%r]: scheduling sync of content %s", snapshot.key(), content_name
        )
        self.content_queue.add(content_name)

    def delete_content(self, content: VolumeSnapshotContent) -> None:
        """Forget a deleted content and schedule a sync of its snapshot."""
        try:
            self.content_store.delete(content)
        except KeyError:
            pass
        logger.debug("content %r deleted", content.name)
        snapshot_name = snapshot_ref_key(content.spec.volume_snapshot_ref)
        if not snapshot_name:
            logger.debug("deleteContent[%r]: content not bound", content.name)
            return
        logger.debug(
            "deleteContent[%r]: scheduling sync of snapshot %s", content.name, snapshot_name
        )
        self.snapshot_queue.add(snapshot_name)

    def initialize_caches(self) -> None:
        """Fill the caches with every snapshot and content on the cluster."""
        try:
            snapshots = self.cluster.list_snapshots(None)
        except ApiError as err:
            logger.error("snapshot controller can't initialize caches: %s", err)
            return
        for snapshot in snapshots:
            try:
                self.store_snapshot_update(copy.deepcopy(snapshot))
            except ValueError as err:
                logger.error("error updating volume snapshot cache: %s", err)

        try:
            contents = self.cluster.list_contents()
        except ApiError as err:
            logger.error("snapshot controller can't initialize caches: %s", err)
            return
        for content in contents:
            try:
                self.store_content_update(copy.deepcopy(content))
            except ValueError as err:
                logger.error("error updating volume snapshot content cache: %s", err)
        logger.debug("controller initialized")

    # Running ------------------------------------------------------------

    def _resync(self) -> None:
        """Queue every known snapshot and content, including cached ones gone from the cluster."""
        try:
            snapshots: List[Any] = self.cluster.list_snapshots(None)
            contents: List[Any] = self.cluster.list_contents()
        except ApiError as err:
            logger.error("cannot list objects for resync: %s", err)
            return
        for snapshot in [*snapshots, *self.snapshot_store.list()]:
            self.enqueue_snapshot_work(snapshot)
        for content in [*contents, *self.content_store.list()]:
            self.enqueue_content_work(content)

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Run the workers until stop_event is set, then shut the queues down."""
        logger.info("Starting snapshot controller")
        self.initialize_caches()
        self._resync()

        def loop(step) -> None:
            while not stop_event.is_set():
                step(_POLL_INTERVAL)

        def resync_loop() -> None:
            while not stop_event.wait(self.resync_period):
                self._resync()

        threads = [threading.Thread(target=resync_loop, daemon=True)]
        for _ in range(workers):
            threads.append(
                threading.Thread(target=loop, args=(self.process_next_snapshot,), daemon=True)
            )
            threads.append(
                threading.Thread(target=loop, args=(self.process_next_content,), daemon=True)
            )
        for thread in threads:
            thread.start()
        try:
            stop_event.wait()
        finally:
            self.snapshot_queue.shut_down()
            self.content_queue.shut_down()
            for thread in threads:
                thread.join()
            logger.info("Shutting snapshot controller")