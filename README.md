# snapkeeper

snapkeeper is a reconciliation controller for volume snapshots. It keeps
three kinds of object consistent with each other:

- a **VolumeSnapshot**, which asks for a point-in-time copy of a claim,
- a **VolumeSnapshotContent**, which stands for the copy itself,
- a **VolumeSnapshotClass**, which names the driver and the deletion policy.

The design depends on a two-way link between a snapshot and its content. The
snapshot's status names its bound content. The content's
`spec.volume_snapshot_ref` points back at the snapshot. The controller builds
that link, checks it, reports when it is broken, and takes it apart on
deletion.

## What the controller does

**Snapshot class.** Before a snapshot is reconciled, the controller checks
that the snapshot's class exists. If the snapshot names no class, the
controller looks up the claim's `StorageClass`, or the volume's when the claim
has none. It then picks the one class that carries the
`snapshot.storage.kubernetes.io/is-default-class: "true"` annotation and whose
driver equals the storage class's provisioner. It writes that class onto the
snapshot. Finding no such class, or more than one, is an error.

**Dynamic provisioning.** For a snapshot whose source is a
`PersistentVolumeClaim`, the controller takes these steps:

1. It adds a protection finalizer to the claim.
2. It creates a `VolumeSnapshotContent` named `snapcontent-<snapshot uid>`,
   holding the volume's CSI handle, the class's driver and the class's
   deletion policy. If an object with that name already exists, it is reused.
3. It copies the content's status (ready flag, creation time, restore size)
   onto the snapshot's status.

**Pre-provisioned snapshots.** A snapshot may name an existing content. The
controller then checks that the content's reference names that snapshot. It
fills in the snapshot UID and class on the content, then updates the
snapshot's status.

**Finalizers.**

- A snapshot that is not being deleted receives the "as-source" finalizer.
- A snapshot bound to a content with the `Delete` policy also receives the
  "bound" finalizer.
- A content receives its own finalizer.
- A claim keeps its finalizer while any unready snapshot in its namespace is
  being taken from it.

**Deletion.** A snapshot with a deletion timestamp that still holds one of
its finalizers is a deletion candidate. For such a snapshot, the controller
first checks whether a pending claim uses it as a data source.

- If no claim does, and the content's policy is `Delete`, the content is
  deleted.
- If no claim does, the source finalizer is removed.
- If the content is gone, the bound finalizer is removed.

A content whose snapshot is missing, has a different UID, or is a deletion
candidate is annotated with
`snapshot.storage.kubernetes.io/volumesnapshot-being-deleted: yes`.

**Errors.** A failure is saved on the snapshot's status as a
`VolumeSnapshotError`, with `ready_to_use` set to false, and emitted as a
`Warning` event. The same message is not saved twice. A failed write to the
API server raises `ControllerUpdateError`. A dynamically provisioned snapshot
whose status error came from such a failure gets content creation tried again
on its next sync.

## Package layout

| Module                     | Contents |
|----------------------------|----------|
| `snapkeeper.objects`       | Dataclasses: `VolumeSnapshot`, `VolumeSnapshotContent`, `VolumeSnapshotClass`, `PersistentVolumeClaim`, `PersistentVolume`, `StorageClass` and their parts. Enums `DeletionPolicy` and `ClaimPhase`. Finalizer and annotation names. Helpers `snapshot_ref_key`, `content_name_for_snapshot`, `is_snapshot_bound` and `is_volume_snapshot_ref_set`. |
| `snapkeeper.errors`        | `ApiError` with `NotFoundError`, `AlreadyExistsError` and `ConflictError`. Also `ControllerUpdateError` and `is_controller_update_fail_error`. |
| `snapkeeper.store`         | `Store`, a thread-safe keyed cache, and `WorkQueue`, a de-duplicating FIFO work queue. Helpers `meta_namespace_key`, `split_meta_namespace_key` and `store_object_update`. |
| `snapkeeper.api`           | `Cluster`, an in-memory API server. |
| `snapkeeper.events`        | `Event` and `EventRecorder`. |
| `snapkeeper.status`        | `StatusMixin`: status updates, error reporting and binding. |
| `snapkeeper.finalizers`    | `FinalizerMixin`: finalizers on snapshots, contents and claims. |
| `snapkeeper.provisioning`  | `ProvisioningMixin`: content creation, class resolution and lookups. |
| `snapkeeper.sync`          | `SyncMixin`: `sync_snapshot` and `sync_content`. |
| `snapkeeper.controller`    | `CommonController`, which combines the mixins with queues, caches and workers. |

`store_object_update(store, obj, kind)` refuses to replace a cached object
with one whose resource version is older, and returns `False` in that case.
It raises `ValueError` when a version is not an integer.

`Cluster` hands out copies of the objects it holds. An update whose resource
version differs from the stored one raises `ConflictError`. A successful
update bumps the version. `inject_error(verb, resource, error)` makes the next
matching request raise `error`; use `"*"` to match any verb or resource.

`EventRecorder.drain()` returns the events recorded so far and clears them.
Each event prints as `"<type> <reason> <message>"`.

## Example

```python
from snapkeeper.api import Cluster
from snapkeeper.controller import CommonController
from snapkeeper.objects import (
    ClaimPhase, ObjectMeta, PersistentVolume, PersistentVolumeClaim,
    VolumeSnapshot, VolumeSnapshotClass, VolumeSnapshotSource, VolumeSnapshotSpec,
)

claim = PersistentVolumeClaim(
    metadata=ObjectMeta(name="data", namespace="default", resource_version="1"),
    volume_name="pv-data", storage_class_name="fast", phase=ClaimPhase.BOUND,
)
volume = PersistentVolume(
    metadata=ObjectMeta(name="pv-data", resource_version="1"),
    csi_driver="example.csi", csi_volume_handle="vol-1", storage_class_name="fast",
)
gold = VolumeSnapshotClass(metadata=ObjectMeta(name="gold"), driver="example.csi")
snapshot = VolumeSnapshot(
    metadata=ObjectMeta(name="snap", namespace="default", uid="uid-1", resource_version="1"),
    spec=VolumeSnapshotSpec(
        source=VolumeSnapshotSource(persistent_volume_claim_name="data"),
        volume_snapshot_class_name="gold",
    ),
)

cluster = Cluster(snapshots=[snapshot], claims=[claim], volumes=[volume], classes=[gold])
controller = CommonController(
    cluster, create_snapshot_content_retry_count=3, create_snapshot_content_interval=0.01
)

controller.enqueue_snapshot_work(snapshot)
controller.process_next_snapshot(timeout=1)

print(cluster.get_content("snapcontent-uid-1").spec.source.volume_handle)   # vol-1
print(cluster.get_snapshot("default", "snap").status.bound_volume_snapshot_content_name)
```

## Running the controller

`CommonController(cluster, *, event_recorder=None,
create_snapshot_content_retry_count=10, create_snapshot_content_interval=10.0,
resync_period=60.0)` keeps two queues, one for snapshot keys and one for
content keys. The interval and period are in seconds.

- Objects are queued with `enqueue_snapshot_work` and `enqueue_content_work`.
- One queued key is handled with `process_next_snapshot(timeout)` or
  `process_next_content(timeout)`. Each returns `False` when no key arrived
  in time.
- If the object still exists on the cluster, the newer version is cached and
  synced (`update_snapshot`, `update_content`).
- If the object is gone but still cached, it is dropped from the cache and a
  sync of its counterpart is queued (`delete_snapshot`, `delete_content`).

`run(workers, stop_event)` runs the controller in threads:

1. It fills the caches from the cluster (`initialize_caches`) and queues every
   known object.
2. It starts `workers` threads for each queue, plus one thread that queues
   everything again every `resync_period` seconds.
3. Once `stop_event` is set, it shuts the queues down, waits for the threads
   and returns.

## What it does not do

- **No real cluster.** The only API server is the in-memory `Cluster`.
- **No storage driver.** The controller creates and deletes
  `VolumeSnapshotContent` objects but never takes or removes a snapshot on a
  storage system. A content's status, such as its ready flag or restore size,
  must be set by whatever drives the storage.
- **No command-line program.** Drive the controller from Python code.