"""An in-memory API server holding snapshots, contents, claims, volumes and classes."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List, Tuple

from snapkeeper.errors import AlreadyExistsError, ConflictError, NotFoundError
from snapkeeper.objects import (
    PersistentVolume,
    PersistentVolumeClaim,
    StorageClass,
    VolumeSnapshot,
    VolumeSnapshotClass,
    VolumeSnapshotContent,
)
from snapkeeper.store import meta_namespace_key

logger = logging.getLogger(__name__)

SNAPSHOTS = "volumesnapshots"
CONTENTS = "volumesnapshotcontents"
SNAPSHOT_CLASSES = "volumesnapshotclasses"
CLAIMS = "persistentvolumeclaims"
VOLUMES = "persistentvolumes"
STORAGE_CLASSES = "storageclasses"


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


def _version(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _index(objects: Iterable[Any]) -> Dict[str, Any]:
    return {meta_namespace_key(obj): copy.deepcopy(obj) for obj in objects}


class Cluster:
    """Stores objects the way the API server does.

    Every object handed out is a copy. Updates are refused when the
    resource version does not match the stored one, and bump it on
    success. Errors registered with inject_error are raised once each,
    in order, by the first request they match.
    """

    def __init__(
        self,
        *,
        snapshots: Iterable[VolumeSnapshot] = (),
        contents: Iterable[VolumeSnapshotContent] = (),
        claims: Iterable[PersistentVolumeClaim] = (),
        volumes: Iterable[PersistentVolume] = (),
        storage_classes: Iterable[StorageClass] = (),
        classes: Iterable[VolumeSnapshotClass] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._errors: List[Tuple[str, str, Exception]] = []
        self._snapshots: Dict[str, VolumeSnapshot] = _index(snapshots)
        self._contents: Dict[str, VolumeSnapshotContent] = _index(contents)
        self._claims: Dict[str, PersistentVolumeClaim] = _index(claims)
        self._volumes: Dict[str, PersistentVolume] = _index(volumes)
        self._storage_classes: Dict[str, StorageClass] = _index(storage_classes)
        self._classes: Dict[str, VolumeSnapshotClass] = _index(classes)

    def inject_error(self, verb: str, resource: str, error: Exception) -> None:
        """Make the next request matching verb and resource ('*' matches any) raise error."""
        with self._lock:
            self._errors.append((verb, resource, error))

    def _check_injected(self, verb: str, resource: str) -> None:
        for position, (want_verb, want_resource, error) in enumerate(self._errors):
            if want_verb in ("*", verb) and want_resource in ("*", resource):
                del self._errors[position]
                logger.debug("injecting error for %s %s: %s", verb, resource, error)
                raise error

    def _get(self, table: Dict[str, Any], resource: str, key: str, label: str) -> Any:
        with self._lock:
            self._check_injected("get", resource)
            obj = table.get(key)
            if obj is None:
                raise NotFoundError(f"cannot find {label} {key}")
            return copy.deepcopy(obj)

    def _list(self, table: Dict[str, Any], resource: str, namespace: str = None) -> List[Any]:
        with self._lock:
            self._check_injected("list", resource)
            return [
                copy.deepcopy(table[key])
                for key in sorted(table)
                if namespace is None or table[key].metadata.namespace == namespace
            ]

    def _update(self, table: Dict[str, Any], resource: str, obj: Any, label: str) -> Any:
        with self._lock:
            self._check_injected("update", resource)
            key = meta_namespace_key(obj)
            stored = table.get(key)
            if stored is None:
                raise NotFoundError(f"cannot update {label} {obj.metadata.name}: {label} not found")
            stored_version = _version(stored.metadata.resource_version)
            if stored_version != _version(obj.metadata.resource_version):
                raise ConflictError(
                    f"cannot update {label} {obj.metadata.name}: the object has been modified"
                )
            saved = copy.deepcopy(obj)
            saved.metadata.resource_version = str(stored_version + 1)
            table[key] = saved
            logger.debug("saved updated %s %s", label, key)
            return copy.deepcopy(saved)

    def get_snapshot(self, namespace: str, name: str) -> VolumeSnapshot:
        return self._get(self._snapshots, SNAPSHOTS, _key(namespace, name), "snapshot")

    def list_snapshots(self, namespace: str) -> List[VolumeSnapshot]:
        return self._list(self._snapshots, SNAPSHOTS, namespace)

    def update_snapshot(self, snapshot: VolumeSnapshot) -> VolumeSnapshot:
        return self._update(self._snapshots, SNAPSHOTS, snapshot, "snapshot")

    def update_snapshot_status(self, snapshot: VolumeSnapshot) -> VolumeSnapshot:
        return self._update(self._snapshots, SNAPSHOTS, snapshot, "snapshot")

    def get_content(self, name: str) -> VolumeSnapshotContent:
        return self._get(self._contents, CONTENTS, name, "content")

    def list_contents(self) -> List[VolumeSnapshotContent]:
        return self._list(self._contents, CONTENTS)

    def create_content(self, content: VolumeSnapshotContent) -> VolumeSnapshotContent:
        with self._lock:
            self._check_injected("create", CONTENTS)
            key = meta_namespace_key(content)
            if key in self._contents:
                raise AlreadyExistsError(
                    f"cannot create content {content.name}: content already exists"
                )
            self._contents[key] = copy.deepcopy(content)
            logger.debug("created content %s", key)
            return copy.deepcopy(content)

    def update_content(self, content: VolumeSnapshotContent) -> VolumeSnapshotContent:
        return self._update(self._contents, CONTENTS, content, "content")

    def delete_content(self, name: str) -> None:
        with self._lock:
            self._check_injected("delete", CONTENTS)
            if name not in self._contents:
                raise NotFoundError(f"cannot delete content {name}: not found")
            del self._contents[name]
            logger.debug("deleted content %s", name)

    def get_claim(self, namespace: str, name: str) -> PersistentVolumeClaim:
        return self._get(self._claims, CLAIMS, _key(namespace, name), "claim")

    def list_claims(self, namespace: str) -> List[PersistentVolumeClaim]:
        return self._list(self._claims, CLAIMS, namespace)

    def update_claim(self, claim: PersistentVolumeClaim) -> PersistentVolumeClaim:
        return self._update(self._claims, CLAIMS, claim, "claim")

    def get_volume(self, name: str) -> PersistentVolume:
        return self._get(self._volumes, VOLUMES, name, "volume")

    def get_storage_class(self, name: str) -> StorageClass:
        return self._get(self._storage_classes, STORAGE_CLASSES, name, "storageClass")

    def get_class(self, name: str) -> VolumeSnapshotClass:
        return self._get(self._classes, SNAPSHOT_CLASSES, name, "snapshot class")

    def list_classes(self) -> List[VolumeSnapshotClass]:
        return self._list(self._classes, SNAPSHOT_CLASSES)