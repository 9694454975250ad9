"""Errors raised by the simulated API server and by the controller."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from snapkeeper.objects import VolumeSnapshotError

CONTROLLER_UPDATE_FAIL_MSG = "snapshot controller failed to update"


class ApiError(Exception):
    """An API server request failed."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same name already exists."""


class ConflictError(ApiError):
    """The object was modified since it was read."""


class ControllerUpdateError(Exception):
    """The controller could not save an object on the API server."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(f"{CONTROLLER_UPDATE_FAIL_MSG} {name} on API server: {message}")
        self.name = name


def is_controller_update_fail_error(error: Optional["VolumeSnapshotError"]) -> bool:
    """True when a snapshot status error was caused by a failed controller update."""
    if error is None or error.message is None:
        return False
    return CONTROLLER_UPDATE_FAIL_MSG in error.message