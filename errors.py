"""
Error taxonomy for the face detection service.

Expected operational outcomes (a bad path, a missing camera, a full disk)
are returned as values by the functions that detect them, e.g.
``resolve() -> ResolvedPath | PathError``.  They are still ``Exception``
subclasses so the few places that need to unwind (the response sink) can
raise them.
"""

from __future__ import annotations

from enum import Enum


class PathErrorKind(str, Enum):
    OUTSIDE_ROOT = "path must be within root path"
    NOT_FOUND = "no such file"
    NOT_READABLE = "could not read file"


class StreamErrorKind(str, Enum):
    WRITE_FAILED = "write to peer failed"


class DeviceErrorKind(str, Enum):
    NOT_OPEN = "Cannot open camera"
    READ_FAILED = "Cannot read image from camera"
    BUSY = "Camera is busy"
    TIMEOUT = "Camera did not respond in time"


class RequestErrorKind(str, Enum):
    MISSING_PARAM = "missing parameter"
    TOO_MANY_PARAMS = "too many parameters"
    UNKNOWN_VALUE = "unknown value"

    @property
    def message(self) -> str:
        # Both parameter-count errors read the same to the client
        if self is RequestErrorKind.UNKNOWN_VALUE:
            return "Wrong value"
        return "Wrong parameter"


class PersistErrorKind(str, Enum):
    WRITE_FAILED = "Cannot save image"


class ModelErrorKind(str, Enum):
    NOT_FOUND = "model file not found"
    LOAD_FAILED = "model failed to load"


class ServiceError(Exception):
    """Base class: an error kind plus optional detail text."""

    def __init__(self, kind: Enum, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        message = getattr(self.kind, "message", self.kind.value)
        if self.detail:
            return f"{message}: {self.detail}"
        return message


class PathError(ServiceError):
    kind: PathErrorKind


class StreamError(ServiceError):
    kind: StreamErrorKind


class DeviceError(ServiceError):
    kind: DeviceErrorKind


class RequestError(ServiceError):
    kind: RequestErrorKind


class PersistError(ServiceError):
    kind: PersistErrorKind


class ModelError(ServiceError):
    kind: ModelErrorKind


class RootError(RuntimeError):
    """The configured web root cannot be canonicalized.  Fatal at startup."""
