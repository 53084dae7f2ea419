"""
Failure kinds raised by the pipeline stages.

Every stage raises a `PipelineError` subclass; the HTTP layer and the capture
client branch on `.kind` rather than on message text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_IMAGE = "invalid_image"
    MODEL_UNAVAILABLE = "model_unavailable"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    MISSING_SOURCE = "missing_source"
    INVALID_SOURCE = "invalid_source"
    ASSET_MISSING = "asset_missing"
    RENDER_FAILED = "render_failed"
    STORE_UNAVAILABLE = "store_unavailable"
    NOT_FOUND = "not_found"
    CONFIGURATION_ERROR = "configuration_error"
    FETCH_FAILED = "fetch_failed"


class PipelineError(Exception):
    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class InvalidImage(PipelineError):
    kind = ErrorKind.INVALID_IMAGE


class ModelUnavailable(PipelineError):
    kind = ErrorKind.MODEL_UNAVAILABLE


class CameraUnavailable(PipelineError):
    kind = ErrorKind.CAMERA_UNAVAILABLE


class MissingSource(PipelineError):
    kind = ErrorKind.MISSING_SOURCE


class InvalidSource(PipelineError):
    kind = ErrorKind.INVALID_SOURCE


class AssetMissing(PipelineError):
    kind = ErrorKind.ASSET_MISSING


class RenderFailed(PipelineError):
    kind = ErrorKind.RENDER_FAILED


class StoreUnavailable(PipelineError):
    kind = ErrorKind.STORE_UNAVAILABLE


class NotFound(PipelineError):
    kind = ErrorKind.NOT_FOUND


class ConfigurationError(PipelineError):
    kind = ErrorKind.CONFIGURATION_ERROR


class FetchFailed(PipelineError):
    kind = ErrorKind.FETCH_FAILED
