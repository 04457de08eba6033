"""Exception hierarchy shared by the rendering pipeline."""

from __future__ import annotations

from typing import Optional


class RenderPipelineError(RuntimeError):
    """Base class for every error raised by the pipeline."""


class ConfigError(RenderPipelineError):
    """Raised when configuration values cannot be parsed."""


class BootstrapError(RenderPipelineError):
    """Raised when initialization cannot be completed."""


class LoadError(RenderPipelineError):
    """Raised when the syntheme registry cannot be built."""


class StorageError(RenderPipelineError):
    """Raised when an upload or artifact cannot be written to disk."""


class EngineUnavailable(RenderPipelineError):
    """Raised when the transcoding engine cannot be launched."""


class SchedulerClosed(RenderPipelineError):
    """Raised when a job is submitted after shutdown has started."""


class ValidationError(RenderPipelineError):
    """Raised when an upload is rejected before any job is created."""

    kind = "invalid"

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.detail = detail


class TooLarge(ValidationError):
    kind = "too_large"

    def __init__(self, limit: int, *, received: Optional[int] = None) -> None:
        super().__init__(f"Upload exceeds the {limit} byte limit")
        self.limit = limit
        self.received = received


class UnsupportedType(ValidationError):
    kind = "unsupported_type"

    def __init__(self, content_type: str, *, syntheme: Optional[str] = None) -> None:
        if syntheme:
            message = f"Syntheme '{syntheme}' does not accept '{content_type}' uploads"
        else:
            message = f"Unsupported content type '{content_type}'"
        super().__init__(message)
        self.content_type = content_type
        self.syntheme = syntheme


class ContentMismatch(ValidationError):
    kind = "content_mismatch"

    def __init__(self, content_type: str) -> None:
        super().__init__(f"Upload content does not look like '{content_type}'")
        self.content_type = content_type


class EmptyUpload(ValidationError):
    kind = "empty"

    def __init__(self) -> None:
        super().__init__("Upload is empty")


class IncompleteUpload(ValidationError):
    kind = "incomplete"

    def __init__(self, session_id: str, missing: int) -> None:
        super().__init__(f"Upload session '{session_id}' is missing chunk {missing}")
        self.session_id = session_id
        self.missing = missing


class NotFound(RenderPipelineError):
    """Raised when a syntheme, job or artifact does not exist."""

    resource = "resource"

    def __init__(self, identifier: str) -> None:
        super().__init__(f"{self.resource.capitalize()} '{identifier}' not found")
        self.identifier = identifier


class SynthemeNotFound(NotFound):
    resource = "syntheme"


class JobNotFound(NotFound):
    resource = "job"


class ArtifactNotFound(NotFound):
    resource = "artifact"


class UploadSessionNotFound(NotFound):
    resource = "upload session"


class ArtifactNotReady(RenderPipelineError):
    """Raised when an artifact is requested for a job that has not succeeded."""

    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"Job '{job_id}' has no artifact yet (state: {state})")
        self.job_id = job_id
        self.state = state


__all__ = [
    "ArtifactNotFound",
    "ArtifactNotReady",
    "BootstrapError",
    "ConfigError",
    "ContentMismatch",
    "EmptyUpload",
    "EngineUnavailable",
    "IncompleteUpload",
    "JobNotFound",
    "LoadError",
    "NotFound",
    "RenderPipelineError",
    "SchedulerClosed",
    "StorageError",
    "SynthemeNotFound",
    "TooLarge",
    "UnsupportedType",
    "UploadSessionNotFound",
    "ValidationError",
]
