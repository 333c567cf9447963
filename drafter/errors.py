from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    transient = "transient"
    structural = "structural"
    repeated = "repeated"


class PipelineError(RuntimeError):
    """A phase failure the driver classifies by ``kind`` instead of by message."""

    kind: ErrorKind = ErrorKind.transient

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def terminal(self) -> bool:
        return self.kind is not ErrorKind.transient


class UpstreamError(PipelineError):
    """Search, extraction or generation failed in a way worth retrying later."""

    kind = ErrorKind.transient


class StructuralError(PipelineError):
    """A precondition is unmet; retrying the same input cannot succeed."""

    kind = ErrorKind.structural


class NotFoundError(LookupError):
    pass
