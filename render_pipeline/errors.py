"""Typed errors raised by the render pipeline.

Every error carries an optional context (job id, segment, batch row, frame
index) so a failure can be diagnosed from the log line alone.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

_CONTEXT_KEYS = ("job_id", "segment", "row", "frame")


class RenderError(RuntimeError):
    """Base class for all pipeline failures."""

    def __init__(
        self,
        message: str,
        *,
        job_id: Optional[str] = None,
        segment: Optional[int] = None,
        row: Optional[int] = None,
        frame: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {}
        self.annotate(job_id=job_id, segment=segment, row=row, frame=frame)

    def annotate(self, **context: Any) -> "RenderError":
        """Fill context fields that are not set yet; existing values win."""
        for key in _CONTEXT_KEYS:
            value = context.get(key)
            if value is not None and self.context.get(key) is None:
                self.context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "type": type(self).__name__,
            "context": {k: v for k, v in self.context.items() if v is not None},
        }

    def __str__(self) -> str:
        parts = [f"{k}={self.context[k]}" for k in _CONTEXT_KEYS if self.context.get(k) is not None]
        if not parts:
            return self.message
        return f"{self.message} [{' '.join(parts)}]"


class ValidationError(RenderError, ValueError):
    """A parameter failed validation; raised before any resource is acquired."""


class UnknownCodecError(ValidationError, LookupError):
    """The codec identifier is not in the registry."""


class RenderConnectionError(RenderError, ConnectionError):
    """The render surface could not be reached."""


class CompositionNotFoundError(RenderError):
    """The render surface does not know the requested composition."""


class RenderTimeoutError(RenderError, TimeoutError):
    """A frame never settled within the capture timeout and its retries."""


class EncodeFailedError(RenderError):
    """The encoder exited non-zero or closed its input early."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr_tail: str = "",
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.returncode = returncode
        self.stderr_tail = stderr_tail

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["returncode"] = self.returncode
        if self.stderr_tail:
            payload["stderr"] = self.stderr_tail
        return payload


class JobCancelledError(RenderError):
    """The job was cancelled by its coordinator before it finished."""


__all__ = [
    "RenderError",
    "ValidationError",
    "UnknownCodecError",
    "RenderConnectionError",
    "CompositionNotFoundError",
    "RenderTimeoutError",
    "EncodeFailedError",
    "JobCancelledError",
]
