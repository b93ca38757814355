"""Exception hierarchy for markview.

Nothing here is fatal to a render: service errors are raised inside the
external renderer client and turned into Failed artifacts at the worker
boundary, so callers of the core rarely see them.
"""

from __future__ import annotations


class MarkviewError(Exception):
    """Base class for all markview exceptions."""


class RenderServiceError(MarkviewError):
    """Raised when an external rendering service cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(RenderServiceError):
    """Raised when a rendering service answers 2xx but the body is not an SVG image."""


class DocumentClosedError(MarkviewError):
    """Raised when a closed document is loaded, edited or rendered."""
