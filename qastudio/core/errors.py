"""Exceptions raised by bundle-level operations.

Static passes never raise these; they degrade to "no change" instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional


class BundleOperationError(RuntimeError):
    """Base error carrying the bundle slug, artifact path and operation name."""

    def __init__(
        self,
        message: str,
        *,
        slug: Optional[str] = None,
        path: Optional[Path | str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.slug = slug
        self.path = str(path) if path is not None else None
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "slug": self.slug,
            "path": self.path,
            "operation": self.operation,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.slug:
            parts.append(f"slug={self.slug}")
        if self.path:
            parts.append(f"path={self.path}")
        return " | ".join(parts)


class SpecGenerationError(BundleOperationError):
    """Raised when the inputs cannot be turned into a spec."""


class SpecWriteError(BundleOperationError):
    """Raised when a bundle artifact cannot be written to disk."""


class SpecUpdateError(BundleOperationError):
    """Raised when an in-place edit of a bundle fails."""


class StepAnchorError(SpecUpdateError):
    """Raised when a step cannot be located unambiguously in a spec source."""


class BundleNotFoundError(BundleOperationError):
    """Raised when no bundle directory exists for a slug."""


class BundleIncompleteError(BundleOperationError):
    """Raised when a bundle is missing its spec or its meta.json."""


class RecordingStateError(RuntimeError):
    """Raised when a recording session is used outside its lifecycle."""
