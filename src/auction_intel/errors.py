"""
Exception hierarchy for the analysis pipeline.

Only InvalidInput and NotFound reach the caller. SourceDegraded is raised by
source clients and absorbed by the pipeline, which records it in the
consensus result instead of failing the request.
"""

from __future__ import annotations

from typing import Any, Optional


class AnalysisError(Exception):
    """Base class for pipeline errors."""

    code = "ANALYSIS_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": False, "message": self.message, "error": self.code}
        if self.details:
            result["details"] = self.details
        return result


class InvalidInput(AnalysisError):
    code = "INVALID_INPUT"


class NotFound(AnalysisError):
    code = "NOT_FOUND"


class SourceDegraded(AnalysisError):
    """A signal source failed or timed out. Never surfaced to callers."""

    code = "SOURCE_DEGRADED"

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source} unavailable: {reason}", {"source": source})
        self.source = source
        self.reason = reason
