"""Error taxonomy for crawl jobs.

Field-level and record-level problems never raise; they resolve to ``None``
or a dropped record inside the extractor and worker. What remains here are
the errors a job reacts to:

- ``TargetPageError``: one target page failed (navigation/wait); the worker
  logs it and moves on to the next target.
- ``ConfigurationError``, ``SessionError``, ``NoValidDataError``,
  ``PackagingError``: job-fatal, the run ends ``failed`` with the message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """How far an error propagates."""
    FATAL = "fatal"      # ends the job
    TARGET = "target"    # ends one target page
    FIELD = "field"      # resolves one field to None


class ErrorCategory(str, Enum):
    """Error categories for classification and logging."""
    CONFIGURATION = "configuration"
    BROWSER = "browser"
    NAVIGATION = "navigation"
    TIMEOUT = "timeout"
    EXTRACTION = "extraction"
    NO_DATA = "no_data"
    PACKAGING = "packaging"
    PERSISTENCE = "persistence"
    UNKNOWN = "unknown"


class CrawlError(Exception):
    """Base error with category and severity."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.FATAL,
        url: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.url = url
        self.cause = cause

    @property
    def is_fatal(self) -> bool:
        return self.severity == ErrorSeverity.FATAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "url": self.url,
            "cause": str(self.cause) if self.cause else None,
        }


class ConfigurationError(CrawlError):
    """Job definition is empty or inconsistent."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, severity=ErrorSeverity.FATAL, **kwargs)


class SessionError(CrawlError):
    """Browser could not be launched or the session died."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.BROWSER, severity=ErrorSeverity.FATAL, **kwargs)


class NoValidDataError(CrawlError):
    """Every target page produced zero kept records."""
    def __init__(self, message: str = "No valid data extracted: every record was empty", **kwargs):
        super().__init__(message, category=ErrorCategory.NO_DATA, severity=ErrorSeverity.FATAL, **kwargs)


class PackagingError(CrawlError):
    """Archive assembly failed."""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.PACKAGING, severity=ErrorSeverity.FATAL, **kwargs)


class TargetPageError(CrawlError):
    """A single target page could not be loaded; the job continues."""
    def __init__(self, message: str, *, category: ErrorCategory = ErrorCategory.NAVIGATION, **kwargs):
        super().__init__(message, category=category, severity=ErrorSeverity.TARGET, **kwargs)


def classify_exception(error: BaseException, url: Optional[str] = None) -> CrawlError:
    """Wrap an arbitrary exception raised while loading a target page."""
    if isinstance(error, CrawlError):
        return error

    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    if any(term in error_str for term in ("browser has been closed", "target closed", "crashed", "disconnected")):
        return SessionError(f"Browser session lost: {error}", url=url, cause=error)

    if "timeout" in error_type or "timeout" in error_str:
        return TargetPageError(str(error), category=ErrorCategory.TIMEOUT, url=url, cause=error)

    return TargetPageError(str(error), category=ErrorCategory.NAVIGATION, url=url, cause=error)
