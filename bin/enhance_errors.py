#!/usr/bin/env python3
"""
letsenhance Error Taxonomy

Every failure the enhancer surfaces to the operator is one of these.
Per-file phase errors (upload, process, poll, download) are raised only after
the phase's retry budget is exhausted; auth and directory errors are fatal to
the whole run.
"""

from __future__ import annotations

from typing import Any, Optional


# =============================================================================
# EXIT CODES
# =============================================================================

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_AUTH = 3
EXIT_DIRECTORY = 4
EXIT_ABORTED = 5
EXIT_INTERRUPTED = 130


# =============================================================================
# EXCEPTIONS
# =============================================================================

class EnhanceError(Exception):
    """Base exception for the enhancer."""

    kind = "enhance"
    exit_code = EXIT_FAILURE

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class AuthError(EnhanceError):
    """
    Login or access-token refresh failed.

    A refresh failing mid-run carries the partial run report.
    """

    kind = "auth"
    exit_code = EXIT_AUTH

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None, report: Any = None):
        super().__init__(message, details)
        self.report = report


class UploadError(EnhanceError):
    kind = "upload"


class ProcessError(EnhanceError):
    kind = "process"


class PollTimeoutError(EnhanceError):
    """Processing did not reach 'finished' within the polling budget."""

    kind = "poll"


class DownloadError(EnhanceError):
    kind = "download"


class DirectoryError(EnhanceError):
    """Source listing or destination creation failed."""

    kind = "directory"
    exit_code = EXIT_DIRECTORY


class BatchAbortedError(EnhanceError):
    """
    Run stopped after a file failed (stop_on_first_failed_file).

    Carries the partial run report and the failing file's error so callers can
    still summarize what happened.
    """

    kind = "aborted"
    exit_code = EXIT_ABORTED

    def __init__(self, message: str, report: Any = None, file_error: Optional[str] = None):
        super().__init__(message, details={"file_error": file_error})
        self.report = report
        self.file_error = file_error
