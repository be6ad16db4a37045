#!/usr/bin/env python3
"""
letsenhance Single File Pipeline

Drives one image through upload -> process -> poll -> download. Each phase
runs under the same bounded-retry combinator and only hands its result to the
next phase on success; an exhausted phase ends the file with a typed error.

This module is used by enhance_batch.py and provides:
- with_retries(): bounded retry combinator with an is-success predicate
- upload_image(), process_image(), poll_until_finished(), download_result()
- enhance_file(): the whole pipeline, returning a FileOutcome
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from enhance_config import EnhanceOptions
from enhance_errors import (
    AuthError,
    DownloadError,
    EnhanceError,
    PollTimeoutError,
    ProcessError,
    UploadError,
)
from enhance_session import AuthSession, describe_body
from enhance_transport import CONNECTION_FAILURE, FormFile, TransportResult


UPLOAD_PATH = "/api/images/upload"
PROCESS_PATH = "/api/images/process"
IN_PROCESS_PATH = "/api/images/in-process"

UPLOAD_FIELD = "files"
FINISHED = "finished"

T = TypeVar("T")


# =============================================================================
# RETRY COMBINATOR
# =============================================================================

@dataclass
class RetryOutcome(Generic[T]):
    """Last value produced by a retried operation."""
    value: Optional[T]
    attempts: int
    succeeded: bool


def _result_ok(result: TransportResult) -> bool:
    return result.ok


async def with_retries(
    operation: Callable[[int], Awaitable[T]],
    attempts: int,
    is_success: Callable[[T], bool] = _result_ok,
    *,
    interval_sec: float = 0.0,
    on_failure: Optional[Callable[[int, T], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """
    Run operation(attempt) until is_success() accepts its value.

    Attempts are numbered from 1. The wait of interval_sec happens only
    between attempts, never after the last one. Exceptions raised by the
    operation are not retried.

    Returns:
        RetryOutcome with the accepted value, or the last rejected one
    """
    value: Optional[T] = None
    for attempt in range(1, attempts + 1):
        value = await operation(attempt)
        if is_success(value):
            return RetryOutcome(value=value, attempts=attempt, succeeded=True)

        if on_failure is not None:
            on_failure(attempt, value)

        if attempt < attempts and interval_sec > 0:
            await sleep(interval_sec)

    return RetryOutcome(value=value, attempts=attempts, succeeded=False)


# =============================================================================
# FILE JOB
# =============================================================================

@dataclass
class FileJob:
    """Per-file state threaded through the four phases."""
    source_path: str
    dest_path: str
    name: str
    remote_image_id: Optional[str] = None
    remote_status: Optional[str] = None
    download_url: Optional[str] = None

    @classmethod
    def for_name(cls, source_dir: str, dest_dir: str, name: str) -> "FileJob":
        return cls(
            source_path=os.path.join(source_dir, name),
            dest_path=os.path.join(dest_dir, name),
            name=name,
        )


@dataclass
class FileOutcome:
    """Result of running one file through the pipeline."""
    name: str
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    bytes_written: int = 0


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

def _first_image_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    images = body.get("images")
    if not isinstance(images, list) or not images or not isinstance(images[0], dict):
        return None
    image_id = images[0].get("id")
    return image_id if image_id not in (None, "") else None


def _first_entry(body: Any) -> Optional[dict]:
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return body[0]
    return None


def _status_of(body: Any) -> Optional[str]:
    entry = _first_entry(body)
    return entry.get("status") if entry is not None else None


def _download_url_for(body: Any, version: str) -> Optional[str]:
    entry = _first_entry(body)
    if entry is None:
        return None
    versions = entry.get("versions")
    if not isinstance(versions, dict) or not isinstance(versions.get(version), dict):
        return None
    url = versions[version].get("download_url")
    return url if isinstance(url, str) and url else None


def write_atomically(file_path: str, content: bytes) -> int:
    """
    Write content via a .part file renamed into place.

    The partial file is removed if writing fails.

    Returns:
        Size of the written file in bytes
    """
    part_path = file_path + ".part"
    try:
        with open(part_path, "wb") as f:
            f.write(content)
        os.replace(part_path, file_path)
    except OSError:
        with contextlib.suppress(OSError):
            os.remove(part_path)
        raise
    return os.path.getsize(file_path)


# =============================================================================
# PHASES
# =============================================================================

async def upload_image(session: AuthSession, job: FileJob, options: EnhanceOptions) -> str:
    """
    Upload the source file and record the remote image id.

    Raises:
        UploadError: all attempts failed
    """
    print(f"[Upload] Uploading: {job.name}")
    form_file = FormFile(
        field=UPLOAD_FIELD,
        path=job.source_path,
        filename=job.name,
        content_type=options.content_type,
    )

    async def attempt(n: int) -> TransportResult:
        result = await session.authorized_request("POST", UPLOAD_PATH, form_file=form_file)
        if result.ok and _first_image_id(result.body) is None:
            return TransportResult(
                error=f"[Upload] Unexpected body: {describe_body(result.body)}",
                status=result.status,
                body=result.body,
            )
        return result

    def log_failure(n: int, result: TransportResult) -> None:
        print(f"[Upload] Error uploading '{job.name}' (attempt {n}): {result.error}")

    outcome = await with_retries(attempt, options.attempts, on_failure=log_failure)
    if not outcome.succeeded:
        raise UploadError(f"Could not upload file: {job.source_path}. Error: {outcome.value.error}")

    job.remote_image_id = _first_image_id(outcome.value.body)
    return job.remote_image_id


async def process_image(session: AuthSession, job: FileJob, options: EnhanceOptions) -> Any:
    """
    Submit the processing job for the uploaded image.

    Raises:
        ProcessError: all attempts failed
    """
    print(f"[Process] Processing: {job.name}")
    payload = [{"original_id": job.remote_image_id, "mod": options.mod}]

    async def attempt(n: int) -> TransportResult:
        result = await session.authorized_request("POST", PROCESS_PATH, json_body=payload)
        if result.ok and not isinstance(result.body, (list, dict)):
            return TransportResult(
                error=f"[Process] Unexpected body: {describe_body(result.body)}",
                status=result.status,
                body=result.body,
            )
        return result

    def log_failure(n: int, result: TransportResult) -> None:
        print(f"[Process] Error processing '{job.name}' (attempt {n}): {result.error}")

    outcome = await with_retries(attempt, options.attempts, on_failure=log_failure)
    if not outcome.succeeded:
        raise ProcessError(f"Could not process file: {job.source_path}. Error: {outcome.value.error}")

    return outcome.value.body


async def poll_until_finished(
    session: AuthSession,
    job: FileJob,
    options: EnhanceOptions,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Poll processing state every progress_interval_sec until 'finished'.

    A failed poll counts as "not finished yet" and never ends polling early.

    Raises:
        PollTimeoutError: still not finished after attempts * 3 polls
    """
    payload = {"ids": [job.remote_image_id]}
    last_body: Any = None

    async def attempt(n: int) -> TransportResult:
        nonlocal last_body
        result = await session.authorized_request("POST", IN_PROCESS_PATH, json_body=payload)
        if result.ok:
            last_body = result.body
            job.remote_status = _status_of(result.body)
        return result

    def is_finished(result: TransportResult) -> bool:
        return result.ok and _status_of(result.body) == FINISHED

    def log_failure(n: int, result: TransportResult) -> None:
        if result.ok:
            print(f"[Poll] Status for '{job.name}': {_status_of(result.body)} ({n})")
        else:
            print(f"[Poll] Error checking progress for '{job.name}' (attempt {n}): {result.error}")

    outcome = await with_retries(
        attempt,
        options.poll_attempts,
        is_finished,
        interval_sec=options.progress_interval_sec,
        on_failure=log_failure,
        sleep=sleep,
    )
    if not outcome.succeeded:
        last_error = outcome.value.error if outcome.value is not None else None
        message = (
            f"Timeout before file processing finished: {job.source_path}. "
            f"Last response body:\n\n{describe_body(last_body)}\n\n"
        )
        if last_error:
            message += f"Last poll error: {last_error}\n\n"
        message += (
            "If the last status is still 'processing', consider using a longer --progressInterval."
        )
        raise PollTimeoutError(message, details={"last_body": last_body})

    return outcome.value.body


async def download_result(
    session: AuthSession,
    job: FileJob,
    options: EnhanceOptions,
    poll_body: Any,
) -> int:
    """
    Fetch the enhanced image from its pre-signed URL and write it to dest_path.

    Fetch, write and verification are retried together.

    Raises:
        DownloadError: no download URL for the selected version, or all
            attempts failed
    """
    url = _download_url_for(poll_body, options.version)
    if url is None:
        raise DownloadError(
            f"No download URL for version '{options.version}' of file: {job.source_path}. "
            f"Body: {describe_body(poll_body)}"
        )
    job.download_url = url
    print(f"[Download] Downloading: {job.name}")

    written = 0

    async def attempt(n: int) -> Optional[str]:
        nonlocal written
        # Pre-signed URL; no bearer token
        result = await session.transport("GET", url, raw=True, timeout_sec=options.download_timeout_sec)
        if not result.ok:
            side = "Connection" if result.failure == CONNECTION_FAILURE else "Read"
            return f"Request error [{side}] {url}: {result.error}"
        if result.status != 200:
            return f"Unexpected response. Status code: {result.status}. {url}"

        try:
            written = write_atomically(job.dest_path, result.body)
        except OSError as e:
            return f"Error writing file '{job.dest_path}': {e}"

        if not os.access(job.dest_path, os.R_OK):
            return f"File not accessible after write: {job.dest_path}"
        return None

    def log_failure(n: int, error: Optional[str]) -> None:
        print(f"[Download] Error downloading '{job.name}' (attempt {n}): {error}")

    outcome = await with_retries(attempt, options.attempts, lambda error: error is None, on_failure=log_failure)
    if not outcome.succeeded:
        raise DownloadError(f"Could not download file: {job.source_path}. Error: {outcome.value}")

    return written


# =============================================================================
# PIPELINE
# =============================================================================

async def enhance_file(session: AuthSession, job: FileJob, options: EnhanceOptions) -> FileOutcome:
    """
    Run one file through all four phases.

    Phase failures become an unsuccessful FileOutcome. AuthError is not
    caught: a failed refresh is fatal to the whole run.
    """
    try:
        await upload_image(session, job, options)
        await process_image(session, job, options)
        poll_body = await poll_until_finished(session, job, options)
        written = await download_result(session, job, options, poll_body)
    except AuthError:
        raise
    except EnhanceError as e:
        return FileOutcome(name=job.name, success=False, error=e.message, error_kind=e.kind)

    return FileOutcome(name=job.name, success=True, bytes_written=written)
