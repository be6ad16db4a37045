#!/usr/bin/env python3
"""
letsenhance Batch Driver

Enhances every non-hidden file of a source directory in fixed-size windows.

- Files of a window run concurrently through single_enhance.enhance_file()
- Outcomes are collected in launch order, not completion order
- A failed file either aborts the run (stop_on_first_failed_file) or is
  logged and skipped
- On abort or auth failure, whatever is still running in the window is
  cancelled and awaited before the run returns; later windows never start

State Machine:
    IDLE → RUNNING → COMPLETED
              ↓
           ABORTED
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Sequence, TypeVar

from tqdm import tqdm

from enhance_config import EnhanceOptions
from enhance_errors import AuthError, BatchAbortedError, DirectoryError
from enhance_session import AuthSession
from single_enhance import FileJob, FileOutcome, enhance_file


T = TypeVar("T")

Pipeline = Callable[[AuthSession, FileJob, EnhanceOptions], Awaitable[FileOutcome]]


# =============================================================================
# GLOBALS AND SHUTDOWN HANDLING
# =============================================================================

shutdown_flag = False


def request_shutdown() -> None:
    global shutdown_flag
    shutdown_flag = True


def reset_shutdown() -> None:
    global shutdown_flag
    shutdown_flag = False


def _signal_handler(sig, frame):
    print("\n[Shutdown] Interrupt received. Finishing the current window...")
    request_shutdown()


def install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def _monotonic() -> float:
    return time.monotonic()


# =============================================================================
# DIRECTORIES
# =============================================================================

def is_hidden(name: str) -> bool:
    return name.startswith(".")


def list_source_files(source_dir: str) -> list[str]:
    """
    List the enhanceable files of source_dir in sorted order.

    Hidden entries and subdirectories are skipped.

    Raises:
        DirectoryError: the directory cannot be read
    """
    try:
        names = os.listdir(source_dir)
    except OSError as e:
        raise DirectoryError(f"Error reading directory '{source_dir}': {e}")

    return sorted(
        name for name in names
        if not is_hidden(name) and os.path.isfile(os.path.join(source_dir, name))
    )


def ensure_dest_dir(dest_dir: str) -> None:
    """Create dest_dir and its parents if needed."""
    try:
        os.makedirs(dest_dir, exist_ok=True)
    except OSError as e:
        raise DirectoryError(f"Could not access the destination directory '{dest_dir}': {e}")


def partition_windows(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive windows of at most size elements."""
    if size <= 0:
        raise ValueError(f"Window size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# =============================================================================
# RUN REPORT
# =============================================================================

@dataclass
class RunReport:
    """Per-file outcomes of a run, in launch order."""
    total_files: int = 0
    outcomes: list[FileOutcome] = field(default_factory=list)
    windows_run: int = 0
    aborted: bool = False
    interrupted: bool = False
    elapsed_sec: float = 0.0

    @property
    def succeeded(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failed(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if not o.success]


# =============================================================================
# BATCH EXECUTION
# =============================================================================

async def _settle(tasks: list[asyncio.Future]) -> None:
    """Cancel whatever is still running and wait for every task to end."""
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def enhance_files(
    session: AuthSession,
    names: Sequence[str],
    source_dir: str,
    dest_dir: str,
    options: EnhanceOptions,
    *,
    pipeline: Pipeline = enhance_file,
) -> RunReport:
    """
    Enhance the named files of source_dir into dest_dir, window by window.

    Returns:
        RunReport for a completed (or interrupted) run

    Raises:
        AuthError: the session holds no tokens, or a refresh failed mid-run
        BatchAbortedError: a file failed with stop_on_first_failed_file set
    """
    if not session.authenticated:
        raise AuthError("Missing access/refresh tokens. Login or set the tokens manually beforehand.")

    names = [name for name in names if not is_hidden(name)]
    report = RunReport(total_files=len(names))
    pbar = tqdm(total=len(names), desc="Enhancing", unit="file", disable=not options.show_progress)
    start = _monotonic()

    try:
        for window in partition_windows(names, options.max_parallel):
            if shutdown_flag:
                print("[Shutdown] Not starting further windows.")
                report.interrupted = True
                break

            report.windows_run += 1
            jobs = [FileJob.for_name(source_dir, dest_dir, name) for name in window]
            tasks = [asyncio.ensure_future(pipeline(session, job, options)) for job in jobs]

            try:
                for task in tasks:
                    outcome = await task
                    report.outcomes.append(outcome)
                    pbar.update(1)

                    if outcome.success:
                        continue

                    print(f"[Batch] {outcome.error}")
                    if options.stop_on_first_failed_file:
                        report.aborted = True
                        raise BatchAbortedError(
                            "File processing failed. Stopping to preserve actions.",
                            report=report,
                            file_error=outcome.error,
                        )
            finally:
                await _settle(tasks)
    except AuthError as e:
        report.aborted = True
        e.report = report
        raise
    finally:
        pbar.close()
        report.elapsed_sec = _monotonic() - start

    return report


async def enhance_dir(
    session: AuthSession,
    source_dir: str,
    dest_dir: str,
    options: EnhanceOptions,
    *,
    pipeline: Pipeline = enhance_file,
) -> RunReport:
    """
    Enhance every non-hidden file of source_dir into dest_dir.

    Fails before any network call if the session is not authenticated or a
    directory problem occurs.
    """
    if not session.authenticated:
        raise AuthError("Missing access/refresh tokens. Login or set the tokens manually beforehand.")

    names = list_source_files(source_dir)
    ensure_dest_dir(dest_dir)

    print(f"[Batch] Enhancing {len(names)} images...")
    return await enhance_files(session, names, source_dir, dest_dir, options, pipeline=pipeline)


# =============================================================================
# SUMMARY AND OVERVIEW
# =============================================================================

def print_summary(report: RunReport) -> None:
    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Total files:           {report.total_files}")
    print(f"Enhanced:              {len(report.succeeded)}")
    print(f"Failed:                {len(report.failed)}")
    print(f"Not attempted:         {report.total_files - len(report.outcomes)}")
    print(f"Elapsed time:          {report.elapsed_sec:.2f}s")
    if report.aborted:
        print("Run aborted after a failed file.")
    if report.interrupted:
        print("Run interrupted before all windows were started.")
    print("=" * 72)


def write_overview(
    *,
    report: RunReport,
    options: EnhanceOptions,
    source_dir: str,
    dest_dir: str,
    overview_path: str,
) -> str:
    """Write JSON overview report."""
    failures = report.failed
    kind_counter = Counter(o.error_kind for o in failures)

    overview = {
        "script_inputs": {
            "source_dir": source_dir,
            "dest_dir": dest_dir,
            "type": options.output_type,
            "version": options.version,
            "mode": options.mode,
            "max_parallel": options.max_parallel,
            "attempts": options.attempts,
            "progress_interval_sec": options.progress_interval_sec,
            "stop_on_first_failed_file": options.stop_on_first_failed_file,
        },
        "summary": {
            "total_files": report.total_files,
            "enhanced": len(report.succeeded),
            "failed": len(failures),
            "not_attempted": report.total_files - len(report.outcomes),
            "windows_run": report.windows_run,
            "aborted": report.aborted,
            "interrupted": report.interrupted,
            "written_mb": round(sum(o.bytes_written for o in report.succeeded) / 1e6, 3),
            "elapsed_sec": round(report.elapsed_sec, 3),
        },
        "error_breakdown": [
            {"kind": kind, "count": cnt}
            for kind, cnt in kind_counter.most_common()
        ],
        "failures": [
            {"name": o.name, "kind": o.error_kind, "error": o.error}
            for o in failures
        ],
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(overview_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w") as f:
        json.dump(overview, f, indent=2)

    return str(out.resolve())
