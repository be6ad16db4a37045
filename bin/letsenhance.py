#!/usr/bin/env python3
"""
letsenhance Command Line

Enhance images in a directory using letsenhance.io.

Usage:
    letsenhance [options] email password /path/source /path/dest

Exit codes:
    0 success, 1 unexpected failure, 2 usage error, 3 login/refresh failure,
    4 directory error, 5 aborted after a failed file, 130 interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from enhance_batch import RunReport, enhance_dir, install_signal_handlers, print_summary, write_overview
from enhance_config import OUTPUT_TYPES, VERSIONS, EnhanceOptions, load_config_file, parse_bool
from enhance_errors import (
    EXIT_AUTH,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_USAGE,
    AuthError,
    BatchAbortedError,
    EnhanceError,
)
from enhance_session import AuthSession
from enhance_transport import HttpTransport


USAGE = "letsenhance [options] email password /path/source /path/dest"

EPILOG = """
Options:
  --type            PNG (default) or JPEG; PNG yields a larger file that keeps its
                    quality across subsequent alterations (JPEG does not)
  --version         boring (default, for everything but photographs), magic (for
                    photographs), color-enhance, tone-enhance
  --mode            Auto (default); no other transformation mode is supported
  --maxParallel     10 (default); how many files to process at a time; use a lower
                    value if you encounter frequent issues
  --attempts        6 (default); how many times to attempt an operation after a
                    'soft' failure
  --progressInterval
                    15 (default); seconds to wait between progress checks; use a
                    greater value if an error message suggests it (e.g. 30)
  --stopOnFirstFailedFile
                    true (default) or false; stop the entire run on a 'hard'
                    failure to avoid wasting available transformations

Example with options:
  letsenhance --type PNG --version boring --maxParallel 8 --progressInterval 30 \\
      joe.average@domain.com joespassword /path/source /path/dest

Notes:
  The options must be placed before the email string.
  If the paths or password contain spaces, use quotes.
  Make sure there are only images in the source directory; other files will
  fail and eventually halt the run. Hidden files starting with '.' are ignored.
"""

LOGIN_FAILED_HINT = (
    "Login failed. Verify your email, password and internet connection.\n"
    "If you can login on letsenhance.io, but not here, please create an issue at "
    "https://github.com/kesarion/letsenhance"
)


@dataclass(frozen=True)
class CliArgs:
    email: str
    password: str
    source_dir: str
    dest_dir: str
    options: EnhanceOptions
    overview_path: Optional[str] = None


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="letsenhance",
        usage=USAGE,
        description="Enhance images in a directory using letsenhance.io",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )

    p.add_argument("email")
    p.add_argument("password")
    p.add_argument("source_dir")
    p.add_argument("dest_dir")

    # Defaults stay None so a config file can fill in what the CLI omits
    p.add_argument("--type", dest="output_type", type=str.upper, choices=OUTPUT_TYPES, default=None)
    p.add_argument("--version", dest="version", choices=VERSIONS, default=None)
    p.add_argument("--mode", dest="mode", type=str, default=None)
    p.add_argument("--maxParallel", dest="max_parallel", type=int, default=None)
    p.add_argument("--attempts", dest="attempts", type=int, default=None)
    p.add_argument("--progressInterval", dest="progress_interval_sec", type=int, default=None)
    p.add_argument("--stopOnFirstFailedFile", dest="stop_on_first_failed_file", type=parse_bool, default=None)

    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--overview", dest="overview_path", type=str, default=None,
                   help="Write a JSON run overview to this path")
    p.add_argument("--no_progress", action="store_true", help="Disable the progress bar")

    return p


def wants_help(argv: list[str]) -> bool:
    return "--help" in argv or "-h" in argv or "help" in argv


def parse_args(argv: Optional[list[str]] = None) -> CliArgs:
    """Parse command line arguments and an optional JSON config file."""
    p = build_parser()
    args = p.parse_args(argv)

    if "@" not in args.email:
        p.error(
            "Please enter a valid email and/or make sure the argument order is correct:\n" + USAGE
        )

    kwargs: dict[str, Any] = {}
    if args.config:
        try:
            kwargs.update(load_config_file(args.config))
        except (OSError, ValueError) as e:
            p.error(f"Could not load config file {args.config}: {e}")

    for name in (
        "output_type",
        "version",
        "mode",
        "max_parallel",
        "attempts",
        "progress_interval_sec",
        "stop_on_first_failed_file",
    ):
        value = getattr(args, name)
        if value is not None:
            kwargs[name] = value
    if args.no_progress:
        kwargs["show_progress"] = False

    try:
        options = EnhanceOptions(**kwargs)
    except ValueError as e:
        p.error(str(e))

    return CliArgs(
        email=args.email,
        password=args.password,
        source_dir=args.source_dir,
        dest_dir=args.dest_dir,
        options=options,
        overview_path=args.overview_path,
    )


async def run(cli: CliArgs) -> int:
    """Log in, enhance the source directory and report. Returns the exit code."""
    options = cli.options
    connector = aiohttp.TCPConnector(limit=max(10, options.max_parallel * 2))
    report: Optional[RunReport] = None
    code = EXIT_OK

    async with aiohttp.ClientSession(
        connector=connector,
        headers={"User-Agent": "letsenhance/1.0"},
    ) as http:
        session = AuthSession(HttpTransport(http), api_base=options.api_base)

        try:
            await session.login(cli.email, cli.password)
        except AuthError as e:
            print(f"[Login] {e}")
            print(LOGIN_FAILED_HINT)
            return EXIT_AUTH

        try:
            report = await enhance_dir(session, cli.source_dir, cli.dest_dir, options)
        except BatchAbortedError as e:
            report = e.report
            print(f"Error while processing: {e}")
            code = e.exit_code
        except AuthError as e:
            report = e.report
            print(f"Error while processing: {e}")
            code = e.exit_code
        except EnhanceError as e:
            print(f"Error while processing: {e}")
            code = e.exit_code

    if report is not None:
        print_summary(report)
        if cli.overview_path:
            try:
                path = write_overview(
                    report=report,
                    options=options,
                    source_dir=cli.source_dir,
                    dest_dir=cli.dest_dir,
                    overview_path=cli.overview_path,
                )
                print(f"[Report] Overview: {path}")
            except OSError as e:
                print(f"[Report] Failed: {e}")

        if code == EXIT_OK and report.interrupted:
            code = EXIT_INTERRUPTED

    if code == EXIT_OK:
        print("Processing complete!")
    return code


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv

    if wants_help(argv):
        build_parser().print_help()
        return EXIT_OK

    try:
        cli = parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    install_signal_handlers()
    return asyncio.run(run(cli))


def console_main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    console_main()
