#!/usr/bin/env python3
"""
letsenhance Run Configuration

EnhanceOptions is immutable for the duration of a run. It can be built from
CLI flags or from a JSON config file whose keys mirror the long option names:

{
  "type": "PNG",
  "version": "boring",
  "mode": "Auto",
  "maxParallel": 8,
  "attempts": 6,
  "progressInterval": 30,
  "stopOnFirstFailedFile": true,
  "apiBase": "https://letsenhance.io",
  "downloadTimeout": 20
}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


DEFAULT_API_BASE = "https://letsenhance.io"

OUTPUT_TYPES = ("PNG", "JPEG")
VERSIONS = ("magic", "boring", "color-enhance", "tone-enhance")

# Polling gets a larger budget than the other phases
POLL_ATTEMPTS_FACTOR = 3


def parse_bool(value: Any) -> bool:
    """Accept true/false in the spellings a CLI user or JSON file would use."""
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("true", "1", "yes", "y"):
        return True
    if s in ("false", "0", "no", "n"):
        return False
    raise ValueError(f"Expected true or false, got {value!r}")


@dataclass(frozen=True)
class EnhanceOptions:
    """Options shared by every file of a run."""
    output_type: str = "PNG"
    version: str = "boring"
    mode: str = "Auto"

    max_parallel: int = 10
    attempts: int = 6
    progress_interval_sec: float = 15
    stop_on_first_failed_file: bool = True

    api_base: str = DEFAULT_API_BASE
    download_timeout_sec: float = 20
    show_progress: bool = True

    def __post_init__(self):
        if self.output_type not in OUTPUT_TYPES:
            raise ValueError(f"output_type must be one of {OUTPUT_TYPES}, got {self.output_type!r}")
        if self.version not in VERSIONS:
            raise ValueError(f"version must be one of {VERSIONS}, got {self.version!r}")
        if not self.mode:
            raise ValueError("mode must not be empty")
        for name in ("max_parallel", "attempts"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        for name in ("progress_interval_sec", "download_timeout_sec"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")

    @property
    def mod(self) -> str:
        """Transformation descriptor sent with the process call."""
        return f"{self.version} {self.mode} {self.output_type}"

    @property
    def content_type(self) -> str:
        return "image/png" if self.output_type == "PNG" else "image/jpeg"

    @property
    def poll_attempts(self) -> int:
        return self.attempts * POLL_ATTEMPTS_FACTOR


# Config-file key -> EnhanceOptions field, with the converter for its value
_FILE_KEYS = {
    "type": ("output_type", str),
    "version": ("version", str),
    "mode": ("mode", str),
    "maxParallel": ("max_parallel", int),
    "attempts": ("attempts", int),
    "progressInterval": ("progress_interval_sec", float),
    "stopOnFirstFailedFile": ("stop_on_first_failed_file", parse_bool),
    "apiBase": ("api_base", str),
    "downloadTimeout": ("download_timeout_sec", float),
}


def options_kwargs_from_mapping(data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Translate config-file keys into EnhanceOptions keyword arguments.

    Raises:
        ValueError: unknown key or unconvertible value
    """
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in _FILE_KEYS:
            raise ValueError(f"Unknown config key: {key!r}")
        field_name, convert = _FILE_KEYS[key]
        kwargs[field_name] = convert(value)
    return kwargs


def load_config_file(path: str) -> dict[str, Any]:
    """Read a JSON config file into EnhanceOptions keyword arguments."""
    cfg_path = Path(path)
    with cfg_path.open("r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return options_kwargs_from_mapping(data)
