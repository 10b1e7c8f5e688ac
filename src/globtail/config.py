from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, List, Optional, Pattern
import re
import yaml

from .tailer import END


@dataclass
class TailSettings:
    start: int = END
    symlink_check_interval: float = 1.0
    missing_file_check_interval: float = 1.0
    poll_interval: Optional[float] = None  # None: native notification (watchdog)


@dataclass
class GlobSpec:
    pattern: str
    interval: float = 60.0
    exclude: List[Pattern[str]] = field(default_factory=list)


@dataclass
class Config:
    version: int = 1
    tail: TailSettings = field(default_factory=TailSettings)
    globs: List[GlobSpec] = field(default_factory=list)


def parse_start(value: Any) -> int:
    """'end' (or None) follows new data only; an integer is a byte offset."""
    if value is None or (isinstance(value, str) and value.strip().lower() == "end"):
        return END
    try:
        pos = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid start position {value!r}: expected 'end' or a byte offset")
    if pos < 0:
        raise ValueError(f"Invalid start position {value!r}: byte offset must be >= 0")
    return pos


def _interval(section: str, data: dict, key: str, default: Optional[float], allow_none: bool = False) -> Optional[float]:
    value = data.get(key, default)
    if value is None and allow_none:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"'{section}.{key}' must be a number of seconds, got {value!r}")
    if seconds <= 0:
        raise ValueError(f"'{section}.{key}' must be positive, got {value!r}")
    return seconds


def load_config(path: str) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            f"Please ensure the file exists or specify a different config with --config"
        )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in configuration file {path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping at the top level")

    tail_data = data.get("tail", {}) or {}
    tail = TailSettings(
        start=parse_start(tail_data.get("start", "end")),
        symlink_check_interval=_interval("tail", tail_data, "symlink_check_interval", 1.0),
        missing_file_check_interval=_interval("tail", tail_data, "missing_file_check_interval", 1.0),
        poll_interval=_interval("tail", tail_data, "poll_interval", None, allow_none=True),
    )

    globs: List[GlobSpec] = []
    for idx, g in enumerate(data.get("globs", []) or [], start=1):
        if isinstance(g, str):
            g = {"pattern": g}
        if not isinstance(g, dict) or "pattern" not in g:
            raise ValueError(f"Glob #{idx} is missing required field 'pattern'")

        try:
            exclude = [re.compile(p) for p in g.get("exclude", []) or []]
        except re.error as e:
            raise ValueError(
                f"Invalid exclude regex for glob '{g['pattern']}': {e}\n"
                f"Please check the exclude patterns in your configuration"
            )

        globs.append(
            GlobSpec(
                pattern=str(g["pattern"]),
                interval=_interval(f"globs[{idx}]", g, "interval", 60.0),
                exclude=exclude,
            )
        )

    return Config(version=int(data.get("version", 1)), tail=tail, globs=globs)
