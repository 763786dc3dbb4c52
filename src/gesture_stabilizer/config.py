"""Engine configuration, loadable from YAML.

Example ``stabilizer.yml``:

    mode: LOCAL
    stability_threshold_ms: 1200
    scope: SENTENCE
    language: Auto
    analyzer_url: http://localhost:9000/analyze
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from gesture_stabilizer.motion import (
    DEFAULT_STABILITY_MS,
    MAX_STABILITY_MS,
    MIN_STABILITY_MS,
    clamp_stability,
)
from gesture_stabilizer.remote import RecognitionScope
from gesture_stabilizer.segmentation import TieBreak

logger = logging.getLogger("gesture_stabilizer.config")


class ConfigError(ValueError):
    """Invalid or unreadable configuration."""


class Mode(Enum):
    LOCAL = "LOCAL"
    CLOUD = "CLOUD"


def _coerce_enum(enum_cls, value, key: str):
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for candidate in (text, text.upper(), text.lower()):
        try:
            return enum_cls(candidate)
        except ValueError:
            continue
    allowed = ", ".join(m.value for m in enum_cls)
    raise ConfigError(f"{key} must be one of {allowed}, got {value!r}")


@dataclass
class EngineConfig:
    mode: Mode = Mode.LOCAL
    stability_threshold_ms: float = DEFAULT_STABILITY_MS
    scope: RecognitionScope = RecognitionScope.SENTENCE
    language: str = "Auto"
    tie_break: TieBreak = TieBreak.FIRST_SEEN
    model_path: str = "gesture_recognizer.task"
    analyzer_url: Optional[str] = None
    analyzer_timeout_s: float = 15.0
    camera_index: int = 0

    def __post_init__(self):
        self.mode = _coerce_enum(Mode, self.mode, "mode")
        self.scope = _coerce_enum(RecognitionScope, self.scope, "scope")
        self.tie_break = _coerce_enum(TieBreak, self.tie_break, "tie_break")

        try:
            threshold = float(self.stability_threshold_ms)
        except (TypeError, ValueError):
            raise ConfigError(
                f"stability_threshold_ms must be a number, got {self.stability_threshold_ms!r}"
            ) from None
        clamped = clamp_stability(threshold)
        if clamped != threshold:
            logger.warning(
                "stability_threshold_ms %.0f outside [%.0f, %.0f], using %.0f",
                threshold, MIN_STABILITY_MS, MAX_STABILITY_MS, clamped,
            )
        self.stability_threshold_ms = clamped

        try:
            timeout = float(self.analyzer_timeout_s)
        except (TypeError, ValueError):
            raise ConfigError(
                f"analyzer_timeout_s must be a number, got {self.analyzer_timeout_s!r}"
            ) from None
        if timeout <= 0:
            raise ConfigError("analyzer_timeout_s must be positive")
        self.analyzer_timeout_s = timeout

    def update(self, **changes: Any) -> EngineConfig:
        """Return a validated copy with ``changes`` applied. Unknown keys raise."""
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, path: str | Path) -> EngineConfig:
        """Load configuration from a YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read config {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        return cls.from_dict(data)

    def to_yaml(self, path: str | Path):
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
