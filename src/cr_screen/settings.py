"""Host configuration structures."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import json
import math
import os


SHARED_STATE_DIR_ENV = "CRSCREEN_SHARED_STATE_DIR"
UPLOAD_URL_ENV = "CRSCREEN_UPLOAD_URL"

DEFAULT_MIN_RECORDING_BYTES = 10_000


class StreamQuality(str, Enum):
    """Capture quality requested from the recorder at session start."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def description(self) -> str:
        return _QUALITY_DESCRIPTIONS[self]

    @property
    def compression_quality(self) -> float:
        return {"low": 0.3, "medium": 0.6, "high": 0.85}[self.value]

    @property
    def frame_skip(self) -> int:
        return {"low": 2, "medium": 1, "high": 0}[self.value]

    @property
    def downsize_factor(self) -> float:
        return {"low": 0.6, "medium": 0.8, "high": 1.0}[self.value]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.value,
            "label": self.label,
            "description": self.description,
            "compression_quality": self.compression_quality,
            "frame_skip": self.frame_skip,
            "downsize_factor": self.downsize_factor,
        }


_QUALITY_DESCRIPTIONS = {
    StreamQuality.LOW: "Ultra-low latency, minimal bandwidth",
    StreamQuality.MEDIUM: "Balanced quality and responsiveness",
    StreamQuality.HIGH: "Maximum clarity, best visuals",
}


@dataclass(slots=True)
class HostSettings:
    """User configurable options for the host process."""

    shared_state_dir: str = "data/shared"
    poll_interval_s: float = 1.0
    min_recording_bytes: int = DEFAULT_MIN_RECORDING_BYTES
    stream_quality: StreamQuality = StreamQuality.MEDIUM
    upload_url: str | None = None
    upload_timeout_s: float = 30.0
    event_log_path: str | None = "data/events.jsonl"

    def __post_init__(self) -> None:
        try:
            interval = float(self.poll_interval_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Poll interval must be numeric") from exc
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("Poll interval must be a positive number of seconds")
        self.poll_interval_s = interval
        if int(self.min_recording_bytes) < 0:
            raise ValueError("Minimum recording size must not be negative")
        self.min_recording_bytes = int(self.min_recording_bytes)
        if float(self.upload_timeout_s) <= 0:
            raise ValueError("Upload timeout must be positive")
        self.upload_timeout_s = float(self.upload_timeout_s)
        if not isinstance(self.stream_quality, StreamQuality):
            try:
                self.stream_quality = StreamQuality(str(self.stream_quality).strip().lower())
            except ValueError as exc:
                raise ValueError("Stream quality must be one of low, medium or high") from exc
        if isinstance(self.upload_url, str):
            self.upload_url = self.upload_url.strip() or None
        if not str(self.shared_state_dir).strip():
            raise ValueError("Shared state directory must not be empty")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["stream_quality"] = self.stream_quality.value
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "HostSettings":
        known = {name for name in cls.__dataclass_fields__}
        data = {key: value for key, value in payload.items() if key in known}
        return cls(**data)

    def with_environment(self, environ: Mapping[str, str] | None = None) -> "HostSettings":
        """Return a copy with ``CRSCREEN_*`` environment overrides applied."""

        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        shared_dir = env.get(SHARED_STATE_DIR_ENV)
        if shared_dir:
            overrides["shared_state_dir"] = shared_dir
        upload_url = env.get(UPLOAD_URL_ENV)
        if upload_url:
            overrides["upload_url"] = upload_url
        if not overrides:
            return self
        return HostSettings.from_dict({**self.to_dict(), **overrides})


class HostSettingsStore:
    """Read-only JSON source for :class:`HostSettings`.

    The file is edited by the operator; a missing file means defaults.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> HostSettings:
        if not self._path.exists():
            return HostSettings()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid host settings JSON") from exc
        if not isinstance(raw, Mapping):
            raise ValueError("Host settings must be a JSON object")
        return HostSettings.from_dict(raw)


__all__ = [
    "DEFAULT_MIN_RECORDING_BYTES",
    "HostSettings",
    "HostSettingsStore",
    "SHARED_STATE_DIR_ENV",
    "StreamQuality",
    "UPLOAD_URL_ENV",
]
