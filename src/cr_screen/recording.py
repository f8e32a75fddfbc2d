"""Locating and validating the recording produced by the recorder."""

from __future__ import annotations

import logging
import stat
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable

import av
import av.error

from .event_log import EventLog
from .settings import DEFAULT_MIN_RECORDING_BYTES
from .shared_state import SharedState, StoreUnavailable


logger = logging.getLogger(__name__)


class RecordingError(RuntimeError):
    """Base class for recording resolution failures."""


class RecordingNotFound(RecordingError):
    """Raised when no recording pointer is available."""


class RecordingFileMissing(RecordingError):
    """Raised when the pointer names a file that no longer exists."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"Recording file not found at {path}")
        self.path = path


class RecordingTooSmall(RecordingError):
    """Raised when the recording is too small to contain usable media."""

    def __init__(self, path: Path, size_bytes: int, minimum_bytes: int) -> None:
        super().__init__(
            f"Recording at {path} is {size_bytes} bytes; at least {minimum_bytes} bytes expected"
        )
        self.path = path
        self.size_bytes = size_bytes
        self.minimum_bytes = minimum_bytes


class RecordingInvalid(RecordingError):
    """Raised by :meth:`RecordingLocator.verify` when the media is unusable."""


@dataclass(frozen=True, slots=True)
class MediaInspection:
    duration_s: float
    video_tracks: int

    @property
    def valid(self) -> bool:
        return self.duration_s > 0 and self.video_tracks > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "duration_s": round(self.duration_s, 3),
            "video_tracks": self.video_tracks,
            "valid": self.valid,
        }


@dataclass(frozen=True, slots=True)
class Recording:
    """A recording file that passed the existence and size checks."""

    path: Path
    size_bytes: int
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    def to_dict(self) -> dict[str, object]:
        return {
            "path": str(self.path),
            "name": self.name,
            "size_bytes": self.size_bytes,
            "resolved_at": self.resolved_at.isoformat(),
        }


def _container_duration(container: av.container.InputContainer) -> float:
    duration = getattr(container, "duration", None)
    if duration:
        return float(duration) / float(av.time_base)
    longest = 0.0
    for stream in container.streams:
        if stream.duration is None or stream.time_base is None:
            continue
        longest = max(longest, float(stream.duration * stream.time_base))
    return longest


def inspect_media(path: Path | str) -> MediaInspection:
    """Open ``path`` with PyAV and report its duration and video track count."""

    with av.open(str(path), mode="r") as container:
        return MediaInspection(
            duration_s=max(0.0, _container_duration(container)),
            video_tracks=len(container.streams.video),
        )


_MEDIA_ERRORS = (av.error.FFmpegError, OSError, ValueError)


class RecordingLocator:
    """Resolve the recording named by the shared recording pointer.

    Media integrity is checked in the background and only reported through
    logging; :meth:`resolve_last_recording` never waits for it. Use
    :meth:`verify` when a blocking check is required.
    """

    def __init__(
        self,
        shared_state: SharedState,
        *,
        min_size_bytes: int = DEFAULT_MIN_RECORDING_BYTES,
        event_log: EventLog | None = None,
        inspector: Callable[[Path], MediaInspection] = inspect_media,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if min_size_bytes < 0:
            raise ValueError("min_size_bytes must not be negative")
        self._shared = shared_state
        self._min_size_bytes = int(min_size_bytes)
        self._event_log = event_log
        self._inspector = inspector
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="cr-screen-inspect"
        )
        self._lock = Lock()
        self._last_inspection: Future[MediaInspection | None] | None = None

    @property
    def min_size_bytes(self) -> int:
        return self._min_size_bytes

    @property
    def last_inspection(self) -> Future[MediaInspection | None] | None:
        """Future of the most recent background inspection, if any."""

        with self._lock:
            return self._last_inspection

    def resolve_last_recording(self) -> Recording:
        # Read the pointer once; later rewrites do not affect this call.
        try:
            raw_path = self._shared.last_recording_path()
        except StoreUnavailable as exc:
            logger.error("Shared state unavailable while resolving recording: %s", exc)
            raise RecordingNotFound("Shared state is unavailable") from exc
        if raw_path is None:
            logger.error("No recording path found in shared state")
            self._record("not_found", "No recording path found.")
            raise RecordingNotFound("No recording path found in shared state")

        path = Path(raw_path)
        try:
            info = path.stat()
        except OSError:
            info = None
        if info is None or not stat.S_ISREG(info.st_mode):
            logger.error("Recording file not found at %s; pointer is stale", path)
            self._record("file_missing", "Recording pointer is stale.", path=str(path))
            raise RecordingFileMissing(path)

        size_bytes = int(info.st_size)
        logger.info("Found recording at %s (%.2f MB)", path, size_bytes / (1024 * 1024))
        if size_bytes < self._min_size_bytes:
            logger.error("Recording file is too small (%d bytes), likely empty", size_bytes)
            self._record(
                "too_small",
                "Recording file is too small.",
                path=str(path),
                size_bytes=size_bytes,
            )
            raise RecordingTooSmall(path, size_bytes, self._min_size_bytes)

        recording = Recording(path=path, size_bytes=size_bytes)
        self._schedule_inspection(recording)
        self._record("resolved", "Recording resolved.", path=str(path), size_bytes=size_bytes)
        return recording

    def verify(self, recording: Recording) -> MediaInspection:
        """Inspect ``recording`` synchronously, raising when it is unusable."""

        try:
            inspection = self._inspector(recording.path)
        except _MEDIA_ERRORS as exc:
            raise RecordingInvalid(f"Unable to read media at {recording.path}: {exc}") from exc
        if not inspection.valid:
            raise RecordingInvalid(
                f"Recording at {recording.path} has duration {inspection.duration_s:.2f}s "
                f"and {inspection.video_tracks} video track(s)"
            )
        return inspection

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Background diagnostics
    # ------------------------------------------------------------------
    def _schedule_inspection(self, recording: Recording) -> None:
        try:
            future = self._executor.submit(self._run_inspection, recording)
        except RuntimeError as exc:
            logger.warning("Unable to schedule media inspection: %s", exc)
            return
        with self._lock:
            self._last_inspection = future

    def _run_inspection(self, recording: Recording) -> MediaInspection | None:
        try:
            inspection = self._inspector(recording.path)
        except _MEDIA_ERRORS as exc:
            logger.error("Error checking recording %s: %s", recording.path, exc)
            self._record("inspection_failed", "Recording could not be inspected.", path=str(recording.path))
            return None
        logger.info(
            "Recording details: duration %.2fs, video tracks: %d",
            inspection.duration_s,
            inspection.video_tracks,
        )
        if inspection.valid:
            logger.info("Recording is valid with proper duration and tracks")
        else:
            logger.warning(
                "Recording may be invalid: duration %.2fs, video tracks: %d",
                inspection.duration_s,
                inspection.video_tracks,
            )
        self._record(
            "inspected",
            "Recording inspected.",
            path=str(recording.path),
            **inspection.to_dict(),
        )
        return inspection

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record("recording", event, message, **metadata)


__all__ = [
    "MediaInspection",
    "Recording",
    "RecordingError",
    "RecordingFileMissing",
    "RecordingInvalid",
    "RecordingLocator",
    "RecordingNotFound",
    "RecordingTooSmall",
    "inspect_media",
]
