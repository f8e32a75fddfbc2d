"""Cross-process key-value area shared between the host and the recorder."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Protocol, Union


logger = logging.getLogger(__name__)


SharedValue = Union[datetime, str, None]


class StoreUnavailable(RuntimeError):
    """Raised when the shared storage area cannot be reached."""


class SharedKey(str, Enum):
    """Keys exchanged through the shared storage area."""

    SESSION_START_TIME = "session-start-time"
    PAIRING_CODE = "pairing-code"
    STREAM_QUALITY = "stream-quality"
    LAST_RECORDING_PATH = "last-recording-path"


class SharedStateBackend(Protocol):
    """Minimal per-key storage contract.

    Every write replaces a single key atomically; there is no transaction
    spanning more than one key.
    """

    def read(self, key: str) -> SharedValue: ...

    def write(self, key: str, value: datetime | str) -> None: ...

    def remove(self, key: str) -> None: ...


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _encode(value: datetime | str) -> dict[str, str]:
    if isinstance(value, datetime):
        return {"timestamp": _ensure_utc(value).isoformat()}
    if isinstance(value, str):
        return {"value": value}
    raise TypeError(f"Unsupported shared state value: {type(value).__name__}")


def _decode(payload: object) -> SharedValue:
    if not isinstance(payload, dict):
        return None
    stamp = payload.get("timestamp")
    if isinstance(stamp, str):
        try:
            return _ensure_utc(datetime.fromisoformat(stamp))
        except ValueError:
            return None
    value = payload.get("value")
    return value if isinstance(value, str) else None


class MemorySharedState:
    """In-process backend, used when both roles live in one interpreter."""

    def __init__(self) -> None:
        self._values: dict[str, datetime | str] = {}
        self._lock = Lock()

    def read(self, key: str) -> SharedValue:
        with self._lock:
            return self._values.get(key)

    def write(self, key: str, value: datetime | str) -> None:
        if not isinstance(value, (datetime, str)):
            raise TypeError(f"Unsupported shared state value: {type(value).__name__}")
        with self._lock:
            self._values[key] = _ensure_utc(value) if isinstance(value, datetime) else value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class DirectorySharedState:
    """File backed store keeping one JSON document per key.

    Writers publish through ``os.replace`` so that a reader in another
    process sees either the previous document or the new one.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(
                f"Shared state directory {self._directory} is not accessible: {exc}"
            ) from exc

    @property
    def directory(self) -> Path:
        return self._directory

    def _key_path(self, key: str) -> Path:
        name = Path(key).name
        if not name or name != key:
            raise ValueError(f"Invalid shared state key {key!r}")
        return self._directory / f"{name}.json"

    def read(self, key: str) -> SharedValue:
        path = self._key_path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailable(f"Unable to read shared key {key!r}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed shared state entry %s", path)
            return None
        return _decode(payload)

    def write(self, key: str, value: datetime | str) -> None:
        path = self._key_path(key)
        data = json.dumps(_encode(value), separators=(",", ":"))
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.stem}.", suffix=".tmp", dir=self._directory
            )
        except OSError as exc:
            raise StoreUnavailable(f"Unable to write shared key {key!r}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise StoreUnavailable(f"Unable to write shared key {key!r}: {exc}") from exc

    def remove(self, key: str) -> None:
        path = self._key_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreUnavailable(f"Unable to remove shared key {key!r}: {exc}") from exc


class SharedState:
    """Typed view over a :class:`SharedStateBackend`.

    ``backend`` may be ``None`` when the shared area could not be opened; every
    access then raises :class:`StoreUnavailable` so callers can degrade.
    """

    def __init__(self, backend: SharedStateBackend | None) -> None:
        self._backend = backend

    @property
    def available(self) -> bool:
        return self._backend is not None

    def _require(self) -> SharedStateBackend:
        if self._backend is None:
            raise StoreUnavailable("Shared state storage is not configured")
        return self._backend

    def get(self, key: SharedKey) -> SharedValue:
        return self._require().read(key.value)

    def set(self, key: SharedKey, value: datetime | str) -> None:
        self._require().write(key.value, value)

    def clear(self, key: SharedKey) -> None:
        self._require().remove(key.value)

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------
    def session_started_at(self) -> datetime | None:
        value = self.get(SharedKey.SESSION_START_TIME)
        return value if isinstance(value, datetime) else None

    def pairing_code(self) -> str | None:
        value = self.get(SharedKey.PAIRING_CODE)
        return value if isinstance(value, str) and value else None

    def stream_quality(self) -> str | None:
        value = self.get(SharedKey.STREAM_QUALITY)
        return value if isinstance(value, str) and value else None

    def last_recording_path(self) -> str | None:
        value = self.get(SharedKey.LAST_RECORDING_PATH)
        return value if isinstance(value, str) and value else None

    def clear_last_recording_path(self, expected: str | None = None) -> bool:
        """Remove the recording pointer.

        When ``expected`` is given the pointer is only removed while it still
        names that path. Returns ``True`` when the key was cleared.
        """

        if expected is not None:
            current = self.last_recording_path()
            if current is not None and Path(current) != Path(expected):
                logger.info(
                    "Recording pointer moved to %s; leaving it in place", current
                )
                return False
        self.clear(SharedKey.LAST_RECORDING_PATH)
        return True


def open_shared_state(directory: Path | str | None) -> SharedState:
    """Open the directory backend, degrading to an unavailable view on error."""

    if directory is None:
        logger.warning("No shared state directory configured")
        return SharedState(None)
    try:
        backend = DirectorySharedState(directory)
    except StoreUnavailable as exc:
        logger.error("%s", exc)
        return SharedState(None)
    return SharedState(backend)


__all__ = [
    "DirectorySharedState",
    "MemorySharedState",
    "SharedKey",
    "SharedState",
    "SharedStateBackend",
    "SharedValue",
    "StoreUnavailable",
    "open_shared_state",
]
