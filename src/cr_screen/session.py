"""Session coordination inferred from the shared storage area.

The recorder never notifies the host directly. It writes the session start
marker when a broadcast begins and removes it when the broadcast ends, so the
host derives the session state by polling that marker on a fixed interval.
"""
from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from .event_log import EventLog
from .settings import StreamQuality
from .shared_state import SharedKey, SharedState, StoreUnavailable


logger = logging.getLogger(__name__)


PAIRING_CODE_PLACEHOLDER = "— — — —"


class SessionState(str, Enum):
    """Observable broadcast states."""

    IDLE = "idle"
    ACTIVE = "active"


class SessionActiveError(RuntimeError):
    """Raised when an operation is only valid while no session is active."""


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Point-in-time view of the session as seen by the host."""

    state: SessionState
    elapsed_s: float
    pairing_code: str
    started_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "active": self.active,
            "elapsed_s": round(self.elapsed_s, 3),
            "elapsed": format_elapsed(self.elapsed_s),
            "pairing_code": self.pairing_code,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


def derive_state(started_at: datetime | None) -> SessionState:
    """Map the latest start marker to a session state."""

    return SessionState.ACTIVE if started_at is not None else SessionState.IDLE


def generate_pairing_code(rng: random.Random | None = None) -> str:
    """Return a zero padded four digit code drawn uniformly from 0-9999."""

    source = rng if rng is not None else random.SystemRandom()
    return f"{source.randint(0, 9999):04d}"


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    return f"{total // 3600:02d}:{total // 60 % 60:02d}:{total % 60:02d}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionCoordinator:
    """Derives broadcast state, elapsed time and pairing codes for the host.

    The coordinator never writes the session start marker; its lifecycle
    belongs to the recorder. Elapsed time is anchored to the wall clock once,
    when a start marker is first observed, and advanced with a monotonic
    clock afterwards so that clock adjustments cannot make it jump backwards.
    """

    def __init__(
        self,
        shared_state: SharedState,
        *,
        default_quality: StreamQuality = StreamQuality.MEDIUM,
        event_log: EventLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._shared = shared_state
        self._default_quality = StreamQuality(default_quality)
        self._event_log = event_log
        self._clock = clock
        self._monotonic = monotonic
        self._rng = rng
        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._tracked_start: datetime | None = None
        self._anchor: tuple[float, float] | None = None
        self._elapsed = 0.0

    @property
    def shared_state(self) -> SharedState:
        return self._shared

    # ------------------------------------------------------------------
    # Host initiated writes
    # ------------------------------------------------------------------
    def issue_pairing_code(self, *, force: bool = False) -> str:
        """Generate a new pairing code and publish it for the recorder.

        Raises :class:`SessionActiveError` while a session is observed active
        unless ``force`` is set, and :class:`StoreUnavailable` when the code
        cannot be written.
        """

        if not force and self._read_started_at() is not None:
            raise SessionActiveError("Cannot issue a pairing code during an active session")
        code = generate_pairing_code(self._rng)
        self._shared.set(SharedKey.PAIRING_CODE, code)
        logger.info("Issued pairing code %s", code)
        self._record("pairing_code", "Issued a new pairing code.", code=code)
        return code

    def set_stream_quality(self, quality: StreamQuality | str) -> StreamQuality:
        """Publish the capture quality the recorder should use.

        Delivery is best effort: the recorder reads the value when a session
        starts and never confirms it.
        """

        selected = StreamQuality(quality)
        self._shared.set(SharedKey.STREAM_QUALITY, selected.value)
        logger.info("Requested stream quality %s", selected.value)
        return selected

    def stream_quality(self) -> StreamQuality:
        try:
            raw = self._shared.stream_quality()
        except StoreUnavailable:
            return self._default_quality
        try:
            return StreamQuality(raw) if raw else self._default_quality
        except ValueError:
            logger.warning("Ignoring unknown stream quality %r", raw)
            return self._default_quality

    def prepare_broadcast(self) -> SessionSnapshot:
        """Get ready for the user to start a broadcast.

        While idle a fresh pairing code is issued and the stream quality is
        published. An active session is left untouched.
        """

        snapshot = self.observe_state()
        if snapshot.active:
            return snapshot
        self.issue_pairing_code()
        try:
            self.set_stream_quality(self.stream_quality())
        except StoreUnavailable as exc:
            logger.warning("Unable to publish stream quality: %s", exc)
        return self.observe_state()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def observe_state(self) -> SessionSnapshot:
        """Return the current state without touching the poll bookkeeping."""

        started_at = self._read_started_at()
        code = self._read_pairing_code()
        with self._lock:
            if started_at is None:
                return SessionSnapshot(SessionState.IDLE, 0.0, code)
            if started_at == self._tracked_start and self._anchor is not None:
                elapsed = max(self._elapsed, self._anchored_elapsed())
            else:
                elapsed = max(0.0, (self._clock() - started_at).total_seconds())
            return SessionSnapshot(SessionState.ACTIVE, elapsed, code, started_at)

    def poll_tick(self) -> SessionSnapshot:
        """Re-read the shared state and advance the elapsed bookkeeping."""

        started_at = self._read_started_at()
        code = self._read_pairing_code()
        with self._lock:
            previous = self._state
            if started_at is None:
                self._tracked_start = None
                self._anchor = None
                self._elapsed = 0.0
            else:
                if started_at != self._tracked_start:
                    # The marker appeared (or was rewritten) since the last tick.
                    self._tracked_start = started_at
                    self._elapsed = 0.0
                    offset = (self._clock() - started_at).total_seconds()
                    self._anchor = (self._monotonic(), max(0.0, offset))
                self._elapsed = max(self._elapsed, self._anchored_elapsed())
            self._state = derive_state(started_at)
            snapshot = SessionSnapshot(self._state, self._elapsed, code, started_at)
        if previous is not snapshot.state:
            self._log_transition(previous, snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _anchored_elapsed(self) -> float:
        assert self._anchor is not None
        anchor_monotonic, anchor_offset = self._anchor
        return anchor_offset + max(0.0, self._monotonic() - anchor_monotonic)

    def _read_started_at(self) -> datetime | None:
        try:
            return self._shared.session_started_at()
        except StoreUnavailable as exc:
            logger.debug("Shared state unavailable while polling: %s", exc)
            return None

    def _read_pairing_code(self) -> str:
        try:
            code = self._shared.pairing_code()
        except StoreUnavailable:
            code = None
        return code or PAIRING_CODE_PLACEHOLDER

    def _log_transition(self, previous: SessionState, snapshot: SessionSnapshot) -> None:
        if snapshot.active:
            logger.info(
                "Broadcast session detected (started %s, code %s)",
                snapshot.started_at.isoformat() if snapshot.started_at else "unknown",
                snapshot.pairing_code,
            )
            self._record(
                "session_started",
                "Broadcast session detected.",
                started_at=snapshot.started_at.isoformat() if snapshot.started_at else None,
                code=snapshot.pairing_code,
            )
        else:
            logger.info("Broadcast session ended externally")
            self._record("session_ended", "Broadcast session ended.", previous=previous.value)

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record("session", event, message, **metadata)


TransitionHandler = Callable[[SessionState, SessionSnapshot], Awaitable[None] | None]


class SessionPoller:
    """Background task driving :meth:`SessionCoordinator.poll_tick`."""

    def __init__(
        self,
        coordinator: SessionCoordinator,
        *,
        interval: float = 1.0,
        on_transition: TransitionHandler | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._coordinator = coordinator
        self._interval = float(interval)
        self._on_transition = on_transition
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._last_state: SessionState | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Start the polling task on the running event loop."""

        if self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(), name="cr-screen-session-poller")

    async def aclose(self) -> None:
        """Stop polling and wait for the worker to exit."""

        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
            self._stop_event = None

    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def poll_once(self) -> SessionSnapshot | None:
        loop = asyncio.get_running_loop()
        try:
            snapshot = await loop.run_in_executor(None, self._coordinator.poll_tick)
        except Exception:
            logger.exception("Session poll raised an unexpected exception")
            return None
        previous = self._last_state
        self._last_state = snapshot.state
        if previous is not None and previous is not snapshot.state:
            await self._notify(previous, snapshot)
        return snapshot

    async def _notify(self, previous: SessionState, snapshot: SessionSnapshot) -> None:
        handler = self._on_transition
        if handler is None:
            return
        try:
            result = handler(previous, snapshot)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Session transition handler failed")


__all__ = [
    "PAIRING_CODE_PLACEHOLDER",
    "SessionActiveError",
    "SessionCoordinator",
    "SessionPoller",
    "SessionSnapshot",
    "SessionState",
    "derive_state",
    "format_elapsed",
    "generate_pairing_code",
]
