"""Hand-off of a validated recording to its consumer, or its removal."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .event_log import EventLog
from .recording import Recording
from .shared_state import SharedState, StoreUnavailable


logger = logging.getLogger(__name__)


class HandoffError(RuntimeError):
    """Base class for recording hand-off failures."""


class DeleteFailed(HandoffError):
    """Raised when a recording could not be removed from disk."""

    def __init__(self, recording: Recording, reason: str) -> None:
        super().__init__(f"Failed to delete recording {recording.path}: {reason}")
        self.recording = recording


class SendFailed(HandoffError):
    """Raised by consumers to report that a recording was not accepted."""


RecordingConsumer = Callable[[Recording], Awaitable[object]]
Completion = Callable[[bool], None]


class HandoffPipeline:
    """Delete or deliver the current recording and retire its pointer.

    The pointer is only cleared once the file it names has been deleted or
    consumed. Failures leave it in place so the operation can be retried.
    Concurrent ``delete`` and ``send`` calls for the same recording must be
    serialised by the caller.
    """

    def __init__(
        self,
        shared_state: SharedState,
        consumer: RecordingConsumer | None = None,
        *,
        event_log: EventLog | None = None,
    ) -> None:
        self._shared = shared_state
        self._consumer = consumer
        self._event_log = event_log

    @property
    def consumer(self) -> RecordingConsumer | None:
        return self._consumer

    def delete(self, recording: Recording) -> None:
        try:
            recording.path.unlink()
        except OSError as exc:
            reason = exc.strerror or str(exc)
            logger.error("Failed to delete recording %s: %s", recording.path, reason)
            self._record("delete_failed", "Recording could not be deleted.", path=str(recording.path), reason=reason)
            raise DeleteFailed(recording, reason) from exc
        logger.info("Deleted recording at %s", recording.path)
        self._clear_pointer(recording)
        self._record("deleted", "Recording deleted.", path=str(recording.path))

    def send(self, recording: Recording, completion: Completion | None = None) -> asyncio.Task[bool]:
        """Deliver ``recording`` to the consumer in the background.

        ``completion`` is invoked exactly once with the outcome. The returned
        task resolves to the same value.
        """

        loop = asyncio.get_running_loop()
        return loop.create_task(
            self._deliver(recording, completion),
            name=f"cr-screen-send-{recording.name}",
        )

    async def _deliver(self, recording: Recording, completion: Completion | None) -> bool:
        success = False
        try:
            success = await self._consume(recording)
        finally:
            if completion is not None:
                try:
                    completion(success)
                except Exception:
                    logger.exception("Send completion callback failed")
        return success

    async def _consume(self, recording: Recording) -> bool:
        logger.info(
            "Preparing to send recording at %s (%.2f MB)", recording.path, recording.size_mb
        )
        consumer = self._consumer
        if consumer is None:
            logger.error("No recording consumer configured")
            self._record("send_failed", "No recording consumer configured.", path=str(recording.path))
            return False
        if not recording.path.exists():
            # Someone else already consumed or removed it.
            logger.warning("Recording %s vanished before it could be sent", recording.path)
            self._record("send_skipped", "Recording no longer exists.", path=str(recording.path))
            return False
        try:
            result = await consumer(recording)
        except asyncio.CancelledError:
            raise
        except FileNotFoundError:
            logger.warning("Recording %s vanished while it was being sent", recording.path)
            self._record("send_skipped", "Recording no longer exists.", path=str(recording.path))
            return False
        except Exception as exc:
            logger.error("Failed to send recording %s: %s", recording.path, exc)
            self._record("send_failed", "Recording consumer failed.", path=str(recording.path), reason=str(exc))
            return False
        if result is False:
            logger.error("Recording consumer rejected %s", recording.path)
            self._record("send_failed", "Recording consumer rejected the recording.", path=str(recording.path))
            return False
        logger.info("Recording %s sent", recording.path)
        self._clear_pointer(recording)
        self._record("sent", "Recording sent.", path=str(recording.path))
        return True

    def _clear_pointer(self, recording: Recording) -> None:
        try:
            self._shared.clear_last_recording_path(expected=str(recording.path))
        except StoreUnavailable as exc:
            logger.warning("Unable to clear recording pointer: %s", exc)

    def _record(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is not None:
            self._event_log.record("handoff", event, message, **metadata)


__all__ = [
    "Completion",
    "DeleteFailed",
    "HandoffError",
    "HandoffPipeline",
    "RecordingConsumer",
    "SendFailed",
]
