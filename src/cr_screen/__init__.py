"""CRScreen host coordination service.

The session, recording and hand-off services import without FastAPI;
``create_app`` loads the web layer on first use.
"""

from typing import Any

from .handoff import DeleteFailed, HandoffPipeline, SendFailed
from .recording import Recording, RecordingError, RecordingLocator
from .session import SessionCoordinator, SessionPoller, SessionSnapshot, SessionState
from .settings import HostSettings, StreamQuality
from .shared_state import SharedKey, SharedState, StoreUnavailable, open_shared_state
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "DeleteFailed",
    "HandoffPipeline",
    "HostSettings",
    "Recording",
    "RecordingError",
    "RecordingLocator",
    "SendFailed",
    "SessionCoordinator",
    "SessionPoller",
    "SessionSnapshot",
    "SessionState",
    "SharedKey",
    "SharedState",
    "StoreUnavailable",
    "StreamQuality",
    "create_app",
    "open_shared_state",
]
