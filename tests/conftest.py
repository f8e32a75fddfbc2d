from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from cr_screen.shared_state import DirectorySharedState, MemorySharedState, SharedKey, SharedState


def write_video(path: Path, *, frames: int = 32, fps: int = 10, size: tuple[int, int] = (320, 240)) -> Path:
    """Encode ``frames`` frames of noise into an MP4 with a single video track."""

    av = pytest.importorskip("av")
    np = pytest.importorskip("numpy")

    rng = np.random.default_rng(1234)
    width, height = size
    with av.open(str(path), mode="w") as container:
        stream = container.add_stream("mpeg4", rate=fps)
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        stream.bit_rate = 2_000_000
        for _ in range(frames):
            array = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
            frame = av.VideoFrame.from_ndarray(array, format="rgb24")
            for packet in stream.encode(frame):
                container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)
    return path


@pytest.fixture
def memory_state() -> SharedState:
    return SharedState(MemorySharedState())


@pytest.fixture
def directory_state(tmp_path: Path) -> SharedState:
    return SharedState(DirectorySharedState(tmp_path / "shared"))


@pytest.fixture
def video_factory(tmp_path: Path) -> Callable[..., Path]:
    def _factory(name: str = "broadcast_20260101_120000.mp4", **kwargs) -> Path:
        target = tmp_path / "Recordings"
        target.mkdir(exist_ok=True)
        return write_video(target / name, **kwargs)

    return _factory


class FakeClock:
    """Wall and monotonic clocks that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.mono = 1000.0

    def wall(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.mono += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def start_session(state: SharedState, started_at: datetime) -> None:
    """Write the start marker the way the recorder does."""

    state.set(SharedKey.SESSION_START_TIME, started_at)


def end_session(state: SharedState, recording: Path | None = None) -> None:
    if recording is not None:
        state.set(SharedKey.LAST_RECORDING_PATH, str(recording))
    state.clear(SharedKey.SESSION_START_TIME)
