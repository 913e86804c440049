"""
Pytest fixtures for kaption tests.

Most tests run without external tools: asset metadata comes from a
StaticAssetProvider and encoding from a scripted FakeEncoder.

CI/CD Note:
Tests that run the real ffmpeg binary are marked with @pytest.mark.requires_ffmpeg
Run `pytest -m "not requires_ffmpeg"` to skip these tests explicitly.
"""

import asyncio
import shutil

import pytest

from kaption.config import Settings
from kaption.render.encoder import EncodeStatus, MediaEncoder
from kaption.render.geometry import AffineTransform, Size
from kaption.schemas.caption import CaptionCue, CaptionStyle, WordTiming
from kaption.schemas.media import Clip
from kaption.utils.media_info import AssetMetadata, StaticAssetProvider, TrackInfo


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring the ffmpeg binary (skipped when missing)"
    )


# Skip decorator for tests requiring ffmpeg
requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not installed"
)


class FakeEncoder(MediaEncoder):
    """Encoder replaying a scripted raw progress trace.

    Each ``progress()`` call returns the next trace value; once the trace is
    used up the encoder completes (or fails with ``fail_with``). With
    ``hang=True`` it keeps running on the last value until cancelled.
    """

    def __init__(
        self,
        trace: list[float] | tuple[float, ...] = (0.0, 0.5, 1.0),
        *,
        fail_with: BaseException | None = None,
        hang: bool = False,
        output: str = "/tmp/kaption_fake_output.mp4",
    ):
        self.trace = list(trace)
        self.fail_with = fail_with
        self.hang = hang
        self.output = output
        self.index = 0
        self.started = False
        self.cancelled = False
        self.cleanup_calls: list[bool] = []
        self._status = EncodeStatus.WAITING
        self._error: BaseException | None = None

    async def start(self) -> None:
        self.started = True
        self._status = EncodeStatus.RUNNING

    async def wait(self) -> None:
        while not self._status.is_terminal:
            await asyncio.sleep(0)

    def progress(self) -> float:
        value = self.trace[min(self.index, len(self.trace) - 1)]
        self.index += 1
        if self.index >= len(self.trace) and not self.hang:
            if self.fail_with is not None:
                self._error = self.fail_with
                self._status = EncodeStatus.FAILED
            else:
                self._status = EncodeStatus.COMPLETED
        return value

    def status(self) -> EncodeStatus:
        return self._status

    def error(self) -> BaseException | None:
        return self._error

    def output_handle(self) -> str | None:
        return self.output if self._status == EncodeStatus.COMPLETED else None

    def cancel(self) -> None:
        if self._status.is_terminal:
            return
        self.cancelled = True
        self._status = EncodeStatus.CANCELLED

    def cleanup(self, *, remove_output: bool = False) -> None:
        self.cleanup_calls.append(remove_output)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with all progress delays removed."""
    return Settings(
        progress_poll_interval_s=0.0,
        progress_completion_step_delay_s=0.0,
        progress_completion_final_delay_s=0.0,
    )


@pytest.fixture
def landscape_metadata() -> AssetMetadata:
    """10s 1920x1080 clip with one audio track."""
    return AssetMetadata(
        source="clip.mp4",
        duration=10.0,
        tracks=(
            TrackInfo(track_id=0, kind="video", natural_size=Size(1920, 1080),
                      transform=AffineTransform.identity()),
            TrackInfo(track_id=1, kind="audio"),
        ),
    )


@pytest.fixture
def music_metadata() -> AssetMetadata:
    """Audio-only asset used as secondary audio."""
    return AssetMetadata(
        source="music.m4a",
        duration=30.0,
        tracks=(TrackInfo(track_id=0, kind="audio"),),
    )


@pytest.fixture
def provider(landscape_metadata, music_metadata) -> StaticAssetProvider:
    return StaticAssetProvider({
        landscape_metadata.source: landscape_metadata,
        music_metadata.source: music_metadata,
    })


@pytest.fixture
def clip() -> Clip:
    return Clip(source="clip.mp4", duration=10.0)


@pytest.fixture
def plain_cue() -> CaptionCue:
    return CaptionCue(
        text="Hello world",
        start=1.0,
        end=3.0,
        style=CaptionStyle(font_size=32, font_color="#FFFFFF", background_color="#000000"),
    )


@pytest.fixture
def karaoke_words() -> tuple[WordTiming, ...]:
    return (
        WordTiming(text="The", start=0.0, end=1.0),
        WordTiming(text="quick", start=1.0, end=2.0),
        WordTiming(text="brown", start=2.0, end=3.0),
        WordTiming(text="fox", start=3.0, end=4.0),
    )


def char_width(text: str) -> float:
    """Monospace measurer: 10 units per character."""
    return 10.0 * len(text)
