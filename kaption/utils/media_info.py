"""Asset metadata providers.

The render pipeline only needs a handful of facts about a source asset:
its duration and, per track, the kind, encoded size and display transform.
Providers resolve those facts; the ffprobe provider reads them from the file,
the static provider serves metadata the host already knows.
"""

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Literal, Protocol

from kaption.config import Settings, get_settings
from kaption.exceptions import AssetLoadError
from kaption.render.geometry import AffineTransform, Size

logger = logging.getLogger(__name__)

TrackKind = Literal["video", "audio"]


@dataclass(frozen=True)
class TrackInfo:
    """Single track of an asset."""

    track_id: int
    kind: TrackKind
    natural_size: Size | None = None
    # None when the container reports no display transform
    transform: AffineTransform | None = None


@dataclass(frozen=True)
class AssetMetadata:
    """Asset duration (seconds) and tracks."""

    source: str
    duration: float
    tracks: tuple[TrackInfo, ...] = ()

    @property
    def video_tracks(self) -> list[TrackInfo]:
        return [t for t in self.tracks if t.kind == "video"]

    @property
    def audio_tracks(self) -> list[TrackInfo]:
        return [t for t in self.tracks if t.kind == "audio"]

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "duration": self.duration,
            "tracks": [
                {
                    "track_id": t.track_id,
                    "kind": t.kind,
                    "natural_size": list(t.natural_size) if t.natural_size else None,
                    "transform": list(t.transform.matrix) if t.transform else None,
                }
                for t in self.tracks
            ],
        }


class AssetMetadataProvider(Protocol):
    """Loads metadata for a source path or URL."""

    async def load(self, source: str) -> AssetMetadata:
        """Raises AssetLoadError if the asset cannot be read."""
        ...


# =============================================================================
# Display rotation -> canonical transform
# =============================================================================


def transform_for_rotation(rotation: int, width: float, height: float) -> AffineTransform:
    """Canonical track transform for a clockwise display rotation in degrees.

    Args:
        rotation: Clockwise rotation needed for display (0, 90, 180, 270)
        width: Encoded frame width
        height: Encoded frame height

    Raises:
        AssetLoadError: If the rotation is not a multiple of 90 degrees
    """
    rotation %= 360
    if rotation == 0:
        return AffineTransform.identity()
    if rotation == 90:
        return AffineTransform(a=0.0, b=1.0, c=-1.0, d=0.0, tx=height, ty=0.0)
    if rotation == 180:
        return AffineTransform(a=-1.0, b=0.0, c=0.0, d=-1.0, tx=width, ty=height)
    if rotation == 270:
        return AffineTransform(a=0.0, b=-1.0, c=1.0, d=0.0, tx=0.0, ty=width)
    raise AssetLoadError(f"Unsupported display rotation: {rotation}")


def _stream_rotation(stream: dict) -> int:
    """Clockwise display rotation of a video stream.

    Newer ffprobe reports a display matrix whose ``rotation`` is
    counter-clockwise; older builds report a clockwise ``rotate`` tag.
    """
    for side_data in stream.get("side_data_list", []):
        if "rotation" in side_data:
            return int(round(-float(side_data["rotation"])))
    rotate_tag = stream.get("tags", {}).get("rotate")
    if rotate_tag is not None:
        return int(rotate_tag)
    return 0


def parse_ffprobe_output(source: str, data: dict) -> AssetMetadata:
    """Map ``ffprobe -show_format -show_streams`` JSON to AssetMetadata."""
    format_info = data.get("format", {})
    streams = data.get("streams", [])

    duration = format_info.get("duration")
    if duration is None:
        durations = [float(s["duration"]) for s in streams if "duration" in s]
        if not durations:
            raise AssetLoadError(f"Duration not found in: {source}", source=source)
        duration = max(durations)

    tracks: list[TrackInfo] = []
    for stream in streams:
        codec_type = stream.get("codec_type")
        track_id = int(stream.get("index", len(tracks)))
        if codec_type == "video":
            # Cover art is reported as a video stream
            if stream.get("disposition", {}).get("attached_pic"):
                continue
            width = stream.get("width")
            height = stream.get("height")
            if not width or not height:
                raise AssetLoadError(f"Video dimensions not found in: {source}", source=source)
            tracks.append(TrackInfo(
                track_id=track_id,
                kind="video",
                natural_size=Size(float(width), float(height)),
                transform=transform_for_rotation(_stream_rotation(stream), width, height),
            ))
        elif codec_type == "audio":
            tracks.append(TrackInfo(track_id=track_id, kind="audio"))

    return AssetMetadata(source=source, duration=float(duration), tracks=tuple(tracks))


class FFprobeAssetProvider:
    """Reads asset metadata with ffprobe in a worker thread."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def _run_ffprobe(self, source: str) -> dict:
        cmd = [
            self.settings.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source,
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise AssetLoadError(f"ffprobe not found: {e}", source=source) from e
        if result.returncode != 0:
            raise AssetLoadError(f"ffprobe failed: {result.stderr.strip()}", source=source)
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise AssetLoadError(f"Failed to parse ffprobe output: {e}", source=source) from e

    async def load(self, source: str) -> AssetMetadata:
        data = await asyncio.to_thread(self._run_ffprobe, source)
        metadata = parse_ffprobe_output(source, data)
        logger.debug(f"[PROBE] {source}: {metadata.to_dict()}")
        return metadata


class StaticAssetProvider:
    """In-memory provider for metadata the host already knows."""

    def __init__(self, assets: dict[str, AssetMetadata] | None = None):
        self._assets: dict[str, AssetMetadata] = dict(assets or {})

    def add(self, metadata: AssetMetadata) -> None:
        self._assets[metadata.source] = metadata

    async def load(self, source: str) -> AssetMetadata:
        try:
            return self._assets[source]
        except KeyError:
            raise AssetLoadError(f"Unknown asset: {source}", source=source) from None
