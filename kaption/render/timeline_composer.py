"""Timeline composition.

Builds the output timeline for a clip: the primary video and audio tracks
time-scaled by the clip rate, plus an optional secondary audio track scaled
to the same destination duration.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from kaption.exceptions import AssetLoadError
from kaption.render.geometry import AffineTransform, Size
from kaption.schemas.media import Clip, SecondaryAudio
from kaption.utils.media_info import AssetMetadataProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeRange:
    """Half-open range in seconds."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class ComposedTrack:
    """A track inserted into the output timeline."""

    track_id: int
    kind: Literal["video", "audio"]
    source: str
    source_track_id: int
    source_range: TimeRange
    destination_duration: float
    volume: float = 1.0
    natural_size: Size | None = None
    transform: AffineTransform = field(default_factory=AffineTransform.identity)

    @property
    def speed(self) -> float:
        """Playback speed factor (source seconds per output second)."""
        if self.destination_duration <= 0:
            return 1.0
        return self.source_range.duration / self.destination_duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "track_id": self.track_id,
            "kind": self.kind,
            "source": self.source,
            "source_track_id": self.source_track_id,
            "source_range": [self.source_range.start, self.source_range.end],
            "destination_duration": self.destination_duration,
            "volume": self.volume,
            "natural_size": list(self.natural_size) if self.natural_size else None,
            "transform": list(self.transform.matrix),
        }


@dataclass
class ComposedTimeline:
    """Output timeline for one render."""

    duration: float
    rate: float
    export_range: TimeRange
    tracks: list[ComposedTrack] = field(default_factory=list)

    @property
    def video_track(self) -> ComposedTrack:
        for track in self.tracks:
            if track.kind == "video":
                return track
        raise AssetLoadError("Timeline has no video track")

    @property
    def audio_tracks(self) -> list[ComposedTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration": self.duration,
            "rate": self.rate,
            "export_range": [self.export_range.start, self.export_range.end],
            "tracks": [t.to_dict() for t in self.tracks],
        }


def export_range_for(clip: Clip, source_duration: float) -> TimeRange:
    """Clip trim clamped to the source duration, in output time."""
    trim = clip.effective_trim
    start = min(max(trim.start, 0.0), source_duration)
    end = min(max(trim.end, start), source_duration)
    return TimeRange(start / clip.rate, end / clip.rate)


async def compose(
    clip: Clip,
    provider: AssetMetadataProvider,
    secondary_audio: SecondaryAudio | None = None,
) -> ComposedTimeline:
    """Compose the time-scaled output timeline for a clip.

    Args:
        clip: Source clip
        provider: Asset metadata provider
        secondary_audio: Extra audio mixed under the clip (defaults to
            ``clip.secondary_audio``)

    Returns:
        ComposedTimeline with the primary video, primary audio (if any) and
        secondary audio (if it has an audio track)

    Raises:
        AssetLoadError: If the source cannot be loaded or has no video track
    """
    metadata = await provider.load(clip.source)
    if not metadata.video_tracks:
        raise AssetLoadError(f"No video track found in: {clip.source}", source=clip.source)

    source_duration = metadata.duration
    old_range = TimeRange(0.0, source_duration)
    dest_duration = source_duration / clip.rate
    timeline = ComposedTimeline(
        duration=dest_duration,
        rate=clip.rate,
        export_range=export_range_for(clip, source_duration),
    )
    next_id = 1

    if metadata.audio_tracks:
        audio = metadata.audio_tracks[0]
        timeline.tracks.append(ComposedTrack(
            track_id=next_id,
            kind="audio",
            source=clip.source,
            source_track_id=audio.track_id,
            source_range=old_range,
            destination_duration=dest_duration,
            volume=clip.volume,
        ))
        next_id += 1

    video = metadata.video_tracks[0]
    timeline.tracks.append(ComposedTrack(
        track_id=next_id,
        kind="video",
        source=clip.source,
        source_track_id=video.track_id,
        source_range=old_range,
        destination_duration=dest_duration,
        natural_size=video.natural_size,
        transform=video.transform or clip.orientation or AffineTransform.identity(),
    ))
    next_id += 1

    secondary_audio = secondary_audio or clip.secondary_audio
    if secondary_audio is not None:
        secondary = await provider.load(secondary_audio.source)
        if not secondary.audio_tracks:
            logger.warning(
                f"[COMPOSE] Secondary audio has no audio track, skipping: {secondary_audio.source}"
            )
        else:
            timeline.tracks.append(ComposedTrack(
                track_id=next_id,
                kind="audio",
                source=secondary_audio.source,
                source_track_id=secondary.audio_tracks[0].track_id,
                source_range=old_range,
                destination_duration=dest_duration,
                volume=secondary_audio.volume,
            ))

    logger.info(
        f"[COMPOSE] {clip.source}: duration={source_duration:.3f}s rate={clip.rate} "
        f"-> {dest_duration:.3f}s, tracks={len(timeline.tracks)}"
    )
    return timeline
