"""Render pipeline.

Runs one render from a clip and its caption cues to an encoded file:

1. setup    - compose the time-scaled timeline (awaits asset metadata)
2. layout   - resolve the output canvas and segment captions to fit it
3. overlay  - build the caption overlay tree
4. encode   - run the encoder while the progress monitor polls it

Progress is reported as (stage_name, fraction) with fraction non-decreasing
and ending at exactly 1.0 on success.
"""

import asyncio
import logging
import os
from typing import Any, Callable

from kaption.config import Settings, get_settings
from kaption.exceptions import AssetLoadError, EncodeError, KaptionError
from kaption.render.encoder import EncodeStatus, FFmpegEncoder, MediaEncoder
from kaption.render.geometry import Canvas, Size, resolve
from kaption.render.overlay_renderer import (
    OverlayBackendCapability,
    OverlayRenderer,
    OverlayTree,
)
from kaption.render.progress_monitor import (
    ProgressCallback,
    ProgressMonitor,
    ProgressStage,
    StagedProgress,
    StageSpan,
    default_stage_plan,
)
from kaption.render.text_bitmap import load_font, width_measurer
from kaption.render.text_segmenter import layout_max_width, reference_font_size, segment_cue
from kaption.render.timeline_composer import ComposedTimeline, compose
from kaption.schemas.caption import CaptionCue
from kaption.schemas.media import Clip
from kaption.utils.media_info import AssetMetadataProvider, FFprobeAssetProvider

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[ComposedTimeline, Canvas, OverlayTree, str, Settings], MediaEncoder]


class RenderPipeline:
    """Render pipeline with injected collaborators.

    Args:
        settings: Configuration (defaults to the cached settings)
        provider: Asset metadata provider (defaults to ffprobe)
        encoder_factory: Builds the encode session (defaults to FFmpegEncoder)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        provider: AssetMetadataProvider | None = None,
        encoder_factory: EncoderFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or FFprobeAssetProvider(self.settings)
        self.encoder_factory = encoder_factory or FFmpegEncoder
        self.overlay_renderer = OverlayRenderer(self.settings)

    def segment_captions(self, cues: list[CaptionCue], canvas: Canvas, frame_scale: float = 1.0) -> list[CaptionCue]:
        """Split cues with word timings into lines that fit the video rect."""
        rect_width = canvas.width * frame_scale
        rect_height = canvas.height * frame_scale
        font = load_font(reference_font_size(rect_height, self.settings.segment_font_ratio))
        max_width = layout_max_width(rect_width, self.settings.segment_width_ratio)
        measure = width_measurer(font)

        segmented: list[CaptionCue] = []
        for cue in cues:
            # Authored line breaks and cues that already fit keep their text and timing
            if not cue.words or "\n" in cue.text or measure(cue.text) <= max_width:
                segmented.append(cue)
                continue
            pieces = segment_cue(
                cue,
                max_width,
                measure,
                joiner=self.settings.segment_joiner,
                target_cps=self.settings.segment_target_cps,
                min_dur=self.settings.segment_min_duration_s,
                max_dur=self.settings.segment_max_duration_s,
                gap=self.settings.segment_gap_s,
                expand_short_cues=self.settings.segment_expand_short_cues,
            )
            segmented.extend(pieces if len(pieces) > 1 else [cue])
        logger.info(f"[RENDER] Segmented {len(cues)} cues into {len(segmented)} (max_width={max_width:.1f})")
        return segmented

    async def render(
        self,
        clip: Clip,
        cues: list[CaptionCue],
        target_size: Size | tuple[float, float],
        progress_callback: ProgressCallback | None = None,
        *,
        editor_size: Size | tuple[float, float] | None = None,
        capability: OverlayBackendCapability = OverlayBackendCapability.POST_PROCESS,
        segment_captions: bool = True,
        output_path: str | None = None,
    ) -> str:
        """Render a clip with captions.

        Args:
            clip: Source clip
            cues: Caption cues in output-timeline seconds
            target_size: Upright output size (swapped for portrait sources)
            progress_callback: Called with (stage_name, fraction); may be async
            editor_size: Frame size cue offsets were authored in
            capability: Overlay attachment strategy of the encode backend
            segment_captions: Split cues with word timings to fit the canvas
            output_path: Destination file (defaults to the configured name)

        Returns:
            Output handle (path of the encoded file)

        Raises:
            AssetLoadError: Source missing or without a usable video track
            UnsupportedOrientationError: Track transform not canonical
            CompositionError: Encoder could not be constructed
            EncodeError: Encoder reported a failure
            asyncio.CancelledError: Render was cancelled
        """
        settings = self.settings
        plan = default_stage_plan(settings)
        progress = StagedProgress(progress_callback)
        output_path = output_path or os.path.abspath(settings.render_output_name)

        # 1. Setup
        setup = plan[ProgressStage.SETUP]
        await progress.report(setup.name, setup.start)
        timeline = await compose(clip, self.provider)
        await progress.report(setup.name, setup.end)

        # 2. Layout
        layout = plan[ProgressStage.LAYOUT]
        video = timeline.video_track
        if video.natural_size is None:
            raise AssetLoadError(f"Video track has no size: {clip.source}", source=clip.source)
        canvas = resolve(video.natural_size, video.transform, Size(*target_size), mirror=clip.mirror)
        frame_scale = clip.frame_style.scale if clip.frame_style is not None else 1.0
        if segment_captions:
            cues = self.segment_captions(cues, canvas, frame_scale)
        await progress.report(layout.name, layout.end)

        # 3. Overlay
        overlay_span = plan[ProgressStage.OVERLAY]
        overlay = await self.overlay_renderer.build_async(
            cues,
            canvas,
            timeline.duration,
            frame_style=clip.frame_style,
            editor_size=Size(*editor_size) if editor_size is not None else None,
            capability=capability,
            existing_track_ids=[t.track_id for t in timeline.tracks],
            progress_callback=progress.for_span(overlay_span),
        )

        # 4. Encode
        encoder = self.encoder_factory(timeline, canvas, overlay, output_path, settings)
        return await self._encode(encoder, progress, plan)

    async def _encode(
        self,
        encoder: MediaEncoder,
        progress: StagedProgress,
        plan: dict[ProgressStage, StageSpan],
    ) -> str:
        monitor = ProgressMonitor(encoder, plan[ProgressStage.ENCODE], settings=self.settings)

        async def forward_progress() -> None:
            async for event in monitor.events():
                await progress.report(event.stage, event.fraction)

        tasks: list[asyncio.Task[Any]] = []
        succeeded = False
        try:
            await encoder.start()
            tasks = [
                asyncio.create_task(encoder.wait()),
                asyncio.create_task(forward_progress()),
            ]
            await asyncio.gather(*tasks)

            status = encoder.status()
            if status == EncodeStatus.CANCELLED:
                raise asyncio.CancelledError()
            if status != EncodeStatus.COMPLETED:
                cause = encoder.error()
                if cause is None:
                    raise EncodeError(f"Encoder ended as {status.value}")
                raise EncodeError(cause=cause) from cause

            output = encoder.output_handle()
            if output is None:
                raise EncodeError("Encoder completed without an output")
            succeeded = True
            logger.info(f"[RENDER] Completed: {output}")
            return output
        except asyncio.CancelledError:
            progress.close()
            logger.info("[RENDER] Cancelled")
            raise
        except KaptionError:
            raise
        except Exception as e:
            logger.exception(f"[RENDER] Encode failed: {e}")
            raise EncodeError(cause=e) from e
        finally:
            if not succeeded:
                encoder.cancel()
                pending = [t for t in tasks if not t.done()]
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
            encoder.cleanup(remove_output=not succeeded)


async def render(
    clip: Clip,
    cues: list[CaptionCue],
    target_size: Size | tuple[float, float],
    progress_callback: ProgressCallback | None = None,
    *,
    provider: AssetMetadataProvider | None = None,
    encoder_factory: EncoderFactory | None = None,
    editor_size: Size | tuple[float, float] | None = None,
    capability: OverlayBackendCapability = OverlayBackendCapability.POST_PROCESS,
    segment_captions: bool = True,
    output_path: str | None = None,
    settings: Settings | None = None,
) -> str:
    """Render a clip with captions; see :meth:`RenderPipeline.render`."""
    pipeline = RenderPipeline(settings=settings, provider=provider, encoder_factory=encoder_factory)
    return await pipeline.render(
        clip,
        cues,
        target_size,
        progress_callback,
        editor_size=editor_size,
        capability=capability,
        segment_captions=segment_captions,
        output_path=output_path,
    )
