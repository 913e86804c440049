"""Encode backends.

MediaEncoder is the interface the render pipeline drives; FFmpegEncoder is
the reference backend. It flattens the overlay tree into PNG inputs and a
single filter_complex graph:

    [source video] trim -> setpts -> orientation -> aspect-fill -> frame pad
        -> overlay(layer 1) -> overlay(layer 2) -> ... -> [vout]
    [source audio] atrim -> asetpts -> atempo -> volume
    [secondary]    atrim -> asetpts -> atempo -> volume  -> amix -> [aout]

Layer opacity and scale curves become per-frame expressions (geq alpha and
scale with eval=frame), and each overlay is enabled only while visible.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from PIL import Image

from kaption.config import Settings, get_settings
from kaption.exceptions import CompositionError
from kaption.render.geometry import Canvas, Orientation
from kaption.render.overlay_renderer import (
    LayerKind,
    OverlayTree,
    PlacedLayer,
    RenderLayer,
    visible_range,
)
from kaption.render.text_bitmap import render_rounded_rect
from kaption.render.timeline_composer import ComposedTimeline, ComposedTrack
from kaption.utils.interpolation import curves_to_expression, format_number

logger = logging.getLogger(__name__)


class EncodeStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EncodeStatus.COMPLETED, EncodeStatus.FAILED, EncodeStatus.CANCELLED)


class MediaEncoder(ABC):
    """Encode session driven by the render pipeline.

    ``start`` launches the encode and returns; ``wait`` returns once the
    session reached a terminal status. Failures are reported through
    ``status``/``error`` rather than raised.
    """

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def wait(self) -> None: ...

    @abstractmethod
    def progress(self) -> float:
        """Raw completion in [0, 1]."""

    @abstractmethod
    def status(self) -> EncodeStatus: ...

    @abstractmethod
    def error(self) -> BaseException | None: ...

    @abstractmethod
    def output_handle(self) -> str | None:
        """Output path, only set once the encode completed."""

    @abstractmethod
    def cancel(self) -> None: ...

    def cleanup(self, *, remove_output: bool = False) -> None:
        """Remove temporary artefacts (and the output when it is invalid)."""


def atempo_chain(speed: float) -> list[str]:
    """atempo filters for ``speed``; each stage must stay within [0.5, 2.0]."""
    filters = []
    while speed > 2.0:
        filters.append("atempo=2.0")
        speed /= 2.0
    while speed < 0.5:
        filters.append("atempo=0.5")
        speed /= 0.5
    if abs(speed - 1.0) > 1e-9:
        filters.append(f"atempo={format_number(speed)}")
    return filters


def orientation_filters(canvas: Canvas) -> list[str]:
    """Filters putting the encoded frame upright (and mirrored) on the canvas.

    A mirrored canvas carries only the mirror transform, so no rotation is
    applied in that case.
    """
    if canvas.mirrored:
        return ["hflip"]
    if canvas.orientation == Orientation.RIGHT:
        return ["transpose=clock"]
    if canvas.orientation == Orientation.LEFT:
        return ["transpose=cclock"]
    if canvas.orientation == Orientation.DOWN:
        return ["hflip", "vflip"]
    return []


def _ffmpeg_color(rgba: tuple[int, int, int, int]) -> str:
    r, g, b, a = rgba
    return f"0x{r:02X}{g:02X}{b:02X}@{format_number(a / 255)}"


@dataclass
class OverlayInput:
    """One overlay PNG and where and when it is composited."""

    placed: PlacedLayer
    filename: str
    window: tuple[float, float]

    @property
    def layer(self) -> RenderLayer:
        return self.placed.layer


class FFmpegEncoder(MediaEncoder):
    """Encodes a composed timeline with its overlay using the ffmpeg CLI.

    Usage:
        encoder = FFmpegEncoder(timeline, canvas, overlay, "/tmp/out.mp4")
        await encoder.start()
        await encoder.wait()
        if encoder.status() == EncodeStatus.COMPLETED:
            print(encoder.output_handle())
    """

    def __init__(
        self,
        timeline: ComposedTimeline,
        canvas: Canvas,
        overlay: OverlayTree,
        output_path: str,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.ffmpeg_path = self.settings.ffmpeg_path
        if shutil.which(self.ffmpeg_path) is None:
            raise CompositionError(
                f"ffmpeg executable not found: {self.ffmpeg_path}",
                details={"ffmpeg_path": self.ffmpeg_path},
            )

        self.timeline = timeline
        self.canvas = canvas
        self.overlay = overlay
        self.output_path = output_path
        self.work_dir = tempfile.mkdtemp(prefix=self.settings.render_work_dir_prefix)

        self._status = EncodeStatus.WAITING
        self._progress = 0.0
        self._error: BaseException | None = None
        self._output: str | None = None
        self._proc: asyncio.subprocess.Process | None = None

    # -------------------------------------------------------------------------
    # MediaEncoder
    # -------------------------------------------------------------------------

    def progress(self) -> float:
        return self._progress

    def status(self) -> EncodeStatus:
        return self._status

    def error(self) -> BaseException | None:
        return self._error

    def output_handle(self) -> str | None:
        return self._output

    async def start(self) -> None:
        self._status = EncodeStatus.RUNNING
        try:
            self.write_layer_images()
            cmd = self.build_command()
            logger.info(f"[ENCODE] FFmpeg command: {' '.join(cmd)}")
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[ENCODE] Failed to start ffmpeg: {e}")
            self._fail(e)

    async def wait(self) -> None:
        proc = self._proc
        if proc is None or self._status.is_terminal:
            return

        duration = self.timeline.export_range.duration
        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line.startswith("out_time_us="):
                    value = line.split("=", 1)[1]
                    if value.isdigit() and duration > 0:
                        time_s = int(value) / 1_000_000
                        self._progress = min(1.0, max(0.0, time_s / duration))
                elif line == "progress=end":
                    self._progress = 1.0
        except asyncio.CancelledError:
            stderr_task.cancel()
            self.cancel()
            # Reap the killed process before the cancellation propagates
            await proc.wait()
            raise

        stderr_output = await stderr_task
        returncode = await proc.wait()
        if self._status == EncodeStatus.CANCELLED:
            return
        if returncode != 0:
            stderr_text = stderr_output.decode("utf-8", errors="replace").strip()
            logger.error(f"[ENCODE] FFmpeg exited with {returncode}: {stderr_text}")
            self._fail(RuntimeError(f"ffmpeg exited with code {returncode}: {stderr_text[-2000:]}"))
            return

        self._progress = 1.0
        self._output = self.output_path
        self._status = EncodeStatus.COMPLETED
        logger.info(f"[ENCODE] Completed: {self.output_path}")

    def cancel(self) -> None:
        if self._status.is_terminal:
            return
        self._status = EncodeStatus.CANCELLED
        if self._proc is not None and self._proc.returncode is None:
            self._proc.kill()
        logger.info("[ENCODE] Cancelled")

    def cleanup(self, *, remove_output: bool = False) -> None:
        shutil.rmtree(self.work_dir, ignore_errors=True)
        if remove_output and os.path.exists(self.output_path):
            os.remove(self.output_path)
            logger.info(f"[ENCODE] Removed incomplete output: {self.output_path}")

    def _fail(self, error: BaseException) -> None:
        self._error = error
        self._status = EncodeStatus.FAILED

    # -------------------------------------------------------------------------
    # Overlay inputs
    # -------------------------------------------------------------------------

    def overlay_inputs(self) -> list[OverlayInput]:
        """Layers that become PNG inputs, in paint order.

        The frame background and video bounds are drawn by the pad filter;
        layers that are never visible are dropped.
        """
        inputs = []
        duration = self.overlay.duration
        for placed in self.overlay.iter_placed():
            layer = placed.layer
            if layer.kind in (LayerKind.SOLID, LayerKind.VIDEO_BOUNDS):
                continue
            if layer.kind == LayerKind.BITMAP and layer.image is None:
                continue
            if layer.kind in (LayerKind.GROUP, LayerKind.ROUNDED_RECT):
                if layer.fill_color is None or layer.fill_color[3] == 0:
                    continue

            window: tuple[float, float] | None = (0.0, duration)
            for node in (*placed.ancestors, layer):
                node_range = visible_range(node, duration)
                if node_range is None:
                    window = None
                    break
                window = (max(window[0], node_range[0]), min(window[1], node_range[1]))
            if window is None or window[1] <= window[0]:
                continue

            inputs.append(OverlayInput(
                placed=placed,
                filename=f"layer_{len(inputs):04d}.png",
                window=window,
            ))
        return inputs

    def write_layer_images(self) -> list[str]:
        """Write every overlay input to PNG in the work directory."""
        paths = []
        for item in self.overlay_inputs():
            layer = item.layer
            if layer.kind == LayerKind.BITMAP:
                image: Image.Image = layer.image
            else:
                image = render_rounded_rect(
                    (layer.rect.width, layer.rect.height),
                    layer.fill_color,
                    layer.corner_radius,
                )
            path = os.path.join(self.work_dir, item.filename)
            image.save(path, "PNG")
            paths.append(path)
        logger.info(f"[ENCODE] Wrote {len(paths)} overlay images to {self.work_dir}")
        return paths

    # -------------------------------------------------------------------------
    # Command
    # -------------------------------------------------------------------------

    def _opacity_expression(self, item: OverlayInput, time_var: str) -> str | None:
        factors = []
        for node in (*item.placed.ancestors, item.layer):
            curves = node.curves_for("opacity")
            if not curves and node.opacity >= 1.0:
                continue
            factors.append(f"({curves_to_expression(curves, initial=node.opacity, time_var=time_var)})")
        return "*".join(factors) if factors else None

    def _scale_expression(self, item: OverlayInput, time_var: str) -> str | None:
        curves = item.layer.curves_for("scale")
        if not curves:
            return None
        return curves_to_expression(curves, initial=1.0, time_var=time_var)

    def _video_filter(self, track: ComposedTrack, input_label: str) -> list[str]:
        export = self.timeline.export_range
        speed = track.speed
        source_start = export.start * speed
        source_end = export.end * speed
        canvas_w = int(round(self.canvas.width))
        canvas_h = int(round(self.canvas.height))

        filters = [
            f"trim=start={format_number(source_start)}:end={format_number(source_end)}",
            f"setpts=(PTS-STARTPTS)/{format_number(speed)}",
            *orientation_filters(self.canvas),
            f"scale={canvas_w}:{canvas_h}:force_original_aspect_ratio=increase",
            f"crop={canvas_w}:{canvas_h}",
            "setsar=1",
        ]

        bounds = self.overlay.video_bounds
        if bounds is not None:
            bw = int(round(bounds.rect.width))
            bh = int(round(bounds.rect.height))
            background = self.overlay.find(LayerKind.SOLID)
            color = _ffmpeg_color(background.fill_color) if background else "black"
            filters.append(f"scale={bw}:{bh}")
            filters.append(
                f"pad={canvas_w}:{canvas_h}:{int(round(bounds.rect.x))}:{int(round(bounds.rect.y))}"
                f":color={color}"
            )
        filters.append(f"fps={self.settings.render_fps}")
        return [f"[{input_label}]{','.join(filters)}[base]"]

    def _audio_filter(self, track: ComposedTrack, input_label: str, output_label: str) -> str:
        export = self.timeline.export_range
        speed = track.speed
        filters = [
            f"atrim=start={format_number(export.start * speed)}:end={format_number(export.end * speed)}",
            "asetpts=PTS-STARTPTS",
            *atempo_chain(speed),
            f"volume={format_number(track.volume)}",
        ]
        return f"[{input_label}]{','.join(filters)}[{output_label}]"

    def _overlay_filters(self, item: OverlayInput, input_idx: int, base: str, out: str) -> list[str]:
        offset = self.timeline.export_range.start
        rect = item.placed.rect
        parts = []
        chain = ["format=rgba"]

        alpha = self._opacity_expression(item, f"(T+{format_number(offset)})")
        if alpha is not None:
            chain.append(
                f"geq=r='r(X,Y)':g='g(X,Y)':b='b(X,Y)':a='alpha(X,Y)*({alpha})'"
            )

        center_x = rect.x + rect.width / 2
        center_y = rect.y + rect.height / 2
        scale = self._scale_expression(item, f"(t+{format_number(offset)})")
        if scale is not None:
            chain.append(f"scale=w='iw*({scale})':h='ih*({scale})':eval=frame")
            x = f"{format_number(center_x)}-overlay_w/2"
            y = f"{format_number(center_y)}-overlay_h/2"
        else:
            x = format_number(rect.x)
            y = format_number(rect.y)

        label = f"ov{input_idx}"
        parts.append(f"[{input_idx}:v]{','.join(chain)}[{label}]")
        start, end = (w - offset for w in item.window)
        parts.append(
            f"[{base}][{label}]overlay=x='{x}':y='{y}':"
            f"enable='between(t,{start:.6f},{end:.6f})'[{out}]"
        )
        return parts

    def build_command(self) -> list[str]:
        """Full ffmpeg argument list. Pure: reads state, writes nothing."""
        settings = self.settings
        timeline = self.timeline
        fps = settings.render_fps
        export_duration = timeline.export_range.duration

        video = timeline.video_track
        inputs: list[str] = ["-noautorotate", "-i", video.source]
        source_index = {video.source: 0}
        next_input = 1

        filter_parts = self._video_filter(video, f"0:{video.source_track_id}")

        audio_labels = []
        for i, track in enumerate(timeline.audio_tracks):
            if track.source not in source_index:
                inputs.extend(["-i", track.source])
                source_index[track.source] = next_input
                next_input += 1
            label = f"a{i}"
            filter_parts.append(
                self._audio_filter(track, f"{source_index[track.source]}:{track.source_track_id}", label)
            )
            audio_labels.append(label)

        base = "base"
        overlay_items = self.overlay_inputs()
        for n, item in enumerate(overlay_items):
            inputs.extend([
                "-loop", "1",
                "-framerate", str(fps),
                "-t", format_number(export_duration),
                "-i", os.path.join(self.work_dir, item.filename),
            ])
            out = "vout" if n == len(overlay_items) - 1 else f"v{n}"
            filter_parts.extend(self._overlay_filters(item, next_input, base, out))
            base = out
            next_input += 1
        if not overlay_items:
            filter_parts.append("[base]null[vout]")

        if len(audio_labels) > 1:
            mix_inputs = "".join(f"[{label}]" for label in audio_labels)
            filter_parts.append(
                f"{mix_inputs}amix=inputs={len(audio_labels)}:duration=first:normalize=0[aout]"
            )
        elif audio_labels:
            filter_parts.append(f"[{audio_labels[0]}]anull[aout]")

        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            *inputs,
            "-filter_complex", ";".join(filter_parts),
            "-map", "[vout]",
        ]
        if audio_labels:
            cmd.extend([
                "-map", "[aout]",
                "-c:a", "aac",
                "-b:a", settings.render_audio_bitrate,
            ])
        cmd.extend([
            "-c:v", settings.render_video_codec,
            "-preset", settings.render_preset,
            "-crf", str(settings.render_crf),
            "-r", str(fps),
            "-pix_fmt", "yuv420p",
            "-t", format_number(export_duration),
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            self.output_path,
        ])
        return cmd

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_path": self.output_path,
            "work_dir": self.work_dir,
            "status": self._status.value,
            "progress": self._progress,
            "overlay_inputs": len(self.overlay_inputs()),
        }
