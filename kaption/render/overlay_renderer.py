"""Overlay layer tree for captions.

Builds a time-keyed scene graph over the output canvas:
- Optional frame background and scaled video bounds
- One bitmap layer per plain caption, faded in and out with the cue
- Karaoke captions as a container of per-word base and highlight bitmaps,
  with optional word backgrounds and active-word scaling

Layer rects are relative to the parent layer, in canvas pixels with the
origin at the top left. Animated properties are described by PropertyCurves
that hold their final value after they end.
"""

import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Iterator, Literal

from PIL import Image

from kaption.config import Settings, get_settings
from kaption.presets import karaoke_preset_for
from kaption.render.geometry import Canvas, Point, Size, convert_offset
from kaption.render.text_bitmap import (
    GlyphStyle,
    hex_to_rgba,
    line_height,
    load_font,
    render_text_box,
    render_word_cell,
    text_width,
)
from kaption.schemas.caption import CaptionCue, CaptionStyle, KaraokeType, color_alpha
from kaption.schemas.media import FrameStyle
from kaption.utils.interpolation import evaluate_curves

logger = logging.getLogger(__name__)

CurveProperty = Literal["opacity", "scale"]
ProgressCallback = Callable[[float], Any] | Callable[[float], Awaitable[Any]]


class OverlayBackendCapability(str, Enum):
    """How the encode backend composites the overlay."""

    # Overlay tree wraps the video (frame background and bounds allowed)
    POST_PROCESS = "post_process"
    # Overlay is an extra track above the video and must not obscure it
    ADDITIONAL_TRACK = "additional_track"

    @property
    def supports_post_process_layer(self) -> bool:
        return self == OverlayBackendCapability.POST_PROCESS

    @property
    def requires_additional_track(self) -> bool:
        return self == OverlayBackendCapability.ADDITIONAL_TRACK


class LayerKind(str, Enum):
    BITMAP = "bitmap"
    SOLID = "solid"
    ROUNDED_RECT = "rounded_rect"
    GROUP = "group"
    VIDEO_BOUNDS = "video_bounds"


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2, self.y + self.height / 2)

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    def offset(self, dx: float, dy: float) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)


@dataclass(frozen=True)
class PropertyCurve:
    """Linear animation of one layer property."""

    property: CurveProperty
    from_value: float
    to_value: float
    begin_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.begin_time + self.duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "property": self.property,
            "from": self.from_value,
            "to": self.to_value,
            "begin_time": self.begin_time,
            "duration": self.duration,
        }


@dataclass
class RenderLayer:
    """Node of the overlay scene graph."""

    name: str
    kind: LayerKind
    rect: Rect
    image: Image.Image | None = None
    fill_color: tuple[int, int, int, int] | None = None
    corner_radius: float = 0.0
    opacity: float = 1.0
    curves: list[PropertyCurve] = field(default_factory=list)
    children: list["RenderLayer"] = field(default_factory=list)

    def add_child(self, layer: "RenderLayer") -> "RenderLayer":
        self.children.append(layer)
        return layer

    def curves_for(self, prop: CurveProperty) -> list[PropertyCurve]:
        return [c for c in self.curves if c.property == prop]

    def initial_value(self, prop: CurveProperty) -> float:
        return self.opacity if prop == "opacity" else 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "rect": [self.rect.x, self.rect.y, self.rect.width, self.rect.height],
            "image_size": list(self.image.size) if self.image is not None else None,
            "fill_color": list(self.fill_color) if self.fill_color else None,
            "corner_radius": self.corner_radius,
            "opacity": self.opacity,
            "curves": [c.to_dict() for c in self.curves],
            "children": [c.to_dict() for c in self.children],
        }


@dataclass(frozen=True)
class PlacedLayer:
    """Layer with its absolute canvas rect and its ancestor chain."""

    layer: RenderLayer
    rect: Rect
    ancestors: tuple[RenderLayer, ...]


def value_at(layer: RenderLayer, prop: CurveProperty, time: float) -> float:
    """Value of ``prop`` on ``layer`` at ``time`` (seconds)."""
    return evaluate_curves(layer.curves_for(prop), time, initial=layer.initial_value(prop))


def visible_range(layer: RenderLayer, total_duration: float) -> tuple[float, float] | None:
    """Interval outside of which the layer's own opacity is zero.

    Returns None if the layer never becomes visible.
    """
    curves = sorted(layer.curves_for("opacity"), key=lambda c: c.begin_time)
    start = 0.0
    if layer.opacity <= 0:
        shown = [c for c in curves if c.to_value > 0]
        if not shown:
            return None
        start = shown[0].begin_time
    end = total_duration
    if curves and curves[-1].to_value <= 0 and curves[-1].begin_time >= start:
        end = curves[-1].end_time
    return start, min(end, total_duration)


@dataclass
class OverlayTree:
    """Overlay scene graph attached to a composed timeline."""

    root: RenderLayer
    canvas: Canvas
    duration: float
    attachment: OverlayBackendCapability
    overlay_track_id: int | None = None

    def iter_layers(self) -> Iterator[RenderLayer]:
        """Depth-first, parents before children, in paint order."""
        stack = [self.root]
        while stack:
            layer = stack.pop()
            yield layer
            stack.extend(reversed(layer.children))

    def iter_placed(self) -> Iterator[PlacedLayer]:
        """Like iter_layers, with absolute rects and ancestors."""

        def walk(layer: RenderLayer, origin: Point, ancestors: tuple[RenderLayer, ...]):
            rect = layer.rect.offset(origin.x, origin.y)
            yield PlacedLayer(layer=layer, rect=rect, ancestors=ancestors)
            for child in layer.children:
                yield from walk(child, Point(rect.x, rect.y), ancestors + (layer,))

        yield from walk(self.root, Point(0.0, 0.0), ())

    def find(self, kind: LayerKind) -> RenderLayer | None:
        for layer in self.iter_layers():
            if layer.kind == kind:
                return layer
        return None

    @property
    def video_bounds(self) -> RenderLayer | None:
        return self.find(LayerKind.VIDEO_BOUNDS)

    def value_at(self, layer: RenderLayer, prop: CurveProperty, time: float) -> float:
        return value_at(layer, prop, time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "canvas": [self.canvas.width, self.canvas.height],
            "duration": self.duration,
            "attachment": self.attachment.value,
            "overlay_track_id": self.overlay_track_id,
            "root": self.root.to_dict(),
        }


# =============================================================================
# Layout helpers
# =============================================================================


def karaoke_word_rects(
    text: str,
    widths: list[float],
    *,
    padding: float,
    line_height: float,
    spacing: float,
    line_spacing: float,
) -> list[Rect]:
    """Word cell rects inside a karaoke container.

    Without explicit line breaks words run left to right on one line. With
    line breaks, words are assigned to the text's lines by position (the
    n-th timed word goes where the n-th word of the text is), each line is
    centred within the widest line, and lines stack downward. Words beyond
    the text's word count continue the last line.
    """
    if "\n" not in text:
        rects = []
        x = padding
        for width in widths:
            rects.append(Rect(x, padding, width, line_height))
            x += width + spacing
        return rects

    line_counts = [len(line.split()) for line in text.split("\n")]
    assignment: list[int] = []
    for line_idx, count in enumerate(line_counts):
        assignment.extend([line_idx] * count)
    if len(assignment) < len(widths):
        assignment.extend([len(line_counts) - 1] * (len(widths) - len(assignment)))
    assignment = assignment[:len(widths)]

    line_words: list[list[int]] = [[] for _ in line_counts]
    for word_idx, line_idx in enumerate(assignment):
        line_words[line_idx].append(word_idx)

    line_widths = [
        sum(widths[i] for i in idxs) + spacing * max(0, len(idxs) - 1)
        for idxs in line_words
    ]
    max_line_width = max(line_widths, default=0.0)

    rects: list[Rect] = [Rect(0, 0, 0, 0)] * len(widths)
    for line_idx, idxs in enumerate(line_words):
        y = padding + line_idx * (line_height + line_spacing)
        x = padding + (max_line_width - line_widths[line_idx]) / 2
        for word_idx in idxs:
            rects[word_idx] = Rect(x, y, widths[word_idx], line_height)
            x += widths[word_idx] + spacing
    return rects


class OverlayRenderer:
    """Builds the overlay tree for a list of caption cues."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Tree
    # -------------------------------------------------------------------------

    def _new_tree(
        self,
        canvas: Canvas,
        total_duration: float,
        frame_style: FrameStyle | None,
        capability: OverlayBackendCapability,
        existing_track_ids: Iterable[int],
    ) -> OverlayTree:
        root = RenderLayer(
            name="overlay",
            kind=LayerKind.GROUP,
            rect=Rect(0, 0, canvas.width, canvas.height),
        )
        if frame_style is not None and capability.supports_post_process_layer:
            root.add_child(RenderLayer(
                name="frame_background",
                kind=LayerKind.SOLID,
                rect=Rect(0, 0, canvas.width, canvas.height),
                fill_color=hex_to_rgba(frame_style.color),
            ))
            bounds = Size(canvas.width * frame_style.scale, canvas.height * frame_style.scale)
            root.add_child(RenderLayer(
                name="video",
                kind=LayerKind.VIDEO_BOUNDS,
                rect=Rect(
                    (canvas.width - bounds.width) / 2,
                    (canvas.height - bounds.height) / 2,
                    bounds.width,
                    bounds.height,
                ),
            ))

        overlay_track_id = None
        if capability.requires_additional_track:
            overlay_track_id = max(existing_track_ids, default=0) + 1

        return OverlayTree(
            root=root,
            canvas=canvas,
            duration=total_duration,
            attachment=capability,
            overlay_track_id=overlay_track_id,
        )

    def build(
        self,
        cues: list[CaptionCue],
        canvas: Canvas,
        total_duration: float,
        frame_style: FrameStyle | None = None,
        editor_size: Size | None = None,
        capability: OverlayBackendCapability = OverlayBackendCapability.POST_PROCESS,
        *,
        existing_track_ids: Iterable[int] = (),
        progress_callback: Callable[[float], Any] | None = None,
    ) -> OverlayTree:
        """Build the overlay tree.

        Args:
            cues: Caption cues in output-timeline seconds
            canvas: Resolved output canvas
            total_duration: Output timeline duration
            frame_style: Optional frame around a scaled-down video
            editor_size: Frame size cue offsets were authored in (defaults to
                the canvas size)
            capability: Attachment strategy of the encode backend
            existing_track_ids: Timeline track ids, for the overlay track id
            progress_callback: Called with the fraction of cues built

        Returns:
            OverlayTree
        """
        tree = self._new_tree(canvas, total_duration, frame_style, capability, existing_track_ids)
        for index, cue in enumerate(cues):
            if progress_callback:
                progress_callback(index / len(cues))
            tree.root.add_child(self.build_cue(cue, canvas, total_duration, editor_size))
        if progress_callback:
            progress_callback(1.0)
        self._log_tree(tree, len(cues))
        return tree

    async def build_async(
        self,
        cues: list[CaptionCue],
        canvas: Canvas,
        total_duration: float,
        frame_style: FrameStyle | None = None,
        editor_size: Size | None = None,
        capability: OverlayBackendCapability = OverlayBackendCapability.POST_PROCESS,
        *,
        existing_track_ids: Iterable[int] = (),
        progress_callback: ProgressCallback | None = None,
    ) -> OverlayTree:
        """Same as :meth:`build`, awaiting the callback if it is a coroutine."""
        tree = self._new_tree(canvas, total_duration, frame_style, capability, existing_track_ids)

        async def report(fraction: float) -> None:
            if progress_callback is None:
                return
            result = progress_callback(fraction)
            if inspect.isawaitable(result):
                await result

        for index, cue in enumerate(cues):
            await report(index / len(cues))
            tree.root.add_child(self.build_cue(cue, canvas, total_duration, editor_size))
        await report(1.0)
        self._log_tree(tree, len(cues))
        return tree

    def _log_tree(self, tree: OverlayTree, cue_count: int) -> None:
        layer_count = sum(1 for _ in tree.iter_layers())
        logger.info(
            f"[OVERLAY] Built {cue_count} cues, {layer_count} layers, "
            f"attachment={tree.attachment.value}"
        )

    # -------------------------------------------------------------------------
    # Cues
    # -------------------------------------------------------------------------

    def build_cue(
        self,
        cue: CaptionCue,
        canvas: Canvas,
        total_duration: float,
        editor_size: Size | None = None,
    ) -> RenderLayer:
        """Layer for one cue, centred at its converted offset."""
        center, ratio = convert_offset(cue.offset, editor_size or canvas.size, canvas.size)
        if cue.is_karaoke:
            if cue.highlight_color is None:
                logger.warning(
                    f"[OVERLAY] Karaoke cue without highlight colour, rendering plain: {cue.text!r}"
                )
            else:
                return self._karaoke_layer(cue, center, ratio, total_duration)
        return self._plain_layer(cue, center, ratio, total_duration)

    def add_fade_curves(self, layer: RenderLayer, start: float, end: float, total_duration: float) -> None:
        """Fade in at ``start`` (unless 0) and out at ``end`` (unless at the end)."""
        fade = self.settings.overlay_fade_duration_s
        if start > 0:
            layer.opacity = 0.0
            layer.curves.append(PropertyCurve("opacity", 0.0, 1.0, start, fade))
        if end < total_duration:
            layer.curves.append(PropertyCurve("opacity", 1.0, 0.0, end, fade))

    def glyph_style(
        self,
        style: CaptionStyle,
        font_size: float,
        ratio: float,
        fill_color: str | None = None,
    ) -> GlyphStyle:
        """Scaled glyph painting for a caption style."""
        stroke = None
        stroke_width = 0
        if color_alpha(style.stroke_color) > 0 and style.stroke_width > 0:
            stroke = hex_to_rgba(style.stroke_color)
            max_stroke = font_size * self.settings.overlay_max_stroke_ratio
            stroke_width = max(1, int(round(min(style.stroke_width * ratio, max_stroke))))

        shadow = None
        shadow_radius = 0.0
        if style.has_shadow:
            radius = style.shadow_radius or self.settings.overlay_default_shadow_radius
            shadow = hex_to_rgba(style.shadow_color, style.shadow_opacity)
            shadow_radius = radius * ratio

        return GlyphStyle(
            fill=hex_to_rgba(fill_color or style.font_color),
            stroke=stroke,
            stroke_width=stroke_width,
            shadow=shadow,
            shadow_radius=shadow_radius,
            shadow_offset=(style.shadow_x * ratio, style.shadow_y * ratio),
        )

    def _plain_layer(
        self,
        cue: CaptionCue,
        center: Point,
        ratio: float,
        total_duration: float,
    ) -> RenderLayer:
        style = cue.style
        font_size = style.font_size * ratio
        font = load_font(font_size, font_family=style.font_family)
        image = render_text_box(
            cue.text,
            font,
            self.glyph_style(style, font_size, ratio),
            padding=style.padding * ratio,
            background=hex_to_rgba(style.background_color),
            corner_radius=style.corner_radius * ratio,
        )
        width, height = image.size
        layer = RenderLayer(
            name=f"caption:{cue.text[:24]}",
            kind=LayerKind.BITMAP,
            rect=Rect(center.x - width / 2, center.y - height / 2, width, height),
            image=image,
        )
        self.add_fade_curves(layer, cue.start, cue.end, total_duration)
        return layer

    def _karaoke_layer(
        self,
        cue: CaptionCue,
        center: Point,
        ratio: float,
        total_duration: float,
    ) -> RenderLayer:
        style = cue.style
        settings = self.settings
        font_size = style.font_size * ratio
        padding = style.padding * ratio
        font = load_font(font_size, bold=True, font_family=style.font_family)
        base_style = self.glyph_style(style, font_size, ratio)
        highlight_style = self.glyph_style(style, font_size, ratio, fill_color=cue.highlight_color)
        stroke_width = base_style.stroke_width if base_style.has_stroke else 0
        lh = line_height(font, stroke_width)

        word_padding = 0.0
        if cue.karaoke_type == KaraokeType.WORD_BACKGROUND:
            word_padding = settings.overlay_word_background_padding_px

        words = list(cue.words)
        widths = [text_width(w.text, font, stroke_width) + 2 * word_padding for w in words]
        spacing = karaoke_preset_for(cue.karaoke_type).calibrated_export_spacing
        rects = karaoke_word_rects(
            cue.text,
            widths,
            padding=padding,
            line_height=lh,
            spacing=spacing,
            line_spacing=settings.overlay_line_spacing_px,
        )

        width = max((r.max_x for r in rects), default=0.0) + padding
        height = max((r.max_y for r in rects), default=lh) + padding
        container = RenderLayer(
            name=f"karaoke:{cue.text[:24]}",
            kind=LayerKind.GROUP,
            rect=Rect(center.x - width / 2, center.y - height / 2, width, height),
            fill_color=hex_to_rgba(style.background_color),
            corner_radius=style.corner_radius * ratio,
        )

        highlight_duration = settings.overlay_highlight_duration_s
        scale = cue.active_word_scale

        for word, rect in zip(words, rects):
            if cue.karaoke_type == KaraokeType.WORD_BACKGROUND:
                if cue.word_background_color is None:
                    logger.warning(f"[OVERLAY] No word background colour for {word.text!r}")
                else:
                    container.add_child(RenderLayer(
                        name=f"word_bg:{word.text}",
                        kind=LayerKind.ROUNDED_RECT,
                        rect=rect,
                        fill_color=hex_to_rgba(cue.word_background_color, 0.5),
                        corner_radius=settings.overlay_word_background_radius_px,
                        opacity=0.0,
                        curves=[PropertyCurve("opacity", 0.0, 1.0, word.start, highlight_duration)],
                    ))

            cell = (rect.width, rect.height)
            base = container.add_child(RenderLayer(
                name=f"word:{word.text}",
                kind=LayerKind.BITMAP,
                rect=rect,
                image=render_word_cell(word.text, font, base_style, cell, horizontal_padding=word_padding),
            ))
            highlight = container.add_child(RenderLayer(
                name=f"word_highlight:{word.text}",
                kind=LayerKind.BITMAP,
                rect=rect,
                image=render_word_cell(word.text, font, highlight_style, cell, horizontal_padding=word_padding),
                opacity=0.0,
                curves=[PropertyCurve("opacity", 0.0, 1.0, word.start, highlight_duration)],
            ))

            if cue.karaoke_type == KaraokeType.WORD_AND_SCALE:
                scale_duration = settings.overlay_scale_duration_s
                for layer in (base, highlight):
                    layer.curves.append(PropertyCurve("scale", 1.0, scale, word.start, scale_duration))
                    layer.curves.append(PropertyCurve("scale", scale, 1.0, word.end, scale_duration))

        self.add_fade_curves(container, cue.start, cue.end, total_duration)
        return container
