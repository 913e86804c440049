"""Text bitmaps for caption overlays using Pillow.

Features:
- Font lookup over configurable candidate paths (macOS, then Linux fallbacks)
- Padded caption boxes with rounded background, shadow, stroke and fill
- Single-word cells for karaoke highlighting
- Width measurement shared with the caption segmenter
"""

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from kaption.config import get_settings

logger = logging.getLogger(__name__)

Font = ImageFont.FreeTypeFont | ImageFont.ImageFont
RGBA = tuple[int, int, int, int]


def hex_to_rgba(hex_color: str, opacity: float = 1.0) -> RGBA:
    """Parse #RGB, #RRGGBB or #RRGGBBAA; ``opacity`` multiplies the alpha."""
    hex_color = hex_color.lstrip("#")
    if len(hex_color) == 3:
        hex_color = "".join([c * 2 for c in hex_color])
    r = int(hex_color[0:2], 16)
    g = int(hex_color[2:4], 16)
    b = int(hex_color[4:6], 16)
    alpha = int(hex_color[6:8], 16) if len(hex_color) == 8 else 255
    return (r, g, b, int(round(alpha * opacity)))


@lru_cache(maxsize=64)
def _load_font(size: int, candidates: tuple[str, ...]) -> Font:
    for candidate_path in candidates:
        try:
            font = ImageFont.truetype(candidate_path, size)
            logger.debug(f"[TEXT] Loaded font: {candidate_path} @ {size}px")
            return font
        except OSError:
            continue
    logger.warning("[TEXT] No suitable font found, using PIL default")
    return ImageFont.load_default(size=size)


def load_font(size: float, *, bold: bool = False, font_family: str | None = None) -> Font:
    """Load the caption font at ``size`` pixels.

    ``font_family`` may be a path to a font file; it is tried before the
    configured candidates.
    """
    settings = get_settings()
    candidates = settings.bold_font_candidates if bold else settings.font_candidates
    if font_family:
        candidates = [font_family, *candidates]
    return _load_font(max(1, int(round(size))), tuple(candidates))


def text_width(text: str, font: Font, stroke_width: int = 0) -> float:
    """Width of a single line of text, rounded up to whole pixels.

    With a stroke, the outline on both sides is included, as is any ink that
    overhangs the advance width.
    """
    width = font.getlength(text)
    if stroke_width > 0:
        width += 2 * stroke_width
        if text:
            # getbbox() already pads the ink by the stroke on each side
            width = max(width, font.getbbox(text, stroke_width=stroke_width)[2] + stroke_width)
    return float(math.ceil(width))


def line_height(font: Font, stroke_width: int = 0) -> float:
    """Height of one line of text (ascent + descent), plus the stroke above and below."""
    if isinstance(font, ImageFont.FreeTypeFont):
        ascent, descent = font.getmetrics()
        return float(ascent + descent + 2 * stroke_width)
    bbox = font.getbbox("Ag")
    return float(bbox[3] - bbox[1] + 2 * stroke_width)


def text_size(text: str, font: Font, stroke_width: int = 0) -> tuple[float, float]:
    """Width and height of possibly multi-line text."""
    lines = text.split("\n")
    width = max(text_width(line, font, stroke_width) for line in lines)
    return width, line_height(font, stroke_width) * len(lines)


def width_measurer(font: Font) -> Callable[[str], float]:
    """Width function for the caption segmenter."""
    return lambda text: text_width(text, font)


@dataclass(frozen=True)
class GlyphStyle:
    """How glyphs are painted: shadow, then stroke, then fill."""

    fill: RGBA
    stroke: RGBA | None = None
    stroke_width: int = 0
    shadow: RGBA | None = None
    shadow_radius: float = 0.0
    shadow_offset: tuple[float, float] = (0.0, 0.0)

    @property
    def has_stroke(self) -> bool:
        return self.stroke is not None and self.stroke[3] > 0 and self.stroke_width > 0

    @property
    def has_shadow(self) -> bool:
        return self.shadow is not None and self.shadow[3] > 0 and self.shadow_radius > 0


def _draw_lines(
    draw: ImageDraw.ImageDraw,
    lines: list[tuple[float, float, str]],
    font: Font,
    fill: RGBA | int,
    stroke_width: int = 0,
    stroke_fill: RGBA | int | None = None,
) -> None:
    for x, y, line in lines:
        draw.text((x, y), line, font=font, fill=fill, stroke_width=stroke_width, stroke_fill=stroke_fill)


def _paint_glyphs(
    img: Image.Image,
    lines: list[tuple[float, float, str]],
    font: Font,
    style: GlyphStyle,
) -> None:
    stroke_width = style.stroke_width if style.has_stroke else 0
    if style.has_shadow:
        # Shadow is cast by the stroke outline when there is one, otherwise by the fill
        silhouette = Image.new("L", img.size, 0)
        _draw_lines(ImageDraw.Draw(silhouette), lines, font, 255, stroke_width, 255)
        silhouette = silhouette.filter(ImageFilter.GaussianBlur(style.shadow_radius / 2))
        shadow_layer = Image.new("RGBA", img.size, style.shadow[:3] + (0,))
        shadow_alpha = silhouette.point(lambda v: v * style.shadow[3] // 255)
        shadow_layer.putalpha(shadow_alpha)
        dx, dy = style.shadow_offset
        shifted = Image.new("RGBA", img.size, (0, 0, 0, 0))
        shifted.paste(shadow_layer, (int(round(dx)), int(round(dy))))
        img.alpha_composite(shifted)

    glyphs = Image.new("RGBA", img.size, (0, 0, 0, 0))
    _draw_lines(ImageDraw.Draw(glyphs), lines, font, style.fill, stroke_width, style.stroke)
    img.alpha_composite(glyphs)


def render_text_box(
    text: str,
    font: Font,
    style: GlyphStyle,
    *,
    padding: float,
    background: RGBA | None = None,
    corner_radius: float = 0.0,
) -> Image.Image:
    """Render a padded caption box as an RGBA image.

    Lines are centred horizontally. The background rectangle (with rounded
    corners) fills the whole box. The stroke outline is part of the content,
    so it never eats into the padding.
    """
    stroke_width = style.stroke_width if style.has_stroke else 0
    lines = text.split("\n")
    content_w, content_h = text_size(text, font, stroke_width)
    box_w = max(1, int(math.ceil(content_w + 2 * padding)))
    box_h = max(1, int(math.ceil(content_h + 2 * padding)))

    img = Image.new("RGBA", (box_w, box_h), (0, 0, 0, 0))
    if background is not None and background[3] > 0:
        ImageDraw.Draw(img).rounded_rectangle(
            [(0, 0), (box_w - 1, box_h - 1)],
            radius=int(round(corner_radius)),
            fill=background,
        )

    lh = line_height(font, stroke_width)
    placed = []
    for i, line in enumerate(lines):
        x = (box_w - text_width(line, font, stroke_width)) / 2 + stroke_width
        y = padding + i * lh + stroke_width
        placed.append((x, y, line))
    _paint_glyphs(img, placed, font, style)
    return img


def render_word_cell(
    text: str,
    font: Font,
    style: GlyphStyle,
    size: tuple[float, float],
    *,
    horizontal_padding: float = 0.0,
) -> Image.Image:
    """Render one karaoke word into a transparent cell of ``size``.

    Size the cell with ``text_width``/``line_height`` at the style's stroke
    width so the outline fits.
    """
    stroke_width = style.stroke_width if style.has_stroke else 0
    cell_w = max(1, int(math.ceil(size[0])))
    cell_h = max(1, int(math.ceil(size[1])))
    img = Image.new("RGBA", (cell_w, cell_h), (0, 0, 0, 0))
    _paint_glyphs(img, [(horizontal_padding + stroke_width, stroke_width, text)], font, style)
    return img


def render_rounded_rect(size: tuple[float, float], color: RGBA, radius: float) -> Image.Image:
    """Filled rounded rectangle on a transparent image."""
    w = max(1, int(math.ceil(size[0])))
    h = max(1, int(math.ceil(size[1])))
    img = Image.new("RGBA", (w, h), (0, 0, 0, 0))
    ImageDraw.Draw(img).rounded_rectangle(
        [(0, 0), (w - 1, h - 1)], radius=int(round(radius)), fill=color
    )
    return img
