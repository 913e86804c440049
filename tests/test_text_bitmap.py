"""Tests for Pillow text bitmaps.

Features:
- Stroke-aware width and line height
- Stroked glyphs fit inside word cells and caption boxes
"""

import math

from PIL import Image, ImageDraw

from kaption.render.text_bitmap import (
    GlyphStyle,
    hex_to_rgba,
    line_height,
    load_font,
    render_text_box,
    render_word_cell,
    text_width,
)

WHITE = (255, 255, 255, 255)
BLACK = (0, 0, 0, 255)


def ink_box(image: Image.Image) -> tuple[int, int, int, int] | None:
    return image.getchannel("A").getbbox()


class TestHexToRgba:
    def test_short_form(self):
        assert hex_to_rgba("#fc0") == (255, 204, 0, 255)

    def test_alpha_and_opacity(self):
        assert hex_to_rgba("#00000080", 0.5) == (0, 0, 0, 64)


class TestMeasurement:
    """Tests for stroke-aware measurement."""

    def test_plain_width_is_advance(self):
        font = load_font(32)
        assert text_width("Hello", font) == math.ceil(font.getlength("Hello"))

    def test_stroke_covers_drawn_extent(self):
        font = load_font(64, bold=True)
        draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        left, top, right, bottom = draw.textbbox((0, 0), "HI", font=font, stroke_width=8)
        assert text_width("HI", font, 8) >= right - left
        assert text_width("HI", font, 8) >= text_width("HI", font) + 16
        assert line_height(font, 8) == line_height(font) + 16


class TestStrokedWordCell:
    """Tests for word cells painted with an outline."""

    def test_outline_not_clipped(self):
        font = load_font(64, bold=True)
        style = GlyphStyle(fill=WHITE, stroke=BLACK, stroke_width=8)
        size = (text_width("HI", font, 8), line_height(font, 8))

        cell = render_word_cell("HI", font, style, size)
        roomy = render_word_cell("HI", font, style, (size[0] + 40, size[1] + 40))

        assert cell.size == (int(size[0]), int(size[1]))
        assert ink_box(cell) == ink_box(roomy)

    def test_padding_shifts_glyphs(self):
        font = load_font(48)
        style = GlyphStyle(fill=WHITE, stroke=BLACK, stroke_width=4)
        size = (text_width("go", font, 4), line_height(font, 4))
        plain = ink_box(render_word_cell("go", font, style, size))
        padded = ink_box(render_word_cell("go", font, style, (size[0] + 20, size[1]), horizontal_padding=10))
        assert padded[0] == plain[0] + 10

    def test_transparent_stroke_ignored(self):
        font = load_font(48)
        hidden = GlyphStyle(fill=WHITE, stroke=(0, 0, 0, 0), stroke_width=6)
        plain = GlyphStyle(fill=WHITE)
        size = (text_width("go", font) + 20, line_height(font))
        assert ink_box(render_word_cell("go", font, hidden, size)) == ink_box(
            render_word_cell("go", font, plain, size)
        )


class TestTextBox:
    """Tests for padded caption boxes."""

    def test_stroke_inside_padding(self):
        font = load_font(40)
        style = GlyphStyle(fill=WHITE, stroke=BLACK, stroke_width=5)
        tight = render_text_box("Hello", font, style, padding=0)
        padded = render_text_box("Hello", font, style, padding=12)

        assert padded.size == (tight.width + 24, tight.height + 24)
        t_left, t_top, t_right, t_bottom = ink_box(tight)
        p_left, p_top, p_right, p_bottom = ink_box(padded)
        assert (p_right - p_left, p_bottom - p_top) == (t_right - t_left, t_bottom - t_top)

    def test_background_fills_box(self):
        font = load_font(24)
        image = render_text_box("Hi", font, GlyphStyle(fill=WHITE), padding=8, background=(0, 0, 0, 128))
        assert image.getpixel((image.width // 2, 1))[3] == 128

    def test_multi_line_height(self):
        font = load_font(24)
        style = GlyphStyle(fill=WHITE, stroke=BLACK, stroke_width=2)
        image = render_text_box("one\ntwo", font, style, padding=0)
        assert image.height == math.ceil(2 * line_height(font, 2))
