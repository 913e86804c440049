"""Tests for the caption overlay tree.

Features:
- Frame background and video bounds per backend capability
- Plain caption bitmaps with fade curves
- Karaoke word layout, highlight, background and scale animation
"""

import pytest

from kaption.render.geometry import AffineTransform, Size, resolve
from kaption.render.overlay_renderer import (
    LayerKind,
    OverlayBackendCapability,
    OverlayRenderer,
    PropertyCurve,
    Rect,
    RenderLayer,
    karaoke_word_rects,
    value_at,
    visible_range,
)
from kaption.render.text_bitmap import load_font, render_word_cell
from kaption.schemas.caption import CaptionCue, CaptionStyle, KaraokeType
from kaption.schemas.media import FrameStyle


@pytest.fixture
def canvas():
    return resolve(Size(1920, 1080), AffineTransform.identity(), Size(1920, 1080))


def karaoke_cue(words, karaoke_type=KaraokeType.WORD, text="The quick brown fox", **kwargs):
    return CaptionCue(
        text=text,
        start=0.5,
        end=4.0,
        words=words,
        karaoke_type=karaoke_type,
        highlight_color=kwargs.pop("highlight_color", "#FFCC00"),
        style=CaptionStyle(font_size=40, font_color="#FFFFFF", background_color="#00000080"),
        **kwargs,
    )


class TestCapability:
    """Tests for the backend capability flag."""

    def test_flags(self):
        assert OverlayBackendCapability.POST_PROCESS.supports_post_process_layer
        assert not OverlayBackendCapability.POST_PROCESS.requires_additional_track
        assert OverlayBackendCapability.ADDITIONAL_TRACK.requires_additional_track

    def test_frame_layers_with_post_process(self, canvas):
        """Test frame background and video bounds come first."""
        tree = OverlayRenderer().build([], canvas, 10.0, frame_style=FrameStyle(color="#112233", scale=0.5))
        kinds = [layer.kind for layer in tree.root.children]
        assert kinds == [LayerKind.SOLID, LayerKind.VIDEO_BOUNDS]
        assert tree.root.children[0].fill_color == (0x11, 0x22, 0x33, 255)
        bounds = tree.video_bounds
        assert bounds.rect == Rect(480, 270, 960, 540)

    def test_frame_layers_omitted_for_additional_track(self, canvas, plain_cue):
        """Test the additional-track path never obscures the video."""
        tree = OverlayRenderer().build(
            [plain_cue],
            canvas,
            10.0,
            frame_style=FrameStyle(),
            capability=OverlayBackendCapability.ADDITIONAL_TRACK,
            existing_track_ids=[1, 2],
        )
        assert tree.video_bounds is None
        assert tree.attachment == OverlayBackendCapability.ADDITIONAL_TRACK
        assert tree.overlay_track_id == 3
        assert [layer.kind for layer in tree.root.children] == [LayerKind.BITMAP]

    def test_post_process_has_no_track_id(self, canvas):
        assert OverlayRenderer().build([], canvas, 10.0).overlay_track_id is None


class TestPlainCue:
    """Tests for non-karaoke captions."""

    def test_bitmap_centred_on_canvas(self, canvas, plain_cue):
        tree = OverlayRenderer().build([plain_cue], canvas, 10.0)
        layer = tree.root.children[0]
        assert layer.kind == LayerKind.BITMAP
        assert layer.image.mode == "RGBA"
        assert layer.rect.width == layer.image.width
        assert layer.rect.center.x == pytest.approx(960)
        assert layer.rect.center.y == pytest.approx(540)

    def test_fade_curves(self, canvas, plain_cue):
        """Test fade in at start and fade out at end."""
        layer = OverlayRenderer().build([plain_cue], canvas, 10.0).root.children[0]
        assert layer.opacity == 0.0
        assert [c.to_dict() for c in layer.curves] == [
            {"property": "opacity", "from": 0.0, "to": 1.0, "begin_time": 1.0, "duration": 0.05},
            {"property": "opacity", "from": 1.0, "to": 0.0, "begin_time": 3.0, "duration": 0.05},
        ]
        assert value_at(layer, "opacity", 0.5) == 0.0
        assert value_at(layer, "opacity", 2.0) == 1.0
        assert value_at(layer, "opacity", 3.5) == 0.0

    def test_no_fades_over_whole_timeline(self, canvas):
        cue = CaptionCue(text="Always", start=0.0, end=10.0)
        layer = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        assert layer.opacity == 1.0
        assert layer.curves == []

    def test_offset_converted_from_editor_space(self, canvas):
        """Test offsets are scaled from the editor frame with y flipped."""
        cue = CaptionCue(text="Low", start=0.0, end=10.0, offset=(0, -100))
        layer = OverlayRenderer().build([cue], canvas, 10.0, editor_size=Size(960, 540)).root.children[0]
        assert layer.rect.center.y == pytest.approx(540 + 200)

    def test_stroke_capped(self):
        """Test stroke width is capped at 15% of the scaled font size."""
        style = CaptionStyle(font_size=20, stroke_color="#000000", stroke_width=10)
        glyph = OverlayRenderer().glyph_style(style, 20, 1.0)
        assert glyph.stroke_width == 3

    def test_default_shadow_radius(self):
        """Test a visible shadow with radius 0 uses the default radius."""
        style = CaptionStyle(shadow_opacity=0.5, shadow_radius=0)
        glyph = OverlayRenderer().glyph_style(style, 20, 2.0)
        assert glyph.shadow_radius == 8.0
        assert glyph.shadow[3] == 128


class TestKaraokeCue:
    """Tests for karaoke captions."""

    def test_word_layers(self, canvas, karaoke_words):
        """Test each word gets a base and a highlight bitmap."""
        container = OverlayRenderer().build([karaoke_cue(karaoke_words)], canvas, 10.0).root.children[0]
        assert container.kind == LayerKind.GROUP
        assert container.fill_color == (0, 0, 0, 0x80)
        assert len(container.children) == 8
        base, highlight = container.children[0], container.children[1]
        assert base.opacity == 1.0 and base.curves == []
        assert highlight.opacity == 0.0
        assert highlight.curves == [PropertyCurve("opacity", 0.0, 1.0, 0.0, 0.01)]
        assert value_at(container.children[3], "opacity", 1.5) == 1.0
        assert value_at(container.children[5], "opacity", 1.5) == 0.0

    def test_words_left_to_right(self, canvas, karaoke_words):
        container = OverlayRenderer().build([karaoke_cue(karaoke_words)], canvas, 10.0).root.children[0]
        bases = container.children[0::2]
        xs = [layer.rect.x for layer in bases]
        assert xs == sorted(xs)
        assert len({layer.rect.y for layer in bases}) == 1

    def test_container_fades(self, canvas, karaoke_words):
        container = OverlayRenderer().build([karaoke_cue(karaoke_words)], canvas, 10.0).root.children[0]
        assert container.opacity == 0.0
        assert [c.begin_time for c in container.curves] == [0.5, 4.0]

    def test_word_background(self, canvas, karaoke_words):
        """Test word background layers fade in with the highlight."""
        cue = karaoke_cue(
            karaoke_words,
            KaraokeType.WORD_BACKGROUND,
            word_background_color="#007AFF",
        )
        container = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        assert len(container.children) == 12
        bg = container.children[0]
        assert bg.kind == LayerKind.ROUNDED_RECT
        assert bg.fill_color[:3] == (0x00, 0x7A, 0xFF)
        assert bg.fill_color[3] in (127, 128)
        assert bg.corner_radius == 4
        assert bg.curves == container.children[2].curves

    def test_word_background_missing_colour_skips_background(self, canvas, karaoke_words):
        cue = karaoke_cue(karaoke_words, KaraokeType.WORD_BACKGROUND)
        container = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        assert len(container.children) == 8

    def test_word_and_scale(self, canvas, karaoke_words):
        """Test base and highlight scale up at word start and back at word end."""
        cue = karaoke_cue(karaoke_words, KaraokeType.WORD_AND_SCALE, active_word_scale=1.5)
        container = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        base, highlight = container.children[2], container.children[3]
        for layer in (base, highlight):
            assert layer.curves_for("scale") == [
                PropertyCurve("scale", 1.0, 1.5, 1.0, 0.15),
                PropertyCurve("scale", 1.5, 1.0, 2.0, 0.15),
            ]
        assert value_at(base, "scale", 1.5) == 1.5
        assert value_at(base, "scale", 3.0) == 1.0

    def test_missing_highlight_renders_plain(self, canvas, karaoke_words):
        """Test a karaoke cue without highlight colour falls back to a plain bitmap."""
        cue = karaoke_cue(karaoke_words, highlight_color=None)
        layer = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        assert layer.kind == LayerKind.BITMAP

    def test_multi_line_uses_text_lines(self, canvas, karaoke_words):
        cue = karaoke_cue(karaoke_words, text="The quick\nbrown fox")
        container = OverlayRenderer().build([cue], canvas, 10.0).root.children[0]
        bases = container.children[0::2]
        assert bases[0].rect.y == bases[1].rect.y
        assert bases[2].rect.y > bases[1].rect.y

    def test_stroked_words_fit_their_cells(self, canvas, karaoke_words):
        """Test the outline of each word stays inside its cell."""
        style = CaptionStyle(font_size=40, stroke_color="#000000", stroke_width=6)
        cue = CaptionCue(
            text="The quick brown fox",
            start=0.5,
            end=4.0,
            words=karaoke_words,
            karaoke_type=KaraokeType.WORD,
            highlight_color="#FFCC00",
            style=style,
        )
        renderer = OverlayRenderer()
        container = renderer.build([cue], canvas, 10.0).root.children[0]
        font = load_font(40, bold=True)
        glyphs = renderer.glyph_style(style, 40, 1.0)
        assert glyphs.stroke_width == 6

        for word, layer in zip(karaoke_words, container.children[0::2]):
            roomy = render_word_cell(word.text, font, glyphs, (layer.rect.width + 40, layer.rect.height + 40))
            assert layer.image.getchannel("A").getbbox() == roomy.getchannel("A").getbbox()


class TestKaraokeWordRects:
    """Tests for word cell layout."""

    def test_single_line(self):
        rects = karaoke_word_rects("a b", [10, 20], padding=2, line_height=8, spacing=5, line_spacing=4)
        assert rects == [Rect(2, 2, 10, 8), Rect(17, 2, 20, 8)]

    def test_multi_line_centred(self):
        """Test lines are centred within the widest line and stacked."""
        rects = karaoke_word_rects(
            "a b\nc", [10, 10, 10], padding=0, line_height=20, spacing=5, line_spacing=4
        )
        assert rects[0] == Rect(0, 0, 10, 20)
        assert rects[1] == Rect(15, 0, 10, 20)
        assert rects[2] == Rect(7.5, 24, 10, 20)

    def test_extra_words_join_last_line(self):
        rects = karaoke_word_rects(
            "a\nb", [10, 10, 10], padding=0, line_height=20, spacing=0, line_spacing=0
        )
        assert rects[1].y == rects[2].y == 20
        assert rects[2].x == rects[1].x + 10


class TestTreeTraversal:
    """Tests for tree walking and visibility."""

    def test_iter_layers_depth_first(self, canvas, karaoke_words, plain_cue):
        tree = OverlayRenderer().build([karaoke_cue(karaoke_words), plain_cue], canvas, 10.0)
        names = [layer.name for layer in tree.iter_layers()]
        assert names[0] == "overlay"
        assert names[1].startswith("karaoke:")
        assert names[2] == "word:The"
        assert names[-1].startswith("caption:")

    def test_iter_placed_absolute_rects(self, canvas, karaoke_words):
        tree = OverlayRenderer().build([karaoke_cue(karaoke_words)], canvas, 10.0)
        placed = list(tree.iter_placed())
        container = placed[1]
        first_word = placed[2]
        assert first_word.ancestors == (tree.root, container.layer)
        assert first_word.rect.x == pytest.approx(container.rect.x + first_word.layer.rect.x)

    def test_visible_range(self):
        layer = RenderLayer(
            name="x",
            kind=LayerKind.BITMAP,
            rect=Rect(0, 0, 1, 1),
            opacity=0.0,
            curves=[
                PropertyCurve("opacity", 0.0, 1.0, 1.0, 0.05),
                PropertyCurve("opacity", 1.0, 0.0, 3.0, 0.05),
            ],
        )
        assert visible_range(layer, 10.0) == pytest.approx((1.0, 3.05))

    def test_never_visible(self):
        layer = RenderLayer(name="x", kind=LayerKind.BITMAP, rect=Rect(0, 0, 1, 1), opacity=0.0)
        assert visible_range(layer, 10.0) is None


class TestProgress:
    """Tests for per-cue progress reporting."""

    def test_sync_callback(self, canvas, plain_cue):
        reports = []
        OverlayRenderer().build([plain_cue, plain_cue], canvas, 10.0, progress_callback=reports.append)
        assert reports == [0.0, 0.5, 1.0]

    @pytest.mark.asyncio
    async def test_async_callback(self, canvas, plain_cue):
        reports = []

        async def record(fraction):
            reports.append(fraction)

        tree = await OverlayRenderer().build_async([plain_cue], canvas, 10.0, progress_callback=record)
        assert reports == [0.0, 1.0]
        assert len(tree.root.children) == 1

    def test_to_dict(self, canvas, plain_cue):
        data = OverlayRenderer().build([plain_cue], canvas, 10.0).to_dict()
        assert data["attachment"] == "post_process"
        assert data["root"]["children"][0]["kind"] == "bitmap"
