"""Tests for settings, error types, logging setup and input schemas."""

import logging

import pytest

from kaption.config import Settings
from kaption.exceptions import (
    AssetLoadError,
    EncodeError,
    KaptionError,
    UnsupportedOrientationError,
)
from kaption.schemas.caption import TRANSPARENT, CaptionCue, CaptionStyle, WordTiming
from kaption.schemas.media import Clip, FrameStyle, TrimRange
from kaption.utils.logging_config import setup_logging


@pytest.fixture
def kaption_logger():
    """Restore the package logger after setup_logging() changed it."""
    logger = logging.getLogger("kaption")
    level, handlers = logger.level, list(logger.handlers)
    yield logger
    logger.setLevel(level)
    logger.handlers = handlers


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.render_fps == 30
        assert settings.stage_encode_span == (0.6, 1.0)
        assert settings.segment_target_cps == 15

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("KAPTION_RENDER_FPS", "24")
        monkeypatch.setenv("KAPTION_FFMPEG_PATH", "/opt/ffmpeg/bin/ffmpeg")
        settings = Settings()
        assert settings.render_fps == 24
        assert settings.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"

    def test_font_candidates_not_empty(self):
        settings = Settings()
        assert settings.font_candidates
        assert settings.bold_font_candidates


class TestExceptions:
    """Tests for the error hierarchy."""

    def test_to_dict(self):
        error = AssetLoadError("Video not found", source="a.mp4")
        assert error.to_dict() == {
            "code": "ASSET_LOAD_FAILED",
            "message": "Video not found",
            "details": {"source": "a.mp4"},
        }

    def test_default_message(self):
        assert str(KaptionError()) == "An unexpected error occurred"

    def test_code_override(self):
        assert KaptionError("x", code="CUSTOM").code == "CUSTOM"

    def test_encode_error_message_from_cause(self):
        cause = RuntimeError("exit 1")
        error = EncodeError(cause=cause)
        assert error.message == "Encoding failed: exit 1"
        assert error.cause is cause

    def test_orientation_matrix_in_details(self):
        error = UnsupportedOrientationError((0.5, 0.0, 0.0, 1.0))
        assert error.details == {"matrix": [0.5, 0.0, 0.0, 1.0]}
        assert isinstance(error, KaptionError)


class TestSetupLogging:
    def test_level_and_single_handler(self, kaption_logger):
        setup_logging("debug")
        logger = setup_logging("warning")
        assert logger is kaption_logger
        assert logger.level == logging.WARNING
        assert sum(1 for h in logger.handlers if getattr(h, "_kaption_console", False)) == 1

    def test_unknown_level_falls_back_to_info(self, kaption_logger):
        assert setup_logging("chatty").level == logging.INFO


class TestCaptionSchemas:
    """Tests for caption input validation."""

    def test_colour_normalization(self):
        style = CaptionStyle(font_color="#ffcc00", stroke_color="clear")
        assert style.font_color == "#FFCC00"
        assert style.stroke_color == TRANSPARENT

    def test_invalid_colour(self):
        with pytest.raises(ValueError):
            CaptionStyle(font_color="yellow")

    def test_shadow_needs_colour_and_opacity(self):
        assert not CaptionStyle(shadow_color=TRANSPARENT, shadow_opacity=0.5).has_shadow
        assert not CaptionStyle(shadow_opacity=0).has_shadow
        assert CaptionStyle(shadow_opacity=0.5).has_shadow

    def test_overlapping_words_rejected(self):
        with pytest.raises(ValueError, match="overlaps"):
            CaptionCue(
                text="a b",
                start=0.0,
                end=2.0,
                words=(WordTiming(text="a", start=0.0, end=1.5), WordTiming(text="b", start=1.0, end=2.0)),
            )

    def test_cue_end_before_start(self):
        with pytest.raises(ValueError):
            CaptionCue(text="x", start=2.0, end=1.0)

    def test_karaoke_requires_words(self):
        assert not CaptionCue(text="x", start=0.0, end=1.0, karaoke_type="word").is_karaoke


class TestMediaSchemas:
    def test_frame_colour_upper(self):
        assert FrameStyle(color="#abcdef").color == "#ABCDEF"

    def test_frame_scale_bounds(self):
        with pytest.raises(ValueError):
            FrameStyle(scale=1.5)

    def test_trim_order(self):
        with pytest.raises(ValueError):
            TrimRange(start=3.0, end=1.0)

    def test_effective_trim_defaults_to_full_clip(self):
        assert Clip(source="a.mp4", duration=4.0).effective_trim == TrimRange(start=0.0, end=4.0)
