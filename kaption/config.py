import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KAPTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Kaption"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render settings
    render_fps: int = 30
    render_video_codec: str = "libx264"
    render_crf: int = 18
    render_preset: str = "medium"
    render_audio_bitrate: str = "192k"
    render_work_dir_prefix: str = "kaption_render_"
    render_output_name: str = "kaption_output.mp4"

    # Fonts - stored as string, parsed via computed property
    font_candidates_raw: str = (
        "/System/Library/Fonts/SFNS.ttf,"
        "/System/Library/Fonts/Helvetica.ttc,"
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf,"
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf,"
        "/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc"
    )
    bold_font_candidates_raw: str = (
        "/System/Library/Fonts/SFNS.ttf,"
        "/System/Library/Fonts/Helvetica.ttc,"
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf,"
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf,"
        "/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc"
    )

    @computed_field
    @property
    def font_candidates(self) -> list[str]:
        """Parse font candidates from a comma-separated string or JSON array."""
        return _parse_path_list(self.font_candidates_raw)

    @computed_field
    @property
    def bold_font_candidates(self) -> list[str]:
        """Parse bold font candidates from a comma-separated string or JSON array."""
        return _parse_path_list(self.bold_font_candidates_raw)

    # Caption presets
    default_preset_name: str = "Modern White"

    # Caption segmentation (reading speed and layout)
    segment_target_cps: float = 15.0
    segment_min_duration_s: float = 1.0
    segment_max_duration_s: float = 4.5
    segment_gap_s: float = 0.08
    segment_expand_short_cues: bool = False
    segment_joiner: str = " "
    # Usable caption width and reference font size, as fractions of the video rect
    segment_width_ratio: float = 0.92
    segment_font_ratio: float = 0.055

    # Overlay animation timings (seconds)
    overlay_fade_duration_s: float = 0.05
    overlay_highlight_duration_s: float = 0.01
    overlay_scale_duration_s: float = 0.15
    overlay_line_spacing_px: float = 4.0
    overlay_word_background_padding_px: float = 8.0
    overlay_word_background_radius_px: float = 4.0
    overlay_default_shadow_radius: float = 4.0
    overlay_max_stroke_ratio: float = 0.15

    # Progress monitor
    progress_poll_interval_s: float = 0.025
    progress_epsilon: float = 0.01
    progress_emit_threshold: float = 0.005
    progress_simulated_ceiling: float = 0.3
    progress_simulated_rate: float = 0.08
    progress_completion_steps: int = 20
    progress_completion_step_delay_s: float = 0.05
    progress_completion_final_delay_s: float = 0.1

    # Stage spans of overall progress (start, end)
    stage_setup_span: tuple[float, float] = (0.0, 0.1)
    stage_layout_span: tuple[float, float] = (0.1, 0.2)
    stage_overlay_span: tuple[float, float] = (0.2, 0.6)
    stage_encode_span: tuple[float, float] = (0.6, 1.0)


def _parse_path_list(raw: str) -> list[str]:
    if raw.startswith("["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass
    return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
