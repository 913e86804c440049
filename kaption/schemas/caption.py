from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TRANSPARENT = "#00000000"


def normalize_color(value: str) -> str:
    """Normalize a colour to upper-case #RRGGBB or #RRGGBBAA."""
    if value.lower() in ("clear", "transparent", "none"):
        return TRANSPARENT
    if not value.startswith("#") or len(value) not in (7, 9):
        raise ValueError("color must be in #RRGGBB or #RRGGBBAA format")
    try:
        int(value[1:], 16)
    except ValueError:
        raise ValueError("color must be a valid hex color")
    return value.upper()


def color_alpha(value: str) -> float:
    """Alpha component (0-1) of a normalized colour."""
    if len(value) == 9:
        return int(value[7:9], 16) / 255
    return 1.0


class KaraokeType(str, Enum):
    NONE = "none"
    WORD = "word"
    WORD_BACKGROUND = "word_background"
    WORD_AND_SCALE = "word_and_scale"


class WordTiming(BaseModel):
    """Single word with output-timeline timing (seconds)."""
    model_config = ConfigDict(frozen=True)

    text: str
    start: float
    end: float

    @model_validator(mode="after")
    def validate_order(self) -> "WordTiming":
        if self.start > self.end:
            raise ValueError(f"Word '{self.text}' starts after it ends")
        return self


class CaptionStyle(BaseModel):
    """Visual style of a caption box."""
    model_config = ConfigDict(frozen=True)

    font_size: float = Field(default=20, gt=0)
    font_color: str = "#000000"
    stroke_color: str = TRANSPARENT
    stroke_width: float = Field(default=0, ge=0)
    background_color: str = "#FFFFFF"
    corner_radius: float = Field(default=0, ge=0)
    padding: float = Field(default=8, ge=0)
    shadow_color: str = "#000000"
    shadow_radius: float = Field(default=0, ge=0)
    shadow_x: float = 0
    shadow_y: float = 0
    shadow_opacity: float = Field(default=0.5, ge=0, le=1)
    font_family: str | None = None

    @field_validator("font_color", "stroke_color", "background_color", "shadow_color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        return normalize_color(v)

    @property
    def has_shadow(self) -> bool:
        return self.shadow_opacity > 0 and color_alpha(self.shadow_color) > 0


class CaptionCue(BaseModel):
    """Caption shown over [start, end] of the output timeline."""
    model_config = ConfigDict(frozen=True)

    text: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)
    style: CaptionStyle = Field(default_factory=CaptionStyle)
    # Offset from the frame centre in editor space, y grows upward
    offset: tuple[float, float] = (0.0, 0.0)
    words: tuple[WordTiming, ...] | None = None

    # Karaoke
    karaoke_type: KaraokeType = KaraokeType.NONE
    highlight_color: str | None = None
    word_background_color: str | None = None
    active_word_scale: float = Field(default=1.2, gt=0)

    preset_name: str | None = None

    @field_validator("highlight_color", "word_background_color")
    @classmethod
    def validate_optional_color(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return normalize_color(v)

    @model_validator(mode="after")
    def validate_timing(self) -> "CaptionCue":
        if self.start > self.end:
            raise ValueError(f"Cue start {self.start} is after end {self.end}")
        if self.words:
            for prev, cur in zip(self.words, self.words[1:]):
                if cur.start < prev.start:
                    raise ValueError(f"Word timings are not sorted at '{cur.text}'")
                if cur.start < prev.end:
                    raise ValueError(
                        f"Word '{cur.text}' overlaps previous word '{prev.text}'"
                    )
        return self

    @property
    def is_karaoke(self) -> bool:
        return bool(self.words) and self.karaoke_type != KaraokeType.NONE
