from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kaption.render.geometry import AffineTransform


class TrimRange(BaseModel):
    """Source-time range (seconds) to export."""
    model_config = ConfigDict(frozen=True)

    start: float = Field(default=0.0, ge=0)
    end: float = Field(ge=0)

    @model_validator(mode="after")
    def validate_order(self) -> "TrimRange":
        if self.start > self.end:
            raise ValueError(f"Trim start {self.start} is after end {self.end}")
        return self


class FrameStyle(BaseModel):
    """Coloured frame around a scaled-down video."""
    model_config = ConfigDict(frozen=True)

    color: str = "#000000"
    scale: float = Field(default=0.9, gt=0, le=1)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        """Validate hex color format (#RRGGBB)."""
        if not v.startswith("#") or len(v) != 7:
            raise ValueError("color must be in #RRGGBB format")
        try:
            int(v[1:], 16)
        except ValueError:
            raise ValueError("color must be a valid hex color")
        return v.upper()


class SecondaryAudio(BaseModel):
    """Extra audio track mixed under the clip (music, voice-over)."""
    model_config = ConfigDict(frozen=True)

    source: str
    volume: float = Field(default=1.0, ge=0)


class Clip(BaseModel):
    """Source clip to render."""
    model_config = ConfigDict(frozen=True)

    source: str
    duration: float = Field(ge=0)
    trim: TrimRange | None = None
    rate: float = Field(default=1.0, gt=0)
    # Overridden by the track transform reported by the metadata provider
    orientation: AffineTransform | None = None
    mirror: bool = False
    volume: float = Field(default=1.0, ge=0)
    frame_style: FrameStyle | None = None
    secondary_audio: SecondaryAudio | None = None

    @model_validator(mode="after")
    def validate_trim(self) -> "Clip":
        if self.trim is not None and self.trim.end > self.duration:
            raise ValueError(
                f"Trim end {self.trim.end} exceeds clip duration {self.duration}"
            )
        return self

    @property
    def effective_trim(self) -> TrimRange:
        """Trim range, defaulting to the full duration."""
        if self.trim is None:
            return TrimRange(start=0.0, end=self.duration)
        return self.trim
