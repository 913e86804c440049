"""Caption style presets and karaoke cue generation."""

import logging
from dataclasses import dataclass

from kaption.config import get_settings
from kaption.exceptions import InvalidInputError
from kaption.schemas.caption import (
    TRANSPARENT,
    CaptionCue,
    CaptionStyle,
    KaraokeType,
    WordTiming,
)

logger = logging.getLogger(__name__)

# System palette colours used by the presets
WHITE = "#FFFFFF"
BLACK = "#000000"
BLUE = "#007AFF"
YELLOW = "#FFCC00"
ORANGE = "#FF9500"
BROWN = "#A2845E"


@dataclass(frozen=True)
class KaraokePreset:
    """Default colours and word spacing for one karaoke type."""

    karaoke_type: KaraokeType
    highlight_color: str
    word_background_color: str
    preset_name: str
    preview_word_spacing: float

    @property
    def calibrated_export_spacing(self) -> float:
        """Word spacing in exported video, calibrated against the editor preview."""
        if self.karaoke_type == KaraokeType.WORD_BACKGROUND:
            return self.preview_word_spacing * 1.5
        return self.preview_word_spacing * 3.0


KARAOKE_PRESETS: dict[KaraokeType, KaraokePreset] = {
    KaraokeType.WORD: KaraokePreset(
        karaoke_type=KaraokeType.WORD,
        highlight_color=BLUE,
        word_background_color=TRANSPARENT,
        preset_name="Highlight by word",
        preview_word_spacing=8,
    ),
    KaraokeType.WORD_BACKGROUND: KaraokePreset(
        karaoke_type=KaraokeType.WORD_BACKGROUND,
        highlight_color=YELLOW,
        word_background_color=BLUE,
        preset_name="Background by word",
        preview_word_spacing=4,
    ),
    KaraokeType.WORD_AND_SCALE: KaraokePreset(
        karaoke_type=KaraokeType.WORD_AND_SCALE,
        highlight_color=YELLOW,
        word_background_color=TRANSPARENT,
        preset_name="Word & Scale",
        preview_word_spacing=8,
    ),
}


def karaoke_preset_for(karaoke_type: KaraokeType) -> KaraokePreset:
    try:
        return KARAOKE_PRESETS[karaoke_type]
    except KeyError:
        raise InvalidInputError(f"No karaoke preset for type: {karaoke_type}") from None


@dataclass(frozen=True)
class SubtitleStyle:
    """Named caption style."""

    name: str
    style: CaptionStyle
    karaoke_type: KaraokeType = KaraokeType.NONE

    @property
    def is_karaoke(self) -> bool:
        return self.karaoke_type != KaraokeType.NONE


def _style(
    font_color: str = WHITE,
    stroke_color: str = BLACK,
    stroke_width: float = 2,
    shadow_color: str = BLACK,
    shadow_radius: float = 6,
    shadow_x: float = 0,
    shadow_y: float = 2,
    shadow_opacity: float = 0.7,
    font_size: float = 32,
    padding: float = 8,
    corner_radius: float = 8,
) -> CaptionStyle:
    return CaptionStyle(
        font_size=font_size,
        font_color=font_color,
        stroke_color=stroke_color,
        stroke_width=stroke_width,
        background_color=TRANSPARENT,
        corner_radius=corner_radius,
        padding=padding,
        shadow_color=shadow_color,
        shadow_radius=shadow_radius,
        shadow_x=shadow_x,
        shadow_y=shadow_y,
        shadow_opacity=shadow_opacity,
    )


_NO_SHADOW = {"shadow_color": TRANSPARENT, "shadow_radius": 0, "shadow_y": 0, "shadow_opacity": 0}

PRESETS: tuple[SubtitleStyle, ...] = (
    # Karaoke
    SubtitleStyle("Highlight by word", _style(), KaraokeType.WORD),
    SubtitleStyle(
        "Background by word",
        _style(stroke_color=TRANSPARENT, stroke_width=0, **_NO_SHADOW),
        KaraokeType.WORD_BACKGROUND,
    ),
    SubtitleStyle("Word & Scale", _style(), KaraokeType.WORD_AND_SCALE),
    # Plain
    SubtitleStyle("Classic Yellow", _style(font_color=YELLOW)),
    SubtitleStyle("Modern White", _style()),
    SubtitleStyle("Bold Black", _style(font_color=BLACK, stroke_color=WHITE, shadow_color=WHITE)),
    SubtitleStyle(
        "Shadowed",
        _style(stroke_color=TRANSPARENT, stroke_width=0, shadow_radius=8, shadow_x=2, shadow_opacity=0.8),
    ),
    SubtitleStyle("Large Font", _style(font_size=40)),
    SubtitleStyle("Outlined", _style(stroke_width=4, **_NO_SHADOW)),
    SubtitleStyle(
        "Minimalist",
        _style(stroke_color=TRANSPARENT, stroke_width=0, font_size=28, padding=4, corner_radius=4, **_NO_SHADOW),
    ),
    SubtitleStyle(
        "Retro",
        _style(font_color=ORANGE, stroke_color=BROWN, shadow_color=BROWN, shadow_x=2),
    ),
)


def get_preset(name: str | None = None) -> SubtitleStyle:
    """Look up a preset by name; ``None`` selects the configured default.

    Raises:
        InvalidInputError: If no preset has that name
    """
    if name is None:
        name = get_settings().default_preset_name
    for preset in PRESETS:
        if preset.name == name:
            return preset
    raise InvalidInputError(
        f"Unknown preset: {name}",
        details={"available": [p.name for p in PRESETS]},
    )


def apply_preset(
    cue: CaptionCue,
    name: str | None = None,
    highlight: str | None = None,
    word_background: str | None = None,
    font_color: str | None = None,
) -> CaptionCue:
    """Return ``cue`` restyled with a preset.

    Karaoke presets also set the karaoke type and colours; explicit
    ``highlight`` / ``word_background`` colours win over the preset's.
    """
    preset = get_preset(name)
    style = preset.style
    if font_color is not None:
        style = CaptionStyle.model_validate({**style.model_dump(), "font_color": font_color})

    update = {"style": style, "preset_name": preset.name}
    if preset.is_karaoke:
        karaoke = karaoke_preset_for(preset.karaoke_type)
        update["karaoke_type"] = preset.karaoke_type
        update["highlight_color"] = highlight or karaoke.highlight_color
        update["word_background_color"] = word_background or karaoke.word_background_color
    # Re-validate so colour overrides are normalized
    return CaptionCue.model_validate({**cue.model_dump(), **update})


def even_word_timings(text: str, start: float, end: float) -> tuple[WordTiming, ...]:
    """Split ``text`` on spaces and share [start, end] evenly between the words."""
    words = [w for w in text.split(" ") if w]
    if not words:
        return ()
    word_duration = (end - start) / len(words)
    return tuple(
        WordTiming(
            text=word,
            start=start + i * word_duration,
            end=end if i == len(words) - 1 else start + (i + 1) * word_duration,
        )
        for i, word in enumerate(words)
    )


def generate_karaoke_cues(
    cues: list[CaptionCue],
    karaoke_type: KaraokeType = KaraokeType.WORD,
    highlight: str | None = None,
    word_background: str | None = None,
    font_color: str | None = None,
) -> list[CaptionCue]:
    """Turn cues into karaoke cues.

    Cues that already carry word timings keep them; others get evenly
    distributed timings from their text.
    """
    preset = karaoke_preset_for(karaoke_type)
    out = []
    for cue in cues:
        words = cue.words or even_word_timings(cue.text, cue.start, cue.end)
        style = cue.style
        if font_color is not None:
            style = CaptionStyle.model_validate({**style.model_dump(), "font_color": font_color})
        out.append(CaptionCue.model_validate({
            **cue.model_dump(),
            "style": style.model_dump(),
            "words": [w.model_dump() for w in words],
            "karaoke_type": karaoke_type,
            "highlight_color": highlight or preset.highlight_color,
            "word_background_color": word_background or preset.word_background_color,
            "preset_name": preset.preset_name,
        }))
    logger.info(f"[KARAOKE] Generated {len(out)} {karaoke_type.value} cues")
    return out
