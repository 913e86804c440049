from kaption.schemas.caption import CaptionCue, CaptionStyle, KaraokeType, WordTiming
from kaption.schemas.media import Clip, FrameStyle, SecondaryAudio, TrimRange

__all__ = [
    "Clip",
    "TrimRange",
    "FrameStyle",
    "SecondaryAudio",
    "CaptionCue",
    "CaptionStyle",
    "KaraokeType",
    "WordTiming",
]
