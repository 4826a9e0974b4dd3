"""Core audio processing modules."""

from keyscope.core.chroma import HPCPChroma, LibrosaChroma
from keyscope.core.decoder import AudioDecoder, DecodedAudio
from keyscope.core.key import correlate_key, estimate_key
from keyscope.core.rhythm import AutocorrelationTempo, BeatTrackerTempo, estimate_bpm

__all__ = [
    "AudioDecoder",
    "DecodedAudio",
    "AutocorrelationTempo",
    "BeatTrackerTempo",
    "estimate_bpm",
    "HPCPChroma",
    "LibrosaChroma",
    "correlate_key",
    "estimate_key",
]
