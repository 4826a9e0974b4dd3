"""Tempo (BPM) and musical key estimation for audio files."""

from keyscope.config import AnalysisOptions
from keyscope.core.decoder import AudioDecoder, DecodedAudio
from keyscope.errors import (
    AnalysisError,
    DecodeError,
    EngineUnavailableError,
    InsufficientSignalError,
    UnsupportedEnvironmentError,
)
from keyscope.io.exporter import ResultExporter
from keyscope.pipeline import (
    AnalysisPipeline,
    AnalysisResult,
    AnalysisSession,
    analyze,
    analyze_async,
)

__version__ = "0.1.0"
__all__ = [
    "AnalysisOptions",
    "AudioDecoder",
    "DecodedAudio",
    "AnalysisPipeline",
    "AnalysisResult",
    "AnalysisSession",
    "ResultExporter",
    "analyze",
    "analyze_async",
    "AnalysisError",
    "DecodeError",
    "EngineUnavailableError",
    "InsufficientSignalError",
    "UnsupportedEnvironmentError",
]
