"""
Error taxonomy for audio analysis.

Decoding errors are raised by :class:`keyscope.core.decoder.AudioDecoder`;
the pipeline converts every one of them into a partial result, so callers of
:func:`keyscope.analyze` never see these exceptions.
"""


class AnalysisError(Exception):
    """Base class for all analysis failures."""


class DecodeError(AnalysisError):
    """The input could not be decoded as audio (corrupt file, unknown codec)."""


class UnsupportedEnvironmentError(AnalysisError):
    """No audio decoding backend is available in this runtime."""


class InsufficientSignalError(AnalysisError):
    """Too little usable signal: audio too short, all silent, or no peak.

    Estimators report this condition through ``debug["reason"]`` instead of
    raising it; the class exists so the condition has a name.
    """


class EngineUnavailableError(AnalysisError):
    """The librosa analysis engine failed to initialize or to compute."""
