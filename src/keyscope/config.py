"""
Analysis options.

Immutable option objects decouple tuning parameters from call signatures so
the same configuration can be shared across pipelines, sessions and the CLI.
"""

from dataclasses import dataclass, replace
from typing import Optional

DEFAULT_MAX_SECONDS: float = 75.0
DEFAULT_MIN_BPM: float = 60.0
DEFAULT_MAX_BPM: float = 180.0
DEFAULT_RMS_THRESHOLD: float = 0.005
DEFAULT_TEMPO_PRIOR: float = 120.0


@dataclass(frozen=True)
class AnalysisOptions:
    """
    Options for a single BPM/key analysis.

    Attributes:
        max_seconds: Only the first ``max_seconds`` of audio are analyzed.
            ``None`` analyzes the whole file.
        min_bpm: Lower bound of the reported tempo range.
        max_bpm: Upper bound of the reported tempo range.
        rms_threshold: Chroma frames quieter than this RMS level are skipped.
        tempo_prior: Typical tempo used to resolve half/double-tempo errors.

    Example:
        >>> options = AnalysisOptions(max_seconds=30, min_bpm=70, max_bpm=140)
        >>> result = analyze("track.mp3", options=options)
    """

    max_seconds: Optional[float] = DEFAULT_MAX_SECONDS
    min_bpm: float = DEFAULT_MIN_BPM
    max_bpm: float = DEFAULT_MAX_BPM
    rms_threshold: float = DEFAULT_RMS_THRESHOLD
    tempo_prior: float = DEFAULT_TEMPO_PRIOR

    def __post_init__(self) -> None:
        """Validate option values."""
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise ValueError(
                f"max_seconds must be positive or None, got {self.max_seconds}"
            )
        if self.min_bpm <= 0:
            raise ValueError(f"min_bpm must be positive, got {self.min_bpm}")
        if self.min_bpm >= self.max_bpm:
            raise ValueError(
                f"min_bpm ({self.min_bpm}) must be less than max_bpm ({self.max_bpm})"
            )
        if self.rms_threshold < 0:
            raise ValueError(
                f"rms_threshold must be non-negative, got {self.rms_threshold}"
            )
        if self.tempo_prior <= 0:
            raise ValueError(f"tempo_prior must be positive, got {self.tempo_prior}")

    def replace(self, **changes) -> "AnalysisOptions":
        """Return a copy with the given fields changed (validated again)."""
        return replace(self, **changes)


DEFAULT_OPTIONS = AnalysisOptions()
"""Default configuration: first 75 s, 60-180 BPM."""

QUICK_OPTIONS = AnalysisOptions(max_seconds=30.0)
"""Shorter window for fast previews of long files."""

FULL_TRACK_OPTIONS = AnalysisOptions(max_seconds=None)
"""Analyze the whole file."""
