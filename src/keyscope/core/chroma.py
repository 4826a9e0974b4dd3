"""
Track-level chroma extraction.

Both strategies cut the signal into 4096-sample frames with a 2048-sample
hop, drop frames whose RMS level is below a silence threshold, and average
the remaining per-frame pitch-class vectors weighted by frame RMS, so loud
sections dominate quiet ones.

* :class:`HPCPChroma` (numpy/scipy only): Hann window, magnitude spectrum,
  spectral peak picking, and a 36-bin harmonic pitch class profile
  referenced to A = 440 Hz, folded to 12 pitch classes at the end.
* :class:`LibrosaChroma` (analysis engine): librosa's STFT chroma filter
  bank, 12 bins directly.

The 12-bin output is always C-indexed (``C, C#, ..., B``) and L1-normalized.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol

import numpy as np
from scipy import signal as scipy_signal

from keyscope.config import DEFAULT_RMS_THRESHOLD
from keyscope.errors import EngineUnavailableError

if TYPE_CHECKING:
    from keyscope.core.engine import AnalysisEngine

logger = logging.getLogger(__name__)

CHROMA_FRAME_SIZE = 4096
CHROMA_HOP_SIZE = 2048
HPCP_SIZE = 36
REFERENCE_FREQUENCY = 440.0
A_PITCH_CLASS = 9  # index of A in a C-indexed chroma vector


@dataclass
class ChromaProfile:
    """Energy-weighted average chroma of a track."""

    vector: Optional[np.ndarray]        # (12,) C-indexed, None if no frame passed
    hpcp: Optional[np.ndarray] = None   # (36,) A-referenced, HPCP strategy only
    frames_total: int = 0
    frames_used: int = 0
    total_weight: float = 0.0
    method: str = "hpcp"

    @property
    def is_empty(self) -> bool:
        return self.vector is None

    def summary(self) -> dict[str, Any]:
        """Diagnostic fields for debug output."""
        return {
            "chroma_method": self.method,
            "frames_total": self.frames_total,
            "frames_used": self.frames_used,
        }


class ChromaStrategy(Protocol):
    """Anything that can turn a mono signal into a ChromaProfile."""

    name: str

    def extract(self, y: np.ndarray, sr: int) -> ChromaProfile:
        ...


# ---------------------------------------------------------------------------
# Framing helpers
# ---------------------------------------------------------------------------

def frame_signal(y: np.ndarray, frame_size: int, hop_size: int) -> np.ndarray:
    """
    Split a signal into overlapping frames without padding.

    Returns:
        Read-only view of shape (n_frames, frame_size); n_frames is 0 when the
        signal is shorter than a frame.
    """
    y = np.asarray(y, dtype=np.float32)
    if len(y) < frame_size:
        return np.zeros((0, frame_size), dtype=np.float32)
    return np.lib.stride_tricks.sliding_window_view(y, frame_size)[::hop_size]


def frame_rms(frames: np.ndarray) -> np.ndarray:
    """Per-frame RMS level."""
    if len(frames) == 0:
        return np.zeros(0, dtype=np.float64)
    # Row energies straight from the strided view, no float64 copy
    energy = np.einsum("ij,ij->i", frames, frames).astype(np.float64)
    return np.sqrt(energy / frames.shape[1])


def _l1_normalize(vector: np.ndarray) -> np.ndarray:
    total = float(np.sum(vector))
    if total > 0 and np.isfinite(total):
        return vector / total
    return vector


# ---------------------------------------------------------------------------
# HPCP pipeline
# ---------------------------------------------------------------------------

def spectral_peaks(
    magnitude: np.ndarray,
    sr: int,
    frame_size: int,
    magnitude_threshold: float = 0.0005,
    max_peaks: int = 60,
    min_frequency: float = 40.0,
    max_frequency: float = 5000.0,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Pick the strongest local maxima of a magnitude spectrum.

    Peak positions are refined with parabolic interpolation over the
    neighbouring bins.

    Args:
        magnitude: One-sided magnitude spectrum, length frame_size // 2 + 1.
        sr: Sample rate.
        frame_size: FFT size the spectrum was computed with.
        magnitude_threshold: Peaks below this magnitude are ignored.
        max_peaks: Keep at most this many peaks, strongest first.
        min_frequency: Lowest peak frequency kept (Hz).
        max_frequency: Highest peak frequency kept (Hz).

    Returns:
        Tuple of (frequencies_hz, magnitudes), ordered by magnitude.
    """
    indices, _ = scipy_signal.find_peaks(magnitude, height=magnitude_threshold)
    if len(indices) == 0:
        return np.zeros(0), np.zeros(0)

    left = magnitude[indices - 1]
    center = magnitude[indices]
    right = magnitude[indices + 1]
    curvature = left - 2.0 * center + right
    with np.errstate(divide="ignore", invalid="ignore"):
        offset = np.where(curvature != 0, 0.5 * (left - right) / curvature, 0.0)
    offset = np.clip(offset, -0.5, 0.5)

    frequencies = (indices + offset) * sr / frame_size
    magnitudes = center - 0.25 * (left - right) * offset

    in_band = (frequencies >= min_frequency) & (frequencies <= max_frequency)
    frequencies = frequencies[in_band]
    magnitudes = magnitudes[in_band]

    order = np.argsort(-magnitudes, kind="stable")[:max_peaks]
    return frequencies[order], magnitudes[order]


def hpcp_from_peaks(
    frequencies: np.ndarray,
    magnitudes: np.ndarray,
    size: int = HPCP_SIZE,
    reference_frequency: float = REFERENCE_FREQUENCY,
    window_semitones: float = 1.0,
) -> np.ndarray:
    """
    Harmonic pitch class profile of a set of spectral peaks.

    Each peak adds its squared magnitude to the bins within half a window of
    its pitch class, weighted by cos² of the distance in semitones.  Bin 0 is
    the reference frequency's pitch class.  The profile is scaled to a
    maximum of 1.

    Args:
        frequencies: Peak frequencies in Hz.
        magnitudes: Peak magnitudes.
        size: Number of bins per octave (a multiple of 12).
        reference_frequency: Frequency mapped to bin 0.
        window_semitones: Width of the weighting window in semitones.

    Returns:
        1-D array of length ``size``.
    """
    hpcp = np.zeros(size, dtype=np.float64)
    if len(frequencies) == 0:
        return hpcp

    bins_per_semitone = size / 12.0
    position = np.mod(size * np.log2(frequencies / reference_frequency), size)
    distance = np.arange(size)[None, :] - position[:, None]
    # Shortest way round the octave circle
    distance = np.mod(distance + size / 2.0, size) - size / 2.0
    semitones = distance / bins_per_semitone

    weight = np.where(
        np.abs(semitones) <= window_semitones / 2.0,
        np.cos(np.pi * semitones / window_semitones) ** 2,
        0.0,
    )
    hpcp = (weight * (magnitudes[:, None] ** 2)).sum(axis=0)

    peak = hpcp.max()
    if peak > 0:
        hpcp = hpcp / peak
    return hpcp


def fold_hpcp(hpcp: np.ndarray) -> np.ndarray:
    """
    Fold an A-referenced HPCP into a C-indexed 12-bin chroma vector.

    Sub-semitone bins are summed around each semitone centre.
    """
    size = len(hpcp)
    bins_per_semitone = size // 12
    shifted = np.roll(hpcp, bins_per_semitone // 2)
    semitones_above_a = shifted.reshape(12, bins_per_semitone).sum(axis=1)
    return np.roll(semitones_above_a, A_PITCH_CLASS)


class HPCPChroma:
    """
    Pure numpy/scipy HPCP chroma strategy.

    Always available; used when the analysis engine is not.
    """

    name = "hpcp"

    def __init__(
        self,
        frame_size: int = CHROMA_FRAME_SIZE,
        hop_size: int = CHROMA_HOP_SIZE,
        rms_threshold: float = DEFAULT_RMS_THRESHOLD,
        size: int = HPCP_SIZE,
        reference_frequency: float = REFERENCE_FREQUENCY,
        magnitude_threshold: float = 0.0005,
        max_peaks: int = 60,
    ):
        if size % 12 != 0:
            raise ValueError(f"HPCP size must be a multiple of 12, got {size}")
        self.frame_size = frame_size
        self.hop_size = hop_size
        self.rms_threshold = rms_threshold
        self.size = size
        self.reference_frequency = reference_frequency
        self.magnitude_threshold = magnitude_threshold
        self.max_peaks = max_peaks
        self._window = scipy_signal.get_window("hann", frame_size)
        # Scale so a full-scale sinusoid peaks at magnitude 1.0
        self._spectrum_scale = self._window.sum() / 2.0

    def extract(self, y: np.ndarray, sr: int) -> ChromaProfile:
        """
        Compute the RMS-weighted average HPCP of a signal.

        Args:
            y: Mono signal.
            sr: Sample rate.

        Returns:
            ChromaProfile; ``vector`` is None when no frame is loud enough.
        """
        frames = frame_signal(y, self.frame_size, self.hop_size)
        levels = frame_rms(frames)
        loud = levels >= self.rms_threshold
        profile = ChromaProfile(
            vector=None,
            frames_total=int(len(frames)),
            method=self.name,
        )
        if not np.any(loud):
            return profile

        accumulated = np.zeros(self.size, dtype=np.float64)
        total_weight = 0.0
        # One frame spectrum in memory at a time
        for index in np.flatnonzero(loud):
            level = levels[index]
            magnitude = np.abs(
                np.fft.rfft(frames[index].astype(np.float64) * self._window)
            ) / self._spectrum_scale
            frequencies, magnitudes = spectral_peaks(
                magnitude,
                sr,
                self.frame_size,
                magnitude_threshold=self.magnitude_threshold,
                max_peaks=self.max_peaks,
            )
            hpcp = hpcp_from_peaks(
                frequencies,
                magnitudes,
                size=self.size,
                reference_frequency=self.reference_frequency,
            )
            accumulated += hpcp * level
            total_weight += float(level)

        profile.frames_used = int(np.count_nonzero(loud))
        profile.total_weight = total_weight
        if total_weight <= 0:
            return profile

        hpcp = accumulated / total_weight
        profile.hpcp = hpcp
        profile.vector = _l1_normalize(fold_hpcp(hpcp))
        return profile


# ---------------------------------------------------------------------------
# librosa chroma
# ---------------------------------------------------------------------------

class LibrosaChroma:
    """STFT chroma strategy backed by the analysis engine."""

    name = "librosa"

    def __init__(
        self,
        engine: "AnalysisEngine",
        frame_size: int = CHROMA_FRAME_SIZE,
        hop_size: int = CHROMA_HOP_SIZE,
        rms_threshold: float = DEFAULT_RMS_THRESHOLD,
    ):
        self.engine = engine
        self.frame_size = frame_size
        self.hop_size = hop_size
        self.rms_threshold = rms_threshold

    def extract(self, y: np.ndarray, sr: int) -> ChromaProfile:
        """
        Compute the RMS-weighted average librosa chroma of a signal.

        Raises:
            EngineUnavailableError: If librosa fails on this input.
        """
        profile = ChromaProfile(vector=None, method=self.name)
        y = np.asarray(y, dtype=np.float32)
        if len(y) < self.frame_size:
            return profile

        lb = self.engine.librosa
        try:
            power = np.abs(
                lb.stft(
                    y,
                    n_fft=self.frame_size,
                    hop_length=self.hop_size,
                    window="hann",
                    center=False,
                )
            ) ** 2
            chroma = lb.feature.chroma_stft(
                S=power,
                sr=sr,
                n_fft=self.frame_size,
                hop_length=self.hop_size,
                tuning=0.0,
            )
            levels = lb.feature.rms(
                y=y,
                frame_length=self.frame_size,
                hop_length=self.hop_size,
                center=False,
            )[0]
        except Exception as exc:
            raise EngineUnavailableError(f"chroma extraction failed: {exc}") from exc

        n_frames = min(chroma.shape[1], len(levels))
        levels = levels[:n_frames].astype(np.float64)
        loud = levels >= self.rms_threshold
        profile.frames_total = int(n_frames)
        profile.frames_used = int(np.count_nonzero(loud))

        weights = levels[loud]
        total_weight = float(weights.sum())
        profile.total_weight = total_weight
        if total_weight <= 0:
            return profile

        weighted = (chroma[:, :n_frames][:, loud] * weights).sum(axis=1)
        profile.vector = _l1_normalize(weighted / total_weight)
        return profile
