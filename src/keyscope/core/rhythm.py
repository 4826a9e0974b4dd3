"""
Tempo estimation.

Two interchangeable strategies produce a :class:`TempoEstimate`:

* :class:`AutocorrelationTempo` finds the dominant period of a short-time RMS
  envelope by autocorrelation.  Pure numpy, always available.
* :class:`BeatTrackerTempo` runs librosa's onset-strength beat tracker
  through the shared analysis engine.

Both resolve half/double-tempo ambiguity the same way: of ``bpm``,
``bpm / 2`` and ``bpm * 2``, keep the in-range candidate closest to a
typical-tempo prior.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

import numpy as np

from keyscope.config import DEFAULT_MAX_BPM, DEFAULT_MIN_BPM, DEFAULT_TEMPO_PRIOR
from keyscope.errors import EngineUnavailableError

if TYPE_CHECKING:
    from keyscope.core.engine import AnalysisEngine

logger = logging.getLogger(__name__)

RHYTHM_FRAME_SIZE = 2048
RHYTHM_HOP_SIZE = 1024
MIN_ENVELOPE_FRAMES = 10


@dataclass
class TempoEstimate:
    """Tempo estimation result."""

    bpm: Optional[int]
    confidence: float = 0.0          # [0,1]
    debug: dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> Optional[str]:
        """Why no tempo was found, if it wasn't."""
        return self.debug.get("reason")


class TempoStrategy(Protocol):
    """Anything that can turn a mono signal into a TempoEstimate."""

    name: str

    def estimate(
        self,
        y: np.ndarray,
        sr: int,
        min_bpm: float,
        max_bpm: float,
    ) -> TempoEstimate:
        ...


# ---------------------------------------------------------------------------
# Envelope + autocorrelation
# ---------------------------------------------------------------------------

def compute_envelope(
    y: np.ndarray,
    frame_size: int = RHYTHM_FRAME_SIZE,
    hop_size: int = RHYTHM_HOP_SIZE,
) -> np.ndarray:
    """
    Short-time RMS envelope.

    Frames are not padded: the envelope has
    ``floor((len(y) - frame_size) / hop_size) + 1`` values, or none when the
    signal is shorter than one frame.

    Args:
        y: Mono signal.
        frame_size: Frame length in samples.
        hop_size: Hop between frame starts in samples.

    Returns:
        1-D float64 array of per-frame RMS values.
    """
    y = np.asarray(y, dtype=np.float64)
    if len(y) < frame_size:
        return np.zeros(0, dtype=np.float64)

    n_frames = (len(y) - frame_size) // hop_size + 1
    # Running sum of squares turns every frame energy into one subtraction.
    cumulative = np.concatenate([[0.0], np.cumsum(y * y)])
    starts = np.arange(n_frames) * hop_size
    energy = cumulative[starts + frame_size] - cumulative[starts]
    return np.sqrt(np.clip(energy, 0.0, None) / frame_size)


def autocorrelate(envelope: np.ndarray, min_lag: int, max_lag: int) -> np.ndarray:
    """
    Autocorrelation of ``envelope`` for lags ``min_lag..max_lag`` inclusive,
    normalized by the zero-lag energy (all zeros for a silent envelope).
    """
    envelope = np.asarray(envelope, dtype=np.float64)
    energy = float(np.dot(envelope, envelope))
    lags = np.arange(min_lag, max_lag + 1)
    acf = np.array([np.dot(envelope[:-lag], envelope[lag:]) for lag in lags])
    if energy > 0:
        acf = acf / energy
    return acf


def lag_range(
    sr: int,
    min_bpm: float,
    max_bpm: float,
    hop_size: int = RHYTHM_HOP_SIZE,
) -> tuple[int, int]:
    """Envelope-frame lags spanning ``[min_bpm, max_bpm]``."""
    min_lag = int(math.floor(60.0 * sr / (max_bpm * hop_size)))
    max_lag = int(math.floor(60.0 * sr / (min_bpm * hop_size)))
    return min_lag, max_lag


def _lag_product(envelope: np.ndarray, lag: int) -> float:
    """Mean lagged product, unbiased by the shrinking overlap."""
    return float(np.dot(envelope[:-lag], envelope[lag:])) / (len(envelope) - lag)


def _parabolic_offset(left: float, centre: float, right: float) -> float:
    """Vertex offset in [-0.5, 0.5] of the parabola through three points."""
    curvature = left - 2.0 * centre + right
    if curvature >= 0:
        return 0.0
    return float(np.clip(0.5 * (left - right) / curvature, -0.5, 0.5))


def refine_period(envelope: np.ndarray, lag: int) -> float:
    """
    Sub-frame beat period near an integer autocorrelation lag.

    The peak near each multiple ``k * period`` is located with parabolic
    interpolation and divided by ``k``, so rounding error shrinks as the
    multiples grow.  Multiples stop at half the envelope length.

    Returns:
        The refined period in frames, or ``lag`` itself when refinement
        drifts more than one frame away from it.
    """
    envelope = np.asarray(envelope, dtype=np.float64)
    limit = len(envelope) // 2
    period = float(lag)
    multiple = 1
    while True:
        centre = int(round(multiple * period))
        if centre + 1 > limit or centre - 1 < 1:
            break
        window = [_lag_product(envelope, centre + d) for d in (-1, 0, 1)]
        # Step to the local maximum if the prediction landed on its flank
        step = 0
        if window[0] > window[1] and window[0] >= window[2]:
            step = -1
        elif window[2] > window[1]:
            step = 1
        if step != 0:
            centre += step
            if centre + 1 > limit or centre - 1 < 1:
                break
            window = [_lag_product(envelope, centre + d) for d in (-1, 0, 1)]
            if window[1] < max(window):
                break
        period = (centre + _parabolic_offset(*window)) / multiple
        multiple += 1

    if abs(period - lag) > 1.0:
        return float(lag)
    return period


def correct_octave(
    bpm: float,
    min_bpm: float,
    max_bpm: float,
    prior: float = DEFAULT_TEMPO_PRIOR,
) -> Optional[float]:
    """
    Resolve half/double-tempo errors.

    Args:
        bpm: Raw tempo estimate.
        min_bpm: Lower bound of the valid range.
        max_bpm: Upper bound of the valid range.
        prior: Typical tempo; the closest in-range candidate wins.

    Returns:
        The chosen candidate among (bpm, bpm/2, bpm*2), or None if none
        falls inside ``[min_bpm, max_bpm]``.
    """
    candidates = [
        c for c in (bpm, bpm / 2.0, bpm * 2.0)
        if min_bpm <= c <= max_bpm
    ]
    if not candidates:
        return None
    # min() keeps the earliest candidate on ties, so the raw value wins.
    return min(candidates, key=lambda c: abs(c - prior))


def _round_bpm(bpm: float, min_bpm: float, max_bpm: float) -> Optional[int]:
    """
    Round to an integer BPM that still lies in the valid range.

    Returns None when no integer fits between ``min_bpm`` and ``max_bpm``.
    """
    low = int(math.ceil(min_bpm))
    high = int(math.floor(max_bpm))
    if low > high:
        return None
    return int(min(max(int(round(bpm)), low), high))


def estimate_bpm(
    y: np.ndarray,
    sr: int,
    min_bpm: float = DEFAULT_MIN_BPM,
    max_bpm: float = DEFAULT_MAX_BPM,
    prior: float = DEFAULT_TEMPO_PRIOR,
    frame_size: int = RHYTHM_FRAME_SIZE,
    hop_size: int = RHYTHM_HOP_SIZE,
) -> TempoEstimate:
    """
    Estimate tempo from the periodicity of the RMS envelope.

    Never raises for signal conditions: short, silent or aperiodic input
    yields ``bpm=None`` with ``debug["reason"]`` set.

    Args:
        y: Mono signal.
        sr: Sample rate in Hz.
        min_bpm: Lowest tempo to report.
        max_bpm: Highest tempo to report.
        prior: Typical tempo for octave correction.
        frame_size: Envelope frame length.
        hop_size: Envelope hop length.

    Returns:
        TempoEstimate with an integer BPM in ``[min_bpm, max_bpm]`` or None.
    """
    envelope = compute_envelope(y, frame_size, hop_size)
    debug: dict[str, Any] = {
        "method": "autocorrelation",
        "frame_size": frame_size,
        "hop_size": hop_size,
        "n_frames": int(len(envelope)),
    }

    if len(envelope) < MIN_ENVELOPE_FRAMES:
        return TempoEstimate(None, 0.0, {**debug, "reason": "envelope too short"})

    min_lag, max_lag = lag_range(sr, min_bpm, max_bpm, hop_size)
    max_lag = min(max_lag, len(envelope) - 1)
    debug.update(min_lag=min_lag, max_lag=max_lag)
    if min_lag < 1 or min_lag >= max_lag:
        return TempoEstimate(None, 0.0, {**debug, "reason": "invalid lag range"})

    acf = autocorrelate(envelope, min_lag, max_lag)
    best = int(np.argmax(acf))
    peak = float(acf[best])
    lag = min_lag + best
    if not np.isfinite(peak) or peak <= 0:
        return TempoEstimate(None, 0.0, {**debug, "reason": "no clear peak"})

    period = refine_period(envelope, lag)
    raw_bpm = 60.0 * sr / (period * hop_size)
    debug.update(lag=lag, period=period, acf_peak=peak, raw_bpm=raw_bpm)

    corrected = correct_octave(raw_bpm, min_bpm, max_bpm, prior)
    bpm = None if corrected is None else _round_bpm(corrected, min_bpm, max_bpm)
    if bpm is None:
        return TempoEstimate(None, 0.0, {**debug, "reason": "out of range"})

    return TempoEstimate(
        bpm=bpm,
        confidence=float(np.clip(peak, 0.0, 1.0)),
        debug=debug,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class AutocorrelationTempo:
    """Envelope-autocorrelation tempo strategy (no engine needed)."""

    name = "autocorrelation"

    def __init__(
        self,
        prior: float = DEFAULT_TEMPO_PRIOR,
        frame_size: int = RHYTHM_FRAME_SIZE,
        hop_size: int = RHYTHM_HOP_SIZE,
    ):
        self.prior = prior
        self.frame_size = frame_size
        self.hop_size = hop_size

    def estimate(
        self,
        y: np.ndarray,
        sr: int,
        min_bpm: float = DEFAULT_MIN_BPM,
        max_bpm: float = DEFAULT_MAX_BPM,
    ) -> TempoEstimate:
        return estimate_bpm(
            y, sr, min_bpm, max_bpm,
            prior=self.prior,
            frame_size=self.frame_size,
            hop_size=self.hop_size,
        )


class BeatTrackerTempo:
    """
    librosa beat-tracker tempo strategy.

    Raw tempi further than an octave outside the range are discarded rather
    than folded in.  Confidence is the regularity of the tracked beats,
    ``1 - std/mean`` of the inter-beat intervals.
    """

    name = "beat_tracker"

    def __init__(
        self,
        engine: "AnalysisEngine",
        prior: float = DEFAULT_TEMPO_PRIOR,
        hop_length: int = 512,
    ):
        """
        Initialize the strategy.

        Args:
            engine: Warmed-up analysis engine.
            prior: Typical tempo; also the beat tracker's starting tempo.
            hop_length: Onset envelope hop length in samples.
        """
        self.engine = engine
        self.prior = prior
        self.hop_length = hop_length

    def estimate(
        self,
        y: np.ndarray,
        sr: int,
        min_bpm: float = DEFAULT_MIN_BPM,
        max_bpm: float = DEFAULT_MAX_BPM,
    ) -> TempoEstimate:
        """
        Estimate tempo with librosa.

        Raises:
            EngineUnavailableError: If librosa fails on this input.
        """
        lb = self.engine.librosa
        try:
            onset_env = lb.onset.onset_strength(
                y=y,
                sr=sr,
                hop_length=self.hop_length,
            )
            tempo, beat_frames = lb.beat.beat_track(
                onset_envelope=onset_env,
                sr=sr,
                hop_length=self.hop_length,
                start_bpm=self.prior,
            )
        except Exception as exc:
            raise EngineUnavailableError(f"beat tracker failed: {exc}") from exc

        # Handle both scalar tempo and array tempo (librosa version differences)
        if isinstance(tempo, np.ndarray):
            raw_bpm = float(tempo[0]) if len(tempo) > 0 else 0.0
        else:
            raw_bpm = float(tempo)

        debug: dict[str, Any] = {
            "method": "beat_tracker",
            "hop_length": self.hop_length,
            "raw_bpm": raw_bpm,
            "n_beats": int(len(beat_frames)),
        }

        if not np.isfinite(raw_bpm) or raw_bpm <= 0:
            return TempoEstimate(None, 0.0, {**debug, "reason": "no clear peak"})
        if raw_bpm < min_bpm / 2.0 or raw_bpm > max_bpm * 2.0:
            return TempoEstimate(
                None, 0.0, {**debug, "reason": "tempo outside plausible range"}
            )

        corrected = correct_octave(raw_bpm, min_bpm, max_bpm, self.prior)
        bpm = None if corrected is None else _round_bpm(corrected, min_bpm, max_bpm)
        if bpm is None:
            return TempoEstimate(None, 0.0, {**debug, "reason": "out of range"})

        return TempoEstimate(
            bpm=bpm,
            confidence=_beat_regularity(np.asarray(beat_frames)),
            debug=debug,
        )


def _beat_regularity(beat_frames: np.ndarray) -> float:
    """Confidence in [0,1] from the consistency of inter-beat intervals."""
    if len(beat_frames) < 3:
        return 0.0
    intervals = np.diff(beat_frames.astype(np.float64))
    mean_interval = float(np.mean(intervals))
    if mean_interval <= 0:
        return 0.0
    return float(np.clip(1.0 - np.std(intervals) / mean_interval, 0.0, 1.0))
