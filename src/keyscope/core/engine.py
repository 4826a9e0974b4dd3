"""
Lazily initialized librosa analysis engine.

The first beat-track and chroma calls in a process pay for numba JIT
compilation of librosa's kernels, which takes seconds.  The engine runs that
warm-up once, on a tiny synthetic signal, and is then shared process-wide.

Initialization is guarded by a lock: concurrent first callers block until
the single warm-up finishes and all receive the same engine.  A failed
warm-up is not remembered; the next call tries again.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from keyscope.errors import EngineUnavailableError

logger = logging.getLogger(__name__)

_WARMUP_SR = 8192


@dataclass(frozen=True)
class AnalysisEngine:
    """Handle to a warmed-up librosa installation."""

    version: str
    module: Any = field(default=None, repr=False, compare=False)

    @property
    def librosa(self):
        """The librosa module the engine was warmed up with."""
        return self.module


_engine: Optional[AnalysisEngine] = None
_lock = threading.Lock()


def _warmup() -> None:
    """Trigger JIT compilation once on a 2-second click signal."""
    import librosa

    y = np.zeros(2 * _WARMUP_SR, dtype=np.float32)
    y[:: _WARMUP_SR // 2] = 1.0
    librosa.beat.beat_track(y=y, sr=_WARMUP_SR)
    librosa.feature.chroma_stft(y=y, sr=_WARMUP_SR, n_fft=1024, hop_length=512)


def _initialize() -> AnalysisEngine:
    # A broken librosa install must surface as EngineUnavailableError
    try:
        import librosa

        _warmup()
    except Exception as exc:
        raise EngineUnavailableError(
            f"librosa engine failed to initialize: {exc}"
        ) from exc
    logger.debug("librosa engine ready (version %s)", librosa.__version__)
    return AnalysisEngine(version=str(librosa.__version__), module=librosa)


def load_engine() -> AnalysisEngine:
    """
    Return the process-wide engine, initializing it on first use.

    Returns:
        The shared AnalysisEngine.

    Raises:
        EngineUnavailableError: If warm-up fails.  Nothing is cached in that
            case, so a later call retries.
    """
    global _engine
    engine = _engine
    if engine is not None:
        return engine
    with _lock:
        if _engine is None:
            _engine = _initialize()
        return _engine


def is_engine_loaded() -> bool:
    """True once an engine has been initialized successfully."""
    return _engine is not None


def reset_engine() -> None:
    """Drop the cached engine so the next :func:`load_engine` re-initializes."""
    global _engine
    with _lock:
        _engine = None
