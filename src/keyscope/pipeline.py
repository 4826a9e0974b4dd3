"""
End-to-end BPM and key analysis.

:class:`AnalysisPipeline` decodes a file, runs tempo and key estimation
independently, and merges the two into one :class:`AnalysisResult`.  It
fails soft: decode errors, missing backends, silent or too-short audio and
engine failures all come back as a result with null fields and a
``debug["reason"]``, never as an exception.

When the librosa engine initializes, its beat tracker and chroma are tried
first and the pure numpy estimators are the fallback.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from keyscope.config import DEFAULT_OPTIONS, AnalysisOptions
from keyscope.core.chroma import HPCPChroma, LibrosaChroma
from keyscope.core.decoder import AudioDecoder, AudioSource, DecodedAudio
from keyscope.core.engine import AnalysisEngine, load_engine
from keyscope.core.key import KeyEstimate, estimate_key
from keyscope.core.rhythm import AutocorrelationTempo, BeatTrackerTempo, TempoEstimate
from keyscope.errors import (
    DecodeError,
    EngineUnavailableError,
    UnsupportedEnvironmentError,
)

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """
    Advisory tempo/key estimate for one audio file.

    ``bpm`` and ``key`` are None when they could not be detected; ``debug``
    is diagnostic only and has no stable schema.
    """

    bpm: Optional[int] = None
    key: Optional[str] = None
    confidence: float = 0.0
    debug: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bpm": self.bpm,
            "key": self.key,
            "confidence": self.confidence,
            "debug": self.debug,
        }


class AnalysisPipeline:
    """
    Orchestrates decoding, tempo estimation and key estimation.

    A pipeline holds no per-call state and may be shared between threads.
    """

    def __init__(
        self,
        options: Optional[AnalysisOptions] = None,
        use_engine: bool = True,
        decoder: Optional[AudioDecoder] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            options: Analysis options (window length, BPM range, thresholds).
            use_engine: Try the librosa engine before the numpy estimators.
            decoder: Custom decoder; defaults to one honouring
                ``options.max_seconds``.
        """
        self.options = options or DEFAULT_OPTIONS
        self.use_engine = use_engine
        self.decoder = decoder or AudioDecoder(max_seconds=self.options.max_seconds)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def analyze(self, source: AudioSource) -> AnalysisResult:
        """
        Analyze an audio file.

        Args:
            source: Path, raw bytes, or a binary file object.

        Returns:
            AnalysisResult; never raises for bad or unusable audio.
        """
        try:
            decoded = self.decoder.decode(source)
        except Exception as exc:
            return self._decode_failure(exc)
        return self.analyze_decoded(decoded)

    def analyze_decoded(self, decoded: DecodedAudio) -> AnalysisResult:
        """Analyze an already decoded mono buffer."""
        try:
            if decoded.is_too_short:
                return self._too_short(decoded)
            engine, engine_debug = self._engine()
            tempo = self._run_tempo(decoded, engine)
            key = self._run_key(decoded, engine)
            return self._combine(decoded, tempo, key, engine_debug)
        except Exception as exc:
            logger.exception("unexpected error during analysis")
            return AnalysisResult(debug={"reason": "analysis failed", "error": str(exc)})

    async def analyze_async(self, source: AudioSource) -> AnalysisResult:
        """
        Analyze an audio file without blocking the event loop.

        Decoding runs in a worker thread; the tempo and key branches then run
        concurrently in two more.
        """
        try:
            decoded = await asyncio.to_thread(self.decoder.decode, source)
        except Exception as exc:
            return self._decode_failure(exc)
        return await self.analyze_decoded_async(decoded)

    async def analyze_decoded_async(self, decoded: DecodedAudio) -> AnalysisResult:
        """Async counterpart of :meth:`analyze_decoded`."""
        try:
            if decoded.is_too_short:
                return self._too_short(decoded)
            engine, engine_debug = await asyncio.to_thread(self._engine)
            tempo, key = await asyncio.gather(
                asyncio.to_thread(self._run_tempo, decoded, engine),
                asyncio.to_thread(self._run_key, decoded, engine),
            )
            return self._combine(decoded, tempo, key, engine_debug)
        except Exception as exc:
            logger.exception("unexpected error during analysis")
            return AnalysisResult(debug={"reason": "analysis failed", "error": str(exc)})

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _engine(self) -> tuple[Optional[AnalysisEngine], dict[str, Any]]:
        if not self.use_engine:
            return None, {"status": "disabled"}
        try:
            engine = load_engine()
        except EngineUnavailableError as exc:
            logger.warning("analysis engine unavailable, using numpy estimators: %s", exc)
            return None, {"status": "unavailable", "error": str(exc)}
        return engine, {"status": "ready", "version": engine.version}

    def _run_tempo(
        self,
        decoded: DecodedAudio,
        engine: Optional[AnalysisEngine],
    ) -> TempoEstimate:
        try:
            return self._estimate_tempo(decoded, engine)
        except Exception as exc:
            logger.exception("tempo estimation failed")
            return TempoEstimate(None, 0.0, {"reason": "tempo estimation failed", "error": str(exc)})

    def _run_key(
        self,
        decoded: DecodedAudio,
        engine: Optional[AnalysisEngine],
    ) -> KeyEstimate:
        try:
            return self._estimate_key(decoded, engine)
        except Exception as exc:
            logger.exception("key estimation failed")
            return KeyEstimate(None, 0.0, {"reason": "key estimation failed", "error": str(exc)})

    def _estimate_tempo(
        self,
        decoded: DecodedAudio,
        engine: Optional[AnalysisEngine],
    ) -> TempoEstimate:
        opts = self.options
        y, sr = decoded.samples, decoded.sample_rate
        fallback = AutocorrelationTempo(prior=opts.tempo_prior)
        if engine is None:
            return fallback.estimate(y, sr, opts.min_bpm, opts.max_bpm)

        try:
            tracked = BeatTrackerTempo(engine, prior=opts.tempo_prior).estimate(
                y, sr, opts.min_bpm, opts.max_bpm
            )
        except EngineUnavailableError as exc:
            logger.warning("beat tracker failed, using autocorrelation: %s", exc)
            tracked_debug: dict[str, Any] = {"error": str(exc)}
        else:
            # Beat tracker tempo wins whenever it produced one
            if tracked.bpm is not None:
                return tracked
            logger.debug("beat tracker found no tempo (%s)", tracked.reason)
            tracked_debug = tracked.debug

        estimate = fallback.estimate(y, sr, opts.min_bpm, opts.max_bpm)
        estimate.debug["beat_tracker"] = tracked_debug
        return estimate

    def _estimate_key(
        self,
        decoded: DecodedAudio,
        engine: Optional[AnalysisEngine],
    ) -> KeyEstimate:
        opts = self.options
        y, sr = decoded.samples, decoded.sample_rate
        fallback = HPCPChroma(rms_threshold=opts.rms_threshold)
        if engine is None:
            return estimate_key(y, sr, fallback)

        try:
            return estimate_key(
                y, sr, LibrosaChroma(engine, rms_threshold=opts.rms_threshold)
            )
        except EngineUnavailableError as exc:
            logger.warning("librosa chroma failed, using HPCP: %s", exc)
            estimate = estimate_key(y, sr, fallback)
            estimate.debug["librosa_error"] = str(exc)
            return estimate

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _combine(
        self,
        decoded: DecodedAudio,
        tempo: TempoEstimate,
        key: KeyEstimate,
        engine_debug: dict[str, Any],
    ) -> AnalysisResult:
        # Plain average of the confidences of the branches that succeeded
        confidences = [
            estimate.confidence
            for estimate, value in ((tempo, tempo.bpm), (key, key.key))
            if value is not None
        ]
        confidence = float(np.clip(np.mean(confidences), 0.0, 1.0)) if confidences else 0.0

        debug: dict[str, Any] = {
            **self._audio_debug(decoded),
            "engine": engine_debug,
            "tempo": {**tempo.debug, "confidence": tempo.confidence},
            "key": {**key.debug, "confidence": key.confidence},
        }
        if tempo.bpm is None and key.key is None:
            reasons = [r for r in (tempo.reason, key.reason) if r]
            debug["reason"] = "; ".join(reasons) or "no estimate"

        return AnalysisResult(
            bpm=tempo.bpm,
            key=key.key,
            confidence=confidence,
            debug=debug,
        )

    def _audio_debug(self, decoded: DecodedAudio) -> dict[str, Any]:
        return {
            "sample_rate": decoded.sample_rate,
            "channels": decoded.channel_count,
            "analyzed_seconds": decoded.duration,
            "source_seconds": decoded.source_duration,
        }

    def _too_short(self, decoded: DecodedAudio) -> AnalysisResult:
        logger.info("audio too short to analyze (%d samples)", decoded.n_samples)
        return AnalysisResult(
            debug={**self._audio_debug(decoded), "reason": "audio too short"}
        )

    def _decode_failure(self, exc: Exception) -> AnalysisResult:
        if isinstance(exc, UnsupportedEnvironmentError):
            logger.warning("cannot decode audio in this environment: %s", exc)
            reason = "unsupported environment"
        elif isinstance(exc, DecodeError):
            logger.warning("audio decode failed: %s", exc)
            reason = "decode failed"
        else:
            logger.error("unexpected error while decoding audio", exc_info=exc)
            reason = "decode failed"
        return AnalysisResult(debug={"reason": reason, "error": str(exc)})


class AnalysisSession:
    """
    Keeps only the newest of overlapping analysis requests.

    Every request takes a ticket from a monotonically increasing sequence.
    A result whose ticket is no longer the latest when it arrives is
    discarded, so a slow analysis of a previously selected file can never
    overwrite the result for the current one.
    """

    def __init__(self, pipeline: Optional[AnalysisPipeline] = None):
        self.pipeline = pipeline or AnalysisPipeline()
        self._sequence = itertools.count(1)
        self._latest = 0
        self._lock = threading.Lock()

    def begin(self) -> int:
        """Issue a ticket for a new request, superseding all earlier ones."""
        with self._lock:
            ticket = next(self._sequence)
            self._latest = ticket
            return ticket

    def is_current(self, ticket: int) -> bool:
        """True if no request has been issued after ``ticket``."""
        with self._lock:
            return ticket == self._latest

    def submit(self, source: AudioSource) -> Optional[AnalysisResult]:
        """Analyze ``source``; returns None if a newer request superseded it."""
        ticket = self.begin()
        result = self.pipeline.analyze(source)
        return self._resolve(ticket, result)

    async def submit_async(self, source: AudioSource) -> Optional[AnalysisResult]:
        """Async counterpart of :meth:`submit`."""
        ticket = self.begin()
        result = await self.pipeline.analyze_async(source)
        return self._resolve(ticket, result)

    def _resolve(self, ticket: int, result: AnalysisResult) -> Optional[AnalysisResult]:
        if not self.is_current(ticket):
            logger.debug("discarding stale result for request %d", ticket)
            return None
        return result


def _resolve_options(
    options: Optional[AnalysisOptions],
    overrides: dict[str, Any],
) -> AnalysisOptions:
    options = options or DEFAULT_OPTIONS
    return options.replace(**overrides) if overrides else options


def analyze(
    source: AudioSource,
    options: Optional[AnalysisOptions] = None,
    use_engine: bool = True,
    **overrides: Any,
) -> AnalysisResult:
    """
    Estimate BPM and key of an audio file.

    Args:
        source: Path, raw bytes, or a binary file object.
        options: Base options; keyword overrides such as ``max_seconds=30``
            or ``min_bpm=70`` are applied on top.
        use_engine: Try the librosa engine first.

    Returns:
        AnalysisResult.

    Example:
        >>> result = analyze("track.mp3", max_seconds=30)
        >>> result.bpm, result.key
        (124, 'A Minor')
    """
    pipeline = AnalysisPipeline(_resolve_options(options, overrides), use_engine=use_engine)
    return pipeline.analyze(source)


async def analyze_async(
    source: AudioSource,
    options: Optional[AnalysisOptions] = None,
    use_engine: bool = True,
    **overrides: Any,
) -> AnalysisResult:
    """Async counterpart of :func:`analyze`."""
    pipeline = AnalysisPipeline(_resolve_options(options, overrides), use_engine=use_engine)
    return await pipeline.analyze_async(source)
