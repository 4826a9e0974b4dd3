"""Tests for the analysis pipeline, engine lifecycle and request sequencing."""

import asyncio
import sys
import threading
import time

import numpy as np
import pytest

import keyscope
from keyscope import pipeline as pipeline_module
from keyscope.config import FULL_TRACK_OPTIONS, QUICK_OPTIONS, AnalysisOptions
from keyscope.core import engine as engine_module
from keyscope.core.engine import is_engine_loaded, load_engine, reset_engine
from keyscope.core.key import KeyEstimate
from keyscope.core.rhythm import BeatTrackerTempo, TempoEstimate
from keyscope.errors import EngineUnavailableError
from keyscope.pipeline import AnalysisPipeline, AnalysisResult, AnalysisSession

from conftest import CLICK_SR, make_click_track, to_wav_bytes


@pytest.fixture
def numpy_pipeline():
    return AnalysisPipeline(use_engine=False)


@pytest.fixture
def fresh_engine():
    """Start and finish with no cached engine."""
    reset_engine()
    yield
    reset_engine()


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class TestOptions:
    def test_defaults(self):
        opts = AnalysisOptions()
        assert opts.max_seconds == 75.0
        assert (opts.min_bpm, opts.max_bpm) == (60.0, 180.0)
        assert opts.rms_threshold == 0.005
        assert opts.tempo_prior == 120.0

    def test_presets(self):
        assert QUICK_OPTIONS.max_seconds == 30.0
        assert FULL_TRACK_OPTIONS.max_seconds is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_seconds": 0},
            {"min_bpm": 0},
            {"min_bpm": 150, "max_bpm": 100},
            {"rms_threshold": -1},
            {"tempo_prior": 0},
        ],
    )
    def test_validation(self, kwargs):
        with pytest.raises(ValueError):
            AnalysisOptions(**kwargs)

    def test_replace_validates(self):
        assert AnalysisOptions().replace(max_seconds=10).max_seconds == 10
        with pytest.raises(ValueError):
            AnalysisOptions().replace(min_bpm=500)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestPipelineResults:
    def test_click_track_without_engine(self, numpy_pipeline, click_wav_bytes):
        result = numpy_pipeline.analyze(click_wav_bytes)
        assert result.bpm == 120
        assert 0.0 <= result.confidence <= 1.0
        assert result.debug["engine"] == {"status": "disabled"}
        assert result.debug["sample_rate"] == CLICK_SR
        assert result.debug["tempo"]["method"] == "autocorrelation"

    @pytest.mark.parametrize("sr", [22050, 44100, 48000])
    def test_click_track_at_common_sample_rates(self, numpy_pipeline, sr):
        y = make_click_track(120.0, sr, 8.0)
        result = numpy_pipeline.analyze(to_wav_bytes(y, sr))
        assert result.bpm == 120
        assert result.debug["sample_rate"] == sr

    def test_mixed_signal_with_engine(self, mixed_signal):
        y, sr = mixed_signal
        result = AnalysisPipeline().analyze(to_wav_bytes(y, sr))
        assert result.bpm is not None
        assert 60 <= result.bpm <= 180
        assert result.key is not None
        assert result.debug["engine"]["status"] == "ready"
        assert result.debug["key"]["chroma_method"] == "librosa"
        assert 0.0 <= result.confidence <= 1.0

    def test_result_fields(self, numpy_pipeline, mixed_signal):
        y, sr = mixed_signal
        result = numpy_pipeline.analyze(to_wav_bytes(y, sr))
        assert set(result.to_dict()) == {"bpm", "key", "confidence", "debug"}
        assert result.key.split()[1] in ("Major", "Minor")
        assert isinstance(result.bpm, int)

    def test_silence(self, numpy_pipeline, silence):
        y, sr = silence
        result = numpy_pipeline.analyze(to_wav_bytes(y, sr))
        assert result.bpm is None
        assert result.key is None
        assert result.confidence == 0.0
        assert "no loud/valid frames" in result.debug["reason"]

    def test_too_short(self, numpy_pipeline):
        y = np.ones(1000, dtype=np.float32) * 0.5
        result = numpy_pipeline.analyze(to_wav_bytes(y, 22050))
        assert result.bpm is None and result.key is None
        assert result.debug["reason"] == "audio too short"

    def test_undecodable_bytes_fail_soft(self, numpy_pipeline):
        result = numpy_pipeline.analyze(b"definitely not audio" * 64)
        assert result.bpm is None and result.key is None
        assert result.confidence == 0.0
        assert result.debug["reason"] == "decode failed"

    def test_missing_file_fails_soft(self, numpy_pipeline, tmp_path):
        result = numpy_pipeline.analyze(tmp_path / "missing.mp3")
        assert result.debug["reason"] == "decode failed"

    def test_deterministic(self, mixed_signal):
        y, sr = mixed_signal
        data = to_wav_bytes(y, sr)
        first = AnalysisPipeline().analyze(data)
        second = AnalysisPipeline().analyze(data)
        assert (first.bpm, first.key, first.confidence) == (
            second.bpm, second.key, second.confidence
        )

    def test_only_analysis_window_matters(self, mixed_signal):
        y, sr = mixed_signal
        pipeline = AnalysisPipeline(AnalysisOptions(max_seconds=4.0), use_engine=False)
        noise = np.random.default_rng(0).uniform(-1, 1, sr * 3).astype(np.float32)
        head = y[: 4 * sr]

        plain = pipeline.analyze(to_wav_bytes(head, sr))
        extended = pipeline.analyze(to_wav_bytes(np.concatenate([head, noise]), sr))

        assert plain.bpm == extended.bpm
        assert plain.key == extended.key
        assert plain.confidence == extended.confidence
        assert extended.debug["analyzed_seconds"] == pytest.approx(4.0)
        assert extended.debug["source_seconds"] == pytest.approx(7.0)

    def test_stereo_is_downmixed(self, numpy_pipeline, pure_sine):
        y, sr = pure_sine
        result = numpy_pipeline.analyze(to_wav_bytes(np.stack([y, y]), sr))
        assert result.debug["channels"] == 2
        assert result.key in ("A Major", "F# Minor")


class TestPipelineFailureIsolation:
    def test_key_failure_keeps_tempo(self, numpy_pipeline, click_wav_bytes, monkeypatch):
        def explode(decoded, engine):
            raise RuntimeError("chroma blew up")

        monkeypatch.setattr(numpy_pipeline, "_estimate_key", explode)
        result = numpy_pipeline.analyze(click_wav_bytes)
        assert result.bpm == 120
        assert result.key is None
        assert result.debug["key"]["reason"] == "key estimation failed"
        assert result.confidence == pytest.approx(result.debug["tempo"]["confidence"])

    def test_tempo_failure_keeps_key(self, numpy_pipeline, pure_sine, monkeypatch):
        def explode(decoded, engine):
            raise RuntimeError("envelope blew up")

        monkeypatch.setattr(numpy_pipeline, "_estimate_tempo", explode)
        y, sr = pure_sine
        result = numpy_pipeline.analyze(to_wav_bytes(y, sr))
        assert result.bpm is None
        assert result.key is not None
        assert result.debug["tempo"]["error"] == "envelope blew up"

    def test_confidence_is_average_of_successes(self, numpy_pipeline, pure_sine, monkeypatch):
        monkeypatch.setattr(
            numpy_pipeline, "_run_tempo", lambda d, e: TempoEstimate(120, 0.2)
        )
        monkeypatch.setattr(
            numpy_pipeline, "_run_key", lambda d, e: KeyEstimate("C Major", 0.6)
        )
        decoded = numpy_pipeline.decoder.decode_array(*pure_sine)
        assert numpy_pipeline.analyze_decoded(decoded).confidence == pytest.approx(0.4)

        monkeypatch.setattr(
            numpy_pipeline, "_run_key", lambda d, e: KeyEstimate(None, 0.9)
        )
        assert numpy_pipeline.analyze_decoded(decoded).confidence == pytest.approx(0.2)

    def test_engine_unavailable_uses_numpy(self, click_wav_bytes, monkeypatch):
        def unavailable():
            raise EngineUnavailableError("no numba here")

        monkeypatch.setattr(pipeline_module, "load_engine", unavailable)
        result = AnalysisPipeline().analyze(click_wav_bytes)
        assert result.bpm == 120
        assert result.debug["engine"]["status"] == "unavailable"
        assert result.debug["key"]["chroma_method"] == "hpcp"

    def test_beat_tracker_failure_falls_back(self, click_wav_bytes, monkeypatch):
        def broken(self, y, sr, min_bpm, max_bpm):
            raise EngineUnavailableError("tracker crashed")

        monkeypatch.setattr(BeatTrackerTempo, "estimate", broken)
        result = AnalysisPipeline().analyze(click_wav_bytes)
        assert result.bpm == 120
        assert result.debug["tempo"]["method"] == "autocorrelation"
        assert result.debug["tempo"]["beat_tracker"]["error"] == "tracker crashed"

    def test_library_tempo_preferred(self, click_wav_bytes, monkeypatch):
        def fixed(self, y, sr, min_bpm, max_bpm):
            return TempoEstimate(97, 0.5, {"method": "beat_tracker"})

        monkeypatch.setattr(BeatTrackerTempo, "estimate", fixed)
        result = AnalysisPipeline().analyze(click_wav_bytes)
        assert result.bpm == 97

    def test_unexpected_error_is_caught(self, numpy_pipeline, pure_sine, monkeypatch):
        def explode(*args):
            raise RuntimeError("combine failed")

        monkeypatch.setattr(numpy_pipeline, "_combine", explode)
        decoded = numpy_pipeline.decoder.decode_array(*pure_sine)
        result = numpy_pipeline.analyze_decoded(decoded)
        assert result.debug["reason"] == "analysis failed"


class TestAsync:
    def test_matches_sync(self, numpy_pipeline, click_wav_bytes):
        sync_result = numpy_pipeline.analyze(click_wav_bytes)
        async_result = asyncio.run(numpy_pipeline.analyze_async(click_wav_bytes))
        assert (async_result.bpm, async_result.key, async_result.confidence) == (
            sync_result.bpm, sync_result.key, sync_result.confidence
        )

    def test_async_decode_failure(self, numpy_pipeline):
        result = asyncio.run(numpy_pipeline.analyze_async(b"garbage" * 100))
        assert result.debug["reason"] == "decode failed"

    def test_module_level_helpers(self, click_wav_bytes):
        result = keyscope.analyze(click_wav_bytes, use_engine=False, max_seconds=5)
        assert result.bpm == 120
        assert result.debug["analyzed_seconds"] == pytest.approx(5.0)

        result = asyncio.run(keyscope.analyze_async(click_wav_bytes, use_engine=False))
        assert result.bpm == 120


# ---------------------------------------------------------------------------
# Engine lifecycle
# ---------------------------------------------------------------------------

class TestEngine:
    def test_single_initialization_under_contention(self, fresh_engine, monkeypatch):
        calls = []

        def slow_warmup():
            calls.append(threading.get_ident())
            time.sleep(0.05)

        monkeypatch.setattr(engine_module, "_warmup", slow_warmup)

        engines = []
        threads = [
            threading.Thread(target=lambda: engines.append(load_engine()))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(engines) == 8
        assert all(e is engines[0] for e in engines)
        assert load_engine() is engines[0]

    def test_failure_is_not_cached(self, fresh_engine, monkeypatch):
        def failing_warmup():
            raise RuntimeError("numba exploded")

        monkeypatch.setattr(engine_module, "_warmup", failing_warmup)
        with pytest.raises(EngineUnavailableError, match="numba exploded"):
            load_engine()
        assert not is_engine_loaded()

        monkeypatch.setattr(engine_module, "_warmup", lambda: None)
        engine = load_engine()
        assert is_engine_loaded()
        assert engine.version

    def test_pipeline_retries_engine(self, fresh_engine, pure_sine, monkeypatch):
        def failing_warmup():
            raise RuntimeError("first try fails")

        monkeypatch.setattr(engine_module, "_warmup", failing_warmup)
        pipeline = AnalysisPipeline()
        decoded = pipeline.decoder.decode_array(*pure_sine)
        assert pipeline.analyze_decoded(decoded).debug["engine"]["status"] == "unavailable"

        monkeypatch.setattr(engine_module, "_warmup", lambda: None)
        assert pipeline.analyze_decoded(decoded).debug["engine"]["status"] == "ready"

    def test_missing_librosa_is_unavailable(self, fresh_engine, click_wav_bytes, monkeypatch):
        monkeypatch.setitem(sys.modules, "librosa", None)
        with pytest.raises(EngineUnavailableError):
            load_engine()
        assert not is_engine_loaded()

        result = AnalysisPipeline().analyze(click_wav_bytes)
        assert result.bpm == 120
        assert result.debug["engine"]["status"] == "unavailable"
        assert result.debug["key"]["chroma_method"] == "hpcp"


# ---------------------------------------------------------------------------
# Latest-request gate
# ---------------------------------------------------------------------------

class _DelayPipeline:
    """Returns after ``source`` seconds with bpm derived from the delay."""

    async def analyze_async(self, source):
        await asyncio.sleep(source)
        return AnalysisResult(bpm=int(source * 1000))


class TestSession:
    def test_tickets_increase(self):
        session = AnalysisSession(AnalysisPipeline(use_engine=False))
        first = session.begin()
        second = session.begin()
        assert second > first
        assert session.is_current(second)
        assert not session.is_current(first)

    def test_stale_async_result_discarded(self):
        session = AnalysisSession(_DelayPipeline())

        async def scenario():
            slow = asyncio.create_task(session.submit_async(0.05))
            await asyncio.sleep(0)
            fast = await session.submit_async(0.0)
            return await slow, fast

        stale, latest = asyncio.run(scenario())
        assert stale is None
        assert latest is not None
        assert latest.bpm == 0

    def test_stale_sync_result_discarded(self):
        session = AnalysisSession(AnalysisPipeline(use_engine=False))

        class Superseded:
            def analyze(self, source):
                session.begin()
                return AnalysisResult(bpm=120)

        session.pipeline = Superseded()
        assert session.submit(b"ignored") is None

    def test_current_sync_result_returned(self, click_wav_bytes):
        session = AnalysisSession(AnalysisPipeline(use_engine=False))
        result = session.submit(click_wav_bytes)
        assert result is not None
        assert result.bpm == 120
