"""
Keyscope estimator benchmark + agreement check.

Usage:
    python scripts/benchmark.py [--quick]

Modes:
    default  — 60 s synthetic signals, 2 warm-up + 5 timed runs per estimator
    --quick  — 15 s synthetic signals, 1 warm-up + 3 timed runs (CI-friendly)

Output: timing table + agreement report printed to stdout.

Agreement check: runs the numpy estimators (autocorrelation tempo, HPCP
chroma) and the librosa engine estimators (beat tracker, STFT chroma) on the
same synthetic signals.  Tempo must agree within 2 BPM and the key label
must match exactly.
"""

import argparse
import os
import sys
import time
from typing import List

import numpy as np

# Make sure the installed package is on the path when run from repo root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from keyscope.core.chroma import HPCPChroma, LibrosaChroma
from keyscope.core.engine import load_engine
from keyscope.core.key import estimate_key
from keyscope.core.rhythm import AutocorrelationTempo, BeatTrackerTempo
from keyscope.errors import EngineUnavailableError

_SEP = "─" * 72

# 2**14 Hz keeps whole-number beat lags for 120 BPM in both estimators
SR = 16384

# Triads (root Hz, third ratio, label) for the agreement check
_CHORDS = [
    (261.63, 2 ** (4 / 12), "C Major"),
    (440.00, 2 ** (3 / 12), "A Minor"),
    (392.00, 2 ** (4 / 12), "G Major"),
    (293.66, 2 ** (3 / 12), "D Minor"),
]


def _hdr(title: str) -> None:
    print(f"\n{_SEP}")
    print(f"  {title}")
    print(_SEP)


def _timeit(fn, *args, warmup: int = 2, runs: int = 5, **kwargs) -> List[float]:
    """Run fn(*args, **kwargs), discard warmup iterations, return timed samples."""
    for _ in range(warmup):
        fn(*args, **kwargs)
    times = []
    for _ in range(runs):
        t0 = time.perf_counter()
        fn(*args, **kwargs)
        times.append(time.perf_counter() - t0)
    return times


def _stats(times: List[float]) -> str:
    arr = np.array(times)
    return f"mean={arr.mean()*1000:.1f} ms  min={arr.min()*1000:.1f} ms  max={arr.max()*1000:.1f} ms"


# ---------------------------------------------------------------------------
# Synthetic signals
# ---------------------------------------------------------------------------

def _clicks(bpm: float, duration: float) -> np.ndarray:
    y = np.zeros(int(SR * duration), dtype=np.float32)
    click = (0.8 * np.hanning(64)).astype(np.float32)
    for start in np.arange(0.25 * SR, len(y) - 64, 60.0 / bpm * SR):
        start = int(round(start))
        y[start:start + 64] += click
    return y


def _triad(root: float, third_ratio: float, duration: float) -> np.ndarray:
    t = np.arange(int(SR * duration)) / SR
    y = sum(
        0.25 * np.sin(2 * np.pi * root * ratio * t)
        for ratio in (1.0, third_ratio, 2 ** (7 / 12))
    )
    return y.astype(np.float32)


def _song(bpm: float, root: float, third_ratio: float, duration: float) -> np.ndarray:
    return np.clip(_clicks(bpm, duration) + _triad(root, third_ratio, duration), -1, 1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(description="Keyscope estimator benchmark")
    parser.add_argument(
        "--quick",
        action="store_true",
        help="Use 15 s instead of 60 s signals for fast CI runs",
    )
    args = parser.parse_args()

    if args.quick:
        DURATION = 15.0
        WARMUP, RUNS = 1, 3
        label = "15 s signals (quick mode)"
    else:
        DURATION = 60.0
        WARMUP, RUNS = 2, 5
        label = "60 s signals (full mode)"

    print(f"\nKeyscope Estimator Benchmark  —  {label}")
    t0 = time.perf_counter()
    try:
        engine = load_engine()
    except EngineUnavailableError as exc:
        engine = None
        print(f"Engine unavailable: {exc}")
    else:
        print(f"librosa {engine.version} warm-up: {(time.perf_counter() - t0)*1000:.0f} ms")
    print(f"Warm-up runs: {WARMUP}  |  Timed runs: {RUNS}")

    results = {}
    y = _song(120.0, *_CHORDS[0][:2], DURATION)

    # ------------------------------------------------------------------
    # 1. Tempo
    # ------------------------------------------------------------------
    _hdr("1. tempo")
    acf = AutocorrelationTempo()
    t = _timeit(acf.estimate, y, SR, warmup=WARMUP, runs=RUNS)
    results["autocorrelation"] = t
    print(f"  autocorrelation  {_stats(t)}")

    if engine is not None:
        tracker = BeatTrackerTempo(engine)
        t_lb = _timeit(tracker.estimate, y, SR, warmup=WARMUP, runs=RUNS)
        results["beat_tracker"] = t_lb
        print(f"  beat_tracker     {_stats(t_lb)}")
        print(f"  Ratio: {np.mean(t_lb) / np.mean(t):.1f}×")

    # ------------------------------------------------------------------
    # 2. Key
    # ------------------------------------------------------------------
    _hdr("2. key")
    t = _timeit(estimate_key, y, SR, HPCPChroma(), warmup=WARMUP, runs=RUNS)
    results["hpcp_key"] = t
    print(f"  hpcp             {_stats(t)}")

    if engine is not None:
        t_lb = _timeit(estimate_key, y, SR, LibrosaChroma(engine), warmup=WARMUP, runs=RUNS)
        results["librosa_key"] = t_lb
        print(f"  librosa          {_stats(t_lb)}")
        print(f"  Ratio: {np.mean(t_lb) / np.mean(t):.1f}×")

    # ------------------------------------------------------------------
    # Agreement
    # ------------------------------------------------------------------
    _hdr("Agreement (numpy vs librosa — 10 s signals)")

    if engine is not None:
        BPM_TOL = 2

        print(f"  {'Signal':<22}  {'acf':>4}  {'beat':>4}  {'hpcp':<9}  {'librosa':<9}  status")
        print(f"  {'-'*22}  {'-'*4}  {'-'*4}  {'-'*9}  {'-'*9}  ------")

        all_ok = True
        for bpm in (90.0, 120.0, 150.0):
            for root, third, expected in _CHORDS:
                sig = _song(bpm, root, third, 10.0)
                a = acf.estimate(sig, SR)
                b = BeatTrackerTempo(engine).estimate(sig, SR)
                k_np = estimate_key(sig, SR, HPCPChroma())
                k_lb = estimate_key(sig, SR, LibrosaChroma(engine))

                ok = (
                    a.bpm is not None
                    and b.bpm is not None
                    and abs(a.bpm - b.bpm) <= BPM_TOL
                    and k_np.key == k_lb.key
                )
                all_ok &= ok
                name = f"{bpm:.0f} BPM {expected}"
                print(
                    f"  {name:<22}  {a.bpm!s:>4}  {b.bpm!s:>4}  {k_np.key!s:<9}"
                    f"  {k_lb.key!s:<9}  [{'PASS' if ok else 'FAIL'}]"
                )

        if all_ok:
            print("\n  All agreement checks PASSED.")
        else:
            print("\n  !! DISAGREEMENT DETECTED — compare debug output of both paths !!")
            sys.exit(1)
    else:
        print("  Engine not available — skipping agreement checks.")

    # ------------------------------------------------------------------
    # Summary table
    # ------------------------------------------------------------------
    _hdr("Summary")
    rows = []
    for name, times in results.items():
        rows.append((name, f"{np.mean(times)*1000:.1f}"))

    name_w = max(len(r[0]) for r in rows) + 2
    print(f"  {'Estimator':<{name_w}} Time (ms, mean)")
    print(f"  {'-'*name_w} ---------------")
    for name, val in rows:
        print(f"  {name:<{name_w}} {val}")

    print(f"\n{_SEP}\n")


if __name__ == "__main__":
    main()
