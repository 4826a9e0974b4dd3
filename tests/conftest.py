"""Shared synthetic-signal fixtures."""

import io

import numpy as np
import pytest
import soundfile as sf

TEST_SR = 22050
# 16384 Hz puts a 120 BPM beat exactly 8 envelope hops (8 * 1024 samples) apart.
CLICK_SR = 16384


def make_click_track(
    bpm: float,
    sr: int,
    duration: float,
    click_len: int = 64,
    offset: float = 0.25,
    amplitude: float = 0.8,
) -> np.ndarray:
    """Short Hann-shaped clicks at a fixed tempo."""
    y = np.zeros(int(sr * duration), dtype=np.float32)
    click = (amplitude * np.hanning(click_len)).astype(np.float32)
    period = 60.0 / bpm * sr
    for start in np.arange(offset * sr, len(y) - click_len, period):
        start = int(round(start))
        y[start:start + click_len] += click
    return y


def make_sine(
    freq: float,
    sr: int,
    duration: float,
    amplitude: float = 0.5,
) -> np.ndarray:
    t = np.arange(int(sr * duration)) / sr
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def to_wav_bytes(data: np.ndarray, sr: int) -> bytes:
    """Encode (n,) or (channels, n) float audio as a float WAV file."""
    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 2:
        data = data.T
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="WAV", subtype="FLOAT")
    return buf.getvalue()


@pytest.fixture
def click_track():
    """Exactly 120 BPM clicks, 6 seconds at CLICK_SR."""
    return make_click_track(120.0, CLICK_SR, 6.0), CLICK_SR


@pytest.fixture
def pure_sine():
    """A4 (440 Hz) sine, 4 seconds."""
    return make_sine(440.0, TEST_SR, 4.0), TEST_SR


@pytest.fixture
def c_major_chord():
    """C4 + E4 + G4 lasting 4 seconds."""
    y = (
        make_sine(261.63, TEST_SR, 4.0, 0.3)
        + make_sine(329.63, TEST_SR, 4.0, 0.3)
        + make_sine(392.00, TEST_SR, 4.0, 0.3)
    )
    return y.astype(np.float32), TEST_SR


@pytest.fixture
def mixed_signal():
    """A-major-ish tones over a 120 BPM click track, 6 seconds."""
    sr = TEST_SR
    tones = make_sine(440.0, sr, 6.0, 0.2) + make_sine(554.37, sr, 6.0, 0.1)
    y = tones + make_click_track(120.0, sr, 6.0)
    return np.clip(y, -1.0, 1.0).astype(np.float32), sr


@pytest.fixture
def silence():
    return np.zeros(TEST_SR * 5, dtype=np.float32), TEST_SR


@pytest.fixture
def stereo_buffer():
    """Two channels with distinct, known content."""
    n = TEST_SR
    left = np.full(n, 0.5, dtype=np.float32)
    right = np.linspace(-1.0, 1.0, n, dtype=np.float32)
    return np.stack([left, right]), TEST_SR


@pytest.fixture
def click_wav_bytes(click_track):
    y, sr = click_track
    return to_wav_bytes(y, sr)
