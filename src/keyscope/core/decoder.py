"""
Audio decoding module.

Turns an audio file into a mono PCM buffer ready for tempo and key
estimation: decode, average the channels down to mono, and keep only the
leading analysis window.

libsndfile (via ``soundfile``) handles wav/flac/ogg and, on recent builds,
mp3.  Anything it rejects is retried through ``audioread``, which delegates
to whatever codec backend the host has (ffmpeg, GStreamer, Core Audio).
"""

import io
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

import audioread
import numpy as np
import soundfile as sf
from audioread.exceptions import DecodeError as AudioreadDecodeError
from audioread.exceptions import NoBackendError
from audioread.rawread import RawAudioFile

from keyscope.config import DEFAULT_MAX_SECONDS
from keyscope.errors import DecodeError, UnsupportedEnvironmentError

logger = logging.getLogger(__name__)

AudioSource = Union[str, Path, bytes, bytearray, BinaryIO]

# Below this many samples neither estimator has a full analysis frame.
MIN_VIABLE_SAMPLES = 4096

# Leading bytes of containers that only a codec backend can open
_COMPRESSED_SIGNATURES = (b"ID3", b"OggS", b"fLaC", b"#!AMR", b"\x30\x26\xb2\x75")


@dataclass
class DecodedAudio:
    """Mono PCM buffer owned by a single analysis call."""

    samples: np.ndarray      # float32, [-1, 1]
    sample_rate: int
    channel_count: int = 1   # channels in the source before downmix
    source_duration: float = 0.0  # seconds decoded before truncation

    @property
    def n_samples(self) -> int:
        """Number of mono samples kept for analysis."""
        return len(self.samples)

    @property
    def duration(self) -> float:
        """Duration of the analysis window in seconds."""
        if self.sample_rate <= 0:
            return 0.0
        return self.n_samples / self.sample_rate

    @property
    def is_too_short(self) -> bool:
        """True when the buffer cannot hold a single chroma frame."""
        return self.n_samples < MIN_VIABLE_SAMPLES


def downmix(channels: np.ndarray) -> np.ndarray:
    """
    Average all channels into one.

    Args:
        channels: Array of shape (n_channels, n_samples), or a 1-D mono array.

    Returns:
        1-D float32 array, the unweighted per-sample mean of the channels.
    """
    data = np.asarray(channels)
    if data.ndim == 1:
        return data.astype(np.float32, copy=True)
    if data.ndim != 2:
        raise ValueError(f"expected 1-D or 2-D audio, got shape {data.shape}")
    if data.shape[0] == 1:
        return data[0].astype(np.float32, copy=True)
    return np.mean(data.astype(np.float64), axis=0).astype(np.float32)


def truncate(
    samples: np.ndarray,
    sample_rate: int,
    max_seconds: Optional[float],
) -> np.ndarray:
    """
    Keep at most ``floor(max_seconds * sample_rate)`` leading samples.

    ``None`` or a non-positive ``max_seconds`` leaves the signal untouched.
    """
    limit = _frame_limit(sample_rate, max_seconds)
    if limit is None or len(samples) <= limit:
        return samples
    return samples[:limit]


def _frame_limit(sample_rate: int, max_seconds: Optional[float]) -> Optional[int]:
    if not max_seconds or max_seconds <= 0:
        return None
    return int(np.floor(max_seconds * sample_rate))


class AudioDecoder:
    """
    Decodes audio files into truncated mono buffers.

    Decoder handles are always opened in ``with`` blocks, so they are
    released whether decoding succeeds or fails.
    """

    def __init__(self, max_seconds: Optional[float] = DEFAULT_MAX_SECONDS):
        """
        Initialize the decoder.

        Args:
            max_seconds: Length of the analysis window. None decodes everything.
        """
        self.max_seconds = max_seconds

    def decode(self, source: AudioSource) -> DecodedAudio:
        """
        Decode an audio file.

        Args:
            source: Path, raw bytes, or a readable binary file object.

        Returns:
            DecodedAudio holding the mono analysis window.

        Raises:
            DecodeError: The file is missing, corrupt, or in an unknown codec.
            UnsupportedEnvironmentError: No decoding backend is installed.
        """
        if isinstance(source, (str, Path)) and not Path(source).is_file():
            raise DecodeError(f"Audio file not found: {source}")

        try:
            return self._decode_soundfile(source)
        except (sf.SoundFileError, RuntimeError) as exc:
            logger.debug("libsndfile rejected input (%s), trying audioread", exc)

        return self._decode_audioread(source)

    def decode_array(
        self,
        data: np.ndarray,
        sample_rate: int,
        channel_axis: int = 0,
    ) -> DecodedAudio:
        """
        Wrap already-decoded PCM in a DecodedAudio.

        Args:
            data: 1-D mono samples or a 2-D multi-channel array.
            sample_rate: Sample rate in Hz.
            channel_axis: Axis of ``data`` that indexes channels (2-D only).

        Returns:
            DecodedAudio with downmixed, truncated samples.
        """
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        data = np.asarray(data)
        if data.ndim == 2:
            data = np.moveaxis(data, channel_axis, 0)
        channel_count = 1 if data.ndim == 1 else int(data.shape[0])
        mono = downmix(data)
        return DecodedAudio(
            samples=truncate(mono, sample_rate, self.max_seconds),
            sample_rate=int(sample_rate),
            channel_count=channel_count,
            source_duration=len(mono) / sample_rate,
        )

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def _decode_soundfile(self, source: AudioSource) -> DecodedAudio:
        if isinstance(source, (bytes, bytearray)):
            target = io.BytesIO(source)
        elif isinstance(source, Path):
            target = str(source)
        else:
            target = source

        with sf.SoundFile(target) as handle:
            sample_rate = handle.samplerate
            limit = _frame_limit(sample_rate, self.max_seconds)
            frames = handle.read(
                frames=-1 if limit is None else limit,
                dtype="float32",
                always_2d=True,
            )
            channel_count = handle.channels
            total_frames = handle.frames

        logger.debug(
            "soundfile decoded %d frames, %d channel(s) @ %d Hz",
            len(frames), channel_count, sample_rate,
        )
        mono = downmix(frames.T)
        return DecodedAudio(
            samples=truncate(mono, sample_rate, self.max_seconds),
            sample_rate=int(sample_rate),
            channel_count=int(channel_count),
            source_duration=total_frames / sample_rate if sample_rate else 0.0,
        )

    def _decode_audioread(self, source: AudioSource) -> DecodedAudio:
        with _as_path(source) as path:
            try:
                with audioread.audio_open(path) as handle:
                    sample_rate = int(handle.samplerate)
                    channel_count = int(handle.channels)
                    source_duration = float(handle.duration or 0.0)
                    pcm = self._read_pcm(handle, sample_rate, channel_count)
            except NoBackendError as exc:
                if _needs_codec_backend(path):
                    raise UnsupportedEnvironmentError(
                        "No audio decoding backend available; install ffmpeg or "
                        "a libsndfile build that supports this format"
                    ) from exc
                raise DecodeError("Could not decode audio: no backend accepted it") from exc
            except (AudioreadDecodeError, OSError, EOFError, ValueError) as exc:
                raise DecodeError(f"Could not decode audio: {exc}") from exc

        if channel_count <= 0 or sample_rate <= 0:
            raise DecodeError("Decoder reported no channels or no sample rate")

        # 16-bit little-endian interleaved PCM
        usable = len(pcm) - len(pcm) % (2 * channel_count)
        interleaved = np.frombuffer(pcm[:usable], dtype="<i2").astype(np.float32)
        interleaved /= 32768.0
        channels = interleaved.reshape(-1, channel_count).T

        logger.debug(
            "audioread decoded %d frames, %d channel(s) @ %d Hz",
            channels.shape[1], channel_count, sample_rate,
        )
        mono = downmix(channels)
        return DecodedAudio(
            samples=truncate(mono, sample_rate, self.max_seconds),
            sample_rate=sample_rate,
            channel_count=channel_count,
            source_duration=source_duration or len(mono) / sample_rate,
        )

    def _read_pcm(self, handle, sample_rate: int, channel_count: int) -> bytes:
        """Read interleaved PCM buffers, stopping once the window is full."""
        limit = _frame_limit(sample_rate, self.max_seconds)
        needed = None if limit is None else limit * channel_count * 2
        chunks = []
        n_bytes = 0
        for buf in handle:
            chunks.append(buf)
            n_bytes += len(buf)
            if needed is not None and n_bytes >= needed:
                break
        return b"".join(chunks)


@contextmanager
def _as_path(source: AudioSource) -> Iterator[str]:
    """Yield a filesystem path for ``source``, spooling in-memory data to disk."""
    if isinstance(source, (str, Path)):
        yield str(source)
        return

    if isinstance(source, (bytes, bytearray)):
        payload = bytes(source)
    else:
        if source.seekable():
            source.seek(0)
        payload = source.read()

    with tempfile.NamedTemporaryFile(suffix=".audio", delete=False) as tmp:
        tmp.write(payload)
        tmp_path = tmp.name
    try:
        yield tmp_path
    finally:
        os.unlink(tmp_path)


def _needs_codec_backend(path: str) -> bool:
    """
    True when audioread gave up only because no codec backend is installed.

    audioread raises the same NoBackendError whether every backend rejected
    the file or none beyond its raw WAV/AIFF reader exists.  The second case
    is only an environment problem if the file looks like compressed audio.
    """
    if any(backend is not RawAudioFile for backend in audioread.available_backends()):
        return False
    try:
        with open(path, "rb") as fh:
            head = fh.read(12)
    except OSError:
        return False
    if head.startswith(_COMPRESSED_SIGNATURES):
        return True
    # MPEG audio frame sync, or an ISO media (mp4/m4a) "ftyp" box
    if len(head) >= 2 and head[0] == 0xFF and head[1] & 0xE0 == 0xE0:
        return True
    return head[4:8] == b"ftyp"
