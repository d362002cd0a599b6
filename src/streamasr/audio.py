"""PCM16 wire-format helpers.

Clients stream 16kHz mono PCM16 little-endian audio; recognizers consume
float32 samples in [-1, 1].
"""

from collections.abc import Iterator

import numpy as np

from streamasr.constants import BYTES_PER_SAMPLE, SAMPLE_RATE


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 samples in [-1, 1].

    Raises:
        ValueError: ``data`` has an odd number of bytes.
    """
    if not validate_audio_format(data):
        raise ValueError(f"PCM16 data must have an even length, got {len(data)} bytes")
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    """Convert float32 samples to PCM16 bytes, clipping to [-1, 1]."""
    clipped = np.clip(np.asarray(audio, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def chunk_audio(data: bytes, chunk_size: int) -> Iterator[bytes]:
    """Split audio bytes into chunks of ``chunk_size`` bytes; the last may be shorter."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    for i in range(0, len(data), chunk_size):
        yield data[i : i + chunk_size]


def validate_audio_format(data: bytes) -> bool:
    return len(data) % BYTES_PER_SAMPLE == 0


def samples_to_bytes(num_samples: int) -> int:
    return num_samples * BYTES_PER_SAMPLE


def bytes_to_samples(num_bytes: int) -> int:
    return num_bytes // BYTES_PER_SAMPLE


def duration_samples(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    """Number of samples in ``duration_ms`` milliseconds of audio."""
    return sample_rate * duration_ms // 1000


def duration_bytes(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> int:
    return samples_to_bytes(duration_samples(duration_ms, sample_rate))
