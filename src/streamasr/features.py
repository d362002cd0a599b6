"""Per-stream feature frame accumulation.

Frames are rows of a float32 array with a fixed feature dimension. The
buffer is append-only until frames are consumed; consumed frames are
never handed out again.
"""

from typing import Optional, Protocol

import numpy as np


class FeatureExtractor(Protocol):
    """Protocol for waveform-to-feature front ends.

    One instance is created per stream, since extractors keep the partial
    frame overlap of the previous call.
    """

    sample_rate: int
    feature_dim: int

    def accept_waveform(self, samples: np.ndarray) -> np.ndarray:
        """Return the feature frames completed by these samples, [n, feature_dim]."""
        ...

    def input_finished(self) -> np.ndarray:
        """Flush any frames still pending at end of input."""
        ...


class FeatureBuffer:
    """Growable frame buffer with a sliding read window."""

    def __init__(self, feature_dim: int, capacity: int = 256):
        self._feature_dim = feature_dim
        self._data = np.zeros((max(capacity, 1), feature_dim), dtype=np.float32)
        self._start = 0  # read position within _data
        self._end = 0  # write position within _data
        self._consumed = 0  # absolute number of frames consumed so far

    @property
    def feature_dim(self) -> int:
        return self._feature_dim

    @property
    def num_frames(self) -> int:
        """Frames pushed but not yet consumed."""
        return self._end - self._start

    @property
    def num_consumed(self) -> int:
        """Absolute read offset: frames consumed since creation."""
        return self._consumed

    @property
    def num_pushed(self) -> int:
        return self._consumed + self.num_frames

    def push(self, frames: np.ndarray) -> None:
        """Append ``[n, feature_dim]`` frames."""
        frames = np.asarray(frames, dtype=np.float32)
        if frames.ndim == 1 and frames.shape[0] == self._feature_dim:
            frames = frames[np.newaxis, :]
        if frames.ndim != 2 or frames.shape[1] != self._feature_dim:
            raise ValueError(
                f"Expected frames of shape [n, {self._feature_dim}], got {frames.shape}"
            )
        n = frames.shape[0]
        if n == 0:
            return
        self._reserve(n)
        self._data[self._end : self._end + n] = frames
        self._end += n

    def peek(self, window: int) -> Optional[np.ndarray]:
        """Return a copy of the next ``window`` frames without consuming them."""
        if window <= 0 or self.num_frames < window:
            return None
        return self._data[self._start : self._start + window].copy()

    def consume(self, n: int) -> None:
        """Drop the next ``n`` frames."""
        if n < 0 or n > self.num_frames:
            raise ValueError(f"Cannot consume {n} frames, {self.num_frames} available")
        self._start += n
        self._consumed += n

    def take_ready(self, window: int, shift: int) -> Optional[np.ndarray]:
        """Remove and return one window of frames, or None if not enough.

        The read position advances by ``shift``, so the last
        ``window - shift`` frames are returned again at the head of the
        next window.
        """
        if not 0 < shift <= window:
            raise ValueError(f"shift must be in (0, window], got shift={shift} window={window}")
        frames = self.peek(window)
        if frames is None:
            return None
        self.consume(shift)
        return frames

    def drain_all(self) -> np.ndarray:
        """Remove and return everything buffered."""
        frames = self._data[self._start : self._end].copy()
        self.consume(self.num_frames)
        return frames

    def pad_tail(self, window: int, shift: int, value: float = 0.0) -> int:
        """Pad with constant frames so the last real frame lands in a window body.

        Windows start at multiples of ``shift``; the body of a window is
        its first ``shift`` frames. Returns the number of frames added.
        """
        total = self.num_pushed
        if total == 0:
            return 0
        last_window = -(-total // shift) - 1
        pad = max(0, last_window * shift + window - total)
        if pad:
            self.push(np.full((pad, self._feature_dim), value, dtype=np.float32))
        return pad

    def clear(self) -> None:
        self.consume(self.num_frames)

    def _reserve(self, n: int) -> None:
        capacity = self._data.shape[0]
        if self._end + n <= capacity:
            return
        pending = self.num_frames
        if pending + n > capacity // 2:
            while pending + n > capacity // 2:
                capacity *= 2
            data = np.zeros((capacity, self._feature_dim), dtype=np.float32)
        else:
            data = self._data
        data[:pending] = self._data[self._start : self._end]
        self._data = data
        self._start = 0
        self._end = pending
