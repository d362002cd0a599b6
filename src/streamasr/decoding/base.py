"""Decoding strategy interface shared by all model families.

A strategy turns backend outputs into token sequences. It is stateless
itself: every stream carries its own decode state, and ``decode`` returns
new state objects rather than mutating the ones it is given. A backend
failure therefore leaves every stream exactly as it was.
"""

from abc import ABC, abstractmethod
from typing import Any, Protocol, Sequence

import numpy as np


class DecodeState(Protocol):
    """Per-stream decode state; concrete shape depends on the family."""

    frame_offset: int  # encoder output frames folded into this state


class DecodingStrategy(ABC):
    """One decoding algorithm bound to one loaded model."""

    family: str = ""

    def __init__(self, model: Any):
        self._model = model

    @property
    def model(self) -> Any:
        return self._model

    @property
    def streaming(self) -> bool:
        return bool(getattr(self._model, "streaming", False))

    @property
    def window_size(self) -> int:
        return int(self._model.window_size)

    @property
    def window_shift(self) -> int:
        return int(self._model.window_shift)

    @property
    def subsampling_factor(self) -> int:
        return int(getattr(self._model, "subsampling_factor", 1))

    @property
    def frame_aligned(self) -> bool:
        """Whether tokens carry encoder-frame timestamps."""
        return True

    @abstractmethod
    def init_state(self) -> DecodeState:
        """Fresh decode state for a new stream."""

    @abstractmethod
    def decode(
        self,
        states: Sequence[DecodeState],
        features: Sequence[np.ndarray],
    ) -> list[DecodeState]:
        """Decode one input per stream in a single batched pass.

        Args:
            states: Current decode state of each stream.
            features: Float32 [frames, feature_dim] input of each stream.

        Returns:
            New decode state of each stream, in input order. Row i of the
            output depends only on row i of the input.
        """

    @abstractmethod
    def reset_state(self, state: DecodeState) -> DecodeState:
        """Start a new segment: drop tokens, keep acoustic context."""

    @abstractmethod
    def best(self, state: DecodeState) -> tuple[list[int], list[int]]:
        """Token ids of the current best path and their encoder-frame timestamps."""

    def num_trailing_blanks(self, state: DecodeState) -> int:
        """Encoder frames since the last emitted token."""
        return 0


def pad_features(features: Sequence[np.ndarray], value: float = 0.0) -> tuple[np.ndarray, np.ndarray]:
    """Stack variable-length feature arrays into one padded batch.

    Returns:
        Tuple of features [batch, max_frames, feature_dim] and int64 lengths [batch].
    """
    lengths = np.array([f.shape[0] for f in features], dtype=np.int64)
    feature_dim = features[0].shape[1]
    batch = np.full((len(features), int(lengths.max()), feature_dim), value, dtype=np.float32)
    for i, f in enumerate(features):
        batch[i, : f.shape[0]] = f
    return batch, lengths


def log_softmax(x: np.ndarray) -> np.ndarray:
    x = x.astype(np.float64)
    m = x.max(axis=-1, keepdims=True)
    return x - m - np.log(np.exp(x - m).sum(axis=-1, keepdims=True))
