"""Per-utterance input and decode state.

A Stream is created by a Recognizer and then owned by the caller. It is
fed audio or feature frames, and only the Recognizer that created it may
advance its decode state. Streams are not thread-safe: one caller context
owns each stream.

Use a stream as a context manager to release its buffers and caches
deterministically::

    with recognizer.create_stream() as stream:
        stream.accept_waveform(16000, samples)
        ...
"""

import logging
import uuid
from typing import Any, Optional

import numpy as np

from streamasr.endpoint import EndpointState
from streamasr.exceptions import PreconditionError, SampleRateError, StreamClosedError
from streamasr.features import FeatureBuffer, FeatureExtractor

logger = logging.getLogger(__name__)


class Stream:
    def __init__(
        self,
        owner: Any,
        decode_state: Any,
        feature_dim: int,
        sample_rate: int,
        extractor: Optional[FeatureExtractor] = None,
        window: Optional[tuple[int, int]] = None,
    ):
        """Initialize a stream. Use ``Recognizer.create_stream`` instead.

        Args:
            owner: The Recognizer that created this stream.
            decode_state: Initial decode state from the Recognizer's strategy.
            feature_dim: Dimension of every feature frame.
            sample_rate: Sample rate accepted by ``accept_waveform``.
            extractor: Per-stream feature extractor, or None for feature input only.
            window: (window_size, window_shift) of streaming models, None offline.
        """
        self.id = uuid.uuid4().hex
        self._owner = owner
        self._features = FeatureBuffer(feature_dim)
        self._decode_state = decode_state
        self._endpoint_state = EndpointState()
        self._sample_rate = sample_rate
        self._extractor = extractor
        self._window = window
        self._segment = 0
        self._segment_start_frame = 0
        self._finished = False
        self._closed = False

    def __enter__(self) -> "Stream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Stream(id={self.id[:8]}, pending={self._features.num_frames}, "
            f"consumed={self._features.num_consumed}, finished={self._finished})"
        )

    @property
    def owner(self) -> Any:
        return self._owner

    @property
    def features(self) -> FeatureBuffer:
        return self._features

    @property
    def decode_state(self) -> Any:
        return self._decode_state

    @property
    def endpoint_state(self) -> EndpointState:
        return self._endpoint_state

    @property
    def segment(self) -> int:
        return self._segment

    @property
    def segment_start_frame(self) -> int:
        """Feature frame at which the current segment started."""
        return self._segment_start_frame

    @property
    def num_processed_frames(self) -> int:
        return self._features.num_consumed

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def accept_waveform(self, sample_rate: int, samples: np.ndarray) -> None:
        """Push float32 samples in [-1, 1] through the stream's feature extractor."""
        self._check_writable()
        if sample_rate != self._sample_rate:
            raise SampleRateError(
                f"Stream expects {self._sample_rate} Hz audio, got {sample_rate} Hz"
            )
        if self._extractor is None:
            raise PreconditionError(
                "No feature extractor configured for this recognizer; use accept_features"
            )
        frames = self._extractor.accept_waveform(np.asarray(samples, dtype=np.float32))
        self._features.push(frames)

    def accept_features(self, frames: np.ndarray) -> None:
        """Push precomputed feature frames [n, feature_dim]."""
        self._check_writable()
        self._features.push(frames)

    def input_finished(self) -> None:
        """Signal that no more input will arrive.

        Pending extractor frames are flushed. Streaming streams are padded
        so the last real frame is still decoded in a full window.
        """
        self._check_open()
        if self._finished:
            return
        if self._extractor is not None:
            self._features.push(self._extractor.input_finished())
        if self._window is not None:
            padded = self._features.pad_tail(*self._window)
            if padded:
                logger.debug("Stream %s padded with %d tail frames", self.id[:8], padded)
        self._finished = True

    def close(self) -> None:
        """Release buffers and caches. Further use raises StreamClosedError."""
        if self._closed:
            return
        self._features.clear()
        self._decode_state = None
        self._extractor = None
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StreamClosedError(f"Stream {self.id[:8]} is closed")

    def _check_writable(self) -> None:
        self._check_open()
        if self._finished:
            raise StreamClosedError(f"Stream {self.id[:8]} already finished its input")

    def _commit(self, decode_state: Any, num_frames: int, endpoint_state: EndpointState) -> None:
        """Fold a successful decode step in: consume its frames, take its state."""
        self._features.consume(num_frames)
        self._decode_state = decode_state
        self._endpoint_state = endpoint_state

    def _start_segment(self, decode_state: Any) -> None:
        self._decode_state = decode_state
        self._endpoint_state = EndpointState()
        self._segment += 1
        self._segment_start_frame = self._features.num_consumed
