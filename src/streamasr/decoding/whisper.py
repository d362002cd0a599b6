"""Greedy autoregressive decoding for Whisper-style encoder/decoder models.

The encoder runs once per utterance and yields the cross-attention K/V
caches, which are reused unchanged by every decoder step. The decoder
starts from the model's start-of-transcript prompt and is fed one new
token per step; its self-attention K/V cache has a fixed capacity of
``n_text_ctx`` positions and its valid length always equals the offset.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np

from streamasr.constants import FAMILY_WHISPER
from streamasr.decoding.base import DecodingStrategy
from streamasr.engine.protocol import WhisperModel
from streamasr.exceptions import ContextOverflowError, PreconditionError

logger = logging.getLogger(__name__)


class KVCache:
    """Self-attention K/V buffers of fixed shape [layers, 1, max_context, hidden].

    Instances are never modified; ``advanced`` returns a new cache holding
    the decoder's updated buffers and a larger valid length.
    """

    def __init__(
        self,
        n_layer: int,
        max_context: int,
        n_state: int,
        k: Optional[np.ndarray] = None,
        v: Optional[np.ndarray] = None,
        offset: int = 0,
    ):
        self._shape = (n_layer, 1, max_context, n_state)
        self._k = self._checked(k, "k")
        self._v = self._checked(v, "v")
        if not 0 <= offset <= max_context:
            raise ContextOverflowError(f"offset {offset} outside [0, {max_context}]")
        self._offset = offset

    @property
    def shape(self) -> tuple[int, int, int, int]:
        return self._shape

    @property
    def max_context(self) -> int:
        return self._shape[2]

    @property
    def offset(self) -> int:
        """Number of valid positions; the next token is written here."""
        return self._offset

    @property
    def remaining(self) -> int:
        return self.max_context - self._offset

    @property
    def k(self) -> np.ndarray:
        return self._k

    @property
    def v(self) -> np.ndarray:
        return self._v

    def check_room(self, n: int) -> None:
        if self._offset + n > self.max_context:
            raise ContextOverflowError(
                f"Cannot write {n} position(s) at offset {self._offset}: "
                f"max context is {self.max_context}"
            )

    def advanced(self, k: np.ndarray, v: np.ndarray, n: int) -> "KVCache":
        self.check_room(n)
        n_layer, _, max_context, n_state = self._shape
        return KVCache(n_layer, max_context, n_state, k, v, self._offset + n)

    def _checked(self, buf: Optional[np.ndarray], name: str) -> np.ndarray:
        if buf is None:
            buf = np.zeros(self._shape, dtype=np.float32)
        elif tuple(buf.shape) != self._shape:
            raise ValueError(f"self-attention {name} cache has shape {buf.shape}, expected {self._shape}")
        buf = buf.view()
        buf.flags.writeable = False
        return buf


@dataclass(frozen=True)
class WhisperState:
    tokens: tuple[int, ...] = ()  # generated tokens, prompt and eot excluded
    pending: tuple[int, ...] = ()  # tokens to feed on the next step
    cache: Optional[KVCache] = field(default=None, repr=False)
    cross_k: Optional[np.ndarray] = field(default=None, repr=False)
    cross_v: Optional[np.ndarray] = field(default=None, repr=False)
    done: bool = False
    frame_offset: int = 0

    @property
    def started(self) -> bool:
        return self.cache is not None


class WhisperGreedySearch(DecodingStrategy):
    family = FAMILY_WHISPER

    def __init__(self, model: WhisperModel):
        super().__init__(model)
        self._sot_sequence = tuple(int(t) for t in model.sot_sequence)
        self._eot = int(model.eot)

    @property
    def streaming(self) -> bool:
        return False

    @property
    def frame_aligned(self) -> bool:
        return False

    @property
    def max_context(self) -> int:
        return int(self._model.n_text_ctx)

    def init_state(self) -> WhisperState:
        return WhisperState()

    def reset_state(self, state: WhisperState) -> WhisperState:
        return WhisperState(frame_offset=state.frame_offset)

    def best(self, state: WhisperState) -> tuple[list[int], list[int]]:
        return list(state.tokens), []

    def begin(self, features: np.ndarray, frame_offset: int = 0) -> WhisperState:
        """Run the encoder and set up the caches for one utterance."""
        cross_k, cross_v = self._model.forward_encoder(features[np.newaxis].astype(np.float32))
        cache = KVCache(
            int(self._model.n_text_layer),
            self.max_context,
            int(self._model.n_text_state),
        )
        return WhisperState(
            pending=self._sot_sequence,
            cache=cache,
            cross_k=cross_k,
            cross_v=cross_v,
            frame_offset=frame_offset,
        )

    def step(self, state: WhisperState) -> WhisperState:
        """Run the decoder once and append the arg-max token.

        Raises:
            PreconditionError: The state was never started or already hit eot.
            ContextOverflowError: The pending tokens do not fit in the cache.
        """
        if not state.started:
            raise PreconditionError("Whisper decoding step before the encoder ran")
        if state.done:
            raise PreconditionError("Whisper decoding already produced end-of-text")

        cache = state.cache
        cache.check_room(len(state.pending))

        tokens = np.array([state.pending], dtype=np.int64)
        logits, self_k, self_v = self._model.forward_decoder(
            tokens, cache.k, cache.v, state.cross_k, state.cross_v, cache.offset
        )
        cache = cache.advanced(self_k, self_v, len(state.pending))

        next_token = int(np.argmax(logits[0, -1]))
        if next_token == self._eot:
            return replace(state, cache=cache, pending=(), done=True)
        return replace(
            state,
            cache=cache,
            tokens=state.tokens + (next_token,),
            pending=(next_token,),
        )

    def decode(
        self,
        states: Sequence[WhisperState],
        features: Sequence[np.ndarray],
    ) -> list[WhisperState]:
        # The decoder caches have batch size 1, so each utterance runs on its own.
        return [self._decode_one(s, f) for s, f in zip(states, features)]

    def _decode_one(self, state: WhisperState, features: np.ndarray) -> WhisperState:
        state = self.begin(features, state.frame_offset)
        while not state.done and state.cache.remaining >= len(state.pending):
            state = self.step(state)
        if not state.done:
            logger.warning(
                "Whisper output truncated at max text context %d (%d tokens)",
                self.max_context,
                len(state.tokens),
            )
        # All caches are utterance-scoped; release them once decoding ends.
        return replace(
            state,
            cache=None,
            cross_k=None,
            cross_v=None,
            frame_offset=state.frame_offset + features.shape[0],
        )
