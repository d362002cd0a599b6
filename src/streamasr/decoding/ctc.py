"""Arg-max decoding for CTC and Paraformer models.

CTC output is frame aligned: the best symbol of every frame is taken,
runs of the same symbol collapse to one and blanks are dropped. In
streaming mode the symbol of the last frame of the previous window is
carried over so a run split across two windows still collapses.

Paraformer output is already one distribution per token, so only blanks
are dropped and decoding stops at end-of-sentence.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np

from streamasr.constants import FAMILY_CTC, FAMILY_PARAFORMER
from streamasr.decoding.base import DecodingStrategy, pad_features
from streamasr.engine.protocol import CtcModel, EncoderStates, ParaformerModel


def _collapse(
    symbols: Iterable[int],
    blank_id: int,
    prev: Optional[int] = None,
) -> Iterator[tuple[int, int]]:
    for t, s in enumerate(symbols):
        if s != blank_id and s != prev:
            yield s, t
        prev = s


def collapse_ctc(symbols: Iterable[int], blank_id: int, prev: Optional[int] = None) -> list[int]:
    """Collapse a frame-level arg-max sequence into tokens.

    >>> collapse_ctc([1, 1, 0, 2, 2, 2, 0, 1], blank_id=0)
    [1, 2, 1]
    """
    return [s for s, _ in _collapse(symbols, blank_id, prev)]


@dataclass(frozen=True)
class CtcState:
    tokens: tuple[int, ...] = ()
    timestamps: tuple[int, ...] = ()
    last_symbol: Optional[int] = None  # arg-max of the last decoded frame
    num_trailing_blanks: int = 0
    encoder_states: Optional[EncoderStates] = field(default=None, repr=False)
    frame_offset: int = 0


class CtcGreedySearch(DecodingStrategy):
    family = FAMILY_CTC

    def __init__(self, model: CtcModel):
        super().__init__(model)
        self._blank_id = model.blank_id

    def init_state(self) -> CtcState:
        encoder_states = self._model.get_init_states() if self.streaming else None
        return CtcState(encoder_states=encoder_states)

    def reset_state(self, state: CtcState) -> CtcState:
        return replace(state, tokens=(), timestamps=(), num_trailing_blanks=0)

    def best(self, state: CtcState) -> tuple[list[int], list[int]]:
        return list(state.tokens), list(state.timestamps)

    def num_trailing_blanks(self, state: CtcState) -> int:
        return state.num_trailing_blanks

    def decode(
        self,
        states: Sequence[CtcState],
        features: Sequence[np.ndarray],
    ) -> list[CtcState]:
        x, lengths = pad_features(features)
        encoder_states = None
        if self.streaming:
            encoder_states = self._model.stack_states([s.encoder_states for s in states])
        log_probs, out_lengths, next_states = self._model.forward(x, lengths, encoder_states)
        if self.streaming:
            per_stream = self._model.unstack_states(next_states)
        else:
            per_stream = [None] * len(states)

        best = np.argmax(log_probs, axis=-1)
        return [
            self._extend(state, [int(s) for s in best[i, : int(out_lengths[i])]], per_stream[i])
            for i, state in enumerate(states)
        ]

    def _extend(
        self,
        state: CtcState,
        symbols: list[int],
        encoder_states: Optional[EncoderStates],
    ) -> CtcState:
        tokens = list(state.tokens)
        timestamps = list(state.timestamps)
        for s, t in _collapse(symbols, self._blank_id, state.last_symbol):
            tokens.append(s)
            timestamps.append(state.frame_offset + t)

        trailing = state.num_trailing_blanks
        for s in symbols:
            trailing = trailing + 1 if s == self._blank_id else 0

        return CtcState(
            tokens=tuple(tokens),
            timestamps=tuple(timestamps),
            last_symbol=symbols[-1] if symbols else state.last_symbol,
            num_trailing_blanks=trailing,
            encoder_states=encoder_states,
            frame_offset=state.frame_offset + len(symbols),
        )


@dataclass(frozen=True)
class ParaformerState:
    tokens: tuple[int, ...] = ()
    frame_offset: int = 0


class ParaformerGreedySearch(DecodingStrategy):
    family = FAMILY_PARAFORMER

    def __init__(self, model: ParaformerModel):
        super().__init__(model)
        self._blank_id = model.blank_id
        self._eos_id = model.eos_id

    @property
    def streaming(self) -> bool:
        return False

    @property
    def frame_aligned(self) -> bool:
        return False

    def init_state(self) -> ParaformerState:
        return ParaformerState()

    def reset_state(self, state: ParaformerState) -> ParaformerState:
        return ParaformerState(frame_offset=state.frame_offset)

    def best(self, state: ParaformerState) -> tuple[list[int], list[int]]:
        return list(state.tokens), []

    def decode(
        self,
        states: Sequence[ParaformerState],
        features: Sequence[np.ndarray],
    ) -> list[ParaformerState]:
        x, lengths = pad_features(features)
        logits, token_num = self._model.forward(x, lengths)
        best = np.argmax(logits, axis=-1)

        out = []
        for i, state in enumerate(states):
            tokens = list(state.tokens)
            for s in best[i, : int(token_num[i])]:
                s = int(s)
                if s == self._eos_id:
                    break
                if s != self._blank_id:
                    tokens.append(s)
            out.append(
                ParaformerState(
                    tokens=tuple(tokens),
                    frame_offset=state.frame_offset + int(lengths[i]) // self.subsampling_factor,
                )
            )
        return out
