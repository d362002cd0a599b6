"""Greedy and modified beam search for transducer models.

Each encoder output frame is combined with the decoder output of every
active hypothesis in the joiner. A blank extends the hypothesis in time
only; any other symbol is appended to its token sequence. At most one
symbol is emitted per frame. The decoder is stateless over the last
``context_size`` tokens, so its output is cached per hypothesis and only
recomputed after an emission.
"""

from abc import abstractmethod
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np

from streamasr.constants import FAMILY_TRANSDUCER
from streamasr.decoding.base import DecodingStrategy, log_softmax, pad_features
from streamasr.engine.protocol import EncoderStates, TransducerModel


@dataclass(frozen=True)
class Hypothesis:
    ys: tuple[int, ...] = ()  # emitted tokens, blanks excluded
    log_prob: float = 0.0
    timestamps: tuple[int, ...] = ()  # encoder frame of each token
    num_trailing_blanks: int = 0
    decoder_out: Optional[np.ndarray] = field(default=None, compare=False, repr=False)

    def sort_key(self) -> tuple[float, int]:
        # Higher score first; on a tie the shorter hypothesis wins.
        return (-self.log_prob, len(self.ys))


@dataclass(frozen=True)
class TransducerState:
    hyps: tuple[Hypothesis, ...] = (Hypothesis(),)  # best first
    encoder_states: Optional[EncoderStates] = field(default=None, repr=False)
    frame_offset: int = 0


class TransducerDecoding(DecodingStrategy):
    """Shared encoder and decoder plumbing of the transducer searches."""

    family = FAMILY_TRANSDUCER

    def __init__(self, model: TransducerModel):
        super().__init__(model)
        self._context_size = model.context_size
        self._blank_id = model.blank_id

    def init_state(self) -> TransducerState:
        encoder_states = self._model.get_init_states() if self.streaming else None
        return TransducerState(hyps=(Hypothesis(),), encoder_states=encoder_states)

    def reset_state(self, state: TransducerState) -> TransducerState:
        return replace(state, hyps=(Hypothesis(),))

    def best(self, state: TransducerState) -> tuple[list[int], list[int]]:
        hyp = state.hyps[0]
        return list(hyp.ys), list(hyp.timestamps)

    def num_trailing_blanks(self, state: TransducerState) -> int:
        return state.hyps[0].num_trailing_blanks

    def decode(
        self,
        states: Sequence[TransducerState],
        features: Sequence[np.ndarray],
    ) -> list[TransducerState]:
        x, lengths = pad_features(features)

        encoder_states = None
        if self.streaming:
            encoder_states = self._model.stack_states([s.encoder_states for s in states])
        encoder_out, out_lengths, next_states = self._model.run_encoder(x, lengths, encoder_states)

        if self.streaming:
            per_stream = self._model.unstack_states(next_states)
        else:
            per_stream = [None] * len(states)

        hyps = [self._with_decoder_out(s.hyps) for s in states]
        offsets = [s.frame_offset for s in states]
        hyps = self._search(encoder_out, [int(n) for n in out_lengths], hyps, offsets)

        return [
            TransducerState(
                hyps=h,
                encoder_states=st,
                frame_offset=s.frame_offset + int(n),
            )
            for s, h, st, n in zip(states, hyps, per_stream, out_lengths)
        ]

    @abstractmethod
    def _search(
        self,
        encoder_out: np.ndarray,
        out_lengths: list[int],
        hyps: list[tuple[Hypothesis, ...]],
        offsets: list[int],
    ) -> list[tuple[Hypothesis, ...]]:
        """Advance every row of hypotheses over its valid encoder frames."""

    def _context(self, ys: tuple[int, ...]) -> list[int]:
        context = [self._blank_id] * self._context_size + list(ys)
        return context[-self._context_size :]

    def _with_decoder_out(self, hyps: Sequence[Hypothesis]) -> tuple[Hypothesis, ...]:
        """Fill in the decoder output of hypotheses that do not have one yet."""
        missing = [i for i, h in enumerate(hyps) if h.decoder_out is None]
        if not missing:
            return tuple(hyps)
        contexts = np.array([self._context(hyps[i].ys) for i in missing], dtype=np.int64)
        decoder_out = self._model.run_decoder(contexts)
        out = list(hyps)
        for row, i in enumerate(missing):
            out[i] = replace(out[i], decoder_out=decoder_out[row])
        return tuple(out)


class TransducerGreedySearch(TransducerDecoding):
    """Keep exactly one hypothesis; emit the arg-max symbol of every frame."""

    def _search(self, encoder_out, out_lengths, hyps, offsets):
        current = [h[0] for h in hyps]
        for t in range(max(out_lengths, default=0)):
            active = [i for i, n in enumerate(out_lengths) if t < n]
            if not active:
                break
            decoder_out = np.stack([current[i].decoder_out for i in active])
            logits = self._model.run_joiner(encoder_out[active, t], decoder_out)
            best = np.argmax(logits, axis=-1)

            emitted = []
            for row, i in enumerate(active):
                token = int(best[row])
                hyp = current[i]
                if token == self._blank_id:
                    current[i] = replace(hyp, num_trailing_blanks=hyp.num_trailing_blanks + 1)
                else:
                    current[i] = Hypothesis(
                        ys=hyp.ys + (token,),
                        log_prob=hyp.log_prob,
                        timestamps=hyp.timestamps + (offsets[i] + t,),
                    )
                    emitted.append(i)

            if emitted:
                refreshed = self._with_decoder_out([current[i] for i in emitted])
                for i, hyp in zip(emitted, refreshed):
                    current[i] = hyp

        return [(h,) for h in current]


class TransducerModifiedBeamSearch(TransducerDecoding):
    """Keep up to ``max_active_paths`` hypotheses per stream.

    Candidates of all hypotheses of a stream compete on accumulated log
    probability; hypotheses that end up with identical token sequences are
    merged by adding their probabilities.
    """

    def __init__(self, model: TransducerModel, max_active_paths: int = 4):
        super().__init__(model)
        self._max_active_paths = max_active_paths

    @property
    def max_active_paths(self) -> int:
        return self._max_active_paths

    def _search(self, encoder_out, out_lengths, hyps, offsets):
        current = [list(h) for h in hyps]
        for t in range(max(out_lengths, default=0)):
            active = [i for i, n in enumerate(out_lengths) if t < n]
            if not active:
                break

            rows = [(i, hyp) for i in active for hyp in current[i]]
            enc = np.stack([encoder_out[i, t] for i, _ in rows])
            dec = np.stack([hyp.decoder_out for _, hyp in rows])
            scores = log_softmax(self._model.run_joiner(enc, dec))

            start = 0
            for i in active:
                n = len(current[i])
                current[i] = self._expand(current[i], scores[start : start + n], offsets[i] + t)
                start += n

            pending = [(i, j) for i in active for j, h in enumerate(current[i]) if h.decoder_out is None]
            if pending:
                refreshed = self._with_decoder_out([current[i][j] for i, j in pending])
                for (i, j), hyp in zip(pending, refreshed):
                    current[i][j] = hyp

        return [tuple(h) for h in current]

    def _expand(self, hyps: list[Hypothesis], scores: np.ndarray, frame: int) -> list[Hypothesis]:
        vocab_size = scores.shape[1]
        total = scores + np.array([h.log_prob for h in hyps])[:, None]
        lengths = np.array([len(h.ys) for h in hyps])[:, None] + (
            np.arange(vocab_size) != self._blank_id
        )[None, :]
        hyp_index = np.repeat(np.arange(len(hyps)), vocab_size)
        token = np.tile(np.arange(vocab_size), len(hyps))

        # Primary key last: score desc, then fewer tokens, then hyp order, then token id.
        order = np.lexsort((token, hyp_index, lengths.ravel(), -total.ravel()))

        merged: dict[tuple[int, ...], Hypothesis] = {}
        for flat in order[: self._max_active_paths]:
            parent = hyps[hyp_index[flat]]
            tok = int(token[flat])
            log_prob = float(total.ravel()[flat])
            if tok == self._blank_id:
                new = replace(
                    parent,
                    log_prob=log_prob,
                    num_trailing_blanks=parent.num_trailing_blanks + 1,
                )
            else:
                new = Hypothesis(
                    ys=parent.ys + (tok,),
                    log_prob=log_prob,
                    timestamps=parent.timestamps + (frame,),
                )
            existing = merged.get(new.ys)
            if existing is None:
                merged[new.ys] = new
            else:
                merged[new.ys] = replace(
                    existing, log_prob=float(np.logaddexp(existing.log_prob, new.log_prob))
                )

        return sorted(merged.values(), key=Hypothesis.sort_key)
