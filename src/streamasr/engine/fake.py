"""Fake backends for CPU-based testing.

Every fake reads a scripted symbol from column 0 of each feature frame
(0 means silence/blank), so tests control the recognized tokens exactly
and reliably without model files. Every fake counts its calls and can
simulate inference latency.
"""

import time
from typing import Optional, Sequence

import numpy as np

from streamasr.constants import FEATURE_DIM, SAMPLE_RATE
from streamasr.tokens import SymbolTable

BLANK_ID = 0


def script_features(symbols: Sequence[int], feature_dim: int = FEATURE_DIM) -> np.ndarray:
    """Build one feature frame per symbol with the symbol in column 0."""
    frames = np.zeros((len(symbols), feature_dim), dtype=np.float32)
    frames[:, 0] = np.asarray(symbols, dtype=np.float32)
    return frames


def make_symbol_table(vocab_size: int) -> SymbolTable:
    """Blank at 0, then one word piece per id: ``▁w1``, ``▁w2``, ..."""
    table = {BLANK_ID: "<blk>"}
    table.update({i: f"▁w{i}" for i in range(1, vocab_size)})
    return SymbolTable(table)


def _one_hot_logits(symbols: np.ndarray, vocab_size: int) -> np.ndarray:
    symbols = np.clip(np.rint(symbols).astype(np.int64), 0, vocab_size - 1)
    logits = np.full(symbols.shape + (vocab_size,), -5.0, dtype=np.float32)
    np.put_along_axis(logits, symbols[..., np.newaxis], 5.0, axis=-1)
    return logits


class _FakeBase:
    def __init__(self, latency_ms: float = 0.0):
        self._latency_ms = latency_ms
        self._call_count = 0

    @property
    def call_count(self) -> int:
        """Number of backend calls made."""
        return self._call_count

    def _called(self) -> None:
        if self._latency_ms > 0:
            time.sleep(self._latency_ms / 1000.0)
        self._call_count += 1


class _FakeStreamingEncoder(_FakeBase):
    """Encoder plumbing shared by the frame-aligned fakes.

    The encoder state is one counter per stream of windows seen so far.
    Streaming windows yield the subsampled body frames; offline input
    yields every ``subsampling_factor``-th frame.
    """

    def __init__(
        self,
        vocab_size: int = 10,
        feature_dim: int = FEATURE_DIM,
        streaming: bool = True,
        window_size: int = 8,
        window_shift: int = 4,
        subsampling_factor: int = 1,
        latency_ms: float = 0.0,
    ):
        super().__init__(latency_ms)
        self.vocab_size = vocab_size
        self.blank_id = BLANK_ID
        self.feature_dim = feature_dim
        self.streaming = streaming
        self.window_size = window_size
        self.window_shift = window_shift
        self.subsampling_factor = subsampling_factor

    def get_init_states(self) -> list[np.ndarray]:
        return [np.zeros(1, dtype=np.int64)] if self.streaming else []

    def stack_states(self, states: Sequence[list[np.ndarray]]) -> list[np.ndarray]:
        return [np.concatenate([s[0] for s in states], axis=0)]

    def unstack_states(self, states: list[np.ndarray]) -> list[list[np.ndarray]]:
        return [[row.copy()] for row in np.split(states[0], states[0].shape[0])]

    def _encode(
        self,
        features: np.ndarray,
        lengths: np.ndarray,
        states: Optional[list[np.ndarray]],
    ) -> tuple[np.ndarray, np.ndarray, Optional[list[np.ndarray]]]:
        if features.ndim != 3 or features.shape[2] != self.feature_dim:
            raise ValueError(f"features must be [batch, frames, {self.feature_dim}], got {features.shape}")
        if self.streaming:
            if features.shape[1] != self.window_size:
                raise ValueError(f"expected windows of {self.window_size} frames, got {features.shape[1]}")
            if states is None or states[0].shape[0] != features.shape[0]:
                raise ValueError("streaming encoder needs one state per batch row")
            body = features[:, : self.window_shift : self.subsampling_factor]
            out_lengths = np.full(features.shape[0], body.shape[1], dtype=np.int64)
            return body.copy(), out_lengths, [states[0] + 1]

        out = features[:, :: self.subsampling_factor]
        out_lengths = -(-lengths // self.subsampling_factor)
        return out.copy(), out_lengths.astype(np.int64), None


class FakeTransducerModel(_FakeStreamingEncoder):
    """Joiner puts the scripted symbol of the encoder frame on top."""

    def __init__(self, context_size: int = 2, **kwargs):
        super().__init__(**kwargs)
        self.context_size = context_size

    def run_encoder(self, features, lengths, states):
        self._called()
        return self._encode(features, lengths, states)

    def run_decoder(self, contexts: np.ndarray) -> np.ndarray:
        self._called()
        if contexts.ndim != 2 or contexts.shape[1] != self.context_size:
            raise ValueError(f"contexts must be [N, {self.context_size}], got {contexts.shape}")
        return contexts.astype(np.float32)

    def run_joiner(self, encoder_out: np.ndarray, decoder_out: np.ndarray) -> np.ndarray:
        self._called()
        if encoder_out.shape[0] != decoder_out.shape[0]:
            raise ValueError("encoder_out and decoder_out rows differ")
        logits = _one_hot_logits(encoder_out[:, 0], self.vocab_size)
        # Blank is the runner-up everywhere so beam search has real competitors.
        logits[:, self.blank_id] = np.maximum(logits[:, self.blank_id], 1.0)
        return logits


class FakeCtcModel(_FakeStreamingEncoder):
    def forward(self, features, lengths, states):
        self._called()
        out, out_lengths, next_states = self._encode(features, lengths, states)
        logits = _one_hot_logits(out[..., 0], self.vocab_size)
        log_probs = logits - np.log(np.exp(logits).sum(axis=-1, keepdims=True))
        return log_probs, out_lengths, next_states


class FakeParaformerModel(_FakeBase):
    """Emits the collapsed scripted symbols followed by eos."""

    def __init__(self, vocab_size: int = 10, feature_dim: int = FEATURE_DIM, latency_ms: float = 0.0):
        super().__init__(latency_ms)
        self.vocab_size = vocab_size
        self.blank_id = BLANK_ID
        self.eos_id = vocab_size - 1
        self.feature_dim = feature_dim
        self.subsampling_factor = 1

    def forward(self, features: np.ndarray, lengths: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        self._called()
        scripts = []
        for row, n in zip(features, lengths):
            symbols = [int(s) for s in np.rint(row[: int(n), 0])]
            scripts.append([s for i, s in enumerate(symbols) if s and (i == 0 or s != symbols[i - 1])])
        max_tokens = max(len(s) for s in scripts) + 1
        targets = np.full((len(scripts), max_tokens), self.eos_id, dtype=np.int64)
        for i, script in enumerate(scripts):
            targets[i, : len(script)] = script
        token_num = np.array([len(s) + 1 for s in scripts], dtype=np.int64)
        return _one_hot_logits(targets.astype(np.float32), self.vocab_size), token_num


class FakeWhisperModel(_FakeBase):
    """Encoder copies the scripted symbols into the cross-attention cache;
    the decoder emits them one by one and then end-of-text.

    The decoder writes the fed token ids into the self-attention cache at
    ``offset`` so tests can inspect what the cache holds.
    """

    def __init__(
        self,
        n_text_layer: int = 2,
        n_text_ctx: int = 16,
        n_text_state: int = 4,
        vocab_size: int = 12,
        latency_ms: float = 0.0,
    ):
        super().__init__(latency_ms)
        self.n_text_layer = n_text_layer
        self.n_text_ctx = n_text_ctx
        self.n_text_state = n_text_state
        self.vocab_size = vocab_size
        self.sot_sequence = (vocab_size - 2,)
        self.eot = vocab_size - 1
        self.encoder_calls = 0
        self.decoder_calls = 0

    def forward_encoder(self, features: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        self._called()
        self.encoder_calls += 1
        if features.ndim != 3 or features.shape[0] != 1:
            raise ValueError(f"features must be [1, frames, dim], got {features.shape}")
        symbols = [int(s) for s in np.rint(features[0, :, 0])]
        script = [s for i, s in enumerate(symbols) if s and (i == 0 or s != symbols[i - 1])]
        cross = np.zeros((self.n_text_layer, 1, len(script) + 1, self.n_text_state), dtype=np.float32)
        cross[:, 0, : len(script), 0] = script
        cross[:, 0, len(script), 0] = self.eot
        return cross, cross.copy()

    def forward_decoder(self, tokens, self_k_cache, self_v_cache, cross_k, cross_v, offset):
        self._called()
        self.decoder_calls += 1
        n = tokens.shape[1]
        shape = (self.n_text_layer, 1, self.n_text_ctx, self.n_text_state)
        if self_k_cache.shape != shape or self_v_cache.shape != shape:
            raise ValueError(f"self K/V cache must be {shape}")
        if offset + n > self.n_text_ctx:
            raise ValueError(f"offset {offset} + {n} tokens exceeds n_text_ctx {self.n_text_ctx}")

        k = np.array(self_k_cache, copy=True)
        v = np.array(self_v_cache, copy=True)
        k[:, 0, offset : offset + n, 0] = tokens[0]
        v[:, 0, offset : offset + n, 0] = tokens[0]

        script = [int(s) for s in cross_k[0, 0, :, 0]]
        generated = offset + n - len(self.sot_sequence)
        next_token = script[generated] if generated < len(script) else self.eot

        logits = np.full((1, n, self.vocab_size), -5.0, dtype=np.float32)
        logits[0, -1, next_token] = 5.0
        return logits, k, v


class FakeFeatureExtractor:
    """Frames audio into non-overlapping 10ms frames.

    Column 0 is the scripted symbol ``round(10 * mean|x|)`` clipped to
    ``max_symbol`` (so silence is 0); the other columns carry log energy.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        feature_dim: int = FEATURE_DIM,
        max_symbol: int = 8,
    ):
        self.sample_rate = sample_rate
        self.feature_dim = feature_dim
        self._frame_samples = sample_rate // 100
        self._max_symbol = max_symbol
        self._pending = np.zeros(0, dtype=np.float32)

    def accept_waveform(self, samples: np.ndarray) -> np.ndarray:
        audio = np.concatenate((self._pending, np.asarray(samples, dtype=np.float32)))
        n = len(audio) // self._frame_samples
        self._pending = audio[n * self._frame_samples :]
        return self._frames(audio[: n * self._frame_samples].reshape(n, self._frame_samples))

    def input_finished(self) -> np.ndarray:
        if len(self._pending) == 0:
            return np.zeros((0, self.feature_dim), dtype=np.float32)
        frame = np.zeros(self._frame_samples, dtype=np.float32)
        frame[: len(self._pending)] = self._pending
        self._pending = np.zeros(0, dtype=np.float32)
        return self._frames(frame[np.newaxis, :])

    def _frames(self, chunks: np.ndarray) -> np.ndarray:
        frames = np.zeros((chunks.shape[0], self.feature_dim), dtype=np.float32)
        if chunks.shape[0] == 0:
            return frames
        level = np.abs(chunks).mean(axis=1)
        frames[:, 0] = np.clip(np.rint(level * 10), 0, self._max_symbol)
        frames[:, 1:] = np.log(np.square(chunks).mean(axis=1) + 1e-10)[:, np.newaxis]
        return frames
