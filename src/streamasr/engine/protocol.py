"""Backend protocols defining the interface for neural inference engines.

This is the "sealed boundary" that isolates model execution from the rest
of the system (decoding strategies, recognizer, server, tests). A backend
is given tensors and returns tensors; it holds read-only weights and no
per-stream state. Shape mismatches are caller errors.

All tensors are numpy arrays. Encoder states of streaming models are
lists of arrays; backends stack and unstack them so states of independent
streams can share one call.
"""

from typing import Optional, Protocol, Sequence

import numpy as np

EncoderStates = list[np.ndarray]


class StreamingEncoder(Protocol):
    """Attributes shared by models that may consume fixed-size feature windows."""

    streaming: bool
    window_size: int  # feature frames per window, including right context
    window_shift: int  # feature frames the read position advances per window
    subsampling_factor: int  # feature frames per encoder output frame

    def get_init_states(self) -> EncoderStates:
        """Initial encoder states for one stream (empty for offline models)."""
        ...

    def stack_states(self, states: Sequence[EncoderStates]) -> EncoderStates:
        """Combine the states of several streams into one batched state."""
        ...

    def unstack_states(self, states: EncoderStates) -> list[EncoderStates]:
        """Split a batched state back into one state per stream."""
        ...


class TransducerModel(StreamingEncoder, Protocol):
    """Encoder / stateless decoder / joiner triple."""

    context_size: int
    blank_id: int
    vocab_size: int

    def run_encoder(
        self,
        features: np.ndarray,
        lengths: np.ndarray,
        states: Optional[EncoderStates],
    ) -> tuple[np.ndarray, np.ndarray, Optional[EncoderStates]]:
        """Encode a batch of feature windows.

        Args:
            features: Float32 array [batch, frames, feature_dim].
            lengths: Int64 array [batch] of valid frames per row.
            states: Batched encoder states, or None for offline models.

        Returns:
            Tuple of encoder output [batch, T, encoder_dim], valid output
            lengths [batch], and the next batched states (None offline).
        """
        ...

    def run_decoder(self, contexts: np.ndarray) -> np.ndarray:
        """Map int64 token contexts [N, context_size] to decoder output [N, decoder_dim]."""
        ...

    def run_joiner(self, encoder_out: np.ndarray, decoder_out: np.ndarray) -> np.ndarray:
        """Combine one encoder frame per row [N, encoder_dim] with decoder
        output [N, decoder_dim] into logits [N, vocab_size]."""
        ...


class WhisperModel(Protocol):
    """Encoder/decoder model with self- and cross-attention K/V caches."""

    n_text_layer: int
    n_text_ctx: int
    n_text_state: int
    sot_sequence: tuple[int, ...]
    eot: int

    def forward_encoder(self, features: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Encode features [1, frames, feature_dim].

        Returns:
            Cross-attention K and V caches, each [n_text_layer, 1, audio_ctx, n_text_state].
        """
        ...

    def forward_decoder(
        self,
        tokens: np.ndarray,
        self_k_cache: np.ndarray,
        self_v_cache: np.ndarray,
        cross_k: np.ndarray,
        cross_v: np.ndarray,
        offset: int,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Run the decoder on tokens [1, n] starting at position ``offset``.

        Returns:
            Logits [1, n, vocab_size] and the updated self K/V caches
            [n_text_layer, 1, n_text_ctx, n_text_state].
        """
        ...


class CtcModel(StreamingEncoder, Protocol):
    """Encoder emitting frame-aligned log-probabilities."""

    blank_id: int
    vocab_size: int

    def forward(
        self,
        features: np.ndarray,
        lengths: np.ndarray,
        states: Optional[EncoderStates],
    ) -> tuple[np.ndarray, np.ndarray, Optional[EncoderStates]]:
        """Returns log-probs [batch, T, vocab_size], valid lengths [batch], next states."""
        ...


class ParaformerModel(Protocol):
    """Non-autoregressive model emitting one distribution per output token."""

    blank_id: int
    eos_id: int
    vocab_size: int
    subsampling_factor: int

    def forward(self, features: np.ndarray, lengths: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Returns logits [batch, max_tokens, vocab_size] and token counts [batch]."""
        ...
