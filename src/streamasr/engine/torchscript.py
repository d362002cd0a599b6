"""TorchScript backends for every model family.

Models are exported TorchScript modules. Each file carries a ``meta.json``
extra file with the metadata the decoders need (window sizes, vocabulary,
Whisper prompt tokens, ...). Tensors are batch-first, including streaming
encoder states, which are lists of tensors batched on axis 0.

This module requires torch and is only imported when models are loaded
from disk.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np
import torch

from streamasr.config import ModelConfig
from streamasr.constants import FAMILY_CTC, FAMILY_PARAFORMER, FAMILY_TRANSDUCER, FAMILY_WHISPER
from streamasr.exceptions import ConfigError

logger = logging.getLogger(__name__)

_MISSING = object()


def _load_module(path: str | Path, device: str) -> tuple[Any, dict[str, Any]]:
    """Load a TorchScript module and its ``meta.json`` metadata."""
    extra_files = {"meta.json": ""}
    try:
        module = torch.jit.load(str(path), map_location=device, _extra_files=extra_files)
    except (RuntimeError, ValueError, OSError) as e:
        raise ConfigError(f"Failed to load TorchScript model {path}: {e}") from e
    module.eval()

    raw = extra_files["meta.json"]
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        meta = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: malformed meta.json: {e}") from e
    return module, meta


def _meta(meta: dict[str, Any], key: str, path: str | Path, cast=int, default: Any = _MISSING) -> Any:
    if key not in meta:
        if default is _MISSING:
            raise ConfigError(f"{path}: metadata key '{key}' is missing")
        return default
    try:
        return cast(meta[key])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{path}: metadata key '{key}' is invalid: {meta[key]!r}") from e


class _TorchModel:
    def __init__(self, device: str = "cpu"):
        self._device = device

    @property
    def device(self) -> str:
        return self._device

    def _tensor(self, array: np.ndarray) -> torch.Tensor:
        return torch.from_numpy(np.array(array, copy=True)).to(self._device)

    @staticmethod
    def _numpy(tensor: torch.Tensor) -> np.ndarray:
        return tensor.detach().cpu().numpy()


class _TorchStreamingEncoder(_TorchModel):
    """Streaming attributes and batch-first state handling."""

    def _read_window(self, meta: dict[str, Any], path: str | Path) -> None:
        self.streaming = _meta(meta, "streaming", path, cast=bool, default=False)
        self.subsampling_factor = _meta(meta, "subsampling_factor", path, default=4)
        if self.streaming:
            self.window_size = _meta(meta, "window_size", path)
            self.window_shift = _meta(meta, "window_shift", path)
        else:
            self.window_size = 0
            self.window_shift = 0

    def _init_states(self, module: Any) -> list[np.ndarray]:
        if not self.streaming:
            return []
        with torch.inference_mode():
            return [self._numpy(s) for s in module.get_init_states()]

    def stack_states(self, states: Sequence[list[np.ndarray]]) -> list[np.ndarray]:
        return [np.concatenate(parts, axis=0) for parts in zip(*states)]

    def unstack_states(self, states: list[np.ndarray]) -> list[list[np.ndarray]]:
        batch = states[0].shape[0]
        return [[s[i : i + 1].copy() for s in states] for i in range(batch)]

    def _run_encoder(
        self,
        module: Any,
        features: np.ndarray,
        lengths: np.ndarray,
        states: Optional[list[np.ndarray]],
    ) -> tuple[np.ndarray, np.ndarray, Optional[list[np.ndarray]]]:
        with torch.inference_mode():
            x = self._tensor(features)
            x_lens = self._tensor(lengths)
            if self.streaming:
                out, out_lens, next_states = module(x, x_lens, [self._tensor(s) for s in states])
                return (
                    self._numpy(out),
                    self._numpy(out_lens),
                    [self._numpy(s) for s in next_states],
                )
            out, out_lens = module(x, x_lens)
            return self._numpy(out), self._numpy(out_lens), None


class TorchTransducerModel(_TorchStreamingEncoder):
    def __init__(self, encoder: str, decoder: str, joiner: str, device: str = "cpu"):
        super().__init__(device)
        self._encoder, encoder_meta = _load_module(encoder, device)
        self._decoder, decoder_meta = _load_module(decoder, device)
        self._joiner, joiner_meta = _load_module(joiner, device)

        self._read_window(encoder_meta, encoder)
        self.context_size = _meta(decoder_meta, "context_size", decoder)
        self.vocab_size = _meta(joiner_meta, "vocab_size", joiner)
        self.blank_id = _meta(joiner_meta, "blank_id", joiner, default=0)
        self._init = self._init_states(self._encoder)

    def get_init_states(self) -> list[np.ndarray]:
        return [s.copy() for s in self._init]

    def run_encoder(self, features, lengths, states):
        return self._run_encoder(self._encoder, features, lengths, states)

    def run_decoder(self, contexts: np.ndarray) -> np.ndarray:
        with torch.inference_mode():
            out = self._decoder(self._tensor(contexts))
        out = self._numpy(out)
        return out.reshape(out.shape[0], -1)

    def run_joiner(self, encoder_out: np.ndarray, decoder_out: np.ndarray) -> np.ndarray:
        with torch.inference_mode():
            logits = self._joiner(self._tensor(encoder_out), self._tensor(decoder_out))
        logits = self._numpy(logits)
        return logits.reshape(logits.shape[0], -1)


class TorchCtcModel(_TorchStreamingEncoder):
    def __init__(self, model: str, device: str = "cpu"):
        super().__init__(device)
        self._model, meta = _load_module(model, device)
        self._read_window(meta, model)
        self.vocab_size = _meta(meta, "vocab_size", model)
        self.blank_id = _meta(meta, "blank_id", model, default=0)
        self._init = self._init_states(self._model)

    def get_init_states(self) -> list[np.ndarray]:
        return [s.copy() for s in self._init]

    def forward(self, features, lengths, states):
        return self._run_encoder(self._model, features, lengths, states)


class TorchParaformerModel(_TorchModel):
    def __init__(self, model: str, device: str = "cpu"):
        super().__init__(device)
        self._model, meta = _load_module(model, device)
        self.vocab_size = _meta(meta, "vocab_size", model)
        self.blank_id = _meta(meta, "blank_id", model, default=0)
        self.eos_id = _meta(meta, "eos_id", model, default=2)
        self.subsampling_factor = _meta(meta, "subsampling_factor", model, default=6)

    def forward(self, features: np.ndarray, lengths: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        with torch.inference_mode():
            logits, token_num = self._model(self._tensor(features), self._tensor(lengths))
        return self._numpy(logits), self._numpy(token_num)


class TorchWhisperModel(_TorchModel):
    def __init__(self, encoder: str, decoder: str, device: str = "cpu"):
        super().__init__(device)
        self._encoder, meta = _load_module(encoder, device)
        self._decoder, _ = _load_module(decoder, device)

        self.n_text_layer = _meta(meta, "n_text_layer", encoder)
        self.n_text_ctx = _meta(meta, "n_text_ctx", encoder)
        self.n_text_state = _meta(meta, "n_text_state", encoder)
        self.eot = _meta(meta, "eot", encoder)
        self.sot_sequence = _meta(
            meta, "sot_sequence", encoder, cast=lambda v: tuple(int(t) for t in v)
        )
        if not self.sot_sequence:
            raise ConfigError(f"{encoder}: metadata key 'sot_sequence' is empty")
        # Whisper encoders take a fixed number of frames (3000 for 30s).
        self.n_audio_frames = _meta(meta, "n_audio_frames", encoder, default=0)

    def forward_encoder(self, features: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        num_frames = features.shape[1]
        if self.n_audio_frames and num_frames < self.n_audio_frames:
            pad = self.n_audio_frames - num_frames
            features = np.pad(features, ((0, 0), (0, pad), (0, 0)))
        elif self.n_audio_frames and num_frames > self.n_audio_frames:
            logger.warning(
                "Whisper input truncated: %d frames, encoder takes %d; the last %d frames are dropped",
                num_frames,
                self.n_audio_frames,
                num_frames - self.n_audio_frames,
            )
            features = features[:, : self.n_audio_frames]
        with torch.inference_mode():
            cross_k, cross_v = self._encoder(self._tensor(features))
        return self._numpy(cross_k), self._numpy(cross_v)

    def forward_decoder(self, tokens, self_k_cache, self_v_cache, cross_k, cross_v, offset):
        with torch.inference_mode():
            logits, k, v = self._decoder(
                self._tensor(tokens),
                self._tensor(self_k_cache),
                self._tensor(self_v_cache),
                self._tensor(cross_k),
                self._tensor(cross_v),
                torch.tensor([offset], dtype=torch.int64, device=self._device),
            )
        return self._numpy(logits), self._numpy(k), self._numpy(v)


def load_model(config: ModelConfig) -> Any:
    """Load the backend of the configured family.

    ``num_threads`` sets torch's intra-op thread count, which applies to the
    whole process rather than to the returned model.

    Raises:
        ConfigError: Missing files, unloadable modules or missing metadata.
    """
    family = config.family
    for what, path in config.family_config.files.items():
        if not path or not Path(path).is_file():
            raise ConfigError(f"{what} file does not exist: {path!r}")

    device = "cuda" if config.provider == "cuda" else "cpu"
    if device == "cuda" and not torch.cuda.is_available():
        raise ConfigError("provider 'cuda' requested but CUDA is not available")
    if torch.get_num_threads() != config.num_threads:
        logger.info(
            "Setting torch intra-op threads %d -> %d", torch.get_num_threads(), config.num_threads
        )
        torch.set_num_threads(config.num_threads)

    logger.info("Loading %s model (device=%s, num_threads=%d)", family, device, config.num_threads)
    if family == FAMILY_TRANSDUCER:
        cfg = config.transducer
        model = TorchTransducerModel(cfg.encoder, cfg.decoder, cfg.joiner, device)
    elif family == FAMILY_WHISPER:
        model = TorchWhisperModel(config.whisper.encoder, config.whisper.decoder, device)
    elif family == FAMILY_PARAFORMER:
        model = TorchParaformerModel(config.paraformer.model, device)
    elif family == FAMILY_CTC:
        model = TorchCtcModel(config.ctc.model, device)
    else:
        raise ConfigError(f"Unsupported model family '{family}'")

    if config.debug:
        logger.info("Loaded model metadata: %s", vars(model))
    return model
