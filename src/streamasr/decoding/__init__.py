"""Decoding strategies, one per model family."""

from typing import Any

from streamasr.config import RecognizerConfig
from streamasr.constants import FAMILY_CTC, FAMILY_PARAFORMER, FAMILY_TRANSDUCER, FAMILY_WHISPER
from streamasr.decoding.base import DecodeState, DecodingStrategy
from streamasr.decoding.ctc import CtcGreedySearch, ParaformerGreedySearch, collapse_ctc
from streamasr.decoding.transducer import TransducerGreedySearch, TransducerModifiedBeamSearch
from streamasr.decoding.whisper import KVCache, WhisperGreedySearch
from streamasr.exceptions import ConfigError


def create_strategy(config: RecognizerConfig, model: Any) -> DecodingStrategy:
    """Select the decoding strategy for a validated config and its loaded model."""
    family = config.model_config.family
    if family == FAMILY_TRANSDUCER:
        if config.decoding_method == "modified_beam_search":
            return TransducerModifiedBeamSearch(model, config.max_active_paths)
        return TransducerGreedySearch(model)
    if family == FAMILY_WHISPER:
        return WhisperGreedySearch(model)
    if family == FAMILY_PARAFORMER:
        return ParaformerGreedySearch(model)
    if family == FAMILY_CTC:
        return CtcGreedySearch(model)
    raise ConfigError(f"No decoding strategy for model family '{family}'")


__all__ = [
    "DecodeState",
    "DecodingStrategy",
    "create_strategy",
    "collapse_ctc",
    "CtcGreedySearch",
    "ParaformerGreedySearch",
    "TransducerGreedySearch",
    "TransducerModifiedBeamSearch",
    "WhisperGreedySearch",
    "KVCache",
]
