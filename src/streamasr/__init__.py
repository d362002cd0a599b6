"""Streaming speech recognition decode orchestrator."""

from streamasr.config import (
    CtcModelConfig,
    EndpointConfig,
    FeatureConfig,
    ModelConfig,
    ParaformerModelConfig,
    RecognizerConfig,
    TransducerModelConfig,
    WhisperModelConfig,
)
from streamasr.constants import CHUNK_BYTES, CHUNK_SAMPLES, FEATURE_DIM, SAMPLE_RATE
from streamasr.exceptions import (
    BackendError,
    ConfigError,
    ContextOverflowError,
    ForeignStreamError,
    NotReadyError,
    PreconditionError,
    SampleRateError,
    StreamAsrError,
    StreamClosedError,
)
from streamasr.recognizer import Recognizer
from streamasr.result import Result
from streamasr.stream import Stream

__all__ = [
    "SAMPLE_RATE",
    "FEATURE_DIM",
    "CHUNK_SAMPLES",
    "CHUNK_BYTES",
    "FeatureConfig",
    "TransducerModelConfig",
    "WhisperModelConfig",
    "ParaformerModelConfig",
    "CtcModelConfig",
    "ModelConfig",
    "EndpointConfig",
    "RecognizerConfig",
    "Recognizer",
    "Stream",
    "Result",
    "StreamAsrError",
    "ConfigError",
    "PreconditionError",
    "NotReadyError",
    "ContextOverflowError",
    "ForeignStreamError",
    "SampleRateError",
    "StreamClosedError",
    "BackendError",
]
