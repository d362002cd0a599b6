"""Inference backends.

``protocol`` defines the per-family interfaces, ``fake`` provides
deterministic CPU fakes for tests, and ``torchscript`` loads exported
models (imported lazily since it requires torch).
"""

from streamasr.engine.fake import (
    FakeCtcModel,
    FakeFeatureExtractor,
    FakeParaformerModel,
    FakeTransducerModel,
    FakeWhisperModel,
)
from streamasr.engine.protocol import (
    CtcModel,
    ParaformerModel,
    StreamingEncoder,
    TransducerModel,
    WhisperModel,
)

__all__ = [
    "StreamingEncoder",
    "TransducerModel",
    "WhisperModel",
    "CtcModel",
    "ParaformerModel",
    "FakeTransducerModel",
    "FakeWhisperModel",
    "FakeCtcModel",
    "FakeParaformerModel",
    "FakeFeatureExtractor",
]
