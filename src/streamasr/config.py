"""Configuration records for recognizers and the HTTP service.

Recognizer configuration is a tree of plain dataclasses mirroring the
model layout on disk. The HTTP service reads its settings from the
environment (prefix ``STREAMASR_``) or a ``.env`` file.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from streamasr.constants import (
    DECODING_METHODS,
    DEFAULT_DECODING_METHOD,
    DEFAULT_MAX_ACTIVE_PATHS,
    DEFAULT_RULE1_MIN_TRAILING_SILENCE,
    DEFAULT_RULE2_MIN_TRAILING_SILENCE,
    DEFAULT_RULE3_MIN_UTTERANCE_LENGTH,
    FAMILY_CTC,
    FAMILY_PARAFORMER,
    FAMILY_TRANSDUCER,
    FAMILY_WHISPER,
    FEATURE_DIM,
    MODEL_FAMILIES,
    SAMPLE_RATE,
)
from streamasr.exceptions import ConfigError


def _require_file(path: str, what: str) -> None:
    if not path:
        raise ConfigError(f"No {what} file configured")
    if not Path(path).is_file():
        raise ConfigError(f"{what} file does not exist: {path}")


@dataclass
class FeatureConfig:
    sample_rate: int = SAMPLE_RATE
    feature_dim: int = FEATURE_DIM

    def validate(self) -> None:
        if self.sample_rate <= 0:
            raise ConfigError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.feature_dim <= 0:
            raise ConfigError(f"feature_dim must be positive, got {self.feature_dim}")


@dataclass
class TransducerModelConfig:
    encoder: str = ""
    decoder: str = ""
    joiner: str = ""

    @property
    def files(self) -> dict[str, str]:
        return {
            "transducer encoder": self.encoder,
            "transducer decoder": self.decoder,
            "transducer joiner": self.joiner,
        }


@dataclass
class WhisperModelConfig:
    encoder: str = ""
    decoder: str = ""

    @property
    def files(self) -> dict[str, str]:
        return {"whisper encoder": self.encoder, "whisper decoder": self.decoder}


@dataclass
class ParaformerModelConfig:
    model: str = ""

    @property
    def files(self) -> dict[str, str]:
        return {"paraformer model": self.model}


@dataclass
class CtcModelConfig:
    model: str = ""

    @property
    def files(self) -> dict[str, str]:
        return {"ctc model": self.model}


@dataclass
class ModelConfig:
    transducer: TransducerModelConfig = field(default_factory=TransducerModelConfig)
    whisper: WhisperModelConfig = field(default_factory=WhisperModelConfig)
    paraformer: ParaformerModelConfig = field(default_factory=ParaformerModelConfig)
    ctc: CtcModelConfig = field(default_factory=CtcModelConfig)
    tokens: str = ""
    num_threads: int = 1
    provider: str = "cpu"
    model_type: str = ""
    debug: bool = False

    @property
    def family(self) -> str:
        """Resolve the model family.

        An explicit ``model_type`` wins. Otherwise the family is inferred
        from the single sub-config that names a model file.
        """
        if self.model_type:
            if self.model_type not in MODEL_FAMILIES:
                raise ConfigError(
                    f"Unknown model_type '{self.model_type}', "
                    f"expected one of {', '.join(MODEL_FAMILIES)}"
                )
            return self.model_type

        candidates = []
        if self.transducer.encoder:
            candidates.append(FAMILY_TRANSDUCER)
        if self.whisper.encoder:
            candidates.append(FAMILY_WHISPER)
        if self.paraformer.model:
            candidates.append(FAMILY_PARAFORMER)
        if self.ctc.model:
            candidates.append(FAMILY_CTC)

        if not candidates:
            raise ConfigError("No model configured: set model_type or a model file")
        if len(candidates) > 1:
            raise ConfigError(
                f"Ambiguous model config, files given for: {', '.join(candidates)}"
            )
        return candidates[0]

    @property
    def family_config(self):
        return getattr(self, self.family)

    def validate(self) -> None:
        _ = self.family
        if self.num_threads < 1:
            raise ConfigError(f"num_threads must be >= 1, got {self.num_threads}")

    def validate_files(self) -> None:
        """Check that the model files and tokens of the family exist."""
        for what, path in self.family_config.files.items():
            _require_file(path, what)
        _require_file(self.tokens, "tokens")


@dataclass
class EndpointConfig:
    rule1_min_trailing_silence: float = DEFAULT_RULE1_MIN_TRAILING_SILENCE
    rule2_min_trailing_silence: float = DEFAULT_RULE2_MIN_TRAILING_SILENCE
    rule3_min_utterance_length: float = DEFAULT_RULE3_MIN_UTTERANCE_LENGTH

    def validate(self) -> None:
        for name, value in asdict(self).items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")


@dataclass
class RecognizerConfig:
    feat_config: FeatureConfig = field(default_factory=FeatureConfig)
    model_config: ModelConfig = field(default_factory=ModelConfig)
    decoding_method: str = DEFAULT_DECODING_METHOD
    max_active_paths: int = DEFAULT_MAX_ACTIVE_PATHS
    enable_endpoint: bool = False
    endpoint_config: EndpointConfig = field(default_factory=EndpointConfig)

    def validate(self) -> None:
        self.feat_config.validate()
        self.model_config.validate()
        self.endpoint_config.validate()

        if self.decoding_method not in DECODING_METHODS:
            raise ConfigError(
                f"Unsupported decoding_method '{self.decoding_method}', "
                f"expected one of {', '.join(DECODING_METHODS)}"
            )
        if self.max_active_paths < 1:
            raise ConfigError(
                f"max_active_paths must be >= 1, got {self.max_active_paths}"
            )
        family = self.model_config.family
        if self.decoding_method == "modified_beam_search" and family != FAMILY_TRANSDUCER:
            raise ConfigError(
                f"modified_beam_search is only supported for transducer models, not {family}"
            )

    @property
    def debug(self) -> bool:
        return self.model_config.debug

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ServerSettings(BaseSettings):
    """Settings for the WebSocket service."""

    model_config = SettingsConfigDict(
        env_prefix="STREAMASR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Batching
    use_batching: bool = True
    max_batch_size: int = 8
    max_wait_ms: int = 20

    # Model
    model_type: str = ""
    tokens: str = ""
    transducer_encoder: str = ""
    transducer_decoder: str = ""
    transducer_joiner: str = ""
    whisper_encoder: str = ""
    whisper_decoder: str = ""
    paraformer_model: str = ""
    ctc_model: str = ""
    provider: str = "cpu"
    num_threads: int = 1
    debug: bool = False

    # Decoding
    sample_rate: int = SAMPLE_RATE
    feature_dim: int = FEATURE_DIM
    decoding_method: str = DEFAULT_DECODING_METHOD
    max_active_paths: int = DEFAULT_MAX_ACTIVE_PATHS
    enable_endpoint: bool = True
    rule1_min_trailing_silence: float = DEFAULT_RULE1_MIN_TRAILING_SILENCE
    rule2_min_trailing_silence: float = DEFAULT_RULE2_MIN_TRAILING_SILENCE
    rule3_min_utterance_length: float = DEFAULT_RULE3_MIN_UTTERANCE_LENGTH

    def to_recognizer_config(self) -> RecognizerConfig:
        return RecognizerConfig(
            feat_config=FeatureConfig(
                sample_rate=self.sample_rate,
                feature_dim=self.feature_dim,
            ),
            model_config=ModelConfig(
                transducer=TransducerModelConfig(
                    encoder=self.transducer_encoder,
                    decoder=self.transducer_decoder,
                    joiner=self.transducer_joiner,
                ),
                whisper=WhisperModelConfig(
                    encoder=self.whisper_encoder,
                    decoder=self.whisper_decoder,
                ),
                paraformer=ParaformerModelConfig(model=self.paraformer_model),
                ctc=CtcModelConfig(model=self.ctc_model),
                tokens=self.tokens,
                num_threads=self.num_threads,
                provider=self.provider,
                model_type=self.model_type,
                debug=self.debug,
            ),
            decoding_method=self.decoding_method,
            max_active_paths=self.max_active_paths,
            enable_endpoint=self.enable_endpoint,
            endpoint_config=EndpointConfig(
                rule1_min_trailing_silence=self.rule1_min_trailing_silence,
                rule2_min_trailing_silence=self.rule2_min_trailing_silence,
                rule3_min_utterance_length=self.rule3_min_utterance_length,
            ),
        )
