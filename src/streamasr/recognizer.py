"""Recognizer: creates streams, schedules and batches their decoding.

A Recognizer is bound to one loaded model and one decoding strategy,
chosen once at construction. It holds no mutable per-decode state, so
disjoint streams may be decoded from several threads when the backend
allows concurrent calls. ``decode_streams`` is the preferred way to
serve many streams: one inference call covers every ready stream.

Caller contract: a Recognizer must outlive every Stream it created.
Dropping it while streams are in use is not guarded.
"""

import logging
from collections.abc import Callable, Sequence
from typing import Any, Optional

from streamasr.config import RecognizerConfig
from streamasr.constants import FAMILY_WHISPER, FRAME_SHIFT_SECONDS
from streamasr.decoding import DecodingStrategy, create_strategy
from streamasr.endpoint import EndpointDetector
from streamasr.exceptions import (
    BackendError,
    ConfigError,
    ForeignStreamError,
    NotReadyError,
    PreconditionError,
    StreamAsrError,
)
from streamasr.features import FeatureExtractor
from streamasr.result import Result
from streamasr.stream import Stream
from streamasr.tokens import SymbolTable

logger = logging.getLogger(__name__)


class Recognizer:
    def __init__(
        self,
        config: RecognizerConfig,
        model: Any,
        symbol_table: SymbolTable,
        feature_extractor_factory: Optional[Callable[[], FeatureExtractor]] = None,
    ):
        """Initialize a recognizer around an already loaded model.

        Args:
            config: Recognizer configuration; validated here.
            model: Backend implementing the protocol of the configured family.
            symbol_table: Token table of the model.
            feature_extractor_factory: Builds one extractor per stream. Without
                it streams only accept precomputed features.

        Raises:
            ConfigError: The config is invalid or does not match the model.
        """
        config.validate()
        self._config = config
        self._model = model
        self._symbols = symbol_table
        self._extractor_factory = feature_extractor_factory
        self._strategy = create_strategy(config, model)
        self._endpoint = EndpointDetector(config.endpoint_config, FRAME_SHIFT_SECONDS)

        self._check_model()
        self._check_extractor()

        if config.debug:
            logger.info("Recognizer config: %s", config.to_dict())
        logger.info(
            "Recognizer ready (family=%s, decoding_method=%s, streaming=%s)",
            self.family,
            type(self._strategy).__name__,
            self.streaming,
        )

    @classmethod
    def from_config(
        cls,
        config: RecognizerConfig,
        feature_extractor_factory: Optional[Callable[[], FeatureExtractor]] = None,
    ) -> "Recognizer":
        """Load the TorchScript model and tokens named by ``config``.

        Raises:
            ConfigError: Missing files, malformed metadata or invalid settings.
        """
        config.validate()
        config.model_config.validate_files()

        from streamasr.engine.torchscript import load_model

        model = load_model(config.model_config)
        symbols = SymbolTable.from_file(
            config.model_config.tokens,
            base64_encoded=config.model_config.family == FAMILY_WHISPER,
        )
        return cls(config, model, symbols, feature_extractor_factory)

    @property
    def config(self) -> RecognizerConfig:
        return self._config

    @property
    def family(self) -> str:
        return self._config.model_config.family

    @property
    def strategy(self) -> DecodingStrategy:
        return self._strategy

    @property
    def symbol_table(self) -> SymbolTable:
        return self._symbols

    @property
    def streaming(self) -> bool:
        return self._strategy.streaming

    @property
    def endpoint_detector(self) -> EndpointDetector:
        return self._endpoint

    def create_stream(self) -> Stream:
        extractor = self._extractor_factory() if self._extractor_factory else None
        window = None
        if self.streaming:
            window = (self._strategy.window_size, self._strategy.window_shift)
        stream = Stream(
            owner=self,
            decode_state=self._strategy.init_state(),
            feature_dim=self._config.feat_config.feature_dim,
            sample_rate=self._config.feat_config.sample_rate,
            extractor=extractor,
            window=window,
        )
        logger.debug("Created stream %s", stream.id[:8])
        return stream

    def is_ready(self, stream: Stream) -> bool:
        """Whether ``stream`` has input for one decode step."""
        self._check_stream(stream)
        pending = stream.features.num_frames
        if self.streaming:
            return pending >= self._strategy.window_size
        return stream.finished and pending > 0

    def decode_stream(self, stream: Stream) -> None:
        self.decode_streams([stream])

    def decode_streams(self, streams: Sequence[Stream]) -> None:
        """Run one decode step for every stream in a single batched call.

        Every stream must be ready. The outcome for each stream is the
        same as decoding it alone.

        Raises:
            PreconditionError: A stream is foreign, closed, repeated or not ready.
            BackendError: The backend failed; no stream was changed.
        """
        streams = list(streams)
        if not streams:
            return

        seen = set()
        for stream in streams:
            if not self.is_ready(stream):
                raise NotReadyError(f"Stream {stream.id[:8]} has no ready input")
            if stream.id in seen:
                raise PreconditionError(f"Stream {stream.id[:8]} appears twice in one batch")
            seen.add(stream.id)

        if self.streaming:
            window = self._strategy.window_size
            inputs = [s.features.peek(window) for s in streams]
            consumed = [self._strategy.window_shift] * len(streams)
        else:
            inputs = [s.features.peek(s.features.num_frames) for s in streams]
            consumed = [x.shape[0] for x in inputs]

        try:
            states = self._strategy.decode([s.decode_state for s in streams], inputs)
        except StreamAsrError:
            raise
        except Exception as e:
            logger.error("Decode of %d stream(s) failed: %s", len(streams), e)
            raise BackendError(f"Backend failed while decoding {len(streams)} stream(s): {e}") from e

        for stream, state, n in zip(streams, states, consumed):
            self._commit(stream, state, n)

        if self._config.debug:
            logger.info("Decoded batch of %d stream(s)", len(streams))

    def is_endpoint(self, stream: Stream) -> bool:
        """Whether the current segment of ``stream`` has ended.

        Always False for offline models or when endpointing is disabled.
        """
        self._check_stream(stream)
        if not self._config.enable_endpoint or not self.streaming:
            return False
        return self._endpoint.is_endpoint(stream.endpoint_state)

    def get_result(self, stream: Stream) -> Result:
        self._check_stream(stream)
        token_ids, frames = self._strategy.best(stream.decode_state)
        if self._strategy.frame_aligned:
            # Ids without a symbol (special tokens) are dropped with their frame.
            kept = [(t, f) for t, f in zip(token_ids, frames) if t in self._symbols]
            token_ids = [t for t, _ in kept]
            frames = [f for _, f in kept]
        else:
            token_ids = [t for t in token_ids if t in self._symbols]

        timestamps: tuple[float, ...] = ()
        if self._strategy.frame_aligned:
            scale = self._strategy.subsampling_factor * FRAME_SHIFT_SECONDS
            timestamps = tuple(round(f * scale, 6) for f in frames)

        return Result(
            text=self._symbols.detokenize(token_ids),
            tokens=tuple(self._symbols.symbols(token_ids)),
            timestamps=timestamps,
            start_time=round(stream.segment_start_frame * FRAME_SHIFT_SECONDS, 6),
            segment=stream.segment,
            is_final=stream.finished and not self.is_ready(stream),
        )

    def reset(self, stream: Stream) -> None:
        """Start a new segment on ``stream``, typically after an endpoint.

        Tokens and endpoint counters are cleared; buffered input and the
        acoustic context of streaming encoders are kept.
        """
        self._check_stream(stream)
        stream._start_segment(self._strategy.reset_state(stream.decode_state))

    def _commit(self, stream: Stream, state: Any, num_frames: int) -> None:
        token_ids, _ = self._strategy.best(state)
        trailing = self._strategy.num_trailing_blanks(state) * self._strategy.subsampling_factor
        endpoint_state = self._endpoint.update(
            stream.endpoint_state, num_frames, trailing, len(token_ids)
        )
        stream._commit(state, num_frames, endpoint_state)

    def _check_stream(self, stream: Stream) -> None:
        if stream.owner is not self:
            raise ForeignStreamError(f"Stream {stream.id[:8]} was created by another recognizer")
        stream._check_open()

    def _check_model(self) -> None:
        if self.streaming:
            size, shift = self._strategy.window_size, self._strategy.window_shift
            if not 0 < shift <= size:
                raise ConfigError(
                    f"Model window is invalid: window_size={size}, window_shift={shift}"
                )
        vocab_size = getattr(self._model, "vocab_size", None)
        if vocab_size is not None and len(self._symbols) < vocab_size:
            raise ConfigError(
                f"Token table has {len(self._symbols)} entries but the model "
                f"vocabulary has {vocab_size}"
            )

    def _check_extractor(self) -> None:
        if self._extractor_factory is None:
            return
        extractor = self._extractor_factory()
        feat = self._config.feat_config
        if extractor.feature_dim != feat.feature_dim or extractor.sample_rate != feat.sample_rate:
            raise ConfigError(
                f"Feature extractor produces {extractor.feature_dim}-dim frames at "
                f"{extractor.sample_rate} Hz, config expects {feat.feature_dim}-dim at "
                f"{feat.sample_rate} Hz"
            )
