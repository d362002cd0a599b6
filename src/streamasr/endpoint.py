"""Endpoint detection over trailing-silence and utterance-length counters.

The detector has a single "listening" state. Counters are recomputed from
the decode state after every decode step, and ``is_endpoint`` is a query:
nothing is consumed or reset by asking it.

Rules (any one is enough):
  rule1: at least one token emitted and the silence since the last token
         reaches ``rule1_min_trailing_silence``.
  rule2: no token emitted yet and the silence since the utterance start
         reaches ``rule2_min_trailing_silence``.
  rule3: the utterance length reaches ``rule3_min_utterance_length``.
"""

from dataclasses import dataclass

from streamasr.config import EndpointConfig
from streamasr.constants import FRAME_SHIFT_SECONDS


@dataclass(frozen=True)
class EndpointState:
    """Endpoint counters of one stream segment, in feature frames."""

    utterance_frames: int = 0
    trailing_silence_frames: int = 0
    num_tokens: int = 0

    @property
    def has_tokens(self) -> bool:
        return self.num_tokens > 0

    @property
    def silence_since_last_token_frames(self) -> int:
        return self.trailing_silence_frames if self.has_tokens else 0

    @property
    def silence_since_start_frames(self) -> int:
        return 0 if self.has_tokens else self.trailing_silence_frames


class EndpointDetector:
    def __init__(
        self,
        config: EndpointConfig,
        frame_shift_seconds: float = FRAME_SHIFT_SECONDS,
    ):
        self._config = config
        self._frame_shift = frame_shift_seconds

    @property
    def config(self) -> EndpointConfig:
        return self._config

    def seconds(self, frames: int) -> float:
        # Rounded so that N * shift never drifts past a threshold one frame early.
        return round(frames * self._frame_shift, 6)

    def update(
        self,
        state: EndpointState,
        num_new_frames: int,
        trailing_silence_frames: int,
        num_tokens: int,
    ) -> EndpointState:
        """Fold one decode step into the counters.

        Args:
            state: Counters before the step.
            num_new_frames: Feature frames folded into the decode state by the step.
            trailing_silence_frames: Feature frames of silence after the last
                emitted token (or since the segment start if none).
            num_tokens: Tokens emitted in the segment so far.
        """
        utterance_frames = state.utterance_frames + num_new_frames
        return EndpointState(
            utterance_frames=utterance_frames,
            trailing_silence_frames=min(trailing_silence_frames, utterance_frames),
            num_tokens=num_tokens,
        )

    def trailing_silence_since_last_token(self, state: EndpointState) -> float:
        return self.seconds(state.silence_since_last_token_frames)

    def trailing_silence_since_start(self, state: EndpointState) -> float:
        return self.seconds(state.silence_since_start_frames)

    def utterance_duration(self, state: EndpointState) -> float:
        return self.seconds(state.utterance_frames)

    def is_endpoint(self, state: EndpointState) -> bool:
        cfg = self._config
        if (
            state.has_tokens
            and self.trailing_silence_since_last_token(state) >= cfg.rule1_min_trailing_silence
        ):
            return True
        if (
            not state.has_tokens
            and self.trailing_silence_since_start(state) >= cfg.rule2_min_trailing_silence
        ):
            return True
        return self.utterance_duration(state) >= cfg.rule3_min_utterance_length
