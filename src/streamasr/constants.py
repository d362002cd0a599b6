"""Core constants for the streamasr decode orchestrator.

Feature frames follow the usual Kaldi-style front end: 80-dim fbank at
16kHz with a 10ms frame shift. Audio on the wire is 16kHz mono PCM16.
"""

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz
BYTES_PER_SAMPLE: int = 2  # 16-bit PCM

# Feature frames
FEATURE_DIM: int = 80
FRAME_SHIFT_MS: int = 10
FRAME_SHIFT_SECONDS: float = 0.01

# Recommended streaming chunk on the wire: 100ms
CHUNK_MS: int = 100
CHUNK_SAMPLES: int = 1600  # 16000 * 0.100
CHUNK_BYTES: int = 3200  # 1600 * 2 bytes

# Decoding defaults
DEFAULT_DECODING_METHOD: str = "greedy_search"
DEFAULT_MAX_ACTIVE_PATHS: int = 4
DECODING_METHODS: tuple[str, ...] = ("greedy_search", "modified_beam_search")

# Endpoint defaults (seconds): shorter silence ends an utterance once a token
# was decoded, longer silence ends one that never produced a token.
DEFAULT_RULE1_MIN_TRAILING_SILENCE: float = 1.2
DEFAULT_RULE2_MIN_TRAILING_SILENCE: float = 2.4
DEFAULT_RULE3_MIN_UTTERANCE_LENGTH: float = 20.0

# Model families
FAMILY_TRANSDUCER: str = "transducer"
FAMILY_WHISPER: str = "whisper"
FAMILY_PARAFORMER: str = "paraformer"
FAMILY_CTC: str = "ctc"
MODEL_FAMILIES: tuple[str, ...] = (
    FAMILY_TRANSDUCER,
    FAMILY_WHISPER,
    FAMILY_PARAFORMER,
    FAMILY_CTC,
)
