class StreamAsrError(Exception):
    """Base exception for all streamasr errors."""


class ConfigError(StreamAsrError):
    """Invalid configuration, missing model files or malformed metadata."""


class PreconditionError(StreamAsrError):
    """The caller broke the contract of a decode operation."""


class NotReadyError(PreconditionError):
    """A stream was decoded without a ready window of input."""


class ContextOverflowError(PreconditionError):
    """An autoregressive cache would be written past its max context."""


class ForeignStreamError(PreconditionError):
    """A stream was passed to a Recognizer that did not create it."""


class SampleRateError(PreconditionError):
    """Audio sample rate differs from the configured rate."""


class StreamClosedError(PreconditionError):
    """A stream was used after close, or fed after input finished."""


class BackendError(StreamAsrError):
    """The inference backend failed during a decode call."""
