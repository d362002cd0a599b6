"""FastAPI WebSocket server for streaming recognition.

The server accepts PCM16 audio over a WebSocket, feeds it into one
recognizer Stream per connection and returns results as JSON. It depends
only on the Recognizer, so it runs the same with fake or real backends.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from streamasr.audio import pcm16_to_float32, validate_audio_format
from streamasr.batching import BatchingDecoder
from streamasr.config import ServerSettings
from streamasr.exceptions import PreconditionError, StreamAsrError
from streamasr.features import FeatureExtractor
from streamasr.log import setup_logging
from streamasr.recognizer import Recognizer
from streamasr.result import Result

logger = logging.getLogger(__name__)


class StreamSession:
    """Recognition state of a single WebSocket connection."""

    def __init__(self, recognizer: Recognizer, session_id: str):
        self.session_id = session_id
        self.recognizer = recognizer
        self.stream = recognizer.create_stream()
        self.in_flight: Optional[asyncio.Future] = None  # decode step running on the stream
        self._last_text = ""

    def append(self, data: bytes) -> None:
        """Push PCM16 bytes into the stream."""
        self.stream.accept_waveform(
            self.recognizer.config.feat_config.sample_rate, pcm16_to_float32(data)
        )

    def partial(self) -> Optional[Result]:
        """Current result if its text changed since the last one sent."""
        result = self.recognizer.get_result(self.stream)
        if result.text == self._last_text:
            return None
        self._last_text = result.text
        return result

    def end_segment(self) -> Result:
        """Final result of the current segment; the stream moves to the next one."""
        result = self.recognizer.get_result(self.stream)
        self.recognizer.reset(self.stream)
        self._last_text = ""
        return result

    def close(self) -> None:
        self.stream.close()

    async def aclose(self) -> None:
        """Close the stream once a decode step still using it has finished."""
        if self.in_flight is not None and not self.in_flight.done():
            await asyncio.wait([self.in_flight])
        self.in_flight = None
        self.close()


def create_app(
    recognizer: Recognizer,
    use_batching: bool = True,
    max_batch_size: int = 8,
    max_wait_ms: int = 20,
) -> FastAPI:
    """Create a FastAPI application around ``recognizer``.

    Args:
        recognizer: Recognizer serving every connection.
        use_batching: Whether to batch decode steps across connections.
        max_batch_size: Maximum streams per batched decode.
        max_wait_ms: Maximum wait for more streams before decoding.

    Returns:
        Configured FastAPI application.
    """
    batcher: Optional[BatchingDecoder] = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal batcher
        if use_batching:
            batcher = BatchingDecoder(recognizer, max_batch_size=max_batch_size, max_wait_ms=max_wait_ms)
            await batcher.start()
        yield
        if batcher:
            await batcher.stop()
            batcher = None

    app = FastAPI(title="streamasr", lifespan=lifespan)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        config = recognizer.config
        return {
            "status": "ok",
            "family": recognizer.family,
            "streaming": recognizer.streaming,
            "decoding_method": config.decoding_method,
            "sample_rate": config.feat_config.sample_rate,
            "enable_endpoint": config.enable_endpoint,
        }

    @app.websocket("/v1/stream")
    async def stream_recognize(websocket: WebSocket):
        """WebSocket endpoint for streaming recognition.

        Protocol:
        - Client sends binary PCM16 audio chunks (16kHz mono)
        - Client sends b"EOS" to signal end of stream
        - Server responds with JSON: {"result": {...}, "final": bool}
        - Server sends {"status": "complete"} when done
        """
        await websocket.accept()
        session = StreamSession(recognizer, str(id(websocket)))
        logger.debug("Session %s opened", session.session_id)

        try:
            while True:
                data = await websocket.receive_bytes()

                if data == b"EOS":
                    session.stream.input_finished()
                    await _drain(session, batcher)
                    result = session.end_segment()
                    if result.text:
                        await websocket.send_json({"result": result.as_dict(), "final": True})
                    await websocket.send_json({"status": "complete"})
                    break

                if not validate_audio_format(data):
                    await websocket.send_json({"error": "Invalid audio format (must be PCM16)"})
                    continue

                try:
                    session.append(data)
                except PreconditionError as e:
                    await websocket.send_json({"error": str(e)})
                    continue

                if not recognizer.streaming:
                    continue

                await _drain(session, batcher)
                if recognizer.is_endpoint(session.stream):
                    result = session.end_segment()
                    if result.text:
                        await websocket.send_json({"result": result.as_dict(), "final": True})
                    continue

                result = session.partial()
                if result is not None:
                    await websocket.send_json({"result": result.as_dict(), "final": False})

        except WebSocketDisconnect:
            logger.debug("Session %s disconnected", session.session_id)
        except StreamAsrError as e:
            logger.error("Session %s failed: %s", session.session_id, e)
            await websocket.send_json({"error": str(e)})
        finally:
            await session.aclose()

    return app


async def _drain(session: StreamSession, batcher: Optional[BatchingDecoder]) -> None:
    """Decode every ready window of the session's stream."""
    recognizer, stream = session.recognizer, session.stream
    loop = asyncio.get_running_loop()
    while recognizer.is_ready(stream):
        if batcher:
            step = asyncio.ensure_future(batcher.decode(stream))
        else:
            step = loop.run_in_executor(None, recognizer.decode_stream, stream)
        # Shielded so a cancelled session still lets the step finish before close.
        session.in_flight = step
        await asyncio.shield(step)
        session.in_flight = None


def create_app_from_settings(
    settings: Optional[ServerSettings] = None,
    feature_extractor_factory: Optional[Callable[[], FeatureExtractor]] = None,
) -> FastAPI:
    """Build logging, recognizer and app from environment settings.

    Without ``feature_extractor_factory`` the recognizer cannot accept
    audio; every audio frame is answered with an error message.
    """
    settings = settings or ServerSettings()
    setup_logging(settings.log_level, settings.log_file)
    recognizer = Recognizer.from_config(settings.to_recognizer_config(), feature_extractor_factory)
    return create_app(
        recognizer,
        use_batching=settings.use_batching,
        max_batch_size=settings.max_batch_size,
        max_wait_ms=settings.max_wait_ms,
    )
