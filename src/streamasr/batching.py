"""Cross-stream decode batcher.

Collects decode requests from many concurrent sessions and runs them
through one ``Recognizer.decode_streams`` call per batch, so the backend
sees one batched inference instead of one call per stream.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from streamasr.recognizer import Recognizer
from streamasr.stream import Stream

logger = logging.getLogger(__name__)


@dataclass
class DecodeRequest:
    """A single stream waiting for one decode step."""

    stream: Stream
    future: asyncio.Future[None]


class BatchingDecoder:
    """Batches decode steps of many streams into single backend calls.

    Batches run one at a time in the default executor. A stream must not
    be submitted again before its previous request completed.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        max_batch_size: int = 8,
        max_wait_ms: int = 20,
    ):
        """Initialize the batching decoder.

        Args:
            recognizer: Recognizer whose streams are decoded.
            max_batch_size: Maximum number of streams per batch.
            max_wait_ms: Maximum time to wait for more requests before decoding.
        """
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")
        self._recognizer = recognizer
        self._max_batch_size = max_batch_size
        self._max_wait_ms = max_wait_ms
        self._queue: asyncio.Queue[DecodeRequest] = asyncio.Queue()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background batch processor."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._batch_loop())
        logger.info(
            "Batching decoder started (max_batch_size=%d, max_wait_ms=%d)",
            self._max_batch_size,
            self._max_wait_ms,
        )

    async def stop(self) -> None:
        """Stop the background batch processor and cancel pending requests."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        while not self._queue.empty():
            req = self._queue.get_nowait()
            if not req.future.done():
                req.future.cancel()
        logger.info("Batching decoder stopped")

    async def decode(self, stream: Stream) -> None:
        """Submit one decode step for ``stream`` and wait until it is applied.

        Raises:
            Whatever ``Recognizer.decode_streams`` raised for the batch.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        await self._queue.put(DecodeRequest(stream, future))
        await future

    async def _batch_loop(self) -> None:
        """Continuously collect and process batches."""
        loop = asyncio.get_running_loop()
        while self._running:
            batch: list[DecodeRequest] = []

            try:
                first = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                batch.append(first)
            except asyncio.TimeoutError:
                continue

            deadline = loop.time() + (self._max_wait_ms / 1000)
            while len(batch) < self._max_batch_size:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    req = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                    batch.append(req)
                except asyncio.TimeoutError:
                    break

            await self._process_batch(batch)

    async def _process_batch(self, batch: list[DecodeRequest]) -> None:
        """Decode the batch and resolve its futures."""
        batch = [req for req in batch if not req.future.done()]
        if not batch:
            return

        loop = asyncio.get_running_loop()
        streams = [req.stream for req in batch]
        try:
            await loop.run_in_executor(None, self._recognizer.decode_streams, streams)
        except Exception as e:
            logger.warning("Batch of %d stream(s) failed: %s", len(batch), e)
            for req in batch:
                if not req.future.done():
                    req.future.set_exception(e)
            return

        for req in batch:
            if not req.future.done():
                req.future.set_result(None)

    @property
    def queue_size(self) -> int:
        """Current number of pending requests."""
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        """Whether the batch processor is running."""
        return self._running
