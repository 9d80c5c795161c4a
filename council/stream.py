"""Buffered SSE event stream with backpressure handling and chunked flushing."""

import asyncio
import logging
from collections import deque
from typing import BinaryIO, Protocol

from config.config_loader import StreamConfig
from council.events import Event, encode_sse

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Where encoded events end up.

    ``write`` returns False when the transport wants the writer to wait for
    ``wait_drained`` before sending more.
    """

    def write(self, data: bytes) -> bool: ...

    async def wait_drained(self) -> None: ...

    async def close(self) -> None: ...


class FileTransport:
    """Writes to a binary file object such as ``sys.stdout.buffer``. Never pushes back."""

    def __init__(self, file: BinaryIO, close_file: bool = False) -> None:
        self._file = file
        self._close_file = close_file

    def write(self, data: bytes) -> bool:
        self._file.write(data)
        self._file.flush()
        return True

    async def wait_drained(self) -> None:
        return None

    async def close(self) -> None:
        self._file.flush()
        if self._close_file:
            self._file.close()


class StreamWriterTransport:
    """Writes to an asyncio StreamWriter; pushes back once its write buffer passes ``limit`` bytes."""

    def __init__(self, writer: asyncio.StreamWriter, limit: int = 65536) -> None:
        self._writer = writer
        self._limit = limit

    def write(self, data: bytes) -> bool:
        self._writer.write(data)
        return self._writer.transport.get_write_buffer_size() < self._limit

    async def wait_drained(self) -> None:
        await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        await self._writer.wait_closed()


class EventStream:
    """Ordered, buffered delivery of stage events to a possibly slow consumer.

    Writes accumulate in memory until ``high_water_mark`` bytes are buffered,
    which forces a flush; a background ticker also flushes every
    ``flush_interval`` seconds. A flush sends ``chunk_size`` pieces and waits
    for the transport to drain whenever it pushes back. Flushes hold a lock,
    so chunks from the ticker and from writers never interleave.

    Use as ``async with EventStream(transport) as stream:`` so the transport
    is closed on every exit path. ``close`` is idempotent and writing after
    close is a no-op.
    """

    def __init__(
        self,
        transport: Transport,
        high_water_mark: int = 16384,
        chunk_size: int = 8192,
        flush_interval: float = 0.1,
    ) -> None:
        self._transport = transport
        self._high_water_mark = high_water_mark
        self._chunk_size = chunk_size
        self._flush_interval = flush_interval
        self._buffer: deque[bytes] = deque()
        self._buffered_bytes = 0
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._ticker: asyncio.Task | None = None
        self._closed = False
        self._transport_closed = False

    @classmethod
    def from_config(cls, transport: Transport, config: StreamConfig) -> "EventStream":
        return cls(
            transport,
            high_water_mark=config.high_water_mark,
            chunk_size=config.chunk_size,
            flush_interval=config.flush_interval,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def start(self) -> None:
        """Start the periodic flush task. Called by ``__aenter__``."""
        if self._ticker is None and not self._closed:
            self._ticker = asyncio.create_task(self._tick())

    async def __aenter__(self) -> "EventStream":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def write(self, data: str) -> None:
        if self._closed:
            return

        encoded = data.encode("utf-8")
        self._buffer.append(encoded)
        self._buffered_bytes += len(encoded)

        if self._buffered_bytes >= self._high_water_mark:
            await self._drain()

    async def send(self, event: Event) -> None:
        await self.write(encode_sse(event))

    async def flush(self) -> None:
        if self._closed:
            return
        await self._drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        self._stop.set()
        if self._ticker is not None:
            await self._ticker
            self._ticker = None

        try:
            await self._drain()
        finally:
            await self._close_transport()

    async def _drain(self) -> None:
        async with self._lock:
            while self._buffer:
                chunk: list[bytes] = []
                size = 0
                while self._buffer and size < self._chunk_size:
                    item = self._buffer.popleft()
                    chunk.append(item)
                    size += len(item)
                self._buffered_bytes -= size

                if not self._transport.write(b"".join(chunk)):
                    await self._transport.wait_drained()

    async def _tick(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._flush_interval)
            except TimeoutError:
                pass
            if self._stop.is_set():
                return
            try:
                await self._drain()
            except Exception:
                logger.exception("Error flushing event stream; closing it")
                self._closed = True
                self._buffer.clear()
                self._buffered_bytes = 0
                await self._close_transport()
                return

    async def _close_transport(self) -> None:
        if self._transport_closed:
            return
        self._transport_closed = True
        try:
            await self._transport.close()
        except Exception:
            logger.exception("Error closing event stream transport")
