"""Pull-based chunk iterator over one streamed HTTP response."""

from __future__ import annotations

import logging
from collections import deque
from typing import AsyncIterator

import httpx

from llm_relay.llm.decoders import StreamDecoder
from llm_relay.llm.transport import transport_error, upstream_error
from llm_relay.types import StreamChunk

_logger = logging.getLogger(__name__)


class ChunkStream:
    """Async iterator yielding ``StreamChunk`` values in decoder order.

    The HTTP response is opened lazily on the first ``__anext__`` and is
    released on every exit path: after the terminal chunk, when an error is
    raised, or on ``aclose()`` (also called by ``async with`` and on task
    cancellation).  A non-2xx status raises ``UpstreamError`` from the
    first ``__anext__``; once bytes have started flowing, failures replace
    the terminal chunk.

    Usage::

        async with provider.stream_complete(request) as stream:
            async for chunk in stream:
                ...
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        decoder: StreamDecoder,
        *,
        provider: str,
    ) -> None:
        self._client = client
        self._request = request
        self.decoder = decoder
        self._provider = provider
        self._response: httpx.Response | None = None
        self._bytes: AsyncIterator[bytes] | None = None
        self._pending: deque[StreamChunk] = deque()
        self._finished = False
        self._closed = False

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> StreamChunk:
        if not self._pending:
            if self._finished or self._closed:
                raise StopAsyncIteration
            try:
                await self._fill()
            except BaseException:
                await self.aclose()
                raise

        chunk = self._pending.popleft()
        if chunk.done:
            self._finished = True
            await self.aclose()
        return chunk

    async def _fill(self) -> None:
        if self._bytes is None:
            await self._open()
        assert self._bytes is not None
        while not self._pending:
            try:
                data = await self._bytes.__anext__()
            except StopAsyncIteration:
                self._pending.extend(self.decoder.finish())
                return
            except httpx.HTTPError as exc:
                raise transport_error(exc, self._provider, str(self._request.url)) from exc
            self._pending.extend(self.decoder.feed(data))

    async def _open(self) -> None:
        try:
            self._response = await self._client.send(self._request, stream=True)
        except httpx.HTTPError as exc:
            raise transport_error(exc, self._provider, str(self._request.url)) from exc

        if not self._response.is_success:
            body = (await self._response.aread()).decode("utf-8", errors="replace")
            raise upstream_error(self._response.status_code, body, self._provider)
        self._bytes = self._response.aiter_bytes()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """Stop reading and release the response.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._response is not None:
            await self._response.aclose()
            _logger.debug(
                "Released %s stream (skipped_lines=%d)",
                self._provider, self.decoder.skipped_lines,
            )

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
