"""Tests for ChunkStream over mocked httpx responses."""

from __future__ import annotations

import httpx
import pytest

from llm_relay.errors import UpstreamError
from llm_relay.llm.decoders import NDJSONDecoder, SSEDecoder
from llm_relay.llm.streaming import ChunkStream
from llm_relay.types import StreamChunk


async def _pieces(*parts: bytes, error: Exception | None = None):
    for part in parts:
        yield part
    if error is not None:
        raise error


def _stream(handler, decoder=None) -> tuple[ChunkStream, httpx.AsyncClient]:
    client = httpx.AsyncClient(
        base_url="http://test", transport=httpx.MockTransport(handler),
    )
    request = client.build_request("POST", "/v1/chat/completions", json={"stream": True})
    return ChunkStream(client, request, decoder or SSEDecoder(), provider="openai"), client


class TestChunkStream:
    async def test_yields_chunks_in_order(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_pieces(
                b'data: {"choices":[{"delta":{"content":"He"}}]}\n',
                b'data: {"choices":[{"delta":{"con',
                b'tent":"llo"}}]}\ndata: [DONE]\n',
            ))

        stream, client = _stream(handler)
        chunks = [chunk async for chunk in stream]
        assert chunks == [StreamChunk("He"), StreamChunk("llo"), StreamChunk(done=True)]
        assert stream.closed
        await client.aclose()

    async def test_request_is_lazy(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=b"data: [DONE]\n")

        stream, client = _stream(handler)
        assert calls == []
        await stream.aclose()
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert calls == []
        await client.aclose()

    async def test_error_status_raises_on_first_pull(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": {"message": "model loading"}})

        stream, client = _stream(handler)
        with pytest.raises(UpstreamError) as exc_info:
            await stream.__anext__()
        assert exc_info.value.status == 503
        assert "model loading" in str(exc_info.value)
        assert exc_info.value.provider == "openai"
        assert stream.closed
        await client.aclose()

    async def test_transport_failure_mid_stream_replaces_terminal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=_pieces(
                b'{"response":"partial"}\n',
                error=httpx.ReadError("connection reset"),
            ))

        stream, client = _stream(handler, NDJSONDecoder())
        seen = []
        with pytest.raises(UpstreamError) as exc_info:
            async for chunk in stream:
                seen.append(chunk)
        assert seen == [StreamChunk("partial")]
        assert exc_info.value.status == 0
        assert stream.closed
        await client.aclose()

    async def test_body_without_terminal_marker(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b'{"response":"x"}\n')

        stream, client = _stream(handler, NDJSONDecoder())
        async with stream:
            chunks = [chunk async for chunk in stream]
        assert chunks == [StreamChunk("x"), StreamChunk(done=True)]
        await client.aclose()

    async def test_connect_error_is_upstream_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        stream, client = _stream(handler)
        with pytest.raises(UpstreamError, match="Cannot connect"):
            await stream.__anext__()
        await client.aclose()

    async def test_aclose_is_idempotent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"data: [DONE]\n")

        stream, client = _stream(handler)
        await stream.aclose()
        await stream.aclose()
        assert stream.closed
        await client.aclose()
