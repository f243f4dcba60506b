"""Incremental wire-format decoders for streamed completions.

Each decoder is a small state machine fed raw byte chunks that may be split
at arbitrary boundaries (mid-line, mid multi-byte character).  ``feed()``
returns the ``StreamChunk`` values completed by that input, ``finish()``
flushes the trailing partial line at end-of-stream and guarantees the
terminal chunk.

Three framings are supported:

  SSEDecoder             - ``data: {...}`` lines, OpenAI-compatible backends
  AnthropicEventDecoder  - ``data:`` lines tagged with a ``type`` field
  NDJSONDecoder          - one JSON record per line (Ollama)
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any

from llm_relay.errors import UpstreamError
from llm_relay.types import StreamChunk, Usage

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# Line buffering
# ---------------------------------------------------------------------------

class LineBuffer:
    """Turns byte chunks into complete text lines.

    Incomplete UTF-8 sequences are held by the incremental decoder, so a
    multi-byte character is only ever emitted whole.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> list[str]:
        self._pending += self._decoder.decode(data)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str:
        """Return whatever is left after end-of-stream and reset."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        return rest.rstrip("\r")

    @property
    def remainder(self) -> str:
        return self._pending


# ---------------------------------------------------------------------------
# Decoder base
# ---------------------------------------------------------------------------

class StreamDecoder:
    """Shared feed/finish loop; subclasses interpret single lines."""

    name = "stream"

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self.finished = False
        self.skipped_lines = 0
        self.model = ""
        self.usage = Usage()
        self._error: UpstreamError | None = None

    def feed(self, data: bytes) -> list[StreamChunk]:
        self._raise_deferred()
        if self.finished:
            return []
        out: list[StreamChunk] = []
        try:
            for line in self._lines.feed(data):
                out.extend(self._handle_line(line))
                if self.finished:
                    break
        except UpstreamError as exc:
            self._defer(exc, out)
        return out

    def finish(self) -> list[StreamChunk]:
        """Flush the trailing partial line and close the stream."""
        self._raise_deferred()
        if self.finished:
            return []
        out: list[StreamChunk] = []
        rest = self._lines.flush()
        try:
            if rest.strip():
                out.extend(self._handle_line(rest))
        except UpstreamError as exc:
            self._defer(exc, out)
            return out
        if not self.finished:
            out.append(self._terminal())
        return out

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _defer(self, exc: UpstreamError, out: list[StreamChunk]) -> None:
        # Deltas decoded ahead of an error record are delivered first.
        if not out:
            raise exc
        self._error = exc
        self.finished = True

    def _raise_deferred(self) -> None:
        if self._error is not None:
            exc, self._error = self._error, None
            raise exc

    def _handle_line(self, line: str) -> list[StreamChunk]:
        raise NotImplementedError

    def _terminal(self) -> StreamChunk:
        self.finished = True
        return StreamChunk(content="", done=True)

    def _load(self, raw: str, line: str) -> dict[str, Any] | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            self.skipped_lines += 1
            _logger.warning(
                "Skipping unparsable %s stream line: %.200s", self.name, line,
            )
            return None
        return data

    def _raise_error_payload(self, error: Any) -> None:
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
        else:
            message = str(error)
        raise UpstreamError(
            f"{self.name} stream reported an error: {message}",
            body=json.dumps(error) if not isinstance(error, str) else error,
        )


# ---------------------------------------------------------------------------
# Line-delimited SSE (OpenAI-compatible)
# ---------------------------------------------------------------------------

class SSEDecoder(StreamDecoder):
    """``data: {"choices":[{"delta":{"content":...}}]}`` framing.

    Terminal on ``data: [DONE]`` or on a non-null ``finish_reason``.
    """

    name = "sse"

    def _handle_line(self, line: str) -> list[StreamChunk]:
        stripped = line.strip()
        if not stripped.startswith(_DATA_PREFIX):
            return []
        payload = stripped[len(_DATA_PREFIX):].strip()
        if payload == _DONE_SENTINEL:
            return [self._terminal()]

        data = self._load(payload, line)
        if data is None:
            return []
        if data.get("error"):
            self._raise_error_payload(data["error"])

        if data.get("model"):
            self.model = data["model"]
        if isinstance(data.get("usage"), dict):
            u = data["usage"]
            self.usage = Usage.from_counts(
                u.get("prompt_tokens"), u.get("completion_tokens"), u.get("total_tokens"),
            )

        choices = data.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        text = delta.get("content") if isinstance(delta, dict) else None

        out: list[StreamChunk] = []
        if isinstance(text, str) and text:
            out.append(StreamChunk(content=text))
        if choice.get("finish_reason"):
            out.append(self._terminal())
        return out


# ---------------------------------------------------------------------------
# Event-tagged SSE (Anthropic)
# ---------------------------------------------------------------------------

class AnthropicEventDecoder(StreamDecoder):
    """``data: {"type": "content_block_delta", ...}`` framing.

    ``message_stop``, ``data: [DONE]`` and ``event: done`` are all terminal.
    """

    name = "anthropic"

    def _handle_line(self, line: str) -> list[StreamChunk]:
        stripped = line.strip()
        if stripped == "event: done":
            return [self._terminal()]
        if not stripped.startswith(_DATA_PREFIX):
            return []
        payload = stripped[len(_DATA_PREFIX):].strip()
        if payload == _DONE_SENTINEL:
            return [self._terminal()]

        data = self._load(payload, line)
        if data is None:
            return []

        event_type = data.get("type")
        if event_type == "content_block_delta":
            text = (data.get("delta") or {}).get("text")
            if isinstance(text, str) and text:
                return [StreamChunk(content=text)]
        elif event_type == "message_stop":
            return [self._terminal()]
        elif event_type == "message_start":
            message = data.get("message") or {}
            self.model = message.get("model", self.model)
            usage = message.get("usage") or {}
            self.usage = Usage.from_counts(
                usage.get("input_tokens"), self.usage.completion_tokens,
            )
        elif event_type == "message_delta":
            usage = data.get("usage") or {}
            self.usage = Usage.from_counts(
                self.usage.prompt_tokens, usage.get("output_tokens"),
            )
        elif event_type == "error":
            self._raise_error_payload(data.get("error", data))
        return []


# ---------------------------------------------------------------------------
# Record-per-line JSON (Ollama)
# ---------------------------------------------------------------------------

class NDJSONDecoder(StreamDecoder):
    """One JSON object per line with a fragment and a ``done`` flag.

    Reads ``response`` (``/api/generate``) or ``message.content``
    (``/api/chat``).  The ``done`` record's fragment is emitted before the
    terminal chunk.
    """

    name = "ndjson"

    def _handle_line(self, line: str) -> list[StreamChunk]:
        stripped = line.strip()
        if not stripped:
            return []
        data = self._load(stripped, line)
        if data is None:
            return []
        if data.get("error"):
            self._raise_error_payload(data["error"])

        if data.get("model"):
            self.model = data["model"]

        fragment = data.get("response")
        if fragment is None:
            fragment = (data.get("message") or {}).get("content")

        out: list[StreamChunk] = []
        if isinstance(fragment, str) and fragment:
            out.append(StreamChunk(content=fragment))
        if data.get("done"):
            self.usage = Usage.from_counts(
                data.get("prompt_eval_count"), data.get("eval_count"),
            )
            out.append(self._terminal())
        return out


__all__ = [
    "AnthropicEventDecoder",
    "LineBuffer",
    "NDJSONDecoder",
    "SSEDecoder",
    "StreamDecoder",
]
