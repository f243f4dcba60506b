"""httpx helpers shared by the provider clients."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

from llm_relay.errors import ParseError, UpstreamError

# Same shape the settings UI accepts: scheme, a host, no whitespace.
ENDPOINT_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
API_KEY_PATTERN = re.compile(r"^\S.{4,}$", re.DOTALL)

DEFAULT_TIMEOUT = 120.0


def make_timeout(timeout: float | None) -> httpx.Timeout:
    """Per-request timeout; local models can be slow on first load."""
    total = timeout if timeout is not None else DEFAULT_TIMEOUT
    return httpx.Timeout(total, connect=30, read=max(total, 300))


def error_detail(body: str) -> str:
    """Pull a human-readable message out of an error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return body.strip()[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return body.strip()[:500]


def upstream_error(status: int, body: str, provider: str) -> UpstreamError:
    return UpstreamError(
        f"API request failed with status {status}: {error_detail(body)}",
        status=status,
        body=body,
        provider=provider,
    )


def transport_error(exc: httpx.HTTPError, provider: str, url: str) -> UpstreamError:
    if isinstance(exc, httpx.ConnectError):
        message = f"Cannot connect to {url}. Is the server running?"
    elif isinstance(exc, httpx.TimeoutException):
        message = f"Request to {url} timed out: {exc}"
    else:
        message = f"Request to {url} failed: {exc}"
    return UpstreamError(message, status=0, provider=provider)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    *,
    headers: dict[str, str],
    provider: str,
) -> dict[str, Any]:
    """POST *body* to *url* and return the decoded JSON object.

    Raises ``UpstreamError`` on transport failure or non-2xx status and
    ``ParseError`` when the body is not a JSON object.
    """
    try:
        resp = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as exc:
        raise transport_error(exc, provider, url) from exc
    return decode_json(resp, provider=provider)


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    provider: str,
) -> dict[str, Any]:
    try:
        resp = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:
        raise transport_error(exc, provider, url) from exc
    return decode_json(resp, provider=provider)


def decode_json(resp: httpx.Response, *, provider: str) -> dict[str, Any]:
    if not resp.is_success:
        raise upstream_error(resp.status_code, resp.text, provider)
    try:
        data = resp.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise ParseError(
            f"Invalid JSON response: {resp.text[:200]}",
            body=resp.text,
            provider=provider,
        ) from exc
    if not isinstance(data, dict):
        raise ParseError("Expected a JSON object", body=resp.text, provider=provider)
    return data


def drop_none(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove keys whose value is ``None`` so backends apply their defaults."""
    return {k: v for k, v in payload.items() if v is not None}
