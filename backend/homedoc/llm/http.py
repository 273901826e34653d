"""Shared httpx plumbing for the adapters that talk to vendors over raw HTTP.

Every failure is translated into the chat error taxonomy here so the adapters
only deal with successful payloads.
"""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from homedoc.errors import ProviderError, TransportError

DEFAULT_TIMEOUT = 60.0


@asynccontextmanager
async def open_client(
    http_client: httpx.AsyncClient | None, timeout: float
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one closed on exit."""
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient(timeout=timeout) as client:
        yield client


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


async def request_json(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    *,
    payload: dict | None = None,
    headers: dict | None = None,
    params: dict | None = None,
) -> dict:
    try:
        response = await client.request(
            method, url, json=payload, headers=headers, params=params
        )
    except httpx.TimeoutException:
        raise TransportError(provider, "request timed out")
    except httpx.HTTPError as e:
        raise TransportError(provider, f"request failed ({e.__class__.__name__})")

    if not _is_success(response.status_code):
        raise ProviderError(
            provider, "API error", status_code=response.status_code, body=response.text
        )

    try:
        return response.json()
    except ValueError:
        raise ProviderError(
            provider,
            "response body is not valid JSON",
            status_code=response.status_code,
            body=response.text,
        )


async def stream_lines(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    *,
    payload: dict,
    headers: dict | None = None,
    params: dict | None = None,
) -> AsyncIterator[str]:
    """POST payload and yield the non-empty response lines as they arrive."""
    try:
        async with client.stream(
            "POST", url, json=payload, headers=headers, params=params
        ) as response:
            if not _is_success(response.status_code):
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise ProviderError(
                    provider, "API error", status_code=response.status_code, body=body
                )
            async for line in response.aiter_lines():
                line = line.strip()
                if line:
                    yield line
    except httpx.TimeoutException:
        raise TransportError(provider, "stream timed out")
    except httpx.HTTPError as e:
        raise TransportError(provider, f"stream failed ({e.__class__.__name__})")


async def iter_sse_json(lines: AsyncIterator[str], provider: str) -> AsyncIterator[dict]:
    """Decode the JSON payload of each ``data:`` line of a server-sent event stream."""
    async for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            raise ProviderError(provider, "malformed stream event", body=data)
