from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from .constants import LOGGER
from .errors import AuthenticationFailed, NetworkError, ServerError

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def _retry_after_seconds(header: str | None) -> int | None:
    if header is None:
        return None
    try:
        return max(0, int(header.strip()))
    except ValueError:
        return None


def _is_retryable(request: httpx.Request) -> bool:
    # POST /initiate and /complete must not run twice; uploads stream once.
    return request.method in IDEMPOTENT_METHODS and isinstance(request.stream, httpx.ByteStream)


class RetryTransport(httpx.AsyncBaseTransport):
    """Retries 429 and 5xx responses for idempotent requests with in-memory bodies.

    POSTs and streamed bodies (uploads) are sent exactly once; their failures
    belong to the caller.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 2,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self._max_retries == 0 or not _is_retryable(request):
            return await self._transport.handle_async_request(request)

        body = await request.aread()
        retries = 0

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            response = await self._transport.handle_async_request(next_request)

            if response.status_code == 429 and retries < min(self._max_retries, 1):
                wait_seconds = _retry_after_seconds(response.headers.get("retry-after"))
                if wait_seconds is None:
                    wait_seconds = 1
                self._logger.warning(
                    "Retrying 429 after %ss (%s %s)",
                    wait_seconds,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(wait_seconds)
                retries += 1
                continue

            if 500 <= response.status_code < 600 and retries < self._max_retries:
                backoff_seconds = 2**retries
                self._logger.warning(
                    "Retrying %s after %ss (%s %s)",
                    response.status_code,
                    backoff_seconds,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(backoff_seconds)
                retries += 1
                continue

            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


class ProgressStream(httpx.AsyncByteStream):
    """In-memory request body that reports percent sent as the transport pulls it."""

    def __init__(self, body: bytes, on_progress=None, *, block_size: int = 64 * 1024) -> None:
        self._body = body
        self._on_progress = on_progress
        self._block_size = block_size

    def __len__(self) -> int:
        return len(self._body)

    async def __aiter__(self):
        total = len(self._body)
        sent = 0
        last_reported = -1
        for offset in range(0, total, self._block_size):
            block = self._body[offset : offset + self._block_size]
            yield block
            sent += len(block)
            percent = round(sent * 100 / total)
            if self._on_progress is not None and percent != last_reported:
                last_reported = percent
                self._on_progress(percent)


def encode_multipart(data: dict[str, str], files: dict) -> tuple[bytes, str]:
    request = httpx.Request("POST", "http://multipart.invalid/", data=data, files=files)
    return request.read(), request.headers["content-type"]


def friendly_error_message(status_code: int) -> str:
    if status_code == 401:
        return "Authentication failed. Please log in again."
    if status_code == 403:
        return "You don't have permission to perform this action."
    if status_code == 404:
        return "The requested resource was not found."
    if status_code == 413:
        return "The uploaded file is too large for the server."
    if status_code == 429:
        return "Too many requests. Please wait and try again."
    if status_code >= 500:
        return "The server is experiencing issues. Please try again later."
    return f"Request failed with status {status_code}."


def raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return

    try:
        body = response.json()
    except ValueError:
        body = response.text

    message = None
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                message = value
                break

    raise ServerError(
        message or friendly_error_message(response.status_code),
        status_code=response.status_code,
        body=body,
    )


async def log_request(request: httpx.Request) -> None:
    LOGGER.info("API request %s %s", request.method, request.url)


async def log_response(response: httpx.Response) -> None:
    LOGGER.info(
        "API response %s %s -> %s",
        response.request.method,
        response.request.url,
        response.status_code,
    )
    if response.status_code >= 400:
        body = await response.aread()
        text = body.decode("utf-8", errors="replace")
        if len(text) > 1000:
            text = text[:1000] + "...<truncated>"
        LOGGER.warning("API error body: %s", text)


def build_http_client(
    base_url: str,
    *,
    timeout: float = 30.0,
    max_retries: int = 2,
    debug: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    retry_transport = RetryTransport(
        transport or httpx.AsyncHTTPTransport(),
        max_retries=max_retries,
        logger=LOGGER,
    )
    event_hooks = {"request": [log_request], "response": [log_response]} if debug else {}
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout,
        transport=retry_transport,
        event_hooks=event_hooks,
    )


class TokenProvider(Protocol):
    """What the request layer needs from the session layer, and nothing more."""

    @property
    def access_token(self) -> str | None: ...

    async def refresh(self): ...

    def invalidate(self) -> None: ...


class AuthenticatedRequestClient:
    """Sends API calls with the current bearer token.

    A 401 triggers at most one refresh and one retry per call. If that retry is
    also rejected, or the refresh fails, the session is invalidated and the
    call fails with ``AuthenticationFailed``.
    """

    def __init__(self, session: TokenProvider, client: httpx.AsyncClient) -> None:
        self._session = session
        self._client = client

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        token = self._session.access_token
        if not token:
            raise AuthenticationFailed("No access token available.")

        response = await self._send(method, url, token, kwargs)
        if response.status_code != 401:
            return response
        await response.aclose()

        # Another caller may already have refreshed while this request was in flight.
        current = self._session.access_token
        if current and current != token:
            retry_token = current
        else:
            try:
                await self._session.refresh()
            except Exception as error:
                self._session.invalidate()
                raise AuthenticationFailed(f"Authentication failed: {error}") from error
            retry_token = self._session.access_token
            if not retry_token:
                self._session.invalidate()
                raise AuthenticationFailed()

        response = await self._send(method, url, retry_token, kwargs)
        if response.status_code == 401:
            await response.aclose()
            self._session.invalidate()
            raise AuthenticationFailed("Authentication failed after token refresh.")
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def _send(self, method: str, url: str, token: str, kwargs: dict) -> httpx.Response:
        headers = dict(kwargs.get("headers") or {})
        headers["Authorization"] = f"Bearer {token}"
        options = {**kwargs, "headers": headers}
        try:
            return await self._client.request(method, url, **options)
        except httpx.TransportError as error:
            raise NetworkError(f"{method} {url} failed: {error}") from error


def json_body(response: httpx.Response):
    raise_for_status(response)
    try:
        return response.json()
    except ValueError as error:
        raise ServerError(
            "Server returned an invalid JSON response.",
            status_code=response.status_code,
            body=response.text,
        ) from error
