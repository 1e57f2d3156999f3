import httpx
import pytest

from vidup.http import ProgressStream, RetryTransport, _retry_after_seconds


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[int] = []

    async def __call__(self, seconds: int) -> None:
        self.calls.append(seconds)


def _make_handler(statuses: list[int], headers_by_attempt: list[dict[str, str]] | None = None):
    attempt = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        index = attempt["count"]
        attempt["count"] += 1
        status = statuses[min(index, len(statuses) - 1)]
        headers = {}
        if headers_by_attempt is not None and index < len(headers_by_attempt):
            headers = headers_by_attempt[index]
        return httpx.Response(status, request=request, headers=headers, json={"status": status})

    return handler, attempt


@pytest.mark.asyncio
async def test_retry_on_429() -> None:
    handler, attempt = _make_handler(
        [429, 200],
        headers_by_attempt=[{"retry-after": "7"}, {}],
    )
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://api.test/api/upload/videos")

    assert response.status_code == 200
    assert attempt["count"] == 2
    assert sleep.calls == [7]


@pytest.mark.asyncio
async def test_retry_on_500() -> None:
    handler, attempt = _make_handler([500, 200])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://api.test/api/upload/videos")

    assert response.status_code == 200
    assert attempt["count"] == 2
    assert sleep.calls == [1]


@pytest.mark.asyncio
async def test_no_retry_on_4xx() -> None:
    handler, attempt = _make_handler([400, 200])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://api.test/api/upload/videos")

    assert response.status_code == 400
    assert attempt["count"] == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_max_retries_exceeded() -> None:
    handler, attempt = _make_handler([500, 500, 500, 500])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://api.test/api/upload/videos")

    assert response.status_code == 500
    assert attempt["count"] == 3
    assert sleep.calls == [1, 2]


@pytest.mark.asyncio
async def test_retries_disabled() -> None:
    handler, attempt = _make_handler(
        [429, 200],
        headers_by_attempt=[{"retry-after": "7"}, {}],
    )
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=0, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.get("http://api.test/api/upload/videos")

    assert response.status_code == 429
    assert attempt["count"] == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_idempotent_json_body_is_replayed() -> None:
    bodies: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.content)
        return httpx.Response(503 if len(bodies) == 1 else 200, request=request)

    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.request("PUT", "http://api.test/api/upload/video/v1", json={"title": "t"})

    assert response.status_code == 200
    assert len(bodies) == 2
    assert bodies[0] == bodies[1] != b""
    assert sleep.calls == [1]


@pytest.mark.asyncio
async def test_post_is_not_retried() -> None:
    handler, attempt = _make_handler([500, 200])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.post("http://api.test/api/upload/multipart/initiate", json={"title": "t"})

    assert response.status_code == 500
    assert attempt["count"] == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_delete_is_retried() -> None:
    handler, attempt = _make_handler([502, 200])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.delete("http://api.test/api/upload/multipart/abort/upload-1")

    assert response.status_code == 200
    assert attempt["count"] == 2
    assert sleep.calls == [1]


@pytest.mark.asyncio
async def test_streamed_body_is_sent_once() -> None:
    handler, attempt = _make_handler([500, 200])
    sleep = SleepRecorder()
    transport = RetryTransport(httpx.MockTransport(handler), max_retries=2, sleep=sleep)

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.request(
            "PUT",
            "http://api.test/api/upload/multipart/upload-chunk",
            content=ProgressStream(b"x" * 1024),
            headers={"Content-Length": "1024"},
        )

    assert response.status_code == 500
    assert attempt["count"] == 1
    assert sleep.calls == []


def test_retry_after_seconds() -> None:
    assert _retry_after_seconds(None) is None
    assert _retry_after_seconds("soon") is None
    assert _retry_after_seconds(" 10 ") == 10
    assert _retry_after_seconds("-3") == 0
