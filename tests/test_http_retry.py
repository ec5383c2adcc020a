import httpx
import pytest

from storetrust.services.http_retry import UpstreamStatusError, backoff_delay, request_with_retry

URL = "https://upstream.test/resource"


class Recorder:
    def __init__(self):
        self.sleeps: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _scripted(responses):
    """MockTransport handler that replays `responses` in order (exceptions are raised)."""
    queue = list(responses)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler, calls


async def _send(handler, sleep, max_attempts=3):
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        return await request_with_retry(
            client,
            "GET",
            URL,
            max_attempts=max_attempts,
            backoff_base=0.5,
            backoff_max=8,
            sleep=sleep,
        )


def test_backoff_delay_is_capped():
    assert [backoff_delay(i, 0.5, 8) for i in range(6)] == [0.5, 1.0, 2.0, 4.0, 8, 8]


@pytest.mark.asyncio
async def test_retry_after_is_honored_on_429():
    sleep = Recorder()
    handler, calls = _scripted(
        [
            httpx.Response(429, headers={"Retry-After": "2"}),
            httpx.Response(200, json={"ok": True}),
        ]
    )
    response = await _send(handler, sleep)
    assert response.json() == {"ok": True}
    assert sleep.sleeps == [2.0]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    sleep = Recorder()
    handler, calls = _scripted([httpx.Response(400, text="bad key")])
    with pytest.raises(UpstreamStatusError) as exc:
        await _send(handler, sleep)
    assert exc.value.status_code == 400
    assert exc.value.body == "bad key"
    assert len(calls) == 1
    assert sleep.sleeps == []


@pytest.mark.asyncio
async def test_server_errors_exhaust_attempts():
    sleep = Recorder()
    handler, calls = _scripted([httpx.Response(503)] * 3)
    with pytest.raises(UpstreamStatusError) as exc:
        await _send(handler, sleep, max_attempts=3)
    assert exc.value.status_code == 503
    assert len(calls) == 3
    assert sleep.sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_transport_error_is_retried():
    sleep = Recorder()
    handler, calls = _scripted([httpx.ConnectError("refused"), httpx.Response(200, text="fine")])
    response = await _send(handler, sleep)
    assert response.text == "fine"
    assert sleep.sleeps == [0.5]


@pytest.mark.asyncio
async def test_transport_error_on_last_attempt_propagates():
    sleep = Recorder()
    handler, _ = _scripted([httpx.ReadTimeout("slow")])
    with pytest.raises(httpx.ReadTimeout):
        await _send(handler, sleep, max_attempts=1)
