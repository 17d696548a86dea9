from __future__ import annotations

import httpx
import pytest

from personacord.services import http as http_mod


@pytest.mark.asyncio
async def test_wait_before_retry_caps_retry_after_to_default_max_backoff(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    observed_delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        observed_delays.append(delay)

    monkeypatch.setattr(http_mod.asyncio, "sleep", _fake_sleep)

    response = httpx.Response(
        http_mod.HTTP_TOO_MANY_REQUESTS,
        headers={"retry-after": "120"},
    )
    await http_mod.wait_before_http_retry(
        0,
        response=response,
    )

    assert observed_delays == [10.0]


@pytest.mark.asyncio
async def test_wait_before_retry_ignores_non_finite_retry_after(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    observed_delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        observed_delays.append(delay)

    class _FakeRandom:
        @staticmethod
        def random() -> float:
            return 0.0

    monkeypatch.setattr(http_mod.asyncio, "sleep", _fake_sleep)
    monkeypatch.setattr(http_mod, "_JITTER_RANDOM", _FakeRandom())

    response = httpx.Response(
        http_mod.HTTP_TOO_MANY_REQUESTS,
        headers={"retry-after": "inf"},
    )
    await http_mod.wait_before_http_retry(
        0,
        response=response,
        max_backoff_seconds=30.0,
    )

    assert observed_delays == [2.0]


@pytest.mark.asyncio
async def test_request_with_retries_retries_transient_statuses(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _fake_sleep(_delay: float) -> None:
        return None

    monkeypatch.setattr(http_mod.asyncio, "sleep", _fake_sleep)
    statuses = iter([503, 502, 200])

    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), content=b"voice-bytes")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        response = await http_mod.request_with_retries(
            lambda: client.get("https://cdn.example.com/voice.ogg"),
            options=http_mod.HttpRetryOptions(retries=2),
        )

    assert response.status_code == 200
    assert response.content == b"voice-bytes"


@pytest.mark.asyncio
async def test_request_with_retries_returns_permanent_status_without_retrying(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    observed_delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        observed_delays.append(delay)

    monkeypatch.setattr(http_mod.asyncio, "sleep", _fake_sleep)
    calls = 0

    def _handler(_request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        response = await http_mod.request_with_retries(
            lambda: client.get("https://cdn.example.com/gone.png"),
        )

    assert response.status_code == 404
    assert calls == 1
    assert observed_delays == []
