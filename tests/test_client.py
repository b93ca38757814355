"""Tests for the external renderer client.

Covers:
- Math GET and diagram POST requests
- Cache hits and request deduplication across documents
- Failure TTL and forced retries
- Malformed and unreachable services become Failed artifacts
- The in-flight bound and FIFO queueing
- Stale queued jobs and stale results are dropped; abandon cancels
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from markview.external.artifact import Artifact, ArtifactKind, Fragment
from markview.external.cache import RenderCache
from markview.external.client import ArtifactUpdate, CompletionChannel, ExternalRendererClient

SVG = b'<svg xmlns="http://www.w3.org/2000/svg"><text>ok</text></svg>'
MATH_URL = "https://math.test/render?tex={expression}"


def math(text: str) -> Fragment:
    return Fragment(ArtifactKind.MATH, text)


async def until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


def drain_channel(channel: CompletionChannel) -> list:
    updates = []
    while not channel.empty():
        updates.append(channel.get_nowait())
    return updates


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_math_fragment_resolves_to_ready() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                artifact = client.resolve(math("x^2"), channel=channel, generation=generation)
                assert artifact.is_pending
                await client.drain()

        assert cache.get(artifact.key).is_ready

    assert len(requests) == 1
    assert requests[0].method == "GET"
    assert requests[0].url.params["tex"] == "x^2"

    (update,) = drain_channel(channel)
    assert update.generation == generation
    assert update.artifact.is_ready
    assert update.artifact.data == SVG


@pytest.mark.asyncio
async def test_diagram_fragment_is_posted_as_text() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, http_client=http) as client:
                fragment = Fragment(ArtifactKind.DIAGRAM, "graph TD; A-->B")
                client.resolve(fragment, channel=channel, generation=channel.advance())
                await client.drain()

    (request,) = requests
    assert request.method == "POST"
    assert request.url.host == "kroki.io"
    assert request.url.path == "/mermaid/svg"
    assert request.content == b"graph TD; A-->B"
    assert request.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_cached_artifact_is_returned_without_request() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                client.resolve(math("a"), channel=channel, generation=generation)
                await client.drain()
                again = client.resolve(math("a"), channel=channel, generation=generation)

    assert again.is_ready
    assert calls == 1


@pytest.mark.asyncio
async def test_identical_fragments_share_one_request() -> None:
    release = asyncio.Event()
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        await release.wait()
        return httpx.Response(200, content=SVG)

    first, second = CompletionChannel(), CompletionChannel()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                client.resolve(math("e"), channel=first, generation=first.advance())
                client.resolve(math("e"), channel=second, generation=second.advance())
                await until(lambda: client.in_flight == 1)
                release.set()
                await client.drain()

    assert calls == 1
    assert [u.artifact.is_ready for u in drain_channel(first)] == [True]
    assert [u.artifact.is_ready for u in drain_channel(second)] == [True]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failure_is_cached_until_expiry() -> None:
    now = [100.0]
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, text="boom")

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ExternalRendererClient(
                cache,
                math_url=MATH_URL,
                failure_ttl=30.0,
                http_client=http,
                clock=lambda: now[0],
            )
            async with client:
                client.resolve(math("x"), channel=channel, generation=generation)
                await client.drain()

                (update,) = drain_channel(channel)
                assert update.artifact.is_failed
                assert update.artifact.error == "Math service returned 500: boom"
                assert update.artifact.expires_at == 130.0

                cached = client.resolve(math("x"), channel=channel, generation=generation)
                assert cached.is_failed
                assert calls == 1

                now[0] = 131.0
                assert client.resolve(math("x"), channel=channel, generation=generation).is_pending
                await client.drain()
                assert calls == 2

                assert client.resolve(math("x"), channel=channel, generation=generation, force=True).is_pending
                await client.drain()
                assert calls == 3


@pytest.mark.asyncio
async def test_non_svg_body_is_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>nope</html>")

    channel = CompletionChannel()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                client.resolve(math("x"), channel=channel, generation=channel.advance())
                await client.drain()

    (update,) = drain_channel(channel)
    assert update.artifact.is_failed
    assert "non-SVG" in update.artifact.error


@pytest.mark.asyncio
async def test_unreachable_service_fails_artifact() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down")

    channel = CompletionChannel()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                client.resolve(math("x"), channel=channel, generation=channel.advance())
                await client.drain()

    (update,) = drain_channel(channel)
    assert update.artifact.is_failed
    assert update.artifact.error.startswith("Math service unreachable")


@pytest.mark.asyncio
async def test_timeout_fails_artifact() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow")

    channel = CompletionChannel()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, timeout=5, http_client=http) as client:
                client.resolve(math("x"), channel=channel, generation=channel.advance())
                await client.drain()

    (update,) = drain_channel(channel)
    assert update.artifact.error == "Math service timed out after 5s"


# ---------------------------------------------------------------------------
# Concurrency and staleness
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_in_flight_requests_are_bounded() -> None:
    release = asyncio.Event()
    active = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(
                cache, max_in_flight=2, math_url=MATH_URL, http_client=http
            ) as client:
                for idx in range(5):
                    client.resolve(math(f"x_{idx}"), channel=channel, generation=generation)
                await until(lambda: active == 2)
                assert client.in_flight == 2
                assert client.queued == 3
                release.set()
                await client.drain()

    assert peak == 2
    assert len(drain_channel(channel)) == 5


@pytest.mark.asyncio
async def test_abandon_cancels_and_skips_stale_jobs() -> None:
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["tex"])
        await asyncio.Event().wait()
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(
                cache, max_in_flight=1, math_url=MATH_URL, http_client=http
            ) as client:
                client.resolve(math("a"), channel=channel, generation=generation)
                client.resolve(math("b"), channel=channel, generation=generation)
                await until(lambda: seen == ["a"])

                channel.advance()
                assert client.abandon(channel) == 1
                await client.drain()

                assert client.in_flight == 0
                assert math("a").key not in cache

    assert seen == ["a"]
    assert channel.empty()


@pytest.mark.asyncio
async def test_stale_result_is_not_cached_or_delivered() -> None:
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        await release.wait()
        return httpx.Response(200, content=SVG)

    channel = CompletionChannel()
    generation = channel.advance()
    with RenderCache() as cache:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            async with ExternalRendererClient(cache, math_url=MATH_URL, http_client=http) as client:
                artifact = client.resolve(math("a"), channel=channel, generation=generation)
                await until(lambda: client.in_flight == 1)
                channel.advance()
                release.set()
                await client.drain()
                assert cache.get(artifact.key) is None

    assert channel.empty()


def test_channel_drops_updates_for_old_generations() -> None:
    channel = CompletionChannel()
    old = channel.advance()
    channel.advance()
    assert not channel.deliver(ArtifactUpdate(old, Artifact.ready("k", SVG)))
    assert channel.deliver(ArtifactUpdate(channel.generation, Artifact.ready("k", SVG)))
    channel.close()
    assert not channel.deliver(ArtifactUpdate(channel.generation, Artifact.ready("k", SVG)))
