"""Bounded asynchronous client for the math and diagram rendering services."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote

import httpx

from markview.config import Settings
from markview.exceptions import MalformedResponseError, RenderServiceError
from markview.external.artifact import Artifact, ArtifactKind, Fragment, looks_like_svg
from markview.external.cache import RenderCache

logger = logging.getLogger(__name__)

DEFAULT_MATH_URL = "https://latex.codecogs.com/svg.latex?{expression}"
DEFAULT_DIAGRAM_URL = "https://kroki.io/mermaid/svg"


@dataclass(slots=True, frozen=True)
class ArtifactUpdate:
    generation: int
    artifact: Artifact


class CompletionChannel:
    """Per-document queue of generation-tagged artifact updates.

    Only updates for the channel's current generation are accepted; the
    document that owns the channel is its single reader. Closing the channel
    queues ``None`` so a waiting reader wakes up.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.closed = False
        self._queue: asyncio.Queue[ArtifactUpdate | None] = asyncio.Queue()

    def advance(self) -> int:
        self.generation += 1
        return self.generation

    def is_current(self, generation: int) -> bool:
        return not self.closed and generation == self.generation

    def deliver(self, update: ArtifactUpdate) -> bool:
        if not self.is_current(update.generation):
            logger.debug("Dropping update for generation %d (now %d)", update.generation, self.generation)
            return False
        self._queue.put_nowait(update)
        return True

    async def get(self) -> ArtifactUpdate | None:
        return await self._queue.get()

    def get_nowait(self) -> ArtifactUpdate | None:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)


@dataclass(slots=True)
class _Waiter:
    channel: CompletionChannel
    generation: int

    @property
    def live(self) -> bool:
        return self.channel.is_current(self.generation)


class ExternalRendererClient:
    """Resolve math and diagram fragments to artifacts.

    ``resolve`` never blocks: it answers from the cache or returns a Pending
    artifact and queues a request. ``max_in_flight`` worker tasks drain the
    queue in arrival order, so at most that many requests are outstanding
    across every document sharing this client.
    """

    def __init__(
        self,
        cache: RenderCache,
        *,
        max_in_flight: int = 4,
        timeout: float = 10.0,
        failure_ttl: float = 30.0,
        math_url: str = DEFAULT_MATH_URL,
        diagram_url: str = DEFAULT_DIAGRAM_URL,
        user_agent: str = "markview",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.cache = cache
        self.max_in_flight = max_in_flight
        self.timeout = timeout
        self.failure_ttl = failure_ttl
        self.math_url = math_url
        self.diagram_url = diagram_url
        self.user_agent = user_agent
        self._http = http_client
        self._owns_http = http_client is None
        self._clock = clock

        self._queue: asyncio.Queue[Fragment] = asyncio.Queue()
        self._waiters: dict[str, list[_Waiter]] = {}
        self._in_flight: dict[str, asyncio.Task[bytes]] = {}
        self._workers: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(cls, settings: Settings, cache: RenderCache, **kwargs) -> ExternalRendererClient:
        renderer = settings.renderer
        return cls(
            cache,
            max_in_flight=renderer.max_in_flight,
            timeout=renderer.timeout,
            failure_ttl=renderer.failure_ttl,
            math_url=renderer.math_url,
            diagram_url=renderer.diagram_url,
            user_agent=renderer.user_agent,
            **kwargs,
        )

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        if self._workers:
            return
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, headers={"User-Agent": self.user_agent})
        self._workers = [
            asyncio.create_task(self._worker(), name=f"markview-render-{idx}")
            for idx in range(self.max_in_flight)
        ]
        logger.debug("Started %d render workers", self.max_in_flight)

    async def aclose(self) -> None:
        for task in self._in_flight.values():
            task.cancel()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ExternalRendererClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def resolve(
        self,
        fragment: Fragment,
        *,
        channel: CompletionChannel,
        generation: int,
        force: bool = False,
    ) -> Artifact:
        """Return the current artifact for ``fragment``, queueing a request on a miss.

        ``force`` retries Failed entries whose expiry has not passed yet.
        """
        key = fragment.key
        cached = self.cache.get(key)
        if cached is not None:
            if cached.is_ready:
                return cached
            if cached.is_failed and not force and not cached.is_expired(self._clock()):
                return cached
            self.cache.discard(key)

        waiter = _Waiter(channel, generation)
        waiters = self._waiters.get(key)
        if waiters is not None:
            waiters.append(waiter)
        else:
            self._waiters[key] = [waiter]
            self._queue.put_nowait(fragment)
            logger.debug("Queued %s request %s", fragment.kind.value, key[:12])
        return Artifact.pending(key)

    def abandon(self, channel: CompletionChannel) -> int:
        """Cancel in-flight requests that no longer have a current requester."""
        cancelled = 0
        for key, task in list(self._in_flight.items()):
            waiters = self._waiters.get(key, [])
            if any(w.channel is channel for w in waiters) and not any(w.live for w in waiters):
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.debug("Abandoned %d in-flight requests", cancelled)
        return cancelled

    async def drain(self) -> None:
        """Wait until every queued request has been processed."""
        await self._queue.join()

    # -----------------------------------------------------------------------
    # Workers
    # -----------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            fragment = await self._queue.get()
            try:
                await self._process(fragment)
            finally:
                self._queue.task_done()

    async def _process(self, fragment: Fragment) -> None:
        key = fragment.key
        if not any(w.live for w in self._waiters.get(key, [])):
            self._waiters.pop(key, None)
            logger.debug("Skipping stale request %s", key[:12])
            return

        task = asyncio.create_task(self._fetch(fragment))
        self._in_flight[key] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._in_flight.pop(key, None)

        live = [w for w in self._waiters.pop(key, []) if w.live]
        if task.cancelled():
            if live:
                # A requester arrived between abandon() and this worker resuming.
                self._waiters[key] = live
                self._queue.put_nowait(fragment)
                logger.debug("Re-queued cancelled request %s", key[:12])
            else:
                logger.debug("Request %s cancelled", key[:12])
            return
        if not live:
            logger.debug("Dropping stale result %s", key[:12])
            return

        error = task.exception()
        if error is None:
            artifact = Artifact.ready(key, task.result())
            logger.debug("Rendered %s %s", fragment.kind.value, key[:12])
        else:
            if isinstance(error, RenderServiceError):
                logger.warning("%s render failed: %s", fragment.kind.value.capitalize(), error)
            else:
                logger.error("Unexpected %s render error", fragment.kind.value, exc_info=error)
            artifact = Artifact.failed(key, str(error), expires_at=self._clock() + self.failure_ttl)

        self.cache.put(artifact)
        for waiter in live:
            waiter.channel.deliver(ArtifactUpdate(waiter.generation, artifact))

    async def _fetch(self, fragment: Fragment) -> bytes:
        assert self._http is not None
        if fragment.kind is ArtifactKind.MATH:
            service = "Math service"
            request = self._http.get(self.math_url.format(expression=quote(fragment.text, safe="")))
        else:
            service = "Kroki"
            request = self._http.post(
                self.diagram_url,
                content=fragment.text.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )

        try:
            response = await request
        except httpx.TimeoutException as exc:
            raise RenderServiceError(f"{service} timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise RenderServiceError(f"{service} unreachable: {exc or type(exc).__name__}") from exc

        if not response.is_success:
            message = response.text.strip()[:200]
            raise RenderServiceError(
                f"{service} returned {response.status_code}: {message}",
                status_code=response.status_code,
            )
        if not looks_like_svg(response.content):
            raise MalformedResponseError(f"{service} returned a non-SVG body", status_code=response.status_code)
        return response.content
