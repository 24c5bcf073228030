"""Progress hub: one SSE broadcast point per machine.

The first supervisor to bind the loopback port becomes the hub and
serves viewers over Server-Sent Events. Any later instance that finds
the port taken becomes a forwarder and relays its events to the hub's
ingest endpoint, so every running instance shows up on the one page.

Routes (hub role only):
    GET  /          viewer page
    GET  /events    SSE stream, one ``event: progress`` per ProgressEvent
    POST /ingest    accept one forwarded ProgressEvent (JSON body)
    GET  /health    liveness + role

``emit()`` never raises into the caller: a dead viewer is pruned and a
failed forward is retried after a short delay.
"""
from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import time
import uuid
from collections import deque
from enum import Enum

import aiohttp
from aiohttp import web

from codexdev.engine.models import ProgressEvent, ProgressEventType

from .page import render_progress_page

logger = logging.getLogger(__name__)

DEFAULT_PORT = 23120
DEFAULT_HOST = "127.0.0.1"
MAX_INGEST_BYTES = 1_000_000
HUB_NAME = "codexdev-progress"
# Observers treat an operation without a terminal event as stalled
# after this much silence.
LIVENESS_WINDOW_SECONDS = 60
KEEPALIVE_SECONDS = 15.0
FORWARD_QUEUE_CAP = 2000
FORWARD_RETRY_SECONDS = 0.5
FORWARD_FLUSH_SECONDS = 2.0
VIEWER_QUEUE_SIZE = 5000

# Windows reports WSAEADDRINUSE instead of EADDRINUSE.
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}


class HubRole(str, Enum):
    HUB = "hub"
    FORWARDER = "forwarder"
    DISABLED = "disabled"


class _Viewer:
    """One connected SSE client."""

    def __init__(self, req_id: str) -> None:
        self.req_id = req_id
        self.queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=VIEWER_QUEUE_SIZE)
        self.alive = True

    def offer(self, event: ProgressEvent) -> bool:
        if not self.alive:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def close(self) -> None:
        self.alive = False
        while True:
            try:
                self.queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self.queue.get_nowait()


class ProgressHub:
    """Hub-or-forwarder endpoint for live progress events.

    Start with ``await hub.start()``; the resulting ``role`` decides
    where ``emit()`` sends events. ``port=0`` binds an ephemeral port
    (tests), and ``hub.port`` reports the bound one.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        host: str = DEFAULT_HOST,
        *,
        forward_queue_cap: int = FORWARD_QUEUE_CAP,
        forward_retry_seconds: float = FORWARD_RETRY_SECONDS,
        keepalive_seconds: float = KEEPALIVE_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.role = HubRole.DISABLED
        self._forward_retry_seconds = forward_retry_seconds
        self._keepalive_seconds = keepalive_seconds

        self._app = self._build_app()
        self._runner: web.AppRunner | None = None
        self._viewers: list[_Viewer] = []

        self._pending: deque[ProgressEvent] = deque(maxlen=forward_queue_cap)
        self._drain_task: asyncio.Task | None = None
        self._client: aiohttp.ClientSession | None = None
        self._forward_outage = False

    # ── app ──

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def _build_app(self) -> web.Application:
        app = web.Application(
            client_max_size=MAX_INGEST_BYTES,
            middlewares=[self._request_logging_middleware],
        )
        r = app.router
        r.add_get("/", self._handle_page)
        r.add_get("/index.html", self._handle_page)
        r.add_get("/events", self._handle_events)
        r.add_post("/ingest", self._handle_ingest)
        r.add_get("/health", self._handle_health)
        return app

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request["req_id"] = req_id
        start = time.monotonic()
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            logger.debug(
                "HTTP %s %s req=%s status=%s", request.method, request.path, req_id, exc.status,
            )
            raise
        except Exception:
            logger.exception("HTTP %s %s req=%s failed", request.method, request.path, req_id)
            raise
        logger.debug(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path, req_id,
            getattr(response, "status", "?"), (time.monotonic() - start) * 1000,
        )
        return response

    # ── lifecycle ──

    async def start(self) -> HubRole:
        """Bind the port, or fall back to forwarding if it is taken."""
        if self.role is not HubRole.DISABLED:
            return self.role

        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            # The app cannot be set up twice; rebuild it for a later start().
            self._app = self._build_app()
            if exc.errno in _ADDR_IN_USE:
                self.role = HubRole.FORWARDER
                logger.info(
                    "Progress port %s in use; forwarding events to the existing hub",
                    self.port,
                )
            else:
                logger.warning("Progress hub disabled: cannot bind %s:%s: %s", self.host, self.port, exc)
            return self.role

        self._runner = runner
        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self.port = actual_port
        self.role = HubRole.HUB
        logger.info("Progress hub listening on http://%s:%d", self.host, self.port)
        return self.role

    async def stop(self, *, flush_timeout: float = FORWARD_FLUSH_SECONDS) -> None:
        """Release the port and disconnect viewers, or flush the forward queue."""
        role, self.role = self.role, HubRole.DISABLED

        if role is HubRole.HUB:
            self.disconnect_viewers()
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None
            self._app = self._build_app()
            logger.info("Progress hub stopped")

        if self._drain_task is not None:
            done, _ = await asyncio.wait({self._drain_task}, timeout=flush_timeout)
            if not done:
                self._drain_task.cancel()
                try:
                    await self._drain_task
                except asyncio.CancelledError:
                    pass
            self._drain_task = None
        if self._pending:
            logger.info("Discarding %d undelivered progress event(s)", len(self._pending))
            self._pending.clear()
        if self._client is not None:
            await self._client.close()
            self._client = None

    def disconnect_viewers(self) -> None:
        """End every open SSE stream."""
        for viewer in self._viewers:
            viewer.close()
        self._viewers.clear()

    @staticmethod
    def _resolve_port(site: web.TCPSite, runner: web.AppRunner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── publishing ──

    def emit(self, event: ProgressEvent) -> None:
        """Publish one event. A no-op unless started."""
        if self.role is HubRole.HUB:
            self._broadcast(event)
        elif self.role is HubRole.FORWARDER:
            self._enqueue_forward(event)

    def start_operation(self, operation_id: str, kind: str, description: str) -> None:
        self.emit(ProgressEvent(
            operation_id=operation_id,
            type=ProgressEventType.START,
            content=f"[{kind}] {description}",
        ))

    def end_operation(self, operation_id: str, success: bool) -> None:
        self.emit(ProgressEvent(
            operation_id=operation_id,
            type=ProgressEventType.END,
            content="completed" if success else "failed",
        ))

    def _broadcast(self, event: ProgressEvent) -> None:
        dead: list[_Viewer] = []
        for viewer in self._viewers:
            if not viewer.offer(event):
                dead.append(viewer)
        for viewer in dead:
            viewer.close()
            self._viewers.remove(viewer)
            logger.info("Pruned unresponsive viewer req=%s", viewer.req_id)

    # ── forwarder ──

    def _enqueue_forward(self, event: ProgressEvent) -> None:
        if len(self._pending) == self._pending.maxlen:
            logger.debug("Forward queue full; dropping oldest event")
        self._pending.append(event)
        if self._drain_task is None or self._drain_task.done():
            try:
                self._drain_task = asyncio.get_running_loop().create_task(self._drain_forward_queue())
            except RuntimeError:
                # No loop yet; the next emit from async code starts the drain.
                logger.debug("emit() outside an event loop; event left queued")

    async def _drain_forward_queue(self) -> None:
        """Deliver queued events one at a time, strictly in order."""
        while self._pending:
            event = self._pending[0]
            if await self._post_ingest(event):
                if self._forward_outage:
                    logger.info("Progress hub reachable again on port %s", self.port)
                    self._forward_outage = False
                # The cap may have evicted this event while it was in flight.
                if self._pending and self._pending[0] is event:
                    self._pending.popleft()
            else:
                if not self._forward_outage:
                    logger.warning(
                        "Progress hub on port %s unreachable; %d event(s) queued, retrying",
                        self.port, len(self._pending),
                    )
                    self._forward_outage = True
                await asyncio.sleep(self._forward_retry_seconds)

    async def _post_ingest(self, event: ProgressEvent) -> bool:
        if self._client is None or self._client.closed:
            self._client = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=5),
            )
        try:
            async with self._client.post(
                f"http://{self.host}:{self.port}/ingest",
                json=event.to_dict(),
            ) as resp:
                await resp.read()
                if resp.status in (200, 204):
                    return True
                if resp.status in (400, 413):
                    # The hub will reject this payload on every attempt.
                    logger.warning("Hub rejected forwarded event (HTTP %s); dropping it", resp.status)
                    return True
                logger.debug("Forward to hub failed: HTTP %s", resp.status)
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            logger.debug("Forward to hub failed: %s", exc)
            return False

    # ── handlers ──

    async def _handle_page(self, request: web.Request) -> web.Response:
        return web.Response(text=render_progress_page(LIVENESS_WINDOW_SECONDS), content_type="text/html")

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "name": HUB_NAME,
                "role": self.role.value,
                "port": self.port,
                "pid": os.getpid(),
                "viewers": len(self._viewers),
                "livenessWindowSeconds": LIVENESS_WINDOW_SECONDS,
            },
            headers={"Cache-Control": "no-store"},
        )

    async def _handle_ingest(self, request: web.Request) -> web.Response:
        if request.content_length is not None and request.content_length > MAX_INGEST_BYTES:
            raise web.HTTPRequestEntityTooLarge(
                max_size=MAX_INGEST_BYTES, actual_size=request.content_length,
            )
        body = await request.read()
        try:
            payload = json.loads(body)
        except (ValueError, RecursionError):
            return web.Response(status=400, text="Invalid JSON")
        event = ProgressEvent.from_dict(payload)
        if event is None:
            return web.Response(status=400, text="Invalid ProgressEvent")
        self._broadcast(event)
        return web.Response(status=204)

    async def _handle_events(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        viewer = _Viewer(request.get("req_id", "unknown"))
        self._viewers.append(viewer)
        logger.info("Viewer connected req=%s viewers=%d", viewer.req_id, len(self._viewers))
        try:
            await response.write(b":ok\n\n")
            while True:
                try:
                    event = await asyncio.wait_for(viewer.queue.get(), timeout=self._keepalive_seconds)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if event is None:
                    break
                data = json.dumps(event.to_dict())
                await response.write(f"event: progress\ndata: {data}\n\n".encode())
        except ConnectionResetError:
            logger.debug("Viewer req=%s connection reset", viewer.req_id)
        finally:
            viewer.alive = False
            if viewer in self._viewers:
                self._viewers.remove(viewer)
            logger.info("Viewer disconnected req=%s viewers=%d", viewer.req_id, len(self._viewers))
        return response
