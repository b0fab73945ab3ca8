# src/cosign_core/connectors/websocket_connector.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status

from ..core.errors import CosignError
from ..core.ports import TokenResolver
from ..core.state import AppState
from ..tasks.task_api import trigger_deadline_check

logger = logging.getLogger(__name__)


class PlainTokenResolver:
    """
    Local/dev resolver: the handshake token *is* the user identity.

    Real deployments inject a resolver that validates a session token issued by the
    external auth service.
    """

    def resolve(self, token: str | None) -> str | None:
        value = (token or "").strip()
        return value or None


class WebSocketChannel:
    """
    PushChannel over a FastAPI WebSocket.

    send() may be called from any thread (scheduler, fan-out pool, request handlers):
    it only hands the bytes to the connection's event loop, where a bounded queue is
    drained by pump(). A full queue drops the message.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, *, queue_size: int = 256) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._open = True
        self.dropped = 0

    def is_open(self) -> bool:
        return self._open

    def send(self, data: bytes) -> None:
        if not self._open:
            raise ConnectionError("channel closed")
        self._loop.call_soon_threadsafe(self._offer, data)

    def _offer(self, data: bytes | None) -> None:
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            if data is None:
                # Make room for the close marker; the client is going away anyway.
                with contextlib.suppress(asyncio.QueueEmpty):
                    self._queue.get_nowait()
                self._queue.put_nowait(None)
                return
            self.dropped += 1
            logger.warning("Outbound queue full; message dropped (dropped=%d)", self.dropped)

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            self._loop.call_soon_threadsafe(self._offer, None)
        except RuntimeError:
            # Event loop already closed (process shutdown).
            logger.debug("Channel close after loop shutdown", exc_info=True)

    async def pump(self, websocket: WebSocket) -> None:
        """Write queued messages to the socket until close() is called."""
        while True:
            data = await self._queue.get()
            if data is None:
                break
            await websocket.send_text(data.decode("utf-8"))
        with contextlib.suppress(Exception):
            await websocket.close()


async def _handle_client_message(state: AppState, user_id: str, raw: str) -> None:
    try:
        msg = json.loads(raw)
    except ValueError:
        logger.warning("Malformed message from user %s", user_id)
        return
    if not isinstance(msg, dict):
        return

    msg_type = msg.get("type")
    if msg_type == "TRIGGER_DEADLINE_CHECK":
        try:
            task_id = int(msg.get("taskId"))
        except (TypeError, ValueError):
            logger.warning("TRIGGER_DEADLINE_CHECK without a valid taskId from %s", user_id)
            return
        logger.info("Deadline check triggered for task %s by user %s", task_id, user_id)
        try:
            await asyncio.to_thread(trigger_deadline_check, state, task_id=task_id, user_id=user_id)
        except CosignError as e:
            logger.warning("Deadline check rejected task=%s user=%s: %s", task_id, user_id, e)
        return

    logger.debug("Ignoring client message type=%r from %s", msg_type, user_id)


def create_app(
    state: AppState,
    *,
    token_resolver: TokenResolver | None = None,
    queue_size: int | None = None,
) -> FastAPI:
    resolver = token_resolver or PlainTokenResolver()
    qsize = int(queue_size or getattr(state.settings, "websocket_queue_size", 256))

    app = FastAPI(title=str(getattr(state.settings, "app_name", "cosign")))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        report = state.scheduler.last_report
        return {
            "status": "ok",
            "online": len(state.registry.online_users()),
            "scansCompleted": state.scheduler.scans_completed,
            "lastScanAt": report.started_at if report else None,
        }

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket, token: str | None = None) -> None:
        user_id = resolver.resolve(token)
        if user_id is None:
            logger.warning("WebSocket connection refused: invalid or missing token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        channel = WebSocketChannel(asyncio.get_running_loop(), queue_size=qsize)
        state.registry.register(user_id, channel)
        writer = asyncio.create_task(channel.pump(websocket))

        try:
            while True:
                raw = await websocket.receive_text()
                await _handle_client_message(state, user_id, raw)
        except WebSocketDisconnect:
            logger.debug("WebSocket disconnect user=%s", user_id)
        except RuntimeError:
            # receive after the server side closed a superseded socket
            logger.debug("WebSocket receive after close user=%s", user_id)
        finally:
            state.registry.unregister(user_id, channel)
            channel.close()
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await writer

    return app


# ---- background runner ----


async def _run_service(state: AppState, stop_event: asyncio.Event) -> None:
    """
    Service loop (async):

    scheduler (+ websocket server) -> wait for stop -> graceful drain

    Shutdown model:
    - main thread sets stop_event via loop.call_soon_threadsafe(stop_event.set)
    - the scheduler drains its in-flight scan (bounded), uvicorn is asked to exit
    """
    settings = state.settings
    scheduler_task = asyncio.create_task(state.scheduler.run(stop_event))

    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    if getattr(settings, "websocket_enabled", False):
        config = uvicorn.Config(
            create_app(state),
            host=settings.websocket_host,
            port=int(settings.websocket_port),
            log_level="warning",
            lifespan="off",
        )
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve())
        logger.info("WebSocket server on ws://%s:%s/ws", settings.websocket_host, settings.websocket_port)

    try:
        await stop_event.wait()
    finally:
        if server is not None:
            server.should_exit = True
        if server_task is not None:
            with contextlib.suppress(Exception):
                await server_task
        try:
            await scheduler_task
        except Exception:
            logger.exception("Deadline scheduler crashed")
        logger.info("Service loop stopped.")


@dataclass
class ServiceBackgroundRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal service stop.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)


def start_service_in_background(state: AppState) -> ServiceBackgroundRunner | None:
    """
    Start the scheduler and websocket server in a background thread (so the console
    REPL can own the main thread).
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(_run_service(state, stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.run_until_complete(loop.shutdown_default_executor())
            loop.close()

    t = threading.Thread(target=runner, name="cosign-service", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Service thread did not initialize properly.")
        return None

    logger.info("Service background thread started.")
    return ServiceBackgroundRunner(thread=t, loop=loop, stop_event=stop_event)
