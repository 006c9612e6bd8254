"""
WebSocket signaling client.

Connects a :class:`~voiceroom.rtc.negotiation.PeerNegotiationManager` to the
signaling server: inbound frames are dispatched to the manager, outbound
intents are serialised as JSON text frames.

The read loop never waits on a negotiation step.  Keepalive frames are
answered inline; frames about one remote peer go through that peer's own FIFO
worker, and the remaining room events through a shared session worker, so a
stalled step with one peer leaves every other peer untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import websockets

from . import NegotiationError
from .rtc.media import MediaDevices
from .rtc.negotiation import (
    DELAY_POLL_INTERVAL,
    REMOTE_EVENTS,
    PeerConnectionFactory,
    PeerNegotiationManager,
)

LOG = logging.getLogger(__name__)

SESSION_KEY = ""


class Connection(Protocol):
    async def send(self, message: str) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...


class SignalingClient:
    """Own one signaling connection and the negotiation manager it feeds."""

    def __init__(
        self,
        connection: Connection,
        connection_factory: PeerConnectionFactory,
        devices: MediaDevices,
        *,
        input_device_id: Optional[str] = None,
    ) -> None:
        self.connection = connection
        self.manager = PeerNegotiationManager(
            self.send,
            connection_factory,
            devices,
            input_device_id=input_device_id,
        )
        self.failures: List[BaseException] = []
        self._latency_probes: Dict[float, asyncio.Future] = {}
        self._connected = asyncio.Event()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    @classmethod
    @contextlib.asynccontextmanager
    async def connect(
        cls,
        url: str,
        connection_factory: PeerConnectionFactory,
        devices: MediaDevices,
        *,
        input_device_id: Optional[str] = None,
        delay_interval: float = DELAY_POLL_INTERVAL,
    ) -> AsyncIterator["SignalingClient"]:
        """
        Open ``url`` and run the receive loop and the peer delay poller in
        the background for the lifetime of the context.
        """

        async with websockets.connect(url) as websocket:
            client = cls(websocket, connection_factory, devices, input_device_id=input_device_id)
            background = [
                asyncio.create_task(client.run(), name="signaling-reader"),
                asyncio.create_task(client.manager.poll_peer_delays(delay_interval), name="peer-delays"),
            ]
            try:
                yield client
            finally:
                for task in background:
                    task.cancel()
                for task in background:
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                await client.close()

    @property
    def connection_id(self) -> Optional[str]:
        return self.manager.connection_id

    async def wait_connected(self) -> str:
        await self._connected.wait()
        return self.manager.connection_id or ""

    async def send(self, payload: Dict[str, Any]) -> None:
        await self.connection.send(json.dumps(payload))

    async def join(self, room_id: str, display_name: str) -> None:
        await self.manager.join(room_id, display_name)

    async def leave(self) -> None:
        await self.manager.leave()

    async def set_muted(self, muted: bool) -> None:
        await self.manager.set_muted(muted)

    async def measure_latency(self, timeout: float = 5.0) -> float:
        """Round-trip time to the server in milliseconds."""

        ts = time.time() * 1000.0
        future = asyncio.get_running_loop().create_future()
        self._latency_probes[ts] = future
        try:
            await self.send({"type": "ping", "ts": ts})
            await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._latency_probes.pop(ts, None)
        return max(0.0, time.time() * 1000.0 - ts)

    async def run(self) -> None:
        """Read frames until the connection ends, then finish queued work."""

        try:
            async for raw in self.connection:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    LOG.warning("Ignoring malformed frame from server")
                    continue
                if not isinstance(message, dict):
                    continue
                await self.dispatch(message)
            await self.drain()
        finally:
            await self._stop_workers()

    async def dispatch(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type == "ping":
            await self.send({"type": "pong", "ts": message.get("ts")})
            return
        if message_type == "pong":
            future = self._latency_probes.get(message.get("ts"))
            if future is not None and not future.done():
                future.set_result(None)
            return
        if message_type == "error":
            LOG.warning("Server rejected %s: %s", message.get("messageType"), message.get("reason"))
            return
        if message_type == "connected":
            await self.manager.handle_event(message)
            self._connected.set()
            return

        key = SESSION_KEY
        if message_type in REMOTE_EVENTS:
            remote_id = message.get("from", message.get("connectionId"))
            if remote_id:
                key = str(remote_id)
        self._enqueue(key, message)

    async def drain(self) -> None:
        """Wait until every queued frame has been handled."""

        await asyncio.gather(*(queue.join() for queue in list(self._queues.values())))

    async def close(self) -> None:
        await self._stop_workers()
        await self.manager.close()

    def _enqueue(self, key: str, message: Dict[str, Any]) -> None:
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(
                self._worker(key, queue), name=f"peer-{key or 'session'}"
            )
        queue.put_nowait(message)

    async def _worker(self, key: str, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            try:
                await self.manager.handle_event(message)
            except NegotiationError as exc:
                # Already logged by the manager; the peer stays where it stopped.
                LOG.debug("Negotiation halted: %s", exc)
                self.failures.append(exc)
            except Exception as exc:
                LOG.exception("Failed to handle %s message", message.get("type"))
                self.failures.append(exc)
            finally:
                queue.task_done()
            if key != SESSION_KEY and message.get("type") == "user-left" and queue.empty():
                self._queues.pop(key, None)
                self._workers.pop(key, None)
                return

    async def _stop_workers(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        self._queues.clear()
        for task in workers:
            task.cancel()
        for task in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
