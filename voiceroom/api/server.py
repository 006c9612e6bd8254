"""
FastAPI signaling surface for voiceroom.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import ServerConfig
from . import schemas
from .registry import RegistryEvent, RelayKind, RoomRegistry

LOG = logging.getLogger(__name__)

RELAY_TYPES = {kind.value: kind for kind in RelayKind}


class SignalingSession:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, manager: "SignalingManager", websocket: WebSocket, *, queue_size: int) -> None:
        self.manager = manager
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self._close_task: Optional[asyncio.Task] = None
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        self.manager.register(self)
        try:
            self.send_nowait({"type": "connected", "connectionId": self.connection_id})
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected (%s)", self.connection_id)
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Signaling session crashed")
        finally:
            self.manager.unregister(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def send_nowait(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning(
                "Send queue full while sending %s; closing slow connection", payload.get("type")
            )
            if self._close_task is None:
                self._close_task = asyncio.get_running_loop().create_task(
                    self.close(code=1013, reason="send queue overflow")
                )

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except ValueError:
                    self.logger.warning("Ignoring non-JSON frame")
                    self.send_nowait({"type": "error", "reason": "invalid-payload"})
                    continue
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(message, dict):
                    self.send_nowait({"type": "error", "reason": "invalid-payload"})
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    self.send_nowait({"type": "pong", "ts": message.get("ts")})
                    continue

                try:
                    self.manager.handle_message(self, message)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing %s", msg_type)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover - defensive
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        if self.manager.ping_interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.manager.ping_interval)
                if self.is_stopped:
                    break
                self.send_nowait({"type": "ping", "ts": time.time()})
                if (time.monotonic() - self.last_pong) > self.manager.pong_timeout:
                    self.logger.warning("Ping timeout; closing signaling session")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()


class SignalingManager:
    """Bridge WebSocket sessions and the room registry."""

    def __init__(
        self,
        registry: RoomRegistry,
        *,
        queue_size: int = 256,
        ping_interval: float = 25.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.registry = registry
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self._sessions: Dict[str, SignalingSession] = {}
        registry.set_notifier(self._deliver)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def run(self, websocket: WebSocket) -> None:
        session = SignalingSession(self, websocket, queue_size=self.queue_size)
        await session.run()

    def register(self, session: SignalingSession) -> None:
        self._sessions[session.connection_id] = session
        self.registry.connect(session.connection_id)
        LOG.info("Signaling client connected connection=%s", session.connection_id)

    def unregister(self, session: SignalingSession) -> None:
        if self._sessions.pop(session.connection_id, None) is None:
            return
        self.registry.disconnect(session.connection_id)
        LOG.info("Signaling client disconnected connection=%s", session.connection_id)

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        if not sessions:
            return
        LOG.info("Closing %d signaling session(s)", len(sessions))
        await asyncio.gather(
            *[session.close(code=1001, reason="server shutdown") for session in sessions],
            return_exceptions=True,
        )

    def _deliver(self, target: str, event: RegistryEvent) -> None:
        session = self._sessions.get(target)
        if session is None:
            return
        session.send_nowait(event.to_message())

    def handle_message(self, session: SignalingSession, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if not isinstance(message_type, str):
            session.send_nowait({"type": "error", "reason": "invalid-payload"})
            return

        if message_type == "join-room":
            try:
                request = schemas.JoinRoomRequest.model_validate(message)
            except ValidationError as exc:
                self._reject(session, message_type, exc)
                return
            result = self.registry.join(session.connection_id, request.room_id, request.display_name)
            session.send_nowait(result.to_message())
            return

        if message_type == "set-muted":
            try:
                request = schemas.SetMutedRequest.model_validate(message)
            except ValidationError as exc:
                self._reject(session, message_type, exc)
                return
            self.registry.set_muted(session.connection_id, request.muted)
            return

        if message_type == "leave-room":
            self.registry.leave(session.connection_id)
            return

        kind = RELAY_TYPES.get(message_type)
        if kind is not None:
            try:
                request = schemas.RelayRequest.model_validate(message)
            except ValidationError as exc:
                self._reject(session, message_type, exc)
                return
            payload = getattr(request, kind.payload_field)
            self.registry.relay(session.connection_id, request.to, kind, payload)
            return

        session.logger.debug("Unknown message type %s", message_type)
        session.send_nowait({"type": "error", "reason": "unknown-type", "messageType": message_type})

    @staticmethod
    def _reject(session: SignalingSession, message_type: str, exc: ValidationError) -> None:
        session.logger.warning("Invalid %s payload: %s", message_type, exc.errors())
        session.send_nowait({"type": "error", "reason": "invalid-payload", "messageType": message_type})


def create_app(
    *,
    config: Optional[ServerConfig] = None,
    registry: Optional[RoomRegistry] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    server_config = config or ServerConfig()
    room_registry = registry or RoomRegistry()

    signaling = SignalingManager(
        room_registry,
        queue_size=server_config.queue_size,
        ping_interval=server_config.ping_interval,
        pong_timeout=server_config.pong_timeout,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await signaling.shutdown()

    app = FastAPI(title="voiceroom signaling", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_config.client_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.state.registry = room_registry
    app.state.signaling = signaling

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await signaling.run(websocket)

    @app.get("/api/health", response_model=schemas.HealthResponse)
    async def health() -> schemas.HealthResponse:
        return schemas.HealthResponse(ok=True)

    return app
