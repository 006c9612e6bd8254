"""
voiceroom signaling package.

Hosts the presence/signaling relay used by browser voice rooms: the server side
room registry with its WebSocket front-end, and the client side negotiation
manager that sequences offer/answer/candidate exchanges with each remote peer.
Audio never passes through this package.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, List, Mapping, Optional

__all__ = [
    "ServerConfig",
    "VoiceRoomError",
    "NegotiationError",
    "MediaAccessError",
]

DEFAULT_CLIENT_ORIGIN = "http://localhost:5173"


class VoiceRoomError(RuntimeError):
    """Base class for voiceroom errors."""


class NegotiationError(VoiceRoomError):
    """Raised when a negotiation step with a remote peer fails."""

    def __init__(self, remote_id: str, step: str, cause: BaseException) -> None:
        super().__init__(f"{step} failed for peer {remote_id}: {cause}")
        self.remote_id = remote_id
        self.step = step
        self.cause = cause


class MediaAccessError(VoiceRoomError):
    """Raised when the local audio input cannot be acquired."""


def _split_origins(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


@dataclass
class ServerConfig:
    """Top level signaling server configuration."""

    host: str = "127.0.0.1"
    port: int = 3001
    client_origins: List[str] = field(default_factory=lambda: [DEFAULT_CLIENT_ORIGIN])
    ping_interval: float = 25.0
    pong_timeout: float = 60.0
    queue_size: int = 256
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "ServerConfig":
        """Build a config from a plain mapping (e.g. a parsed YAML document).

        Unknown keys are ignored; ``clientOrigins``/``client_origin`` are
        accepted as aliases of ``client_origins``.
        """

        config = cls()
        if not payload:
            return config
        known = {item.name for item in fields(cls)}
        for key, value in payload.items():
            name = str(key).replace("-", "_")
            if name in {"clientOrigins", "client_origin", "clientOrigin"}:
                name = "client_origins"
            if name not in known or value is None:
                continue
            setattr(config, name, value)
        config.normalise()
        return config

    def apply_env(self, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        host = env.get("VOICEROOM_HOST")
        if host:
            self.host = host
        port = env.get("VOICEROOM_PORT") or env.get("PORT")
        if port:
            self.port = port  # type: ignore[assignment]
        origin = env.get("CLIENT_ORIGIN")
        if origin:
            self.client_origins = _split_origins(origin)
        level = env.get("VOICEROOM_LOG_LEVEL")
        if level:
            self.log_level = level
        self.normalise()
        return self

    def normalise(self) -> None:
        self.host = str(self.host or "127.0.0.1")
        try:
            self.port = int(self.port)
        except (TypeError, ValueError):
            raise ValueError(f"invalid port: {self.port!r}") from None
        self.client_origins = _split_origins(self.client_origins) or [DEFAULT_CLIENT_ORIGIN]
        self.ping_interval = max(0.0, float(self.ping_interval))
        self.pong_timeout = max(self.ping_interval, float(self.pong_timeout))
        self.queue_size = max(1, int(self.queue_size))
        self.log_level = str(self.log_level or "INFO").upper()
