"""
Signaling server: room registry and its WebSocket front-end.
"""

from __future__ import annotations

from .registry import JoinResult, JoinStatus, RelayKind, RoomRegistry, RosterEntry, Session

__all__ = ["JoinResult", "JoinStatus", "RelayKind", "RoomRegistry", "RosterEntry", "Session"]
