"""
In-memory room registry.

Owns the mapping of rooms to member sessions, enforces display name
uniqueness within a room, and emits presence events to room members.  The
registry never touches negotiation payloads; ``relay`` is a plain router keyed
by connection id.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from ..presence import name_key, normalize_display_name, normalize_room_id

LOG = logging.getLogger(__name__)


class RelayKind(str, enum.Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    @property
    def payload_field(self) -> str:
        return "candidate" if self is RelayKind.ICE_CANDIDATE else "sdp"


class JoinStatus(str, enum.Enum):
    JOINED = "joined"
    NAME_TAKEN = "name-taken"
    INVALID_ROOM = "invalid-room"
    ALREADY_JOINED = "already-joined"


@dataclass
class Session:
    connection_id: str
    room_id: Optional[str] = None
    display_name: Optional[str] = None
    muted: bool = False

    @property
    def joined(self) -> bool:
        return self.room_id is not None


@dataclass(frozen=True)
class RosterEntry:
    connection_id: str
    display_name: str
    muted: bool

    def to_dict(self) -> dict:
        return {
            "connectionId": self.connection_id,
            "displayName": self.display_name,
            "muted": bool(self.muted),
        }


@dataclass(frozen=True)
class JoinResult:
    status: JoinStatus
    room_id: Optional[str] = None
    display_name: Optional[str] = None
    roster: List[RosterEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is JoinStatus.JOINED

    def to_message(self) -> dict:
        if self.status is JoinStatus.JOINED:
            return {
                "type": "joined-room",
                "roomId": self.room_id,
                "displayName": self.display_name,
                "peers": [entry.to_dict() for entry in self.roster],
            }
        if self.status is JoinStatus.NAME_TAKEN:
            return {"type": "name-taken"}
        return {"type": "join-error", "reason": self.status.value}


@dataclass(frozen=True)
class MemberJoined:
    connection_id: str
    display_name: str

    def to_message(self) -> dict:
        return {
            "type": "user-joined",
            "connectionId": self.connection_id,
            "displayName": self.display_name,
        }


@dataclass(frozen=True)
class MemberLeft:
    connection_id: str

    def to_message(self) -> dict:
        return {"type": "user-left", "connectionId": self.connection_id}


@dataclass(frozen=True)
class MemberMuted:
    connection_id: str
    muted: bool

    def to_message(self) -> dict:
        return {"type": "user-muted", "connectionId": self.connection_id, "muted": bool(self.muted)}


@dataclass(frozen=True)
class RelayedSignal:
    kind: RelayKind
    from_id: str
    payload: Any

    def to_message(self) -> dict:
        return {"type": self.kind.value, "from": self.from_id, self.kind.payload_field: self.payload}


RegistryEvent = Union[MemberJoined, MemberLeft, MemberMuted, RelayedSignal]
Notifier = Callable[[str, RegistryEvent], None]


class RoomRegistry:
    """
    Room membership and presence state machine.

    ``notify`` is called synchronously with ``(target_connection_id, event)``
    for every event the registry emits; it must not block.  Mutations are
    serialised with a re-entrant lock so the check-then-insert in ``join`` is
    atomic even when the registry is driven from several threads.
    """

    def __init__(self, notify: Optional[Notifier] = None) -> None:
        self._notify: Notifier = notify or (lambda _target, _event: None)
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        # room id -> member connection ids (dict used as an insertion-ordered set)
        self._rooms: Dict[str, Dict[str, None]] = {}

    def set_notifier(self, notify: Notifier) -> None:
        self._notify = notify

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def connect(self, connection_id: str) -> Session:
        with self._lock:
            if connection_id in self._sessions:
                raise ValueError(f"connection {connection_id} already registered")
            session = Session(connection_id=connection_id)
            self._sessions[connection_id] = session
            return session

    def disconnect(self, connection_id: str) -> None:
        with self._lock:
            self.leave(connection_id)
            self._sessions.pop(connection_id, None)

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------
    def join(self, connection_id: str, room_id: object, requested_display_name: object) -> JoinResult:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                raise KeyError(connection_id)
            if session.joined:
                return JoinResult(JoinStatus.ALREADY_JOINED, room_id=session.room_id)

            normalised_room = normalize_room_id(room_id)
            if normalised_room is None:
                return JoinResult(JoinStatus.INVALID_ROOM)

            display_name = normalize_display_name(requested_display_name)
            members = self._rooms.get(normalised_room, {})
            key = name_key(display_name)
            for member_id in members:
                member = self._sessions[member_id]
                if member.display_name is not None and name_key(member.display_name) == key:
                    LOG.info(
                        "Join rejected room=%s connection=%s name=%s (taken)",
                        normalised_room,
                        connection_id,
                        display_name,
                    )
                    return JoinResult(
                        JoinStatus.NAME_TAKEN, room_id=normalised_room, display_name=display_name
                    )

            roster = [self._roster_entry(member_id) for member_id in members]
            self._rooms.setdefault(normalised_room, {})[connection_id] = None
            session.room_id = normalised_room
            session.display_name = display_name
            session.muted = False

            LOG.info(
                "Joined room=%s connection=%s name=%s members=%d",
                normalised_room,
                connection_id,
                display_name,
                len(self._rooms[normalised_room]),
            )
            event = MemberJoined(connection_id=connection_id, display_name=display_name)
            for entry in roster:
                self._emit(entry.connection_id, event)
            return JoinResult(
                JoinStatus.JOINED,
                room_id=normalised_room,
                display_name=display_name,
                roster=roster,
            )

    def set_muted(self, connection_id: str, muted: bool) -> None:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None or not session.joined:
                return
            muted = bool(muted)
            if session.muted == muted:
                return
            session.muted = muted
            event = MemberMuted(connection_id=connection_id, muted=muted)
            for member_id in list(self._rooms.get(session.room_id, ())):
                self._emit(member_id, event)

    def leave(self, connection_id: str) -> None:
        with self._lock:
            session = self._sessions.get(connection_id)
            if session is None or not session.joined:
                return
            room_id = session.room_id
            session.room_id = None
            session.display_name = None
            session.muted = False

            members = self._rooms.get(room_id)
            if members is None:
                return
            members.pop(connection_id, None)
            if not members:
                del self._rooms[room_id]
                LOG.info("Room %s is empty; removed", room_id)
                return
            LOG.info("Left room=%s connection=%s members=%d", room_id, connection_id, len(members))
            event = MemberLeft(connection_id=connection_id)
            for member_id in list(members):
                self._emit(member_id, event)

    def relay(self, from_id: str, to_id: str, kind: Union[RelayKind, str], payload: Any) -> bool:
        """
        Forward ``payload`` unchanged to ``to_id``.

        Returns ``False`` when the target is gone; the sender learns about the
        departure through ``user-left`` so nothing is reported back.
        """

        kind = RelayKind(kind)
        with self._lock:
            if to_id not in self._sessions:
                LOG.debug("Dropping %s from %s: target %s is gone", kind.value, from_id, to_id)
                return False
            self._emit(to_id, RelayedSignal(kind=kind, from_id=from_id, payload=payload))
            return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def roster(self, room_id: str) -> List[RosterEntry]:
        with self._lock:
            return [self._roster_entry(member_id) for member_id in self._rooms.get(room_id, ())]

    def member_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def room_ids(self) -> List[str]:
        with self._lock:
            return list(self._rooms)

    def session_count(self) -> int:
        return len(self._sessions)

    def _roster_entry(self, connection_id: str) -> RosterEntry:
        session = self._sessions[connection_id]
        return RosterEntry(
            connection_id=connection_id,
            display_name=session.display_name or "",
            muted=session.muted,
        )

    def _emit(self, target: str, event: RegistryEvent) -> None:
        try:
            self._notify(target, event)
        except Exception:  # pragma: no cover - notifier failures stay scoped to one target
            LOG.exception("Failed to deliver %s to %s", type(event).__name__, target)
