"""
Client side peer negotiation manager.

One :class:`PeerNegotiationManager` runs per local participant.  It keeps one
:class:`PeerNegotiation` per remote connection id and drives the
offer/answer/candidate exchange with each of them over the signaling channel.

Roles are fixed when a negotiation is created and follow from how the peer was
discovered:

* a live ``user-joined`` announcement makes the local side the **offerer**;
* a join-time roster entry or an unsolicited ``offer`` makes it the
  **answerer**.

Existing members therefore always call the newcomer, and both sides agree on
the roles without an extra round trip.

Remote candidates that arrive before the remote description is applied are
buffered and flushed in arrival order right after it is applied.  Applying the
description and flushing run under a per-peer lock, and so does the
buffer-or-apply decision for an incoming candidate.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from pydantic import ValidationError

from .. import NegotiationError
from ..api.schemas import JoinedRoomMessage, RosterEntryModel
from ..presence import clean_display_name
from .media import AudioTrack, LocalMedia, MediaDevices

LOG = logging.getLogger(__name__)

CONNECTED_STATES = {"connected", "completed"}
FAILED_STATES = {"failed", "disconnected"}
REMOTE_EVENTS = {"user-joined", "user-left", "user-muted", "offer", "answer", "ice-candidate"}
DELAY_POLL_INTERVAL = 2.0


class Role(str, enum.Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    AWAITING_REMOTE_DESCRIPTION = "awaiting-remote-description"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class RtpSender(Protocol):
    track: Optional[AudioTrack]

    async def replace_track(self, track: Optional[AudioTrack]) -> None: ...


class PeerConnection(Protocol):
    """The platform negotiation primitive for one remote peer."""

    async def create_offer(self) -> Any: ...

    async def create_answer(self) -> Any: ...

    async def set_local_description(self, description: Any) -> None: ...

    async def set_remote_description(self, description: Any) -> None: ...

    async def add_ice_candidate(self, candidate: Any) -> None: ...

    def add_track(self, track: AudioTrack) -> RtpSender: ...

    def get_senders(self) -> Iterable[RtpSender]: ...

    async def get_stats(self) -> Any:
        """A stats report: a mapping of stat id to stat entry (mapping or object)."""
        ...

    async def close(self) -> None: ...


@dataclass
class PeerCallbacks:
    """Hooks a :class:`PeerConnection` reports its events through."""

    on_ice_candidate: Callable[[Any], Awaitable[None]]
    on_connection_state: Callable[[str], None]
    on_track: Callable[[Any], None]


PeerConnectionFactory = Callable[[str, PeerCallbacks], PeerConnection]
SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class PeerNegotiation:
    remote_id: str
    role: Role
    connection: PeerConnection
    state: NegotiationState = NegotiationState.IDLE
    pending_candidates: List[Any] = field(default_factory=list)
    local_media_attached: bool = False
    remote_description_set: bool = False
    display_name: Optional[str] = None
    muted: bool = False
    remote_track: Any = None
    last_error: Optional[str] = None
    deferred_offer: Any = None
    delay_ms: Optional[int] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    def to_dict(self) -> dict:
        return {
            "remoteId": self.remote_id,
            "role": self.role.value,
            "state": self.state.value,
            "pendingCandidates": len(self.pending_candidates),
            "localMediaAttached": self.local_media_attached,
            "displayName": self.display_name,
            "muted": self.muted,
            "delayMs": self.delay_ms,
            "error": self.last_error,
        }


class PeerNegotiationManager:
    """Drive one negotiation per remote peer for the local participant."""

    def __init__(
        self,
        send: SendCallable,
        connection_factory: PeerConnectionFactory,
        devices: MediaDevices,
        *,
        input_device_id: Optional[str] = None,
    ) -> None:
        self._send = send
        self._connection_factory = connection_factory
        self.media = LocalMedia(devices, input_device_id)
        self.peers: Dict[str, PeerNegotiation] = {}

        self.connection_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.display_name: Optional[str] = None
        self.name_taken = False
        self.join_error: Optional[str] = None

    @property
    def muted(self) -> bool:
        return self.media.muted

    @property
    def input_device_id(self) -> Optional[str]:
        return self.media.selected_device

    @property
    def media_error(self) -> Optional[str]:
        return self.media.error

    def peer(self, remote_id: str) -> Optional[PeerNegotiation]:
        return self.peers.get(remote_id)

    # ------------------------------------------------------------------
    # Outbound intents
    # ------------------------------------------------------------------
    async def join(self, room_id: str, display_name: str) -> None:
        self.display_name = clean_display_name(display_name) or None
        self.name_taken = False
        self.join_error = None
        await self._send({"type": "join-room", "roomId": room_id, "displayName": self.display_name})

    async def leave(self) -> None:
        await self._send({"type": "leave-room"})
        await self._close_all()
        self.room_id = None

    async def set_muted(self, muted: bool) -> None:
        self.media.set_muted(muted)
        await self._send({"type": "set-muted", "muted": self.media.muted})

    async def switch_input_device(self, device_id: Optional[str]) -> bool:
        """
        Swap the local input and push the new track into every established
        sender without renegotiating.
        """

        handle = await self.media.switch(device_id)
        if handle is None:
            return False
        track = handle.track
        for peer in list(self.peers.values()):
            if peer.closed or not peer.local_media_attached:
                continue
            for sender in peer.connection.get_senders():
                if sender.track is not None and sender.track.kind == "audio":
                    await sender.replace_track(track)
        await self._resume_idle_peers()
        return True

    async def close(self) -> None:
        await self._close_all()
        self.media.release()

    # ------------------------------------------------------------------
    # Voice delay
    # ------------------------------------------------------------------
    async def peer_delays(self) -> Dict[str, int]:
        """
        Sample the one-way voice delay, in milliseconds, of every connected peer.

        The delay is half the current round trip time of the first candidate
        pair that reports one.  Peers that are not connected, or whose stats
        cannot be read, get no entry and their ``delay_ms`` is cleared.
        """

        delays: Dict[str, int] = {}
        for peer in list(self.peers.values()):
            if peer.state is not NegotiationState.CONNECTED:
                peer.delay_ms = None
                continue
            try:
                report = await peer.connection.get_stats()
            except Exception:
                LOG.debug("Stats unavailable for %s", peer.remote_id, exc_info=True)
                peer.delay_ms = None
                continue
            peer.delay_ms = _one_way_delay_ms(report)
            if peer.delay_ms is not None:
                delays[peer.remote_id] = peer.delay_ms
        return delays

    async def poll_peer_delays(
        self,
        interval: float = DELAY_POLL_INTERVAL,
        on_update: Optional[Callable[[Dict[str, int]], None]] = None,
    ) -> None:
        """Refresh peer delays every ``interval`` seconds until cancelled."""

        previous: Optional[Dict[str, int]] = None
        while True:
            await asyncio.sleep(interval)
            delays = await self.peer_delays()
            if on_update is not None and delays != previous:
                on_update(delays)
            previous = delays

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------
    async def handle_event(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        remote_id = message.get("from", message.get("connectionId"))
        if message_type in REMOTE_EVENTS and not remote_id:
            LOG.warning("Dropping %s message without a peer id", message_type)
            return
        remote_id = str(remote_id)

        if message_type == "connected":
            self.connection_id = str(message.get("connectionId") or "") or None
        elif message_type == "joined-room":
            try:
                joined = JoinedRoomMessage.model_validate(message)
            except ValidationError:
                LOG.warning("Malformed joined-room message: %s", message)
                return
            await self.on_joined_room(joined.roomId, joined.displayName, joined.peers)
        elif message_type == "name-taken":
            self.name_taken = True
            LOG.info("Display name %s is taken in this room", self.display_name)
        elif message_type == "join-error":
            self.join_error = str(message.get("reason") or "unknown")
            LOG.info("Join rejected: %s", self.join_error)
        elif message_type == "user-joined":
            await self.on_member_joined(remote_id, message.get("displayName"))
        elif message_type == "user-left":
            await self.on_member_left(remote_id)
        elif message_type == "user-muted":
            self.on_member_muted(remote_id, bool(message.get("muted")))
        elif message_type == "offer":
            await self.on_offer(remote_id, message.get("sdp"))
        elif message_type == "answer":
            await self.on_answer(remote_id, message.get("sdp"))
        elif message_type == "ice-candidate":
            await self.on_remote_candidate(remote_id, message.get("candidate"))
        else:
            LOG.debug("Ignoring %s message", message_type)

    async def on_joined_room(
        self, room_id: str, display_name: str, roster: Iterable[RosterEntryModel]
    ) -> None:
        self.room_id = room_id
        self.display_name = display_name
        self.name_taken = False
        self.join_error = None
        for entry in roster:
            if entry.connectionId == self.connection_id:
                continue
            peer = self.peers.get(entry.connectionId)
            if peer is None:
                peer = self._create_peer(entry.connectionId, Role.ANSWERER)
            peer.display_name = entry.displayName
            peer.muted = entry.muted
        await self.media.acquire()

    async def on_member_joined(self, remote_id: str, display_name: Optional[str]) -> None:
        if remote_id == self.connection_id:
            return
        if remote_id in self.peers:
            LOG.warning("Duplicate join announcement for %s ignored", remote_id)
            return
        peer = self._create_peer(remote_id, Role.OFFERER)
        peer.display_name = display_name
        await self.start_offer(peer)

    async def on_member_left(self, remote_id: str) -> None:
        peer = self.peers.pop(remote_id, None)
        if peer is None:
            return
        await self._close_peer(peer)
        LOG.info("Peer %s left; negotiation closed", remote_id)

    def on_member_muted(self, remote_id: str, muted: bool) -> None:
        peer = self.peers.get(remote_id)
        if peer is not None:
            peer.muted = muted

    async def start_offer(self, peer: PeerNegotiation) -> None:
        if peer.role is not Role.OFFERER or peer.state is not NegotiationState.IDLE:
            return
        if await self.media.acquire() is None:
            LOG.warning("No local audio; offer to %s postponed", peer.remote_id)
            return
        if peer.closed:
            return

        peer.state = NegotiationState.NEGOTIATING
        self._attach_local_media(peer)
        try:
            offer = await peer.connection.create_offer()
            if peer.closed:
                return
            await peer.connection.set_local_description(offer)
        except Exception as exc:
            raise self._fail(peer, "create offer", exc) from exc
        if peer.closed:
            return
        await self._send({"type": "offer", "to": peer.remote_id, "sdp": offer})
        peer.state = NegotiationState.AWAITING_REMOTE_DESCRIPTION

    async def on_offer(self, from_id: str, description: Any) -> None:
        if from_id == self.connection_id:
            return
        peer = self.peers.get(from_id)
        if peer is None:
            peer = self._create_peer(from_id, Role.ANSWERER)
        elif peer.role is Role.OFFERER:
            LOG.warning("Unexpected offer from %s while offering; ignored", from_id)
            return

        if await self.media.acquire() is None:
            LOG.warning("No local audio; offer from %s deferred", from_id)
            peer.deferred_offer = description
            return
        if peer.closed:
            return
        peer.deferred_offer = None

        peer.state = NegotiationState.NEGOTIATING
        self._attach_local_media(peer)
        try:
            await self._apply_remote_description(peer, description)
            if peer.closed:
                return
            answer = await peer.connection.create_answer()
            if peer.closed:
                return
            await peer.connection.set_local_description(answer)
        except Exception as exc:
            raise self._fail(peer, "answer offer", exc) from exc
        if peer.closed:
            return
        await self._send({"type": "answer", "to": from_id, "sdp": answer})
        if peer.state is NegotiationState.NEGOTIATING:
            peer.state = NegotiationState.CONNECTING

    async def on_answer(self, from_id: str, description: Any) -> None:
        peer = self.peers.get(from_id)
        if peer is None or peer.role is not Role.OFFERER:
            LOG.debug("Ignoring answer from %s", from_id)
            return
        if peer.state is not NegotiationState.AWAITING_REMOTE_DESCRIPTION:
            LOG.warning("Answer from %s in state %s ignored", from_id, peer.state.value)
            return
        try:
            await self._apply_remote_description(peer, description)
        except Exception as exc:
            raise self._fail(peer, "apply answer", exc) from exc
        if peer.state is NegotiationState.AWAITING_REMOTE_DESCRIPTION:
            peer.state = NegotiationState.CONNECTING

    async def on_remote_candidate(self, from_id: str, candidate: Any) -> None:
        peer = self.peers.get(from_id)
        if peer is None:
            LOG.debug("Ignoring candidate from unknown peer %s", from_id)
            return
        async with peer.lock:
            if peer.closed:
                return
            if peer.remote_description_set:
                await self._apply_candidate(peer, candidate)
            else:
                peer.pending_candidates.append(candidate)

    # ------------------------------------------------------------------
    # Peer connection callbacks
    # ------------------------------------------------------------------
    def _connection_state_changed(self, peer: PeerNegotiation, state: str) -> None:
        state = str(state).lower()
        if peer.closed:
            return
        if state in CONNECTED_STATES:
            if peer.remote_description_set and peer.state is not NegotiationState.FAILED:
                peer.state = NegotiationState.CONNECTED
                LOG.info("Peer %s connected", peer.remote_id)
        elif state in FAILED_STATES:
            if peer.state in (NegotiationState.CONNECTING, NegotiationState.CONNECTED):
                peer.state = NegotiationState.FAILED
                LOG.warning("Connectivity to %s %s", peer.remote_id, state)

    async def _local_candidate(self, peer: PeerNegotiation, candidate: Any) -> None:
        if peer.closed or candidate is None:
            return
        await self._send({"type": "ice-candidate", "to": peer.remote_id, "candidate": candidate})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _create_peer(self, remote_id: str, role: Role) -> PeerNegotiation:
        holder: Dict[str, PeerNegotiation] = {}

        async def on_ice_candidate(candidate: Any) -> None:
            await self._local_candidate(holder["peer"], candidate)

        def on_connection_state(state: str) -> None:
            self._connection_state_changed(holder["peer"], state)

        def on_track(track: Any) -> None:
            holder["peer"].remote_track = track

        callbacks = PeerCallbacks(
            on_ice_candidate=on_ice_candidate,
            on_connection_state=on_connection_state,
            on_track=on_track,
        )
        peer = PeerNegotiation(
            remote_id=remote_id,
            role=role,
            connection=self._connection_factory(remote_id, callbacks),
        )
        holder["peer"] = peer
        self.peers[remote_id] = peer
        LOG.debug("Tracking peer %s as %s", remote_id, role.value)
        return peer

    def _attach_local_media(self, peer: PeerNegotiation) -> None:
        if peer.local_media_attached:
            return
        track = self.media.track
        if track is None:
            return
        peer.connection.add_track(track)
        peer.local_media_attached = True

    async def _apply_remote_description(self, peer: PeerNegotiation, description: Any) -> None:
        async with peer.lock:
            if peer.closed:
                return
            await peer.connection.set_remote_description(description)
            peer.remote_description_set = True
            for candidate in peer.pending_candidates:
                await self._apply_candidate(peer, candidate)
            peer.pending_candidates.clear()

    async def _apply_candidate(self, peer: PeerNegotiation, candidate: Any) -> None:
        try:
            await peer.connection.add_ice_candidate(candidate)
        except Exception:
            LOG.warning("Failed to add candidate from %s", peer.remote_id, exc_info=True)

    def _fail(self, peer: PeerNegotiation, step: str, exc: Exception) -> NegotiationError:
        peer.last_error = f"{step}: {exc}"
        LOG.error("Negotiation with %s failed during %s: %s", peer.remote_id, step, exc)
        return NegotiationError(peer.remote_id, step, exc)

    async def _resume_idle_peers(self) -> None:
        for peer in list(self.peers.values()):
            if peer.state is not NegotiationState.IDLE:
                continue
            if peer.role is Role.OFFERER:
                await self.start_offer(peer)
            elif peer.deferred_offer is not None:
                await self.on_offer(peer.remote_id, peer.deferred_offer)

    async def _close_peer(self, peer: PeerNegotiation) -> None:
        peer.state = NegotiationState.CLOSED
        peer.pending_candidates.clear()
        peer.deferred_offer = None
        try:
            await peer.connection.close()
        except Exception:
            LOG.warning("Error while closing connection to %s", peer.remote_id, exc_info=True)

    async def _close_all(self) -> None:
        peers = list(self.peers.values())
        self.peers.clear()
        for peer in peers:
            await self._close_peer(peer)


def _stat_field(stat: Any, name: str) -> Any:
    if isinstance(stat, Mapping):
        return stat.get(name)
    return getattr(stat, name, None)


def _one_way_delay_ms(report: Any) -> Optional[int]:
    stats = report.values() if isinstance(report, Mapping) else report or ()
    for stat in stats:
        if _stat_field(stat, "type") != "candidate-pair":
            continue
        rtt = _stat_field(stat, "currentRoundTripTime")
        if isinstance(rtt, (int, float)) and not isinstance(rtt, bool):
            return round(rtt * 1000 / 2)
    return None
