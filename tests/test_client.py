"""Tests covering the signaling client dispatch loop."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from voiceroom.client import SignalingClient
from voiceroom.rtc.negotiation import NegotiationState, PeerCallbacks

from .fakes import FakeDevices, FakePeerConnection


class FakeConnection:
    def __init__(self, frames: Optional[List[str]] = None) -> None:
        self.frames = list(frames or [])
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame


def make_client(connection: FakeConnection) -> tuple:
    connections: Dict[str, FakePeerConnection] = {}

    def factory(remote_id: str, callbacks: PeerCallbacks) -> FakePeerConnection:
        connections[remote_id] = FakePeerConnection(remote_id, callbacks)
        return connections[remote_id]

    return SignalingClient(connection, factory, FakeDevices()), connections


def test_run_dispatches_frames_and_answers_pings() -> None:
    frames = [
        json.dumps({"type": "connected", "connectionId": "A"}),
        "not json",
        json.dumps({"type": "ping", "ts": 42}),
        json.dumps({"type": "user-joined", "connectionId": "B", "displayName": "bob"}),
        json.dumps({"type": "error", "reason": "unknown-type", "messageType": "x"}),
    ]
    connection = FakeConnection(frames)

    async def scenario() -> tuple:
        client, connections = make_client(connection)
        await client.run()
        assert await client.wait_connected() == "A"
        return client, connections

    client, connections = asyncio.run(scenario())

    assert client.connection_id == "A"
    assert connection.sent[0] == {"type": "pong", "ts": 42}
    assert connection.sent[1]["type"] == "offer"
    assert connection.sent[1]["to"] == "B"
    assert client.manager.peer("B").state is NegotiationState.AWAITING_REMOTE_DESCRIPTION


def test_negotiation_failure_does_not_stop_the_loop() -> None:
    frames = [
        json.dumps({"type": "connected", "connectionId": "A"}),
        json.dumps({"type": "offer", "from": "B", "sdp": {"type": "offer"}}),
        json.dumps({"type": "user-muted", "connectionId": "B", "muted": True}),
    ]
    connection = FakeConnection(frames)

    async def scenario():
        client, connections = make_client(connection)
        original_factory = client.manager._connection_factory  # type: ignore[attr-defined]

        def failing(remote_id: str, callbacks: PeerCallbacks) -> FakePeerConnection:
            created = original_factory(remote_id, callbacks)
            created.fail_on.add("create_answer")
            return created

        client.manager._connection_factory = failing  # type: ignore[attr-defined]
        await client.run()
        return client

    client = asyncio.run(scenario())
    peer = client.manager.peer("B")

    assert peer.state is NegotiationState.NEGOTIATING
    assert peer.muted is True
    assert [failure.remote_id for failure in client.failures] == ["B"]
    assert [message["type"] for message in connection.sent] == []


def test_outbound_intents_are_serialised() -> None:
    connection = FakeConnection()

    async def scenario() -> None:
        client, _ = make_client(connection)
        await client.join("r1", "alice")
        await client.set_muted(True)
        await client.leave()

    asyncio.run(scenario())

    assert connection.sent == [
        {"type": "join-room", "roomId": "r1", "displayName": "alice"},
        {"type": "set-muted", "muted": True},
        {"type": "leave-room"},
    ]


def test_measure_latency_waits_for_matching_pong() -> None:
    connection = FakeConnection()

    async def scenario() -> float:
        client, _ = make_client(connection)
        probe = asyncio.create_task(client.measure_latency(timeout=1.0))
        while not connection.sent:
            await asyncio.sleep(0)
        ping = connection.sent[0]
        assert ping["type"] == "ping"
        await client.dispatch({"type": "pong", "ts": ping["ts"] + 1})
        assert not probe.done()
        await client.dispatch({"type": "pong", "ts": ping["ts"]})
        return await probe

    latency = asyncio.run(scenario())

    assert latency >= 0.0


class GatedConnection(FakeConnection):
    """Delivers its frames, then stays open until ``closed`` is set."""

    def __init__(self, frames: List[str]) -> None:
        super().__init__(frames)
        self.closed = asyncio.Event()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        await self.closed.wait()


async def wait_for_sent(connection: FakeConnection, predicate, attempts: int = 100) -> bool:
    for _ in range(attempts):
        if any(predicate(message) for message in connection.sent):
            return True
        await asyncio.sleep(0.001)
    return False


def test_stalled_peer_does_not_block_other_peers() -> None:
    connection = GatedConnection(
        [
            json.dumps({"type": "connected", "connectionId": "A"}),
            json.dumps({"type": "offer", "from": "B", "sdp": {"type": "offer"}}),
            json.dumps({"type": "ice-candidate", "from": "B", "candidate": "b1"}),
            json.dumps({"type": "user-joined", "connectionId": "C", "displayName": "carol"}),
            json.dumps({"type": "ping", "ts": 7}),
        ]
    )

    async def scenario() -> tuple:
        client, connections = make_client(connection)
        gate = asyncio.Event()
        original_factory = client.manager._connection_factory  # type: ignore[attr-defined]

        def gated(remote_id: str, callbacks: PeerCallbacks) -> FakePeerConnection:
            created = original_factory(remote_id, callbacks)
            if remote_id == "B":
                created.remote_gate = gate
            return created

        client.manager._connection_factory = gated  # type: ignore[attr-defined]
        reader = asyncio.create_task(client.run())

        assert await wait_for_sent(connection, lambda message: message.get("to") == "C")
        assert {"type": "pong", "ts": 7} in connection.sent
        assert not any(message["type"] == "answer" for message in connection.sent)
        assert client.manager.peer("C").state is NegotiationState.AWAITING_REMOTE_DESCRIPTION

        gate.set()
        assert await wait_for_sent(connection, lambda message: message.get("type") == "answer")
        connection.closed.set()
        await reader
        return client, connections

    client, connections = asyncio.run(scenario())

    assert connections["B"].applied_candidates == ["b1"]
    assert client.manager.peer("B").state is NegotiationState.CONNECTING
    assert client.failures == []


def test_frames_for_one_peer_keep_their_order() -> None:
    frames = [
        json.dumps({"type": "connected", "connectionId": "A"}),
        json.dumps({"type": "user-joined", "connectionId": "B", "displayName": "bob"}),
        json.dumps({"type": "ice-candidate", "from": "B", "candidate": "c1"}),
        json.dumps({"type": "answer", "from": "B", "sdp": {"type": "answer"}}),
        json.dumps({"type": "ice-candidate", "from": "B", "candidate": "c2"}),
        json.dumps({"type": "user-left", "connectionId": "B"}),
    ]
    connection = FakeConnection(frames)

    async def scenario() -> tuple:
        client, connections = make_client(connection)
        await client.run()
        return client, connections

    client, connections = asyncio.run(scenario())

    assert connections["B"].applied_candidates == ["c1", "c2"]
    assert connections["B"].closed is True
    assert client.manager.peer("B") is None
