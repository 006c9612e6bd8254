"""Tests covering room membership, presence broadcast and relay routing."""

from __future__ import annotations

from typing import List, Tuple

import pytest

from voiceroom.api.registry import (
    JoinStatus,
    MemberJoined,
    MemberLeft,
    MemberMuted,
    RelayedSignal,
    RelayKind,
    RoomRegistry,
    RosterEntry,
)


class Recorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, object]] = []

    def __call__(self, target: str, event: object) -> None:
        self.events.append((target, event))

    def for_target(self, target: str) -> list:
        return [event for dest, event in self.events if dest == target]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> RoomRegistry:
    registry = RoomRegistry(recorder)
    for connection_id in ("a", "b", "c", "d"):
        registry.connect(connection_id)
    return registry


def test_first_join_gets_empty_roster(registry: RoomRegistry, recorder: Recorder) -> None:
    result = registry.join("a", "r1", "alice")

    assert result.status is JoinStatus.JOINED
    assert result.room_id == "r1"
    assert result.display_name == "alice"
    assert result.roster == []
    assert recorder.events == []
    assert result.to_message() == {
        "type": "joined-room",
        "roomId": "r1",
        "displayName": "alice",
        "peers": [],
    }


def test_name_taken_is_case_insensitive(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.join("a", "r1", "alice")

    result = registry.join("b", "r1", "ALICE")

    assert result.status is JoinStatus.NAME_TAKEN
    assert result.to_message() == {"type": "name-taken"}
    assert registry.member_count("r1") == 1
    assert registry.session("b").room_id is None
    assert recorder.events == []


def test_name_check_uses_normalised_name(registry: RoomRegistry) -> None:
    registry.join("a", "r1", "alice")

    assert registry.join("b", "r1", "  al!ice ").status is JoinStatus.NAME_TAKEN


def test_same_name_allowed_in_other_room(registry: RoomRegistry) -> None:
    registry.join("a", "r1", "alice")

    assert registry.join("b", "r2", "alice").ok


def test_roster_lists_other_members_with_mute_state(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.join("a", "r1", "alice")
    registry.join("b", "r1", "bob")
    registry.set_muted("b", True)
    recorder.clear()

    result = registry.join("c", "r1", "carol")

    assert set(result.roster) == {
        RosterEntry(connection_id="a", display_name="alice", muted=False),
        RosterEntry(connection_id="b", display_name="bob", muted=True),
    }
    assert recorder.for_target("a") == [MemberJoined("c", "carol")]
    assert recorder.for_target("b") == [MemberJoined("c", "carol")]
    assert recorder.for_target("c") == []


def test_rejects_invalid_room_ids(registry: RoomRegistry) -> None:
    assert registry.join("a", "   ", "alice").status is JoinStatus.INVALID_ROOM
    result = registry.join("a", "r" * 33, "alice")
    assert result.status is JoinStatus.INVALID_ROOM
    assert result.to_message() == {"type": "join-error", "reason": "invalid-room"}
    assert registry.session("a").room_id is None
    assert registry.room_ids() == []


def test_second_join_is_rejected(registry: RoomRegistry) -> None:
    registry.join("a", "r1", "alice")

    result = registry.join("a", "r2", "alice")

    assert result.status is JoinStatus.ALREADY_JOINED
    assert registry.session("a").room_id == "r1"
    assert not registry.has_room("r2")


def test_join_substitutes_guest_name(registry: RoomRegistry) -> None:
    result = registry.join("a", "r1", "***")

    assert result.display_name.startswith("Guest-")


def test_join_unknown_connection_raises(registry: RoomRegistry) -> None:
    with pytest.raises(KeyError):
        registry.join("ghost", "r1", "alice")


def test_mute_broadcasts_to_whole_room_once(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.join("a", "r1", "alice")
    registry.join("b", "r1", "bob")
    recorder.clear()

    registry.set_muted("a", True)
    registry.set_muted("a", True)

    assert recorder.for_target("a") == [MemberMuted("a", True)]
    assert recorder.for_target("b") == [MemberMuted("a", True)]
    assert registry.session("a").muted is True

    registry.set_muted("a", False)
    assert recorder.for_target("b")[-1] == MemberMuted("a", False)


def test_mute_before_join_is_noop(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.set_muted("a", True)

    assert recorder.events == []
    assert registry.session("a").muted is False


def test_leave_broadcasts_and_is_idempotent(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.join("a", "r1", "alice")
    registry.join("b", "r1", "bob")
    recorder.clear()

    registry.leave("b")
    registry.leave("b")

    assert recorder.events == [("a", MemberLeft("b"))]
    assert registry.member_count("r1") == 1
    assert registry.session("b") is not None
    assert registry.join("b", "r1", "bob").ok


def test_room_removed_when_last_member_leaves(registry: RoomRegistry) -> None:
    registry.join("a", "r1", "alice")
    registry.join("b", "r1", "bob")

    registry.leave("a")
    registry.disconnect("b")

    assert not registry.has_room("r1")
    assert registry.room_ids() == []
    assert registry.session("b") is None

    result = registry.join("c", "r1", "alice")
    assert result.ok
    assert result.roster == []


def test_disconnect_frees_the_name(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.join("a", "r1", "alice")
    registry.join("b", "r1", "bob")
    recorder.clear()

    registry.disconnect("a")

    assert recorder.events == [("b", MemberLeft("a"))]
    assert registry.join("c", "r1", "Alice").ok
    assert registry.session_count() == 3


def test_relay_forwards_payload_unchanged(registry: RoomRegistry, recorder: Recorder) -> None:
    payload = {"type": "offer", "sdp": "v=0\r\n"}

    delivered = registry.relay("a", "b", RelayKind.OFFER, payload)

    assert delivered is True
    ((target, event),) = recorder.events
    assert target == "b"
    assert isinstance(event, RelayedSignal)
    assert event.payload is payload
    assert event.to_message() == {"type": "offer", "from": "a", "sdp": payload}


def test_relay_candidate_uses_candidate_field(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.relay("a", "b", "ice-candidate", {"candidate": "candidate:1"})

    ((_, event),) = recorder.events
    assert event.to_message() == {
        "type": "ice-candidate",
        "from": "a",
        "candidate": {"candidate": "candidate:1"},
    }


def test_relay_to_missing_target_is_dropped(registry: RoomRegistry, recorder: Recorder) -> None:
    registry.disconnect("b")

    assert registry.relay("a", "b", RelayKind.ANSWER, {"sdp": "x"}) is False
    assert recorder.events == []


def test_registries_are_independent(recorder: Recorder) -> None:
    first = RoomRegistry(recorder)
    second = RoomRegistry(recorder)
    first.connect("a")
    second.connect("a")

    first.join("a", "r1", "alice")

    assert first.has_room("r1")
    assert not second.has_room("r1")


def test_name_uniqueness_over_join_sequence(recorder: Recorder) -> None:
    registry = RoomRegistry(recorder)
    names = ["alice", "Alice", "bob", "ALICE", "b-o-b", "BOB", "carol", "bob "]
    for index, name in enumerate(names):
        connection_id = f"c{index}"
        registry.connect(connection_id)
        registry.join(connection_id, "room", name)

    roster = registry.roster("room")
    keys = [entry.display_name.casefold() for entry in roster]
    assert len(keys) == len(set(keys))
    assert sorted(keys) == ["alice", "b-o-b", "bob", "carol"]
