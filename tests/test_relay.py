"""Tests covering relay routing rules."""

from __future__ import annotations

from peerlink.relay import Relay, RouteKind, RouteOutcome

from .fakes import RecordingChannel

OFFER = {"type": "offer", "sdp": "v=0\r\n"}
CANDIDATE = {"candidate": "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


def _relay_with(*peer_ids: str) -> tuple[Relay, dict[str, RecordingChannel]]:
    relay = Relay()
    channels = {}
    for peer_id in peer_ids:
        channels[peer_id] = RecordingChannel()
        relay.attach(peer_id, channels[peer_id])
    return relay, channels


def test_offer_is_unicast_with_sender_identity() -> None:
    relay, channels = _relay_with("a1", "b1", "c1")

    outcome = relay.route(RouteKind.OFFER, "a1", "b1", {"offer": OFFER, "fromName": "Alice"})

    assert outcome is RouteOutcome.DELIVERED
    assert channels["b1"].messages == [{"type": "offer", "from": "a1", "fromName": "Alice", "offer": OFFER}]
    assert channels["a1"].messages == []
    assert channels["c1"].messages == []


def test_answer_carries_only_the_answer() -> None:
    relay, channels = _relay_with("a1", "b1")
    answer = {"type": "answer", "sdp": "v=0\r\n"}

    outcome = relay.route("answer", "b1", "a1", {"answer": answer})

    assert outcome is RouteOutcome.DELIVERED
    assert channels["a1"].messages == [{"type": "answer", "answer": answer}]
    assert channels["b1"].messages == []


def test_unaddressed_ice_candidate_is_broadcast_to_everyone_but_sender() -> None:
    # Unaddressed candidates keep the legacy broadcast; receivers filter by ``from``.
    relay, channels = _relay_with("a1", "b1", "c1")

    outcome = relay.route(RouteKind.ICE_CANDIDATE, "a1", None, {"candidate": CANDIDATE})

    assert outcome is RouteOutcome.DELIVERED
    expected = {"type": "ice-candidate", "from": "a1", "candidate": CANDIDATE}
    assert channels["b1"].messages == [expected]
    assert channels["c1"].messages == [expected]
    assert channels["a1"].messages == []


def test_addressed_ice_candidate_is_unicast() -> None:
    relay, channels = _relay_with("a1", "b1", "c1")

    relay.route(RouteKind.ICE_CANDIDATE, "a1", "b1", {"candidate": CANDIDATE})

    assert len(channels["b1"].messages) == 1
    assert channels["c1"].messages == []


def test_end_call_broadcast_and_unicast() -> None:
    relay, channels = _relay_with("a1", "b1", "c1")

    relay.route(RouteKind.END_CALL, "b1", None, {})
    relay.route(RouteKind.END_CALL, "b1", "a1", {})

    assert channels["a1"].messages == [{"type": "end-call", "from": "b1"}] * 2
    assert channels["c1"].messages == [{"type": "end-call", "from": "b1"}]
    assert channels["b1"].messages == []


def test_routing_to_vanished_peer_is_dropped() -> None:
    relay, channels = _relay_with("a1", "b1")
    relay.detach("b1")

    outcome = relay.route(RouteKind.OFFER, "a1", "b1", {"offer": OFFER})

    assert outcome is RouteOutcome.DROPPED_TARGET_UNREACHABLE
    assert channels["b1"].messages == []


def test_broadcast_with_no_other_peers_is_dropped() -> None:
    relay, _ = _relay_with("a1")

    assert relay.route(RouteKind.ICE_CANDIDATE, "a1", None, {"candidate": CANDIDATE}) is (
        RouteOutcome.DROPPED_TARGET_UNREACHABLE
    )


def test_refusing_channel_counts_as_unreachable() -> None:
    relay = Relay()
    relay.attach("b1", RecordingChannel(accept=False))

    assert relay.route(RouteKind.CALL_REJECTED, "a1", "b1", {"reason": "busy"}) is (
        RouteOutcome.DROPPED_TARGET_UNREACHABLE
    )


def test_unaddressed_offer_is_dropped() -> None:
    relay, channels = _relay_with("a1", "b1")

    assert relay.route(RouteKind.OFFER, "a1", None, {"offer": OFFER}) is RouteOutcome.DROPPED_TARGET_UNREACHABLE
    assert channels["b1"].messages == []


def test_messages_from_one_sender_keep_their_order() -> None:
    relay, channels = _relay_with("a1", "b1")

    for index in range(5):
        relay.route(RouteKind.ICE_CANDIDATE, "a1", "b1", {"candidate": {**CANDIDATE, "sdpMLineIndex": index}})

    indexes = [message["candidate"]["sdpMLineIndex"] for message in channels["b1"].messages]
    assert indexes == [0, 1, 2, 3, 4]
