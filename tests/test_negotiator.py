"""Tests covering candidate buffering and teardown of the session negotiator."""

from __future__ import annotations

import asyncio

import pytest

from peerlink.rtc.ice import ICECandidate, build_rtc_configuration
from peerlink.rtc.media import MediaHandle
from peerlink.rtc.negotiator import NegotiationError, SessionNegotiator

from .fakes import FakePeerConnection, FakeTrack

REMOTE_OFFER = {"type": "offer", "sdp": "v=0\r\no=- remote-offer\r\n"}
REMOTE_ANSWER = {"type": "answer", "sdp": "v=0\r\no=- remote-answer\r\n"}


def _candidate(port: int) -> dict:
    return {
        "candidate": f"candidate:1 1 udp 2130706431 192.0.2.1 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


def _negotiator(**kwargs) -> tuple[SessionNegotiator, FakePeerConnection]:
    created = []

    def factory(configuration):
        pc = FakePeerConnection(configuration)
        created.append(pc)
        return pc

    negotiator = SessionNegotiator(peer_connection_factory=factory, **kwargs)
    return negotiator, created[0]


def test_candidates_before_remote_description_are_buffered_in_order() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()

        for port in (5000, 5001, 5002):
            await negotiator.add_remote_candidate(_candidate(port))

        assert pc.added_candidates == []
        assert [c.candidate.split()[5] for c in negotiator.pending_candidates] == ["5000", "5001", "5002"]

        answer = await negotiator.create_answer(REMOTE_OFFER)

        assert answer["type"] == "answer"
        assert negotiator.pending_candidates == ()
        assert [c.port for c in pc.added_candidates] == [5000, 5001, 5002]
        assert all(c.sdpMid == "0" and c.sdpMLineIndex == 0 for c in pc.added_candidates)

        await negotiator.add_remote_candidate(_candidate(5003))
        assert [c.port for c in pc.added_candidates] == [5000, 5001, 5002, 5003]

    asyncio.run(scenario())


def test_candidate_arriving_during_flush_waits_its_turn() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()
        pc.slow_candidates = True
        for port in (5000, 5001, 5002):
            await negotiator.add_remote_candidate(_candidate(port))

        task = asyncio.create_task(negotiator.create_answer(REMOTE_OFFER))
        while not pc.added_candidates:
            await asyncio.sleep(0)
        assert not negotiator.has_remote_description
        await negotiator.add_remote_candidate(_candidate(5003))
        await task

        assert [c.port for c in pc.added_candidates] == [5000, 5001, 5002, 5003]
        assert negotiator.has_remote_description

    asyncio.run(scenario())


def test_offerer_flushes_after_remote_answer() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()

        offer = await negotiator.create_offer()
        await negotiator.add_remote_candidate(_candidate(6000))
        assert pc.added_candidates == []

        await negotiator.apply_remote_answer(REMOTE_ANSWER)

        assert offer == {"type": "offer", "sdp": "v=0\r\no=- local-offer\r\n"}
        assert [c.port for c in pc.added_candidates] == [6000]
        assert negotiator.has_remote_description

    asyncio.run(scenario())


def test_receive_only_offer_adds_transceivers() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()
        await negotiator.create_offer()
        assert pc.transceivers == [("audio", "recvonly"), ("video", "recvonly")]

    asyncio.run(scenario())


def test_local_tracks_are_attached() -> None:
    async def scenario() -> None:
        media = MediaHandle(tracks=[FakeTrack("audio"), FakeTrack("video")])
        negotiator, pc = _negotiator(media=media)
        await negotiator.create_offer()
        assert [track.kind for track in pc.tracks] == ["audio", "video"]
        assert pc.transceivers == []

    asyncio.run(scenario())


def test_malformed_and_end_of_candidates_are_ignored() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()
        await negotiator.create_answer(REMOTE_OFFER)

        await negotiator.add_remote_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
        await negotiator.add_remote_candidate({"candidate": "candidate:1 1 udp", "sdpMid": "0", "sdpMLineIndex": 0})
        await negotiator.add_remote_candidate({"candidate": "candidate:x", "sdpMLineIndex": "zero"})
        await negotiator.add_remote_candidate(_candidate(7000))

        assert [c.port for c in pc.added_candidates] == [7000]

    asyncio.run(scenario())


def test_rejected_remote_description_raises_negotiation_error() -> None:
    async def scenario() -> None:
        negotiator, pc = _negotiator()
        pc.reject_remote = True
        await negotiator.add_remote_candidate(_candidate(5000))

        with pytest.raises(NegotiationError):
            await negotiator.create_answer(REMOTE_OFFER)
        assert pc.added_candidates == []

        with pytest.raises(NegotiationError):
            await negotiator.apply_remote_answer({"type": "offer", "sdp": "v=0"})

    asyncio.run(scenario())


def test_close_is_idempotent_and_releases_media_once() -> None:
    async def scenario() -> None:
        tracks = [FakeTrack("audio"), FakeTrack("video")]
        states = []
        negotiator, pc = _negotiator(media=MediaHandle(tracks=tracks), on_connection_state=states.append)

        pc.emit_state("connecting")
        await negotiator.close()
        await negotiator.close()
        pc.emit_state("closed")

        assert pc.close_calls == 1
        assert [track.stop_calls for track in tracks] == [1, 1]
        assert states == ["connecting"]
        assert negotiator.closed

        with pytest.raises(NegotiationError):
            await negotiator.create_offer()
        await negotiator.add_remote_candidate(_candidate(5000))

    asyncio.run(scenario())


def test_ice_candidate_round_trip_through_aiortc() -> None:
    payload = {
        "candidate": "candidate:842163049 1 udp 1677729535 198.51.100.7 50000 typ srflx raddr 0.0.0.0 rport 0",
        "sdpMid": "1",
        "sdpMLineIndex": 1,
    }
    parsed = ICECandidate.from_dict(payload)
    native = parsed.to_aiortc()

    assert native.ip == "198.51.100.7"
    assert native.port == 50000
    assert native.type == "srflx"
    assert native.relatedAddress == "0.0.0.0"
    assert ICECandidate.from_aiortc(native).to_dict()["sdpMid"] == "1"


def test_build_rtc_configuration_keeps_credentials() -> None:
    configuration = build_rtc_configuration(
        [
            {"urls": "stun:stun.example.org:3478"},
            {"urls": ["turn:turn.example.org"], "username": "u", "credential": "p"},
            {"urls": ""},
        ]
    )

    assert len(configuration.iceServers) == 2
    assert configuration.iceServers[1].username == "u"
    assert configuration.iceServers[1].credential == "p"
