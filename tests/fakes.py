"""Test doubles shared by the relay, negotiator and call tests."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from peerlink.rtc.media import MediaAccessError, MediaHandle


class RecordingChannel:
    """Relay channel that keeps every delivered message."""

    def __init__(self, *, accept: bool = True) -> None:
        self.accept = accept
        self.messages: List[Dict[str, Any]] = []

    def deliver(self, message: Dict[str, Any]) -> bool:
        if not self.accept:
            return False
        self.messages.append(message)
        return True

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.messages if message.get("type") == message_type]


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1


class FakeMediaProvider:
    def __init__(self, *, fail: bool = False, gate: Optional[asyncio.Event] = None) -> None:
        self.fail = fail
        self.gate = gate
        self.handles: List[MediaHandle] = []

    async def acquire(self) -> MediaHandle:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise MediaAccessError("permission denied")
        handle = MediaHandle(tracks=[FakeTrack("audio"), FakeTrack("video")], label="fake")
        self.handles.append(handle)
        return handle


class FakeNegotiator:
    """
    Stand-in for :class:`peerlink.rtc.negotiator.SessionNegotiator`.

    ``offer_gate`` / ``answer_gate`` hold the corresponding step in flight
    until the test sets them.
    """

    def __init__(self, media: Optional[MediaHandle], on_state: Callable[[str], None]) -> None:
        self.media = media
        self.on_state = on_state
        self.offer_gate: Optional[asyncio.Event] = None
        self.answer_gate: Optional[asyncio.Event] = None
        self.fail_answer = False
        self.remote_offer: Optional[dict] = None
        self.remote_answer: Optional[dict] = None
        self.candidates: List[dict] = []
        self.close_calls = 0

    async def create_offer(self) -> dict:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return {"type": "offer", "sdp": "v=0\r\no=- offer\r\n"}

    async def create_answer(self, remote_offer: Dict[str, Any]) -> dict:
        self.remote_offer = dict(remote_offer)
        if self.answer_gate is not None:
            await self.answer_gate.wait()
        if self.fail_answer:
            raise RuntimeError("remote description rejected")
        return {"type": "answer", "sdp": "v=0\r\no=- answer\r\n"}

    async def apply_remote_answer(self, answer: Dict[str, Any]) -> None:
        self.remote_answer = dict(answer)

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None:
        self.candidates.append(dict(candidate))

    async def close(self) -> None:
        self.close_calls += 1
        if self.media is not None:
            self.media.stop()

    def report(self, state: str) -> None:
        self.on_state(state)


class NegotiatorFactory:
    def __init__(self, configure: Optional[Callable[[FakeNegotiator], None]] = None) -> None:
        self.configure = configure
        self.created: List[FakeNegotiator] = []

    def __call__(self, media: Optional[MediaHandle], on_state: Callable[[str], None]) -> FakeNegotiator:
        negotiator = FakeNegotiator(media, on_state)
        if self.configure is not None:
            self.configure(negotiator)
        self.created.append(negotiator)
        return negotiator

    @property
    def last(self) -> FakeNegotiator:
        return self.created[-1]


class SentMessages:
    """Async ``send`` callable that records outbound signaling messages."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def __call__(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message in self.messages if message.get("type") == message_type]


class FakePeerConnection:
    """Minimal ``RTCPeerConnection`` surface used by the negotiator."""

    def __init__(self, configuration: Any = None) -> None:
        self.configuration = configuration
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.connectionState = "new"
        self.localDescription: Optional[SimpleNamespace] = None
        self.remoteDescription: Any = None
        self.reject_remote = False
        self.slow_candidates = False
        self.added_candidates: List[Any] = []
        self.tracks: List[Any] = []
        self.transceivers: List[tuple] = []
        self.close_calls = 0

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers[event] = handler

    def emit_state(self, state: str) -> None:
        self.connectionState = state
        self.handlers["connectionstatechange"]()

    def addTrack(self, track: Any) -> None:
        self.tracks.append(track)

    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> None:
        self.transceivers.append((kind, direction))

    async def createOffer(self) -> SimpleNamespace:
        return SimpleNamespace(type="offer", sdp="v=0\r\no=- local-offer\r\n")

    async def createAnswer(self) -> SimpleNamespace:
        if self.remoteDescription is None:
            raise ValueError("no remote description")
        return SimpleNamespace(type="answer", sdp="v=0\r\no=- local-answer\r\n")

    async def setLocalDescription(self, description: Any) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: Any) -> None:
        await asyncio.sleep(0)
        if self.reject_remote:
            raise ValueError("bad sdp")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate: Any) -> None:
        if self.remoteDescription is None:
            raise ValueError("remote description is not set")
        if self.slow_candidates:
            # aiortc suspends here while resolving mDNS host candidates.
            await asyncio.sleep(0)
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1
        self.connectionState = "closed"
