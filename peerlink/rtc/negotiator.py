"""
Session negotiation for one call attempt.

:class:`SessionNegotiator` wraps a single :class:`aiortc.RTCPeerConnection`.
aiortc finishes ICE gathering inside ``setLocalDescription`` so local
candidates travel inside the SDP; remote candidates may still trickle in from
browser peers and are buffered until the remote description exists.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from aiortc import MediaStreamTrack, RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from .ice import ICECandidate, build_rtc_configuration
from .media import MediaHandle

LOG = logging.getLogger(__name__)

ConnectionStateCallback = Callable[[str], None]
TrackCallback = Callable[[MediaStreamTrack], None]
PeerConnectionFactory = Callable[[RTCConfiguration], Any]

_AIORTC_ERRORS = (InvalidAccessError, InvalidStateError, ValueError)


class NegotiationError(RuntimeError):
    """Raised when a description cannot be produced or applied."""


def _default_factory(configuration: RTCConfiguration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


def _description_from(payload: Mapping[str, Any], expected: str) -> RTCSessionDescription:
    kind = str(payload.get("type") or "").lower()
    sdp = payload.get("sdp")
    if kind != expected or not isinstance(sdp, str) or not sdp:
        raise NegotiationError(f"expected a {expected} description, got type={kind!r}")
    return RTCSessionDescription(sdp=sdp, type=kind)


class SessionNegotiator:
    """
    Own the peer connection and local media of one call attempt.

    ``close()`` may be called any number of times; the peer connection is
    closed and the media released exactly once.
    """

    def __init__(
        self,
        *,
        media: Optional[MediaHandle] = None,
        ice_servers: Iterable[Mapping[str, Any]] = (),
        on_connection_state: Optional[ConnectionStateCallback] = None,
        on_track: Optional[TrackCallback] = None,
        peer_connection_factory: Optional[PeerConnectionFactory] = None,
    ) -> None:
        factory = peer_connection_factory or _default_factory
        self._pc = factory(build_rtc_configuration(ice_servers))
        self._media = media
        self._on_connection_state = on_connection_state
        self._on_track = on_track
        self._media_attached = False
        self._remote_description_set = False
        self._pending: List[ICECandidate] = []
        self._closed = False

        self._pc.on("connectionstatechange", self._handle_connection_state)
        self._pc.on("track", self._handle_track)

    # ------------------------------------------------------------------ helpers

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection_state(self) -> str:
        return str(self._pc.connectionState)

    @property
    def pending_candidates(self) -> Tuple[ICECandidate, ...]:
        return tuple(self._pending)

    @property
    def has_remote_description(self) -> bool:
        return self._remote_description_set

    def _ensure_open(self) -> None:
        if self._closed:
            raise NegotiationError("negotiator is closed")

    def _attach_media(self, *, offering: bool) -> None:
        if self._media_attached:
            return
        self._media_attached = True
        tracks = list(self._media.tracks) if self._media else []
        for track in tracks:
            self._pc.addTrack(track)
        if offering:
            kinds = {track.kind for track in tracks}
            # Receive-only offers still need m-lines for the remote media.
            for kind in ("audio", "video"):
                if kind not in kinds:
                    self._pc.addTransceiver(kind, direction="recvonly")

    def _local_description(self) -> dict:
        local = self._pc.localDescription
        return {"type": local.type, "sdp": local.sdp}

    def _handle_connection_state(self) -> None:
        if self._closed:
            return
        state = self.connection_state
        LOG.debug("Peer connection state is %s", state)
        if self._on_connection_state is not None:
            self._on_connection_state(state)

    def _handle_track(self, track: MediaStreamTrack) -> None:
        LOG.info("Remote %s track received", track.kind)
        if self._on_track is not None and not self._closed:
            self._on_track(track)

    async def _set_remote_description(self, description: RTCSessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(description)
        except _AIORTC_ERRORS as exc:
            raise NegotiationError(f"remote {description.type} rejected: {exc}") from exc
        await self._flush_candidates()
        self._remote_description_set = True

    async def _flush_candidates(self) -> None:
        # Candidates arriving mid-flush keep queueing behind the buffer.
        while self._pending and not self._closed:
            await self._apply_candidate(self._pending.pop(0))

    async def _apply_candidate(self, candidate: ICECandidate) -> None:
        # candidate_from_sdp asserts on truncated candidate lines.
        try:
            await self._pc.addIceCandidate(candidate.to_aiortc())
        except (*_AIORTC_ERRORS, IndexError, AssertionError) as exc:
            LOG.warning("Skipping remote ICE candidate %r: %s", candidate.candidate, exc)

    # ------------------------------------------------------------------ public API

    async def create_offer(self) -> dict:
        self._ensure_open()
        self._attach_media(offering=True)
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except _AIORTC_ERRORS as exc:
            raise NegotiationError(f"failed to create offer: {exc}") from exc
        return self._local_description()

    async def create_answer(self, remote_offer: Mapping[str, Any]) -> dict:
        self._ensure_open()
        await self._set_remote_description(_description_from(remote_offer, "offer"))
        self._ensure_open()
        self._attach_media(offering=False)
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except _AIORTC_ERRORS as exc:
            raise NegotiationError(f"failed to create answer: {exc}") from exc
        return self._local_description()

    async def apply_remote_answer(self, answer: Mapping[str, Any]) -> None:
        self._ensure_open()
        await self._set_remote_description(_description_from(answer, "answer"))

    async def add_remote_candidate(self, candidate: Union[ICECandidate, Mapping[str, Any]]) -> None:
        """
        Apply a remote candidate, or buffer it until the remote description is set.

        Late candidates after :meth:`close` are ignored.
        """

        if self._closed:
            return
        try:
            parsed = candidate if isinstance(candidate, ICECandidate) else ICECandidate.from_dict(candidate)
        except (TypeError, ValueError) as exc:
            LOG.warning("Malformed remote ICE candidate ignored: %s", exc)
            return
        if parsed.is_end_of_candidates:
            return
        if not self._remote_description_set:
            self._pending.append(parsed)
            return
        await self._apply_candidate(parsed)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        try:
            await self._pc.close()
        finally:
            if self._media is not None:
                self._media.stop()


__all__ = ["NegotiationError", "PeerConnectionFactory", "SessionNegotiator"]
