"""
Per-endpoint call lifecycle.

:class:`CallStateMachine` is the only place a :class:`CallSession` is
mutated.  Local operations (``initiate``/``accept``/``reject``/``end``) and
inbound signaling messages (``handle_message``) are transitions; transport
callbacks from the negotiator are funnelled back into the same transitions.

Every suspending step is followed by an ownership check: once a session has
been torn down, results that arrive for it are discarded and any resource they
produced is released.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from . import SignalingConfig
from .rtc.media import MediaAccessError, MediaHandle, MediaProvider, NullMediaProvider
from .rtc.negotiator import ConnectionStateCallback, NegotiationError, SessionNegotiator, TrackCallback

LOG = logging.getLogger(__name__)

STATUS_MEDIA_REQUEST = "Requesting camera and microphone access..."
STATUS_MEDIA_FAILED = "Failed to access camera/microphone"
STATUS_CONNECTING = "Connecting..."
STATUS_ACCEPTING = "Accepting call..."
STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_CONNECTION_FAILED = "Connection failed"
STATUS_CREATE_FAILED = "Failed to create call"
STATUS_ACCEPT_FAILED = "Failed to accept call"
STATUS_REJECTED = "Call rejected"
STATUS_BUSY = "User is busy"
STATUS_ENDED = "Call ended"
STATUS_SIGNALING_LOST = "Disconnected from server"


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


class CallError(RuntimeError):
    """Base class for call lifecycle errors."""


class InvalidTransition(CallError):
    """Raised when a local operation is not legal in the current state."""


class Negotiator(Protocol):
    async def create_offer(self) -> dict: ...

    async def create_answer(self, remote_offer: Dict[str, Any]) -> dict: ...

    async def apply_remote_answer(self, answer: Dict[str, Any]) -> None: ...

    async def add_remote_candidate(self, candidate: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]
NegotiatorFactory = Callable[[Optional[MediaHandle], ConnectionStateCallback], Negotiator]
CallObserver = Callable[["CallSnapshot"], None]


@dataclass(frozen=True, slots=True)
class CallSnapshot:
    """
    Immutable view of the call reported to the UI.
    """

    state: CallState
    peer_id: Optional[str] = None
    peer_name: Optional[str] = None
    status: str = ""
    muted: bool = False
    video_enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "peerId": self.peer_id,
            "peerName": self.peer_name,
            "status": self.status,
            "muted": self.muted,
            "videoEnabled": self.video_enabled,
        }


@dataclass
class CallSession:
    state: CallState
    peer_id: str
    peer_name: Optional[str] = None
    epoch: int = 0
    remote_offer: Optional[Dict[str, Any]] = None
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    media: Optional[MediaHandle] = None
    negotiator: Optional[Negotiator] = None
    timers: Dict[str, asyncio.TimerHandle] = field(default_factory=dict)

    def cancel_timer(self, name: str) -> None:
        handle = self.timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_timers(self) -> None:
        for name in list(self.timers):
            self.cancel_timer(name)

    async def release(self) -> None:
        # The negotiator owns the media once it exists.
        if self.negotiator is not None:
            await self.negotiator.close()
        elif self.media is not None:
            self.media.stop()


class CallStateMachine:
    """
    Call lifecycle for one endpoint; at most one session at a time.

    ``send`` delivers a signaling message to the server.  A second offer that
    arrives while a session exists is discarded and answered with a
    ``call-rejected`` notice carrying ``reason="busy"``.
    """

    def __init__(
        self,
        send: SendCallable,
        *,
        local_name: str = "",
        media_provider: Optional[MediaProvider] = None,
        negotiator_factory: Optional[NegotiatorFactory] = None,
        config: Optional[SignalingConfig] = None,
        on_remote_track: Optional[TrackCallback] = None,
    ) -> None:
        self._send_callable = send
        self.local_name = local_name
        self.local_id: Optional[str] = None
        self.config = config or SignalingConfig()
        self._media_provider: MediaProvider = media_provider or NullMediaProvider()
        self._on_remote_track = on_remote_track
        self._negotiator_factory: NegotiatorFactory = negotiator_factory or self._default_negotiator
        self._session: Optional[CallSession] = None
        self._status = ""
        self._epochs = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

        self._observer_counter = 0
        self._observers: Dict[int, CallObserver] = {}

    # ------------------------------------------------------------------ helpers

    def _default_negotiator(self, media: Optional[MediaHandle], on_state: ConnectionStateCallback) -> Negotiator:
        return SessionNegotiator(
            media=media,
            ice_servers=self.config.ice_servers,
            on_connection_state=on_state,
            on_track=self._on_remote_track,
        )

    def _is_current(self, session: CallSession) -> bool:
        return self._session is session

    def _publish(self, snapshot: CallSnapshot) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the call
                LOG.exception("Call observer %s failed.", token)

    def _publish_current(self) -> None:
        self._publish(self.snapshot())

    def _open_session(self, state: CallState, peer_id: str, peer_name: Optional[str]) -> CallSession:
        session = CallSession(state=state, peer_id=peer_id, peer_name=peer_name, epoch=next(self._epochs))
        self._session = session
        LOG.info("Call #%d %s with %s", session.epoch, state.value, peer_name or peer_id)
        return session

    def _set_state(self, session: CallSession, state: CallState, status: Optional[str] = None) -> None:
        if not self._is_current(session):
            return
        if session.state is not state:
            LOG.debug("Call #%d %s -> %s", session.epoch, session.state.value, state.value)
        session.state = state
        if status is not None:
            self._status = status
        self._publish_current()

    def _set_status(self, session: CallSession, status: str) -> None:
        self._set_state(session, session.state, status)

    async def _send(self, message: Dict[str, Any]) -> bool:
        try:
            await self._send_callable(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("Failed to send %s: %s", message.get("type"), exc)
            return False
        return True

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _arm_timer(self, session: CallSession, name: str, delay: float) -> None:
        if delay <= 0 or not self._is_current(session):
            return
        session.cancel_timer(name)
        loop = asyncio.get_running_loop()
        session.timers[name] = loop.call_later(delay, self._expire, session, name)

    def _expire(self, session: CallSession, name: str) -> None:
        session.timers.pop(name, None)
        if not self._is_current(session):
            return
        LOG.warning("Call #%d %s timeout expired", session.epoch, name)
        self._spawn(self._teardown(session, STATUS_CONNECTION_FAILED))

    async def _acquire_media(self, session: CallSession) -> Optional[MediaHandle]:
        try:
            media = await self._media_provider.acquire()
        except MediaAccessError as exc:
            LOG.warning("Media access failed: %s", exc)
            await self._teardown(session, STATUS_MEDIA_FAILED)
            return None
        if not self._is_current(session):
            media.stop()
            return None
        session.media = media
        return media

    def _create_negotiator(self, session: CallSession, media: MediaHandle) -> Negotiator:
        on_state = functools.partial(self._on_transport_state, session)
        negotiator = self._negotiator_factory(media, on_state)
        session.negotiator = negotiator
        return negotiator

    async def _drain_candidates(self, session: CallSession) -> None:
        negotiator = session.negotiator
        while negotiator is not None and session.pending_candidates and self._is_current(session):
            candidate = session.pending_candidates.pop(0)
            await self._add_candidate(negotiator, candidate)

    async def _add_candidate(self, negotiator: Negotiator, candidate: Dict[str, Any]) -> None:
        try:
            await negotiator.add_remote_candidate(candidate)
        except NegotiationError as exc:
            LOG.warning("Remote ICE candidate rejected: %s", exc)

    async def _negotiation_failed(self, session: CallSession, status: str, exc: BaseException) -> None:
        if not self._is_current(session):
            LOG.debug("Discarding negotiation result for ended call #%d: %s", session.epoch, exc)
            return
        if isinstance(exc, NegotiationError):
            LOG.warning("Call #%d negotiation failed: %s", session.epoch, exc)
        else:
            LOG.error("Call #%d negotiation failed", session.epoch, exc_info=exc)
        await self._teardown(session, status)

    async def _teardown(
        self,
        session: CallSession,
        status: str,
        *,
        notify: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._is_current(session):
            return
        self._session = None
        session.cancel_timers()
        session.pending_candidates.clear()
        session.state = CallState.ENDED
        self._status = status
        LOG.info("Call #%d with %s ended: %s", session.epoch, session.peer_name or session.peer_id, status)
        self._publish(CallSnapshot(CallState.ENDED, session.peer_id, session.peer_name, status))

        if notify is not None:
            await self._send(notify)
        try:
            await session.release()
        except Exception:
            LOG.exception("Failed to release resources of call #%d", session.epoch)

        if self._session is None:
            self._publish(CallSnapshot(CallState.IDLE, status=status))

    def _require_media(self, action: str) -> MediaHandle:
        session = self._session
        if session is None or session.media is None:
            raise InvalidTransition(f"cannot {action} without local media")
        return session.media

    def _on_transport_state(self, session: CallSession, state: str) -> None:
        if not self._is_current(session):
            return
        if state == "connected":
            session.cancel_timer("connect")
            session.cancel_timer("disconnect")
            if session.state is not CallState.RINGING:
                self._set_state(session, CallState.CONNECTED, STATUS_CONNECTED)
        elif state in {"failed", "closed"}:
            self._spawn(self._teardown(session, STATUS_CONNECTION_FAILED))
        elif state == "disconnected":
            self._set_status(session, STATUS_DISCONNECTED)
            self._arm_timer(session, "disconnect", self.config.disconnect_timeout)

    # ------------------------------------------------------------------ public API

    @property
    def state(self) -> CallState:
        return self._session.state if self._session is not None else CallState.IDLE

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    def snapshot(self) -> CallSnapshot:
        session = self._session
        if session is None:
            return CallSnapshot(CallState.IDLE, status=self._status)
        media = session.media
        return CallSnapshot(
            session.state,
            session.peer_id,
            session.peer_name,
            self._status,
            muted=media is not None and not media.is_enabled("audio"),
            video_enabled=media is None or media.is_enabled("video"),
        )

    def subscribe(self, callback: CallObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        callback(self.snapshot())
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    async def initiate(self, peer_id: str, peer_name: Optional[str] = None) -> None:
        if self._session is not None:
            raise InvalidTransition(f"cannot start a call while {self.state.value}")
        if self.local_id is not None and peer_id == self.local_id:
            raise InvalidTransition("cannot call yourself")

        session = self._open_session(CallState.CALLING, peer_id, peer_name)
        self._set_status(session, STATUS_MEDIA_REQUEST)
        media = await self._acquire_media(session)
        if media is None:
            return

        negotiator = self._create_negotiator(session, media)
        self._set_status(session, STATUS_CONNECTING)
        await self._drain_candidates(session)
        try:
            offer = await negotiator.create_offer()
        except Exception as exc:
            await self._negotiation_failed(session, STATUS_CREATE_FAILED, exc)
            return
        if not self._is_current(session):
            return
        await self._send({"type": "offer", "to": peer_id, "offer": offer, "fromName": self.local_name})

    async def accept(self) -> None:
        session = self._session
        if session is None or session.state is not CallState.RINGING:
            raise InvalidTransition(f"cannot accept while {self.state.value}")

        self._set_status(session, STATUS_ACCEPTING)
        media = await self._acquire_media(session)
        if media is None:
            return

        negotiator = self._create_negotiator(session, media)
        self._set_state(session, CallState.CONNECTING, STATUS_CONNECTING)
        await self._drain_candidates(session)
        try:
            answer = await negotiator.create_answer(session.remote_offer or {})
        except Exception as exc:
            await self._negotiation_failed(session, STATUS_ACCEPT_FAILED, exc)
            return
        if not self._is_current(session):
            return
        if session.state is CallState.CONNECTING:
            self._arm_timer(session, "connect", self.config.connect_timeout)
        await self._send({"type": "answer", "to": session.peer_id, "answer": answer})

    async def reject(self) -> None:
        session = self._session
        if session is None or session.state is not CallState.RINGING:
            raise InvalidTransition(f"cannot reject while {self.state.value}")
        await self._teardown(session, STATUS_REJECTED, notify={"type": "call-rejected", "to": session.peer_id})

    async def end(self) -> None:
        """Hang up; safe from any state and while any negotiation step is in flight."""

        session = self._session
        if session is None:
            return
        await self._teardown(session, STATUS_ENDED, notify={"type": "end-call", "to": session.peer_id})

    async def shutdown(self, status: str = STATUS_SIGNALING_LOST) -> None:
        """Force-end after the signaling connection is gone."""

        session = self._session
        if session is not None:
            await self._teardown(session, status)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def set_muted(self, muted: bool) -> bool:
        """Silence or restore the local microphone of the current call."""

        switched = self._require_media("mute").set_enabled("audio", not muted)
        self._publish_current()
        return switched

    def set_video_enabled(self, enabled: bool) -> bool:
        switched = self._require_media("toggle video").set_enabled("video", enabled)
        self._publish_current()
        return switched

    async def handle_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        handler = {
            "offer": self._handle_offer,
            "answer": self._handle_answer,
            "ice-candidate": self._handle_ice_candidate,
            "end-call": self._handle_end_call,
            "call-rejected": self._handle_call_rejected,
        }.get(str(message_type))
        if handler is None:
            LOG.debug("Ignoring %s message", message_type)
            return
        await handler(message)

    # ------------------------------------------------------------------ inbound

    async def _handle_offer(self, message: Dict[str, Any]) -> None:
        from_id = message.get("from")
        offer = message.get("offer")
        if not isinstance(from_id, str) or not isinstance(offer, dict):
            LOG.warning("Malformed offer message ignored")
            return
        if self._session is not None:
            LOG.info("Discarding offer from %s while %s", from_id, self.state.value)
            await self._send({"type": "call-rejected", "to": from_id, "reason": "busy"})
            return

        session = self._open_session(CallState.RINGING, from_id, message.get("fromName"))
        session.remote_offer = dict(offer)
        self._set_status(session, f"Incoming call from {session.peer_name or from_id}")

    async def _handle_answer(self, message: Dict[str, Any]) -> None:
        session = self._session
        answer = message.get("answer")
        if session is None or session.state is not CallState.CALLING or session.negotiator is None:
            LOG.debug("Ignoring answer while %s", self.state.value)
            return
        if not isinstance(answer, dict):
            LOG.warning("Malformed answer message ignored")
            return

        self._set_state(session, CallState.CONNECTING)
        try:
            await session.negotiator.apply_remote_answer(answer)
        except Exception as exc:
            await self._negotiation_failed(session, STATUS_CONNECTION_FAILED, exc)
            return
        if self._is_current(session) and session.state is CallState.CONNECTING:
            self._arm_timer(session, "connect", self.config.connect_timeout)

    async def _handle_ice_candidate(self, message: Dict[str, Any]) -> None:
        session = self._session
        candidate = message.get("candidate")
        from_id = message.get("from")
        if session is None:
            LOG.debug("Discarding ICE candidate with no active call")
            return
        if from_id is not None and from_id != session.peer_id:
            LOG.debug("Discarding ICE candidate from %s (call is with %s)", from_id, session.peer_id)
            return
        if not isinstance(candidate, dict):
            return
        if session.negotiator is None or session.pending_candidates:
            session.pending_candidates.append(dict(candidate))
            return
        await self._add_candidate(session.negotiator, candidate)

    async def _handle_end_call(self, message: Dict[str, Any]) -> None:
        session = self._session
        from_id = message.get("from")
        if session is None:
            return
        if from_id is not None and from_id != session.peer_id:
            LOG.debug("Ignoring end-call from %s (call is with %s)", from_id, session.peer_id)
            return
        await self._teardown(session, STATUS_ENDED)

    async def _handle_call_rejected(self, message: Dict[str, Any]) -> None:
        session = self._session
        if session is None or session.state is not CallState.CALLING:
            return
        if message.get("from") != session.peer_id:
            return
        status = STATUS_BUSY if message.get("reason") == "busy" else STATUS_REJECTED
        await self._teardown(session, status)


__all__ = [
    "CallError",
    "CallSession",
    "CallSnapshot",
    "CallState",
    "CallStateMachine",
    "InvalidTransition",
    "Negotiator",
    "NegotiatorFactory",
]
