"""
FastAPI signaling surface for PeerLink.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import SignalingConfig
from ..directory import Snapshot, snapshot_to_list
from ..relay import RouteKind, RouteOutcome
from ..utils.profiles import ProfileError, load_profiles
from . import schemas
from .state import HubState

LOG = logging.getLogger(__name__)

ROUTED_TYPES = {kind.value for kind in RouteKind}


class SignalingSession:
    """Track per-connection state and orchestrate send/receive loops."""

    def __init__(self, hub: "SignalingHub", websocket: WebSocket, *, queue_size: int) -> None:
        self.hub = hub
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.joined = False
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.session_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - handshake failure
            self.logger.exception("Failed to accept WebSocket connection")
            return

        self.hub.initialise_session(self)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
                if self.hub.join_timeout > 0:
                    task_group.create_task(self._join_watchdog())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - loop crash
            self.logger.exception("Signaling session crashed")
        finally:
            self.hub.finalise_session(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def deliver(self, message: Dict[str, Any]) -> bool:
        if self.is_stopped:
            return False
        try:
            self.send_queue.put_nowait(message)
        except asyncio.QueueFull:
            self.logger.warning("Outbound queue full; dropping %s message", message.get("type"))
            return False
        return True

    def send_error(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        payload = schemas.ErrorPayload(code=code, message=message, details=details)
        self.deliver({"type": "error", "payload": payload.model_dump(exclude_none=True)})

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except ValueError:
                    self.send_error("E_INVALID_JSON", "frames must be JSON objects")
                    continue
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(message, dict):
                    self.send_error("E_INVALID_JSON", "frames must be JSON objects")
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == "ping":
                    self.deliver({"type": "pong", "ts": time.time()})
                    continue

                try:
                    self.hub.handle_message(self, message)
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing %s", msg_type)
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover - transport failure
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _wait_stopped(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _keepalive_loop(self) -> None:
        if self.hub.ping_interval <= 0:
            return
        while not self.is_stopped:
            if await self._wait_stopped(self.hub.ping_interval):
                break
            self.deliver({"type": "ping", "ts": time.time()})
            if (time.monotonic() - self.last_pong) > self.hub.pong_timeout:
                self.logger.warning("Ping timeout; closing signaling session")
                await self.close(code=1011, reason="ping timeout")
                break

    async def _join_watchdog(self) -> None:
        if await self._wait_stopped(self.hub.join_timeout):
            return
        if not self.joined:
            self.logger.info("No join within %.1fs; closing", self.hub.join_timeout)
            await self.close(code=1008, reason="join timeout")


class SignalingHub:
    """Own the open signaling sessions and dispatch their messages."""

    def __init__(self, state: HubState) -> None:
        config = state.config
        self.state = state
        self.queue_size = max(1, int(config.queue_size))
        self.ping_interval = max(0.0, float(config.ping_interval))
        self.pong_timeout = max(self.ping_interval, float(config.pong_timeout))
        self.join_timeout = max(0.0, float(config.join_timeout))

        self._sessions: Dict[str, SignalingSession] = {}
        self._directory_subscription: Optional[int] = state.directory.subscribe(self._broadcast_users)

    @property
    def sessions(self) -> Dict[str, SignalingSession]:
        return dict(self._sessions)

    async def stop(self) -> None:
        if self._directory_subscription is not None:
            self.state.directory.unsubscribe(self._directory_subscription)
            self._directory_subscription = None
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(
                *[session.close(code=1001, reason="server shutdown") for session in sessions],
                return_exceptions=True,
            )

    async def run(self, websocket: WebSocket) -> None:
        session = SignalingSession(self, websocket, queue_size=self.queue_size)
        await session.run()

    def initialise_session(self, session: SignalingSession) -> None:
        self._sessions[session.session_id] = session
        self.state.relay.attach(session.session_id, session)
        session.deliver(
            {
                "type": "init",
                "id": session.session_id,
                "payload": {
                    "profile": self.state.config.profile,
                    "iceServers": self.state.ice_servers(),
                },
            }
        )
        LOG.info("Signaling client connected session=%s", session.session_id)

    def finalise_session(self, session: SignalingSession) -> None:
        self._sessions.pop(session.session_id, None)
        self.state.relay.detach(session.session_id)
        self.state.directory.remove(session.session_id)
        LOG.info("Signaling client disconnected session=%s", session.session_id)

    def _broadcast_users(self, snapshot: Snapshot) -> None:
        message = {"type": "users", "list": snapshot_to_list(snapshot)}
        self.state.relay.broadcast(message)

    def handle_message(self, session: SignalingSession, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if not isinstance(message_type, str):
            session.send_error("E_INVALID_PAYLOAD", "message requires a string type")
            return

        if message_type == "join":
            self._handle_join(session, message)
            return

        if message_type in ROUTED_TYPES:
            if not session.joined:
                session.send_error("E_NOT_JOINED", f"{message_type} requires join first")
                return
            try:
                self._route(session, RouteKind(message_type), message)
            except ValidationError as exc:
                session.send_error(
                    "E_INVALID_PAYLOAD",
                    f"invalid {message_type} payload",
                    {"errors": exc.errors(include_url=False, include_context=False)},
                )
            return

        session.send_error("E_UNKNOWN_TYPE", f"unsupported message type '{message_type}'")

    def _handle_join(self, session: SignalingSession, message: Dict[str, Any]) -> None:
        try:
            join = schemas.JoinMessage.model_validate(message)
        except ValidationError as exc:
            session.send_error(
                "E_INVALID_PAYLOAD",
                "join requires a non-empty name",
                {"errors": exc.errors(include_url=False, include_context=False)},
            )
            return
        session.joined = True
        self.state.directory.register(session.session_id, join.name)

    def _route(self, session: SignalingSession, kind: RouteKind, message: Dict[str, Any]) -> RouteOutcome:
        sender = session.session_id
        relay = self.state.relay

        if kind is RouteKind.OFFER:
            offer = schemas.OfferMessage.model_validate(message)
            from_name = offer.from_name
            if not from_name:
                peer = self.state.directory.get(sender)
                from_name = peer.name if peer else None
            payload = {"offer": offer.offer.model_dump(), "fromName": from_name}
            return relay.route(kind, sender, offer.to, payload)

        if kind is RouteKind.ANSWER:
            answer = schemas.AnswerMessage.model_validate(message)
            return relay.route(kind, sender, answer.to, {"answer": answer.answer.model_dump()})

        if kind is RouteKind.ICE_CANDIDATE:
            candidate = schemas.IceCandidateMessage.model_validate(message)
            payload = {"candidate": candidate.candidate.model_dump(by_alias=True, exclude_none=True)}
            return relay.route(kind, sender, candidate.to, payload)

        if kind is RouteKind.CALL_REJECTED:
            rejected = schemas.CallRejectedMessage.model_validate(message)
            return relay.route(kind, sender, rejected.to, {"reason": rejected.reason})

        end_call = schemas.EndCallMessage.model_validate(message)
        return relay.route(kind, sender, end_call.to, {})


def create_app(
    *,
    state: Optional[HubState] = None,
    config: Optional[SignalingConfig] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    hub_state = state or HubState(config=config or SignalingConfig())
    hub = SignalingHub(hub_state)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await hub.stop()

    app = FastAPI(title="PeerLink Signaling API", lifespan=app_lifespan)
    app.state.hub = hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(hub_state.config.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.websocket("/signaling")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await hub.run(websocket)

    @app.get("/")
    async def index() -> dict:
        return {"message": "WebRTC Signaling Server is running!"}

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", **hub_state.snapshot()}

    @app.get("/peers", response_model=List[schemas.PeerModel])
    async def list_peers() -> list:
        return snapshot_to_list(hub_state.directory.snapshot())

    @app.get("/profiles")
    async def list_profiles() -> dict:
        try:
            profiles = load_profiles()
        except ProfileError as exc:
            LOG.warning("Failed to read profiles: %s", exc)
            profiles = {}
        return {"active": hub_state.config.profile, "profiles": profiles}

    return app
