"""
WebSocket signaling client.

The client owns the connection to the signaling server and feeds every inbound
message, in order, into the endpoint's :class:`~peerlink.calls.CallStateMachine`.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from . import SignalingConfig
from .calls import CallStateMachine
from .rtc.media import MediaProvider
from .rtc.negotiator import TrackCallback

LOG = logging.getLogger(__name__)

UsersCallback = Callable[[List[Dict[str, str]]], None]
ErrorCallback = Callable[[Dict[str, Any]], None]


class SignalingClient:
    """Join the directory, keep the peer list current and relay call messages."""

    def __init__(
        self,
        url: str,
        name: str,
        *,
        config: Optional[SignalingConfig] = None,
        media_provider: Optional[MediaProvider] = None,
        on_users: Optional[UsersCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_remote_track: Optional[TrackCallback] = None,
    ) -> None:
        self.url = url
        self.name = name
        self.config = config or SignalingConfig()
        self.peer_id: Optional[str] = None
        self.peers: List[Dict[str, str]] = []
        self.on_users = on_users
        self.on_error = on_error
        self.machine = CallStateMachine(
            self.send,
            local_name=name,
            media_provider=media_provider,
            config=self.config,
            on_remote_track=on_remote_track,
        )
        self.joined = asyncio.Event()
        self._ws: Optional[ClientConnection] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def send(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise ConnectionError("signaling connection is not open")
        await ws.send(json.dumps(message))

    async def run(self) -> None:
        """Connect, join and dispatch until the server goes away."""

        try:
            async with connect(self.url) as ws:
                self._ws = ws
                LOG.info("Connected to %s", self.url)
                await self.send({"type": "join", "name": self.name})
                async for raw in ws:
                    await self.dispatch(raw)
        except ConnectionClosed as exc:
            LOG.info("Signaling connection closed: %s", exc)
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            LOG.error("Failed to connect to %s: %s", self.url, exc)
        finally:
            self._ws = None
            self.joined.clear()
            await self.machine.shutdown()

    async def close(self) -> None:
        await self.machine.end()
        ws = self._ws
        if ws is not None:
            await ws.close()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run ``coro`` in the background; failures are logged, never lost."""

        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return task

    def _task_finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.warning("Background call step failed: %s", exc)

    def find_peer(self, name_or_id: str) -> Optional[Dict[str, str]]:
        for peer in self.peers:
            if peer.get("id") == name_or_id:
                return peer
        for peer in self.peers:
            if peer.get("name") == name_or_id:
                return peer
        return None

    async def dispatch(self, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        if isinstance(raw, dict):
            message = raw
        else:
            try:
                message = json.loads(raw)
            except ValueError:
                LOG.warning("Ignoring non-JSON frame from server")
                return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        if message_type == "init":
            self._handle_init(message)
        elif message_type == "users":
            self._handle_users(message)
        elif message_type == "ping":
            await self.send({"type": "pong", "ts": time.time()})
        elif message_type == "pong":
            return
        elif message_type == "error":
            payload = message.get("payload") or {}
            LOG.warning("Server error %s: %s", payload.get("code"), payload.get("message"))
            if self.on_error is not None:
                self.on_error(payload)
        else:
            await self.machine.handle_message(message)

    def _handle_init(self, message: Dict[str, Any]) -> None:
        self.peer_id = message.get("id")
        self.machine.local_id = self.peer_id
        payload = message.get("payload") or {}
        ice_servers = payload.get("iceServers")
        if isinstance(ice_servers, list):
            self.config = dataclasses.replace(self.config, ice_servers=[dict(entry) for entry in ice_servers])
            self.machine.config = self.config
        LOG.info("Assigned connection id %s", self.peer_id)

    def _handle_users(self, message: Dict[str, Any]) -> None:
        entries = message.get("list") or []
        self.peers = [
            {"id": str(entry.get("id")), "name": str(entry.get("name"))}
            for entry in entries
            if isinstance(entry, dict) and entry.get("id") != self.peer_id
        ]
        if any(isinstance(entry, dict) and entry.get("id") == self.peer_id for entry in entries):
            self.joined.set()
        if self.on_users is not None:
            self.on_users(list(self.peers))


async def wait_for_peer(client: SignalingClient, name_or_id: str, timeout: float = 30.0) -> Dict[str, str]:
    """Poll the directory until ``name_or_id`` shows up."""

    deadline = time.monotonic() + timeout
    while True:
        peer = client.find_peer(name_or_id)
        if peer is not None:
            return peer
        if time.monotonic() >= deadline:
            raise TimeoutError(f"peer {name_or_id!r} did not join within {timeout:.0f}s")
        await asyncio.sleep(0.2)


__all__ = ["SignalingClient", "wait_for_peer"]
