"""
Message relay between signaling connections.

The relay only knows connection ids and outbound channels; it has no notion of
calls.  Every delivery is a synchronous enqueue on the recipient's channel, so
messages routed by one sender reach each recipient in the order they were
routed.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

LOG = logging.getLogger(__name__)


class RouteKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    END_CALL = "end-call"
    CALL_REJECTED = "call-rejected"


class RouteOutcome(str, Enum):
    DELIVERED = "delivered"
    DROPPED_TARGET_UNREACHABLE = "dropped-target-unreachable"


class PeerChannel(Protocol):
    """Outbound side of one connection."""

    def deliver(self, message: Dict[str, Any]) -> bool:
        """Queue ``message`` for sending; return ``False`` if it cannot be accepted."""


# Kinds that fall back to a broadcast when the sender does not address them.
BROADCAST_KINDS = frozenset({RouteKind.ICE_CANDIDATE, RouteKind.END_CALL})


def build_envelope(kind: RouteKind, from_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Shape the message a recipient sees for ``kind``."""

    if kind is RouteKind.OFFER:
        return {
            "type": kind.value,
            "from": from_id,
            "fromName": payload.get("fromName"),
            "offer": payload.get("offer"),
        }
    if kind is RouteKind.ANSWER:
        return {"type": kind.value, "answer": payload.get("answer")}
    if kind is RouteKind.ICE_CANDIDATE:
        return {"type": kind.value, "from": from_id, "candidate": payload.get("candidate")}
    if kind is RouteKind.CALL_REJECTED:
        return {"type": kind.value, "from": from_id, "reason": payload.get("reason")}
    return {"type": kind.value, "from": from_id}


class Relay:
    """Route negotiation envelopes to attached channels."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._channels: Dict[str, PeerChannel] = {}

    def attach(self, peer_id: str, channel: PeerChannel) -> None:
        with self._lock:
            self._channels[peer_id] = channel

    def detach(self, peer_id: str) -> None:
        with self._lock:
            self._channels.pop(peer_id, None)

    def connected_ids(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def _deliver(self, peer_id: str, channel: PeerChannel, message: Dict[str, Any]) -> bool:
        try:
            accepted = channel.deliver(dict(message))
        except Exception:  # pragma: no cover - channel failures must not reach the sender
            LOG.exception("Delivery of %s to %s failed", message.get("type"), peer_id)
            return False
        if not accepted:
            LOG.debug("Channel %s refused %s message", peer_id, message.get("type"))
        return accepted

    def send_to(self, peer_id: str, message: Dict[str, Any]) -> RouteOutcome:
        with self._lock:
            channel = self._channels.get(peer_id)
        if channel is None:
            LOG.debug("Dropping %s for unknown peer %s", message.get("type"), peer_id)
            return RouteOutcome.DROPPED_TARGET_UNREACHABLE
        if self._deliver(peer_id, channel, message):
            return RouteOutcome.DELIVERED
        return RouteOutcome.DROPPED_TARGET_UNREACHABLE

    def broadcast(self, message: Dict[str, Any], *, exclude: Optional[str] = None) -> int:
        """Deliver ``message`` to every channel but ``exclude``; return the hit count."""

        with self._lock:
            targets = [(peer_id, channel) for peer_id, channel in self._channels.items() if peer_id != exclude]
        delivered = 0
        for peer_id, channel in targets:
            if self._deliver(peer_id, channel, message):
                delivered += 1
        return delivered

    def route(
        self,
        kind: RouteKind | str,
        from_id: str,
        to_id: Optional[str],
        payload: Mapping[str, Any],
    ) -> RouteOutcome:
        """
        Forward one negotiation message.

        ``offer``, ``answer`` and ``call-rejected`` are always unicast.
        ``ice-candidate`` and ``end-call`` are unicast when ``to_id`` is given
        and broadcast to every other connection otherwise.  Nothing is reported
        back to the sender either way.
        """

        kind = RouteKind(kind)
        envelope = build_envelope(kind, from_id, payload)

        if to_id is None:
            if kind not in BROADCAST_KINDS:
                LOG.debug("Dropping unaddressed %s from %s", kind.value, from_id)
                return RouteOutcome.DROPPED_TARGET_UNREACHABLE
            delivered = self.broadcast(envelope, exclude=from_id)
            LOG.debug("Broadcast %s from %s to %d peer(s)", kind.value, from_id, delivered)
            if delivered:
                return RouteOutcome.DELIVERED
            return RouteOutcome.DROPPED_TARGET_UNREACHABLE

        outcome = self.send_to(to_id, envelope)
        LOG.debug("Routed %s from %s to %s: %s", kind.value, from_id, to_id, outcome.value)
        return outcome


__all__ = ["BROADCAST_KINDS", "PeerChannel", "Relay", "RouteKind", "RouteOutcome", "build_envelope"]
