"""
PeerLink signaling package.

The server half keeps a directory of connected peers and relays negotiation
envelopes between them.  The client half runs a call state machine per
endpoint and drives an ``aiortc`` peer connection for each call attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

__all__ = [
    "SignalingConfig",
]


@dataclass
class SignalingConfig:
    """Tuning knobs shared by the signaling server and the call client."""

    profile: str = "default"
    ice_servers: List[Dict[str, object]] = field(
        default_factory=lambda: [{"urls": "stun:stun.l.google.com:19302"}]
    )
    queue_size: int = 256
    ping_interval: float = 30.0
    pong_timeout: float = 60.0
    join_timeout: float = 0.0
    connect_timeout: float = 30.0
    disconnect_timeout: float = 10.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def to_dict(self) -> dict:
        return {
            "profile": self.profile,
            "iceServers": [dict(server) for server in self.ice_servers],
            "queueSize": int(self.queue_size),
            "pingInterval": float(self.ping_interval),
            "pongTimeout": float(self.pong_timeout),
            "joinTimeout": float(self.join_timeout),
            "connectTimeout": float(self.connect_timeout),
            "disconnectTimeout": float(self.disconnect_timeout),
            "corsOrigins": list(self.cors_origins),
        }
