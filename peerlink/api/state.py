"""
Shared signaling server state container.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .. import SignalingConfig
from ..directory import Directory, snapshot_to_list
from ..relay import Relay


@dataclass
class HubState:
    """
    Aggregated state shared between the WebSocket hub and the HTTP routes.

    The directory is the only process-wide mutable map; the relay only mirrors
    which connections are open.
    """

    config: SignalingConfig = field(default_factory=SignalingConfig)
    directory: Directory = field(default_factory=Directory)
    relay: Relay = field(default_factory=Relay)
    started_at: float = field(default_factory=time.time)

    def snapshot(self) -> dict:
        return {
            "profile": self.config.profile,
            "peers": snapshot_to_list(self.directory.snapshot()),
            "connections": len(self.relay.connected_ids()),
            "uptime": max(0.0, time.time() - self.started_at),
        }

    def ice_servers(self) -> list:
        return [dict(server) for server in self.config.ice_servers]
