"""HTTP and WebSocket surface of the signaling server."""

from .server import SignalingHub, SignalingSession, create_app
from .state import HubState

__all__ = ["HubState", "SignalingHub", "SignalingSession", "create_app"]
