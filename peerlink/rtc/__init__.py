"""
WebRTC helpers.
"""

from __future__ import annotations

from .ice import ICECandidate, build_rtc_configuration
from .media import MediaAccessError, MediaHandle, MediaProvider, media_provider_for
from .negotiator import NegotiationError, SessionNegotiator

__all__ = [
    "ICECandidate",
    "MediaAccessError",
    "MediaHandle",
    "MediaProvider",
    "NegotiationError",
    "SessionNegotiator",
    "build_rtc_configuration",
    "media_provider_for",
]
