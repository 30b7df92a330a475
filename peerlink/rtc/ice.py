"""
ICE candidate and ICE server helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

CANDIDATE_PREFIX = "candidate:"


@dataclass
class ICECandidate:
    """Serialisable ICE candidate container in the browser ``RTCIceCandidateInit`` shape."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ICECandidate":
        index = payload.get("sdpMLineIndex", payload.get("sdp_mline_index"))
        return cls(
            candidate=str(payload.get("candidate") or ""),
            sdp_mid=payload.get("sdpMid", payload.get("sdp_mid")),
            sdp_mline_index=int(index) if index is not None else None,
        )

    @classmethod
    def from_aiortc(cls, candidate: RTCIceCandidate) -> "ICECandidate":
        return cls(
            candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
            sdp_mid=candidate.sdpMid,
            sdp_mline_index=candidate.sdpMLineIndex,
        )

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    def to_aiortc(self) -> RTCIceCandidate:
        text = self.candidate.strip()
        if text.startswith(CANDIDATE_PREFIX):
            text = text[len(CANDIDATE_PREFIX):]
        parsed = candidate_from_sdp(text)
        parsed.sdpMid = self.sdp_mid
        parsed.sdpMLineIndex = self.sdp_mline_index
        return parsed


def build_rtc_configuration(ice_servers: Iterable[Mapping[str, Any]]) -> RTCConfiguration:
    """
    Translate browser-style ``iceServers`` entries into an aiortc configuration.
    """

    servers: List[RTCIceServer] = []
    for entry in ice_servers:
        urls = entry.get("urls")
        if not urls:
            continue
        kwargs: Dict[str, Any] = {"urls": urls}
        if entry.get("username"):
            kwargs["username"] = str(entry["username"])
        if entry.get("credential"):
            kwargs["credential"] = str(entry["credential"])
        servers.append(RTCIceServer(**kwargs))
    return RTCConfiguration(iceServers=servers)


__all__ = ["CANDIDATE_PREFIX", "ICECandidate", "build_rtc_configuration"]
