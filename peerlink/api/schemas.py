"""
Pydantic schemas mirroring the signaling WebSocket contract.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator


class SessionDescriptionModel(BaseModel):
    type: str
    sdp: str

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in {"offer", "answer", "pranswer", "rollback"}:
            raise ValueError(f"unsupported description type '{value}'")
        return result


class IceCandidateModel(BaseModel):
    candidate: str = ""
    sdp_mid: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("sdpMid", "sdp_mid"), serialization_alias="sdpMid"
    )
    sdp_mline_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMLineIndex", "sdp_mline_index"),
        serialization_alias="sdpMLineIndex",
    )
    username_fragment: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("usernameFragment", "username_fragment"),
        serialization_alias="usernameFragment",
    )

    model_config = ConfigDict(populate_by_name=True)


class PeerModel(BaseModel):
    id: str
    name: str


class JoinMessage(BaseModel):
    name: str

    @validator("name", pre=True)
    def _normalise_name(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("name is required")
        return result


class OfferMessage(BaseModel):
    to: str
    offer: SessionDescriptionModel
    from_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("fromName", "from_name")
    )


class AnswerMessage(BaseModel):
    to: str
    answer: SessionDescriptionModel


class IceCandidateMessage(BaseModel):
    candidate: IceCandidateModel
    to: Optional[str] = None


class EndCallMessage(BaseModel):
    to: Optional[str] = None


class CallRejectedMessage(BaseModel):
    to: str
    reason: Optional[str] = None


class ErrorPayload(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
