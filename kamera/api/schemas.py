"""
Pydantic schemas mirroring the relay's REST/WS contract.

Negotiation payloads (``sdp``, ``candidate``) are typed as ``Any``: the relay
forwards them untouched and never looks inside.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, validator


class OfferMessage(BaseModel):
    viewer_id: str = Field(alias="viewerId")
    sdp: Any = None
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @validator("viewer_id", pre=True)
    def _require_viewer(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("viewerId is required")
        return result


class AnswerMessage(BaseModel):
    sdp: Any = None
    model_config = ConfigDict(extra="ignore")


class IceCandidateMessage(BaseModel):
    candidate: Any = None
    target: Optional[str] = None
    model_config = ConfigDict(extra="ignore")

    @validator("target", pre=True)
    def _normalise_target(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        result = str(value).strip()
        return result or None


class ModeSwitchMessage(BaseModel):
    mode: Optional[str] = None
    model_config = ConfigDict(extra="ignore")


class HealthModel(BaseModel):
    status: str = "ok"
    uptime: float = 0.0


class RelayStateModel(BaseModel):
    broadcasterPresent: bool = False
    broadcasterId: Optional[str] = None
    connections: int = 0
    viewers: int = 0
    uptime: float = 0.0
