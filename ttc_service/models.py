"""Pydantic models used on the gateway's HTTP edges."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ttc_core.state import utcnow


class CommandRequest(BaseModel):
    """Inbound command submitted by a ground station."""

    model_config = ConfigDict(populate_by_name=True)

    command: str = Field(..., description="Command name")
    params: Optional[Dict[str, Any]] = Field(default=None, description="Command parameters")
    satellite_id: Optional[str] = Field(default=None, alias="satelliteId", description="Target asset id")

    @field_validator("command")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command must not be blank")
        return value


class CommandResponse(BaseModel):
    """Outcome of one command, as returned to the caller."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    message: str
    decision: str
    reason: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow, alias="processedAt")


class AuditEvent(BaseModel):
    """Event delivered to the Space-SOC ingestion endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    component: str
    event_type: str = Field(..., alias="eventType")
    command: Optional[str] = None
    operator_role: Optional[str] = Field(default=None, alias="operatorRole")
    decision: Optional[str] = None
    reason: Optional[str] = None
    rule_id: Optional[str] = Field(default=None, alias="ruleId")
    severity: Optional[str] = None
    anomaly_type: Optional[str] = Field(default=None, alias="anomalyType")
    message: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SatelliteReply(BaseModel):
    """Acknowledgement returned by the satellite simulator."""

    status: str
    message: str = ""
    received_at: Optional[datetime] = Field(default=None, alias="receivedAt")


class PolicyRuleInfo(BaseModel):
    id: str
    description: str


class PolicyRulesEnvelope(BaseModel):
    """API envelope for the active policy rule table."""

    mission_phase: str = Field(..., alias="missionPhase")
    rules: List[PolicyRuleInfo]

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "AuditEvent",
    "CommandRequest",
    "CommandResponse",
    "PolicyRuleInfo",
    "PolicyRulesEnvelope",
    "SatelliteReply",
]
