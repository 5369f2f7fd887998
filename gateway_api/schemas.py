from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeviceIn(BaseModel):
    id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    device_type: Optional[str] = None
    firmware_version: Optional[str] = None
    ip_address: Optional[str] = None
    features: List[str] = Field(default_factory=list)


class DeviceOut(BaseModel):
    id: str
    tenant_id: str
    status: str
    name: Optional[str] = None
    device_type: Optional[str] = None
    last_seen: Optional[datetime] = None


class CommandIn(BaseModel):
    command: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    issuer_id: Optional[str] = None


class CommandAccepted(BaseModel):
    correlationId: str


class BulkCommandIn(BaseModel):
    device_ids: List[str] = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    issuer_id: Optional[str] = None


class BulkCommandResult(BaseModel):
    correlationIds: List[str]
    requested: int
    dispatched: int
