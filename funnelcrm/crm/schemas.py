from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


FunnelType = Literal["funnel", "model"]
StageType = Literal["entry", "normal", "service", "proposition", "qualified", "conversion", "lost"]
LeadStatus = Literal["new", "contacted", "qualified", "unqualified", "converted", "lost"]
LeadPriority = Literal["low", "medium", "high", "urgent"]
TransactionType = Literal[
    "stage_change",
    "assignment",
    "qualification",
    "contact",
    "status_change",
    "note",
    "creation",
]
CommunicationDirection = Literal["inbound", "outbound"]

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class StageSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    sla_hours: int | None = Field(default=None, ge=1)
    auto_assign: bool | None = None
    notifications_enabled: bool | None = None
    required_fields: list[str] | None = None


class FunnelCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    type: FunnelType = "funnel"
    is_active: bool = True
    settings: dict[str, Any] = Field(default_factory=dict)


class FunnelUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    type: FunnelType | None = None
    is_active: bool | None = None
    settings: dict[str, Any] | None = None


class FunnelDuplicateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    type: FunnelType | None = None


class StageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    type: StageType = "normal"
    order: int | None = Field(default=None, ge=1)
    is_active: bool = True
    settings: StageSettings = Field(default_factory=StageSettings)


class StageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    type: StageType | None = None
    order: int | None = None
    is_active: bool | None = None
    settings: StageSettings | None = None


class StageMoveRequest(BaseModel):
    order: int


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    funnel_id: int
    name: str
    description: str | None
    color: str
    order: int
    type: StageType
    is_active: bool
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class StageListResponse(BaseModel):
    stages: list[StageRead]


class FunnelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    name: str
    description: str | None
    type: FunnelType
    is_active: bool
    created_by: int | None
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    stages: list[StageRead] = Field(default_factory=list)


class LeadCreate(BaseModel):
    funnel_id: int
    stage_id: int | None = None
    assigned_to: int | None = None
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    source_platform: str | None = Field(default=None, max_length=64)
    status: LeadStatus = "new"
    priority: LeadPriority = "medium"
    estimated_value: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None


class LeadUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    source_platform: str | None = Field(default=None, max_length=64)
    status: LeadStatus | None = None
    priority: LeadPriority | None = None
    estimated_value: Decimal | None = Field(default=None, ge=0, max_digits=15, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    notes: str | None = None
    is_active: bool | None = None


class LeadMoveStageRequest(BaseModel):
    stage_id: int


class LeadAssignRequest(BaseModel):
    assigned_to: int | None = None


class LeadQualifyRequest(BaseModel):
    is_qualified: bool
    reason: str | None = None


class LeadContactRequest(BaseModel):
    method: str = Field(min_length=1, max_length=32)
    direction: CommunicationDirection = "outbound"
    message: str | None = None


class LeadNoteRequest(BaseModel):
    note: str = Field(min_length=1)


class LeadTagsRequest(BaseModel):
    tags: list[str]
    mode: Literal["replace", "add", "remove"] = "replace"

    @field_validator("tags")
    @classmethod
    def _strip_tags(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    funnel_id: int
    stage_id: int
    assigned_to: int | None
    first_name: str | None
    last_name: str | None
    full_name: str
    email: str | None
    phone: str | None
    source_platform: str | None
    status: LeadStatus
    priority: LeadPriority
    is_qualified: bool | None
    qualified_at: datetime | None
    qualified_by: int | None
    estimated_value: Decimal | None
    currency: str
    tags: list[str]
    notes: str | None
    last_contact_at: datetime | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class BoardStageRead(StageRead):
    leads: list[LeadRead] = Field(default_factory=list)


class FunnelBoardRead(BaseModel):
    funnel: FunnelRead
    stages: list[BoardStageRead]


class LeadTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    company_id: int
    user_id: int | None
    type: TransactionType
    action: str
    description: str
    previous_data: dict[str, Any] | None
    current_data: dict[str, Any] | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="event_metadata")
    from_stage_id: int | None
    to_stage_id: int | None
    assigned_from: int | None
    assigned_to: int | None
    contact_method: str | None
    communication_direction: CommunicationDirection | None
    message: str | None
    previous_status: str | None
    current_status: str | None
    current_qualification: bool | None
    qualification_reason: str | None
    source: str
    is_automated: bool
    is_important: bool
    created_at: datetime
