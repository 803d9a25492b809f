from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator

from leaddesk.crm.hierarchy import Role


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


NonBlankStr = Annotated[str, AfterValidator(_strip_required)]


class UserCreate(BaseModel):
    email: EmailStr
    full_name: NonBlankStr
    role: Role = Role.AGENT
    manager_id: UUID | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    full_name: str
    role: Role
    manager_id: UUID | None
    created_at: datetime | None = None


class UserUpdate(BaseModel):
    full_name: NonBlankStr | None = None
    role: Role | None = None
    manager_id: UUID | None = None


class SubordinatesRead(BaseModel):
    user_id: UUID
    subordinate_ids: list[UUID]


class ApiKeyCreate(BaseModel):
    name: NonBlankStr
    source_prefix: NonBlankStr
    source_id: str | None = None
    allowed_ips: list[str] | str | None = None
    enable_notifications: bool = False

    @field_validator("allowed_ips")
    @classmethod
    def _split_allowed_ips(cls, value: list[str] | str | None) -> list[str]:
        if value is None:
            return []
        items = value.split(",") if isinstance(value, str) else value
        return [item.strip() for item in items if item and item.strip()]


class ApiKeyUpdate(BaseModel):
    name: str | None = None
    is_active: bool | None = None
    enable_notifications: bool | None = None
    allowed_ips: list[str] | None = None


class ApiKeyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    api_key: str
    name: str
    source_prefix: str
    source_id: str | None
    is_active: bool
    allowed_ips: list[str]
    enable_notifications: bool
    last_used: datetime | None
    created_at: datetime


class AssignmentRuleCreate(BaseModel):
    source_name: NonBlankStr
    country_code: str
    assigned_agent_id: UUID
    priority: int = 0
    is_active: bool = True

    @field_validator("country_code")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return _strip_required(value).upper()


class AssignmentRuleUpdate(BaseModel):
    assigned_agent_id: UUID | None = None
    priority: int | None = None
    is_active: bool | None = None


class AssignmentRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_name: str
    country_code: str
    assigned_agent_id: UUID
    priority: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class RuleResolutionRead(BaseModel):
    source: str
    country: str | None
    country_code: str | None
    matched: bool
    rule_id: UUID | None = None
    assigned_agent_id: UUID | None = None
    agent_name: str | None = None
    description: str | None = None


class LeadCreate(BaseModel):
    first_name: NonBlankStr
    last_name: NonBlankStr
    email: EmailStr
    phone: str | None = None
    country: str | None = None
    brand: str | None = None
    source: str | None = None
    funnel: str | None = None
    desk: str | None = None
    status: str = "New"
    assigned_to: UUID | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str | None
    country: str | None
    brand: str | None
    source: str | None
    funnel: str | None
    desk: str | None
    source_id: str | None
    api_key_id: UUID | None
    status: str
    is_converted: bool
    has_deposited: bool
    assigned_to: UUID | None
    balance: Decimal
    total_deposits: Decimal
    created_at: datetime
    converted_at: datetime | None
    ftd_date: datetime | None
    last_activity: datetime | None


class LeadStatusUpdate(BaseModel):
    status: NonBlankStr


class LeadAssignRequest(BaseModel):
    user_id: UUID | None = None


class LeadActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    type: str
    description: str
    created_at: datetime


class DepositCreate(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)


class DepositRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    amount: Decimal
    created_by: UUID | None
    created_at: datetime


class DistributeRequest(BaseModel):
    lead_ids: list[int] = Field(min_length=1)
    agent_ids: list[UUID] = Field(min_length=1)


class AgentDistributionRead(BaseModel):
    agent_id: UUID
    full_name: str
    lead_count: int


class DistributeResult(BaseModel):
    total: int
    agents: list[AgentDistributionRead]


class BulkDeleteRequest(BaseModel):
    lead_ids: list[int] = Field(min_length=1)


class BulkDeleteResult(BaseModel):
    deleted: int


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    lead_id: int
    notification_type: str
    message: str
    is_read: bool
    created_at: datetime


class NotificationReadAllResult(BaseModel):
    updated: int


class BulkStatusRequest(BaseModel):
    lead_ids: list[int] = Field(min_length=1)
    status: NonBlankStr


class BulkAssignRequest(BaseModel):
    lead_ids: list[int] = Field(min_length=1)
    user_id: UUID | None = None


class BulkUpdateResult(BaseModel):
    updated: int


class StatusCreate(BaseModel):
    name: NonBlankStr
    color: str = Field(default="#9CA3AF", pattern=r"^#[0-9A-Fa-f]{6}$")


class StatusColorUpdate(BaseModel):
    color: str = Field(pattern=r"^#[0-9A-Fa-f]{6}$")


class StatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str
    is_system: bool
    created_at: datetime


class CommentCreate(BaseModel):
    content: NonBlankStr


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    content: str
    created_by: UUID | None
    created_at: datetime


class QuestionCreate(BaseModel):
    question: NonBlankStr


class QuestionUpdate(BaseModel):
    question: NonBlankStr | None = None
    is_active: bool | None = None


class QuestionReorderRequest(BaseModel):
    question_ids: list[UUID] = Field(min_length=1)


class QuestionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    question: str
    position: int
    is_active: bool
    created_at: datetime


class AnswersUpdate(BaseModel):
    answers: dict[UUID, str] = Field(min_length=1)


class AnswerRead(BaseModel):
    question_id: UUID
    question: str
    answer: str
