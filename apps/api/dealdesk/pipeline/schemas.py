from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dealdesk.pipeline.enums import (
    REASSIGNMENT_PURPOSE,
    InterventionType,
    OutreachStatus,
    PocStatus,
    Role,
    Stage,
    UniverseStatus,
)


class UserCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    email: str = Field(min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    role: Role
    partner_id: str | None = None
    analyst_id: str | None = None

    @model_validator(mode="after")
    def validate_reporting_line(self) -> "UserCreate":
        if self.partner_id is not None and self.role != Role.ANALYST:
            raise ValueError("partner_id is only valid for analysts")
        if self.analyst_id is not None and self.role != Role.INTERN:
            raise ValueError("analyst_id is only valid for interns")
        return self


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: int
    email: str
    first_name: str | None
    last_name: str | None
    role: Role
    partner_id: str | None
    analyst_id: str | None


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    sector: str | None = None
    location: str | None = None
    website: str | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    name: str
    sector: str | None
    location: str | None
    website: str | None
    created_at: datetime


class ContactCreate(BaseModel):
    company_id: int
    name: str | None = None
    designation: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin_profile: str | None = None
    is_primary: bool | None = None


class ContactUpdate(BaseModel):
    name: str | None = None
    designation: str | None = None
    email: str | None = None
    phone: str | None = None
    linkedin_profile: str | None = None
    is_primary: bool | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    company_id: int
    name: str | None
    designation: str | None
    email: str | None
    phone: str | None
    linkedin_profile: str | None
    is_primary: bool
    is_complete: bool
    created_at: datetime
    updated_at: datetime


class LeadCreate(BaseModel):
    # stage, ownership and assignment are derived from the caller, never accepted from the client
    model_config = ConfigDict(extra="ignore")

    company_id: int
    pipeline_value: Decimal | None = Field(default=None, ge=0)
    probability: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    company_id: int
    stage: Stage
    universe_status: UniverseStatus
    owner_analyst_id: str | None
    assigned_to: str | None
    assigned_interns: list[str]
    poc_count: int
    poc_completion_status: PocStatus
    default_poc_id: int | None
    backup_poc_id: int | None
    pipeline_value: Decimal | None
    probability: int | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


class StageValidationRead(BaseModel):
    is_valid: bool
    errors: list[str]
    missing_fields: list[str]


class StageProgressionRead(BaseModel):
    current_stage: Stage
    next_stage: Stage | None
    can_progress: bool
    required_fields: list[str]
    missing_fields: list[str]
    validation_errors: list[str]


class AutoProgressRead(BaseModel):
    progressed: bool
    new_stage: Stage | None = None
    errors: list[str] = Field(default_factory=list)


class LeadStageUpdate(BaseModel):
    stage: Stage
    default_poc_id: int | None = None
    backup_poc_id: int | None = None


class LeadProgressRequest(BaseModel):
    target_stage: Stage
    notes: str | None = None


class LeadRejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class LeadAssignRequest(BaseModel):
    assigned_to: str | None = None
    notes: str | None = None
    challenge_token: str | None = None


class LeadAssignResult(BaseModel):
    lead: LeadRead
    reassignment: bool
    auto_progressed: bool
    new_stage: Stage | None = None


class InternAssignRequest(BaseModel):
    intern_ids: list[str]
    notes: str | None = None

    @model_validator(mode="after")
    def validate_unique_interns(self) -> "InternAssignRequest":
        if len(set(self.intern_ids)) != len(self.intern_ids):
            raise ValueError("intern_ids must not contain duplicates")
        return self


class InternReassignRequest(BaseModel):
    from_intern_id: str = Field(min_length=1)
    to_intern_id: str = Field(min_length=1)
    notes: str | None = None


class AnalystReassignRequest(BaseModel):
    to_analyst_id: str = Field(min_length=1)
    partner_id: str | None = None
    move_interns: bool = False


class AnalystReassignResult(BaseModel):
    leads_transferred: int
    interns_transferred: int


class BulkAssignRequest(BaseModel):
    lead_ids: list[int] = Field(min_length=1)
    assigned_to: str = Field(min_length=1)


class BulkAssignResult(BaseModel):
    assigned_count: int


class LeadTransferRequest(BaseModel):
    to_user_id: str = Field(min_length=1)


class LeadTransferResult(BaseModel):
    transferred_count: int


class LeadAssignmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    assigned_by: str
    assigned_to: str | None
    notes: str | None
    assigned_at: datetime


class InterventionCreate(BaseModel):
    type: InterventionType
    scheduled_at: datetime | None = None
    document_name: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def validate_document_name(self) -> "InterventionCreate":
        if self.type == InterventionType.DOCUMENT and not (self.document_name or "").strip():
            raise ValueError("document_name is required for document interventions")
        return self


class InterventionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    user_id: str
    type: InterventionType
    scheduled_at: datetime
    document_name: str | None
    notes: str | None


class OutreachActivityCreate(BaseModel):
    activity_type: str = Field(min_length=1)
    status: OutreachStatus = OutreachStatus.PENDING
    contact_id: int | None = None
    notes: str | None = None


class OutreachActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    user_id: str
    activity_type: str
    status: OutreachStatus
    contact_id: int | None
    notes: str | None
    created_at: datetime


class ChallengeTokenCreate(BaseModel):
    lead_id: int
    purpose: str = Field(default=REASSIGNMENT_PURPOSE, min_length=1)


class ChallengeTokenRead(BaseModel):
    token: str
    lead_id: int
    purpose: str
    expires_at: datetime


class ChallengeTokenValidate(BaseModel):
    token: str = Field(min_length=1)
    lead_id: int
    purpose: str = Field(default=REASSIGNMENT_PURPOSE, min_length=1)


class ChallengeTokenValidation(BaseModel):
    valid: bool
