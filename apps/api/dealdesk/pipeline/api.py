from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealdesk.context import get_correlation_id
from dealdesk.core.auth import AuthUser, get_current_user as get_auth_user
from dealdesk.core.database import get_db
from dealdesk.core.rbac import require_roles
from dealdesk.pipeline.actor import ActorUser
from dealdesk.pipeline.enums import Stage
from dealdesk.pipeline.errors import ChallengeRateLimitError, PipelineError
from dealdesk.pipeline.repositories import PipelineRepository
from dealdesk.pipeline.schemas import (
    AnalystReassignRequest,
    AnalystReassignResult,
    AutoProgressRead,
    BulkAssignRequest,
    BulkAssignResult,
    ChallengeTokenCreate,
    ChallengeTokenRead,
    ChallengeTokenValidate,
    ChallengeTokenValidation,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    InternAssignRequest,
    InternReassignRequest,
    InterventionCreate,
    InterventionRead,
    LeadAssignmentRead,
    LeadAssignRequest,
    LeadAssignResult,
    LeadCreate,
    LeadProgressRequest,
    LeadRead,
    LeadRejectRequest,
    LeadStageUpdate,
    LeadTransferRequest,
    LeadTransferResult,
    OutreachActivityCreate,
    OutreachActivityRead,
    StageProgressionRead,
    StageValidationRead,
    UserCreate,
    UserRead,
)
from dealdesk.pipeline.service import LeadLifecycleService

users_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.users"])
companies_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.companies"])
contacts_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.contacts"])
leads_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.leads"])
stages_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.stages"])
assignments_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.assignments"])
challenge_tokens_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.challenge_tokens"])
service = LeadLifecycleService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__, headers=headers)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    headers = None
    if isinstance(exc, ChallengeRateLimitError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    user = PipelineRepository(db).get_user(auth_user.sub)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown pipeline user")
    return ActorUser(
        user_id=user.id,
        organization_id=user.organization_id,
        role=user.role,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


@users_router.post(
    "/organizations/{organization_id}/users",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def provision_user(
    request: Request,
    organization_id: int,
    dto: UserCreate,
    db: Session = Depends(get_db),
    auth_user: AuthUser = Depends(require_roles("system.admin")),
) -> UserRead | JSONResponse:
    try:
        return UserRead.model_validate(service.provision_user(db, organization_id, auth_user.sub, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@companies_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return CompanyRead.model_validate(service.create_company(db, user, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@companies_router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return CompanyRead.model_validate(service.get_company(db, user, company_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@companies_router.get("/companies/{company_id}/contacts", response_model=list[ContactRead])
def list_company_contacts(
    request: Request,
    company_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        return [ContactRead.model_validate(item) for item in service.list_contacts(db, user, company_id)]
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return ContactRead.model_validate(service.create_contact(db, user, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: int,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return ContactRead.model_validate(service.update_contact(db, user, contact_id, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@contacts_router.delete("/contacts/{contact_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_contact(
    request: Request,
    contact_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        service.delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(service.create_lead(db, user, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(service.get_lead(db, user, lead_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.post(
    "/leads/{lead_id}/interventions",
    response_model=InterventionRead,
    status_code=status.HTTP_201_CREATED,
)
def record_intervention(
    request: Request,
    lead_id: int,
    dto: InterventionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InterventionRead | JSONResponse:
    try:
        return InterventionRead.model_validate(service.record_intervention(db, user, lead_id, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@leads_router.post(
    "/leads/{lead_id}/outreach-activities",
    response_model=OutreachActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def record_outreach_activity(
    request: Request,
    lead_id: int,
    dto: OutreachActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OutreachActivityRead | JSONResponse:
    try:
        return OutreachActivityRead.model_validate(service.record_outreach_activity(db, user, lead_id, dto))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.get("/leads/{lead_id}/stage-validation", response_model=StageValidationRead)
def validate_stage_transition(
    request: Request,
    lead_id: int,
    target_stage: Stage = Query(),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageValidationRead | JSONResponse:
    try:
        result = service.validate_stage_transition(db, user, lead_id, target_stage)
        return StageValidationRead(**result.as_dict())
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.get("/leads/{lead_id}/stage-progression", response_model=StageProgressionRead)
def analyze_stage_progression(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageProgressionRead | JSONResponse:
    try:
        return StageProgressionRead(**dataclasses.asdict(service.analyze_stage_progression(db, user, lead_id)))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.post("/leads/{lead_id}/auto-progress", response_model=AutoProgressRead)
def auto_progress_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoProgressRead | JSONResponse:
    try:
        return AutoProgressRead(**dataclasses.asdict(service.auto_progress_lead(db, user, lead_id)))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.patch("/leads/{lead_id}/stage", response_model=LeadRead)
def update_lead_stage(
    request: Request,
    lead_id: int,
    dto: LeadStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        lead = service.update_lead_stage(db, user, lead_id, dto.stage, dto.default_poc_id, dto.backup_poc_id)
        return LeadRead.model_validate(lead)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.post("/leads/{lead_id}/progress", response_model=LeadRead)
def progress_stage(
    request: Request,
    lead_id: int,
    dto: LeadProgressRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(service.progress_stage(db, user, lead_id, dto.target_stage, dto.notes))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@stages_router.post("/leads/{lead_id}/reject", response_model=LeadRead)
def reject_lead(
    request: Request,
    lead_id: int,
    dto: LeadRejectRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(service.reject_lead(db, user, lead_id, dto.reason))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.post("/leads/{lead_id}/assign", response_model=LeadAssignResult)
def assign_lead(
    request: Request,
    lead_id: int,
    dto: LeadAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadAssignResult | JSONResponse:
    try:
        outcome = service.assign_lead(db, user, lead_id, dto.assigned_to, dto.notes, dto.challenge_token)
        return LeadAssignResult(
            lead=LeadRead.model_validate(outcome.lead),
            reassignment=outcome.reassignment,
            auto_progressed=outcome.auto_progressed,
            new_stage=outcome.new_stage,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.put("/leads/{lead_id}/interns", response_model=LeadRead)
def assign_interns(
    request: Request,
    lead_id: int,
    dto: InternAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return LeadRead.model_validate(service.assign_interns_to_lead(db, user, lead_id, dto.intern_ids, dto.notes))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.post("/leads/{lead_id}/interns/reassign", response_model=LeadRead)
def reassign_intern(
    request: Request,
    lead_id: int,
    dto: InternReassignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        lead = service.reassign_intern(db, user, lead_id, dto.from_intern_id, dto.to_intern_id, dto.notes)
        return LeadRead.model_validate(lead)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.get("/leads/{lead_id}/assignments", response_model=list[LeadAssignmentRead])
def list_assignments(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadAssignmentRead] | JSONResponse:
    try:
        return [LeadAssignmentRead.model_validate(item) for item in service.list_assignments(db, user, lead_id)]
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.post("/leads/bulk-assign", response_model=BulkAssignResult)
def bulk_assign_leads(
    request: Request,
    dto: BulkAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BulkAssignResult | JSONResponse:
    try:
        return BulkAssignResult(assigned_count=service.bulk_assign_leads(db, user, dto.lead_ids, dto.assigned_to))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.post("/users/{user_id}/transfer-leads", response_model=LeadTransferResult)
def transfer_leads(
    request: Request,
    user_id: str,
    dto: LeadTransferRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadTransferResult | JSONResponse:
    try:
        return LeadTransferResult(transferred_count=service.transfer_leads(db, user, user_id, dto.to_user_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@assignments_router.post("/analysts/{analyst_id}/reassign", response_model=AnalystReassignResult)
def reassign_analyst(
    request: Request,
    analyst_id: str,
    dto: AnalystReassignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AnalystReassignResult | JSONResponse:
    try:
        result = service.reassign_analyst(db, user, analyst_id, dto.to_analyst_id, dto.partner_id, dto.move_interns)
        return AnalystReassignResult(**dataclasses.asdict(result))
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@challenge_tokens_router.post(
    "/challenge-tokens",
    response_model=ChallengeTokenRead,
    status_code=status.HTTP_201_CREATED,
)
def create_challenge_token(
    request: Request,
    dto: ChallengeTokenCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ChallengeTokenRead | JSONResponse:
    try:
        record = service.create_challenge_token(db, user, dto.lead_id, dto.purpose)
        return ChallengeTokenRead(
            token=record.token,
            lead_id=record.lead_id,
            purpose=record.purpose,
            expires_at=record.expires_at_datetime,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@challenge_tokens_router.post("/challenge-tokens/validate", response_model=ChallengeTokenValidation)
def validate_challenge_token(
    dto: ChallengeTokenValidate,
    user: ActorUser = Depends(get_current_user),
) -> ChallengeTokenValidation:
    return ChallengeTokenValidation(valid=service.validate_challenge_token(user, dto.token, dto.lead_id, dto.purpose))
