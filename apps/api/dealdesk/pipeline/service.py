from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from dealdesk.core.config import get_settings
from dealdesk.pipeline.actor import ActorUser
from dealdesk.pipeline.assignment import AssignmentAuthority
from dealdesk.pipeline.challenge import ChallengeToken, ChallengeTokenAuthority, challenge_tokens
from dealdesk.pipeline.enums import REASSIGNMENT_PURPOSE, PocStatus, Role, Stage, UniverseStatus
from dealdesk.pipeline.errors import (
    AssignmentForbiddenError,
    ChallengeTokenError,
    EntityNotFoundError,
    InvalidRequestError,
    StageValidationError,
)
from dealdesk.pipeline.models import (
    PipelineCompany,
    PipelineContact,
    PipelineIntervention,
    PipelineLead,
    PipelineLeadAssignment,
    PipelineOutreachActivity,
    PipelineUser,
)
from dealdesk.pipeline.repositories import PipelineRepository, is_contact_complete
from dealdesk.pipeline.schemas import (
    CompanyCreate,
    ContactCreate,
    ContactUpdate,
    InterventionCreate,
    LeadCreate,
    OutreachActivityCreate,
    UserCreate,
)
from dealdesk.pipeline.side_effects import SideEffectRunner
from dealdesk.pipeline.stages import (
    AutoProgressResult,
    LeadSnapshot,
    StageProgression,
    StageProgressionService,
    StageValidationResult,
    parse_stage,
)


logger = logging.getLogger("dealdesk.pipeline")
tracer = trace.get_tracer("dealdesk.pipeline")


def compute_poc_summary(contacts: Sequence[PipelineContact]) -> tuple[int, PocStatus]:
    count = len(contacts)
    if count == 0 or not any(contact.is_complete for contact in contacts):
        return count, PocStatus.RED
    if count >= 3:
        return count, PocStatus.GREEN
    return count, PocStatus.AMBER


def _lead_state(lead: PipelineLead) -> dict[str, Any]:
    return {
        "stage": lead.stage,
        "universe_status": lead.universe_status,
        "owner_analyst_id": lead.owner_analyst_id,
        "assigned_to": lead.assigned_to,
        "assignees": lead.assignee_ids,
        "poc_count": lead.poc_count,
        "poc_completion_status": lead.poc_completion_status,
        "notes": lead.notes,
    }


def _universe_status(lead: PipelineLead) -> str:
    if lead.stage != Stage.UNIVERSE:
        return lead.universe_status
    return (UniverseStatus.ASSIGNED if lead.assignees else UniverseStatus.OPEN).value


@dataclass(slots=True)
class AssignmentOutcome:
    lead: PipelineLead
    reassignment: bool
    auto_progressed: bool
    new_stage: Stage | None


@dataclass(slots=True)
class AnalystReassignmentResult:
    leads_transferred: int
    interns_transferred: int


class LeadLifecycleService:
    """Use cases over leads, contacts and assignments.

    Every write follows the same order: validate, persist and commit the
    primary mutation, then run best-effort side effects (activity log, audit,
    domain events, POC recompute, auto-progression) through a
    ``SideEffectRunner`` so none of them can undo or fail the primary change.
    """

    entity_type = "pipeline.lead"

    def __init__(
        self,
        stages: StageProgressionService | None = None,
        tokens: ChallengeTokenAuthority | None = None,
    ) -> None:
        self.stages = stages or StageProgressionService()
        self.tokens = tokens or challenge_tokens

    # lookups

    def _require_lead(self, repo: PipelineRepository, actor: ActorUser, lead_id: int) -> PipelineLead:
        lead = repo.get_lead(lead_id, actor.organization_id)
        if lead is None:
            raise EntityNotFoundError("lead", lead_id)
        return lead

    def _require_company(self, repo: PipelineRepository, actor: ActorUser, company_id: int) -> PipelineCompany:
        company = repo.get_company(company_id, actor.organization_id)
        if company is None:
            raise EntityNotFoundError("company", company_id)
        return company

    @staticmethod
    def _require_stage_role(actor: ActorUser) -> None:
        if actor.role is Role.INTERN:
            raise AssignmentForbiddenError("Interns cannot change lead stages")

    def get_lead(self, session: Session, actor: ActorUser, lead_id: int) -> PipelineLead:
        return self._require_lead(PipelineRepository(session), actor, lead_id)

    def get_company(self, session: Session, actor: ActorUser, company_id: int) -> PipelineCompany:
        return self._require_company(PipelineRepository(session), actor, company_id)

    def list_contacts(self, session: Session, actor: ActorUser, company_id: int) -> list[PipelineContact]:
        repo = PipelineRepository(session)
        self._require_company(repo, actor, company_id)
        return repo.get_contacts_by_company(company_id, actor.organization_id)

    def list_assignments(self, session: Session, actor: ActorUser, lead_id: int) -> list[PipelineLeadAssignment]:
        repo = PipelineRepository(session)
        self._require_lead(repo, actor, lead_id)
        return repo.list_assignments(lead_id, actor.organization_id)

    # side-effect helpers

    def _log_activity(
        self,
        runner: SideEffectRunner,
        repo: PipelineRepository,
        actor: ActorUser,
        action: str,
        description: str,
        *,
        lead: PipelineLead | None = None,
        entity_type: str = "lead",
        entity_id: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> None:
        runner.run(
            "activity_log",
            repo.create_activity_log,
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id if entity_id is not None else (str(lead.id) if lead is not None else None),
            lead_id=lead.id if lead is not None else None,
            company_id=lead.company_id if lead is not None else None,
            old_value=old_value,
            new_value=new_value,
            description=description,
            correlation_id=actor.correlation_id,
        )

    def _audit(
        self,
        runner: SideEffectRunner,
        actor: ActorUser,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        entity_type: str | None = None,
    ) -> None:
        runner.audit(
            actor_user_id=actor.user_id,
            organization_id=actor.organization_id,
            entity_type=entity_type or self.entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
        )

    def _publish(self, runner: SideEffectRunner, actor: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
        runner.publish(
            event_type,
            actor_user_id=actor.user_id,
            organization_id=actor.organization_id,
            payload=payload,
        )

    def _auto_progress(self, runner: SideEffectRunner, repo: PipelineRepository, actor: ActorUser, lead_id: int, trigger: str) -> AutoProgressResult:
        result = runner.run(
            "auto_progress",
            self.stages.auto_progress_lead,
            repo,
            lead_id,
            actor.organization_id,
            actor_user_id=actor.user_id,
            trigger=trigger,
        )
        if result is None:
            return AutoProgressResult(progressed=False, errors=["Auto-progression failed"])
        return result

    # users

    def provision_user(self, session: Session, organization_id: int, actor_user_id: str, dto: UserCreate) -> PipelineUser:
        repo = PipelineRepository(session)
        if repo.get_user(dto.id) is not None:
            raise InvalidRequestError(f"User {dto.id} already exists")
        supervisor_id = dto.partner_id or dto.analyst_id
        if supervisor_id is not None:
            expected = Role.PARTNER if dto.partner_id is not None else Role.ANALYST
            supervisor = repo.get_org_user(supervisor_id, organization_id)
            if supervisor is None or supervisor.role != expected:
                raise InvalidRequestError(f"Supervisor {supervisor_id} must be an existing {expected}")

        user = repo.create_user(organization_id, **dto.model_dump(mode="json"))
        repo.commit()

        runner = SideEffectRunner(session)
        runner.audit(
            actor_user_id=actor_user_id,
            organization_id=organization_id,
            entity_type="pipeline.user",
            entity_id=user.id,
            action="create",
            before=None,
            after=dto.model_dump(mode="json"),
        )
        return user

    # companies

    def create_company(self, session: Session, actor: ActorUser, dto: CompanyCreate) -> PipelineCompany:
        repo = PipelineRepository(session)
        company = repo.create_company(actor.organization_id, **dto.model_dump())
        repo.commit()

        runner = SideEffectRunner(session)
        self._audit(runner, actor, str(company.id), "create", None, dto.model_dump(mode="json"), entity_type="pipeline.company")
        return company

    # leads

    def create_lead(self, session: Session, actor: ActorUser, dto: LeadCreate) -> PipelineLead:
        """Create a lead whose stage, owner and assignee come from the caller's role only."""
        repo = PipelineRepository(session)
        role = actor.role
        if role is Role.INTERN:
            raise AssignmentForbiddenError("Interns cannot create leads")
        self._require_company(repo, actor, dto.company_id)

        poc_count, poc_status = compute_poc_summary(repo.get_contacts_by_company(dto.company_id, actor.organization_id))
        fields: dict[str, Any] = {
            "organization_id": actor.organization_id,
            "company_id": dto.company_id,
            "pipeline_value": dto.pipeline_value,
            "probability": dto.probability,
            "notes": dto.notes,
            "poc_count": poc_count,
            "poc_completion_status": poc_status.value,
            "created_by": actor.user_id,
        }

        analyst: PipelineUser | None = None
        if role is Role.ANALYST:
            analyst = repo.get_org_user(actor.user_id, actor.organization_id)
            if analyst is None:
                raise EntityNotFoundError("user", actor.user_id, "Acting analyst not found")
            fields.update(
                stage=Stage.QUALIFIED.value,
                universe_status=UniverseStatus.ASSIGNED.value,
                owner_analyst_id=analyst.id,
            )
        else:
            fields.update(stage=Stage.UNIVERSE.value, universe_status=UniverseStatus.OPEN.value, owner_analyst_id=None)

        lead = repo.create_lead(**fields)
        if analyst is not None:
            repo.set_assignees(lead, [analyst])
            repo.record_assignment(actor.organization_id, lead.id, actor.user_id, analyst.id, "Lead created by analyst")
        repo.commit()

        logger.info(
            "lead.created",
            extra={"organization_id": actor.organization_id, "lead_id": lead.id, "stage": lead.stage, "user_id": actor.user_id},
        )
        runner = SideEffectRunner(session)
        self._log_activity(runner, repo, actor, "lead_created", f"Lead created in {lead.stage} stage", lead=lead, new_value=lead.stage)
        self._audit(runner, actor, str(lead.id), "create", None, _lead_state(lead))
        self._publish(runner, actor, "pipeline.lead.created", {"lead_id": lead.id, "stage": lead.stage})
        return lead

    # contacts

    def create_contact(self, session: Session, actor: ActorUser, dto: ContactCreate) -> PipelineContact:
        repo = PipelineRepository(session)
        self._require_company(repo, actor, dto.company_id)
        contact = repo.create_contact(actor.organization_id, **dto.model_dump())
        repo.commit()

        self._after_contact_change(session, repo, actor, contact.company_id)
        runner = SideEffectRunner(session)
        self._audit(runner, actor, str(contact.id), "create", None, {"company_id": contact.company_id, "is_complete": contact.is_complete}, entity_type="pipeline.contact")
        self._publish(runner, actor, "pipeline.contact.created", {"contact_id": contact.id, "company_id": contact.company_id})
        return contact

    def update_contact(self, session: Session, actor: ActorUser, contact_id: int, dto: ContactUpdate) -> PipelineContact:
        repo = PipelineRepository(session)
        updates = dto.model_dump(exclude_unset=True)
        contact = repo.update_contact(contact_id, actor.organization_id, **updates)
        if contact is None:
            raise EntityNotFoundError("contact", contact_id)
        repo.commit()

        self._after_contact_change(session, repo, actor, contact.company_id)
        runner = SideEffectRunner(session)
        self._audit(runner, actor, str(contact.id), "update", None, {"fields": sorted(updates), "is_complete": contact.is_complete}, entity_type="pipeline.contact")
        self._publish(runner, actor, "pipeline.contact.updated", {"contact_id": contact.id, "company_id": contact.company_id})
        return contact

    def delete_contact(self, session: Session, actor: ActorUser, contact_id: int) -> None:
        repo = PipelineRepository(session)
        contact = repo.delete_contact(contact_id, actor.organization_id)
        if contact is None:
            raise EntityNotFoundError("contact", contact_id)
        company_id = contact.company_id
        repo.commit()

        self._after_contact_change(session, repo, actor, company_id)
        runner = SideEffectRunner(session)
        self._audit(runner, actor, str(contact_id), "delete", {"company_id": company_id}, None, entity_type="pipeline.contact")
        self._publish(runner, actor, "pipeline.contact.deleted", {"contact_id": contact_id, "company_id": company_id})

    def _after_contact_change(self, session: Session, repo: PipelineRepository, actor: ActorUser, company_id: int) -> None:
        runner = SideEffectRunner(session)
        universe_lead_ids = runner.run("poc_recompute", self._recompute_poc_summary, repo, actor, company_id) or []
        for lead_id in universe_lead_ids:
            runner.run("auto_advance", self._auto_advance_from_universe, repo, actor, lead_id)

    def _recompute_poc_summary(self, repo: PipelineRepository, actor: ActorUser, company_id: int) -> list[int]:
        """Refresh POC counters on every lead of the company; return universe leads whose primary contact qualifies."""
        contacts = repo.get_contacts_by_company(company_id, actor.organization_id)
        poc_count, poc_status = compute_poc_summary(contacts)
        primary = next((contact for contact in contacts if contact.is_primary), None)
        primary_qualifies = primary is not None and is_contact_complete(primary)

        candidates: list[int] = []
        for lead in repo.get_leads_by_company(company_id, actor.organization_id):
            lead.poc_count = poc_count
            lead.poc_completion_status = poc_status.value
            if lead.stage == Stage.UNIVERSE and primary_qualifies:
                candidates.append(lead.id)
        return candidates

    def _auto_advance_from_universe(self, repo: PipelineRepository, actor: ActorUser, lead_id: int) -> Stage | None:
        policy = Stage(get_settings().contact_auto_advance_stage)
        path = [Stage.QUALIFIED] if policy == Stage.QUALIFIED else [Stage.QUALIFIED, Stage.OUTREACH]

        lead = repo.get_lead(lead_id, actor.organization_id)
        if lead is None or lead.stage != Stage.UNIVERSE:
            return None

        reached: Stage | None = None
        for target in path:
            snapshot = LeadSnapshot.from_model(lead)
            validation = self.stages.validate_snapshot(repo, snapshot, target)
            if not validation.is_valid:
                break
            lead.stage = target.value
            repo.commit()
            SideEffectRunner(repo.session).run(
                "activity_log",
                self.stages.record_transition,
                repo,
                lead,
                snapshot.stage,
                target,
                actor_user_id=actor.user_id,
                trigger="contact",
                action=f"lead_auto_{target.value}",
                description=f"Lead auto-advanced to {target}: primary contact has complete required information",
            )
            reached = target
        return reached

    # assignment

    def assign_lead(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        assignee_id: str | None,
        notes: str | None = None,
        challenge_token: str | None = None,
    ) -> AssignmentOutcome:
        """Set the lead's assignee (or clear it with ``None``).

        Moving a lead away from an existing assignee consumes a challenge token
        issued to the caller for this lead. Assigning an analyst also makes
        them the owner.
        """
        repo = PipelineRepository(session)
        authority = AssignmentAuthority(repo)
        lead = self._require_lead(repo, actor, lead_id)
        assignee = authority.authorize_single_assignment(actor, assignee_id)

        reassignment = authority.is_reassignment(lead, assignee_id)
        if reassignment:
            if not challenge_token:
                raise ChallengeTokenError("Challenge token required for reassignments")
            if not self.tokens.validate_token(
                challenge_token,
                actor.user_id,
                actor.organization_id,
                lead_id,
                REASSIGNMENT_PURPOSE,
            ):
                raise ChallengeTokenError("Invalid or expired challenge token")

        before = _lead_state(lead)
        self._apply_single_assignment(repo, actor, lead, assignee, notes)
        repo.commit()

        runner = SideEffectRunner(session)
        assignee_name = assignee.display_name if assignee is not None else None
        self._log_activity(
            runner,
            repo,
            actor,
            "lead_reassigned" if reassignment else "lead_assigned",
            f"Lead assigned to {assignee_name}" if assignee_name else "Lead unassigned",
            lead=lead,
            old_value=before["assigned_to"],
            new_value=assignee_id,
        )
        self._audit(runner, actor, str(lead.id), "assign", before, _lead_state(lead))
        self._publish(
            runner,
            actor,
            "pipeline.lead.assigned",
            {"lead_id": lead.id, "assigned_to": assignee_id, "reassignment": reassignment},
        )
        progress = self._auto_progress(runner, repo, actor, lead_id, "assignment")
        return AssignmentOutcome(
            lead=self._require_lead(repo, actor, lead_id),
            reassignment=reassignment,
            auto_progressed=progress.progressed,
            new_stage=progress.new_stage,
        )

    def _apply_single_assignment(
        self,
        repo: PipelineRepository,
        actor: ActorUser,
        lead: PipelineLead,
        assignee: PipelineUser | None,
        notes: str | None,
    ) -> None:
        if assignee is not None and assignee.role == Role.ANALYST:
            lead.owner_analyst_id = assignee.id
        # interns stay on the lead while they still report to its owner
        interns = [
            row.user
            for row in lead.assignees
            if row.user.role == Role.INTERN
            and (lead.owner_analyst_id is None or row.user.analyst_id == lead.owner_analyst_id)
        ]
        repo.set_assignees(lead, ([assignee] if assignee is not None else []) + interns)
        lead.universe_status = _universe_status(lead)
        repo.record_assignment(
            actor.organization_id,
            lead.id,
            actor.user_id,
            assignee.id if assignee is not None else None,
            notes,
        )

    def assign_interns_to_lead(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        intern_ids: list[str],
        notes: str | None = None,
    ) -> PipelineLead:
        repo = PipelineRepository(session)
        lead = self._require_lead(repo, actor, lead_id)
        decision = AssignmentAuthority(repo).authorize_intern_assignment(actor, lead, intern_ids)

        before = _lead_state(lead)
        if decision.claim_ownership:
            lead.owner_analyst_id = actor.user_id
        non_interns = [row.user for row in lead.assignees if row.user.role != Role.INTERN]
        repo.set_assignees(lead, non_interns + decision.interns)
        lead.universe_status = _universe_status(lead)
        for intern in decision.interns:
            repo.record_assignment(actor.organization_id, lead.id, actor.user_id, intern.id, notes)
        if not decision.interns:
            repo.record_assignment(actor.organization_id, lead.id, actor.user_id, None, notes or "Interns unassigned")
        repo.commit()

        runner = SideEffectRunner(session)
        names = ", ".join(intern.display_name for intern in decision.interns)
        self._log_activity(
            runner,
            repo,
            actor,
            "lead_assigned_intern",
            f"Assigned lead to intern(s): {names}" if names else "Removed all interns from lead",
            lead=lead,
            new_value=names or None,
        )
        self._audit(runner, actor, str(lead.id), "assign_interns", before, _lead_state(lead))
        self._publish(runner, actor, "pipeline.lead.interns_assigned", {"lead_id": lead.id, "intern_ids": list(intern_ids)})
        self._auto_progress(runner, repo, actor, lead_id, "assignment")
        return self._require_lead(repo, actor, lead_id)

    def reassign_intern(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        from_intern_id: str,
        to_intern_id: str,
        notes: str | None = None,
    ) -> PipelineLead:
        repo = PipelineRepository(session)
        lead = self._require_lead(repo, actor, lead_id)
        _, to_intern = AssignmentAuthority(repo).authorize_intern_reassignment(actor, lead, from_intern_id, to_intern_id)

        before = _lead_state(lead)
        repo.replace_assignee(lead, from_intern_id, to_intern)
        repo.record_assignment(
            actor.organization_id,
            lead.id,
            actor.user_id,
            to_intern_id,
            notes or f"Lead reassigned from intern {from_intern_id} to intern {to_intern_id}",
        )
        repo.commit()

        runner = SideEffectRunner(session)
        self._log_activity(
            runner,
            repo,
            actor,
            "lead_reassign_intern",
            f"Reassigned intern {from_intern_id} -> {to_intern_id}" + (f": {notes}" if notes else ""),
            lead=lead,
            old_value=from_intern_id,
            new_value=to_intern_id,
        )
        self._audit(runner, actor, str(lead.id), "reassign_intern", before, _lead_state(lead))
        self._publish(
            runner,
            actor,
            "pipeline.lead.intern_reassigned",
            {"lead_id": lead.id, "from_intern_id": from_intern_id, "to_intern_id": to_intern_id},
        )
        return self._require_lead(repo, actor, lead_id)

    def reassign_analyst(
        self,
        session: Session,
        actor: ActorUser,
        from_analyst_id: str,
        to_analyst_id: str,
        partner_id: str | None = None,
        move_interns: bool = False,
    ) -> AnalystReassignmentResult:
        """Hand every lead owned by one analyst to another.

        With ``move_interns`` the interns follow to the new analyst and keep
        their lead assignments. Without it, interns stay with the old analyst
        and are removed from any lead the new analyst now owns.
        """
        with tracer.start_as_current_span("pipeline.reassign_analyst") as span:
            span.set_attribute("from_analyst_id", from_analyst_id)
            span.set_attribute("to_analyst_id", to_analyst_id)
            span.set_attribute("move_interns", move_interns)
            span.set_attribute("correlation_id", actor.correlation_id or "")

            repo = PipelineRepository(session)
            decision = AssignmentAuthority(repo).authorize_analyst_reassignment(
                actor, from_analyst_id, to_analyst_id, partner_id
            )
            organization_id = actor.organization_id

            transferred = repo.get_leads_owned_by(from_analyst_id, organization_id)
            for lead in transferred:
                lead.owner_analyst_id = to_analyst_id

            interns = repo.get_interns_of(from_analyst_id, organization_id)
            interns_transferred = 0
            if move_interns:
                for intern in interns:
                    intern.analyst_id = to_analyst_id
                interns_transferred = len(interns)
            else:
                session.flush()
                self._unassign_foreign_interns(repo, actor, to_analyst_id, {intern.id for intern in interns})
            repo.commit()

            result = AnalystReassignmentResult(leads_transferred=len(transferred), interns_transferred=interns_transferred)
            span.set_attribute("leads_transferred", result.leads_transferred)
            span.set_attribute("interns_transferred", result.interns_transferred)

        logger.info(
            "analyst.reassigned",
            extra={"organization_id": organization_id, "user_id": actor.user_id},
        )
        runner = SideEffectRunner(session)
        self._log_activity(
            runner,
            repo,
            actor,
            "analyst_reassigned",
            f"Transferred {result.leads_transferred} leads and {result.interns_transferred} interns "
            f"from {decision.from_analyst.display_name} to {decision.to_analyst.display_name}",
            entity_type="user",
            entity_id=from_analyst_id,
            old_value=from_analyst_id,
            new_value=to_analyst_id,
        )
        self._audit(
            runner,
            actor,
            from_analyst_id,
            "reassign_analyst",
            {"owner_analyst_id": from_analyst_id},
            {"owner_analyst_id": to_analyst_id, **dataclasses.asdict(result)},
            entity_type="pipeline.user",
        )
        self._publish(
            runner,
            actor,
            "pipeline.analyst.reassigned",
            {
                "from_analyst_id": from_analyst_id,
                "to_analyst_id": to_analyst_id,
                "move_interns": move_interns,
                **dataclasses.asdict(result),
            },
        )
        return result

    def _unassign_foreign_interns(
        self,
        repo: PipelineRepository,
        actor: ActorUser,
        owner_analyst_id: str,
        intern_ids: set[str],
    ) -> None:
        if not intern_ids:
            return
        for lead in repo.get_leads_owned_by(owner_analyst_id, actor.organization_id):
            removed = [user_id for user_id in repo.get_assignees(lead) if user_id in intern_ids]
            for user_id in removed:
                repo.remove_assignee(lead, user_id)
                repo.record_assignment(
                    actor.organization_id,
                    lead.id,
                    actor.user_id,
                    None,
                    f"Intern {user_id} unassigned: reports to the previous owner analyst",
                )
            if removed:
                lead.universe_status = _universe_status(lead)

    def bulk_assign_leads(self, session: Session, actor: ActorUser, lead_ids: list[int], assignee_id: str) -> int:
        """Assign explicit leads to one user; all leads are checked before any is changed."""
        repo = PipelineRepository(session)
        AssignmentAuthority(repo).authorize_bulk_override(actor)
        assignee = repo.get_org_user(assignee_id, actor.organization_id)
        if assignee is None:
            raise EntityNotFoundError("user", assignee_id, "Assigned user not found")

        leads: list[PipelineLead] = []
        for lead_id in dict.fromkeys(lead_ids):
            lead = repo.get_lead(lead_id, actor.organization_id)
            if lead is None:
                raise EntityNotFoundError("lead", lead_id, f"Lead {lead_id} not found")
            leads.append(lead)

        for lead in leads:
            self._apply_single_assignment(repo, actor, lead, assignee, "Bulk assignment")
        repo.commit()

        runner = SideEffectRunner(session)
        for lead in leads:
            self._log_activity(
                runner,
                repo,
                actor,
                "lead_assigned",
                f"Lead assigned to {assignee.display_name} (bulk)",
                lead=lead,
                new_value=assignee.id,
            )
        self._publish(
            runner,
            actor,
            "pipeline.leads.bulk_assigned",
            {"lead_ids": [lead.id for lead in leads], "assigned_to": assignee.id},
        )
        for lead in leads:
            self._auto_progress(runner, repo, actor, lead.id, "assignment")
        return len(leads)

    def transfer_leads(self, session: Session, actor: ActorUser, from_user_id: str, to_user_id: str) -> int:
        repo = PipelineRepository(session)
        from_user, to_user = AssignmentAuthority(repo).authorize_transfer(actor, from_user_id, to_user_id)

        leads = repo.get_leads_by_assignee(from_user.id, actor.organization_id)
        for lead in leads:
            repo.replace_assignee(lead, from_user.id, to_user)
            repo.record_assignment(
                actor.organization_id,
                lead.id,
                actor.user_id,
                to_user.id,
                f"Transferred from {from_user.display_name}",
            )
        repo.commit()

        logger.info(
            "leads.transferred",
            extra={"organization_id": actor.organization_id, "user_id": actor.user_id},
        )
        runner = SideEffectRunner(session)
        self._log_activity(
            runner,
            repo,
            actor,
            "leads_transferred",
            f"Transferred {len(leads)} leads from {from_user.display_name} to {to_user.display_name}",
            entity_type="user",
            entity_id=from_user.id,
            old_value=from_user.id,
            new_value=to_user.id,
        )
        self._publish(
            runner,
            actor,
            "pipeline.leads.transferred",
            {"from_user_id": from_user.id, "to_user_id": to_user.id, "lead_ids": [lead.id for lead in leads]},
        )
        return len(leads)

    # stages

    def validate_stage_transition(
        self, session: Session, actor: ActorUser, lead_id: int, target_stage: str
    ) -> StageValidationResult:
        return self.stages.validate_stage_transition(
            PipelineRepository(session), lead_id, actor.organization_id, target_stage
        )

    def analyze_stage_progression(self, session: Session, actor: ActorUser, lead_id: int) -> StageProgression:
        return self.stages.analyze_stage_progression(PipelineRepository(session), lead_id, actor.organization_id)

    def auto_progress_lead(self, session: Session, actor: ActorUser, lead_id: int) -> AutoProgressResult:
        repo = PipelineRepository(session)
        self._require_stage_role(actor)
        self._require_lead(repo, actor, lead_id)
        result = self.stages.auto_progress_lead(
            repo, lead_id, actor.organization_id, actor_user_id=actor.user_id, trigger="manual_check"
        )
        repo.commit()
        return result

    def progress_stage(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        target_stage: str,
        notes: str | None = None,
    ) -> PipelineLead:
        """Move the lead along one graph edge after the full requirement check, document gates included."""
        repo = PipelineRepository(session)
        self._require_stage_role(actor)
        lead = self._require_lead(repo, actor, lead_id)
        target = parse_stage(target_stage)
        current = Stage(lead.stage)
        if target == current:
            return lead

        validation = self.stages.validate_stage_transition(repo, lead_id, actor.organization_id, target, notes=notes)
        if not validation.is_valid:
            raise StageValidationError(
                f"Cannot move lead from {current} to {target}",
                errors=validation.errors,
                missing_fields=validation.missing_fields,
            )

        before = _lead_state(lead)
        lead.stage = target.value
        if notes is not None:
            lead.notes = notes
        repo.commit()

        self._after_stage_change(session, repo, actor, lead, current, target, before, "lead_stage_changed", f"Lead moved from {current} to {target}", "progress")
        return lead

    def update_lead_stage(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        stage: str,
        default_poc_id: int | None = None,
        backup_poc_id: int | None = None,
    ) -> PipelineLead:
        repo = PipelineRepository(session)
        self._require_stage_role(actor)
        lead = self._require_lead(repo, actor, lead_id)
        target = parse_stage(stage)
        current = Stage(lead.stage)
        self.stages.guard_manual_transition(repo, lead, target, default_poc_id, backup_poc_id)

        before = _lead_state(lead)
        lead.stage = target.value
        if target == Stage.PITCHING:
            lead.default_poc_id = default_poc_id
            lead.backup_poc_id = backup_poc_id
        repo.commit()

        self._after_stage_change(session, repo, actor, lead, current, target, before, "lead_stage_changed", f"Lead manually moved from {current} to {target}", "manual")
        return lead

    def reject_lead(self, session: Session, actor: ActorUser, lead_id: int, reason: str) -> PipelineLead:
        repo = PipelineRepository(session)
        self._require_stage_role(actor)
        lead = self._require_lead(repo, actor, lead_id)
        current = Stage(lead.stage)
        snapshot = self.stages.guard_rejection(lead, reason)

        before = _lead_state(lead)
        lead.stage = Stage.REJECTED.value
        lead.notes = snapshot.notes
        repo.commit()

        self._after_stage_change(
            session,
            repo,
            actor,
            lead,
            current,
            Stage.REJECTED,
            before,
            "lead_rejected",
            f"Lead rejected from {current} stage. Reason: {snapshot.notes}",
            "reject",
        )
        return lead

    def _after_stage_change(
        self,
        session: Session,
        repo: PipelineRepository,
        actor: ActorUser,
        lead: PipelineLead,
        from_stage: Stage,
        to_stage: Stage,
        before: dict[str, Any],
        action: str,
        description: str,
        trigger: str,
    ) -> None:
        runner = SideEffectRunner(session)
        runner.run(
            "activity_log",
            self.stages.record_transition,
            repo,
            lead,
            from_stage,
            to_stage,
            actor_user_id=actor.user_id,
            trigger=trigger,
            action=action,
            description=description,
        )
        self._audit(runner, actor, str(lead.id), action, before, _lead_state(lead))
        event_type = "pipeline.lead.rejected" if to_stage == Stage.REJECTED else "pipeline.lead.stage_changed"
        self._publish(
            runner,
            actor,
            event_type,
            {"lead_id": lead.id, "from_stage": from_stage.value, "to_stage": to_stage.value},
        )

    # evidence

    def record_intervention(self, session: Session, actor: ActorUser, lead_id: int, dto: InterventionCreate) -> PipelineIntervention:
        repo = PipelineRepository(session)
        lead = self._require_lead(repo, actor, lead_id)
        intervention = repo.create_intervention(
            actor.organization_id,
            lead_id=lead.id,
            user_id=actor.user_id,
            type=dto.type.value,
            scheduled_at=dto.scheduled_at,
            document_name=dto.document_name,
            notes=dto.notes,
        )
        repo.commit()

        runner = SideEffectRunner(session)
        label = dto.document_name if dto.document_name else dto.type.value
        self._log_activity(runner, repo, actor, "intervention_recorded", f"Recorded {label} intervention", lead=lead, new_value=dto.type.value)
        return intervention

    def record_outreach_activity(
        self, session: Session, actor: ActorUser, lead_id: int, dto: OutreachActivityCreate
    ) -> PipelineOutreachActivity:
        repo = PipelineRepository(session)
        lead = self._require_lead(repo, actor, lead_id)
        if dto.contact_id is not None:
            contact = repo.get_contact(dto.contact_id, actor.organization_id)
            if contact is None or contact.company_id != lead.company_id:
                raise InvalidRequestError("Contact must belong to the lead's company")
        activity = repo.create_outreach_activity(
            actor.organization_id,
            lead_id=lead.id,
            user_id=actor.user_id,
            activity_type=dto.activity_type,
            status=dto.status.value,
            contact_id=dto.contact_id,
            notes=dto.notes,
        )
        repo.commit()

        runner = SideEffectRunner(session)
        self._log_activity(
            runner,
            repo,
            actor,
            "outreach_recorded",
            f"Recorded {dto.activity_type} outreach ({dto.status.value})",
            lead=lead,
            new_value=dto.status.value,
        )
        return activity

    # challenge tokens

    def create_challenge_token(
        self,
        session: Session,
        actor: ActorUser,
        lead_id: int,
        purpose: str = REASSIGNMENT_PURPOSE,
    ) -> ChallengeToken:
        if actor.role is not Role.PARTNER and actor.role is not Role.ADMIN:
            raise AssignmentForbiddenError("Only partners and admins can request challenge tokens")
        self._require_lead(PipelineRepository(session), actor, lead_id)
        return self.tokens.create_token(actor.user_id, actor.organization_id, lead_id, purpose)

    def validate_challenge_token(
        self,
        actor: ActorUser,
        token: str,
        lead_id: int,
        purpose: str = REASSIGNMENT_PURPOSE,
    ) -> bool:
        return self.tokens.validate_token(token, actor.user_id, actor.organization_id, lead_id, purpose)
