from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from opentelemetry import trace

from dealdesk.context import get_correlation_id
from dealdesk.metrics import observe_stage_transition
from dealdesk.pipeline.enums import CONTRACT, LETTER_OF_ENGAGEMENT, InterventionType, OutreachStatus, Stage
from dealdesk.pipeline.errors import EntityNotFoundError, StageValidationError
from dealdesk.pipeline.models import PipelineContact, PipelineLead
from dealdesk.pipeline.repositories import PipelineRepository
from dealdesk.pipeline.side_effects import SideEffectRunner


logger = logging.getLogger("dealdesk.pipeline")
tracer = trace.get_tracer("dealdesk.pipeline")


TRANSITIONS: dict[Stage, tuple[Stage, ...]] = {
    Stage.UNIVERSE: (Stage.QUALIFIED,),
    Stage.QUALIFIED: (Stage.OUTREACH, Stage.REJECTED),
    Stage.OUTREACH: (Stage.PITCHING, Stage.REJECTED),
    Stage.PITCHING: (Stage.MANDATES, Stage.LOST, Stage.REJECTED),
    Stage.MANDATES: (Stage.WON, Stage.LOST, Stage.REJECTED),
    Stage.WON: (),
    Stage.LOST: (),
    Stage.REJECTED: (),
}

MANUAL_TRANSITIONS: frozenset[tuple[Stage, Stage]] = frozenset(
    {
        (Stage.QUALIFIED, Stage.OUTREACH),
        (Stage.OUTREACH, Stage.PITCHING),
        (Stage.PITCHING, Stage.MANDATES),
    }
)

_CONTACT_FIELDS = ["contact.name", "contact.designation", "contact.linkedin_profile"]

REQUIRED_FIELDS: dict[Stage, list[str]] = {
    Stage.UNIVERSE: [],
    Stage.QUALIFIED: _CONTACT_FIELDS,
    Stage.OUTREACH: [*_CONTACT_FIELDS, "assigned_to"],
    Stage.PITCHING: [*_CONTACT_FIELDS, "assigned_to", "outreach_activities"],
    Stage.MANDATES: [*_CONTACT_FIELDS, "assigned_to", "outreach_activities", LETTER_OF_ENGAGEMENT],
    Stage.WON: [*_CONTACT_FIELDS, "assigned_to", "outreach_activities", CONTRACT, "notes"],
    Stage.LOST: [*_CONTACT_FIELDS, "assigned_to", "outreach_activities", "notes"],
    Stage.REJECTED: ["notes"],
}


class ContactLike(Protocol):
    name: str | None
    designation: str | None
    linkedin_profile: str | None
    is_primary: bool


class OutreachLike(Protocol):
    status: str


class InterventionLike(Protocol):
    type: str
    document_name: str | None


@dataclass(frozen=True, slots=True)
class LeadSnapshot:
    """The lead fields stage validation reads, detached from the ORM row."""

    id: int
    organization_id: int
    company_id: int
    stage: Stage
    assigned_to: str | None
    notes: str | None

    @classmethod
    def from_model(cls, lead: PipelineLead) -> LeadSnapshot:
        return cls(
            id=lead.id,
            organization_id=lead.organization_id,
            company_id=lead.company_id,
            stage=Stage(lead.stage),
            assigned_to=lead.assigned_to,
            notes=lead.notes,
        )


@dataclass(slots=True)
class StageValidationResult:
    errors: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def require(self, condition: bool, error: str, missing_field: str) -> None:
        if not condition:
            self.errors.append(error)
            self.missing_fields.append(missing_field)

    def as_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": list(self.errors), "missing_fields": list(self.missing_fields)}


@dataclass(slots=True)
class StageProgression:
    current_stage: Stage
    next_stage: Stage | None
    can_progress: bool
    required_fields: list[str]
    missing_fields: list[str]
    validation_errors: list[str]


@dataclass(slots=True)
class AutoProgressResult:
    progressed: bool
    new_stage: Stage | None = None
    errors: list[str] = field(default_factory=list)


def next_stages(stage: Stage) -> tuple[Stage, ...]:
    return TRANSITIONS[stage]


def forward_stage(stage: Stage) -> Stage | None:
    """First successor in the graph; on branching nodes that is the forward branch."""
    successors = next_stages(stage)
    return successors[0] if successors else None


def is_valid_transition(from_stage: Stage, to_stage: Stage) -> bool:
    return from_stage == to_stage or to_stage in next_stages(from_stage)


def is_terminal(stage: Stage) -> bool:
    return not next_stages(stage)


def get_required_fields_for_stage(stage: Stage) -> list[str]:
    return list(REQUIRED_FIELDS[stage])


def _has_text(value: str | None) -> bool:
    return bool((value or "").strip())


def _pick_contact(contacts: Sequence[ContactLike]) -> ContactLike | None:
    for contact in contacts:
        if _has_text(contact.name) and _has_text(contact.designation) and _has_text(contact.linkedin_profile):
            return contact
    primary = next((contact for contact in contacts if contact.is_primary), None)
    if primary is not None:
        return primary
    return contacts[0] if contacts else None


def _has_document(interventions: Sequence[InterventionLike], document_name: str) -> bool:
    return any(
        item.type == InterventionType.DOCUMENT and item.document_name == document_name for item in interventions
    )


@dataclass(frozen=True, slots=True)
class _Evidence:
    contacts: Sequence[ContactLike]
    outreach_activities: Sequence[OutreachLike]
    interventions: Sequence[InterventionLike]


_Rule = Callable[[LeadSnapshot, _Evidence, StageValidationResult], None]


def _universe(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    return None


def _qualified(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    contact = _pick_contact(evidence.contacts)
    if contact is None:
        result.require(False, "Contact information is required for qualified stage", "contact")
        return
    result.require(_has_text(contact.name), "Contact name is required", "contact.name")
    result.require(_has_text(contact.designation), "Contact designation is required", "contact.designation")
    result.require(_has_text(contact.linkedin_profile), "LinkedIn profile is required", "contact.linkedin_profile")


def _outreach(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    _qualified(lead, evidence, result)
    result.require(
        lead.assigned_to is not None,
        "Lead must be assigned to a team member before outreach",
        "assigned_to",
    )


def _pitching(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    _outreach(lead, evidence, result)
    activities = evidence.outreach_activities
    if not activities:
        result.require(False, "At least one outreach activity is required before pitching stage", "outreach_activities")
        return
    result.require(
        any(item.status == OutreachStatus.COMPLETED for item in activities),
        "At least one completed outreach activity is required before pitching",
        "completed_outreach",
    )


def _mandates(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    _pitching(lead, evidence, result)
    result.require(
        _has_document(evidence.interventions, LETTER_OF_ENGAGEMENT),
        "Letter of Engagement document is required for Mandates stage",
        LETTER_OF_ENGAGEMENT,
    )


def _closing_notes(lead: LeadSnapshot, result: StageValidationResult) -> None:
    result.require(_has_text(lead.notes), "Deal outcome notes are required when closing a lead", "notes")


def _won(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    if lead.stage == Stage.MANDATES:
        _mandates(lead, evidence, result)
        result.require(
            _has_document(evidence.interventions, CONTRACT),
            "Contract document is required to move from Mandates to Won",
            CONTRACT,
        )
    else:
        _pitching(lead, evidence, result)
    _closing_notes(lead, result)


def _lost(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    if lead.stage == Stage.MANDATES:
        _mandates(lead, evidence, result)
    else:
        _pitching(lead, evidence, result)
    _closing_notes(lead, result)


def _rejected(lead: LeadSnapshot, evidence: _Evidence, result: StageValidationResult) -> None:
    result.require(_has_text(lead.notes), "Rejection reason is required in notes", "notes")


_RULES: dict[Stage, _Rule] = {
    Stage.UNIVERSE: _universe,
    Stage.QUALIFIED: _qualified,
    Stage.OUTREACH: _outreach,
    Stage.PITCHING: _pitching,
    Stage.MANDATES: _mandates,
    Stage.WON: _won,
    Stage.LOST: _lost,
    Stage.REJECTED: _rejected,
}


def validate_stage_requirements(
    lead: LeadSnapshot,
    target: Stage,
    contacts: Sequence[ContactLike] = (),
    outreach_activities: Sequence[OutreachLike] = (),
    interventions: Sequence[InterventionLike] = (),
) -> StageValidationResult:
    """Check the cumulative entry requirements of ``target`` for ``lead``.

    Each stage's rule runs its predecessor's rule first, so the result lists
    every unmet requirement on the path, not only the last one. Nothing is
    mutated; identical inputs always produce identical results.
    """
    result = StageValidationResult()
    _RULES[target](lead, _Evidence(contacts, outreach_activities, interventions), result)
    return result


def parse_stage(value: str | Stage) -> Stage:
    try:
        return Stage(value)
    except ValueError:
        raise StageValidationError(f"Unknown stage: {value}", missing_fields=[]) from None


class StageProgressionService:
    """Repository-backed entry points around the pure stage rules."""

    def validate_stage_transition(
        self,
        repo: PipelineRepository,
        lead_id: int,
        organization_id: int,
        target_stage: str | Stage,
        notes: str | None = None,
    ) -> StageValidationResult:
        lead = repo.get_lead(lead_id, organization_id)
        if lead is None:
            return StageValidationResult(errors=["Lead not found"])
        target = parse_stage(target_stage)
        snapshot = LeadSnapshot.from_model(lead)
        if notes is not None:
            snapshot = dataclasses.replace(snapshot, notes=notes)
        return self.validate_snapshot(repo, snapshot, target)

    def validate_snapshot(self, repo: PipelineRepository, snapshot: LeadSnapshot, target: Stage) -> StageValidationResult:
        if not is_valid_transition(snapshot.stage, target):
            return StageValidationResult(errors=[f"Invalid stage transition from {snapshot.stage} to {target}"])
        return validate_stage_requirements(
            snapshot,
            target,
            contacts=repo.get_contacts_by_company(snapshot.company_id, snapshot.organization_id),
            outreach_activities=repo.get_outreach_activities(snapshot.id, snapshot.organization_id),
            interventions=repo.get_interventions(snapshot.id, snapshot.organization_id),
        )

    def analyze_stage_progression(self, repo: PipelineRepository, lead_id: int, organization_id: int) -> StageProgression:
        lead = repo.get_lead(lead_id, organization_id)
        if lead is None:
            raise EntityNotFoundError("lead", lead_id)

        snapshot = LeadSnapshot.from_model(lead)
        next_stage = forward_stage(snapshot.stage)
        if next_stage is None:
            return StageProgression(
                current_stage=snapshot.stage,
                next_stage=None,
                can_progress=False,
                required_fields=[],
                missing_fields=[],
                validation_errors=["Lead is in a terminal stage"],
            )

        validation = self.validate_snapshot(repo, snapshot, next_stage)
        return StageProgression(
            current_stage=snapshot.stage,
            next_stage=next_stage,
            can_progress=validation.is_valid,
            required_fields=get_required_fields_for_stage(next_stage),
            missing_fields=validation.missing_fields,
            validation_errors=validation.errors,
        )

    def auto_progress_lead(
        self,
        repo: PipelineRepository,
        lead_id: int,
        organization_id: int,
        *,
        actor_user_id: str | None = None,
        trigger: str = "auto",
    ) -> AutoProgressResult:
        """Advance the lead by one graph edge when the next stage's requirements hold.

        A lead whose data does not support the next stage is left untouched and
        the unmet requirements are reported instead of raised.
        """
        with tracer.start_as_current_span("pipeline.auto_progress") as span:
            span.set_attribute("lead_id", lead_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")

            analysis = self.analyze_stage_progression(repo, lead_id, organization_id)
            span.set_attribute("from_stage", analysis.current_stage.value)
            if not analysis.can_progress or analysis.next_stage is None:
                span.set_attribute("progressed", False)
                return AutoProgressResult(progressed=False, errors=analysis.validation_errors)

            lead = repo.update_lead(lead_id, organization_id, stage=analysis.next_stage.value)
            if lead is None:
                span.set_attribute("progressed", False)
                return AutoProgressResult(progressed=False, errors=["Failed to update lead stage"])

            span.set_attribute("to_stage", analysis.next_stage.value)
            span.set_attribute("progressed", True)
            repo.commit()
            SideEffectRunner(repo.session).run(
                "activity_log",
                self.record_transition,
                repo,
                lead,
                analysis.current_stage,
                analysis.next_stage,
                actor_user_id=actor_user_id,
                trigger=trigger,
                action="lead_auto_progressed",
                description=f"Lead auto-progressed from {analysis.current_stage} to {analysis.next_stage}",
            )
            return AutoProgressResult(progressed=True, new_stage=analysis.next_stage)

    def record_transition(
        self,
        repo: PipelineRepository,
        lead: PipelineLead,
        from_stage: Stage,
        to_stage: Stage,
        *,
        actor_user_id: str | None,
        trigger: str,
        action: str,
        description: str,
    ) -> None:
        observe_stage_transition(from_stage.value, to_stage.value, trigger)
        logger.info(
            "lead.stage_changed",
            extra={
                "organization_id": lead.organization_id,
                "lead_id": lead.id,
                "from_stage": from_stage.value,
                "to_stage": to_stage.value,
                "user_id": actor_user_id,
            },
        )
        repo.create_activity_log(
            organization_id=lead.organization_id,
            user_id=actor_user_id,
            action=action,
            entity_type="lead",
            entity_id=str(lead.id),
            lead_id=lead.id,
            company_id=lead.company_id,
            old_value=from_stage.value,
            new_value=to_stage.value,
            description=description,
            correlation_id=get_correlation_id(),
        )

    def guard_manual_transition(
        self,
        repo: PipelineRepository,
        lead: PipelineLead,
        target: Stage,
        default_poc_id: int | None,
        backup_poc_id: int | None,
    ) -> None:
        """Raise unless ``lead.stage -> target`` is one of the human-triggered moves and its evidence is present."""
        current = Stage(lead.stage)
        if (current, target) not in MANUAL_TRANSITIONS:
            raise StageValidationError(
                "This endpoint only supports manual transitions: qualified -> outreach, "
                f"outreach -> pitching, or pitching -> mandates. Current: {current}, Requested: {target}"
            )

        snapshot = LeadSnapshot.from_model(lead)
        if target == Stage.PITCHING:
            self._guard_pitching(repo, lead, default_poc_id, backup_poc_id)
            return

        # qualified -> outreach and pitching -> mandates only need the current stage to still hold
        held = self.validate_snapshot(repo, snapshot, current)
        if not held.is_valid:
            raise StageValidationError(
                f"Lead no longer meets the {current} stage requirements",
                errors=held.errors,
                missing_fields=held.missing_fields,
            )

    def _guard_pitching(
        self,
        repo: PipelineRepository,
        lead: PipelineLead,
        default_poc_id: int | None,
        backup_poc_id: int | None,
    ) -> None:
        interventions = repo.get_interventions(lead.id, lead.organization_id)
        if not any(item.type == InterventionType.MEETING for item in interventions):
            raise StageValidationError(
                "Cannot move to Pitching stage: A meeting with POCs must be recorded first",
                missing_fields=["meeting"],
                requires_meeting=True,
            )

        if default_poc_id is None:
            raise StageValidationError(
                "Cannot move to Pitching stage: Default POC must be selected",
                missing_fields=["default_poc_id"],
            )
        if not self._belongs_to_company(repo.get_contact(default_poc_id, lead.organization_id), lead.company_id):
            raise StageValidationError(
                "Invalid POC: Contact must belong to the same company",
                missing_fields=["default_poc_id"],
            )

        if backup_poc_id is not None:
            if backup_poc_id == default_poc_id:
                raise StageValidationError(
                    "Backup POC must be different from default POC",
                    missing_fields=["backup_poc_id"],
                )
            if not self._belongs_to_company(repo.get_contact(backup_poc_id, lead.organization_id), lead.company_id):
                raise StageValidationError(
                    "Invalid backup POC: Contact must belong to the same company",
                    missing_fields=["backup_poc_id"],
                )

    @staticmethod
    def _belongs_to_company(contact: PipelineContact | None, company_id: int) -> bool:
        return contact is not None and contact.company_id == company_id

    def guard_rejection(self, lead: PipelineLead, reason: str) -> LeadSnapshot:
        """Return the snapshot the rejection would produce, or raise when it cannot happen."""
        current = Stage(lead.stage)
        if current == Stage.REJECTED:
            raise StageValidationError("Lead is already rejected")
        if is_terminal(current):
            raise StageValidationError(f"Lead is in a terminal stage ({current}) and cannot be rejected")

        snapshot = dataclasses.replace(LeadSnapshot.from_model(lead), notes=reason.strip())
        result = validate_stage_requirements(snapshot, Stage.REJECTED)
        if not result.is_valid:
            raise StageValidationError(
                "Rejection reason is required",
                errors=result.errors,
                missing_fields=result.missing_fields,
            )
        return snapshot
