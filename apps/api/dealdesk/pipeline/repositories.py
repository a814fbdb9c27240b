from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk.pipeline.enums import Role
from dealdesk.pipeline.models import (
    PipelineActivityLog,
    PipelineCompany,
    PipelineContact,
    PipelineIntervention,
    PipelineLead,
    PipelineLeadAssignee,
    PipelineLeadAssignment,
    PipelineOutreachActivity,
    PipelineUser,
)

QUALIFICATION_FIELDS = ("name", "designation", "linkedin_profile")


def is_contact_complete(values: Any) -> bool:
    return all(bool((getattr(values, field, None) or "").strip()) for field in QUALIFICATION_FIELDS)


class PipelineRepository:
    """Organization-scoped data access for the deal pipeline.

    Reads never cross organizations; a lookup for an id owned by another
    organization behaves exactly like a missing row. Writes flush but never
    commit, so the caller owns the transaction boundary.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # users

    def get_user(self, user_id: str) -> PipelineUser | None:
        return self.session.get(PipelineUser, user_id)

    def get_org_user(self, user_id: str, organization_id: int) -> PipelineUser | None:
        user = self.get_user(user_id)
        if user is None or user.organization_id != organization_id:
            return None
        return user

    def create_user(self, organization_id: int, **fields: Any) -> PipelineUser:
        user = PipelineUser(organization_id=organization_id, **fields)
        self.session.add(user)
        self.session.flush()
        return user

    def validate_partner_of(self, partner_id: str, analyst_id: str, organization_id: int) -> bool:
        analyst = self.get_org_user(analyst_id, organization_id)
        return analyst is not None and analyst.role == Role.ANALYST and analyst.partner_id == partner_id

    def validate_analyst_of(self, analyst_id: str, intern_id: str, organization_id: int) -> bool:
        intern = self.get_org_user(intern_id, organization_id)
        return intern is not None and intern.role == Role.INTERN and intern.analyst_id == analyst_id

    def get_interns_of(self, analyst_id: str, organization_id: int) -> list[PipelineUser]:
        stmt = (
            select(PipelineUser)
            .where(
                PipelineUser.organization_id == organization_id,
                PipelineUser.analyst_id == analyst_id,
                PipelineUser.role == Role.INTERN.value,
            )
            .order_by(PipelineUser.id)
        )
        return list(self.session.scalars(stmt).all())

    # companies and contacts

    def get_company(self, company_id: int, organization_id: int) -> PipelineCompany | None:
        return self.session.scalar(
            select(PipelineCompany).where(
                PipelineCompany.id == company_id,
                PipelineCompany.organization_id == organization_id,
            )
        )

    def create_company(self, organization_id: int, **fields: Any) -> PipelineCompany:
        company = PipelineCompany(organization_id=organization_id, **fields)
        self.session.add(company)
        self.session.flush()
        return company

    def get_contacts_by_company(self, company_id: int, organization_id: int) -> list[PipelineContact]:
        stmt = (
            select(PipelineContact)
            .where(
                PipelineContact.company_id == company_id,
                PipelineContact.organization_id == organization_id,
            )
            .order_by(PipelineContact.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_contact(self, contact_id: int, organization_id: int) -> PipelineContact | None:
        return self.session.scalar(
            select(PipelineContact).where(
                PipelineContact.id == contact_id,
                PipelineContact.organization_id == organization_id,
            )
        )

    def create_contact(self, organization_id: int, **fields: Any) -> PipelineContact:
        existing = self.get_contacts_by_company(fields["company_id"], organization_id)
        is_primary = fields.pop("is_primary", None)
        if is_primary is None:
            is_primary = not existing

        contact = PipelineContact(organization_id=organization_id, is_primary=bool(is_primary), **fields)
        contact.is_complete = is_contact_complete(contact)
        if contact.is_primary:
            self._clear_primary(existing)
        self.session.add(contact)
        self.session.flush()
        return contact

    def update_contact(self, contact_id: int, organization_id: int, **fields: Any) -> PipelineContact | None:
        contact = self.get_contact(contact_id, organization_id)
        if contact is None:
            return None

        is_primary = fields.pop("is_primary", None)
        for field_name, value in fields.items():
            setattr(contact, field_name, value)
        if is_primary:
            others = [item for item in self.get_contacts_by_company(contact.company_id, organization_id) if item.id != contact.id]
            self._clear_primary(others)
            contact.is_primary = True
        elif is_primary is False:
            contact.is_primary = False
        contact.is_complete = is_contact_complete(contact)
        self.session.flush()
        return contact

    def delete_contact(self, contact_id: int, organization_id: int) -> PipelineContact | None:
        contact = self.get_contact(contact_id, organization_id)
        if contact is None:
            return None

        for lead in self.get_leads_by_company(contact.company_id, organization_id):
            if lead.default_poc_id == contact.id:
                lead.default_poc_id = None
            if lead.backup_poc_id == contact.id:
                lead.backup_poc_id = None

        was_primary = contact.is_primary
        self.session.delete(contact)
        self.session.flush()

        if was_primary:
            remaining = self.get_contacts_by_company(contact.company_id, organization_id)
            if remaining:
                remaining[0].is_primary = True
                self.session.flush()
        return contact

    def _clear_primary(self, contacts: Iterable[PipelineContact]) -> None:
        for item in contacts:
            if item.is_primary:
                item.is_primary = False

    # leads

    def get_lead(self, lead_id: int, organization_id: int) -> PipelineLead | None:
        return self.session.scalar(
            select(PipelineLead).where(
                PipelineLead.id == lead_id,
                PipelineLead.organization_id == organization_id,
            )
        )

    def create_lead(self, **fields: Any) -> PipelineLead:
        lead = PipelineLead(**fields)
        self.session.add(lead)
        self.session.flush()
        return lead

    def update_lead(self, lead_id: int, organization_id: int, **fields: Any) -> PipelineLead | None:
        lead = self.get_lead(lead_id, organization_id)
        if lead is None:
            return None
        for field_name, value in fields.items():
            setattr(lead, field_name, value)
        self.session.flush()
        return lead

    def get_leads_by_company(self, company_id: int, organization_id: int) -> list[PipelineLead]:
        stmt = (
            select(PipelineLead)
            .where(
                PipelineLead.company_id == company_id,
                PipelineLead.organization_id == organization_id,
            )
            .order_by(PipelineLead.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_leads_by_assignee(self, user_id: str, organization_id: int) -> list[PipelineLead]:
        stmt = (
            select(PipelineLead)
            .join(PipelineLeadAssignee, PipelineLeadAssignee.lead_id == PipelineLead.id)
            .where(
                PipelineLead.organization_id == organization_id,
                PipelineLeadAssignee.user_id == user_id,
            )
            .order_by(PipelineLead.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_leads_owned_by(self, analyst_id: str, organization_id: int) -> list[PipelineLead]:
        stmt = (
            select(PipelineLead)
            .where(
                PipelineLead.organization_id == organization_id,
                PipelineLead.owner_analyst_id == analyst_id,
            )
            .order_by(PipelineLead.id)
        )
        return list(self.session.scalars(stmt).all())

    # assignee set

    def get_assignees(self, lead: PipelineLead) -> list[str]:
        return lead.assignee_ids

    def set_assignees(self, lead: PipelineLead, users: list[PipelineUser]) -> None:
        """Replace the assignee set, keeping rows (and their order) for users that stay."""
        wanted = {user.id for user in users}
        for row in list(lead.assignees):
            if row.user_id not in wanted:
                lead.assignees.remove(row)
        present = {row.user_id for row in lead.assignees}
        for user in users:
            if user.id not in present:
                lead.assignees.append(PipelineLeadAssignee(user=user))
                present.add(user.id)
        self.session.flush()

    def replace_assignee(self, lead: PipelineLead, from_user_id: str, to_user: PipelineUser) -> None:
        """Swap one member of the assignee set in place; the replacement inherits its position."""
        rows = {row.user_id: row for row in lead.assignees}
        current = rows.get(from_user_id)
        if current is None:
            return
        if to_user.id in rows:
            lead.assignees.remove(current)
        else:
            current.user = to_user
        self.session.flush()

    def remove_assignee(self, lead: PipelineLead, user_id: str) -> None:
        for row in list(lead.assignees):
            if row.user_id == user_id:
                lead.assignees.remove(row)
        self.session.flush()

    # history and evidence

    def record_assignment(
        self,
        organization_id: int,
        lead_id: int,
        assigned_by: str,
        assigned_to: str | None,
        notes: str | None = None,
    ) -> PipelineLeadAssignment:
        record = PipelineLeadAssignment(
            organization_id=organization_id,
            lead_id=lead_id,
            assigned_by=assigned_by,
            assigned_to=assigned_to,
            notes=notes,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def list_assignments(self, lead_id: int, organization_id: int) -> list[PipelineLeadAssignment]:
        stmt = (
            select(PipelineLeadAssignment)
            .where(
                PipelineLeadAssignment.lead_id == lead_id,
                PipelineLeadAssignment.organization_id == organization_id,
            )
            .order_by(PipelineLeadAssignment.assigned_at, PipelineLeadAssignment.id)
        )
        return list(self.session.scalars(stmt).all())

    def get_outreach_activities(self, lead_id: int, organization_id: int) -> list[PipelineOutreachActivity]:
        stmt = (
            select(PipelineOutreachActivity)
            .where(
                PipelineOutreachActivity.lead_id == lead_id,
                PipelineOutreachActivity.organization_id == organization_id,
            )
            .order_by(PipelineOutreachActivity.id)
        )
        return list(self.session.scalars(stmt).all())

    def create_outreach_activity(self, organization_id: int, **fields: Any) -> PipelineOutreachActivity:
        activity = PipelineOutreachActivity(organization_id=organization_id, **fields)
        self.session.add(activity)
        self.session.flush()
        return activity

    def get_interventions(self, lead_id: int, organization_id: int) -> list[PipelineIntervention]:
        stmt = (
            select(PipelineIntervention)
            .where(
                PipelineIntervention.lead_id == lead_id,
                PipelineIntervention.organization_id == organization_id,
            )
            .order_by(PipelineIntervention.id)
        )
        return list(self.session.scalars(stmt).all())

    def create_intervention(self, organization_id: int, **fields: Any) -> PipelineIntervention:
        fields = {key: value for key, value in fields.items() if value is not None}
        intervention = PipelineIntervention(organization_id=organization_id, **fields)
        self.session.add(intervention)
        self.session.flush()
        return intervention

    def create_activity_log(self, **event: Any) -> None:
        self.session.add(PipelineActivityLog(**event))
        self.session.flush()

    def list_activity_logs(self, lead_id: int, organization_id: int) -> list[PipelineActivityLog]:
        stmt = (
            select(PipelineActivityLog)
            .where(
                PipelineActivityLog.lead_id == lead_id,
                PipelineActivityLog.organization_id == organization_id,
            )
            .order_by(PipelineActivityLog.id)
        )
        return list(self.session.scalars(stmt).all())

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
