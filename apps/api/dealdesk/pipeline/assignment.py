from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from dealdesk.pipeline.actor import ActorUser
from dealdesk.pipeline.enums import Role
from dealdesk.pipeline.errors import AssignmentForbiddenError, EntityNotFoundError, InvalidRequestError
from dealdesk.pipeline.models import PipelineLead, PipelineUser
from dealdesk.pipeline.repositories import PipelineRepository


@dataclass(slots=True)
class InternAssignmentDecision:
    interns: list[PipelineUser]
    claim_ownership: bool


@dataclass(slots=True)
class AnalystReassignmentDecision:
    from_analyst: PipelineUser
    to_analyst: PipelineUser


class AssignmentAuthority:
    """Decides who may assign which users to a lead.

    Every method either returns the resolved users the caller may act on or
    raises with a message naming the violated rule. Nothing here writes.
    """

    def __init__(self, repo: PipelineRepository) -> None:
        self.repo = repo

    def _org_user(self, user_id: str, organization_id: int, message: str) -> PipelineUser:
        user = self.repo.get_org_user(user_id, organization_id)
        if user is None:
            raise EntityNotFoundError("user", user_id, message)
        return user

    @staticmethod
    def is_reassignment(lead: PipelineLead, assignee_id: str | None) -> bool:
        # intern assignments are managed separately and never make this a reassignment
        current = {row.user_id for row in lead.assignees if row.user.role != Role.INTERN}
        if not current:
            return False
        return current != ({assignee_id} if assignee_id else set())

    def authorize_single_assignment(self, actor: ActorUser, assignee_id: str | None) -> PipelineUser | None:
        role = actor.role
        if role is Role.ADMIN or role is Role.PARTNER:
            pass
        elif role is Role.ANALYST or role is Role.INTERN:
            raise AssignmentForbiddenError("Only partners and admins can assign leads")
        else:
            assert_never(role)

        if assignee_id is None:
            return None
        return self._org_user(assignee_id, actor.organization_id, "Assigned user not found")

    def authorize_intern_assignment(
        self,
        actor: ActorUser,
        lead: PipelineLead,
        intern_ids: list[str],
    ) -> InternAssignmentDecision:
        interns: list[PipelineUser] = []
        for intern_id in intern_ids:
            intern = self._org_user(intern_id, actor.organization_id, f"Intern {intern_id} not found")
            if intern.role != Role.INTERN:
                raise InvalidRequestError(f"User {intern_id} is not an intern")
            interns.append(intern)

        claim_ownership = False
        role = actor.role
        if role is Role.ANALYST:
            if lead.owner_analyst_id is not None and lead.owner_analyst_id != actor.user_id:
                raise AssignmentForbiddenError("You can only assign your own leads to interns")
            claim_ownership = lead.owner_analyst_id is None
        elif role is Role.PARTNER:
            if lead.owner_analyst_id is None:
                raise AssignmentForbiddenError("Lead must have an owner analyst before assigning to intern")
            if not self.repo.validate_partner_of(actor.user_id, lead.owner_analyst_id, actor.organization_id):
                raise AssignmentForbiddenError("You can only manage leads owned by analysts you supervise")
        elif role is Role.ADMIN:
            pass
        elif role is Role.INTERN:
            raise AssignmentForbiddenError("Interns cannot assign leads")
        else:
            assert_never(role)

        return InternAssignmentDecision(interns=interns, claim_ownership=claim_ownership)

    def authorize_intern_reassignment(
        self,
        actor: ActorUser,
        lead: PipelineLead,
        from_intern_id: str,
        to_intern_id: str,
    ) -> tuple[PipelineUser, PipelineUser]:
        if from_intern_id == to_intern_id:
            raise InvalidRequestError("Source and target intern must be different")
        if from_intern_id not in lead.assignee_ids:
            raise InvalidRequestError("Lead is not currently assigned to the specified intern")

        organization_id = actor.organization_id
        from_intern = self._org_user(from_intern_id, organization_id, "Source intern not found")
        to_intern = self._org_user(to_intern_id, organization_id, "Target intern not found")
        if from_intern.role != Role.INTERN or to_intern.role != Role.INTERN:
            raise InvalidRequestError("Both users must be interns")
        if to_intern_id in lead.assignee_ids:
            raise InvalidRequestError("Target intern is already assigned to this lead")

        owner_id = lead.owner_analyst_id
        role = actor.role
        if role is Role.ANALYST:
            if owner_id != actor.user_id:
                raise AssignmentForbiddenError("You can only reassign your own leads")
            if not self._both_report_to(actor.user_id, from_intern_id, to_intern_id, organization_id):
                raise AssignmentForbiddenError("You can only reassign between your own interns")
        elif role is Role.PARTNER:
            if owner_id is None:
                raise InvalidRequestError("Lead must have an owner analyst before reassigning")
            if not self.repo.validate_partner_of(actor.user_id, owner_id, organization_id):
                raise AssignmentForbiddenError("You can only manage leads owned by analysts you supervise")
            if not self._both_report_to(owner_id, from_intern_id, to_intern_id, organization_id):
                raise AssignmentForbiddenError("Both interns must belong to the lead owner analyst")
        elif role is Role.ADMIN:
            if owner_id is not None and not self._both_report_to(owner_id, from_intern_id, to_intern_id, organization_id):
                raise AssignmentForbiddenError("Both interns must belong to the lead owner analyst")
        elif role is Role.INTERN:
            raise AssignmentForbiddenError("Interns cannot reassign leads")
        else:
            assert_never(role)

        return from_intern, to_intern

    def _both_report_to(self, analyst_id: str, first_intern_id: str, second_intern_id: str, organization_id: int) -> bool:
        return self.repo.validate_analyst_of(analyst_id, first_intern_id, organization_id) and self.repo.validate_analyst_of(
            analyst_id, second_intern_id, organization_id
        )

    def authorize_analyst_reassignment(
        self,
        actor: ActorUser,
        from_analyst_id: str,
        to_analyst_id: str,
        partner_id: str | None,
    ) -> AnalystReassignmentDecision:
        if from_analyst_id == to_analyst_id:
            raise InvalidRequestError("Source and target analyst must be different")

        organization_id = actor.organization_id
        from_analyst = self._org_user(from_analyst_id, organization_id, "Source analyst not found")
        if from_analyst.role != Role.ANALYST:
            raise InvalidRequestError("Source user is not an analyst")
        to_analyst = self._org_user(to_analyst_id, organization_id, "Target analyst not found")
        if to_analyst.role != Role.ANALYST:
            raise InvalidRequestError("Target user is not an analyst")

        role = actor.role
        if role is Role.PARTNER:
            if partner_id is not None and partner_id != actor.user_id:
                raise AssignmentForbiddenError("Partners can only reassign analysts they manage themselves")
            if not self.repo.validate_partner_of(actor.user_id, from_analyst_id, organization_id):
                raise AssignmentForbiddenError("You can only reassign analysts you manage")
            if not self.repo.validate_partner_of(actor.user_id, to_analyst_id, organization_id):
                raise AssignmentForbiddenError("Target analyst must report to you")
        elif role is Role.ADMIN:
            if partner_id is not None:
                partner = self._org_user(partner_id, organization_id, "Partner not found")
                if partner.role != Role.PARTNER:
                    raise InvalidRequestError("Invalid partner: user does not have the partner role")
                if not self.repo.validate_partner_of(partner_id, from_analyst_id, organization_id):
                    raise AssignmentForbiddenError("From analyst does not report to the specified partner")
        elif role is Role.ANALYST or role is Role.INTERN:
            raise AssignmentForbiddenError("Only partners and admins can reassign analysts")
        else:
            assert_never(role)

        return AnalystReassignmentDecision(from_analyst=from_analyst, to_analyst=to_analyst)

    def authorize_bulk_override(self, actor: ActorUser) -> None:
        role = actor.role
        if role is Role.PARTNER or role is Role.ADMIN:
            return
        if role is Role.ANALYST or role is Role.INTERN:
            raise AssignmentForbiddenError("Only partners and admins can bulk assign or transfer leads")
        assert_never(role)

    def authorize_transfer(self, actor: ActorUser, from_user_id: str, to_user_id: str) -> tuple[PipelineUser, PipelineUser]:
        self.authorize_bulk_override(actor)
        if from_user_id == to_user_id:
            raise InvalidRequestError("Source and target user must be different")
        from_user = self._org_user(from_user_id, actor.organization_id, "Source user not found")
        to_user = self._org_user(to_user_id, actor.organization_id, "Target user not found")
        return from_user, to_user
