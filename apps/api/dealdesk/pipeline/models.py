from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealdesk.core.database import Base
from dealdesk.pipeline.enums import PocStatus, Role, Stage, UniverseStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineUser(Base):
    __tablename__ = "pipeline_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=Role.INTERN.value)
    # analysts report to a partner, interns report to an analyst
    partner_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("pipeline_user.id", ondelete="SET NULL"), nullable=True
    )
    analyst_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("pipeline_user.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full_name or self.email


class PipelineCompany(Base):
    __tablename__ = "pipeline_company"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sector: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    contacts: Mapped[list[PipelineContact]] = relationship(
        "PipelineContact",
        back_populates="company",
        order_by="PipelineContact.id",
    )
    leads: Mapped[list[PipelineLead]] = relationship("PipelineLead", back_populates="company")


class PipelineContact(Base):
    __tablename__ = "pipeline_contact"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_company.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    designation: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    linkedin_profile: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    company: Mapped[PipelineCompany] = relationship("PipelineCompany", back_populates="contacts")

    __table_args__ = (Index("ix_pipeline_contact_org_company", "organization_id", "company_id"),)


class PipelineLead(Base):
    __tablename__ = "pipeline_lead"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_company.id", ondelete="RESTRICT"),
        nullable=False,
    )
    stage: Mapped[str] = mapped_column(String(16), nullable=False, default=Stage.UNIVERSE.value)
    universe_status: Mapped[str] = mapped_column(String(16), nullable=False, default=UniverseStatus.OPEN.value)
    owner_analyst_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("pipeline_user.id", ondelete="SET NULL"), nullable=True
    )
    poc_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    poc_completion_status: Mapped[str] = mapped_column(String(8), nullable=False, default=PocStatus.RED.value)
    default_poc_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("pipeline_contact.id", ondelete="SET NULL"), nullable=True
    )
    backup_poc_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("pipeline_contact.id", ondelete="SET NULL"), nullable=True
    )
    pipeline_value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    probability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    company: Mapped[PipelineCompany] = relationship("PipelineCompany", back_populates="leads")
    assignees: Mapped[list[PipelineLeadAssignee]] = relationship(
        "PipelineLeadAssignee",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="PipelineLeadAssignee.id",
    )

    __table_args__ = (
        Index("ix_pipeline_lead_org_stage", "organization_id", "stage"),
        Index("ix_pipeline_lead_org_company", "organization_id", "company_id"),
        Index("ix_pipeline_lead_owner", "organization_id", "owner_analyst_id"),
    )

    @property
    def assignee_ids(self) -> list[str]:
        return [item.user_id for item in self.assignees]

    @property
    def assigned_to(self) -> str | None:
        """Single-assignee view of the assignee set: the earliest non-intern, else the earliest assignee."""
        for item in self.assignees:
            if item.user.role != Role.INTERN:
                return item.user_id
        return self.assignees[0].user_id if self.assignees else None

    @property
    def assigned_interns(self) -> list[str]:
        return [item.user_id for item in self.assignees if item.user.role == Role.INTERN]


class PipelineLeadAssignee(Base):
    __tablename__ = "pipeline_lead_assignee"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("pipeline_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[PipelineLead] = relationship("PipelineLead", back_populates="assignees")
    user: Mapped[PipelineUser] = relationship("PipelineUser")

    __table_args__ = (
        UniqueConstraint("lead_id", "user_id", name="uq_pipeline_lead_assignee_pair"),
        Index("ix_pipeline_lead_assignee_user", "user_id"),
    )


class PipelineLeadAssignment(Base):
    __tablename__ = "pipeline_lead_assignment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_by: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_pipeline_lead_assignment_lead", "organization_id", "lead_id", "assigned_at"),)


class PipelineOutreachActivity(Base):
    __tablename__ = "pipeline_outreach_activity"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    contact_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("pipeline_contact.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineIntervention(Base):
    __tablename__ = "pipeline_intervention"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    document_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PipelineActivityLog(Base):
    __tablename__ = "pipeline_activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lead_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    company_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_pipeline_activity_log_lead", "organization_id", "lead_id"),)
