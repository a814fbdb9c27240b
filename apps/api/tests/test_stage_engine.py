from __future__ import annotations

from dataclasses import dataclass

import pytest

from dealdesk.pipeline.enums import CONTRACT, LETTER_OF_ENGAGEMENT, Stage
from dealdesk.pipeline.errors import StageValidationError
from dealdesk.pipeline.stages import (
    LeadSnapshot,
    forward_stage,
    get_required_fields_for_stage,
    is_terminal,
    is_valid_transition,
    parse_stage,
    validate_stage_requirements,
)


@dataclass
class Contact:
    name: str | None = "Jane Doe"
    designation: str | None = "CFO"
    linkedin_profile: str | None = "https://linkedin.com/in/jane"
    is_primary: bool = True


@dataclass
class Outreach:
    status: str = "completed"


@dataclass
class Intervention:
    type: str
    document_name: str | None = None


def _lead(stage: Stage, assigned_to: str | None = "analyst-1", notes: str | None = None) -> LeadSnapshot:
    return LeadSnapshot(id=1, organization_id=1, company_id=1, stage=stage, assigned_to=assigned_to, notes=notes)


def test_transition_graph_allows_only_listed_edges() -> None:
    assert is_valid_transition(Stage.UNIVERSE, Stage.QUALIFIED)
    assert is_valid_transition(Stage.PITCHING, Stage.LOST)
    assert is_valid_transition(Stage.MANDATES, Stage.WON)
    assert is_valid_transition(Stage.OUTREACH, Stage.OUTREACH)
    assert not is_valid_transition(Stage.UNIVERSE, Stage.PITCHING)
    assert not is_valid_transition(Stage.UNIVERSE, Stage.REJECTED)
    assert not is_valid_transition(Stage.QUALIFIED, Stage.LOST)
    assert not is_valid_transition(Stage.WON, Stage.LOST)


def test_forward_stage_skips_rejection_branches() -> None:
    assert forward_stage(Stage.QUALIFIED) == Stage.OUTREACH
    assert forward_stage(Stage.PITCHING) == Stage.MANDATES
    assert forward_stage(Stage.MANDATES) == Stage.WON
    assert forward_stage(Stage.REJECTED) is None
    assert all(is_terminal(stage) for stage in (Stage.WON, Stage.LOST, Stage.REJECTED))


def test_qualified_requires_complete_contact() -> None:
    result = validate_stage_requirements(_lead(Stage.UNIVERSE), Stage.QUALIFIED, contacts=[])
    assert not result.is_valid
    assert result.missing_fields == ["contact"]

    partial = Contact(designation="  ", linkedin_profile=None)
    result = validate_stage_requirements(_lead(Stage.UNIVERSE), Stage.QUALIFIED, contacts=[partial])
    assert result.missing_fields == ["contact.designation", "contact.linkedin_profile"]
    assert "LinkedIn profile is required" in result.errors

    result = validate_stage_requirements(_lead(Stage.UNIVERSE), Stage.QUALIFIED, contacts=[partial, Contact(is_primary=False)])
    assert result.is_valid


def test_requirements_are_cumulative() -> None:
    result = validate_stage_requirements(_lead(Stage.OUTREACH, assigned_to=None), Stage.PITCHING, contacts=[])
    assert result.missing_fields == ["contact", "assigned_to", "outreach_activities"]


def test_pitching_needs_a_completed_outreach_activity() -> None:
    lead = _lead(Stage.OUTREACH)
    pending = validate_stage_requirements(lead, Stage.PITCHING, contacts=[Contact()], outreach_activities=[Outreach("pending")])
    assert pending.missing_fields == ["completed_outreach"]

    done = validate_stage_requirements(lead, Stage.PITCHING, contacts=[Contact()], outreach_activities=[Outreach()])
    assert done.is_valid


def test_document_gates_for_mandates_and_won() -> None:
    evidence = {"contacts": [Contact()], "outreach_activities": [Outreach()]}
    loe = Intervention(type="document", document_name=LETTER_OF_ENGAGEMENT)
    contract = Intervention(type="document", document_name=CONTRACT)

    assert validate_stage_requirements(_lead(Stage.PITCHING), Stage.MANDATES, **evidence).missing_fields == [LETTER_OF_ENGAGEMENT]
    assert validate_stage_requirements(_lead(Stage.PITCHING), Stage.MANDATES, interventions=[loe], **evidence).is_valid

    from_mandates = validate_stage_requirements(_lead(Stage.MANDATES), Stage.WON, interventions=[loe], **evidence)
    assert from_mandates.missing_fields == [CONTRACT, "notes"]

    closed = validate_stage_requirements(
        _lead(Stage.MANDATES, notes="Signed"),
        Stage.WON,
        interventions=[loe, contract],
        **evidence,
    )
    assert closed.is_valid

    # the legacy pitching -> won path only needs pitching requirements and notes
    legacy = validate_stage_requirements(_lead(Stage.PITCHING, notes="Closed fast"), Stage.WON, **evidence)
    assert legacy.is_valid


def test_lost_follows_actual_predecessor() -> None:
    evidence = {"contacts": [Contact()], "outreach_activities": [Outreach()]}
    from_pitching = validate_stage_requirements(_lead(Stage.PITCHING, notes="Went elsewhere"), Stage.LOST, **evidence)
    assert from_pitching.is_valid

    from_mandates = validate_stage_requirements(_lead(Stage.MANDATES, notes="Went elsewhere"), Stage.LOST, **evidence)
    assert from_mandates.missing_fields == [LETTER_OF_ENGAGEMENT]


def test_rejected_only_needs_a_reason() -> None:
    assert not validate_stage_requirements(_lead(Stage.QUALIFIED, notes="   "), Stage.REJECTED).is_valid
    assert validate_stage_requirements(_lead(Stage.QUALIFIED, notes="Too small"), Stage.REJECTED).is_valid


def test_validation_is_repeatable() -> None:
    lead = _lead(Stage.OUTREACH)
    contacts = [Contact(linkedin_profile="")]
    first = validate_stage_requirements(lead, Stage.PITCHING, contacts=contacts)
    second = validate_stage_requirements(lead, Stage.PITCHING, contacts=contacts)
    assert first.as_dict() == second.as_dict()


def test_required_fields_listing_and_stage_parsing() -> None:
    assert get_required_fields_for_stage(Stage.UNIVERSE) == []
    assert get_required_fields_for_stage(Stage.MANDATES)[-1] == LETTER_OF_ENGAGEMENT
    assert parse_stage("pitching") is Stage.PITCHING
    with pytest.raises(StageValidationError, match="Unknown stage"):
        parse_stage("closing")
