from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from dealdesk import audit, events
from dealdesk.core.auth import AuthUser, get_current_user as auth_get_current_user
from dealdesk.core.database import get_db
from dealdesk.main import app
from dealdesk.pipeline.actor import ActorUser
from dealdesk.pipeline.api import get_current_user as pipeline_get_current_user
from dealdesk.pipeline.enums import Role
from dealdesk.pipeline.models import PipelineCompany, PipelineUser

COMPLETE_CONTACT = {
    "name": "Jane Doe",
    "designation": "CFO",
    "linkedin_profile": "https://linkedin.com/in/jane",
}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, PipelineUser],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    current = {"user_id": "admin-1"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        user = users[current["user_id"]]
        return ActorUser(
            user_id=user.id,
            organization_id=user.organization_id,
            role=Role(user.role),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_user(user_id: str) -> None:
        current["user_id"] = user_id

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipeline_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_user
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, company: PipelineCompany, **extra: object) -> dict:
    response = client.post("/api/pipeline/leads", json={"company_id": company.id, **extra})
    assert response.status_code == 201
    return response.json()


def _challenge_token(client: TestClient, lead_id: int) -> str:
    response = client.post("/api/pipeline/challenge-tokens", json={"lead_id": lead_id})
    assert response.status_code == 201
    return response.json()["token"]


def test_analyst_lead_creation_ignores_client_supplied_stage(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")

    lead = _create_lead(test_client, company, stage="won", assigned_to="partner-1", owner_analyst_id="analyst-2")

    assert lead["stage"] == "qualified"
    assert lead["owner_analyst_id"] == "analyst-1"
    assert lead["assigned_to"] == "analyst-1"
    assert lead["assigned_interns"] == []
    assert lead["universe_status"] == "assigned"


def test_intern_cannot_create_leads(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("intern-1")

    response = test_client.post("/api/pipeline/leads", json={"company_id": company.id})

    assert response.status_code == 403
    assert response.json()["code"] == "assignment_forbidden"


def test_complete_contact_auto_qualifies_universe_lead(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, company)
    assert lead["stage"] == "universe"

    contact = test_client.post("/api/pipeline/contacts", json={"company_id": company.id, **COMPLETE_CONTACT})
    assert contact.status_code == 201
    assert contact.json()["is_primary"] is True
    assert contact.json()["is_complete"] is True

    refreshed = test_client.get(f"/api/pipeline/leads/{lead['id']}").json()
    assert refreshed["stage"] == "qualified"
    assert refreshed["poc_count"] == 1
    assert refreshed["poc_completion_status"] == "amber"

    contacts = test_client.get(f"/api/pipeline/companies/{company.id}/contacts")
    assert [item["name"] for item in contacts.json()] == ["Jane Doe"]

    deleted = test_client.delete(f"/api/pipeline/contacts/{contact.json()['id']}")
    assert deleted.json() == {"status": "deleted"}
    assert test_client.get(f"/api/pipeline/leads/{lead['id']}").json()["poc_completion_status"] == "red"


def test_stage_validation_and_progression_reports(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, company)

    validation = test_client.get(
        f"/api/pipeline/leads/{lead['id']}/stage-validation",
        params={"target_stage": "qualified"},
    )
    assert validation.status_code == 200
    assert validation.json()["is_valid"] is False
    assert validation.json()["missing_fields"] == ["contact"]

    progression = test_client.get(f"/api/pipeline/leads/{lead['id']}/stage-progression")
    assert progression.json()["next_stage"] == "qualified"
    assert progression.json()["can_progress"] is False

    auto = test_client.post(f"/api/pipeline/leads/{lead['id']}/auto-progress")
    assert auto.status_code == 200
    assert auto.json()["progressed"] is False

    unknown = test_client.get(
        f"/api/pipeline/leads/{lead['id']}/stage-validation",
        params={"target_stage": "closing"},
    )
    assert unknown.status_code == 422


def test_manual_stage_change_error_envelope(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")
    lead = _create_lead(test_client, company)
    test_client.post("/api/pipeline/contacts", json={"company_id": company.id, **COMPLETE_CONTACT})
    moved = test_client.patch(f"/api/pipeline/leads/{lead['id']}/stage", json={"stage": "outreach"})
    assert moved.status_code == 200

    response = test_client.patch(
        f"/api/pipeline/leads/{lead['id']}/stage",
        json={"stage": "pitching"},
        headers={"X-Correlation-Id": "corr-pitch-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "stage_validation_failed"
    assert body["message"] == "Cannot move to Pitching stage: A meeting with POCs must be recorded first"
    assert body["details"]["requires_meeting"] is True
    assert body["details"]["missing_fields"] == ["meeting"]
    assert body["correlation_id"] == "corr-pitch-1"
    assert response.headers["x-correlation-id"] == "corr-pitch-1"


def test_full_path_to_won_over_http(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")
    lead_id = _create_lead(test_client, company)["id"]
    contact_id = test_client.post("/api/pipeline/contacts", json={"company_id": company.id, **COMPLETE_CONTACT}).json()["id"]

    assert test_client.patch(f"/api/pipeline/leads/{lead_id}/stage", json={"stage": "outreach"}).status_code == 200
    assert test_client.post(f"/api/pipeline/leads/{lead_id}/interventions", json={"type": "meeting"}).status_code == 201
    pitching = test_client.patch(
        f"/api/pipeline/leads/{lead_id}/stage",
        json={"stage": "pitching", "default_poc_id": contact_id},
    )
    assert pitching.status_code == 200
    assert pitching.json()["default_poc_id"] == contact_id

    outreach = test_client.post(
        f"/api/pipeline/leads/{lead_id}/outreach-activities",
        json={"activity_type": "email", "status": "completed", "contact_id": contact_id},
    )
    assert outreach.status_code == 201
    for document in ("Letter of Engagement", "Contract"):
        response = test_client.post(
            f"/api/pipeline/leads/{lead_id}/interventions",
            json={"type": "document", "document_name": document},
        )
        assert response.status_code == 201

    assert test_client.post(f"/api/pipeline/leads/{lead_id}/progress", json={"target_stage": "mandates"}).status_code == 200
    missing_notes = test_client.post(f"/api/pipeline/leads/{lead_id}/progress", json={"target_stage": "won"})
    assert missing_notes.status_code == 422
    assert missing_notes.json()["details"]["missing_fields"] == ["notes"]

    won = test_client.post(
        f"/api/pipeline/leads/{lead_id}/progress",
        json={"target_stage": "won", "notes": "Mandate signed"},
    )
    assert won.status_code == 200
    assert won.json()["stage"] == "won"
    assert won.json()["notes"] == "Mandate signed"


def test_document_intervention_requires_a_name(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, company)

    response = test_client.post(f"/api/pipeline/leads/{lead['id']}/interventions", json={"type": "document"})

    assert response.status_code == 422


def test_reject_lead_over_http(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")
    lead = _create_lead(test_client, company)

    rejected = test_client.post(f"/api/pipeline/leads/{lead['id']}/reject", json={"reason": "Out of mandate"})
    assert rejected.status_code == 200
    assert rejected.json()["stage"] == "rejected"

    again = test_client.post(f"/api/pipeline/leads/{lead['id']}/reject", json={"reason": "Again"})
    assert again.status_code == 422
    assert again.json()["message"] == "Lead is already rejected"
    assert [item for item in events.published_events if item["event_type"] == "pipeline.lead.rejected"]


def test_reassignment_requires_challenge_token(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")
    lead_id = _create_lead(test_client, company)["id"]
    as_user("partner-1")

    missing = test_client.post(f"/api/pipeline/leads/{lead_id}/assign", json={"assigned_to": "analyst-2"})
    assert missing.status_code == 403
    assert missing.json()["code"] == "challenge_token_invalid"
    assert missing.json()["message"] == "Challenge token required for reassignments"

    token = _challenge_token(test_client, lead_id)
    assigned = test_client.post(
        f"/api/pipeline/leads/{lead_id}/assign",
        json={"assigned_to": "analyst-2", "challenge_token": token, "notes": "Coverage change"},
    )
    assert assigned.status_code == 200
    body = assigned.json()
    assert body["reassignment"] is True
    assert body["lead"]["assigned_to"] == "analyst-2"
    assert body["lead"]["owner_analyst_id"] == "analyst-2"

    history = test_client.get(f"/api/pipeline/leads/{lead_id}/assignments").json()
    assert [item["assigned_to"] for item in history] == ["analyst-1", "analyst-2"]
    assert history[-1]["notes"] == "Coverage change"

    replayed = test_client.post(
        f"/api/pipeline/leads/{lead_id}/assign",
        json={"assigned_to": "analyst-1", "challenge_token": token},
    )
    assert replayed.status_code == 403
    assert replayed.json()["message"] == "Invalid or expired challenge token"


def test_challenge_token_quota_returns_retry_after(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    lead_id = _create_lead(test_client, company)["id"]
    as_user("partner-1")
    for _ in range(10):
        _challenge_token(test_client, lead_id)

    response = test_client.post("/api/pipeline/challenge-tokens", json={"lead_id": lead_id})

    assert response.status_code == 429
    assert response.json()["code"] == "challenge_token_rate_limited"
    retry_after = int(response.headers["Retry-After"])
    assert 0 < retry_after <= 3600
    assert response.json()["details"]["retry_after_seconds"] == retry_after


def test_challenge_token_validate_endpoint_consumes_once(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, _ = client
    lead_id = _create_lead(test_client, company)["id"]
    token = _challenge_token(test_client, lead_id)

    first = test_client.post("/api/pipeline/challenge-tokens/validate", json={"token": token, "lead_id": lead_id})
    second = test_client.post("/api/pipeline/challenge-tokens/validate", json={"token": token, "lead_id": lead_id})

    assert first.json() == {"valid": True}
    assert second.json() == {"valid": False}


def test_intern_assignment_endpoints(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    as_user("analyst-1")
    lead_id = _create_lead(test_client, company)["id"]

    assigned = test_client.put(f"/api/pipeline/leads/{lead_id}/interns", json={"intern_ids": ["intern-1"]})
    assert assigned.status_code == 200
    assert assigned.json()["assigned_interns"] == ["intern-1"]

    duplicate = test_client.put(f"/api/pipeline/leads/{lead_id}/interns", json={"intern_ids": ["intern-1", "intern-1"]})
    assert duplicate.status_code == 422

    swapped = test_client.post(
        f"/api/pipeline/leads/{lead_id}/interns/reassign",
        json={"from_intern_id": "intern-1", "to_intern_id": "intern-2"},
    )
    assert swapped.status_code == 200
    assert swapped.json()["assigned_interns"] == ["intern-2"]

    as_user("analyst-2")
    foreign = test_client.put(f"/api/pipeline/leads/{lead_id}/interns", json={"intern_ids": ["intern-3"]})
    assert foreign.status_code == 403


def test_bulk_transfer_and_analyst_reassignment_endpoints(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    first = _create_lead(test_client, company)["id"]
    second = _create_lead(test_client, company)["id"]
    as_user("partner-1")

    bulk = test_client.post("/api/pipeline/leads/bulk-assign", json={"lead_ids": [first, second], "assigned_to": "analyst-1"})
    assert bulk.status_code == 200
    assert bulk.json() == {"assigned_count": 2}

    transfer = test_client.post("/api/pipeline/users/analyst-1/transfer-leads", json={"to_user_id": "analyst-2"})
    assert transfer.json() == {"transferred_count": 2}
    lead = test_client.get(f"/api/pipeline/leads/{first}").json()
    assert (lead["assigned_to"], lead["owner_analyst_id"]) == ("analyst-2", "analyst-1")

    reassigned = test_client.post(
        "/api/pipeline/analysts/analyst-1/reassign",
        json={"to_analyst_id": "analyst-2", "move_interns": True},
    )
    assert reassigned.status_code == 200
    assert reassigned.json() == {"leads_transferred": 2, "interns_transferred": 2}
    assert test_client.get(f"/api/pipeline/leads/{second}").json()["owner_analyst_id"] == "analyst-2"

    as_user("partner-2")
    forbidden = test_client.post("/api/pipeline/analysts/analyst-2/reassign", json={"to_analyst_id": "analyst-3"})
    assert forbidden.status_code == 403


def test_lead_in_other_organization_is_not_found(
    client: tuple[TestClient, Callable[[str], None]],
    company: PipelineCompany,
) -> None:
    test_client, as_user = client
    lead_id = _create_lead(test_client, company)["id"]
    as_user("outsider-admin")

    response = test_client.get(f"/api/pipeline/leads/{lead_id}")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "not_found"
    assert body["message"] == "Lead not found"
    assert body["correlation_id"] == response.headers["x-correlation-id"]


def test_company_endpoints_scope_by_organization(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, as_user = client
    created = test_client.post("/api/pipeline/companies", json={"name": "Globex", "sector": "Energy"})
    assert created.status_code == 201
    company_id = created.json()["id"]
    assert audit.audit_entries[-1]["entity_type"] == "pipeline.company"

    assert test_client.get(f"/api/pipeline/companies/{company_id}").json()["name"] == "Globex"
    as_user("outsider-admin")
    assert test_client.get(f"/api/pipeline/companies/{company_id}").status_code == 404


def test_unknown_caller_is_unauthorized(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/api/pipeline/leads/1")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 401


def test_user_provisioning_requires_admin_role(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    payload = {
        "id": "analyst-9",
        "email": "analyst-9@example.com",
        "first_name": "New",
        "last_name": "Analyst",
        "role": "analyst",
        "partner_id": "partner-1",
    }

    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="ops", roles=["guest"])
    denied = test_client.post("/api/pipeline/organizations/1/users", json=payload)
    assert denied.status_code == 403

    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="ops", roles=["system.admin"])
    created = test_client.post("/api/pipeline/organizations/1/users", json=payload)
    assert created.status_code == 201
    assert created.json()["partner_id"] == "partner-1"

    duplicate = test_client.post("/api/pipeline/organizations/1/users", json=payload)
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "invalid_request"

    bad_supervisor = test_client.post(
        "/api/pipeline/organizations/1/users",
        json={**payload, "id": "analyst-10", "email": "analyst-10@example.com", "partner_id": "analyst-1"},
    )
    assert bad_supervisor.status_code == 400

    wrong_line = test_client.post(
        "/api/pipeline/organizations/1/users",
        json={**payload, "id": "intern-9", "email": "intern-9@example.com", "role": "intern"},
    )
    assert wrong_line.status_code == 422
