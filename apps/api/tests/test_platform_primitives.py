from __future__ import annotations

import asyncio

import pytest
from jose import jwt
from starlette.requests import Request

from dealdesk import audit
from dealdesk.context import correlation_scope, get_correlation_id
from dealdesk.core.auth import ANONYMOUS_SUBJECT, decode_claims, get_current_user, request_subject
from dealdesk.core.config import get_settings
from dealdesk.core.events import InProcessEventBus, InternalEvent
from dealdesk.middleware.rate_limit import TokenBucketLimiter, route_group


def _request(authorization: str | None = None) -> Request:
    headers = [] if authorization is None else [(b"authorization", authorization.encode())]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers})


def _token(claims: dict, secret: str | None = None) -> str:
    settings = get_settings()
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_prefix_subscribers_receive_nested_events() -> None:
    bus = InProcessEventBus()
    received: list[tuple[str, str]] = []

    def handler(tag: str):  # type: ignore[no-untyped-def]
        return lambda event: received.append((tag, event.name))

    exact = handler("exact")
    bus.subscribe("pipeline.lead.created", exact)
    bus.subscribe("pipeline.lead.created", exact)
    bus.subscribe("pipeline.*", handler("pipeline"))
    bus.subscribe("*", handler("all"))
    bus.subscribe("billing.*", handler("billing"))

    bus.publish("pipeline.lead.created", {"lead_id": 1})

    assert received == [
        ("exact", "pipeline.lead.created"),
        ("pipeline", "pipeline.lead.created"),
        ("all", "pipeline.lead.created"),
    ]


def test_cleared_bus_drops_handlers() -> None:
    bus = InProcessEventBus()
    seen: list[InternalEvent] = []
    bus.subscribe("system.started", seen.append)
    bus.clear()

    bus.publish("system.started", {})

    assert seen == []


def test_audit_entry_lists_changed_fields() -> None:
    with correlation_scope("corr-audit-1"):
        entry = audit.record(
            actor_user_id="partner-1",
            organization_id=1,
            entity_type="pipeline.lead",
            entity_id="7",
            action="update",
            before={"stage": "qualified", "owner": "analyst-1"},
            after={"stage": "outreach", "owner": "analyst-1", "notes": "call booked"},
        )

    assert entry["changed_fields"] == ["notes", "stage"]
    assert entry["correlation_id"] == "corr-audit-1"
    assert audit.audit_entries[-1] is entry


def test_correlation_scope_restores_previous_value() -> None:
    assert get_correlation_id() is None
    with correlation_scope("outer"):
        with correlation_scope("inner"):
            assert get_correlation_id() == "inner"
        assert get_correlation_id() == "outer"
    assert get_correlation_id() is None


def test_bearer_claims_are_verified() -> None:
    assert decode_claims(_token({"sub": "analyst-1"})) == {"sub": "analyst-1"}
    assert decode_claims(_token({"sub": "analyst-1"}, secret="other-secret")) is None
    assert decode_claims("not-a-jwt") is None


@pytest.mark.parametrize(
    ("authorization", "expected"),
    [
        (None, ANONYMOUS_SUBJECT),
        ("Basic abc", ANONYMOUS_SUBJECT),
        ("Bearer garbage", ANONYMOUS_SUBJECT),
    ],
)
def test_unusable_credentials_resolve_to_anonymous(authorization: str | None, expected: str) -> None:
    assert request_subject(_request(authorization)) == expected


def test_current_user_carries_role_claims() -> None:
    token = _token({"sub": "ops", "roles": ["system.admin", "system.metrics.read"]})

    user = asyncio.run(get_current_user(_request(f"Bearer {token}")))

    assert user.sub == "ops"
    assert user.roles == ["system.admin", "system.metrics.read"]
    assert not user.is_anonymous
    assert request_subject(_request(f"Bearer {token}")) == "ops"


def test_token_bucket_refills_over_the_window() -> None:
    now = [0.0]
    limiter = TokenBucketLimiter(clock=lambda: now[0])
    key = ("analyst-1", "leads")

    assert [limiter.acquire(key, capacity=2, window_seconds=2) for _ in range(3)] == [0, 0, 1]
    assert limiter.acquire(("analyst-2", "leads"), capacity=2, window_seconds=2) == 0

    now[0] = 1.0
    assert limiter.acquire(key, capacity=2, window_seconds=2) == 0
    assert limiter.acquire(key, capacity=2, window_seconds=2) == 1


@pytest.mark.parametrize(
    ("path", "group"),
    [
        ("/api/pipeline/leads/4/assign", "leads"),
        ("/api/pipeline/challenge-tokens", "challenge-tokens"),
        ("/api/pipeline/", "pipeline"),
    ],
)
def test_route_group_is_first_segment_after_prefix(path: str, group: str) -> None:
    assert route_group(path) == group
