from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealdesk import audit, events
from dealdesk.core.config import get_settings
from dealdesk.core.database import Base
from dealdesk.middleware.rate_limit import reset_rate_limiter
from dealdesk.pipeline.actor import ActorUser
from dealdesk.pipeline.challenge import reset_challenge_tokens
from dealdesk.pipeline.enums import Role
from dealdesk.pipeline.models import PipelineCompany, PipelineUser

ORG_ID = 1
OTHER_ORG_ID = 2

# (id, role, partner_id, analyst_id, organization_id)
HIERARCHY = [
    ("admin-1", Role.ADMIN, None, None, ORG_ID),
    ("partner-1", Role.PARTNER, None, None, ORG_ID),
    ("partner-2", Role.PARTNER, None, None, ORG_ID),
    ("analyst-1", Role.ANALYST, "partner-1", None, ORG_ID),
    ("analyst-2", Role.ANALYST, "partner-1", None, ORG_ID),
    ("analyst-3", Role.ANALYST, "partner-2", None, ORG_ID),
    ("intern-1", Role.INTERN, None, "analyst-1", ORG_ID),
    ("intern-2", Role.INTERN, None, "analyst-1", ORG_ID),
    ("intern-3", Role.INTERN, None, "analyst-2", ORG_ID),
    ("outsider-admin", Role.ADMIN, None, None, OTHER_ORG_ID),
]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_challenge_tokens()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    reset_challenge_tokens()


@pytest.fixture()
def users(db_session: Session) -> dict[str, PipelineUser]:
    seeded: dict[str, PipelineUser] = {}
    for user_id, role, partner_id, analyst_id, organization_id in HIERARCHY:
        user = PipelineUser(
            id=user_id,
            organization_id=organization_id,
            email=f"{user_id}@example.com",
            first_name=user_id.split("-")[0].capitalize(),
            last_name=user_id.split("-")[1],
            role=role.value,
            partner_id=partner_id,
            analyst_id=analyst_id,
        )
        db_session.add(user)
        seeded[user_id] = user
    db_session.commit()
    return seeded


@pytest.fixture()
def company(db_session: Session) -> PipelineCompany:
    record = PipelineCompany(organization_id=ORG_ID, name="Acme Holdings", sector="Industrials")
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture()
def actor(users: dict[str, PipelineUser]) -> Callable[[str], ActorUser]:
    def build(user_id: str) -> ActorUser:
        user = users[user_id]
        return ActorUser(
            user_id=user.id,
            organization_id=user.organization_id,
            role=Role(user.role),
            correlation_id="corr-test",
        )

    return build
