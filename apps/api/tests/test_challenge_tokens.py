from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from dealdesk.core.config import get_settings
from dealdesk.pipeline.challenge import ChallengeTokenAuthority, InMemoryTokenStore
from dealdesk.pipeline.errors import ChallengeRateLimitError


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def authority(clock: FakeClock) -> ChallengeTokenAuthority:
    return ChallengeTokenAuthority(
        InMemoryTokenStore(),
        clock=clock,
        ttl_seconds=300,
        limit_per_window=10,
        window_seconds=3600,
    )


def test_token_is_one_time_use(authority: ChallengeTokenAuthority) -> None:
    record = authority.create_token("partner-1", 1, 42, "reassignment")

    assert record.expires_at - record.created_at == 300
    assert authority.validate_token(record.token, "partner-1", 1, 42, "reassignment") is True
    assert authority.validate_token(record.token, "partner-1", 1, 42, "reassignment") is False


def test_tokens_are_unique(authority: ChallengeTokenAuthority) -> None:
    tokens = {authority.create_token("partner-1", 1, 42, "reassignment").token for _ in range(5)}
    assert len(tokens) == 5


@pytest.mark.parametrize(
    "user_id, organization_id, lead_id, purpose",
    [
        ("partner-2", 1, 42, "reassignment"),
        ("partner-1", 2, 42, "reassignment"),
        ("partner-1", 1, 43, "reassignment"),
        ("partner-1", 1, 42, "bulk"),
    ],
)
def test_mismatched_binding_is_rejected_and_token_survives(
    authority: ChallengeTokenAuthority,
    user_id: str,
    organization_id: int,
    lead_id: int,
    purpose: str,
) -> None:
    record = authority.create_token("partner-1", 1, 42, "reassignment")

    assert authority.validate_token(record.token, user_id, organization_id, lead_id, purpose) is False
    assert authority.validate_token(record.token, "partner-1", 1, 42, "reassignment") is True


def test_expired_token_is_rejected_and_removed(authority: ChallengeTokenAuthority, clock: FakeClock) -> None:
    record = authority.create_token("partner-1", 1, 42, "reassignment")
    clock.advance(301)

    assert authority.validate_token(record.token, "partner-1", 1, 42, "reassignment") is False
    assert authority.store.get(record.token) is None


def test_unknown_token_is_rejected(authority: ChallengeTokenAuthority) -> None:
    assert authority.validate_token("nope", "partner-1", 1, 42, "reassignment") is False


def test_eleventh_token_in_window_is_rate_limited(authority: ChallengeTokenAuthority, clock: FakeClock) -> None:
    for _ in range(10):
        authority.create_token("partner-1", 1, 42, "reassignment")
        clock.advance(60)

    with pytest.raises(ChallengeRateLimitError) as exc_info:
        authority.create_token("partner-1", 1, 42, "reassignment")
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after_seconds == 3000

    # the window belongs to (user, organization); other callers are unaffected
    authority.create_token("partner-2", 1, 42, "reassignment")

    clock.advance(3001)
    assert authority.create_token("partner-1", 1, 42, "reassignment").token


def test_creation_purges_expired_tokens(authority: ChallengeTokenAuthority, clock: FakeClock) -> None:
    stale = authority.create_token("partner-1", 1, 42, "reassignment")
    clock.advance(600)
    authority.create_token("partner-1", 1, 42, "reassignment")

    assert authority.store.get(stale.token) is None


def test_concurrent_validation_consumes_once(authority: ChallengeTokenAuthority) -> None:
    record = authority.create_token("partner-1", 1, 42, "reassignment")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(
            pool.map(
                lambda _: authority.validate_token(record.token, "partner-1", 1, 42, "reassignment"),
                range(16),
            )
        )

    assert results.count(True) == 1


def test_limits_fall_back_to_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHALLENGE_TOKEN_RATE_LIMIT_PER_HOUR", "2")
    get_settings.cache_clear()
    authority = ChallengeTokenAuthority(InMemoryTokenStore(), clock=FakeClock())

    authority.create_token("partner-1", 1, 42, "reassignment")
    authority.create_token("partner-1", 1, 42, "reassignment")
    with pytest.raises(ChallengeRateLimitError):
        authority.create_token("partner-1", 1, 42, "reassignment")
