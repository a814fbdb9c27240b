from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from dealdesk.core.config import get_settings
from dealdesk.metrics import (
    observe_challenge_token_issued,
    observe_challenge_token_rate_limited,
    observe_challenge_token_validation,
)
from dealdesk.pipeline.errors import ChallengeRateLimitError


logger = logging.getLogger("dealdesk.pipeline.challenge")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class ChallengeToken:
    token: str
    user_id: str
    organization_id: int
    lead_id: int
    purpose: str
    expires_at: float
    created_at: float

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)

    def matches(self, user_id: str, organization_id: int, lead_id: int, purpose: str) -> bool:
        return (
            self.user_id == user_id
            and self.organization_id == organization_id
            and self.lead_id == lead_id
            and self.purpose == purpose
        )


@dataclass(slots=True)
class RateWindow:
    count: int
    reset_at: float


class TokenStore(Protocol):
    """Storage for issued tokens and per-user issuance windows.

    Implementations must make ``compare_and_delete`` and ``take_rate_slot``
    atomic with respect to concurrent callers.
    """

    def get(self, token: str) -> ChallengeToken | None: ...

    def put(self, record: ChallengeToken) -> None: ...

    def delete(self, token: str) -> None: ...

    def compare_and_delete(self, record: ChallengeToken) -> bool: ...

    def take_rate_slot(self, key: str, limit: int, window_seconds: float, now: float) -> tuple[bool, float]: ...

    def purge_expired(self, now: float) -> int: ...


class InMemoryTokenStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, ChallengeToken] = {}
        self._windows: dict[str, RateWindow] = {}

    def get(self, token: str) -> ChallengeToken | None:
        with self._lock:
            return self._tokens.get(token)

    def put(self, record: ChallengeToken) -> None:
        with self._lock:
            self._tokens[record.token] = record

    def delete(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def compare_and_delete(self, record: ChallengeToken) -> bool:
        with self._lock:
            if self._tokens.get(record.token) is not record:
                return False
            del self._tokens[record.token]
            return True

    def take_rate_slot(self, key: str, limit: int, window_seconds: float, now: float) -> tuple[bool, float]:
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.reset_at < now:
                window = RateWindow(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
            if window.count >= limit:
                return False, window.reset_at
            window.count += 1
            return True, window.reset_at

    def purge_expired(self, now: float) -> int:
        with self._lock:
            expired_tokens = [key for key, record in self._tokens.items() if record.expires_at < now]
            for key in expired_tokens:
                del self._tokens[key]
            expired_windows = [key for key, window in self._windows.items() if window.reset_at < now]
            for key in expired_windows:
                del self._windows[key]
            return len(expired_tokens)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._windows.clear()


class ChallengeTokenAuthority:
    """Issues and consumes one-time, short-lived tokens bound to (user, organization, lead, purpose)."""

    def __init__(
        self,
        store: TokenStore,
        *,
        clock: Clock = time.time,
        ttl_seconds: int | None = None,
        limit_per_window: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self._ttl_seconds = ttl_seconds
        self._limit_per_window = limit_per_window
        self._window_seconds = window_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds if self._ttl_seconds is not None else get_settings().challenge_token_ttl_seconds

    @property
    def limit_per_window(self) -> int:
        if self._limit_per_window is not None:
            return self._limit_per_window
        return get_settings().challenge_token_rate_limit_per_hour

    @property
    def window_seconds(self) -> int:
        if self._window_seconds is not None:
            return self._window_seconds
        return get_settings().challenge_token_rate_window_seconds

    def create_token(self, user_id: str, organization_id: int, lead_id: int, purpose: str) -> ChallengeToken:
        now = self.clock()
        allowed, reset_at = self.store.take_rate_slot(
            f"{user_id}:{organization_id}",
            self.limit_per_window,
            self.window_seconds,
            now,
        )
        if not allowed:
            observe_challenge_token_rate_limited()
            logger.warning(
                "challenge_token.rate_limited",
                extra={"user_id": user_id, "organization_id": organization_id, "lead_id": lead_id},
            )
            raise ChallengeRateLimitError(retry_after_seconds=max(1, int(reset_at - now)))

        self.store.purge_expired(now)
        record = ChallengeToken(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            organization_id=organization_id,
            lead_id=lead_id,
            purpose=purpose,
            expires_at=now + self.ttl_seconds,
            created_at=now,
        )
        self.store.put(record)
        observe_challenge_token_issued()
        logger.info(
            "challenge_token.issued",
            extra={"user_id": user_id, "organization_id": organization_id, "lead_id": lead_id, "purpose": purpose},
        )
        return record

    def validate_token(self, token: str, user_id: str, organization_id: int, lead_id: int, purpose: str) -> bool:
        """Consume ``token`` if it is live and bound to exactly these values.

        Ordinary invalidity (unknown, expired, mismatched, already used) is
        reported as ``False``. A mismatched token is left in place for its
        rightful holder.
        """
        record = self.store.get(token)
        if record is None:
            return self._reject("missing", user_id, lead_id)

        if record.expires_at < self.clock():
            self.store.delete(token)
            return self._reject("expired", user_id, lead_id)

        if not record.matches(user_id, organization_id, lead_id, purpose):
            return self._reject("mismatch", user_id, lead_id)

        if not self.store.compare_and_delete(record):
            return self._reject("consumed", user_id, lead_id)

        observe_challenge_token_validation("valid")
        logger.info(
            "challenge_token.consumed",
            extra={"user_id": user_id, "organization_id": organization_id, "lead_id": lead_id, "purpose": purpose},
        )
        return True

    def _reject(self, outcome: str, user_id: str, lead_id: int) -> bool:
        observe_challenge_token_validation(outcome)
        logger.info("challenge_token.rejected", extra={"user_id": user_id, "lead_id": lead_id, "error": outcome})
        return False


_store = InMemoryTokenStore()
challenge_tokens = ChallengeTokenAuthority(_store)


def reset_challenge_tokens() -> None:
    _store.clear()
