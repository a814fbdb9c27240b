from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from dealdesk import audit, events
from dealdesk.metrics import observe_side_effect_failure
from dealdesk.pipeline.errors import SideEffectWarning


logger = logging.getLogger("dealdesk.pipeline")

T = TypeVar("T")


class SideEffectRunner:
    """Runs work that must never fail the operation that triggered it.

    Each side effect commits on its own once the primary mutation has been
    committed. A failure rolls back only that side effect's writes, is logged
    with the side effect's name and is reported to the caller as ``None``.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.failures: list[str] = []

    def run(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
        try:
            result = fn(*args, **kwargs)
            self.session.commit()
            return result
        except Exception as exc:
            self.session.rollback()
            self.failures.append(name)
            observe_side_effect_failure(name)
            warnings.warn(f"{name} failed: {exc}", SideEffectWarning, stacklevel=2)
            logger.warning(
                "side_effect.failed",
                exc_info=True,
                extra={"side_effect": name, "error": str(exc)[:500]},
            )
            return None

    def audit(self, **entry: Any) -> None:
        self.run("audit", audit.record, **entry)

    def publish(self, event_type: str, *, actor_user_id: str, organization_id: int, payload: dict[str, Any]) -> None:
        envelope = events.build_envelope(
            event_type,
            actor_user_id=actor_user_id,
            organization_id=organization_id,
            payload=payload,
        )
        self.run("event", events.publish, envelope)
