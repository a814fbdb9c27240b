from __future__ import annotations

from dataclasses import dataclass

from dealdesk.pipeline.enums import Role


@dataclass
class ActorUser:
    user_id: str
    organization_id: int
    role: Role
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        self.role = Role(self.role)
