from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for terminal, user-facing pipeline failures."""

    code = "pipeline_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequestError(PipelineError):
    code = "invalid_request"
    status_code = 400


class StageValidationError(PipelineError):
    """Raised when a stage transition is structurally invalid or its entry requirements are unmet."""

    code = "stage_validation_failed"
    status_code = 422

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        missing_fields: list[str] | None = None,
        **flags: Any,
    ) -> None:
        self.errors = list(errors) if errors else [message]
        self.missing_fields = list(missing_fields or [])
        self.flags = flags
        super().__init__(
            message,
            details={"errors": self.errors, "missing_fields": self.missing_fields, **flags},
        )


class AssignmentForbiddenError(PipelineError):
    """Raised when the caller's position in the hierarchy does not allow the assignment."""

    code = "assignment_forbidden"
    status_code = 403


class EntityNotFoundError(PipelineError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any = None, message: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity.capitalize()} not found",
            details={"entity": entity, "id": entity_id},
        )


class ChallengeRateLimitError(PipelineError):
    code = "challenge_token_rate_limited"
    status_code = 429

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Rate limit exceeded. Too many token requests in the last hour.",
            details={"retry_after_seconds": retry_after_seconds},
        )


class ChallengeTokenError(PipelineError):
    code = "challenge_token_invalid"
    status_code = 403


class SideEffectWarning(Warning):
    """Category of best-effort side-effect failures; logged, never raised to callers."""
