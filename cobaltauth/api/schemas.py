from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from cobaltauth.service.errors import AuthError

_AUTH_ERROR_CODES = frozenset(
    cls.error_code for cls in (AuthError, *AuthError.__subclasses__())
)

# Stable outward codes; clients branch on these, so only additions are safe
_VALID_ERROR_CODES = _AUTH_ERROR_CODES | frozenset(
    {
        "validation_error",
        "unauthorized",
        "not_found",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
