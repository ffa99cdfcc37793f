"""
API request and response models for tokengate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from auth.models import UserProjection

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    # Not stripped or length-checked beyond the bcrypt-safe maximum: the
    # password is compared as given.
    password: str = Field(min_length=1, max_length=255)
    provider: str = Field(default="local", max_length=50)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength is enforced by the provider's password policy, not
    here, so the rule lives in one place for the API and the CLI.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=72)
    metadata: dict[str, JsonValue] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    username: str
    email: str
    roles: list[str]

    @classmethod
    def from_projection(cls, user: UserProjection) -> "UserResponse":
        return cls(id=user.id, username=user.username, email=user.email, roles=list(user.roles))


class TokenResponse(BaseModel):
    """Returned by login and refresh."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Optional[UserResponse] = None


class LogoutResponse(BaseModel):
    message: str
    # False when the provider has no revocation store: the token stays
    # valid until it expires.
    revoked: bool


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    backend: str
    providers: list[str]


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
