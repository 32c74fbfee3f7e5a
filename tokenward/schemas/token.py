# tokenward/schemas/token.py
from typing import Literal, Optional

from pydantic import BaseModel, Field

from tokenward.schemas.common import CamelModel
from tokenward.schemas.user import User


class Token(CamelModel):
    access_token: str
    refresh_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    user: User


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class ExternalLoginRequest(CamelModel):
    id_token: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1, max_length=255)


class ValidateTokenRequest(CamelModel):
    access_token: Optional[str] = None


class TokenValidation(BaseModel):
    """Consumed by downstream services, hence snake_case on the wire."""

    is_valid: bool
    subject_id: str
    email: Optional[str] = None
    mobile: Optional[str] = None
    issued_at: int
    expires_at: int
