"""Pydantic schemas for auth endpoints. Wire names are camelCase."""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from gatehouse.auth.credentials import BCRYPT_MAX_BYTES

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
WALLET_PATTERN = r"^0x[0-9a-fA-F]{40}$"
SIGNATURE_PATTERN = r"^(0x)?[0-9a-fA-F]{130}$"

CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=100)
    tenant_id: Optional[int] = None

    model_config = CAMEL

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def _password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes")
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)
    tenant_id: Optional[int] = None

    model_config = CAMEL


class ChallengeRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    tenant_id: Optional[int] = None

    model_config = CAMEL


class WalletVerifyRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)
    tenant_id: Optional[int] = None

    model_config = CAMEL


class WalletAuthRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    signature: Optional[str] = Field(None, pattern=SIGNATURE_PATTERN)
    tenant_id: Optional[int] = None

    model_config = CAMEL


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255, pattern=EMAIL_PATTERN)

    model_config = CAMEL


class LinkWalletRequest(BaseModel):
    wallet_address: str = Field(..., pattern=WALLET_PATTERN)
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)

    model_config = CAMEL


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    tenant_id: Optional[int] = None

    model_config = CAMEL


class UserOut(BaseModel):
    id: int
    email: Optional[str] = None
    name: str
    wallet_address: Optional[str] = None
    is_verified: bool

    model_config = CAMEL


class AuthResponse(BaseModel):
    message: str
    user: UserOut
    token: str
    session_id: str

    model_config = CAMEL


class ChallengeResponse(BaseModel):
    wallet_address: str
    nonce: str
    message: str
    issued_at: str
    expires_at: str

    model_config = CAMEL


class ProfileResponse(BaseModel):
    profile: dict[str, Any]


class ProfileUpdateResponse(BaseModel):
    message: str
    user: dict[str, Any]


class TokenInfoResponse(BaseModel):
    message: str = "Token is valid"
    user: dict[str, Any]


class SessionOut(BaseModel):
    session_id: str
    issued_at: int
    last_activity: int
    current: bool

    model_config = CAMEL


class SessionListResponse(BaseModel):
    sessions: list[SessionOut]


class RevokedResponse(BaseModel):
    message: str
    revoked: int


class ActivityResponse(BaseModel):
    activities: list[dict[str, Any]]
    limit: int
    offset: int


class ActivityStatsResponse(BaseModel):
    stats: dict[str, Any]
