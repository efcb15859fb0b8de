from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Upper bound on scope names in a single request
MAX_SCOPES = 64


class ErrorBody(BaseModel):
    errno: str = Field(..., pattern=r"^\d{8}$")
    errmsg: str
    field: Optional[str] = None


class TicketRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=1024)
    second_factor_code: Optional[str] = Field(default=None, max_length=10)
    application_id: str = Field(..., min_length=1, max_length=128)
    scope: List[str] = Field(..., min_length=1, max_length=MAX_SCOPES)

    @field_validator("second_factor_code")
    @classmethod
    def _blank_code_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class TicketResponse(BaseModel):
    code: str
    expires_at: datetime
    scope: List[str]


class TicketPreviewResponse(BaseModel):
    application_id: str
    application_name: str
    redirect_uri: str
    scope: List[str]


class ClientCredentials(BaseModel):
    client_id: str = Field(..., min_length=1, max_length=128)
    client_secret: str = Field(..., min_length=1, max_length=1024)


class TokenExchangeRequest(ClientCredentials):
    code: str = Field(..., min_length=1, max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    client_id: Optional[str] = Field(default=None, max_length=128)
    client_secret: Optional[str] = Field(default=None, max_length=1024)


class TokenRevokeRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    scope: List[str]


class AccessTokenInfo(BaseModel):
    sub: str
    app: str
    scope: List[str]
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str


class AuthorizationGrantResponse(BaseModel):
    application_id: str
    scope: List[str]
    created_at: datetime
    updated_at: datetime
