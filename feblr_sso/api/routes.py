from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Response, status

from feblr_sso.api.schemas import (
    AccessTokenInfo,
    AuthorizationGrantResponse,
    ClientCredentials,
    TicketPreviewResponse,
    TicketRequest,
    TicketResponse,
    TokenExchangeRequest,
    TokenRefreshRequest,
    TokenResponse,
    TokenRevokeRequest,
)
from feblr_sso.service.errors import InvalidAccessToken
from feblr_sso.service.runtime import get_runtime
from feblr_sso.storage.models import AccessTokenClaims, TokenPair

router = APIRouter(prefix="/v1")


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_access_claims(
    authorization: Optional[str] = Header(default=None),
) -> AccessTokenClaims:
    token = extract_bearer(authorization)
    if token is None:
        raise InvalidAccessToken("missing bearer token")
    return get_runtime().tokens.verify_access_token(token)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
        scope=pair.scopes,
    )


@router.post(
    "/tickets",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["tickets"],
)
async def create_ticket(body: TicketRequest):
    """Authenticate the account holder and mint a single-use ticket.

    The granted scope may be narrower than requested; it is the
    intersection of the request, the account's role permissions and the
    application's allowed scopes.
    """
    runtime = get_runtime()
    ticket = await runtime.authorizations.request_ticket(
        account_id=body.account_id,
        password=body.password,
        application_id=body.application_id,
        scope=body.scope,
        second_factor_code=body.second_factor_code,
    )
    return TicketResponse(
        code=ticket.code, expires_at=ticket.expires_at, scope=sorted(ticket.scopes)
    )


@router.post("/tickets/preview", response_model=TicketPreviewResponse, tags=["tickets"])
async def preview_ticket(body: TicketRequest):
    """Show which scopes a ticket request would be granted, without issuing one."""
    runtime = get_runtime()
    preview = runtime.authorizations.preview(
        account_id=body.account_id,
        password=body.password,
        application_id=body.application_id,
        scope=body.scope,
        second_factor_code=body.second_factor_code,
    )
    return TicketPreviewResponse(
        application_id=preview.application.id,
        application_name=preview.application.name,
        redirect_uri=preview.application.redirect_uri,
        scope=sorted(preview.scopes),
    )


@router.patch("/tickets/{code}", response_model=TokenResponse, tags=["tickets"])
async def exchange_ticket(code: str, body: ClientCredentials):
    runtime = get_runtime()
    pair = await runtime.tokens.exchange(code, body.client_id, body.client_secret)
    return _token_response(pair)


@router.post("/tokens", response_model=TokenResponse, tags=["tokens"])
async def create_tokens(body: TokenExchangeRequest):
    runtime = get_runtime()
    pair = await runtime.tokens.exchange(body.code, body.client_id, body.client_secret)
    return _token_response(pair)


@router.post("/tokens/refresh", response_model=TokenResponse, tags=["tokens"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token. The presented token is unusable afterwards."""
    runtime = get_runtime()
    pair = await runtime.tokens.refresh(
        body.refresh_token, client_id=body.client_id, client_secret=body.client_secret
    )
    return _token_response(pair)


@router.post(
    "/tokens/revoke", status_code=status.HTTP_204_NO_CONTENT, tags=["tokens"]
)
async def revoke_tokens(body: TokenRevokeRequest):
    runtime = get_runtime()
    await runtime.tokens.revoke(body.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/tokens/verify", response_model=AccessTokenInfo, tags=["tokens"])
async def verify_token(claims: AccessTokenClaims = Depends(get_access_claims)):
    return AccessTokenInfo(
        sub=claims.sub,
        app=claims.app,
        scope=claims.scope,
        iat=claims.iat,
        exp=claims.exp,
        iss=claims.iss,
        aud=claims.aud,
        jti=claims.jti,
    )


@router.get(
    "/authorizations",
    response_model=List[AuthorizationGrantResponse],
    tags=["authorizations"],
)
async def list_authorizations(claims: AccessTokenClaims = Depends(get_access_claims)):
    """Consent the account gave to the application the bearer token belongs to."""
    runtime = get_runtime()
    return [
        AuthorizationGrantResponse(
            application_id=grant.application_id,
            scope=sorted(grant.scopes),
            created_at=grant.created_at,
            updated_at=grant.updated_at,
        )
        for grant in runtime.authorizations.list_grants(claims.sub, application_id=claims.app)
    ]


@router.delete(
    "/authorizations/{application_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["authorizations"],
)
async def remove_authorization(
    application_id: str, claims: AccessTokenClaims = Depends(get_access_claims)
):
    """Withdraw the calling application's consent; its refresh tokens stop working."""
    runtime = get_runtime()
    runtime.authorizations.remove_grant(claims.sub, application_id, requested_by=claims.app)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
