from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Protocol

from feblr_sso.logging import get_logger
from feblr_sso.service.credentials import CredentialVerifier
from feblr_sso.service.errors import ApplicationMismatch, InvalidClient, ValidationError
from feblr_sso.service.permissions import PermissionResolver, parse_scopes
from feblr_sso.service.tickets import TicketIssuer
from feblr_sso.storage.models import Application, AuthorizationGrant, AuthorizationTicket

logger = get_logger(__name__)


class GrantStore(Protocol):
    def get_application(self, application_id: str) -> Optional[Application]: ...

    def upsert_authorization(
        self, account_id: str, application_id: str, scopes: Iterable[str]
    ) -> AuthorizationGrant: ...

    def list_authorizations(self, account_id: str) -> List[AuthorizationGrant]: ...

    def delete_authorization(self, account_id: str, application_id: str) -> bool: ...

    def revoke_refresh_tokens_for(self, account_id: str, application_id: str) -> int: ...


@dataclass
class AuthorizationPreview:
    account_id: str
    application: Application
    scopes: FrozenSet[str]


class AuthorizationService:
    """Account-facing half of the flow: credentials, scopes, ticket, consent."""

    def __init__(
        self,
        store: GrantStore,
        verifier: CredentialVerifier,
        resolver: PermissionResolver,
        issuer: TicketIssuer,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.resolver = resolver
        self.issuer = issuer

    def preview(
        self,
        account_id: str,
        password: str,
        application_id: str,
        scope: Iterable[str],
        second_factor_code: Optional[str] = None,
    ) -> AuthorizationPreview:
        """Run every check a ticket request runs without minting a ticket."""
        requested = parse_scopes(scope)
        if not requested:
            raise ValidationError("at least one scope is required", field="scope")
        result = self.verifier.verify(account_id, password, second_factor_code)
        application = self.store.get_application(application_id)
        if application is None:
            logger.warning("authorization_unknown_application", application_id=application_id)
            raise InvalidClient(detail={"application_id": application_id})
        granted = self.resolver.resolve(result.account.id, application, requested)
        return AuthorizationPreview(
            account_id=result.account.id, application=application, scopes=granted
        )

    async def request_ticket(
        self,
        account_id: str,
        password: str,
        application_id: str,
        scope: Iterable[str],
        second_factor_code: Optional[str] = None,
    ) -> AuthorizationTicket:
        checked = self.preview(account_id, password, application_id, scope, second_factor_code)
        ticket = await self.issuer.issue(checked.account_id, checked.application.id, checked.scopes)
        self.store.upsert_authorization(checked.account_id, checked.application.id, checked.scopes)
        return ticket

    def list_grants(
        self, account_id: str, *, application_id: Optional[str] = None
    ) -> List[AuthorizationGrant]:
        """Consent records for ``account_id``, limited to one application when given."""
        grants = self.store.list_authorizations(account_id)
        if application_id is None:
            return grants
        return [grant for grant in grants if grant.application_id == application_id]

    def remove_grant(
        self,
        account_id: str,
        application_id: str,
        *,
        requested_by: Optional[str] = None,
    ) -> bool:
        """Withdraw consent and revoke every refresh token the application holds.

        ``requested_by`` is the application the caller's access token was
        issued to; an application may only withdraw its own consent.
        """
        if requested_by is not None and requested_by != application_id:
            logger.warning(
                "authorization_remove_foreign_application",
                account_id=account_id,
                application_id=application_id,
                requested_by=requested_by,
            )
            raise ApplicationMismatch(detail={"application_id": application_id})
        removed = self.store.delete_authorization(account_id, application_id)
        revoked = self.store.revoke_refresh_tokens_for(account_id, application_id)
        logger.info(
            "authorization_removed",
            account_id=account_id,
            application_id=application_id,
            removed=removed,
            revoked=revoked,
        )
        return removed
