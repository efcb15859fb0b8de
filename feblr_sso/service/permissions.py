from __future__ import annotations

from typing import FrozenSet, Iterable, Optional, Protocol, Set

from feblr_sso.logging import get_logger
from feblr_sso.service.errors import InsufficientScope, ValidationError
from feblr_sso.storage.models import Application, is_valid_scope

logger = get_logger(__name__)


class PermissionStore(Protocol):
    def get_account_permissions(self, account_id: str) -> Set[str]: ...


def parse_scopes(requested: Optional[Iterable[str]], *, field: str = "scope") -> FrozenSet[str]:
    """Validate scope names from a request, splitting space-delimited entries."""
    names: Set[str] = set()
    for entry in requested or []:
        for name in str(entry).split():
            if not is_valid_scope(name):
                raise ValidationError(f"invalid scope {name!r}", field=field)
            names.add(name)
    return frozenset(names)


class PermissionResolver:
    """Narrows a requested scope set to what the account and application allow.

    Role grants are read from the durable store on every call, so a role
    change takes effect on the next ticket.
    """

    def __init__(self, store: PermissionStore) -> None:
        self.store = store

    def permissions_for(self, account_id: str) -> FrozenSet[str]:
        return frozenset(self.store.get_account_permissions(account_id))

    def resolve(
        self,
        account_id: str,
        application: Application,
        requested: Iterable[str],
        *,
        require_non_empty: bool = True,
    ) -> FrozenSet[str]:
        requested_set = frozenset(requested)
        granted = requested_set & self.permissions_for(account_id) & application.allowed_scopes
        if not granted and require_non_empty:
            logger.warning(
                "scope_resolution_empty",
                account_id=account_id,
                application_id=application.id,
                requested=sorted(requested_set),
            )
            raise InsufficientScope(
                detail={"account_id": account_id, "application_id": application.id}
            )
        if granted != requested_set:
            logger.info(
                "scope_narrowed",
                account_id=account_id,
                application_id=application.id,
                dropped=sorted(requested_set - granted),
            )
        return granted
