"""
Caller identity for the cache flush API.

Authentication happens upstream (gateway / auth service). This module only
reads the identity headers the gateway forwards and answers one question:
may this principal run a flush.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable

from fastapi import Request

from shared.errors import AuthenticationError, AuthorizationError


@dataclass(frozen=True)
class Principal:
    """Pre-validated caller."""
    user_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)


class HeaderAuthorizer:
    """Builds a Principal from ``X-User-Id`` / ``X-User-Roles`` headers."""

    USER_HEADER = "x-user-id"
    ROLES_HEADER = "x-user-roles"

    def __init__(self, privileged_roles: Iterable[str] = ("admin",)):
        self.privileged_roles = frozenset(r.strip().lower() for r in privileged_roles if r.strip())

    def principal_from_request(self, request: Request) -> Principal:
        user_id = (request.headers.get(self.USER_HEADER) or "").strip()
        if not user_id:
            raise AuthenticationError("Missing caller identity")
        raw_roles = request.headers.get(self.ROLES_HEADER) or ""
        roles = frozenset(r.strip().lower() for r in raw_roles.split(",") if r.strip())
        return Principal(user_id=user_id, roles=roles)

    def is_privileged(self, principal: Principal) -> bool:
        return bool(principal.roles & self.privileged_roles)

    async def require_operator(self, request: Request) -> Principal:
        """FastAPI dependency: a principal allowed to flush caches."""
        principal = self.principal_from_request(request)
        if not self.is_privileged(principal):
            raise AuthorizationError(
                "Cache flush requires a privileged operator",
                details={"user_id": principal.user_id},
            )
        return principal
