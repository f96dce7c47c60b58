"""
Caller identity, permission decisions and service discovery.

These are collaborators of the x2a service: the defaults here are simple
static implementations, and ``create_app`` accepts replacements (a real
identity/permission backend in production, fakes in tests).
"""

from abc import ABC, abstractmethod
from typing import Iterable

from fastapi import Request
from pydantic import BaseModel

from .errors import AuthenticationError

USER_HEADER = "X-Backstage-User"

# Permission names
ADMIN_READ_PERMISSION = "x2a.admin.read"
ADMIN_WRITE_PERMISSION = "x2a.admin.update"
USER_PERMISSION = "x2a.user"


class Credentials(BaseModel):
    """Authenticated caller; ``user_ref`` is a stable identity string."""
    user_ref: str


class IdentityProvider(ABC):
    @abstractmethod
    async def credentials(self, request: Request) -> Credentials:
        """Resolve the caller or raise AuthenticationError."""


class PermissionEvaluator(ABC):
    @abstractmethod
    async def authorize(self, credentials: Credentials, permission: str) -> bool:
        """Allow/deny decision for one permission."""

    async def authorize_any(self, credentials: Credentials, permissions: Iterable[str]) -> bool:
        for permission in permissions:
            if await self.authorize(credentials, permission):
                return True
        return False


class DiscoveryService(ABC):
    @abstractmethod
    async def get_base_url(self) -> str:
        """Externally reachable base URL of the x2a service."""


class HeaderIdentityProvider(IdentityProvider):
    """Trusts the identity header set by the fronting gateway."""

    def __init__(self, header: str = USER_HEADER):
        self.header = header

    async def credentials(self, request: Request) -> Credentials:
        user_ref = request.headers.get(self.header, "").strip()
        if not user_ref:
            raise AuthenticationError(f"Missing {self.header} header")
        return Credentials(user_ref=user_ref)


class StaticPermissionEvaluator(PermissionEvaluator):
    """Admins come from configuration; every authenticated caller is a user."""

    def __init__(self, admin_users: Iterable[str] = ()):
        self.admin_users = set(admin_users)

    async def authorize(self, credentials: Credentials, permission: str) -> bool:
        if permission == USER_PERMISSION:
            return True
        if permission in (ADMIN_READ_PERMISSION, ADMIN_WRITE_PERMISSION):
            return credentials.user_ref in self.admin_users
        return False


class StaticDiscoveryService(DiscoveryService):
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    async def get_base_url(self) -> str:
        return self.base_url
