"""Access-token verification for HTTP and realtime entry points.

Tokens are issued by the dealership backend (HS256, claims `userId` or `sub`
plus `role`). This module only verifies them.
"""

from dataclasses import dataclass
from enum import Enum

import jwt

from dealerhub.common.config import settings
from dealerhub.common.errors import AuthError


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


OPERATOR_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})


def is_operator(role: "Role | str | None") -> bool:
    """True for roles allowed to receive admin alerts and open realtime sessions."""

    try:
        return Role(role) in OPERATOR_ROLES
    except ValueError:
        return False


@dataclass(frozen=True)
class Principal:
    principal_id: str
    role: Role

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


class IdentityVerifier:
    """Verifies bearer credentials and resolves them to a principal."""

    def __init__(self, secret: str | None = None, algorithm: str | None = None) -> None:
        self.secret = secret or settings.jwt_secret
        self.algorithm = algorithm or settings.jwt_algorithm

    def verify(self, credential: str | None) -> Principal:
        """Return the principal for `credential` or raise `AuthError`."""

        if not credential:
            raise AuthError("authentication required")
        try:
            claims = jwt.decode(credential, self.secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as exc:
            raise AuthError("invalid token") from exc

        principal_id = claims.get("userId") or claims.get("sub")
        if not principal_id:
            raise AuthError("token has no subject")
        try:
            role = Role(claims.get("role"))
        except ValueError as exc:
            raise AuthError(f"unknown role {claims.get('role')!r}") from exc
        return Principal(principal_id=str(principal_id), role=role)


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an `Authorization: Bearer ...` header value."""

    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
