"""Authentication boundary for Selfcast.

The core never reads identity from ambient state: every operation takes an
explicit Identity. At the HTTP edge the identity comes from a signed token
(``Authorization: Bearer <token>`` or a ``token`` cookie).

Key classes:
- Identity: Request-scoped caller identity.
- TokenSigner: Issues and verifies signed, time-limited tokens.

Key functions:
- authorize_project: Require admin or ownership of a project.
- authorize_revalidation: Require admin or ownership of the path's project.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import AuthenticationError, Unauthorized, ValidationError
from .utils import project_id_from_path

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
CLIENT_ROLE = "client"
ROLES = frozenset({ADMIN_ROLE, CLIENT_ROLE})

_TOKEN_SALT = "selfcast.auth"


@dataclass(frozen=True)
class Identity:
    """Caller identity supplied by the authentication boundary.

    Attributes:
        user_id: Identifier of the authenticated user.
        role: ``admin`` or ``client``.
        project_id: The project a client owns; None for admins without one.
    """

    user_id: str
    role: str
    project_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def to_claims(self) -> dict[str, Any]:
        return {"userId": self.user_id, "role": self.role, "projectId": self.project_id}

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> Identity:
        role = claims.get("role")
        if role not in ROLES or not claims.get("userId"):
            raise AuthenticationError("Invalid token")
        project_id = claims.get("projectId")
        return cls(user_id=str(claims["userId"]), role=role, project_id=project_id or None)


SYSTEM_IDENTITY = Identity(user_id="system", role=ADMIN_ROLE)


def authorize_project(identity: Identity, project_id: str) -> None:
    """Allow admins and the project's owner.

    Raises:
        Unauthorized: If the caller is neither.
    """
    if identity.is_admin or identity.project_id == project_id:
        return
    raise Unauthorized("Not authorized to access this project")


def authorize_revalidation(identity: Identity, path: str) -> None:
    """Allow admins, or clients who own the project the path belongs to.

    The owning project is the path's first segment, the same project that
    gets touched and regenerated. So project ``acme`` may revalidate
    ``/acme/about`` but not ``/other/acme``, and ``ann`` cannot revalidate
    ``/anna``.

    Raises:
        Unauthorized: If the caller may not revalidate the path.
    """
    if identity.is_admin:
        return
    if identity.project_id and identity.project_id == project_id_from_path(path):
        return
    raise Unauthorized("Not authorized to revalidate this page")


class TokenSigner:
    """Signs identities into tokens and verifies them.

    Tokens are itsdangerous URL-safe timed signatures of the identity claims.

    Attributes:
        max_age: Token lifetime in seconds.
    """

    def __init__(self, secret: str, max_age: int = 86400):
        if not secret:
            raise ValueError("A signing secret is required")
        self._serializer = URLSafeTimedSerializer(secret, salt=_TOKEN_SALT)
        self.max_age = max_age

    def issue(self, identity: Identity) -> str:
        if identity.role not in ROLES:
            raise ValidationError(f"Unknown role: {identity.role}", {"role": "admin or client"})
        return self._serializer.dumps(identity.to_claims())

    def verify(self, token: str) -> Identity:
        """Decode a token into an Identity.

        Raises:
            AuthenticationError: If the token is expired, tampered with or malformed.
        """
        try:
            claims = self._serializer.loads(token, max_age=self.max_age)
        except SignatureExpired as exc:
            raise AuthenticationError("Token expired") from exc
        except BadSignature as exc:
            raise AuthenticationError("Invalid token") from exc
        if not isinstance(claims, dict):
            raise AuthenticationError("Invalid token")
        return Identity.from_claims(claims)

    def identity_from_headers(self, headers: Mapping[str, str]) -> Identity:
        """Authenticate a request from its headers.

        Raises:
            AuthenticationError: If no valid token is present.
        """
        token = _bearer_token(headers.get("Authorization") or "") or _cookie_token(
            headers.get("Cookie") or ""
        )
        if not token:
            raise AuthenticationError("Not authenticated")
        return self.verify(token)


def _bearer_token(value: str) -> str | None:
    scheme, _, token = value.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def _cookie_token(value: str) -> str | None:
    if not value:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(value)
    except CookieError:
        logger.debug("Ignoring malformed Cookie header")
        return None
    morsel = cookie.get("token")
    return morsel.value if morsel is not None else None
