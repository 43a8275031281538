import logging
from dataclasses import dataclass
from typing import Optional

import requests
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .config import AUTH_API_KEY, AUTH_TIMEOUT_SECONDS, AUTH_URL
from .database import get_db
from .errors import AuthenticationRequired, BackendError, PermissionDenied
from .models import UserRole

log = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    """The signed-in user as reported by the auth provider."""

    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None


class AuthClient:
    """
    Thin client for the hosted auth provider.

    Only two calls are used: resolving an access token to its user and
    revoking the session on sign-out. Session issuance and token refresh stay
    with the provider.
    """

    def __init__(self, base_url=AUTH_URL, api_key=AUTH_API_KEY, timeout=AUTH_TIMEOUT_SECONDS, session=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, access_token):
        return {"apikey": self.api_key, "Authorization": f"Bearer {access_token}"}

    def get_user(self, access_token: str) -> Optional[Identity]:
        """Returns the identity behind the token, or None if the token is rejected."""
        try:
            response = self.session.get(
                f"{self.base_url}/user",
                headers=self._headers(access_token),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            log.error("Auth provider unreachable: %s", e)
            raise BackendError("Authentication service unavailable") from e

        if response.status_code in (401, 403):
            return None
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            log.error("Auth provider returned %s", response.status_code)
            raise BackendError("Authentication service unavailable") from e

        data = response.json()
        if not data.get("id"):
            return None
        return Identity(user_id=data["id"], email=data.get("email"), access_token=access_token)

    def sign_out(self, access_token: str) -> None:
        try:
            response = self.session.post(
                f"{self.base_url}/logout",
                headers=self._headers(access_token),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            log.error("Auth provider unreachable on sign-out: %s", e)
            raise BackendError("Failed to sign out") from e
        # An already expired session counts as signed out.
        if response.status_code not in (200, 204, 401):
            log.error("Sign-out rejected with %s", response.status_code)
            raise BackendError("Failed to sign out")


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def get_auth_client(request: Request) -> AuthClient:
    return request.app.state.auth_client


def optional_identity(
    authorization: Optional[str] = Header(None),
    auth: AuthClient = Depends(get_auth_client),
) -> Optional[Identity]:
    token = bearer_token(authorization)
    if token is None:
        return None
    return auth.get_user(token)


def require_identity(identity: Optional[Identity] = Depends(optional_identity)) -> Identity:
    if identity is None:
        raise AuthenticationRequired()
    return identity


def has_role(db: Session, user_id: str, role: str) -> bool:
    return db.query(UserRole.id).filter(UserRole.user_id == user_id, UserRole.role == role).first() is not None


def require_admin(
    identity: Identity = Depends(require_identity),
    db: Session = Depends(get_db),
) -> Identity:
    if not has_role(db, identity.user_id, ADMIN_ROLE):
        log.warning("Admin access denied for user %s", identity.user_id)
        raise PermissionDenied()
    return identity
