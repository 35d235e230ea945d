"""JWT utilities for validating tokens issued by the hosted auth provider."""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError
from jose import jwt as jose_jwt
from pydantic import BaseModel

from common.core.app_error import Errors
from common.core.config_service import AuthSection
from common.ids import UserId
from common.utils.utils import get_logger

logger = get_logger(__name__)


class TokenData(BaseModel):
    """Claims the ledger cares about."""

    user_id: UserId
    email: str | None = None
    role: str | None = None
    is_admin: bool = False


class JWTValidator:
    """Validates HS256 access tokens signed with the provider's shared secret."""

    def __init__(self, auth: AuthSection) -> None:
        self._auth = auth

    def validate_token(self, token: str) -> TokenData:
        if not self._auth.jwt_secret:
            logger.error("JWT secret is not configured; rejecting token")
            raise Errors.Auth.UNAUTHORIZED.create("Authentication is not configured")

        options = {"verify_aud": self._auth.jwt_audience is not None, "verify_exp": True}
        try:
            payload: dict[str, Any] = jose_jwt.decode(
                token,
                self._auth.jwt_secret,
                algorithms=[self._auth.jwt_algorithm],
                audience=self._auth.jwt_audience,
                options=options,
            )
        except JWTError as e:
            logger.info("Token validation failed", error=str(e))
            raise Errors.Auth.UNAUTHORIZED.create(cause=e) from e

        sub = payload.get("sub")
        if not sub:
            raise Errors.Auth.UNAUTHORIZED.create("Token has no subject")

        role = self._extract_role(payload)
        return TokenData(user_id=UserId(str(sub)), email=payload.get("email"), role=role, is_admin=role == self._auth.admin_role)

    @staticmethod
    def _extract_role(payload: dict[str, Any]) -> str | None:
        # Provider-managed roles live in app_metadata; the top-level role is the DB role
        app_metadata = payload.get("app_metadata")
        if isinstance(app_metadata, dict) and app_metadata.get("role"):
            return str(app_metadata["role"])
        role = payload.get("role")
        return str(role) if role else None


def create_access_token(auth: AuthSection, user_id: str, *, role: str | None = None, expires_in: timedelta = timedelta(hours=1), **claims: Any) -> str:
    """Mints a token the validator accepts. Used by tests and local tooling."""
    now = datetime.now(UTC)
    to_encode: dict[str, Any] = {"sub": user_id, "iat": int(now.timestamp()), "exp": int((now + expires_in).timestamp()), **claims}
    if auth.jwt_audience is not None:
        to_encode["aud"] = auth.jwt_audience
    if role is not None:
        to_encode["app_metadata"] = {"role": role}
    return jose_jwt.encode(to_encode, auth.jwt_secret, algorithm=auth.jwt_algorithm)
