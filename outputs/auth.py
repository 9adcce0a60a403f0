"""
Lacquer — request authentication for the HTTP layer.

Two modes, chosen by the injected AuthConfig (never by reading the
environment inside a handler):
  - dev bypass (AuthConfig.dev_bypass): `Authorization: Bearer dev:<userId>`
  - gateway mode: `X-Lacquer-Key: <api_key>` plus `X-User-Id: <userId>` set
    by the trusted front proxy after it has verified the user's token.

Admin routes additionally require the user id to be in admin_user_ids.
"""
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

logger = logging.getLogger("lacquer.auth")

_DEV_TOKEN = re.compile(r"^dev:(\d+)$")


@dataclass
class AuthenticatedUser:
    user_id: int
    is_admin: bool = False


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def authenticate(auth_config, authorization: Optional[str] = None,
                 api_key: Optional[str] = None, user_id_header: Optional[str] = None) -> AuthenticatedUser:
    """Resolve the caller or raise HTTPException(401)."""
    user_id = None
    if auth_config.dev_bypass and authorization:
        if not authorization.startswith("Bearer "):
            raise _unauthorized("Missing or malformed Authorization header")
        m = _DEV_TOKEN.match(authorization[len("Bearer "):].strip())
        if not m:
            raise _unauthorized("Invalid dev token format. Expected: dev:<userId>")
        user_id = int(m.group(1))
        logger.debug(f"Auth dev bypass: userId={user_id}")
    elif auth_config.api_key:
        if not api_key or not hmac.compare_digest(api_key, auth_config.api_key):
            raise _unauthorized("Invalid or missing API key")
        if not user_id_header or not user_id_header.strip().isdigit():
            raise _unauthorized("X-User-Id header is required")
        user_id = int(user_id_header.strip())
    else:
        raise _unauthorized("Missing or malformed Authorization header")

    if user_id <= 0:
        raise _unauthorized("User id must be a positive integer")
    return AuthenticatedUser(user_id=user_id, is_admin=user_id in (auth_config.admin_user_ids or []))


def build_dependencies(auth_config):
    """Return (current_user, admin_user) FastAPI dependencies bound to auth_config."""

    async def current_user(
        authorization: str = Header(None, alias="Authorization"),
        x_lacquer_key: str = Header(None, alias="X-Lacquer-Key"),
        x_user_id: str = Header(None, alias="X-User-Id"),
    ) -> AuthenticatedUser:
        return authenticate(auth_config, authorization, x_lacquer_key, x_user_id)

    async def admin_user(user: AuthenticatedUser = Depends(current_user)) -> AuthenticatedUser:
        if not user.is_admin:
            logger.warning(f"User {user.user_id} denied admin route")
            raise HTTPException(status_code=403, detail="Admin access required")
        return user

    return current_user, admin_user
