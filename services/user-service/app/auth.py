"""
Gateway-issued credentials.

  • Bearer JWT (Authorization header) — end users. The acting user's id is
    the `userId` claim (`sub` as fallback); it is never read from the body.
  • X-Service-Token — other platform services (e.g. the auth service
    provisioning a profile). A JWT signed with the shared service secret and
    carrying a `service` claim.

Missing credentials are 401, credentials that fail verification are 403.
"""
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    user_id: Optional[str]
    claims: dict[str, Any]


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token") from exc


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token not provided",
            headers={"WWW-Authenticate": "Bearer"},
        )
    claims = decode_access_token(credentials.credentials)
    # A token without a user id is let through; the handler decides whether
    # that is a validation error for its operation.
    return Principal(user_id=claims.get("userId") or claims.get("sub"), claims=claims)


def require_self(user_id: str, principal: Principal) -> None:
    """Profile writes are only allowed on the caller's own profile."""
    if principal.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot modify another user's profile",
        )


def verify_service_token(x_service_token: Optional[str] = Header(None)) -> str:
    if not x_service_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Service token missing"
        )
    try:
        claims = jwt.decode(
            x_service_token, settings.service_token_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid service token"
        ) from exc
    service = claims.get("service")
    if not service:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Invalid service token"
        )
    return service
