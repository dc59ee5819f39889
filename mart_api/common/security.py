# common/security.py

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from pydantic import BaseModel, EmailStr

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SERVICE_TOKEN_EXPIRE = timedelta(hours=1)
SERVICE_TOKEN_HEADER = "x-service-token"


class Caller(BaseModel):
    """Identity of an end user, as asserted by the identity provider's token."""

    user_id: str
    email: EmailStr | None = None
    is_admin: bool = False


class InvalidTokenError(Exception):
    pass


def decode_user_token(token: str, secret_key: str) -> Caller:
    """
    Decodes an end-user access token.

    The token carries the user id in ``sub``, an optional ``email`` and a
    ``role``; ``ADMIN`` grants admin capability.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    user_id = payload.get("sub")
    if user_id is None or payload.get("type") == "service":
        raise InvalidTokenError("Token does not identify a user")
    try:
        return Caller(
            user_id=str(user_id),
            email=payload.get("email"),
            is_admin=payload.get("role") == "ADMIN",
        )
    except ValueError as e:
        raise InvalidTokenError(str(e)) from e


def create_user_token(user_id: str, secret_key: str, email: str | None = None,
                      role: str = "CUSTOMER", expires_delta: timedelta = timedelta(minutes=30)) -> str:
    to_encode = {"sub": user_id, "email": email, "role": role}
    to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def create_service_token(service: str, service_secret: str,
                         expires_delta: timedelta = SERVICE_TOKEN_EXPIRE) -> str:
    """Issues a short-lived token identifying a calling service rather than a user."""
    to_encode = {
        "service": service,
        "type": "service",
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, service_secret, algorithm=ALGORITHM)


def decode_service_token(token: str, service_secret: str) -> str:
    """Returns the calling service's name, or raises InvalidTokenError."""
    try:
        payload = jwt.decode(token, service_secret, algorithms=[ALGORITHM])
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    if payload.get("type") != "service" or not payload.get("service"):
        raise InvalidTokenError("Not a service token")
    return payload["service"]
