# order_api/utils.py

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from common.security import (
    Caller,
    InvalidTokenError,
    decode_service_token,
    decode_user_token,
)
from order_api import settings

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


# Dependency to get current user
async def get_current_user(
    token: Annotated[str | None, Depends(oauth2_scheme)]
) -> Caller:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_user_token(token, settings.SECRET_KEY)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Dependency to get current admin user
async def get_current_admin_user(
    user: Annotated[Caller, Depends(get_current_user)]
) -> Caller:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions.")
    return user


# Dependency guarding the internal routes used by other services
async def get_calling_service(
    x_service_token: Annotated[str | None, Header()] = None
) -> str:
    if not x_service_token:
        raise HTTPException(status_code=401, detail="Service token required")
    try:
        service = decode_service_token(x_service_token, settings.SERVICE_SECRET)
    except InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid service token")
    logger.debug(f"Internal call from {service}")
    return service
