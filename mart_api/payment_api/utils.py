# payment_api/utils.py

import logging
import re
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from common.security import Caller, InvalidTokenError, decode_user_token
from payment_api import settings

# Configure logging
logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)

CARD_TYPE_PATTERNS = [
    (re.compile(r"^4"), "Visa"),
    (re.compile(r"^5[1-5]"), "Mastercard"),
    (re.compile(r"^3[47]"), "Amex"),
    (re.compile(r"^6(?:011|5)"), "Discover"),
]


# Authentication Utilities
def get_current_user(token: Annotated[str | None, Depends(oauth2_scheme)]) -> Caller:
    """
    Retrieves the current user based on the JWT token.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        return decode_user_token(token, settings.SECRET_KEY)
    except InvalidTokenError:
        raise credentials_exception


def get_admin_user(current_user: Annotated[Caller, Depends(get_current_user)]) -> Caller:
    """
    Ensures that the current user is an admin.
    """
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions.")
    return current_user


# Card helpers
def detect_card_type(card_number: str | None) -> str:
    """Detects the card brand from its leading digits."""
    if not card_number:
        return "Unknown"
    clean_number = re.sub(r"[\s-]", "", card_number)
    for pattern, card_type in CARD_TYPE_PATTERNS:
        if pattern.match(clean_number):
            return card_type
    return "Unknown"


def mask_card(card_number: str | None, exp_date: str | None) -> dict:
    """
    Keeps only what may be stored: last four digits, brand and expiry.
    """
    if not card_number:
        return {"card_last_four": None, "card_type": None, "card_expiry": None}
    clean_number = re.sub(r"[\s-]", "", card_number)
    return {
        "card_last_four": clean_number[-4:],
        "card_type": detect_card_type(clean_number),
        "card_expiry": exp_date,
    }
