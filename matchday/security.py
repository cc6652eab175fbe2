"""API key check for the internal ops endpoints."""

import logging
import secrets
from typing import Optional

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from matchday.config import get_settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name=get_settings().API_KEY_HEADER, auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> bool:
    """
    Verify API key for ops endpoints.

    An empty API_KEY leaves the ops surface open (local development only).
    """
    expected = get_settings().API_KEY
    if not expected:
        return True
    if not api_key or not secrets.compare_digest(api_key, expected):
        logger.warning("Rejected ops request with invalid API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return True
