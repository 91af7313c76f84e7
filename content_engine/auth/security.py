import hmac
import logging
from typing import Optional

from fastapi import Security, HTTPException
from fastapi.security import APIKeyHeader

from content_engine.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_admin(api_key: Optional[str] = Security(API_KEY_HEADER)) -> None:
    """
    Guards the admin surface with a shared key when ADMIN_API_KEY is set.
    Without a configured key the surface is open (local development).
    """
    expected = settings.ADMIN_API_KEY
    if not expected:
        return

    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.info("Rejected admin request with invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API Key")
