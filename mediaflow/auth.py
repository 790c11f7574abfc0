import logging
import secrets
from fastapi import Header, HTTPException
from .config import settings

logger = logging.getLogger(__name__)

async def require_token(x_api_token: str | None = Header(default=None)):
    """Shared-token guard for the task endpoints."""
    if x_api_token is None or not secrets.compare_digest(x_api_token, settings.api_token):
        logger.warning("Rejected request with %s API token", "missing" if x_api_token is None else "invalid")
        raise HTTPException(status_code=401, detail="Unauthorized")
