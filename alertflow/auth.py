"""
alertflow Authentication Module
API Key validation for HTTP endpoints

Uses constant-time comparison to prevent timing attacks
"""

import secrets
import logging
from typing import Optional, Callable, Awaitable

from fastapi import HTTPException, Header, status

logger = logging.getLogger("alertflow.auth")


def build_api_key_verifier(api_key: Optional[str]) -> Callable[..., Awaitable[str]]:
    """
    Build a FastAPI dependency that validates the X-API-Key header.

    Authentication is disabled when no key is configured (development only).
    """
    if not api_key:
        logger.warning("ALERTFLOW_API_KEY not set - authentication DISABLED (development mode only)")

    async def verify_api_key(
        x_api_key: Optional[str] = Header(None, alias="X-API-Key")
    ) -> str:
        if not api_key:
            return "dev-bypass"

        if not x_api_key:
            logger.warning("Request rejected - missing X-API-Key header")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing X-API-Key header",
                headers={"WWW-Authenticate": "ApiKey"},
            )

        if not secrets.compare_digest(x_api_key.encode("utf-8"), api_key.encode("utf-8")):
            key_preview = x_api_key[:8] if len(x_api_key) >= 8 else x_api_key
            logger.warning(f"Request rejected - invalid API key: {key_preview}...")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid API key"
            )

        return x_api_key

    return verify_api_key
