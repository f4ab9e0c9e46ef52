"""
Authentication service
Resolves the calling account for a request from a Firebase ID token, or from
the legacy X-User-Key header restricted to VALID_KEYS.
"""

import logging
from typing import Optional, Dict, Tuple
from fastapi import HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from ..config import USE_POSTGRES, VALID_KEYS
from .firebase_auth import verify_bearer_id_token
from .accounts import get_or_create_account

logger = logging.getLogger(__name__)

LEGACY_UID_PREFIX = "key:"


def resolve_identity(request: Request) -> Optional[Tuple[str, Optional[str], Optional[str]]]:
    """
    Identity-provider uid, email and display name for the request.
    Returns None if the request carries no usable credentials.
    Raises HTTPException(401) on an explicitly invalid token.
    """
    claims = verify_bearer_id_token(request.headers.get('Authorization'))
    if claims:
        return claims.uid, claims.email, claims.display_name

    # Fallback to legacy key if token missing
    user_key = request.headers.get('X-User-Key')
    if user_key and user_key in VALID_KEYS:
        return f"{LEGACY_UID_PREFIX}{user_key}", None, user_key

    return None


def authenticate_user(request: Request) -> Optional[Dict]:
    """
    Authenticate the request and return the account, creating it on first sight.
    Returns None if not authenticated.
    """
    identity = resolve_identity(request)
    if not identity:
        return None
    try:
        return get_or_create_account(*identity)
    except Exception as e:
        logger.error(f"Authentication error: {e}", exc_info=True)
        return None


def require_account(request: Request) -> Dict:
    """The authenticated account, or 401."""
    account = authenticate_user(request)
    if not account:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return account


async def require_account_postgres(request: Request) -> Dict:
    """require_account against the PostgreSQL store."""
    # Import locally to avoid loading asyncpg in SQLite deployments
    from .transfers_postgres import get_or_create_account as get_or_create_account_postgres

    identity = resolve_identity(request)
    if not identity:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await get_or_create_account_postgres(*identity)


async def current_account(request: Request) -> Dict:
    """The authenticated account from the configured store, or 401."""
    if USE_POSTGRES:
        return await require_account_postgres(request)
    return await run_in_threadpool(require_account, request)
