"""
Firebase ID-token verification for breeder accounts.

firebase-admin is initialised lazily on the first bearer token, so keyed
deployments and tests never need credentials.
"""

import json
import logging
import os
from typing import NamedTuple, Optional
from fastapi import HTTPException
from ..config import FIREBASE_CREDENTIALS, GOOGLE_APPLICATION_CREDENTIALS, FIREBASE_CHECK_REVOKED

logger = logging.getLogger(__name__)

_firebase_ready = False
_auth = None


class IdentityClaims(NamedTuple):
    uid: str
    email: Optional[str]
    display_name: Optional[str]


def _credentials():
    from firebase_admin import credentials

    if FIREBASE_CREDENTIALS:
        return credentials.Certificate(json.loads(FIREBASE_CREDENTIALS))
    if GOOGLE_APPLICATION_CREDENTIALS and os.path.exists(GOOGLE_APPLICATION_CREDENTIALS):
        return credentials.Certificate(GOOGLE_APPLICATION_CREDENTIALS)
    # Application default credentials
    return None


def _init_firebase_if_needed():
    global _firebase_ready, _auth
    if _firebase_ready:
        return
    try:
        import firebase_admin
        from firebase_admin import auth as fb_auth

        if not firebase_admin._apps:
            cred = _credentials()
            if cred is not None:
                firebase_admin.initialize_app(cred)
            else:
                firebase_admin.initialize_app()

        _auth = fb_auth
        _firebase_ready = True
        logger.info("Firebase auth initialised")
    except Exception as e:
        logger.warning(f"Firebase initialization error: {e}")
        _firebase_ready = False
        _auth = None


def _bearer_token(authorization_header: str) -> str:
    parts = authorization_header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    return parts[1]


def verify_bearer_id_token(authorization_header: Optional[str]) -> Optional[IdentityClaims]:
    """
    Verify `Authorization: Bearer <Firebase ID token>`.

    Returns the caller's claims, or None when the header is absent or Firebase
    is not configured. Malformed, expired, revoked or otherwise invalid tokens
    raise HTTPException(401).
    """
    if not authorization_header:
        return None
    token = _bearer_token(authorization_header)
    _init_firebase_if_needed()
    if not _auth:
        return None

    try:
        decoded = _auth.verify_id_token(token, check_revoked=FIREBASE_CHECK_REVOKED)
    except _auth.ExpiredIdTokenError:
        raise HTTPException(status_code=401, detail="ID token expired")
    except _auth.RevokedIdTokenError:
        raise HTTPException(status_code=401, detail="ID token revoked")
    except Exception as e:
        logger.info(f"Rejected ID token: {e}")
        raise HTTPException(status_code=401, detail="Invalid ID token")

    uid = decoded.get('uid')
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid ID token")
    return IdentityClaims(uid, decoded.get('email'), decoded.get('name'))
