import base64
import json
import logging
import time
from typing import Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.x509 import load_pem_x509_certificate
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import FIREBASE_PROJECT_ID
from .database import get_db
from .domain.billing.errors import StoreReadFailure
from .domain.billing.repository import SubscriptionRepository
from .domain.billing.schemas import Identity, Role

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
CLOCK_SKEW_SECONDS = 60

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

# Cache for Google's public keys
_cached_keys = None


async def get_google_public_keys():
    """Fetch Google's public keys for Firebase token verification"""
    global _cached_keys
    if _cached_keys:
        logger.debug("✅ Using cached Google public keys")
        return _cached_keys

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(GOOGLE_CERTS_URL)
        if response.status_code == 200:
            _cached_keys = response.json()
            logger.info(f"✅ Fetched {len(_cached_keys)} Google public keys")
            return _cached_keys
        logger.error(f"❌ Failed to fetch Google public keys: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.error(f"❌ Error fetching Google public keys: {e}")
    return None


def _b64decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


async def verify_firebase_token(token: str) -> dict:
    """
    Verify a Firebase ID token: RS256 signature against Google's certificates,
    then audience, issuer, expiry and issued-at claims.
    """
    global _cached_keys

    if not FIREBASE_PROJECT_ID:
        logger.error("❌ FIREBASE_PROJECT_ID not configured")
        raise HTTPException(status_code=500, detail="Firebase not configured")

    parts = token.split(".")
    if len(parts) != 3:
        logger.warning(f"⚠️ Malformed token received: {len(parts)} parts")
        raise HTTPException(status_code=401, detail="Invalid token format")
    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64decode(header_b64))
        payload = json.loads(_b64decode(payload_b64))
        signature = _b64decode(signature_b64)
    except ValueError as e:
        logger.error(f"❌ Failed to decode token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token format") from e

    kid = header.get("kid")
    if header.get("alg") != "RS256" or not kid:
        logger.error(f"❌ Invalid token header: alg={header.get('alg')}, kid={kid}")
        raise HTTPException(status_code=401, detail="Invalid token header")

    public_keys = await get_google_public_keys()
    if not public_keys or kid not in public_keys:
        logger.warning(f"⚠️ Key ID {kid} not found in public keys, invalidating cache and retrying")
        _cached_keys = None
        public_keys = await get_google_public_keys()
        if not public_keys or kid not in public_keys:
            logger.error(f"❌ Key ID {kid} not found in public keys after retry")
            raise HTTPException(status_code=401, detail="Unable to verify token signature")

    public_key = load_pem_x509_certificate(public_keys[kid].encode()).public_key()
    try:
        public_key.verify(
            signature,
            f"{header_b64}.{payload_b64}".encode(),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
    except InvalidSignature as e:
        logger.error("❌ Token signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid token signature") from e

    if payload.get("aud") != FIREBASE_PROJECT_ID:
        logger.error("❌ Token audience mismatch")
        raise HTTPException(status_code=401, detail="Invalid token audience")

    if payload.get("iss") != f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}":
        logger.error("❌ Token issuer mismatch")
        raise HTTPException(status_code=401, detail="Invalid token issuer")

    current_time = time.time()
    if payload.get("exp", 0) < current_time:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        )

    if payload.get("iat", 0) > current_time + CLOCK_SKEW_SECONDS:
        logger.warning("⚠️ Token issued in the future")
        raise HTTPException(status_code=401, detail="Invalid token")

    if "auth_time" not in payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token claims")

    logger.debug(f"✅ Token cryptographically verified for user: {payload.get('sub')}")
    return payload


async def _identity_from_token(token: str, db, fail_closed: bool = False) -> Identity:
    decoded_token = await verify_firebase_token(token)
    uid = decoded_token["sub"]

    # Role lives in users/{uid}.userType; no record means registration never finished
    try:
        user = SubscriptionRepository(db).get_user(uid)
    except StoreReadFailure as e:
        if not fail_closed:
            raise
        logger.warning(f"⚠️ Could not read role of {uid}, gating as unknown: {e.detail}")
        return Identity(uid=uid, email=decoded_token.get("email"), role_lookup_failed=True)
    role = user.role if user else None
    if user is None:
        logger.info(f"ℹ️ Authenticated uid {uid} has no users record")

    return Identity(uid=uid, email=decoded_token.get("email"), role=role)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
) -> Identity:
    """Get the authenticated caller from the Firebase token"""
    return await _identity_from_token(credentials.credentials, db)


async def get_gate_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
) -> Identity:
    """Identity for access gating: a failed role read yields a fail-closed marker instead of 503"""
    return await _identity_from_token(credentials.credentials, db, fail_closed=True)


async def get_optional_gate_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    db=Depends(get_db),
) -> Optional[Identity]:
    if credentials is None:
        return None
    return await _identity_from_token(credentials.credentials, db, fail_closed=True)


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if identity.role != Role.ADMIN:
        logger.warning(f"🚫 Non-admin {identity.uid} attempted an admin operation")
        raise HTTPException(status_code=403, detail="Acesso restrito a administradores")
    return identity
