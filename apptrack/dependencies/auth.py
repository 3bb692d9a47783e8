from fastapi import Header, HTTPException, status, Depends
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import jwt  # PyJWT
import logging
import requests
import time
from typing import Optional

from apptrack.core import config
from apptrack.core.tiers import Tier, resolve_tier
from apptrack.db.session import get_db
from apptrack.models.user import User
from apptrack.utils.request_identity import AuthenticatedIdentity

logger = logging.getLogger(__name__)

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Stale keys are still accepted for a day when Supabase is unreachable

ASYMMETRIC_ALGORITHMS = ("ES256", "RS256")
INVALID_TOKEN_VALUES = {"null", "undefined", "none", ""}


def get_jwks(supabase_url: str, force_refresh: bool = False):
    """
    Fetch JWKS from Supabase with caching and retry logic.
    Only successful fetches are cached so failures are retried on the next request.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and not force_refresh and JWKS_CACHE_TIMESTAMP:
        if time.time() - JWKS_CACHE_TIMESTAMP < JWKS_CACHE_TTL:
            return JWKS_CACHE

    jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"
    max_retries = 3
    last_error = None
    for attempt in range(max_retries):
        try:
            r = requests.get(jwks_url, timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("[AUTH] Fetched JWKS with %s keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except (requests.exceptions.RequestException, ValueError) as e:
            last_error = e
            logger.warning("[AUTH] JWKS fetch failed (attempt %s/%s): %s", attempt + 1, max_retries, e)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("[AUTH] Failed to fetch JWKS after %s attempts: %s", max_retries, last_error)
    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and time.time() - JWKS_CACHE_TIMESTAMP < JWKS_STALE_LIMIT:
        logger.warning("[AUTH] Using stale JWKS cache as fallback")
        return JWKS_CACHE
    return None


def _find_key(jwks: dict, kid: Optional[str]):
    try:
        key_set = jwt.PyJWKSet.from_dict(jwks)
    except jwt.PyJWKSetError as e:
        logger.error("[AUTH] JWKS could not be parsed: %s", e)
        return None
    for key in key_set.keys:
        if kid is None or key.key_id == kid:
            return key.key
    return None


def _signing_key(kid: Optional[str]):
    supabase_url = config.SUPABASE_URL
    if not supabase_url:
        logger.error("[AUTH] SUPABASE_URL is missing for asymmetric token verification")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: SUPABASE_URL not set"
        )

    jwks = get_jwks(supabase_url)
    if not jwks:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service temporarily unavailable. Please try again in a moment."
        )

    key = _find_key(jwks, kid)
    if key is None:
        # Keys may have rotated since the cache was filled
        refreshed = get_jwks(supabase_url, force_refresh=True)
        if refreshed:
            key = _find_key(refreshed, kid)
    return key


def verify_supabase_token(token: str) -> dict:
    """
    Verify a Supabase JWT and return its claims.
    Supports HS256 (shared secret) and ES256/RS256 (JWKS public keys).
    """
    if token.lower() in INVALID_TOKEN_VALUES:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: token value is null or undefined"
        )
    if len(token.split(".")) != 3:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format. Token must have header.payload.signature structure."
        )

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as e:
        logger.info("[AUTH] Failed to decode token header: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header"
        )

    algo = header.get("alg")
    if algo == "HS256":
        key = config.SUPABASE_JWT_SECRET
        if not key:
            logger.error("[AUTH] SUPABASE_JWT_SECRET is missing in environment variables")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: SUPABASE_JWT_SECRET not set"
            )
    elif algo in ASYMMETRIC_ALGORITHMS:
        key = _signing_key(header.get("kid"))
        if key is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token signature"
            )
    else:
        logger.info("[AUTH] Unsupported algorithm: %s", algo)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unsupported token algorithm: {algo}"
        )

    try:
        # Decode AND verify in one step; the payload is never decoded again later
        payload = jwt.decode(
            token,
            key,
            algorithms=[algo],
            audience="authenticated",
            options={"verify_aud": True}
        )
    except jwt.PyJWTError as e:
        logger.info("[AUTH] %s verification failed: %s", algo, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token signature"
        )
    return payload


def get_optional_identity(authorization: Optional[str] = Header(None)) -> Optional[AuthenticatedIdentity]:
    """
    Auth collaborator: the signed-in identity, or None for an anonymous visitor.
    A header that is present but invalid is still a 401, never silently anonymous.
    """
    if not authorization:
        return None
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid header format. Expected 'Bearer <token>'"
        )

    payload = verify_supabase_token(authorization[len("Bearer "):].strip())
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing user ID claim"
        )
    return AuthenticatedIdentity(user_id=user_id, email=payload.get("email"))


def get_current_identity(
    identity: Optional[AuthenticatedIdentity] = Depends(get_optional_identity),
) -> AuthenticatedIdentity:
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header"
        )
    return identity


def get_current_user(
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
) -> User:
    """
    Backend user row for the verified token.
    Auto-creates the user if missing so a fresh signup can convert its preview session immediately.
    """
    try:
        user = db.query(User).filter(User.id == identity.user_id).first()
        if user:
            return user

        user = User(id=identity.user_id, email=(identity.email or f"{identity.user_id}@users.noreply").lower())
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("[AUTH] Auto-created user %s (lazy sync)", user.id)
        return user
    except IntegrityError:
        # Created by a concurrent request between the lookup and the insert
        db.rollback()
        user = db.query(User).filter(User.id == identity.user_id).first()
        if user:
            return user
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="User account exists but could not be retrieved. Please try refreshing the page."
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("[AUTH] Database error while loading user %s: %s", identity.user_id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable. Please try again in a moment."
        )


def get_current_tier(user: User = Depends(get_current_user)) -> Tier:
    return resolve_tier(user.plan_name)
