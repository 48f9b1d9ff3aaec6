import os
import requests
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from utils import logger

# Auth0 configuration
AUTH0_DOMAIN = os.environ.get("AUTH0_DOMAIN")
AUTH0_AUDIENCE = os.environ.get("AUTH0_AUDIENCE")
AUTH0_CLIENT_ID = os.environ.get("AUTH0_CLIENT_ID")
AUTH0_JWKS_URL = os.environ.get("AUTH0_JWKS_URL")
AUTH0_ISSUER = f"https://{AUTH0_DOMAIN}/" if AUTH0_DOMAIN else None
RESOURCE_API_BASE_URL = os.environ.get("RESOURCE_API_BASE_URL", "http://localhost:8000")

# Use explicit JWKS URL if provided, otherwise construct from domain
JWKS_URL = AUTH0_JWKS_URL or (f"{AUTH0_ISSUER}.well-known/jwks.json" if AUTH0_ISSUER else None)
ALGORITHMS = ["RS256"]
GATEWAY_SCOPES = ["mcp:read:pip", "mcp:write:pip"]

security = HTTPBearer(auto_error=False)
_jwks_cache = None


def _validate_jwt_format(token: str, *, context: str) -> None:
    """Basic structural validation before decoding a JWT."""
    parts = token.split(".")
    if len(parts) != 3:
        logger.warning(
            "Malformed bearer token for %s: expected 3 segments, got %s", context, len(parts)
        )
        raise HTTPException(
            status_code=401,
            detail="Invalid token format: expected a JWT access token issued by Auth0.",
        )

def get_jwks(force_refresh: bool = False):
    """Fetch JWKS, optionally bypassing the cache when keys rotate."""
    global _jwks_cache

    if JWKS_URL is None:
        raise HTTPException(status_code=500, detail="Auth not configured")

    if _jwks_cache is None or force_refresh:
        try:
            resp = requests.get(JWKS_URL, timeout=5)
            resp.raise_for_status()
            _jwks_cache = resp.json()
            logger.info("JWKS fetched%s", " (force refresh)" if force_refresh else "")
        except requests.RequestException as e:
            logger.error("Failed to fetch JWKS: %s", e)
            raise HTTPException(status_code=500, detail="Failed to fetch JWKS")
    return _jwks_cache

def _find_rsa_key(token: str, *, refresh_on_miss: bool = True) -> Dict[str, Any]:
    """Locate RSA key for the token's kid, refreshing JWKS on cache misses."""
    jwks = get_jwks(force_refresh=False)
    unverified_header = jwt.get_unverified_header(token)

    def _match_key(jwks_payload):
        for key in jwks_payload.get("keys", []):
            if key.get("kid") == unverified_header.get("kid"):
                return {
                    "kty": key.get("kty"),
                    "kid": key.get("kid"),
                    "use": key.get("use"),
                    "n": key.get("n"),
                    "e": key.get("e"),
                }
        return None

    rsa_key = _match_key(jwks)
    if not rsa_key and refresh_on_miss:
        # Key rotation or stale cache: refresh once and try again
        jwks = get_jwks(force_refresh=True)
        rsa_key = _match_key(jwks)

    return rsa_key or {}


def verify_jwt(token: str, audiences: Optional[list[str]] = None) -> Dict[str, Any]:
    try:
        rsa_key = _find_rsa_key(token)
        if not rsa_key:
            raise HTTPException(status_code=401, detail="Invalid token: signing key not found")

        last_error = None
        candidates = [aud for aud in (audiences or [AUTH0_AUDIENCE]) if aud]
        if AUTH0_CLIENT_ID:
            candidates.append(AUTH0_CLIENT_ID)
        for audience in candidates:
            try:
                return jwt.decode(
                    token,
                    rsa_key,
                    algorithms=ALGORITHMS,
                    audience=audience,
                    issuer=AUTH0_ISSUER,
                    options={"verify_at_hash": False},
                )
            except JWTError as e:
                logger.warning("JWT decode with audience %s failed: %s", audience, e)
                last_error = e

        raise HTTPException(status_code=401, detail=f"Invalid token: {str(last_error) if last_error else 'audience mismatch'}")
    except JWTError as e:
        logger.warning("JWT decode failed: %s", e)
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")

def check_permissions(payload: Dict[str, Any], required_scopes: list[str]) -> bool:
    """
    Check if the JWT payload contains at least one of the required scopes.
    Scopes can be in 'scope' (space-separated string) or 'permissions' (list).
    """
    permissions = payload.get("permissions", [])
    if isinstance(permissions, list):
        for scope in required_scopes:
            if scope in permissions:
                return True

    scope_string = payload.get("scope", "")
    if isinstance(scope_string, str):
        scopes = scope_string.split()
        for scope in required_scopes:
            if scope in scopes:
                return True

    return False


def user_id_from_claims(payload: Dict[str, Any]) -> str:
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: missing subject")
    return user_id


def require_gateway_auth(request: Request, creds: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Gateway auth - requires mcp:read:pip or mcp:write:pip scope"""
    if creds is None or creds.scheme.lower() != "bearer":
        logger.warning("Missing/invalid Authorization header for %s %s", request.method, request.url.path)
        raise HTTPException(
            status_code=401,
            detail="Authorization required",
            headers={
                "WWW-Authenticate": (
                    'Bearer '
                    f'resource_metadata="{RESOURCE_API_BASE_URL.rstrip("/")}/.well-known/oauth-protected-resource", '
                    'scope="mcp:read:pip mcp:write:pip"'
                )
            },
        )
    try:
        _validate_jwt_format(creds.credentials, context=f"{request.method} {request.url.path}")
        payload = verify_jwt(creds.credentials)
        if not check_permissions(payload, GATEWAY_SCOPES):
            logger.warning("Insufficient permissions for gateway access for %s %s", request.method, request.url.path)
            raise HTTPException(
                status_code=403,
                detail="Insufficient permissions. Required: mcp:read:pip or mcp:write:pip"
            )
        return payload
    except HTTPException as exc:
        if exc.status_code == 403:
            raise
        logger.warning("JWT validation failed for %s %s: %s", request.method, request.url.path, exc.detail)
        raise
