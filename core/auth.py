from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request
from fastapi.responses import JSONResponse

from core.config import (
    logger,
    ADMIN_SECRET,
    ADMIN_ALLOWLIST_IPS,
    AFFILIATE_JWT_SECRET,
    CLOSER_JWT_SECRET,
    PORTAL_JWT_TTL_HOURS,
)
from utils.fingerprint import get_client_ip

PORTAL_JWT_ISSUER = "affiliate-ledger.portal"


# --- Admin (shared secret) ---

def _extract_secret(request: Request, explicit: Optional[str] = None) -> str:
    if explicit and explicit.strip():
        return explicit.strip()
    # Header only; a query-string secret would end up in access logs
    h = (request.headers.get("X-Admin-Secret") or "").strip()
    return h


def require_admin(request: Request, secret: Optional[str] = None) -> Optional[JSONResponse]:
    """Return an error response when the caller is not an admin, None otherwise."""
    if not ADMIN_SECRET:
        return JSONResponse({"error": "admin_not_configured"}, status_code=503)
    provided = _extract_secret(request, secret)
    if not provided or provided != ADMIN_SECRET:
        return JSONResponse({"error": "Unauthorized - Admin authentication required"}, status_code=401)
    if ADMIN_ALLOWLIST_IPS:
        ip = get_client_ip(request)
        if ip and ip not in ADMIN_ALLOWLIST_IPS:
            return JSONResponse({"error": "forbidden"}, status_code=403)
    return None


# --- Portal tokens (affiliates, closers) ---

def _secret_for(role: str) -> str:
    return CLOSER_JWT_SECRET if role == "closer" else AFFILIATE_JWT_SECRET


def issue_portal_token(subject_id: str, role: str, ttl_hours: Optional[int] = None) -> str:
    secret = _secret_for(role)
    if not secret:
        raise RuntimeError(f"No signing secret configured for role={role}")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=ttl_hours or PORTAL_JWT_TTL_HOURS)).timestamp()),
        "iss": PORTAL_JWT_ISSUER,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_subject_from_request(request: Request, role: str) -> Optional[str]:
    """Verify the bearer token for the given portal role and return its subject id."""
    token = _bearer_token(request)
    if not token:
        return None
    secret = _secret_for(role)
    if not secret:
        logger.warning(f"[auth] no secret configured for role={role}")
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], issuer=PORTAL_JWT_ISSUER)
    except jwt.PyJWTError as ex:
        logger.warning(f"[auth] token verification failed role={role}: {ex}")
        return None
    if payload.get("role") != role:
        return None
    return payload.get("sub")


def get_affiliate_id_from_request(request: Request) -> Optional[str]:
    return get_subject_from_request(request, "affiliate")


def get_closer_id_from_request(request: Request) -> Optional[str]:
    return get_subject_from_request(request, "closer")
