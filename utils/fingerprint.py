"""
Visitor fingerprint helpers - reusable across tracking endpoints
Extracts IP, user agent and UTM parameters from an inbound request
"""
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Request


@dataclass(frozen=True)
class Fingerprint:
    ip_address: str
    user_agent: str


@dataclass(frozen=True)
class UtmParams:
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    # Check X-Forwarded-For header (when behind proxy/load balancer)
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    # Check X-Real-IP header
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    # Fall back to direct client IP
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return (request.headers.get("User-Agent") or "unknown")[:512]  # Limit to 512 chars


def fingerprint_from_request(request: Request) -> Fingerprint:
    return Fingerprint(ip_address=get_client_ip(request), user_agent=get_user_agent(request))


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s[:255] or None


def utm_from_params(params: Mapping) -> UtmParams:
    """Read utm_source/utm_medium/utm_campaign from query params or a JSON body."""
    return UtmParams(
        source=_clean(params.get("utm_source")),
        medium=_clean(params.get("utm_medium")),
        campaign=_clean(params.get("utm_campaign")),
    )
