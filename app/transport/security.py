# app/transport/security.py
"""
Security utilities for the resolver API.

Security features:
- Constant-time token comparison for the status endpoint
- Internal network validation (fallback when no metrics token is set)
- Dev-only endpoint guard
- OWASP response headers
"""
import hmac
import ipaddress
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def require_dev_environment():
    """
    Dependency that only allows access in dev environment.
    Use for endpoints that should NEVER be exposed in production or staging.
    """
    def dependency():
        if settings.app_env != "dev":
            logger.warning(
                f"Attempted access to dev-only endpoint in env={settings.app_env}"
            )
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Not found"  # Don't reveal endpoint exists
            )
    return dependency


@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Parse and cache internal network CIDRs from settings."""
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def get_client_ip(request: Request) -> str:
    """
    Get the real client IP, respecting proxy headers if configured.

    SECURITY NOTE: X-Forwarded-For is only trusted with TRUST_PROXY_HEADERS=true.
    """
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and not forwarded_for:
            client_ip = real_ip.strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        logger.warning(f"Invalid IP address format: {ip_str}")
        return False

    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    """Dependency that only allows access from INTERNAL_NETWORKS."""
    client_ip = get_client_ip(request)

    if _is_internal_ip(client_ip):
        return

    logger.warning(f"Access denied from non-internal IP: {client_ip}")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Forbidden"
    )


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for the status/metrics endpoint.

    1. If METRICS_TOKEN is set: require Bearer token authentication
    2. Otherwise: require internal network access
    """
    if settings.metrics_token:
        if not credentials:
            logger.warning("Status endpoint accessed without token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning("Invalid metrics token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    require_internal_network(request)


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Resolved links are short-lived; never let intermediaries cache them
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response
