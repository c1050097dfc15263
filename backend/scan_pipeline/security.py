"""
Security helpers shared by the routes and the pipeline.

- Outbound image URL validation (SSRF defense)
- CORS origin allow-list
- Internal/admin request verification (service role or admin key)
- End-user session verification (Supabase JWT)
"""

import hmac
import ipaddress
import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

import jwt

from .config import Config
from .errors import AuthError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SERVICE_ROLE = "service_role"
USER_AUDIENCE = "authenticated"

CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type, idempotency-key"
CORS_ALLOW_METHODS = "GET, POST, OPTIONS"


# === Outbound URL validation ===


def _is_blocked_host(hostname: str) -> bool:
    if hostname in Config.BLOCKED_HOSTS:
        return True
    if any(hostname.startswith(prefix) for prefix in Config.BLOCKED_HOST_PREFIXES):
        return True

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def _trusted_hosts() -> list[str]:
    hosts = list(Config.TRUSTED_STORAGE_DOMAINS)
    storage_host = urlparse(Config.supabase_url()).hostname
    if storage_host:
        hosts.append(storage_host.lower())
    hosts.extend(Config.trusted_image_hosts())
    return hosts


def _is_trusted_host(hostname: str, trusted: Iterable[str]) -> bool:
    for domain in trusted:
        domain = domain.lower().lstrip(".")
        if hostname == domain or hostname.endswith("." + domain):
            return True
    return False


def is_valid_image_url(url: str, trusted_hosts: Optional[Iterable[str]] = None) -> bool:
    """
    Check an image URL against the outbound fetch policy.

    Rules:
    1. HTTPS only
    2. Host must not be localhost, a private/link-local/reserved address
       or a cloud metadata endpoint
    3. Host must be (a subdomain of) a trusted storage domain

    Args:
        url: URL to check
        trusted_hosts: Override the trusted domain list (defaults to the
                       platform storage domains plus configured hosts)

    Returns:
        True if the URL may be fetched
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
    except ValueError:
        logger.info(f"Rejected malformed image URL: {url[:200]}")
        return False

    if parsed.scheme != "https":
        logger.info(f"Rejected non-HTTPS image URL: {url[:200]}")
        return False

    if not hostname:
        return False
    hostname = hostname.lower().rstrip(".")

    if _is_blocked_host(hostname):
        logger.info(f"Rejected blocked image host: {hostname}")
        return False

    trusted = list(trusted_hosts) if trusted_hosts is not None else _trusted_hosts()
    if not _is_trusted_host(hostname, trusted):
        logger.info(f"Rejected untrusted image host: {hostname}")
        return False

    return True


# === CORS ===


def cors_headers(origin: Optional[str]) -> dict[str, str]:
    """CORS headers for a request origin. Unknown origins get the production origin."""
    allowed = origin if origin in Config.ALLOWED_ORIGINS else Config.PRODUCTION_ORIGIN
    return {
        "Access-Control-Allow-Origin": allowed,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Vary": "Origin",
    }


# === Authorization ===


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _matches_secret(candidate: str, secret: Optional[str]) -> bool:
    if not secret:
        return False
    return hmac.compare_digest(candidate.encode(), secret.encode())


def is_service_role_token(token: str) -> bool:
    """True if the token is the service-role key or a service-role JWT."""
    if _matches_secret(token, Config.service_role_key()):
        return True

    secret = Config.jwt_secret()
    if not secret:
        return False
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Service token expired")
        return False
    except jwt.InvalidTokenError:
        return False
    return payload.get("role") == SERVICE_ROLE


def verify_internal_request(authorization: Optional[str]) -> None:
    """
    Allow only internal callers: the platform service role, or the admin key.

    Raises:
        AuthError: with a generic message; callers must not learn which check failed
    """
    token = _bearer_token(authorization)
    if token is not None:
        if is_service_role_token(token):
            return
        if _matches_secret(token, Config.admin_key()):
            return

    logger.warning("Rejected internal request: invalid credentials")
    raise AuthError("Unauthorized")


def authenticate_user(authorization: Optional[str]) -> str:
    """
    Resolve the user id from a Supabase session token.

    Returns:
        The token subject (user id)

    Raises:
        AuthError: if the token is missing, invalid or expired
    """
    token = _bearer_token(authorization)
    secret = Config.jwt_secret()
    if token is None or not secret:
        raise AuthError("Unauthorized")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            audience=USER_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired session token")
        raise AuthError("Unauthorized") from None
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected invalid session token: {e}")
        raise AuthError("Unauthorized") from None

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Unauthorized")
    return str(user_id)
