from __future__ import annotations

from urllib.parse import urljoin

from ..fetcher import FetchError, fetch_head
from ..models import SecurityHeaders, SecurityHints


def header_flags(headers: dict[str, str]) -> SecurityHeaders:
    return SecurityHeaders(
        hsts=bool(headers.get("strict-transport-security")),
        csp=bool(headers.get("content-security-policy")),
        x_frame=bool(headers.get("x-frame-options")),
        xcto=bool(headers.get("x-content-type-options")),
        referrer_policy=bool(headers.get("referrer-policy")),
        permissions_policy=bool(headers.get("permissions-policy") or headers.get("feature-policy")),
    )


def detect_security(
    final_url: str,
    headers: dict[str, str],
    *,
    timeout_seconds: float,
    user_agent: str,
) -> SecurityHints:
    return SecurityHints(
        headers=header_flags(headers),
        login_accessible=_reachable(urljoin(final_url, "/wp-login.php"), timeout_seconds, user_agent),
        xmlrpc_accessible=_reachable(urljoin(final_url, "/xmlrpc.php"), timeout_seconds, user_agent),
    )


def _reachable(url: str, timeout_seconds: float, user_agent: str) -> bool | None:
    try:
        result = fetch_head(url, timeout_seconds=timeout_seconds, user_agent=user_agent)
    except FetchError:
        return None
    return result.status != 404
