from __future__ import annotations

from ..models import HostingHints


def detect_hosting(final_url: str, status: int, headers: dict[str, str]) -> HostingHints:
    server = headers.get("server")
    via = headers.get("via") or ""

    cdn = None
    if headers.get("cf-ray") or "cloudflare" in (server or "").lower():
        cdn = "Cloudflare"
    elif headers.get("x-amz-cf-id") or "CloudFront" in via:
        cdn = "CloudFront"
    elif headers.get("x-served-by") and headers.get("x-cache") and headers.get("x-timer"):
        cdn = "Fastly (hint)"
    elif headers.get("akamai-grn") or headers.get("x-akamai-transformed"):
        cdn = "Akamai (hint)"

    cache = headers.get("x-cache") or headers.get("x-cache-hits")
    if not cache:
        if headers.get("x-litespeed-cache"):
            cache = "LiteSpeed Cache (hint)"
        elif headers.get("x-varnish"):
            cache = "Varnish (hint)"

    return HostingHints(
        final_url=final_url,
        status=status,
        server=server,
        powered_by=headers.get("x-powered-by"),
        cdn=cdn,
        cache=cache,
        content_encoding=headers.get("content-encoding"),
        cache_control=headers.get("cache-control"),
    )
