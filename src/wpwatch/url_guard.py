from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

import tldextract

from .utils import log_event

ALLOWED_SCHEMES = ("http", "https")
ALLOWED_PORTS = (80, 443)
_DEFAULT_PORTS = {"http": 80, "https": 443}
_CGNAT = ipaddress.ip_network("100.64.0.0/10")

# Bundled public suffix snapshot only; never fetch the list at runtime.
_EXTRACT = tldextract.TLDExtract(
    cache_dir=None, suffix_list_urls=(), include_psl_private_domains=False
)

Resolver = Callable[[str], Iterable[str]]


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    origin: str | None = None
    normalized_url: str | None = None
    reason: str | None = None


def guard_url(raw: str, resolve: Resolver | None = None) -> GuardResult:
    """Validate a user-supplied URL and make sure it targets public address space.

    Checks run in order: scheme, port, public registrable hostname, then DNS.
    Every resolved address must be publicly routable. Any parse or lookup
    problem is a rejection.

    The DNS check is advisory only: the fetch that follows resolves the name
    again on its own, so a rebinding resolver can still answer differently
    between the two lookups.
    """
    logger = logging.getLogger("wpwatch.url_guard")
    result = _guard(raw, resolve or _resolve_host)
    if not result.ok:
        log_event(logger, logging.INFO, "guard_rejected", reason=result.reason)
    return result


def _guard(raw: str, resolve: Resolver) -> GuardResult:
    text = (raw or "").strip()
    if not text:
        return _reject("Invalid URL")
    try:
        parts = urlsplit(text)
    except ValueError:
        return _reject("Invalid URL")
    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES or not text.lower().startswith(f"{scheme}://"):
        return _reject("URL must start with http:// or https://")
    try:
        port = parts.port
    except ValueError:
        return _reject("Invalid URL")
    if port is not None and port not in ALLOWED_PORTS:
        return _reject("Only ports 80/443 allowed")
    if parts.username is not None or parts.password is not None:
        return _reject("Credentials in URL are not allowed")

    host = (parts.hostname or "").rstrip(".")
    if not host:
        return _reject("Invalid URL")
    if _is_ip_literal(host):
        return _reject("Hostname must be a valid public domain")
    try:
        ascii_host = host.encode("idna").decode("ascii").lower()
    except UnicodeError:
        return _reject("Hostname must be a valid public domain")
    extracted = _EXTRACT(ascii_host)
    if not extracted.suffix or not extracted.domain:
        return _reject("Hostname must be a valid public domain")

    try:
        addresses = list(resolve(ascii_host))
    except (OSError, UnicodeError, ValueError):
        return _reject("DNS resolution failed")
    if not addresses:
        return _reject("DNS resolution failed")
    for address in addresses:
        if is_blocked_address(address):
            return _reject("Blocked IP range")

    netloc = ascii_host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{ascii_host}:{port}"
    origin = f"{scheme}://{netloc}"
    normalized = urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))
    return GuardResult(ok=True, origin=origin, normalized_url=normalized)


def is_blocked_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return is_blocked_address(str(ip.ipv4_mapped))
    if isinstance(ip, ipaddress.IPv4Address) and ip in _CGNAT:
        return True
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_unspecified
        or ip.is_reserved
        or not ip.is_global
    )


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _resolve_host(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def _reject(reason: str) -> GuardResult:
    return GuardResult(ok=False, reason=reason)
