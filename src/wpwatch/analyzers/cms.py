from __future__ import annotations

import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..fetcher import FetchError, fetch_text
from ..models import CmsDetection

_EMOJI_RE = re.compile(r"wp-emoji-release\.min\.js", re.IGNORECASE)
_GENERATOR_RE = re.compile(r"wordpress\s*([0-9][0-9a-zA-Z._-]*)?", re.IGNORECASE)
_REST_LINK_REL = "https://api.w.org/"


def detect_cms(
    html: str,
    final_url: str,
    *,
    timeout_seconds: float,
    user_agent: str,
) -> CmsDetection:
    signals: list[str] = []
    html = html or ""
    if "/wp-content/" in html:
        signals.append("html:wp-content")
    if "/wp-includes/" in html:
        signals.append("html:wp-includes")
    if _EMOJI_RE.search(html):
        signals.append("html:wp-emoji")

    soup = BeautifulSoup(html, "html.parser")
    core_version = None
    generator = soup.find("meta", attrs={"name": re.compile("^generator$", re.IGNORECASE)})
    if generator is not None:
        match = _GENERATOR_RE.search(str(generator.get("content") or ""))
        if match:
            signals.append("meta:generator")
            core_version = match.group(1)
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if _REST_LINK_REL in rel:
            signals.append("link:api-w-org")
            break

    if _probe_rest_index(final_url, timeout_seconds, user_agent):
        signals.append("endpoint:wp-json")

    return CmsDetection(matched=bool(signals), signals=signals, core_version=core_version)


def _probe_rest_index(final_url: str, timeout_seconds: float, user_agent: str) -> bool:
    url = urljoin(final_url, "/wp-json/")
    try:
        result = fetch_text(url, timeout_seconds=timeout_seconds, user_agent=user_agent, retries=0)
    except FetchError:
        return False
    return result.ok and ("routes" in result.body or "namespaces" in result.body)
