from __future__ import annotations

import re
from collections import Counter
from urllib.parse import urljoin

from ..fetcher import FetchError, fetch_text
from ..models import ThemeInfo

_THEME_RE = re.compile(r"/wp-content/themes/([a-z0-9_-]+)/", re.IGNORECASE)
_HEADER_LIMIT = 5000
_HEADER_FIELDS = {
    "name": "Theme Name",
    "version": "Version",
    "author": "Author",
    "author_uri": "Author URI",
    "description": "Description",
}


def pick_theme_slug(html: str) -> str | None:
    text = (html or "").replace("\\/", "/")
    counts = Counter(match.lower() for match in _THEME_RE.findall(text))
    if not counts:
        return None
    # first referenced slug wins ties
    return counts.most_common(1)[0][0]


def parse_style_header(css: str) -> dict[str, str | None]:
    head = css[:_HEADER_LIMIT]
    fields: dict[str, str | None] = {}
    for key, label in _HEADER_FIELDS.items():
        match = re.search(rf"^[\s*]*{re.escape(label)}\s*:\s*(.+)$", head, re.IGNORECASE | re.MULTILINE)
        fields[key] = match.group(1).strip() if match else None
    return fields


def detect_theme(
    html: str,
    final_url: str,
    *,
    timeout_seconds: float,
    user_agent: str,
) -> ThemeInfo | None:
    slug = pick_theme_slug(html)
    if not slug:
        return None
    style_css_url = urljoin(final_url, f"/wp-content/themes/{slug}/style.css")
    try:
        result = fetch_text(
            style_css_url, timeout_seconds=timeout_seconds, user_agent=user_agent, retries=0
        )
    except FetchError:
        return ThemeInfo(slug=slug, style_css_url=style_css_url)
    if not result.ok or not result.body:
        return ThemeInfo(slug=slug, style_css_url=style_css_url)
    return ThemeInfo(slug=slug, style_css_url=style_css_url, **parse_style_header(result.body))
