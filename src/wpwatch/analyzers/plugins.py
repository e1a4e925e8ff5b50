from __future__ import annotations

import re

from ..models import PluginInfo

_PLUGIN_RE = re.compile(r"/wp-content/plugins/([a-z0-9_-]+)/", re.IGNORECASE)
_ASSET_RE = re.compile(r"/wp-content/plugins/([a-z0-9_-]+)/[^\s\"'<>()]*", re.IGNORECASE)
_VER_RE = re.compile(r"[?&](?:amp;)?ver=([0-9][0-9a-zA-Z._-]*)")


def detect_plugins(html: str) -> list[PluginInfo]:
    """Collect plugin slugs referenced from asset paths, sorted by slug.

    ``?ver=`` values on those asset URLs are kept as version hints. They often
    carry the core version instead of the plugin's, so treat them loosely.
    """
    text = (html or "").replace("\\/", "/")
    found: dict[str, list[str]] = {}
    for match in _PLUGIN_RE.finditer(text):
        found.setdefault(match.group(1).lower(), [])
    for match in _ASSET_RE.finditer(text):
        hints = found[match.group(1).lower()]
        for version in _VER_RE.findall(match.group(0)):
            if version not in hints:
                hints.append(version)
    return [PluginInfo(slug=slug, version_hints=found[slug]) for slug in sorted(found)]
