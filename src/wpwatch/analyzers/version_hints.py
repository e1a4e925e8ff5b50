from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urljoin

from ..fetcher import FetchError, fetch_text
from ..models import PluginInfo
from ..utils import log_event

_STABLE_TAG_RE = re.compile(r"^\s*Stable tag\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_VERSION_RE = re.compile(r"^\s*Version\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
MAX_PROBE_CONCURRENCY = 10


def parse_readme_version(text: str) -> str | None:
    head = text[:5000]
    match = _STABLE_TAG_RE.search(head)
    if match:
        stable = match.group(1).strip()
        if stable and stable.lower() != "trunk":
            return stable
    match = _VERSION_RE.search(head)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def enrich_plugin_versions(
    base_url: str,
    plugins: list[PluginInfo],
    *,
    timeout_seconds: float,
    user_agent: str,
    max_probes: int,
    concurrency: int = 3,
    logger: logging.Logger | None = None,
) -> list[PluginInfo]:
    """Probe each plugin's readme.txt for a version, bounded in count and fan-out.

    Only the first ``max_probes`` plugins are probed. Failed probes leave the
    plugin's hints unchanged.
    """
    logger = logger or logging.getLogger("wpwatch.analyzers.version_hints")
    max_probes = max(0, max_probes)
    if max_probes == 0 or not plugins:
        return plugins
    workers = max(1, min(MAX_PROBE_CONCURRENCY, concurrency))
    to_probe = plugins[:max_probes]

    def probe(plugin: PluginInfo) -> str | None:
        url = urljoin(base_url, f"/wp-content/plugins/{plugin.slug}/readme.txt")
        try:
            result = fetch_text(url, timeout_seconds=timeout_seconds, user_agent=user_agent, retries=0)
        except FetchError as exc:
            log_event(logger, logging.DEBUG, "version_probe_failed", slug=plugin.slug, error=str(exc))
            return None
        if not result.ok or not result.body:
            return None
        return parse_readme_version(result.body)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        probed = dict(zip((p.slug for p in to_probe), executor.map(probe, to_probe)))

    enriched: list[PluginInfo] = []
    for plugin in plugins:
        hints = list(plugin.version_hints)
        version = probed.get(plugin.slug)
        if version and version not in hints:
            hints.append(version)
        enriched.append(PluginInfo(slug=plugin.slug, version_hints=hints))
    return enriched
