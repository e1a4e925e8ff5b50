from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .analyzers import (
    detect_cms,
    detect_hosting,
    detect_plugins,
    detect_security,
    detect_theme,
    enrich_plugin_versions,
)
from .config import Config
from .fetcher import FetchError, FetchResult, fetch_text
from .models import (
    ALERT_SEVERITIES,
    AnalysisResult,
    CmsDetection,
    ComponentRef,
    ComponentSet,
    HostingHints,
    PerformanceHints,
    PluginInfo,
    SecurityHeaders,
    SecurityHints,
    ThemeInfo,
    VulnCorrelation,
)
from .storage import cache_get, cache_set, query_recent_vulns, query_vulns_for_components
from .utils import json_dumps, log_event

T = TypeVar("T")
ProgressCallback = Callable[[str, int], None]

# (stage, percent) milestones reported through ``on_progress``
STAGE_CONNECT = ("connect", 10)
STAGE_CMS = ("cms_detect", 25)
STAGE_PLUGINS = ("plugin_detect", 35)
STAGE_THEME = ("theme_detect", 45)
STAGE_VERSIONS = ("version_enrich", 55)
STAGE_HOSTING = ("hosting", 70)
STAGE_SECURITY = ("security", 78)
STAGE_VULNS = ("vuln_correlate", 85)
STAGE_COMPLETE = ("complete", 100)


class HomeFetchError(Exception):
    """The home page could not be fetched, so there is nothing to analyze."""

    def __init__(self, origin: str, message: str) -> None:
        super().__init__(f"home page fetch failed for {origin}: {message}")
        self.origin = origin


@dataclass(frozen=True)
class AnalyzeOptions:
    timeout_seconds: float
    user_agent: str
    cache_ttl_seconds: int
    max_plugins_in_report: int
    enable_version_hints: bool
    max_version_hint_probes: int
    include_vuln_data: bool
    vuln_recent_days: int
    version_hint_concurrency: int = 3
    home_retries: int = 1


def analyze_options_from_config(config: Config) -> AnalyzeOptions:
    return AnalyzeOptions(
        timeout_seconds=config.http.timeout_seconds,
        user_agent=config.http.user_agent,
        cache_ttl_seconds=config.analysis.cache_ttl_seconds,
        max_plugins_in_report=config.analysis.max_plugins_in_report,
        enable_version_hints=config.analysis.enable_version_hints,
        max_version_hint_probes=config.analysis.max_version_hint_probes,
        include_vuln_data=config.analysis.include_vuln_data,
        vuln_recent_days=config.watch.recent_days,
        version_hint_concurrency=config.analysis.version_hint_concurrency,
        home_retries=config.http.retries,
    )


def analyze_site(
    conn: sqlite3.Connection,
    origin: str,
    normalized_url: str,
    options: AnalyzeOptions,
    on_progress: ProgressCallback | None = None,
    logger: logging.Logger | None = None,
) -> AnalysisResult:
    """Fingerprint one site and return a complete :class:`AnalysisResult`.

    A cached snapshot for ``origin`` is returned as-is when caching is on.
    Only the home page fetch can abort the run (:class:`HomeFetchError`);
    every other detector degrades its own field on failure. The result is
    cached only after it has been fully built.
    """
    logger = logger or logging.getLogger("wpwatch.pipeline")
    started = time.monotonic()

    if options.cache_ttl_seconds > 0:
        cached = _load_cached(conn, origin, logger)
        if cached is not None:
            log_event(logger, logging.INFO, "analysis_cache_hit", origin=origin)
            return cached

    def ping(stage: tuple[str, int]) -> None:
        if on_progress is None:
            return
        try:
            on_progress(stage[0], stage[1])
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.DEBUG, "progress_callback_failed", stage=stage[0], error=str(exc))

    ping(STAGE_CONNECT)
    home = _fetch_home(origin, normalized_url, options)
    final_url = home.final_url
    probe_kwargs = {"timeout_seconds": options.timeout_seconds, "user_agent": options.user_agent}

    ping(STAGE_CMS)
    cms = _degrade(
        logger,
        "cms",
        lambda: detect_cms(home.body, final_url, **probe_kwargs),
        CmsDetection(matched=False, signals=[]),
    )

    plugins: list[PluginInfo] = []
    theme: ThemeInfo | None = None
    if cms.matched:
        ping(STAGE_PLUGINS)
        plugins = _degrade(logger, "plugins", lambda: detect_plugins(home.body), [])
        ping(STAGE_THEME)
        theme = _degrade(
            logger, "theme", lambda: detect_theme(home.body, final_url, **probe_kwargs), None
        )
        if options.enable_version_hints and plugins:
            ping(STAGE_VERSIONS)
            detected = plugins
            plugins = _degrade(
                logger,
                "version_hints",
                lambda: enrich_plugin_versions(
                    final_url,
                    detected,
                    max_probes=options.max_version_hint_probes,
                    concurrency=options.version_hint_concurrency,
                    logger=logger,
                    **probe_kwargs,
                ),
                detected,
            )

    ping(STAGE_HOSTING)
    hosting = _degrade(
        logger,
        "hosting",
        lambda: detect_hosting(final_url, home.status, home.headers),
        HostingHints(final_url=final_url, status=home.status),
    )
    performance = PerformanceHints(
        ttfb_ms=home.ttfb_ms, html_bytes=len(home.body.encode("utf-8"))
    )
    ping(STAGE_SECURITY)
    security = _degrade(
        logger,
        "security",
        lambda: detect_security(final_url, home.headers, **probe_kwargs),
        SecurityHints(headers=SecurityHeaders()),
    )

    plugins = plugins[: options.max_plugins_in_report]
    components = ComponentSet(
        theme=ComponentRef(slug=theme.slug, version_hint=theme.version) if theme else None,
        plugins=[
            ComponentRef(slug=p.slug, version_hint=p.version_hints[0] if p.version_hints else None)
            for p in plugins
        ],
    )

    vulns = None
    if options.include_vuln_data:
        ping(STAGE_VULNS)
        vulns = _degrade(
            logger, "vulns", lambda: _correlate(conn, components, cms.matched, options), None
        )

    result = AnalysisResult(
        origin=origin,
        final_url=final_url,
        cms=cms,
        plugins=plugins,
        hosting=hosting,
        security=security,
        performance=performance,
        components=components,
        theme=theme,
        vulns=vulns,
    )
    ping(STAGE_COMPLETE)

    if options.cache_ttl_seconds > 0:
        cache_set(conn, origin, json_dumps(result.to_dict()), options.cache_ttl_seconds)
    log_event(
        logger,
        logging.INFO,
        "analysis_completed",
        origin=origin,
        cms=cms.matched,
        plugins=len(plugins),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return result


def _fetch_home(origin: str, url: str, options: AnalyzeOptions) -> FetchResult:
    try:
        return fetch_text(
            url,
            timeout_seconds=options.timeout_seconds,
            user_agent=options.user_agent,
            retries=options.home_retries,
        )
    except FetchError as exc:
        raise HomeFetchError(origin, str(exc)) from exc


def _correlate(
    conn: sqlite3.Connection,
    components: ComponentSet,
    cms_matched: bool,
    options: AnalyzeOptions,
) -> VulnCorrelation:
    recent_global = query_recent_vulns(conn, options.vuln_recent_days, ALERT_SEVERITIES)
    recent_for_components = (
        query_vulns_for_components(conn, components, options.vuln_recent_days, ALERT_SEVERITIES)
        if cms_matched
        else []
    )
    return VulnCorrelation(
        recent_global=recent_global, recent_for_components=recent_for_components
    )


def _load_cached(
    conn: sqlite3.Connection, origin: str, logger: logging.Logger
) -> AnalysisResult | None:
    payload = cache_get(conn, origin)
    if payload is None:
        return None
    try:
        return AnalysisResult.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError) as exc:
        log_event(logger, logging.WARNING, "analysis_cache_unreadable", origin=origin, error=str(exc))
        return None


def _degrade(logger: logging.Logger, detector: str, run: Callable[[], T], fallback: T) -> T:
    try:
        return run()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.DEBUG, "detector_failed", detector=detector, error=str(exc))
        return fallback
