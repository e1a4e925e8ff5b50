from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

SEVERITY_RATINGS = ("Critical", "High", "Medium", "Low", "None", "Unknown")
ALERT_SEVERITIES = ("Critical", "High")


def normalize_rating(value: Any) -> str:
    text = str(value or "").strip().lower()
    for rating in SEVERITY_RATINGS:
        if rating.lower() == text:
            return rating
    return "Unknown"


@dataclass(frozen=True)
class ComponentRef:
    slug: str
    version_hint: str | None = None


@dataclass(frozen=True)
class ComponentSet:
    theme: ComponentRef | None = None
    plugins: list[ComponentRef] = field(default_factory=list)

    def match_keys(self) -> list[tuple[str, str]]:
        keys: list[tuple[str, str]] = []
        if self.theme and self.theme.slug:
            keys.append(("theme", self.theme.slug))
        for plugin in self.plugins:
            if plugin.slug:
                keys.append(("plugin", plugin.slug))
        return keys

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ComponentSet":
        data = data or {}
        theme = data.get("theme")
        return cls(
            theme=_component_ref(theme) if theme else None,
            plugins=[_component_ref(item) for item in data.get("plugins") or [] if item],
        )


def _component_ref(data: dict[str, Any]) -> ComponentRef:
    # older snapshots used camelCase
    version = data.get("version_hint", data.get("versionHint"))
    return ComponentRef(slug=str(data["slug"]), version_hint=version)


@dataclass(frozen=True)
class CmsDetection:
    matched: bool
    signals: list[str]
    core_version: str | None = None


@dataclass(frozen=True)
class ThemeInfo:
    slug: str
    name: str | None = None
    version: str | None = None
    author: str | None = None
    author_uri: str | None = None
    description: str | None = None
    style_css_url: str | None = None


@dataclass(frozen=True)
class PluginInfo:
    slug: str
    version_hints: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class HostingHints:
    final_url: str
    status: int
    server: str | None = None
    powered_by: str | None = None
    cdn: str | None = None
    cache: str | None = None
    content_encoding: str | None = None
    cache_control: str | None = None


@dataclass(frozen=True)
class SecurityHeaders:
    hsts: bool = False
    csp: bool = False
    x_frame: bool = False
    xcto: bool = False
    referrer_policy: bool = False
    permissions_policy: bool = False


@dataclass(frozen=True)
class SecurityHints:
    headers: SecurityHeaders
    login_accessible: bool | None = None
    xmlrpc_accessible: bool | None = None


@dataclass(frozen=True)
class PerformanceHints:
    ttfb_ms: int | None = None
    html_bytes: int = 0


@dataclass(frozen=True)
class VulnerabilitySummary:
    id: str
    title: str
    severity_rating: str = "Unknown"
    cve: str | None = None
    severity_score: float | None = None
    published: str | None = None
    updated: str | None = None
    reference_url: str | None = None
    remediation: str | None = None

    @property
    def effective_ts(self) -> str | None:
        return self.updated or self.published


@dataclass(frozen=True)
class VulnSoftwareLink:
    type: str
    slug: str
    name: str | None = None
    patched: bool = False
    patched_versions: list[str] = field(default_factory=list)
    affected_versions: Any = None


@dataclass(frozen=True)
class VulnCorrelation:
    recent_global: list[VulnerabilitySummary]
    recent_for_components: list[VulnerabilitySummary]


@dataclass(frozen=True)
class AnalysisResult:
    origin: str
    final_url: str
    cms: CmsDetection
    plugins: list[PluginInfo]
    hosting: HostingHints
    security: SecurityHints
    performance: PerformanceHints
    components: ComponentSet
    theme: ThemeInfo | None = None
    vulns: VulnCorrelation | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisResult":
        security = data.get("security") or {}
        vulns = data.get("vulns")
        return cls(
            origin=data["origin"],
            final_url=data["final_url"],
            cms=CmsDetection(**data["cms"]),
            plugins=[PluginInfo(**item) for item in data.get("plugins") or []],
            hosting=HostingHints(**data["hosting"]),
            security=SecurityHints(
                headers=SecurityHeaders(**(security.get("headers") or {})),
                login_accessible=security.get("login_accessible"),
                xmlrpc_accessible=security.get("xmlrpc_accessible"),
            ),
            performance=PerformanceHints(**(data.get("performance") or {})),
            components=ComponentSet.from_dict(data.get("components")),
            theme=ThemeInfo(**data["theme"]) if data.get("theme") else None,
            vulns=(
                VulnCorrelation(
                    recent_global=[VulnerabilitySummary(**v) for v in vulns["recent_global"]],
                    recent_for_components=[
                        VulnerabilitySummary(**v) for v in vulns["recent_for_components"]
                    ],
                )
                if vulns
                else None
            ),
        )


@dataclass(frozen=True)
class WatchRecord:
    id: int
    user_id: int
    chat_id: int
    origin: str
    components: ComponentSet
    created_at: int
    updated_at: int
    last_notified_at: int


@dataclass(frozen=True)
class UserSettings:
    user_id: int
    notify_vulns: bool
    notify_updates: bool
    updated_at: int
