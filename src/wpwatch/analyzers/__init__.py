from .cms import detect_cms
from .hosting import detect_hosting
from .plugins import detect_plugins
from .security import detect_security
from .theme import detect_theme
from .version_hints import enrich_plugin_versions

__all__ = [
    "detect_cms",
    "detect_hosting",
    "detect_plugins",
    "detect_security",
    "detect_theme",
    "enrich_plugin_versions",
]
