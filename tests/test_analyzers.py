from http.client import BadStatusLine, IncompleteRead
from urllib.error import URLError

from wpwatch.analyzers import (
    detect_cms,
    detect_hosting,
    detect_plugins,
    detect_security,
    detect_theme,
    enrich_plugin_versions,
)
from wpwatch.analyzers.theme import parse_style_header, pick_theme_slug
from wpwatch.analyzers.version_hints import parse_readme_version
from wpwatch.models import PluginInfo

SITE = "https://example.com/"

HOME = """<!doctype html>
<html><head>
<meta name="generator" content="WordPress 6.4.2" />
<link rel="https://api.w.org/" href="https://example.com/wp-json/" />
<link rel="stylesheet" href="https://example.com/wp-content/themes/astra/style.min.css?ver=4.6.1" />
<link rel="stylesheet" href="https://example.com/wp-content/plugins/woocommerce/assets/css/woo.css?ver=8.5.1" />
<script src="https://example.com/wp-content/plugins/contact-form-7/includes/js/index.js?ver=5.8.5"></script>
<script src="https://example.com/wp-includes/js/wp-emoji-release.min.js?ver=6.4.2"></script>
<script>var cfg = {"url":"https:\\/\\/example.com\\/wp-content\\/plugins\\/elementor\\/assets\\/frontend.js?ver=3.18.0"};</script>
</head><body>
<img src="/wp-content/themes/astra/assets/logo.png">
<img src="/wp-content/themes/child-theme/img.png">
<a href="/wp-content/plugins/woocommerce/x.js?a=1&amp;ver=8.5.1">x</a>
</body></html>
"""


def test_detect_cms_collects_all_signals(fake_web):
    fake_web.add("https://example.com/wp-json/", '{"namespaces": ["wp/v2"], "routes": {}}')
    cms = detect_cms(HOME, SITE, timeout_seconds=5, user_agent="test")
    assert cms.matched is True
    assert cms.signals == [
        "html:wp-content",
        "html:wp-includes",
        "html:wp-emoji",
        "meta:generator",
        "link:api-w-org",
        "endpoint:wp-json",
    ]
    assert cms.core_version == "6.4.2"


def test_detect_cms_negative_when_nothing_fires(fake_web):
    fake_web.fail("https://example.com/wp-json/", URLError("refused"))
    cms = detect_cms("<html><body>static site</body></html>", SITE, timeout_seconds=5, user_agent="t")
    assert cms.matched is False
    assert cms.signals == []


def test_rest_probe_requires_routes_payload(fake_web):
    fake_web.add("https://example.com/wp-json/", "<html>home page</html>")
    cms = detect_cms("<html></html>", SITE, timeout_seconds=5, user_agent="t")
    assert cms.matched is False


def test_detect_plugins_dedupes_sorts_and_harvests_versions():
    plugins = detect_plugins(HOME)
    assert [plugin.slug for plugin in plugins] == ["contact-form-7", "elementor", "woocommerce"]
    hints = {plugin.slug: plugin.version_hints for plugin in plugins}
    assert hints["woocommerce"] == ["8.5.1"]
    assert hints["elementor"] == ["3.18.0"]
    assert hints["contact-form-7"] == ["5.8.5"]


def test_pick_theme_slug_prefers_most_referenced():
    assert pick_theme_slug(HOME) == "astra"
    assert pick_theme_slug("<html></html>") is None


def test_parse_style_header():
    css = """/*
Theme Name: Astra
Theme URI: https://wpastra.com/
Author: Brainstorm Force
Author URI: https://wpastra.com/about/
Description: Fast theme.
Version: 4.6.1
*/
body { color: red; }
"""
    fields = parse_style_header(css)
    assert fields == {
        "name": "Astra",
        "version": "4.6.1",
        "author": "Brainstorm Force",
        "author_uri": "https://wpastra.com/about/",
        "description": "Fast theme.",
    }


def test_detect_theme_degrades_to_slug_when_manifest_missing(fake_web):
    theme = detect_theme(HOME, SITE, timeout_seconds=5, user_agent="t")
    assert theme.slug == "astra"
    assert theme.name is None
    assert theme.style_css_url == "https://example.com/wp-content/themes/astra/style.css"


def test_detect_theme_reads_manifest(fake_web):
    fake_web.add(
        "https://example.com/wp-content/themes/astra/style.css",
        "/*\nTheme Name: Astra\nVersion: 4.6.1\n*/",
    )
    theme = detect_theme(HOME, SITE, timeout_seconds=5, user_agent="t")
    assert theme.name == "Astra"
    assert theme.version == "4.6.1"


def test_parse_readme_version():
    assert parse_readme_version("=== X ===\nStable tag: 2.1.0\nVersion: 1.0") == "2.1.0"
    assert parse_readme_version("Stable tag: trunk\nVersion: 1.9") == "1.9"
    assert parse_readme_version("nothing here") is None


def test_enrich_plugin_versions_is_bounded(fake_web):
    fake_web.add("https://example.com/wp-content/plugins/a/readme.txt", "Stable tag: 1.0.0")
    fake_web.add("https://example.com/wp-content/plugins/b/readme.txt", "Stable tag: 2.0.0")
    fake_web.fail("https://example.com/wp-content/plugins/c/readme.txt", URLError("reset"))
    plugins = [PluginInfo("a", ["1.0.0"]), PluginInfo("b"), PluginInfo("c"), PluginInfo("d")]
    enriched = enrich_plugin_versions(
        SITE, plugins, timeout_seconds=5, user_agent="t", max_probes=3, concurrency=50
    )
    assert [(p.slug, p.version_hints) for p in enriched] == [
        ("a", ["1.0.0"]),
        ("b", ["2.0.0"]),
        ("c", []),
        ("d", []),
    ]
    probed = sorted(url for _, url in fake_web.requests)
    assert len(probed) == 3
    assert not any("/plugins/d/" in url for url in probed)


def test_enrich_plugin_versions_disabled_when_no_probes(fake_web):
    plugins = [PluginInfo("a")]
    assert enrich_plugin_versions(SITE, plugins, timeout_seconds=5, user_agent="t", max_probes=0) is plugins
    assert fake_web.requests == []


def test_detect_hosting_hints():
    hosting = detect_hosting(
        SITE,
        200,
        {
            "server": "cloudflare",
            "cf-ray": "abc",
            "x-powered-by": "PHP/8.2",
            "x-litespeed-cache": "hit",
            "content-encoding": "br",
            "cache-control": "max-age=600",
        },
    )
    assert hosting.cdn == "Cloudflare"
    assert hosting.cache == "LiteSpeed Cache (hint)"
    assert hosting.powered_by == "PHP/8.2"
    assert hosting.content_encoding == "br"


def test_detect_hosting_fastly_and_xcache():
    hosting = detect_hosting(SITE, 200, {"x-served-by": "cache-1", "x-cache": "HIT", "x-timer": "S1"})
    assert hosting.cdn == "Fastly (hint)"
    assert hosting.cache == "HIT"


def test_detect_security_headers_and_probes(fake_web):
    fake_web.add("https://example.com/wp-login.php", status=200)
    fake_web.add("https://example.com/xmlrpc.php", status=404)
    security = detect_security(
        SITE,
        {"strict-transport-security": "max-age=1", "feature-policy": "camera 'none'"},
        timeout_seconds=5,
        user_agent="t",
    )
    assert security.headers.hsts is True
    assert security.headers.permissions_policy is True
    assert security.headers.csp is False
    assert security.login_accessible is True
    assert security.xmlrpc_accessible is False
    assert all(method == "HEAD" for method, _ in fake_web.requests)


def test_security_probe_failure_is_unknown(fake_web):
    fake_web.fail("https://example.com/wp-login.php", URLError("reset"))
    fake_web.add("https://example.com/xmlrpc.php", status=405)
    security = detect_security(SITE, {}, timeout_seconds=5, user_agent="t")
    assert security.login_accessible is None
    assert security.xmlrpc_accessible is True


def test_malformed_rest_reply_keeps_html_signals(fake_web):
    fake_web.fail("https://example.com/wp-json/", BadStatusLine("garbage"))
    cms = detect_cms(HOME, SITE, timeout_seconds=5, user_agent="t")
    assert cms.matched is True
    assert "endpoint:wp-json" not in cms.signals
    assert "html:wp-content" in cms.signals


def test_one_broken_readme_does_not_drop_other_versions(fake_web):
    fake_web.add("https://example.com/wp-content/plugins/akismet/readme.txt", "Stable tag: 5.3")
    fake_web.fail("https://example.com/wp-content/plugins/broken/readme.txt", IncompleteRead(b"Stab"))
    enriched = enrich_plugin_versions(
        SITE, [PluginInfo("akismet"), PluginInfo("broken")], timeout_seconds=5, user_agent="t", max_probes=5
    )
    assert [(p.slug, p.version_hints) for p in enriched] == [("akismet", ["5.3"]), ("broken", [])]


def test_malformed_probe_reply_is_unknown_but_headers_survive(fake_web):
    fake_web.fail("https://example.com/wp-login.php", BadStatusLine("garbage"))
    fake_web.add("https://example.com/xmlrpc.php", status=405)
    security = detect_security(
        SITE, {"content-security-policy": "default-src 'self'"}, timeout_seconds=5, user_agent="t"
    )
    assert security.headers.csp is True
    assert security.login_accessible is None
    assert security.xmlrpc_accessible is True
