from wpwatch.models import ComponentRef, ComponentSet, VulnSoftwareLink, VulnerabilitySummary
from wpwatch.notifier import LogNotifier, Notifier
from wpwatch.storage import (
    get_watch,
    store_vulnerability,
    toggle_user_setting,
    upsert_watch,
)
from wpwatch.utils import format_utc
from wpwatch.watch import format_watch_alert, new_vulns_for_watch, run_watch_notification_pass

NOW = 1_717_200_000_000
DAY_MS = 24 * 3600 * 1000


def _store(conn, vuln_id, rating, slug, *, kind="plugin", age_days=1.0, informational=False):
    store_vulnerability(
        conn,
        VulnerabilitySummary(
            id=vuln_id,
            title=f"Issue {vuln_id}",
            severity_rating=rating,
            cve="CVE-2024-1234",
            published=format_utc(NOW - int(age_days * DAY_MS)),
            reference_url="https://example.org/a",
        ),
        [VulnSoftwareLink(type=kind, slug=slug)],
        informational=informational,
    )


def _watch(conn, user_id=1, origin="https://example.com"):
    components = ComponentSet(theme=ComponentRef("astra"), plugins=[ComponentRef("woocommerce")])
    upsert_watch(conn, user_id, 100 + user_id, origin, components, now=NOW - 10 * DAY_MS)
    return get_watch(conn, user_id, origin)


class FailingNotifier(Notifier):
    def __init__(self):
        self.calls = 0

    def send_message(self, chat_id, text):
        self.calls += 1
        return False


class ExplodingOnceNotifier(LogNotifier):
    def __init__(self):
        super().__init__()
        self.exploded = False

    def send_message(self, chat_id, text):
        if not self.exploded:
            self.exploded = True
            raise RuntimeError("socket closed")
        return super().send_message(chat_id, text)


def test_notifies_once_then_nothing_new(conn):
    _watch(conn)
    _store(conn, "V1", "Critical", "woocommerce")
    notifier = LogNotifier()

    first = run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert first["notified"] == 1
    assert len(notifier.sent) == 1
    chat_id, text = notifier.sent[0]
    assert chat_id == 101
    assert "Issue V1" in text and "https://example.com" in text
    assert get_watch(conn, 1, "https://example.com").last_notified_at == NOW

    second = run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert second["notified"] == 0
    assert second["no_matches"] == 1
    assert len(notifier.sent) == 1


def test_only_critical_high_recent_and_non_informational_match(conn):
    watch = _watch(conn)
    _store(conn, "CRIT", "Critical", "woocommerce")
    _store(conn, "HIGH", "High", "astra", kind="theme")
    _store(conn, "MED", "Medium", "woocommerce")
    _store(conn, "OTHER", "Critical", "elementor")
    _store(conn, "WRONGTYPE", "Critical", "astra", kind="plugin")
    _store(conn, "OLD", "Critical", "woocommerce", age_days=45)
    _store(conn, "INFO", "Critical", "woocommerce", informational=True)
    ids = {vuln.id for vuln in new_vulns_for_watch(conn, watch, 30, now=NOW)}
    assert ids == {"CRIT", "HIGH"}


def test_watermark_excludes_already_notified(conn):
    watch = _watch(conn)
    _store(conn, "V1", "High", "woocommerce", age_days=2)
    conn.execute("UPDATE watches SET last_notified_at = ? WHERE id = ?", (NOW - DAY_MS, watch.id))
    conn.commit()
    _store(conn, "V2", "High", "woocommerce", age_days=0.5)
    watch = get_watch(conn, 1, "https://example.com")
    assert [vuln.id for vuln in new_vulns_for_watch(conn, watch, 30, now=NOW)] == ["V2"]


def test_failed_delivery_keeps_watermark(conn):
    _watch(conn)
    _store(conn, "V1", "Critical", "woocommerce")
    notifier = FailingNotifier()
    counts = run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert counts["failed"] == 1
    assert get_watch(conn, 1, "https://example.com").last_notified_at == 0
    event = conn.execute("SELECT result, error_code FROM events WHERE command = 'watch_notify'").fetchone()
    assert event == ("error", "send_failed")

    run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert notifier.calls == 2


def test_one_failing_watch_does_not_block_others(conn):
    _watch(conn, user_id=1, origin="https://a.example.com")
    _watch(conn, user_id=2, origin="https://b.example.com")
    _store(conn, "V1", "Critical", "woocommerce")
    notifier = ExplodingOnceNotifier()
    counts = run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert counts == {"watches": 2, "notified": 1, "failed": 1, "disabled": 0, "no_matches": 0}
    assert len(notifier.sent) == 1


def test_disabled_user_is_skipped(conn):
    _watch(conn)
    _store(conn, "V1", "Critical", "woocommerce")
    toggle_user_setting(conn, 1, "notify_vulns")
    notifier = LogNotifier()
    counts = run_watch_notification_pass(conn, notifier, recent_days=30, now=NOW)
    assert counts["disabled"] == 1
    assert notifier.sent == []


def test_format_watch_alert_lists_each_vuln():
    text = format_watch_alert(
        "https://example.com",
        [
            VulnerabilitySummary(id="V1", title="XSS", severity_rating="High", cve="CVE-1", updated="2024-06-01 00:00:00"),
            VulnerabilitySummary(id="V2", title="RCE", severity_rating="Critical"),
        ],
    )
    assert "[High] XSS (CVE-1)" in text
    assert "[Critical] RCE" in text
    assert "2024-06-01 00:00:00" in text
