from __future__ import annotations

import logging
import sqlite3
from typing import Any

from .models import ALERT_SEVERITIES, VulnerabilitySummary, WatchRecord
from .notifier import Notifier
from .storage import (
    get_user_settings,
    insert_event,
    list_all_watches,
    query_vulns_for_components,
    update_watch_last_notified_at,
)
from .utils import format_utc, log_event, now_ms

EPOCH_UTC = "1970-01-01 00:00:00"
MAX_ALERTS_PER_MESSAGE = 20


def watermark_for(watch: WatchRecord) -> str:
    if watch.last_notified_at > 0:
        return format_utc(watch.last_notified_at)
    return EPOCH_UTC


def new_vulns_for_watch(
    conn: sqlite3.Connection,
    watch: WatchRecord,
    recent_days: int,
    now: int | None = None,
) -> list[VulnerabilitySummary]:
    return query_vulns_for_components(
        conn,
        watch.components,
        recent_days,
        ALERT_SEVERITIES,
        after=watermark_for(watch),
        limit=MAX_ALERTS_PER_MESSAGE,
        now=now,
    )


def format_watch_alert(origin: str, vulns: list[VulnerabilitySummary]) -> str:
    lines = ["Security alert for a watched site", f"Site: {origin}", ""]
    for vuln in vulns:
        cve = f" ({vuln.cve})" if vuln.cve else ""
        lines.append(f"- [{vuln.severity_rating}] {vuln.title}{cve}")
        lines.append(f"  {vuln.effective_ts or ''}")
        if vuln.reference_url:
            lines.append(f"  {vuln.reference_url}")
    return "\n".join(lines)


def run_watch_notification_pass(
    conn: sqlite3.Connection,
    notifier: Notifier,
    *,
    recent_days: int,
    now: int | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Notify every watch about vulns newer than its watermark.

    The watermark only advances after the notifier confirms delivery, so a
    failed send is retried on the next pass. One watch failing never stops
    the others.
    """
    logger = logger or logging.getLogger("wpwatch.watch")
    counts = {"watches": 0, "notified": 0, "failed": 0, "disabled": 0, "no_matches": 0}
    for watch in list_all_watches(conn):
        counts["watches"] += 1
        try:
            outcome = _process_watch(conn, notifier, watch, recent_days, now, logger)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "watch_failed",
                watch_id=watch.id,
                origin=watch.origin,
                error=str(exc),
            )
            outcome = "failed"
        counts[outcome] += 1
    log_event(logger, logging.INFO, "watch_pass_completed", **counts)
    return counts


def _process_watch(
    conn: sqlite3.Connection,
    notifier: Notifier,
    watch: WatchRecord,
    recent_days: int,
    now: int | None,
    logger: logging.Logger,
) -> str:
    settings = get_user_settings(conn, watch.user_id)
    if not settings.notify_vulns:
        return "disabled"
    vulns = new_vulns_for_watch(conn, watch, recent_days, now)
    if not vulns:
        return "no_matches"

    started = now_ms()
    delivered = notifier.send_message(watch.chat_id, format_watch_alert(watch.origin, vulns))
    sent_at = now if now is not None else now_ms()
    insert_event(
        conn,
        user_id=watch.user_id,
        chat_id=watch.chat_id,
        command="watch_notify",
        origin=watch.origin,
        duration_ms=now_ms() - started,
        result="ok" if delivered else "error",
        error_code=None if delivered else "send_failed",
    )
    if not delivered:
        log_event(logger, logging.WARNING, "watch_notify_failed", watch_id=watch.id, origin=watch.origin)
        return "failed"
    update_watch_last_notified_at(conn, watch.id, sent_at)
    log_event(
        logger,
        logging.INFO,
        "watch_notified",
        watch_id=watch.id,
        origin=watch.origin,
        vulns=len(vulns),
    )
    return "notified"
