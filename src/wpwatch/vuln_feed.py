from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator
from urllib.error import HTTPError
from urllib.request import Request, urlopen

import ijson

from .config import Config
from .models import VulnSoftwareLink, VulnerabilitySummary, normalize_rating
from .storage import (
    count_vuln_links,
    count_vulns,
    meta_get,
    meta_set,
    named_lock,
    refresh_lock,
    store_vulnerability,
)
from .utils import log_event, normalize_timestamp, now_ms, truncate

ENDPOINTS = {
    "production": "https://www.wordfence.com/api/intelligence/v3/vulnerabilities/production",
    "scanner": "https://www.wordfence.com/api/intelligence/v3/vulnerabilities/scanner",
}

META_PREFIX = "vuln_feed."
META_LAST_ATTEMPT = META_PREFIX + "last_attempt_ms"
META_LAST_SYNC = META_PREFIX + "last_sync_ms"
META_LAST_STATUS = META_PREFIX + "last_status"
META_LAST_ERROR = META_PREFIX + "last_error"
META_LAST_PROCESSED = META_PREFIX + "last_processed"
META_BACKOFF_UNTIL = META_PREFIX + "backoff_until_ms"

MIN_BACKOFF_SECONDS = 60
LOCK_REFRESH_EVERY = 1000
ERROR_MESSAGE_LIMIT = 400


class FeedHttpError(Exception):
    def __init__(self, status: int, body: str = "") -> None:
        message = f"vulnerability feed HTTP {status}"
        if body:
            message = f"{message}: {truncate(body, 200)}"
        super().__init__(message)
        self.status = status


class FeedLockLost(Exception):
    pass


@dataclass(frozen=True)
class FeedSyncOptions:
    api_key: str
    feed_type: str
    timeout_seconds: float
    user_agent: str
    lock_owner: str
    lock_ttl_seconds: int
    backoff_seconds: int
    lock_name: str = "vuln_feed_sync"


def feed_options_from_config(config: Config, lock_owner: str) -> FeedSyncOptions:
    return FeedSyncOptions(
        api_key=config.secrets.feed_api_key,
        feed_type=config.feed.feed_type,
        timeout_seconds=config.feed.timeout_seconds,
        user_agent=config.http.user_agent,
        lock_owner=lock_owner,
        lock_ttl_seconds=config.feed.lock_ttl_seconds,
        backoff_seconds=config.feed.backoff_minutes * 60,
    )


def run_feed_sync_job(
    conn: sqlite3.Connection,
    options: FeedSyncOptions,
    logger: logging.Logger | None = None,
    now: int | None = None,
) -> dict[str, Any]:
    """Run one guarded sync of the vulnerability feed.

    Returns ``{"status": ...}`` with one of ``synced``, ``skipped_no_key``,
    ``skipped_backoff``, ``skipped_locked`` or ``failed``. The named lock in
    the database is the only mutual exclusion, so this is safe to call from
    several processes at once. A 429 from upstream persists a backoff window
    that later runs honour instead of retrying.
    """
    logger = logger or logging.getLogger("wpwatch.vuln_feed")
    if not options.api_key:
        log_event(logger, logging.INFO, "vuln_feed_skipped", reason="no_key")
        return {"status": "skipped_no_key"}

    current = now if now is not None else now_ms()
    meta_set(conn, META_LAST_ATTEMPT, str(current))

    backoff_until = _meta_int(conn, META_BACKOFF_UNTIL)
    if backoff_until > current:
        meta_set(conn, META_LAST_STATUS, "skipped_backoff")
        log_event(logger, logging.INFO, "vuln_feed_skipped", reason="backoff", until=backoff_until)
        return {"status": "skipped_backoff", "backoff_until": backoff_until}

    with named_lock(conn, options.lock_name, options.lock_owner, options.lock_ttl_seconds) as acquired:
        if not acquired:
            log_event(logger, logging.INFO, "vuln_feed_skipped", reason="locked", lock=options.lock_name)
            return {"status": "skipped_locked"}
        try:
            processed = sync_feed(conn, options, logger)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, FeedHttpError) and exc.status == 429:
                until = (now if now is not None else now_ms()) + max(
                    MIN_BACKOFF_SECONDS, options.backoff_seconds
                ) * 1000
                meta_set(conn, META_BACKOFF_UNTIL, str(until))
                log_event(logger, logging.WARNING, "vuln_feed_rate_limited", backoff_until=until)
            meta_set(conn, META_LAST_STATUS, "failed")
            meta_set(conn, META_LAST_ERROR, truncate(message, ERROR_MESSAGE_LIMIT))
            log_event(logger, logging.ERROR, "vuln_feed_failed", error=message)
            return {"status": "failed", "error": message}

    meta_set(conn, META_LAST_SYNC, str(now_ms()))
    meta_set(conn, META_LAST_STATUS, "synced")
    meta_set(conn, META_LAST_ERROR, "")
    meta_set(conn, META_LAST_PROCESSED, str(processed))
    meta_set(conn, META_BACKOFF_UNTIL, "0")
    log_event(logger, logging.INFO, "vuln_feed_synced", processed=processed)
    return {"status": "synced", "processed": processed}


def sync_feed(
    conn: sqlite3.Connection,
    options: FeedSyncOptions,
    logger: logging.Logger,
) -> int:
    processed = 0
    skipped = 0
    with _open_feed(options) as stream:
        for vuln_id, record in _iter_records(stream):
            try:
                stored = process_record(conn, vuln_id, record)
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "vuln_record_failed", id=vuln_id, error=str(exc))
                stored = False
            if not stored:
                skipped += 1
                continue
            processed += 1
            if processed % LOCK_REFRESH_EVERY == 0:
                if not refresh_lock(conn, options.lock_name, options.lock_owner, options.lock_ttl_seconds):
                    raise FeedLockLost(f"lock {options.lock_name} lost after {processed} records")
    if skipped:
        log_event(logger, logging.WARNING, "vuln_records_skipped", count=skipped)
    return processed


def process_record(conn: sqlite3.Connection, vuln_id: str, record: Any) -> bool:
    """Upsert one feed record and replace its software links; False if unusable."""
    if not vuln_id or not isinstance(record, dict):
        return False
    cvss = record.get("cvss") if isinstance(record.get("cvss"), dict) else {}
    software_entries = [
        entry for entry in record.get("software") or [] if isinstance(entry, dict)
    ]
    references = record.get("references")
    reference_url = references[0] if isinstance(references, list) and references else None
    remediation = software_entries[0].get("remediation") if software_entries else None

    score = cvss.get("score")
    vuln = VulnerabilitySummary(
        id=str(vuln_id),
        title=str(record.get("title") or vuln_id),
        severity_rating=normalize_rating(cvss.get("rating")),
        cve=record.get("cve") or None,
        severity_score=float(score) if score is not None else None,
        published=normalize_timestamp(record.get("published")),
        updated=normalize_timestamp(record.get("updated")),
        reference_url=str(reference_url) if reference_url else None,
        remediation=remediation or record.get("remediation") or None,
    )
    links = [
        VulnSoftwareLink(
            type=str(entry["type"]),
            slug=str(entry["slug"]),
            name=entry.get("name"),
            patched=bool(entry.get("patched")),
            patched_versions=list(entry.get("patched_versions") or []),
            affected_versions=entry.get("affected_versions"),
        )
        for entry in software_entries
        if entry.get("type") and entry.get("slug")
    ]
    store_vulnerability(
        conn,
        vuln,
        _dedupe_links(links),
        description=record.get("description"),
        informational=bool(record.get("informational")),
    )
    return True


def get_feed_status(conn: sqlite3.Connection) -> dict[str, Any]:
    return {
        "last_attempt_ms": _meta_int(conn, META_LAST_ATTEMPT) or None,
        "last_sync_ms": _meta_int(conn, META_LAST_SYNC) or None,
        "last_status": meta_get(conn, META_LAST_STATUS),
        "last_error": meta_get(conn, META_LAST_ERROR) or None,
        "last_processed": _meta_int(conn, META_LAST_PROCESSED),
        "backoff_until_ms": _meta_int(conn, META_BACKOFF_UNTIL) or None,
        "vulns": count_vulns(conn),
        "links": count_vuln_links(conn),
    }


def _open_feed(options: FeedSyncOptions) -> BinaryIO:
    url = ENDPOINTS[options.feed_type]
    request = Request(
        url,
        headers={
            "Authorization": f"Bearer {options.api_key}",
            "User-Agent": options.user_agent,
            "Accept": "application/json",
        },
    )
    try:
        return urlopen(request, timeout=options.timeout_seconds)
    except HTTPError as exc:
        try:
            body = exc.read().decode("utf-8", errors="replace")
        except OSError:
            body = ""
        raise FeedHttpError(exc.code, body) from exc


def _iter_records(stream: BinaryIO) -> Iterator[tuple[str, Any]]:
    # top-level object, one (id, record) pair at a time
    return ijson.kvitems(stream, "", use_float=True)


def _dedupe_links(links: list[VulnSoftwareLink]) -> list[VulnSoftwareLink]:
    seen: dict[tuple[str, str], VulnSoftwareLink] = {}
    for link in links:
        seen.setdefault((link.type, link.slug), link)
    return list(seen.values())


def _meta_int(conn: sqlite3.Connection, key: str) -> int:
    value = meta_get(conn, key)
    try:
        return int(value) if value else 0
    except ValueError:
        return 0
