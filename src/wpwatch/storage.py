from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Sequence

from .models import (
    ComponentSet,
    UserSettings,
    VulnSoftwareLink,
    VulnerabilitySummary,
    WatchRecord,
    normalize_rating,
)
from .utils import json_dumps, now_ms, utc_days_ago


def meta_get(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def meta_set(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )
    conn.commit()


def cache_get(conn: sqlite3.Connection, origin: str, now: int | None = None) -> str | None:
    """Return the cached payload for ``origin``; expired rows are deleted on read."""
    current = now if now is not None else now_ms()
    cursor = conn.execute(
        "DELETE FROM cache WHERE origin = ? AND expires_at <= ?",
        (origin, current),
    )
    if cursor.rowcount:
        conn.commit()
        return None
    row = conn.execute(
        "SELECT payload_json FROM cache WHERE origin = ? AND expires_at > ?",
        (origin, current),
    ).fetchone()
    conn.commit()
    return row[0] if row else None


def cache_set(
    conn: sqlite3.Connection,
    origin: str,
    payload_json: str,
    ttl_seconds: int,
    now: int | None = None,
) -> None:
    current = now if now is not None else now_ms()
    expires_at = current + max(0, ttl_seconds) * 1000
    conn.execute(
        """
        INSERT INTO cache (origin, payload_json, expires_at) VALUES (?, ?, ?)
        ON CONFLICT(origin) DO UPDATE SET
            payload_json = excluded.payload_json,
            expires_at = excluded.expires_at
        """,
        (origin, payload_json, expires_at),
    )
    conn.commit()


def prune_expired_cache(conn: sqlite3.Connection, now: int | None = None) -> int:
    current = now if now is not None else now_ms()
    cursor = conn.execute("DELETE FROM cache WHERE expires_at <= ?", (current,))
    conn.commit()
    return cursor.rowcount


def prune_cache_overflow(conn: sqlite3.Connection, max_entries: int) -> int:
    if max_entries <= 0:
        return 0
    cursor = conn.execute(
        """
        DELETE FROM cache WHERE origin IN (
            SELECT origin FROM cache
            ORDER BY expires_at DESC
            LIMIT -1 OFFSET ?
        )
        """,
        (max_entries,),
    )
    conn.commit()
    return cursor.rowcount


def try_acquire_lock(
    conn: sqlite3.Connection,
    name: str,
    owner: str,
    ttl_seconds: int,
    now: int | None = None,
) -> bool:
    """Insert the lock row, or take it over only if the current holder expired.

    A single conditional upsert, so two contenders can never both succeed.
    """
    current = now if now is not None else now_ms()
    expires_at = current + max(1, ttl_seconds) * 1000
    cursor = conn.execute(
        """
        INSERT INTO locks (name, owner, expires_at) VALUES (?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            owner = excluded.owner,
            expires_at = excluded.expires_at
        WHERE locks.expires_at <= ?
        """,
        (name, owner, expires_at, current),
    )
    conn.commit()
    return cursor.rowcount == 1


def refresh_lock(
    conn: sqlite3.Connection,
    name: str,
    owner: str,
    ttl_seconds: int,
    now: int | None = None,
) -> bool:
    current = now if now is not None else now_ms()
    cursor = conn.execute(
        "UPDATE locks SET expires_at = ? WHERE name = ? AND owner = ? AND expires_at > ?",
        (current + max(1, ttl_seconds) * 1000, name, owner, current),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lock(conn: sqlite3.Connection, name: str, owner: str) -> bool:
    cursor = conn.execute("DELETE FROM locks WHERE name = ? AND owner = ?", (name, owner))
    conn.commit()
    return cursor.rowcount == 1


@contextmanager
def named_lock(
    conn: sqlite3.Connection, name: str, owner: str, ttl_seconds: int
) -> Iterator[bool]:
    acquired = try_acquire_lock(conn, name, owner, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            release_lock(conn, name, owner)


def prune_expired_locks(conn: sqlite3.Connection, now: int | None = None) -> int:
    current = now if now is not None else now_ms()
    cursor = conn.execute("DELETE FROM locks WHERE expires_at <= ?", (current,))
    conn.commit()
    return cursor.rowcount


def upsert_vulnerability(
    conn: sqlite3.Connection,
    vuln: VulnerabilitySummary,
    *,
    description: str | None = None,
    informational: bool = False,
    now: int | None = None,
    commit: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO vulns
            (id, title, description, cve, cvss_score, cvss_rating, published, updated,
             informational, reference_url, remediation, last_seen_ts)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            title = excluded.title,
            description = excluded.description,
            cve = excluded.cve,
            cvss_score = excluded.cvss_score,
            cvss_rating = excluded.cvss_rating,
            published = excluded.published,
            updated = excluded.updated,
            informational = excluded.informational,
            reference_url = excluded.reference_url,
            remediation = excluded.remediation,
            last_seen_ts = excluded.last_seen_ts
        """,
        (
            vuln.id,
            vuln.title,
            description,
            vuln.cve,
            vuln.severity_score,
            normalize_rating(vuln.severity_rating),
            vuln.published,
            vuln.updated,
            1 if informational else 0,
            vuln.reference_url,
            vuln.remediation,
            now if now is not None else now_ms(),
        ),
    )
    if commit:
        conn.commit()


def replace_vuln_software(
    conn: sqlite3.Connection,
    vuln_id: str,
    software: Iterable[VulnSoftwareLink],
    *,
    commit: bool = True,
) -> None:
    conn.execute("DELETE FROM vuln_software WHERE vuln_id = ?", (vuln_id,))
    conn.executemany(
        """
        INSERT INTO vuln_software
            (vuln_id, type, slug, name, patched, patched_versions_json, affected_versions_json)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(vuln_id, type, slug) DO UPDATE SET
            name = excluded.name,
            patched = excluded.patched,
            patched_versions_json = excluded.patched_versions_json,
            affected_versions_json = excluded.affected_versions_json
        """,
        [
            (
                vuln_id,
                link.type,
                link.slug,
                link.name,
                1 if link.patched else 0,
                json_dumps(link.patched_versions) if link.patched_versions else None,
                json_dumps(link.affected_versions) if link.affected_versions else None,
            )
            for link in software
        ],
    )
    if commit:
        conn.commit()


def store_vulnerability(
    conn: sqlite3.Connection,
    vuln: VulnerabilitySummary,
    software: Sequence[VulnSoftwareLink],
    *,
    description: str | None = None,
    informational: bool = False,
    now: int | None = None,
) -> None:
    """Upsert one record and swap its software links in a single transaction."""
    try:
        upsert_vulnerability(
            conn,
            vuln,
            description=description,
            informational=informational,
            now=now,
            commit=False,
        )
        replace_vuln_software(conn, vuln.id, software, commit=False)
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def get_vulnerability(conn: sqlite3.Connection, vuln_id: str) -> VulnerabilitySummary | None:
    row = conn.execute(
        f"SELECT {_VULN_COLUMNS} FROM vulns v WHERE v.id = ?", (vuln_id,)
    ).fetchone()
    return _row_to_vuln(row) if row else None


def list_vuln_software(conn: sqlite3.Connection, vuln_id: str) -> list[VulnSoftwareLink]:
    rows = conn.execute(
        """
        SELECT type, slug, name, patched, patched_versions_json, affected_versions_json
        FROM vuln_software
        WHERE vuln_id = ?
        ORDER BY type, slug
        """,
        (vuln_id,),
    ).fetchall()
    return [
        VulnSoftwareLink(
            type=row[0],
            slug=row[1],
            name=row[2],
            patched=bool(row[3]),
            patched_versions=json.loads(row[4]) if row[4] else [],
            affected_versions=json.loads(row[5]) if row[5] else None,
        )
        for row in rows
    ]


def count_vulns(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(1) FROM vulns").fetchone()[0])


def count_vuln_links(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(1) FROM vuln_software").fetchone()[0])


_VULN_COLUMNS = (
    "v.id, v.title, v.cve, v.cvss_score, v.cvss_rating, v.published, v.updated, "
    "v.reference_url, v.remediation"
)


def query_recent_vulns(
    conn: sqlite3.Connection,
    days: int,
    severities: Sequence[str],
    limit: int = 50,
    now: int | None = None,
) -> list[VulnerabilitySummary]:
    if not severities:
        return []
    since = utc_days_ago(days, now)
    placeholders = ",".join("?" for _ in severities)
    rows = conn.execute(
        f"""
        SELECT {_VULN_COLUMNS}
        FROM vulns v
        WHERE COALESCE(v.updated, v.published) >= ?
          AND v.cvss_rating IN ({placeholders})
          AND v.informational = 0
        ORDER BY COALESCE(v.updated, v.published) DESC, v.id
        LIMIT ?
        """,
        (since, *severities, limit),
    ).fetchall()
    return [_row_to_vuln(row) for row in rows]


def query_vulns_for_components(
    conn: sqlite3.Connection,
    components: ComponentSet,
    days: int,
    severities: Sequence[str],
    after: str | None = None,
    limit: int = 50,
    now: int | None = None,
) -> list[VulnerabilitySummary]:
    """Recent vulns linked to any ``(type, slug)`` of ``components``.

    ``after`` restricts to effective timestamps strictly later than it.
    """
    keys = components.match_keys()
    if not keys or not severities:
        return []
    since = utc_days_ago(days, now)
    key_clause = " OR ".join("(s.type = ? AND s.slug = ?)" for _ in keys)
    params: list[Any] = [since]
    after_clause = ""
    if after is not None:
        after_clause = "AND COALESCE(v.updated, v.published) > ?"
        params.append(after)
    params.extend(severities)
    for key_type, slug in keys:
        params.extend([key_type, slug])
    params.append(limit)
    severity_placeholders = ",".join("?" for _ in severities)
    rows = conn.execute(
        f"""
        SELECT DISTINCT {_VULN_COLUMNS}
        FROM vulns v
        JOIN vuln_software s ON s.vuln_id = v.id
        WHERE COALESCE(v.updated, v.published) >= ?
          {after_clause}
          AND v.cvss_rating IN ({severity_placeholders})
          AND v.informational = 0
          AND ({key_clause})
        ORDER BY COALESCE(v.updated, v.published) DESC, v.id
        LIMIT ?
        """,
        tuple(params),
    ).fetchall()
    return [_row_to_vuln(row) for row in rows]


def upsert_watch(
    conn: sqlite3.Connection,
    user_id: int,
    chat_id: int,
    origin: str,
    components: ComponentSet,
    now: int | None = None,
) -> None:
    current = now if now is not None else now_ms()
    conn.execute(
        """
        INSERT INTO watches
            (user_id, chat_id, origin, components_json, created_at, updated_at, last_notified_at)
        VALUES (?, ?, ?, ?, ?, ?, 0)
        ON CONFLICT(user_id, origin) DO UPDATE SET
            chat_id = excluded.chat_id,
            components_json = excluded.components_json,
            updated_at = excluded.updated_at
        """,
        (user_id, chat_id, origin, json_dumps(components.to_dict()), current, current),
    )
    conn.commit()


def delete_watch(conn: sqlite3.Connection, user_id: int, origin: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM watches WHERE user_id = ? AND origin = ?", (user_id, origin)
    )
    conn.commit()
    return cursor.rowcount == 1


def get_watch(conn: sqlite3.Connection, user_id: int, origin: str) -> WatchRecord | None:
    row = conn.execute(
        f"SELECT {_WATCH_COLUMNS} FROM watches WHERE user_id = ? AND origin = ?",
        (user_id, origin),
    ).fetchone()
    return _row_to_watch(row) if row else None


def list_watches(conn: sqlite3.Connection, user_id: int) -> list[WatchRecord]:
    rows = conn.execute(
        f"SELECT {_WATCH_COLUMNS} FROM watches WHERE user_id = ? ORDER BY updated_at DESC, id",
        (user_id,),
    ).fetchall()
    return [_row_to_watch(row) for row in rows]


def list_all_watches(conn: sqlite3.Connection) -> list[WatchRecord]:
    rows = conn.execute(f"SELECT {_WATCH_COLUMNS} FROM watches ORDER BY id").fetchall()
    return [_row_to_watch(row) for row in rows]


def update_watch_last_notified_at(conn: sqlite3.Connection, watch_id: int, ts: int) -> None:
    conn.execute(
        "UPDATE watches SET last_notified_at = ? WHERE id = ? AND last_notified_at < ?",
        (ts, watch_id, ts),
    )
    conn.commit()


_WATCH_COLUMNS = (
    "id, user_id, chat_id, origin, components_json, created_at, updated_at, last_notified_at"
)


def get_user_settings(
    conn: sqlite3.Connection, user_id: int, now: int | None = None
) -> UserSettings:
    row = conn.execute(
        """
        SELECT user_id, notify_vulns, notify_updates, updated_at
        FROM user_settings
        WHERE user_id = ?
        """,
        (user_id,),
    ).fetchone()
    if row:
        return UserSettings(
            user_id=row[0],
            notify_vulns=bool(row[1]),
            notify_updates=bool(row[2]),
            updated_at=row[3],
        )
    current = now if now is not None else now_ms()
    conn.execute(
        """
        INSERT OR IGNORE INTO user_settings (user_id, notify_vulns, notify_updates, updated_at)
        VALUES (?, 1, 1, ?)
        """,
        (user_id, current),
    )
    conn.commit()
    return UserSettings(user_id=user_id, notify_vulns=True, notify_updates=True, updated_at=current)


_USER_SETTING_KEYS = {"notify_vulns", "notify_updates"}


def toggle_user_setting(conn: sqlite3.Connection, user_id: int, key: str) -> UserSettings:
    if key not in _USER_SETTING_KEYS:
        raise ValueError(f"unknown user setting {key}")
    get_user_settings(conn, user_id)
    conn.execute(
        f"UPDATE user_settings SET {key} = 1 - {key}, updated_at = ? WHERE user_id = ?",
        (now_ms(), user_id),
    )
    conn.commit()
    return get_user_settings(conn, user_id)


def insert_event(
    conn: sqlite3.Connection,
    *,
    user_id: int,
    chat_id: int,
    command: str,
    result: str,
    origin: str | None = None,
    duration_ms: int | None = None,
    error_code: str | None = None,
    ts: int | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO events (ts, user_id, chat_id, command, origin, duration_ms, result, error_code)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            ts if ts is not None else now_ms(),
            user_id,
            chat_id,
            command,
            origin,
            duration_ms,
            result,
            error_code,
        ),
    )
    conn.commit()


def query_stats(conn: sqlite3.Connection, days: int, now: int | None = None) -> dict[str, int]:
    current = now if now is not None else now_ms()
    since = current - days * 24 * 3600 * 1000
    row = conn.execute(
        """
        SELECT COUNT(*),
               COUNT(DISTINCT user_id),
               SUM(CASE WHEN result = 'error' THEN 1 ELSE 0 END),
               AVG(duration_ms)
        FROM events
        WHERE ts >= ?
        """,
        (since,),
    ).fetchone()
    return {
        "total": int(row[0] or 0),
        "users": int(row[1] or 0),
        "errors": int(row[2] or 0),
        "avg_ms": int(round(row[3] or 0)),
    }


def _row_to_vuln(row: tuple) -> VulnerabilitySummary:
    return VulnerabilitySummary(
        id=row[0],
        title=row[1],
        cve=row[2],
        severity_score=row[3],
        severity_rating=row[4] or "Unknown",
        published=row[5],
        updated=row[6],
        reference_url=row[7],
        remediation=row[8],
    )


def _row_to_watch(row: tuple) -> WatchRecord:
    return WatchRecord(
        id=row[0],
        user_id=row[1],
        chat_id=row[2],
        origin=row[3],
        components=ComponentSet.from_dict(json.loads(row[4])),
        created_at=row[5],
        updated_at=row[6],
        last_notified_at=row[7],
    )
