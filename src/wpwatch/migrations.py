from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("wpwatch.migrations")
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        latest = None
        for version, migration in _get_migrations():
            latest = version
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        if latest is not None:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(int(latest.split("_", 1)[0])),),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_core_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            chat_id INTEGER NOT NULL,
            command TEXT NOT NULL,
            origin TEXT NULL,
            duration_ms INTEGER NULL,
            result TEXT NOT NULL,
            error_code TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_events_user ON events(user_id, ts)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cache (
            origin TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            expires_at INTEGER NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache(expires_at)")


def _migration_vuln_tables(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vulns (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT NULL,
            cve TEXT NULL,
            cvss_score REAL NULL,
            cvss_rating TEXT NOT NULL DEFAULT 'Unknown',
            published TEXT NULL,
            updated TEXT NULL,
            informational INTEGER NOT NULL DEFAULT 0,
            reference_url TEXT NULL,
            remediation TEXT NULL,
            last_seen_ts INTEGER NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_vulns_published ON vulns(published)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_vulns_updated ON vulns(updated)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_vulns_rating ON vulns(cvss_rating)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vuln_software (
            vuln_id TEXT NOT NULL REFERENCES vulns(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            slug TEXT NOT NULL,
            name TEXT NULL,
            patched INTEGER NOT NULL DEFAULT 0,
            patched_versions_json TEXT NULL,
            affected_versions_json TEXT NULL,
            PRIMARY KEY (vuln_id, type, slug)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_vuln_software_slug ON vuln_software(type, slug)"
    )


def _migration_watches(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS watches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            chat_id INTEGER NOT NULL,
            origin TEXT NOT NULL,
            components_json TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            last_notified_at INTEGER NOT NULL DEFAULT 0,
            UNIQUE(user_id, origin)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_watches_user ON watches(user_id)")


def _migration_locks(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS locks (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at INTEGER NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_locks_expires ON locks(expires_at)")


def _migration_user_settings(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_settings (
            user_id INTEGER PRIMARY KEY,
            notify_vulns INTEGER NOT NULL DEFAULT 1,
            notify_updates INTEGER NOT NULL DEFAULT 1,
            updated_at INTEGER NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_core_tables", _migration_core_tables),
        ("002_vuln_tables", _migration_vuln_tables),
        ("003_watches", _migration_watches),
        ("004_locks", _migration_locks),
        ("005_user_settings", _migration_user_settings),
    ]
