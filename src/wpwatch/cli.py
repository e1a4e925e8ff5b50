from __future__ import annotations

import argparse
import logging
from urllib.parse import urlsplit

import uvicorn

from .admin import create_app
from .config import Config, ConfigError, load_config
from .db import connect_db
from .notifier import build_notifier
from .service import AnalysisRunner
from .storage import (
    delete_watch,
    get_user_settings,
    list_watches,
    query_stats,
    toggle_user_setting,
    upsert_watch,
)
from .utils import configure_logging, json_dumps, log_event
from .vuln_feed import feed_options_from_config, get_feed_status, run_feed_sync_job
from .watch import run_watch_notification_pass
from .worker import default_lock_owner, run_loop, run_once


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _print(value: object) -> None:
    print(json_dumps(value))


def _cmd_analyze(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    runner = AnalysisRunner(config, logger=logger)
    try:
        outcome = runner.analyze(args.url, user_id=args.user_id)
    finally:
        runner.shutdown()
    if not outcome.ok:
        _print({"ok": False, "error_code": outcome.error_code, "reason": outcome.reason})
        return 2
    _print({"ok": True, "result": outcome.result.to_dict()})
    return 0


def _cmd_sync_vulns(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        result = run_feed_sync_job(
            conn, feed_options_from_config(config, args.lock_owner or default_lock_owner()), logger
        )
    finally:
        conn.close()
    _print(result)
    return 1 if result["status"] == "failed" else 0


def _cmd_sync_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        _print(get_feed_status(conn))
    finally:
        conn.close()
    return 0


def _cmd_watch_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    runner = AnalysisRunner(config, logger=logger)
    try:
        outcome = runner.analyze(args.url, user_id=args.user_id, chat_id=args.chat_id)
    finally:
        runner.shutdown()
    if not outcome.ok:
        _print({"ok": False, "error_code": outcome.error_code, "reason": outcome.reason})
        return 2
    conn = connect_db(config.paths.state_db)
    try:
        upsert_watch(conn, args.user_id, args.chat_id, outcome.origin, outcome.result.components)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "watch_added", user_id=args.user_id, origin=outcome.origin)
    _print({"ok": True, "origin": outcome.origin, "components": outcome.result.components.to_dict()})
    return 0


def _cmd_watch_remove(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    origin = _origin_of(args.origin)
    conn = connect_db(config.paths.state_db)
    try:
        removed = delete_watch(conn, args.user_id, origin)
    finally:
        conn.close()
    _print({"removed": removed, "origin": origin})
    return 0 if removed else 2


def _cmd_watch_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        watches = list_watches(conn, args.user_id)
    finally:
        conn.close()
    _print([
        {
            "origin": watch.origin,
            "theme": watch.components.theme.slug if watch.components.theme else None,
            "plugins": len(watch.components.plugins),
            "last_notified_at": watch.last_notified_at,
        }
        for watch in watches
    ])
    return 0


def _cmd_notify_watches(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        counts = run_watch_notification_pass(
            conn,
            build_notifier(config, dry_run=args.dry_run),
            recent_days=config.watch.recent_days,
            logger=logger,
        )
    finally:
        conn.close()
    _print(counts)
    return 0


def _cmd_settings(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        if args.toggle:
            settings = toggle_user_setting(conn, args.user_id, args.toggle)
        else:
            settings = get_user_settings(conn, args.user_id)
    finally:
        conn.close()
    _print(settings)
    return 0


def _cmd_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    conn = connect_db(config.paths.state_db)
    try:
        _print({"days": args.days, **query_stats(conn, args.days)})
    finally:
        conn.close()
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_level="info")
    return 0


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    if args.once:
        _print(run_once(config, args.lock_owner, logger=logger))
        return 0
    try:
        return run_loop(config, args.lock_owner, logger=logger)
    except KeyboardInterrupt:
        return 0


def _origin_of(value: str) -> str:
    parts = urlsplit(value.strip())
    if parts.scheme and parts.netloc:
        return f"{parts.scheme.lower()}://{parts.netloc.lower()}"
    return value.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wpwatch", description="WpWatch CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to WPW_CONFIG or built-in defaults)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_parser = subparsers.add_parser("analyze", help="Fingerprint a site")
    analyze_parser.add_argument("url")
    analyze_parser.add_argument("--user-id", type=int, default=0)
    analyze_parser.set_defaults(func=_cmd_analyze)

    sync_parser = subparsers.add_parser("sync-vulns", help="Sync the vulnerability feed once")
    sync_parser.add_argument("--lock-owner", default=None)
    sync_parser.set_defaults(func=_cmd_sync_vulns)

    status_parser = subparsers.add_parser("sync-status", help="Show vulnerability feed status")
    status_parser.set_defaults(func=_cmd_sync_status)

    watch_parser = subparsers.add_parser("watch", help="Manage watched sites")
    watch_sub = watch_parser.add_subparsers(dest="watch_command", required=True)
    add_parser = watch_sub.add_parser("add", help="Analyze a site and watch its components")
    add_parser.add_argument("url")
    add_parser.add_argument("--user-id", type=int, required=True)
    add_parser.add_argument("--chat-id", type=int, required=True)
    add_parser.set_defaults(func=_cmd_watch_add)
    remove_parser = watch_sub.add_parser("remove", help="Stop watching a site")
    remove_parser.add_argument("origin")
    remove_parser.add_argument("--user-id", type=int, required=True)
    remove_parser.set_defaults(func=_cmd_watch_remove)
    list_parser = watch_sub.add_parser("list", help="List watched sites")
    list_parser.add_argument("--user-id", type=int, required=True)
    list_parser.set_defaults(func=_cmd_watch_list)

    notify_parser = subparsers.add_parser("notify-watches", help="Run one watch notification pass")
    notify_parser.add_argument("--dry-run", action="store_true", help="Log messages instead of sending")
    notify_parser.set_defaults(func=_cmd_notify_watches)

    settings_parser = subparsers.add_parser("settings", help="Show or toggle user settings")
    settings_parser.add_argument("--user-id", type=int, required=True)
    settings_parser.add_argument("--toggle", choices=["notify_vulns", "notify_updates"], default=None)
    settings_parser.set_defaults(func=_cmd_settings)

    stats_parser = subparsers.add_parser("stats", help="Usage statistics")
    stats_parser.add_argument("--days", type=int, default=7)
    stats_parser.set_defaults(func=_cmd_stats)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=_cmd_serve)

    worker_parser = subparsers.add_parser("worker", help="Run background tasks")
    worker_parser.add_argument("--once", action="store_true")
    worker_parser.add_argument("--lock-owner", default=None)
    worker_parser.set_defaults(func=_cmd_worker)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("wpwatch.cli")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
