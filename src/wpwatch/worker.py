from __future__ import annotations

import argparse
import logging
import os
import socket
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable

from .config import Config, ConfigError, load_config
from .db import connect_db
from .notifier import Notifier, build_notifier
from .storage import prune_cache_overflow, prune_expired_cache, prune_expired_locks
from .utils import configure_logging, log_event
from .vuln_feed import feed_options_from_config, run_feed_sync_job
from .watch import run_watch_notification_pass

FIRST_WATCH_DELAY_SECONDS = 30


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    run: Callable[[], object]
    next_run_at: float


def default_lock_owner() -> str:
    return f"{socket.gethostname()}:pid:{os.getpid()}"


def run_housekeeping(config: Config, logger: logging.Logger) -> dict[str, int]:
    conn = connect_db(config.paths.state_db)
    try:
        result = {
            "cache_expired": prune_expired_cache(conn),
            "cache_overflow": prune_cache_overflow(conn, config.analysis.cache_max_entries),
            "locks_expired": prune_expired_locks(conn),
        }
    finally:
        conn.close()
    log_event(logger, logging.DEBUG, "housekeeping_completed", **result)
    return result


def run_feed_task(config: Config, lock_owner: str, logger: logging.Logger) -> dict[str, object]:
    conn = connect_db(config.paths.state_db)
    try:
        return run_feed_sync_job(conn, feed_options_from_config(config, lock_owner), logger)
    finally:
        conn.close()


def run_watch_task(config: Config, notifier: Notifier, logger: logging.Logger) -> dict[str, object]:
    conn = connect_db(config.paths.state_db)
    try:
        return run_watch_notification_pass(
            conn, notifier, recent_days=config.watch.recent_days, logger=logger
        )
    finally:
        conn.close()


def build_tasks(
    config: Config,
    lock_owner: str,
    notifier: Notifier,
    logger: logging.Logger,
    start: float | None = None,
) -> list[PeriodicTask]:
    start = time.monotonic() if start is None else start
    tasks = [
        PeriodicTask(
            name="housekeeping",
            interval_seconds=config.housekeeping.interval_minutes * 60,
            run=lambda: run_housekeeping(config, logger),
            next_run_at=start,
        )
    ]
    if config.secrets.feed_api_key:
        interval = config.feed.sync_interval_minutes * 60
        tasks.append(
            PeriodicTask(
                name="vuln_feed",
                interval_seconds=interval,
                run=lambda: run_feed_task(config, lock_owner, logger),
                next_run_at=start if config.feed.sync_on_start else start + interval,
            )
        )
    if config.watch.enabled:
        tasks.append(
            PeriodicTask(
                name="watch_notify",
                interval_seconds=config.watch.check_interval_minutes * 60,
                run=lambda: run_watch_task(config, notifier, logger),
                next_run_at=start + FIRST_WATCH_DELAY_SECONDS,
            )
        )
    return tasks


def run_once(
    config: Config,
    lock_owner: str | None = None,
    notifier: Notifier | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    logger = logger or logging.getLogger("wpwatch.worker")
    notifier = notifier or build_notifier(config)
    results: dict[str, object] = {}
    for task in build_tasks(config, lock_owner or default_lock_owner(), notifier, logger):
        results[task.name] = _run_task(task, logger)
    return results


def run_loop(
    config: Config,
    lock_owner: str | None = None,
    notifier: Notifier | None = None,
    tick_seconds: float = 1.0,
    stop_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
) -> int:
    """Run periodic tasks side by side until ``stop_event`` is set.

    A task is never started again while its previous run is still in flight.
    """
    logger = logger or logging.getLogger("wpwatch.worker")
    notifier = notifier or build_notifier(config)
    stop_event = stop_event or threading.Event()
    tasks = build_tasks(config, lock_owner or default_lock_owner(), notifier, logger)
    log_event(logger, logging.INFO, "worker_started", tasks=",".join(t.name for t in tasks))
    running: dict[Future, PeriodicTask] = {}
    with ThreadPoolExecutor(max_workers=max(1, len(tasks))) as executor:
        while not stop_event.is_set():
            now = time.monotonic()
            busy = {task.name for task in running.values()}
            for task in tasks:
                if task.name in busy or now < task.next_run_at:
                    continue
                task.next_run_at = now + task.interval_seconds
                running[executor.submit(_run_task, task, logger)] = task
            if running:
                done, _ = wait(list(running), timeout=tick_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
            else:
                stop_event.wait(tick_seconds)
        wait(list(running))
    log_event(logger, logging.INFO, "worker_stopped")
    return 0


def _run_task(task: PeriodicTask, logger: logging.Logger) -> object:
    started = time.monotonic()
    try:
        result = task.run()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "task_failed", task=task.name, error=str(exc))
        return {"status": "error", "error": str(exc)}
    log_event(
        logger,
        logging.INFO,
        "task_completed",
        task=task.name,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wpwatch-worker")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.add_argument("--once", action="store_true", help="Run each enabled task once and exit")
    parser.add_argument("--lock-owner", default=None, help="Identity recorded in the lock table")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logger = configure_logging("wpwatch.worker")
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if args.once:
        run_once(config, args.lock_owner, logger=logger)
        return 0
    try:
        return run_loop(config, args.lock_owner, logger=logger)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
