from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from .config import Config
from .db import connect_db
from .models import AnalysisResult
from .pipeline import (
    AnalyzeOptions,
    HomeFetchError,
    ProgressCallback,
    analyze_options_from_config,
    analyze_site,
)
from .storage import insert_event
from .url_guard import Resolver, guard_url
from .utils import log_event

ERROR_BAD_URL = "bad_url"
ERROR_FETCH_FAILED = "fetch_failed"
ERROR_INTERNAL = "internal_error"
ERROR_QUEUE_FULL = "queue_full"


@dataclass(frozen=True)
class AnalysisOutcome:
    ok: bool
    origin: str | None = None
    result: AnalysisResult | None = None
    error_code: str | None = None
    reason: str | None = None


class AnalysisRunner:
    """Bounded admission for full site analyses.

    At most ``concurrency`` analyses run at once; up to ``max_pending`` more
    may wait. Anything beyond that is rejected with ``queue_full`` instead of
    growing the backlog.
    """

    def __init__(
        self,
        config: Config,
        *,
        resolve: Resolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.options: AnalyzeOptions = analyze_options_from_config(config)
        self.resolve = resolve
        self.logger = logger or logging.getLogger("wpwatch.service")
        self._executor = ThreadPoolExecutor(
            max_workers=config.analysis.concurrency, thread_name_prefix="wpwatch-analyze"
        )
        self._slots = threading.BoundedSemaphore(
            config.analysis.concurrency + config.analysis.max_pending
        )

    def submit(
        self,
        raw_url: str,
        *,
        user_id: int = 0,
        chat_id: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> Future:
        started = time.monotonic()
        guard = guard_url(raw_url, self.resolve)
        if not guard.ok:
            outcome = AnalysisOutcome(ok=False, error_code=ERROR_BAD_URL, reason=guard.reason)
            self._record(outcome, user_id, chat_id, started)
            return _completed(outcome)
        if not self._slots.acquire(blocking=False):
            outcome = AnalysisOutcome(
                ok=False,
                origin=guard.origin,
                error_code=ERROR_QUEUE_FULL,
                reason="Too many analyses in progress, try again shortly",
            )
            self._record(outcome, user_id, chat_id, started)
            return _completed(outcome)
        try:
            future = self._executor.submit(
                self._run,
                guard.origin,
                guard.normalized_url,
                user_id,
                chat_id,
                on_progress,
                started,
            )
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def analyze(self, raw_url: str, **kwargs) -> AnalysisOutcome:
        return self.submit(raw_url, **kwargs).result()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(
        self,
        origin: str,
        normalized_url: str,
        user_id: int,
        chat_id: int,
        on_progress: ProgressCallback | None,
        started: float,
    ) -> AnalysisOutcome:
        conn = connect_db(self.config.paths.state_db)
        try:
            try:
                result = analyze_site(
                    conn,
                    origin,
                    normalized_url,
                    self.options,
                    on_progress=on_progress,
                    logger=self.logger,
                )
                outcome = AnalysisOutcome(ok=True, origin=origin, result=result)
            except HomeFetchError as exc:
                outcome = AnalysisOutcome(
                    ok=False, origin=origin, error_code=ERROR_FETCH_FAILED, reason=str(exc)
                )
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "analysis_failed", origin=origin, error=str(exc))
                outcome = AnalysisOutcome(
                    ok=False, origin=origin, error_code=ERROR_INTERNAL, reason="Internal error"
                )
            self._record(outcome, user_id, chat_id, started, conn)
            return outcome
        finally:
            conn.close()

    def _record(
        self,
        outcome: AnalysisOutcome,
        user_id: int,
        chat_id: int,
        started: float,
        conn=None,
    ) -> None:
        own_conn = conn is None
        conn = conn or connect_db(self.config.paths.state_db)
        try:
            insert_event(
                conn,
                user_id=user_id,
                chat_id=chat_id,
                command="analyze",
                origin=outcome.origin,
                duration_ms=int((time.monotonic() - started) * 1000),
                result="ok" if outcome.ok else "error",
                error_code=outcome.error_code,
            )
        finally:
            if own_conn:
                conn.close()
        if not outcome.ok:
            log_event(
                self.logger,
                logging.INFO,
                "analysis_rejected",
                origin=outcome.origin,
                error_code=outcome.error_code,
                reason=outcome.reason,
            )


def _completed(outcome: AnalysisOutcome) -> Future:
    future: Future = Future()
    future.set_result(outcome)
    return future
