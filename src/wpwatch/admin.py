from __future__ import annotations

import logging
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import Config
from .db import connect_db
from .service import (
    ERROR_BAD_URL,
    ERROR_FETCH_FAILED,
    ERROR_QUEUE_FULL,
    AnalysisRunner,
)
from .storage import query_stats
from .utils import log_event
from .vuln_feed import feed_options_from_config, get_feed_status, run_feed_sync_job
from .worker import default_lock_owner

_ERROR_STATUS = {
    ERROR_BAD_URL: 400,
    ERROR_FETCH_FAILED: 502,
    ERROR_QUEUE_FULL: 503,
}


class AnalyzeRequest(BaseModel):
    url: str
    user_id: int = 0
    chat_id: int = 0


def create_app(config: Config, runner: AnalysisRunner | None = None) -> FastAPI:
    app = FastAPI(title="WpWatch Admin API")
    logger = logging.getLogger("wpwatch.admin")
    runner = runner or AnalysisRunner(config)
    lock_owner = f"{default_lock_owner()}:admin"

    def require_admin_token(request: Request) -> None:
        token = config.secrets.admin_token
        if not token:
            return
        if request.headers.get("X-Admin-Token") != token:
            raise HTTPException(status_code=401, detail="unauthorized")

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "ok": True,
            "version": _get_version(),
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }

    @app.get("/admin/api/vulns/status", dependencies=[Depends(require_admin_token)])
    def vulns_status() -> dict[str, object]:
        conn = connect_db(config.paths.state_db)
        try:
            return get_feed_status(conn)
        finally:
            conn.close()

    @app.post("/admin/api/vulns/sync", dependencies=[Depends(require_admin_token)])
    def vulns_sync() -> dict[str, object]:
        conn = connect_db(config.paths.state_db)
        try:
            result = run_feed_sync_job(conn, feed_options_from_config(config, lock_owner))
        finally:
            conn.close()
        log_event(logger, logging.INFO, "admin_vuln_sync", status=result["status"])
        return result

    @app.post("/admin/api/analyze", dependencies=[Depends(require_admin_token)])
    def analyze(payload: AnalyzeRequest) -> dict[str, object]:
        outcome = runner.analyze(payload.url, user_id=payload.user_id, chat_id=payload.chat_id)
        if not outcome.ok:
            raise HTTPException(
                status_code=_ERROR_STATUS.get(outcome.error_code, 500),
                detail={"error_code": outcome.error_code, "reason": outcome.reason},
            )
        return {"origin": outcome.origin, "result": outcome.result.to_dict()}

    @app.get("/admin/api/stats", dependencies=[Depends(require_admin_token)])
    def stats(days: int = 7) -> dict[str, object]:
        if days < 1 or days > 365:
            raise HTTPException(status_code=400, detail="days must be between 1 and 365")
        conn = connect_db(config.paths.state_db)
        try:
            return {"days": days, **query_stats(conn, days)}
        finally:
            conn.close()

    @app.on_event("shutdown")
    def shutdown() -> None:
        runner.shutdown(wait=False)

    return app


def _get_version() -> str:
    try:
        return version("wpwatch")
    except PackageNotFoundError:
        return "dev"
