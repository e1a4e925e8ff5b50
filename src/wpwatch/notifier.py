from __future__ import annotations

import json
import logging
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import Config
from .utils import log_event


class Notifier:
    """Outbound "send message to chat" capability used by the watch pass."""

    def send_message(self, chat_id: int, text: str) -> bool:
        raise NotImplementedError


class LogNotifier(Notifier):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("wpwatch.notifier")
        self.sent: list[tuple[int, str]] = []

    def send_message(self, chat_id: int, text: str) -> bool:
        self.sent.append((chat_id, text))
        log_event(self.logger, logging.INFO, "notification_logged", chat_id=chat_id, chars=len(text))
        return True


class TelegramNotifier(Notifier):
    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        max_retry_after_seconds: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retry_after_seconds = max_retry_after_seconds
        self.logger = logger or logging.getLogger("wpwatch.notifier")

    def send_message(self, chat_id: int, text: str) -> bool:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        for attempt in range(2):
            status, body = self._post("sendMessage", payload)
            if status == 200 and body.get("ok"):
                return True
            retry_after = _retry_after(body)
            if (
                status == 429
                and attempt == 0
                and retry_after is not None
                and retry_after <= self.max_retry_after_seconds
            ):
                log_event(self.logger, logging.INFO, "notification_flood_wait", seconds=retry_after)
                time.sleep(retry_after)
                continue
            log_event(
                self.logger,
                logging.WARNING,
                "notification_failed",
                chat_id=chat_id,
                status=status,
                error=body.get("description"),
            )
            return False
        return False

    def _post(self, method: str, payload: dict) -> tuple[int | None, dict]:
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        request = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                return response.getcode(), _parse_body(response.read())
        except HTTPError as exc:
            return exc.code, _parse_body(exc.read())
        except (URLError, OSError) as exc:
            return None, {"ok": False, "description": str(exc)}


def build_notifier(config: Config, dry_run: bool = False) -> Notifier:
    if dry_run or not config.secrets.bot_token:
        return LogNotifier()
    return TelegramNotifier(
        config.secrets.bot_token,
        api_base=config.notifier.telegram_api_base,
        timeout_seconds=config.http.timeout_seconds,
        max_retry_after_seconds=config.notifier.max_retry_after_seconds,
    )


def _parse_body(raw: bytes) -> dict:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {"ok": False, "description": "unreadable response"}
    return data if isinstance(data, dict) else {"ok": False}


def _retry_after(body: dict) -> int | None:
    params = body.get("parameters")
    if not isinstance(params, dict):
        return None
    value = params.get("retry_after")
    return int(value) if isinstance(value, (int, float)) else None
