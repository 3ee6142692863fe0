"""
Best-effort notifications to users and operators over the Telegram Bot API.

Sends never block the caller and never raise: each message is posted from a
worker thread in a background task, and failures are only logged. Without a
bot token or a chat to send to, the message is logged instead.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

import requests

from app.config import settings

SEVERITY_EMOJI = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "❌",
    "critical": "🚨",
}


def format_message(title: str, fields: Optional[Dict[str, Any]] = None, severity: str = "info") -> str:
    lines = [f"{SEVERITY_EMOJI.get(severity, '')} <b>{title}</b>".strip()]
    for key, value in (fields or {}).items():
        if value is not None:
            lines.append(f"{key}: {value}")
    return "\n".join(lines)


class TrainingNotifier:
    TELEGRAM_API = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: Optional[str] = None,
        ops_chat_id: Optional[str] = None,
        user_chat_lookup: Optional[Callable[[str], Optional[str]]] = None,
        timeout: int = 10,
    ):
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self.ops_chat_id = ops_chat_id if ops_chat_id is not None else settings.telegram_ops_chat_id
        self.user_chat_lookup = user_chat_lookup
        self.timeout = timeout
        self.session = requests.Session()
        self._pending: Set[asyncio.Task] = set()
        self.logger = logging.getLogger("TrainingNotifier")

    # ==================== Public API ====================

    def notify_user(self, user_id: str, message: str, severity: str = "info") -> None:
        self.logger.info(f"📨 [user {user_id}] {message}")
        text = f"{SEVERITY_EMOJI.get(severity, '')} {message}".strip()
        self._dispatch(self._send_to_user, user_id, text)

    def notify_ops(self, message: str, severity: str = "warning", data: Optional[Dict[str, Any]] = None) -> None:
        text = format_message(f"[{severity.upper()}] {message}", data, severity)
        log = self.logger.critical if severity == "critical" else self.logger.warning
        log(f"📟 [ops] {message} {data or ''}".rstrip())
        if self.bot_token and self.ops_chat_id:
            self._dispatch(self._send, self.ops_chat_id, text)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight sends, e.g. before shutdown."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)

    # ==================== Delivery ====================

    def _dispatch(self, fn: Callable, *args) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            fn(*args)
            return
        task = loop.create_task(asyncio.to_thread(fn, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _send_to_user(self, user_id: str, message: str) -> None:
        if not self.bot_token or self.user_chat_lookup is None:
            return
        try:
            chat_id = self.user_chat_lookup(user_id)
        except Exception as e:
            self.logger.error(f"❌ User lookup failed for {user_id}: {e}")
            return
        if chat_id:
            self._send(chat_id, message)

    def _send(self, chat_id: str, text: str) -> bool:
        url = f"{self.TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        try:
            response = self.session.post(
                url,
                json={"chat_id": chat_id, "text": text, "parse_mode": "HTML"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"⚠️ Telegram send to {chat_id} failed: {e}")
            return False
