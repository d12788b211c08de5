"""Operator audit trail: application log plus the Telegram log channel."""

from __future__ import annotations

import html
import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class LogSink(Protocol):
    async def send_log(self, text: str) -> None: ...


def describe_user(user_id: int, username: str | None = None, full_name: str | None = None) -> str:
    """Return an HTML-safe label for a user in audit entries."""

    if username:
        label = f"@{username}"
    elif full_name:
        label = full_name
    else:
        label = f"User {user_id}"
    return f"{html.escape(label)} (<code>{user_id}</code>)"


class AuditLog:
    """Fan audit entries out to the logger and the operator channel."""

    def __init__(self, sink: LogSink | None = None):
        self._sink = sink

    async def emit(self, text: str, *, level: int = logging.INFO) -> None:
        logger.log(level, "audit: %s", text)
        if self._sink is not None:
            await self._sink.send_log(text)
