"""Operator notification channel: send a message, block for a reply."""

from __future__ import annotations

import logging
import shlex
from typing import Protocol

from wave_orchestrator.config import NotifySettings
from wave_orchestrator.shell import run_command

logger = logging.getLogger(__name__)

_SEND_TIMEOUT_SECONDS = 60.0


class Notifier(Protocol):
    def send(self, message: str) -> None:
        """Deliver a message to the operator."""

    def wait_for_reply(self) -> None:
        """Block until the operator acknowledges; no timeout."""


class CommandNotifier:
    """Notifier backed by external send/wait commands (``tg-send`` / ``tg-wait`` by default)."""

    def __init__(self, settings: NotifySettings) -> None:
        self.settings = settings

    def send(self, message: str) -> None:
        argv = shlex.split(self.settings.send_template.format(message=shlex.quote(message)))
        run_command(argv, timeout=_SEND_TIMEOUT_SECONDS)
        logger.debug("Notification sent via %s", argv[0])

    def wait_for_reply(self) -> None:
        run_command(shlex.split(self.settings.wait_command), timeout=None)
