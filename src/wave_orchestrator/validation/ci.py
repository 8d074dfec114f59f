"""CI status polling with capped exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from wave_orchestrator.checkpoint.models import CiState
from wave_orchestrator.config import GateSettings
from wave_orchestrator.errors import CommandError
from wave_orchestrator.tracker.base import IssueTracker

logger = logging.getLogger(__name__)


class CiWatcher:
    """Poll a pull request's checks until they settle or the hard timeout expires."""

    def __init__(
        self,
        tracker: IssueTracker,
        settings: GateSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tracker = tracker
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    def wait(self, pr_number: int) -> CiState:
        """Return PASSED or FAILED once settled; PENDING means the timeout expired.

        Tracker errors are treated as transient and polled through.
        """

        deadline = self._clock() + self.settings.ci_timeout_seconds
        interval = self.settings.ci_poll_initial_seconds
        while True:
            try:
                state = self.tracker.ci_state(pr_number)
            except CommandError as error:
                logger.warning("PR #%d: could not read CI status: %s", pr_number, error)
                state = CiState.PENDING
            if state != CiState.PENDING:
                logger.debug("PR #%d: CI %s", pr_number, state.value)
                return state

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(
                    "PR #%d: CI still pending after %ss",
                    pr_number,
                    self.settings.ci_timeout_seconds,
                )
                return CiState.PENDING
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self.settings.ci_poll_max_seconds)
