"""
Status reporting for mirror runs.

``TaskReporter`` is the start/finish bracketing interface the sync engine
reports through.  ``LoggingTaskReporter`` writes one ``GO`` line when a task
starts and one ``DONE`` line with its duration when it finishes, which is
what shows up in journalctl for the service.

``ChannelProgress`` tracks per-channel counters (pages, messages, reactions)
and logs a completion line with rate and elapsed time.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Protocol

logger = logging.getLogger("guild_mirror.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class TaskReporter(Protocol):
    def start(self, label: str) -> None: ...

    def finish(self, label: str) -> None: ...


class LoggingTaskReporter:
    """Log task start/finish pairs with durations.

    Labels nest freely, but each label may only be active once, and only an
    active label can be finished.

    Args:
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._active: Dict[str, float] = {}

    @property
    def active_tasks(self) -> list[str]:
        return list(self._active)

    def start(self, label: str) -> None:
        if label in self._active:
            raise ValueError(f"task {label} already active")
        self._active[label] = self._clock()
        logger.info("  GO   %s", label)

    def finish(self, label: str) -> None:
        started = self._active.pop(label, None)
        if started is None:
            raise ValueError(f"task {label} not active")
        elapsed = self._clock() - started
        logger.info("DONE   %s: %s", label, _format_duration(elapsed))


class ChannelProgress:
    """Tracks progress for a single channel sync.

    Args:
        channel_index: 1-based index of this channel in the run.
        total_channels: Total number of channels in the run.
        channel_name: Display name for the channel.
    """

    def __init__(
        self,
        channel_index: int,
        total_channels: int,
        channel_name: str,
    ) -> None:
        self.channel_index = channel_index
        self.total_channels = total_channels
        self.channel_name = channel_name
        self.pages = 0
        self.messages = 0
        self.reactions = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages processed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.messages / elapsed

    def update(self, page_messages: int, page_reactions: int) -> None:
        """Update counters after a page has been written."""
        self.pages += 1
        self.messages += page_messages
        self.reactions += page_reactions

    def log_page(self) -> None:
        logger.debug(
            "  [Channel %d/%d] page %d | %d messages | %.1f msg/s",
            self.channel_index,
            self.total_channels,
            self.pages,
            self.messages,
            self.rate,
        )

    def log_complete(self) -> None:
        """Log a completion line for this channel."""
        logger.info(
            '  Completed %d/%d: "#%s" | %d messages, %d reactions in %s',
            self.channel_index,
            self.total_channels,
            self.channel_name,
            self.messages,
            self.reactions,
            _format_duration(self.elapsed_seconds),
        )
