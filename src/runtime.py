"""In-process implementation of the wait/record event protocol.

A wait blocks until a record with the same typed event id has fired,
regardless of the order in which the stage invocations were issued. Event
numbering is the caller's job: a cyclic numbering deadlocks (or times out
when a timeout is set).
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .errors import EventAlreadyRecordedError, EventTimeoutError, PipelineAbortedError
from .events import EventId

logger = logging.getLogger(__name__)


class EventHub:
    """One-shot events keyed by typed id, shared by all stage invocations.

    Each id may be recorded once per hub. Negative ids are null events: waits
    on them return at once and records are ignored.
    """

    def __init__(self, default_timeout: Optional[float] = None):
        self._cond = threading.Condition()
        self._recorded: set[EventId] = set()
        self._abort_reason: Optional[str] = None
        self._default_timeout = default_timeout

    def record(self, event: EventId) -> None:
        if event.is_null:
            return
        with self._cond:
            if event in self._recorded:
                raise EventAlreadyRecordedError(f"{event} was already recorded")
            self._recorded.add(event)
            self._cond.notify_all()
        logger.debug("record %s", event)

    def wait(self, event: EventId, timeout: Optional[float] = None) -> None:
        if event.is_null:
            return
        if timeout is None:
            timeout = self._default_timeout
        logger.debug("wait %s", event)
        with self._cond:
            done = self._cond.wait_for(
                lambda: event in self._recorded or self._abort_reason is not None,
                timeout=timeout,
            )
            if self._abort_reason is not None:
                raise PipelineAbortedError(f"aborted while waiting for {event}: {self._abort_reason}")
            if not done:
                raise EventTimeoutError(f"{event} was not recorded within {timeout}s")

    def is_recorded(self, event: EventId) -> bool:
        with self._cond:
            return event in self._recorded

    @property
    def aborted(self) -> bool:
        return self._abort_reason is not None

    def abort(self, reason: str = "aborted") -> None:
        """Wake every waiter with ``PipelineAbortedError``."""
        with self._cond:
            if self._abort_reason is None:
                self._abort_reason = reason
            self._cond.notify_all()
        logger.warning("Event hub aborted: %s", reason)

    def reset(self) -> None:
        with self._cond:
            self._recorded.clear()
            self._abort_reason = None
