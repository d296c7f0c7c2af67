# -*- coding: utf-8 -*-

# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Blocking request handler for cargo loading tasks.

One call to execute() runs one session: it starts a SessionLoop on a periodic
timer, waits on an event until the loop terminates and returns the result.
Only one session may be live at a time.
"""

from __future__ import annotations
from typing import Callable, Optional, Protocol
from math import isfinite
import threading
import time

from .session import Command, PhaseRec, SessionLoop, SessionResult
from .status_tracker import StatusTracker


class SessionBusyError(RuntimeError):
    """Raised when a session is started while another one is still live."""


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


class ThreadTimer:
    """Periodic timer on a daemon thread, for use outside a ROS executor."""

    def __init__(self, period: float, callback: Callable[[], None]) -> None:
        self._period = period
        self._callback = callback
        self._canceled = threading.Event()
        self._thread = threading.Thread(target=self._run, name='session-timer', daemon=True)
        self._thread.start()

    def cancel(self) -> None:
        """Stop ticking; returns after any in-flight callback unless called from it."""
        self._canceled.set()
        if threading.current_thread() is not self._thread:
            self._thread.join()

    def is_canceled(self) -> bool:
        return self._canceled.is_set()

    def _run(self) -> None:
        next_at = time.monotonic() + self._period
        while not self._canceled.wait(max(0.0, next_at - time.monotonic())):
            self._callback()
            next_at += self._period


def validate_rate(rate_hz: float) -> float:
    rate = float(rate_hz)
    if not isfinite(rate) or rate <= 0.0:
        raise ValueError(f'command rate must be finite and > 0, got {rate_hz!r}')
    return rate


class RequestHandler:
    """
    Synchronous boundary for cargo loading requests.

    Semantics:
        - execute(facility_id) blocks until the session terminates and
          returns SessionResult.SUCCESS or SessionResult.FAIL.
        - facility_id and finalizing read as their defaults ("" / False)
          whenever no session is live.
        - Overlapping execute() calls raise SessionBusyError.
        - abort() ends the live session with FAIL.

    Notes:
        - `timer_factory(period, callback)` must return an object with cancel();
          callbacks must run on a different thread than execute().
        - Approvals stored before a session starts are discarded.
    """

    def __init__(
        self,
        tracker: StatusTracker,
        publish: Callable[[Command], None],
        timer_factory: TimerFactory = ThreadTimer,
        rate_hz: float = 5.0,
        clock: Callable[[], int] = time.time_ns,
        on_transition: Optional[Callable[[PhaseRec], None]] = None,
    ) -> None:
        self._tracker = tracker
        self._publish = publish
        self._timer_factory = timer_factory
        self._rate_hz = validate_rate(rate_hz)
        self._clock = clock
        self._on_transition = on_transition
        self._busy = threading.Lock()
        self._loop: Optional[SessionLoop] = None
        self._done: Optional[threading.Event] = None

    @property
    def rate_hz(self) -> float:
        return self._rate_hz

    @rate_hz.setter
    def rate_hz(self, value: float) -> None:
        """Takes effect from the next session."""
        self._rate_hz = validate_rate(value)

    @property
    def loop(self) -> Optional[SessionLoop]:
        """The live session loop, or None between requests."""
        return self._loop

    @property
    def facility_id(self) -> str:
        loop = self._loop
        return loop.session.facility_id if loop is not None else ''

    @property
    def finalizing(self) -> bool:
        loop = self._loop
        return loop.session.finalizing if loop is not None else False

    def is_busy(self) -> bool:
        return self._busy.locked()

    def abort(self) -> bool:
        """
        End the live session with FAIL and wake the blocked execute() call.

        Returns once no further command can be published for it.

        Returns:
            True if a running session was ended.
        """
        loop, done = self._loop, self._done
        if loop is None:
            return False
        aborted = loop.abort()
        if done is not None:
            done.set()
        return aborted

    def execute(self, facility_id: str) -> SessionResult:
        if not facility_id:
            raise ValueError('facility_id must be a non-empty string')
        if not self._busy.acquire(blocking=False):
            raise SessionBusyError(f'session for {self.facility_id!r} is still live')
        try:
            return self._run(facility_id)
        finally:
            self._loop = None
            self._done = None
            self._busy.release()

    # ------- Internal logic ------- #

    def _run(self, facility_id: str) -> SessionResult:
        self._tracker.clear_facility_approvals()
        done = threading.Event()
        loop = SessionLoop(
            facility_id,
            self._tracker,
            self._publish,
            rate_hz=self._rate_hz,
            clock=self._clock,
            on_transition=self._on_transition,
        )
        self._loop = loop
        self._done = done

        def on_tick() -> None:
            try:
                running = loop.tick()
            except Exception:
                # never leave the caller blocked; the error surfaces on the timer thread
                done.set()
                raise
            if not running:
                done.set()

        timer = self._timer_factory(1.0 / self._rate_hz, on_tick)
        try:
            done.wait()
        finally:
            timer.cancel()

        if loop.session.result is SessionResult.SUCCESS:
            return SessionResult.SUCCESS
        return SessionResult.FAIL
