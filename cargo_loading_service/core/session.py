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
Session loop for one cargo loading task.

- Pure Python (no ROS imports) for easy unit testing.
- Phases: ACTIVE -> FINALIZING -> TERMINATED, never backwards.
- Each tick evaluates the command policy against the tracked status and
  publishes one Command through the injected `publish` callable.
- Once finalizing is latched every tick emits ZERO and counts down;
  the session ends with SUCCESS when the countdown runs out.
- A tick with no vehicle status ever received ends the session with FAIL
  without publishing anything.
- abort() ends a running session with FAIL, e.g. when the owner loses its
  command output.

Also records a ring-buffer of phase transitions for traceability.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum, auto
from collections import deque
from typing import Callable, Deque, List, Optional
import math
import threading
import time

from .policy import CommandState, evaluate
from .status_tracker import StatusTracker


CMD_TYPE = "cargo_loading"


# -------------------------- Public enums & dataclasses -------------------------- #

class Phase(Enum):
    """Session loop phase."""
    ACTIVE = auto()
    FINALIZING = auto()
    TERMINATED = auto()


class SessionResult(Enum):
    PENDING = auto()
    SUCCESS = auto()
    FAIL = auto()


@dataclass(frozen=True)
class Command:
    """
    One infrastructure command as published on a tick.

    Attributes:
        type: Command kind, always CMD_TYPE for this service.
        id: Facility identifier the command is addressed to.
        state: Desired gate/dock state.
        stamp: Tick time in integer nanoseconds since the epoch.
    """
    type: str
    id: str
    state: CommandState
    stamp: int


@dataclass(frozen=True)
class Session:
    """
    Snapshot of the session state.

    Attributes:
        facility_id: Facility the task runs against.
        finalizing: One-way latch, True once wind-down has begun.
        ticks_remaining: Zero-ticks left before termination.
        result: PENDING until the loop terminates.
    """
    facility_id: str
    finalizing: bool = False
    ticks_remaining: int = 0
    result: SessionResult = SessionResult.PENDING


@dataclass(frozen=True)
class PhaseRec:
    """
    A single phase transition captured in the ring buffer.

    Attributes:
        t: Time of the transition in integer nanoseconds.
        frm: Phase before the tick.
        to: Phase after the tick.
        tick: 1-based index of the tick that caused it.
        result: Session result after the tick.
    """
    t: int
    frm: Phase
    to: Phase
    tick: int
    result: SessionResult


def finalize_countdown(rate_hz: float) -> int:
    """Number of zero ticks published once finalizing, about two seconds' worth."""
    return int(math.ceil(2.0 * rate_hz))


# ------------------------------- Session loop --------------------------------- #

class SessionLoop:
    """
    Timer-driven evaluator for a single session.

    The owner calls tick() from its periodic timer and stops the timer once
    tick() returns False.
    """

    def __init__(
        self,
        facility_id: str,
        tracker: StatusTracker,
        publish: Callable[[Command], None],
        rate_hz: float = 5.0,
        clock: Callable[[], int] = time.time_ns,
        on_transition: Optional[Callable[[PhaseRec], None]] = None,
        history_size: int = 16,
    ) -> None:
        self._tracker = tracker
        self._publish = publish
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._session = Session(facility_id=facility_id, ticks_remaining=finalize_countdown(rate_hz))
        self._phase = Phase.ACTIVE
        self._ticks = 0
        self._hist: Deque[PhaseRec] = deque(maxlen=max(1, history_size))

    # ------- Public API ------- #

    @property
    def session(self) -> Session:
        return self._session

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def ticks(self) -> int:
        """Number of ticks evaluated so far."""
        return self._ticks

    def is_terminated(self) -> bool:
        return self._phase is Phase.TERMINATED

    def tick(self) -> bool:
        """
        Run one evaluate-and-publish cycle.

        Returns:
            True while the loop should keep ticking, False once terminated.
        """
        with self._lock:
            if self._phase is Phase.TERMINATED:
                return False
            self._ticks += 1
            before = self._phase
            session = self._session
            decision = evaluate(session.facility_id, self._tracker.snapshot(), session.finalizing)

            if decision.fail:
                self._session = replace(session, result=SessionResult.FAIL)
                self._enter(before, Phase.TERMINATED)
                return False

            self._publish(
                Command(type=CMD_TYPE, id=session.facility_id, state=decision.state, stamp=self._clock())
            )

            if not decision.finalizing:
                return True

            remaining = session.ticks_remaining - 1
            if remaining > 0:
                self._session = replace(session, finalizing=True, ticks_remaining=remaining)
                self._enter(before, Phase.FINALIZING)
                return True

            self._session = replace(
                session, finalizing=True, ticks_remaining=0, result=SessionResult.SUCCESS
            )
            self._enter(before, Phase.TERMINATED)
            return False

    def abort(self) -> bool:
        """
        End the session with FAIL from outside the tick cadence.

        Waits for an in-flight tick, so nothing is published once this returns.

        Returns:
            True if the session was still running.
        """
        with self._lock:
            if self._phase is Phase.TERMINATED:
                return False
            before = self._phase
            self._session = replace(self._session, result=SessionResult.FAIL)
            self._enter(before, Phase.TERMINATED)
            return True

    def history(self) -> List[PhaseRec]:
        """Return a copy of the transition history (most-recent last)."""
        return list(self._hist)

    def last_transition(self) -> Optional[PhaseRec]:
        try:
            return self._hist[-1]
        except IndexError:
            return None

    # ------- Internal logic ------- #

    def _enter(self, before: Phase, after: Phase) -> None:
        if before is after:
            return
        self._phase = after
        rec = PhaseRec(t=self._clock(), frm=before, to=after, tick=self._ticks, result=self._session.result)
        self._hist.append(rec)
        if self._on_transition is not None:
            self._on_transition(rec)
