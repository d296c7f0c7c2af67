#!/usr/bin/env python3
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


from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional
from .status_tracker import StatusSnapshot, VehicleStatus


class CommandState(Enum):
    ZERO = auto()
    REQUESTING = auto()
    ERROR = auto()


@dataclass(frozen=True)
class Decision:
    """Outcome of one evaluation; state is None only when fail is set."""
    state: Optional[CommandState]
    finalizing: bool = False
    fail: bool = False


def evaluate(facility_id: str, snapshot: StatusSnapshot, finalizing: bool) -> Decision:
    # an approval latches before the table so the same tick already winds down
    if not finalizing and snapshot.is_facility_approved(facility_id):
        finalizing = True

    if finalizing:
        return Decision(CommandState.ZERO, finalizing=True)

    status = snapshot.vehicle_status
    if status is VehicleStatus.NONE:
        return Decision(None, fail=True)
    if status is VehicleStatus.EMERGENCY:
        return Decision(CommandState.ERROR)
    if status in (VehicleStatus.OUT_OF_PARKING, VehicleStatus.UNAVAILABLE):
        return Decision(CommandState.ZERO, finalizing=True)
    return Decision(CommandState.REQUESTING)
