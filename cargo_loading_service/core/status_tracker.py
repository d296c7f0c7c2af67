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
Externally observed truth for a cargo loading task.

- Pure Python (no ROS imports) for easy unit testing.
- Vehicle status: the latest state reported by the automated-driving side.
- Facility approvals: the latest (facility_id, approved) set reported by the
  facility side, replaced wholesale on every notification.

Writers are asynchronous subscription callbacks, the reader is the session
loop; every access goes through one lock so a tick never sees a half-applied
update.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterable, Tuple
import threading


class VehicleStatus(Enum):
    """Automated-driving state relevant to in-parking tasks."""
    NONE = auto()            # nothing received yet
    EMERGENCY = auto()
    OUT_OF_PARKING = auto()
    UNAVAILABLE = auto()
    OTHER = auto()           # any normal state


@dataclass(frozen=True)
class FacilityApproval:
    facility_id: str
    approved: bool = False


@dataclass(frozen=True)
class StatusSnapshot:
    """
    Consistent view of both feeds taken under a single lock acquisition.

    Attributes:
        vehicle_status: Latest vehicle status.
        approvals: Latest facility approval set, in notification order.
    """
    vehicle_status: VehicleStatus = VehicleStatus.NONE
    approvals: Tuple[FacilityApproval, ...] = ()

    def is_facility_approved(self, facility_id: str) -> bool:
        """True if facility_id is approved and the vehicle is not in emergency."""
        if self.vehicle_status is VehicleStatus.EMERGENCY:
            return False
        return any(a.approved and a.facility_id == facility_id for a in self.approvals)


class StatusTracker:
    """Thread-safe holder for the vehicle status and facility approvals."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = StatusSnapshot()

    # ------- Writers (subscription side) ------- #

    def update_vehicle_status(self, status: VehicleStatus) -> None:
        with self._lock:
            self._snapshot = StatusSnapshot(status, self._snapshot.approvals)

    def update_facility_approvals(self, approvals: Iterable[FacilityApproval]) -> None:
        """Replace the stored approval set with `approvals` (no merge)."""
        fresh = tuple(approvals)
        with self._lock:
            self._snapshot = StatusSnapshot(self._snapshot.vehicle_status, fresh)

    def clear_facility_approvals(self) -> None:
        with self._lock:
            self._snapshot = StatusSnapshot(self._snapshot.vehicle_status, ())

    # ------- Readers (session loop side) ------- #

    def current_vehicle_status(self) -> VehicleStatus:
        with self._lock:
            return self._snapshot.vehicle_status

    def is_facility_approved(self, facility_id: str) -> bool:
        with self._lock:
            return self._snapshot.is_facility_approved(facility_id)

    def snapshot(self) -> StatusSnapshot:
        """Return an immutable view of both feeds."""
        with self._lock:
            return self._snapshot
