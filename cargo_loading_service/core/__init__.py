#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# cargo_loading_service/core/__init__.py
"""
Core, ROS-agnostic logic for cargo_loading_service.
Exports the status tracker, command policy, session loop and request handler.
"""
from .status_tracker import StatusTracker, StatusSnapshot, VehicleStatus, FacilityApproval
from .policy import CommandState, Decision, evaluate
from .session import (
    CMD_TYPE,
    Command,
    Phase,
    PhaseRec,
    Session,
    SessionLoop,
    SessionResult,
    finalize_countdown,
)
from .handler import RequestHandler, SessionBusyError, ThreadTimer, validate_rate

__all__ = [
    "StatusTracker",
    "StatusSnapshot",
    "VehicleStatus",
    "FacilityApproval",
    "CommandState",
    "Decision",
    "evaluate",
    "CMD_TYPE",
    "Command",
    "Phase",
    "PhaseRec",
    "Session",
    "SessionLoop",
    "SessionResult",
    "finalize_countdown",
    "RequestHandler",
    "SessionBusyError",
    "ThreadTimer",
    "validate_rate",
]
