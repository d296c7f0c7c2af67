#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations
from typing import Optional
from math import isfinite

import rclpy
from rclpy.executors import MultiThreadedExecutor
from rclpy.lifecycle import LifecycleNode, State, TransitionCallbackReturn
from rclpy.qos import QoSProfile, ReliabilityPolicy, HistoryPolicy, DurabilityPolicy
from rclpy.callback_groups import MutuallyExclusiveCallbackGroup
from rclpy.parameter import Parameter
from rclpy.time import Time
from rcl_interfaces.msg import (
    SetParametersResult,
    ParameterDescriptor,
    FloatingPointRange,
)

from std_srvs.srv import Trigger
from in_parking_msgs.msg import InParkingStatus
from in_parking_msgs.srv import ExecuteInParkingTask
from tier4_v2x_msgs.msg import (
    InfrastructureCommand,
    InfrastructureCommandArray,
    InfrastructureStateArray,
)

from .core.handler import RequestHandler, SessionBusyError
from .core.policy import CommandState
from .core.session import Command, PhaseRec, SessionResult
from .core.status_tracker import FacilityApproval, StatusTracker, VehicleStatus


RATE_PARAM = 'cargo_loading_command_pub_hz'

# InfrastructureCommand.state bits for this task kind
CMD_STATE_REQUESTING = 0b01
CMD_STATE_ERROR = 0b10

_AW_STATE_TO_STATUS = {
    InParkingStatus.NONE: VehicleStatus.NONE,
    InParkingStatus.AW_EMERGENCY: VehicleStatus.EMERGENCY,
    InParkingStatus.AW_OUT_OF_PARKING: VehicleStatus.OUT_OF_PARKING,
    InParkingStatus.AW_UNAVAILABLE: VehicleStatus.UNAVAILABLE,
}

_COMMAND_STATE_TO_MSG = {
    CommandState.ZERO: InfrastructureCommand.SEND_ZERO,
    CommandState.REQUESTING: CMD_STATE_REQUESTING,
    CommandState.ERROR: CMD_STATE_ERROR,
}


def to_vehicle_status(aw_state: int) -> VehicleStatus:
    return _AW_STATE_TO_STATUS.get(aw_state, VehicleStatus.OTHER)


def to_command_msg(command: Command) -> InfrastructureCommandArray:
    stamp = Time(nanoseconds=command.stamp).to_msg()
    cmd = InfrastructureCommand()
    cmd.stamp = stamp
    cmd.type = command.type
    cmd.id = command.id
    cmd.state = _COMMAND_STATE_TO_MSG[command.state]
    array = InfrastructureCommandArray()
    array.stamp = stamp
    array.commands.append(cmd)
    return array


class _SessionTimer:
    """ROS timer owned by one session; cancel() also releases it."""

    def __init__(self, node: LifecycleNode, timer) -> None:
        self._node = node
        self._timer = timer

    def cancel(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        self._node.destroy_timer(self._timer)
        self._timer = None


class CargoLoadingService(LifecycleNode):
    """Lifecycle-aware cargo loading task service."""

    def __init__(self) -> None:
        super().__init__('cargo_loading_service')
        # service and session ticks must never share a thread
        self._cbg_service = MutuallyExclusiveCallbackGroup()
        self._cbg_session = MutuallyExclusiveCallbackGroup()

        # ----- Core, ROS-agnostic -----
        self._tracker = StatusTracker()
        self._is_active = False

        # ----- ROS interfaces (created in on_configure) -----
        self._pub: Optional['rclpy.lifecycle.Publisher'] = None
        self._sub_in_parking = None
        self._sub_infrastructure = None
        self._srv_cargo_loading = None
        self._srv_health = None

        # ---------------- Parameters ----------------
        self.declare_parameter(
            RATE_PARAM,
            5.0,
            descriptor=ParameterDescriptor(
                description='Publish rate of cargo loading infrastructure commands in Hz.',
                floating_point_range=[FloatingPointRange(from_value=0.1, to_value=100.0, step=0.0)],
            ),
        )
        self._handler = RequestHandler(
            self._tracker,
            self._publish_command,
            timer_factory=self._create_session_timer,
            rate_hz=float(self.get_parameter(RATE_PARAM).value),
            clock=self._now,
            on_transition=self._on_transition,
        )
        self._param_cb = self.add_on_set_parameters_callback(self._on_param_update)

        self.get_logger().info('Constructed (UNCONFIGURED)')

    # ---------------- Lifecycle hooks ----------------
    def on_configure(self, state: State) -> TransitionCallbackReturn:
        self.get_logger().info('on_configure()')
        try:
            command_qos = QoSProfile(
                depth=3,
                reliability=ReliabilityPolicy.RELIABLE,
                durability=DurabilityPolicy.TRANSIENT_LOCAL,
                history=HistoryPolicy.KEEP_LAST,
            )
            status_qos = QoSProfile(depth=1)

            self._pub = self.create_lifecycle_publisher(
                InfrastructureCommandArray, '/cargo_loading/infrastructure_commands', command_qos
            )
            self._sub_in_parking = self.create_subscription(
                InParkingStatus, '/in_parking/state', self._on_in_parking_state, status_qos,
                callback_group=self._cbg_session,
            )
            self._sub_infrastructure = self.create_subscription(
                InfrastructureStateArray, '/infrastructure_status', self._on_infrastructure_status,
                status_qos, callback_group=self._cbg_session,
            )

            self._srv_cargo_loading = self.create_service(
                ExecuteInParkingTask, '/parking/cargo_loading', self._on_cargo_loading,
                callback_group=self._cbg_service,
            )
            self._srv_health = self.create_service(
                Trigger, '~/health', self._on_health, callback_group=self._cbg_session
            )

            self.get_logger().info('Configured resources (INACTIVE)')
            return TransitionCallbackReturn.SUCCESS
        except Exception as e:
            self.get_logger().error(f'Configure failed: {e}')
            return TransitionCallbackReturn.FAILURE

    def on_activate(self, state: State) -> TransitionCallbackReturn:
        self.get_logger().info('on_activate()')
        try:
            if self._pub is None or self._srv_cargo_loading is None:
                self.get_logger().error('Missing resources in activate')
                return TransitionCallbackReturn.FAILURE
            self._pub.on_activate(state)
            self._is_active = True
            self.get_logger().info(f'Activated, command rate={self._handler.rate_hz} Hz')
            return TransitionCallbackReturn.SUCCESS
        except Exception as e:
            self.get_logger().error(f'Activate failed: {e}')
            return TransitionCallbackReturn.FAILURE

    def on_deactivate(self, state: State) -> TransitionCallbackReturn:
        self.get_logger().info('on_deactivate()')
        try:
            self._is_active = False
            self._abort_session('node deactivated')
            if self._pub:
                self._pub.on_deactivate(state)
            self.get_logger().info('Deactivated (publisher inactive, requests refused)')
            return TransitionCallbackReturn.SUCCESS
        except Exception as e:
            self.get_logger().error(f'Deactivate failed: {e}')
            return TransitionCallbackReturn.FAILURE

    def on_cleanup(self, state: State) -> TransitionCallbackReturn:
        self.get_logger().info('on_cleanup()')
        try:
            self._is_active = False
            self._abort_session('node cleaned up')

            if self._srv_cargo_loading:
                self.destroy_service(self._srv_cargo_loading); self._srv_cargo_loading = None
            if self._srv_health:
                self.destroy_service(self._srv_health); self._srv_health = None
            if self._sub_in_parking:
                self.destroy_subscription(self._sub_in_parking); self._sub_in_parking = None
            if self._sub_infrastructure:
                self.destroy_subscription(self._sub_infrastructure); self._sub_infrastructure = None

            if self._pub:
                self.destroy_publisher(self._pub)
                self._pub = None

            self.get_logger().info('Cleaned up (UNCONFIGURED)')
            return TransitionCallbackReturn.SUCCESS
        except Exception as e:
            self.get_logger().error(f'Cleanup failed: {e}')
            return TransitionCallbackReturn.FAILURE

    def on_shutdown(self, state: State) -> TransitionCallbackReturn:
        self.get_logger().info('on_shutdown()')
        self._is_active = False
        self._handler.abort()
        return TransitionCallbackReturn.SUCCESS

    # ---------------- Parameter handling (pure validate + react) ----------------
    def _on_param_update(self, params: list[Parameter]) -> SetParametersResult:
        for p in params:
            if p.name != RATE_PARAM:
                continue
            if p.type_ != Parameter.Type.DOUBLE or not isfinite(p.value) or p.value <= 0.0:
                return SetParametersResult(successful=False, reason=f'{RATE_PARAM} must be finite and > 0')
            # a live session keeps its rate, the next one picks this up
            self._handler.rate_hz = float(p.value)
            self.get_logger().info(f'{RATE_PARAM} -> {p.value} Hz')
        return SetParametersResult(successful=True)

    # ---------------- Helpers ----------------
    def _now(self) -> int:
        return self.get_clock().now().nanoseconds

    def _create_session_timer(self, period: float, callback) -> _SessionTimer:
        timer = self.create_timer(period, callback, callback_group=self._cbg_session)
        return _SessionTimer(self, timer)

    def _publish_command(self, command: Command) -> None:
        pub = self._pub
        if pub is None:
            return
        pub.publish(to_command_msg(command))

    def _abort_session(self, reason: str) -> None:
        # ticks stop before the command output goes away
        facility_id = self._handler.facility_id
        if self._handler.abort():
            self.get_logger().warning(f'Session {facility_id!r} aborted: {reason}')

    def _on_transition(self, rec: PhaseRec) -> None:
        self.get_logger().info(
            f'Session {self._handler.facility_id!r}: {rec.frm.name} -> {rec.to.name} '
            f'at tick {rec.tick} ({rec.result.name})'
        )

    # ---------------- Subscriptions ----------------
    def _on_in_parking_state(self, msg: InParkingStatus) -> None:
        self._tracker.update_vehicle_status(to_vehicle_status(msg.aw_state))
        self.get_logger().debug(
            f'Subscribed /in_parking/state: aw_state={msg.aw_state}', throttle_duration_sec=0.05
        )

    def _on_infrastructure_status(self, msg: InfrastructureStateArray) -> None:
        self._tracker.update_facility_approvals(
            FacilityApproval(facility_id=s.id, approved=bool(s.approval)) for s in msg.states
        )
        self.get_logger().debug(
            f'Subscribed /infrastructure_status: {[(s.id, s.approval) for s in msg.states]}',
            throttle_duration_sec=0.05,
        )

    # ---------------- Services ----------------
    def _on_cargo_loading(
        self, req: ExecuteInParkingTask.Request, res: ExecuteInParkingTask.Response
    ) -> ExecuteInParkingTask.Response:
        if not self._is_active:
            self.get_logger().warning(f'Cargo loading for {req.value!r} refused: node not active')
            res.state = ExecuteInParkingTask.Response.FAIL
            return res
        if not req.value:
            self.get_logger().warning('Cargo loading refused: empty facility id')
            res.state = ExecuteInParkingTask.Response.FAIL
            return res

        self.get_logger().info(f'Cargo loading started for facility {req.value!r}')
        try:
            result = self._handler.execute(req.value)
        except SessionBusyError as e:
            self.get_logger().warning(f'Cargo loading for {req.value!r} refused: {e}')
            res.state = ExecuteInParkingTask.Response.FAIL
            return res

        res.state = (
            ExecuteInParkingTask.Response.SUCCESS
            if result is SessionResult.SUCCESS
            else ExecuteInParkingTask.Response.FAIL
        )
        self.get_logger().info(f'Cargo loading for facility {req.value!r} finished: {result.name}')
        return res

    def _on_health(self, req: Trigger.Request, res: Trigger.Response) -> Trigger.Response:
        lc = 'ACTIVE' if self._is_active else 'INACTIVE/OTHER'
        loop = self._handler.loop
        phase = loop.phase.name if loop is not None else 'IDLE'
        res.success = True
        res.message = (
            f'lifecycle={lc}, facility={self._handler.facility_id!r}, phase={phase}, '
            f'vehicle={self._tracker.current_vehicle_status().name}'
        )
        return res


def main() -> None:
    rclpy.init()
    node = CargoLoadingService()
    exe = MultiThreadedExecutor(num_threads=2)
    exe.add_node(node)
    try:
        exe.spin()
    finally:
        exe.shutdown()
        node.destroy_node()
        rclpy.shutdown()
