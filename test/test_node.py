# -*- coding: utf-8 -*-
"""
In-process tests for the CargoLoadingService lifecycle node.

Validates:
- Message conversion helpers
- Requests refused while the node is not ACTIVE
- A full task over real topics: status in, command stream out, SUCCESS back
- Approval-driven completion over /infrastructure_status
- A task with no vehicle status ends in FAIL without commands
- Parameter validation and rate update for the next session
- Health report
- Deactivate during a session ends it as FAIL; cleanup afterwards
"""

import contextlib
import threading
import time

import pytest

rclpy = pytest.importorskip("rclpy")
pytest.importorskip("in_parking_msgs")
pytest.importorskip("tier4_v2x_msgs")

from rclpy.exceptions import InvalidParameterTypeException, InvalidParameterValueException
from rclpy.executors import MultiThreadedExecutor
from rclpy.lifecycle import TransitionCallbackReturn
from rclpy.node import Node
from rclpy.parameter import Parameter
from rclpy.qos import DurabilityPolicy, QoSProfile
from rclpy.task import Future

from in_parking_msgs.msg import InParkingStatus
from in_parking_msgs.srv import ExecuteInParkingTask
from std_srvs.srv import Trigger
from tier4_v2x_msgs.msg import (
    InfrastructureCommand,
    InfrastructureCommandArray,
    InfrastructureState,
    InfrastructureStateArray,
)

from cargo_loading_service.core.policy import CommandState
from cargo_loading_service.core.session import Command
from cargo_loading_service.core.status_tracker import VehicleStatus
from cargo_loading_service.node import (
    CMD_STATE_ERROR,
    CMD_STATE_REQUESTING,
    RATE_PARAM,
    CargoLoadingService,
    to_command_msg,
    to_vehicle_status,
)


# any aw_state without a dedicated mapping counts as normal
AW_NORMAL = InParkingStatus.NONE + 100


def _wait_until(predicate, timeout_sec: float = 10.0, sleep_sec: float = 0.02) -> bool:
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(sleep_sec)
    return False


class Tester(Node):
    def __init__(self) -> None:
        super().__init__("cargo_loading_tester")
        self._lock = threading.Lock()
        self.commands = []
        self.status_pub = self.create_publisher(InParkingStatus, "/in_parking/state", 1)
        self.infra_pub = self.create_publisher(InfrastructureStateArray, "/infrastructure_status", 1)
        self.create_subscription(
            InfrastructureCommandArray,
            "/cargo_loading/infrastructure_commands",
            self._on_commands,
            QoSProfile(depth=50, durability=DurabilityPolicy.TRANSIENT_LOCAL),
        )
        self.client = self.create_client(ExecuteInParkingTask, "/parking/cargo_loading")
        self.health_client = self.create_client(Trigger, "/cargo_loading_service/health")

    def _on_commands(self, msg: InfrastructureCommandArray) -> None:
        with self._lock:
            self.commands.extend(msg.commands)

    def received(self):
        with self._lock:
            return list(self.commands)

    def states(self):
        return [c.state for c in self.received()]

    def call_async(self, facility_id: str) -> Future:
        assert self.client.wait_for_service(timeout_sec=5.0)
        return self.client.call_async(ExecuteInParkingTask.Request(value=facility_id))

    def call(self, facility_id: str, timeout_sec: float = 15.0) -> int:
        future = self.call_async(facility_id)
        assert _wait_until(future.done, timeout_sec=timeout_sec)
        return future.result().state

    def health(self) -> str:
        assert self.health_client.wait_for_service(timeout_sec=5.0)
        future = self.health_client.call_async(Trigger.Request())
        assert _wait_until(future.done)
        assert future.result().success
        return future.result().message

    def publish_status(self, node: CargoLoadingService, aw_state: int, expected: VehicleStatus) -> None:
        self.status_pub.publish(InParkingStatus(aw_state=aw_state))
        assert _wait_until(lambda: node._tracker.current_vehicle_status() is expected)


@pytest.fixture(scope="module", autouse=True)
def ros():
    rclpy.init()
    yield
    rclpy.shutdown()


@contextlib.contextmanager
def running(activate: bool = True):
    node = CargoLoadingService()
    node.trigger_configure()
    if activate:
        node.trigger_activate()
    tester = Tester()
    exe = MultiThreadedExecutor(num_threads=4)
    exe.add_node(node)
    exe.add_node(tester)
    spin = threading.Thread(target=exe.spin, daemon=True)
    spin.start()
    try:
        yield node, tester
    finally:
        exe.shutdown()
        tester.destroy_node()
        node.destroy_node()
        spin.join(timeout=5.0)


def test_aw_state_mapping():
    assert to_vehicle_status(InParkingStatus.NONE) is VehicleStatus.NONE
    assert to_vehicle_status(InParkingStatus.AW_EMERGENCY) is VehicleStatus.EMERGENCY
    assert to_vehicle_status(InParkingStatus.AW_OUT_OF_PARKING) is VehicleStatus.OUT_OF_PARKING
    assert to_vehicle_status(InParkingStatus.AW_UNAVAILABLE) is VehicleStatus.UNAVAILABLE


def test_command_msg_carries_one_stamped_command():
    stamp_ns = 1_700_000_000_123_456_789
    msg = to_command_msg(Command(type="cargo_loading", id="A", state=CommandState.ERROR, stamp=stamp_ns))
    assert len(msg.commands) == 1
    cmd = msg.commands[0]
    assert (cmd.type, cmd.id, cmd.state) == ("cargo_loading", "A", CMD_STATE_ERROR)
    assert cmd.stamp == msg.stamp
    assert msg.stamp.sec == 1_700_000_000 and msg.stamp.nanosec == 123_456_789
    zero = to_command_msg(Command("cargo_loading", "A", CommandState.ZERO, 0)).commands[0]
    assert zero.state == InfrastructureCommand.SEND_ZERO
    req = to_command_msg(Command("cargo_loading", "A", CommandState.REQUESTING, 0)).commands[0]
    assert req.state == CMD_STATE_REQUESTING


def test_inactive_node_refuses_requests():
    with running(activate=False) as (_, tester):
        assert tester.call("A") == ExecuteInParkingTask.Response.FAIL
        assert tester.received() == []


def test_unavailable_vehicle_finalizes_and_succeeds():
    with running() as (node, tester):
        tester.publish_status(node, InParkingStatus.AW_UNAVAILABLE, VehicleStatus.UNAVAILABLE)
        assert tester.call("A") == ExecuteInParkingTask.Response.SUCCESS
        assert _wait_until(lambda: len(tester.received()) == 10)
        cmds = tester.received()
        assert all(c.id == "A" and c.state == InfrastructureCommand.SEND_ZERO for c in cmds)
        assert node._handler.facility_id == ""


def test_facility_approval_ends_the_session():
    with running() as (node, tester):
        tester.publish_status(node, AW_NORMAL, VehicleStatus.OTHER)
        future = tester.call_async("A")
        assert _wait_until(lambda: CMD_STATE_REQUESTING in tester.states())
        tester.infra_pub.publish(InfrastructureStateArray(states=[
            InfrastructureState(id="B", approval=True),
            InfrastructureState(id="A", approval=True),
        ]))
        assert _wait_until(future.done, timeout_sec=15.0)
        assert future.result().state == ExecuteInParkingTask.Response.SUCCESS
        assert _wait_until(lambda: tester.states().count(InfrastructureCommand.SEND_ZERO) == 10)
        states = tester.states()
        first_zero = states.index(InfrastructureCommand.SEND_ZERO)
        assert set(states[:first_zero]) == {CMD_STATE_REQUESTING}
        assert states[first_zero:] == [InfrastructureCommand.SEND_ZERO] * 10


def test_approval_for_another_facility_is_ignored():
    with running() as (node, tester):
        tester.publish_status(node, AW_NORMAL, VehicleStatus.OTHER)
        future = tester.call_async("A")
        assert _wait_until(lambda: CMD_STATE_REQUESTING in tester.states())
        tester.infra_pub.publish(InfrastructureStateArray(states=[
            InfrastructureState(id="B", approval=True),
            InfrastructureState(id="A", approval=False),
        ]))
        assert _wait_until(lambda: not node._tracker.is_facility_approved("A") and
                           node._tracker.is_facility_approved("B"))
        time.sleep(0.5)
        assert not future.done()
        assert node._handler.finalizing is False
        node.trigger_deactivate()
        assert _wait_until(future.done)


def test_no_vehicle_status_fails():
    with running() as (_, tester):
        assert tester.call("B") == ExecuteInParkingTask.Response.FAIL
        time.sleep(0.2)
        assert tester.received() == []


def _rejected(node: CargoLoadingService, param: Parameter) -> bool:
    try:
        (result,) = node.set_parameters([param])
    except (InvalidParameterTypeException, InvalidParameterValueException):
        return True
    return not result.successful


def test_rate_parameter_validation_and_update():
    with running() as (node, tester):
        assert _rejected(node, Parameter(RATE_PARAM, Parameter.Type.INTEGER, 5))
        assert _rejected(node, Parameter(RATE_PARAM, Parameter.Type.DOUBLE, float("nan")))
        assert _rejected(node, Parameter(RATE_PARAM, Parameter.Type.DOUBLE, 0.0))
        assert _rejected(node, Parameter(RATE_PARAM, Parameter.Type.DOUBLE, -1.0))
        assert node._handler.rate_hz == 5.0

        (ok,) = node.set_parameters([Parameter(RATE_PARAM, Parameter.Type.DOUBLE, 10.0)])
        assert ok.successful
        assert node._handler.rate_hz == 10.0

        tester.publish_status(node, InParkingStatus.AW_OUT_OF_PARKING, VehicleStatus.OUT_OF_PARKING)
        assert tester.call("A") == ExecuteInParkingTask.Response.SUCCESS
        assert _wait_until(lambda: len(tester.received()) == 20)
        time.sleep(0.2)
        assert tester.states() == [InfrastructureCommand.SEND_ZERO] * 20


def test_health_reports_lifecycle_and_status():
    with running() as (node, tester):
        msg = tester.health()
        assert "lifecycle=ACTIVE" in msg
        assert "phase=IDLE" in msg
        assert "vehicle=NONE" in msg
        tester.publish_status(node, InParkingStatus.AW_EMERGENCY, VehicleStatus.EMERGENCY)
        assert "vehicle=EMERGENCY" in tester.health()


def test_deactivate_during_session_fails_it():
    with running() as (node, tester):
        tester.publish_status(node, AW_NORMAL, VehicleStatus.OTHER)
        future = tester.call_async("A")
        assert _wait_until(lambda: len(tester.received()) > 0)

        assert node.trigger_deactivate() == TransitionCallbackReturn.SUCCESS
        assert _wait_until(future.done)
        assert future.result().state == ExecuteInParkingTask.Response.FAIL
        assert _wait_until(lambda: not node._handler.is_busy())
        assert node._handler.facility_id == ""

        count = len(tester.received())
        time.sleep(0.5)
        assert len(tester.received()) == count
        assert InfrastructureCommand.SEND_ZERO not in tester.states()


def test_deactivate_then_cleanup():
    with running() as (node, tester):
        assert node.trigger_deactivate() == TransitionCallbackReturn.SUCCESS
        assert tester.call("A") == ExecuteInParkingTask.Response.FAIL
        assert node.trigger_cleanup() == TransitionCallbackReturn.SUCCESS
        assert node._pub is None
        assert node._srv_cargo_loading is None
        assert node._sub_in_parking is None and node._sub_infrastructure is None
