#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument, EmitEvent, RegisterEventHandler
from launch.events import matches_action
from launch.substitutions import LaunchConfiguration
from launch_ros.actions import LifecycleNode
from launch_ros.event_handlers import OnStateTransition
from launch_ros.events.lifecycle import ChangeState
from launch_ros.parameter_descriptions import ParameterValue
from lifecycle_msgs.msg import Transition


def command_rate_parameters():
    # a bare substitution is YAML-parsed, so `:=10` would arrive as an integer
    return [{
        'cargo_loading_command_pub_hz': ParameterValue(
            LaunchConfiguration('cargo_loading_command_pub_hz'), value_type=float
        ),
    }]


def generate_launch_description():
    rate = DeclareLaunchArgument('cargo_loading_command_pub_hz', default_value='5.0')

    service = LifecycleNode(
        package='cargo_loading_service',
        executable='cargo_loading_service',
        name='cargo_loading_service',
        namespace='',
        output='screen',
        parameters=command_rate_parameters(),
    )

    configure = EmitEvent(event=ChangeState(
        lifecycle_node_matcher=matches_action(service),
        transition_id=Transition.TRANSITION_CONFIGURE,
    ))

    activate_when_inactive = RegisterEventHandler(OnStateTransition(
        target_lifecycle_node=service,
        goal_state='inactive',
        entities=[EmitEvent(event=ChangeState(
            lifecycle_node_matcher=matches_action(service),
            transition_id=Transition.TRANSITION_ACTIVATE,
        ))],
    ))

    return LaunchDescription([rate, activate_when_inactive, service, configure])
