"""Declarative integration-test scenario engine."""

from .actions import (
    Action,
    ActionType,
    MqttPublishAction,
    MqttSubscribeAction,
    RestAction,
    Services,
    WebSocketAction,
)
from .cache import VariableCache
from .orchestrator import Orchestrator, RunResults
from .runner import ScenarioRunner
from .scenario import Scenario, ScenarioResult, ScenarioState, TestResult
from .settings import RunnerSettings

__all__ = [
    'Action',
    'ActionType',
    'MqttPublishAction',
    'MqttSubscribeAction',
    'Orchestrator',
    'RestAction',
    'RunResults',
    'RunnerSettings',
    'Scenario',
    'ScenarioResult',
    'ScenarioRunner',
    'ScenarioState',
    'Services',
    'TestResult',
    'VariableCache',
    'WebSocketAction',
]
