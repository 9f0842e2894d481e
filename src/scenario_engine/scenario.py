"""Scenario definition and per-scenario results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .cache import VariableCache

if TYPE_CHECKING:
    from .actions import Action


class ScenarioState(str, Enum):
    """Lifecycle of a single scenario run."""

    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass(slots=True)
class Scenario:
    """Named ordered sequence of actions sharing one variable cache."""

    name: str
    description: str
    actions: tuple[Action, ...]
    cache: VariableCache = field(default_factory=VariableCache)


@dataclass(frozen=True, slots=True)
class TestResult:
    """Outcome of one completed action."""

    __test__ = False  # not a pytest test class

    action: str
    duration_ms: float
    successful: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'action': self.action,
            'duration_ms': round(self.duration_ms, 2),
            'outcome': 'pass' if self.successful else 'fail',
        }
        if self.error:
            result['error'] = self.error
        return result


@dataclass(frozen=True, slots=True)
class ScenarioResult:
    """Aggregate result of executing a full scenario."""

    scenario: str
    description: str
    state: ScenarioState
    results: tuple[TestResult, ...]
    started_at: str  # ISO-8601
    finished_at: str  # ISO-8601
    total_duration_ms: float

    @property
    def passed(self) -> bool:
        return (
            self.state == ScenarioState.SUCCEEDED
            and all(r.successful for r in self.results)
        )

    @property
    def pass_count(self) -> int:
        return sum(1 for r in self.results if r.successful)

    @property
    def fail_count(self) -> int:
        return sum(1 for r in self.results if not r.successful)

    @property
    def total_actions(self) -> int:
        return len(self.results)

    def summary(self) -> dict[str, Any]:
        """Return a JSON-serializable summary of the result."""
        return {
            'scenario': self.scenario,
            'description': self.description,
            'passed': self.passed,
            'actions': self.total_actions,
            'pass': self.pass_count,
            'fail': self.fail_count,
            'duration_ms': round(self.total_duration_ms, 1),
            'started_at': self.started_at,
            'finished_at': self.finished_at,
        }

    def to_run_log(self) -> dict[str, Any]:
        """Return a machine-readable log with per-action evidence."""
        return {
            'scenario': self.scenario,
            'description': self.description,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration_ms': round(self.total_duration_ms, 2),
            'verdict': 'pass' if self.passed else 'fail',
            'counts': {
                'total': self.total_actions,
                'pass': self.pass_count,
                'fail': self.fail_count,
            },
            'actions': [r.to_dict() for r in self.results],
        }
