"""Execute one scenario's actions in order against a shared variable cache.

Usage::

    runner = ScenarioRunner(Services(http_client=client))
    result = await runner.run(scenario)
    assert result.passed

Actions run strictly sequentially. The first failed action aborts the
rest of the scenario. WebSocket invocations are also tracked separately and
force-closed when the scenario ends, whatever its outcome.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from .actions import Action, Invocation, Services, invoke_action
from .errors import ScenarioError
from .observability.logging import action_context, get_logger, scenario_context
from .scenario import Scenario, ScenarioResult, ScenarioState, TestResult

logger = get_logger(__name__)


class ScenarioRunner:
    """Run scenarios action by action and record a TestResult per action.

    Args:
        services: Collaborators handed to every action invocation.
    """

    def __init__(self, services: Services | None = None) -> None:
        self._services = services or Services()

    @property
    def services(self) -> Services:
        return self._services

    async def run(self, scenario: Scenario) -> ScenarioResult:
        """Execute every action of ``scenario`` until one fails.

        Returns:
            ScenarioResult holding one TestResult per completed action.
        """
        started_at = _now_iso()
        start_time = time.monotonic()
        state = ScenarioState.RUNNING
        results: list[TestResult] = []
        background: list[Invocation] = []

        self._services.recorder.start_scenario(scenario.name)

        with scenario_context(scenario.name):
            logger.info(
                'scenario_started',
                description=scenario.description,
                actions=len(scenario.actions),
            )
            try:
                for action in scenario.actions:
                    result = await self._run_action(scenario, action, background)
                    results.append(result)
                    if not result.successful:
                        state = ScenarioState.FAILED
                        break
                else:
                    state = ScenarioState.SUCCEEDED
            finally:
                await _cancel_all(background)

            total_ms = (time.monotonic() - start_time) * 1000
            log = logger.info if state == ScenarioState.SUCCEEDED else logger.error
            log(
                'scenario_finished',
                state=state.value,
                completed=len(results),
                actions=len(scenario.actions),
                duration_ms=round(total_ms, 1),
            )

        return ScenarioResult(
            scenario=scenario.name,
            description=scenario.description,
            state=state,
            results=tuple(results),
            started_at=started_at,
            finished_at=_now_iso(),
            total_duration_ms=total_ms,
        )

    async def _run_action(
        self,
        scenario: Scenario,
        action: Action,
        background: list[Invocation],
    ) -> TestResult:
        """Invoke one action and wait for its completion."""
        with action_context(action.name):
            logger.info('action_started', description=action.describe(), type=action.type.value)
            start = time.perf_counter()
            try:
                invocation = invoke_action(action, scenario, self._services)
                if invocation.cancellable:
                    background.append(invocation)
                outcome = await invocation
            except ScenarioError as exc:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.error(
                    'action_failed',
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=round(duration_ms, 1),
                )
                return TestResult(
                    action=action.describe(),
                    duration_ms=duration_ms,
                    successful=False,
                    error=f'{type(exc).__name__}: {exc}',
                )
            except Exception as exc:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.exception('action_crashed', duration_ms=round(duration_ms, 1))
                return TestResult(
                    action=action.describe(),
                    duration_ms=duration_ms,
                    successful=False,
                    error=f'{type(exc).__name__}: {exc}',
                )

            duration_ms = (time.perf_counter() - start) * 1000
            logger.info('action_succeeded', duration_ms=round(duration_ms, 1))
            logger.debug('action_outcome', outcome=outcome)
            return TestResult(
                action=action.describe(),
                duration_ms=duration_ms,
                successful=True,
            )


async def _cancel_all(invocations: list[Invocation]) -> None:
    for invocation in invocations:
        if not invocation.done:
            logger.debug('invocation_cancelled', task=invocation.task.get_name())
        await invocation.cancel()


def _now_iso() -> str:
    """Return current UTC timestamp in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()
