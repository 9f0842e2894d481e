"""Run a scenario collection in fixed-size parallel batches.

Usage::

    orchestrator = Orchestrator(RunnerSettings.from_env())
    results = await orchestrator.run(scenarios)
    sys.exit(0 if results.successful else 1)

Each batch of ``parallel_runs`` scenarios runs concurrently and finishes
completely before the next batch starts. Once every scenario is done the
orchestrator logs a per-scenario summary, finalizes all diagrams
concurrently and returns a :class:`RunResults` owned by the caller.
"""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import httpx

from .actions import Services
from .diagrams import DiagramRecorder, NullRecorder, PlantUmlRecorder
from .errors import ConfigurationError
from .observability.logging import get_logger, scenario_context
from .runner import ScenarioRunner
from .scenario import Scenario, ScenarioResult
from .settings import RunnerSettings

logger = get_logger(__name__)

_ACTION_COLUMN = 50
_BANNER_WIDTH = 100


@dataclass(frozen=True, slots=True)
class RunResults:
    """Results of one orchestrated run, in scenario input order."""

    scenarios: tuple[ScenarioResult, ...]
    diagrams: tuple[Path, ...] = ()

    @property
    def successful(self) -> bool:
        """True when no scenario contains a failed result."""
        return all(r.passed for r in self.scenarios)

    @property
    def failed(self) -> tuple[ScenarioResult, ...]:
        return tuple(r for r in self.scenarios if not r.passed)

    def get(self, scenario: str) -> ScenarioResult | None:
        for result in self.scenarios:
            if result.scenario == scenario:
                return result
        return None

    def __len__(self) -> int:
        return len(self.scenarios)


def summary_lines(result: ScenarioResult) -> list[str]:
    """Human-readable summary of one scenario: one line per action."""
    lines = [f'#### SUMMARY: {result.scenario} '.ljust(_BANNER_WIDTH, '#')]
    for test in result.results:
        marker = ' OK' if test.successful else 'NOK'
        lines.append(
            f'{marker}: {test.action.ljust(_ACTION_COLUMN)} {test.duration_ms:.0f} ms'
        )
    lines.append('#' * _BANNER_WIDTH)
    return lines


class Orchestrator:
    """Drive the scenario runner over a whole collection.

    Args:
        settings: Batch width, output directory, retry/reconnect tuning.
        services: Optional pre-built collaborators (for test injection).
            When omitted they are built from ``settings``.
    """

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        services: Services | None = None,
    ) -> None:
        self._settings = settings or RunnerSettings()
        self._services = services

    def _build_recorder(self) -> DiagramRecorder:
        if not self._settings.draw_diagrams:
            return NullRecorder()
        return PlantUmlRecorder(
            self._settings.out_dir,
            render_command=self._settings.plantuml_command,
        )

    async def run(self, scenarios: Sequence[Scenario]) -> RunResults:
        """Execute all scenarios batch by batch and finalize diagrams."""
        _check_unique_names(scenarios)

        services = self._services or Services.from_settings(
            self._settings, recorder=self._build_recorder(),
        )
        client: httpx.AsyncClient | None = None
        if services.http_client is None:
            client = httpx.AsyncClient(timeout=services.rest_timeout_seconds)
            services = dataclasses.replace(services, http_client=client)

        runner = ScenarioRunner(services)
        width = max(1, self._settings.parallel_runs)
        results: list[ScenarioResult] = []
        try:
            for start in range(0, len(scenarios), width):
                batch = scenarios[start:start + width]
                logger.info(
                    'batch_started',
                    batch=start // width + 1,
                    scenarios=[s.name for s in batch],
                )
                results.extend(await asyncio.gather(*(runner.run(s) for s in batch)))
        finally:
            if client is not None:
                await client.aclose()

        for result in results:
            with scenario_context(result.scenario):
                for line in summary_lines(result):
                    logger.info(line)

        diagrams = await self._finalize_diagrams(services.recorder, results)
        run_results = RunResults(scenarios=tuple(results), diagrams=diagrams)

        logger.info(
            'run_finished',
            successful=run_results.successful,
            scenarios=len(run_results),
            failed=[r.scenario for r in run_results.failed],
        )
        return run_results

    async def _finalize_diagrams(
        self,
        recorder: DiagramRecorder,
        results: Sequence[ScenarioResult],
    ) -> tuple[Path, ...]:
        outcomes = await asyncio.gather(
            *(recorder.finalize(r.scenario) for r in results),
            return_exceptions=True,
        )
        paths: list[Path] = []
        for result, outcome in zip(results, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    'diagram_write_failed',
                    scenario=result.scenario,
                    error=f'{type(outcome).__name__}: {outcome}',
                )
            elif outcome is not None:
                paths.append(outcome)
        return tuple(paths)


def _check_unique_names(scenarios: Sequence[Scenario]) -> None:
    seen: set[str] = set()
    for scenario in scenarios:
        if scenario.name in seen:
            raise ConfigurationError(f'Duplicate scenario name: {scenario.name}')
        seen.add(scenario.name)
