"""Command-line entry point.

Usage::

    # Run every scenario in a directory:
    scenario-engine scenarios/ --actions actions/

    # Run a single scenario with an environment config:
    scenario-engine scenarios/login.yaml --actions actions/ --env-config env/dev.yaml

    # Write a machine-readable run log:
    scenario-engine scenarios/ --actions actions/ --json-log out/run.json

The exit status is 0 when every scenario succeeded and 1 otherwise; 2
signals invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path

from .errors import ConfigurationError
from .loader import load_actions, load_env_config, load_scenarios
from .observability.logging import configure_logging, get_logger
from .orchestrator import Orchestrator, RunResults
from .run_log import RunLog
from .settings import RunnerSettings

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='scenario-engine',
        description='Run declarative integration-test scenarios.',
    )
    parser.add_argument(
        'scenarios',
        type=Path,
        help='Scenario file (.yaml) or directory of scenario files',
    )
    parser.add_argument(
        '--actions',
        type=Path,
        required=True,
        help='Directory of action definition files',
    )
    parser.add_argument(
        '--out',
        help='Output directory for diagrams (default: SCENARIO_OUT_DIR or out)',
    )
    parser.add_argument(
        '--env-config',
        type=Path,
        help='YAML mapping used for ${NAME} substitution in action files',
    )
    parser.add_argument(
        '--parallel',
        type=int,
        help='Scenarios run concurrently per batch (default: 10)',
    )
    parser.add_argument(
        '--no-diagrams',
        action='store_true',
        help='Do not record sequence diagrams',
    )
    parser.add_argument(
        '--json-log',
        type=Path,
        help='Write a JSON run log to this path',
    )
    parser.add_argument(
        '--log-level',
        help='Log level (default: LOG_LEVEL env var or INFO)',
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> RunnerSettings:
    """Environment settings overridden by command-line flags."""
    settings = RunnerSettings.from_env()
    overrides: dict[str, object] = {}
    if args.out:
        overrides['out_dir'] = args.out
    if args.parallel is not None:
        overrides['parallel_runs'] = args.parallel
    if args.no_diagrams:
        overrides['draw_diagrams'] = False
    return dataclasses.replace(settings, **overrides)


def print_text_results(results: RunResults) -> None:
    """Print a short human-readable verdict."""
    total = len(results)
    failed = results.failed
    icon = '✔' if results.successful else '✘'
    print(f'\n{icon} {total - len(failed)}/{total} scenarios passed')
    for result in failed:
        print(f'  - {result.scenario}: {result.description}')
        for test in result.results:
            if test.error:
                print(f'      {test.action}: {test.error}')
    for path in results.diagrams:
        print(f'  diagram: {path}')


async def run(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    errors = settings.validate()
    if errors:
        for error in errors:
            print(f'ERROR: {error}', file=sys.stderr)
        return 2

    logger.info(
        'run_started',
        scenarios=str(args.scenarios),
        actions=str(args.actions),
        out=settings.out_dir,
        env_config=str(args.env_config) if args.env_config else None,
    )

    try:
        env_config = load_env_config(args.env_config)
        actions = load_actions(args.actions, env_config)
        scenarios = load_scenarios(args.scenarios, actions)
        results = await Orchestrator(settings).run(scenarios)
    except ConfigurationError as exc:
        logger.error('configuration_invalid', error=str(exc))
        print(f'ERROR: {exc}', file=sys.stderr)
        return 2

    if args.json_log:
        RunLog.from_run(
            results,
            metadata={
                'scenarios': str(args.scenarios),
                'actions': str(args.actions),
                'parallel_runs': settings.parallel_runs,
            },
        ).write(args.json_log)
        print(f'Run log written to {args.json_log}')

    print_text_results(results)
    return 0 if results.successful else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(level=args.log_level)
    return asyncio.run(run(args))


if __name__ == '__main__':
    sys.exit(main())
