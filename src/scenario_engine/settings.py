"""Runner configuration settings.

RunnerSettings is the single configuration object accepted by the
orchestrator and the CLI. It is a plain dataclass (not env-coupled) so tests
can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = frozenset({'1', 'true', 'yes', 'on'})


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """Configuration for a scenario run.

    All fields have defaults suitable for a local run.
    """

    # ── Scheduling ─────────────────────────────────────────────────
    parallel_runs: int = 10
    """Number of scenarios executed concurrently per batch."""

    # ── Output ─────────────────────────────────────────────────────
    out_dir: str = 'out'
    """Directory receiving sequence diagrams and run logs."""

    draw_diagrams: bool = True
    """Record PlantUML sequence diagrams for every scenario."""

    plantuml_command: str = ''
    """Optional renderer command (e.g. ``plantuml``) run on finalize."""

    # ── REST ───────────────────────────────────────────────────────
    rest_max_attempts: int = 3
    rest_retry_delay: float = 1.0
    """Fixed delay in seconds between REST transport retries."""

    rest_timeout_seconds: float = 30.0

    # ── WebSocket / MQTT ───────────────────────────────────────────
    ws_max_reconnects: int = 3
    mqtt_keepalive: int = 60

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.parallel_runs < 1:
            errors.append('parallel_runs must be >= 1')
        if self.rest_max_attempts < 1:
            errors.append('rest_max_attempts must be >= 1')
        if self.rest_retry_delay < 0:
            errors.append('rest_retry_delay must be >= 0')
        if self.ws_max_reconnects < 0:
            errors.append('ws_max_reconnects must be >= 0')
        if self.mqtt_keepalive < 1:
            errors.append('mqtt_keepalive must be >= 1')
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> RunnerSettings:
        """Build settings from environment variables.

        Tests should construct RunnerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        return cls(
            parallel_runs=int(env.get('SCENARIO_PARALLEL_RUNS', defaults.parallel_runs)),
            out_dir=env.get('SCENARIO_OUT_DIR', defaults.out_dir),
            draw_diagrams=_env_flag(env, 'SCENARIO_DRAW_DIAGRAMS', defaults.draw_diagrams),
            plantuml_command=env.get('SCENARIO_PLANTUML_COMMAND', ''),
            rest_max_attempts=int(
                env.get('SCENARIO_REST_MAX_ATTEMPTS', defaults.rest_max_attempts)
            ),
            rest_retry_delay=float(
                env.get('SCENARIO_REST_RETRY_DELAY', defaults.rest_retry_delay)
            ),
            rest_timeout_seconds=float(
                env.get('SCENARIO_REST_TIMEOUT', defaults.rest_timeout_seconds)
            ),
            ws_max_reconnects=int(
                env.get('SCENARIO_WS_MAX_RECONNECTS', defaults.ws_max_reconnects)
            ),
            mqtt_keepalive=int(env.get('SCENARIO_MQTT_KEEPALIVE', defaults.mqtt_keepalive)),
        )


def _env_flag(env: dict[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY
