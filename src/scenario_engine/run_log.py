"""JSON report of an orchestrated run.

The CLI writes one of these when ``--json-log`` is given::

    report = RunLog.from_run(results, metadata={'actions': 'actions/'})
    report.write(Path('out/run.json'))
"""

from __future__ import annotations

import json
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .orchestrator import RunResults


@dataclass(frozen=True, slots=True)
class RunLog:
    """Per-scenario evidence for one run plus the diagrams it produced."""

    run_id: str
    written_at: str
    scenarios: tuple[dict[str, Any], ...]
    diagrams: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_run(
        cls,
        results: RunResults,
        *,
        run_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RunLog:
        return cls(
            run_id=run_id or f'run-{uuid.uuid4().hex[:12]}',
            written_at=datetime.now(timezone.utc).isoformat(),
            scenarios=tuple(r.to_run_log() for r in results.scenarios),
            diagrams=tuple(str(p) for p in results.diagrams),
            metadata=dict(metadata or {}),
        )

    @property
    def successful(self) -> bool:
        return all(s['verdict'] == 'pass' for s in self.scenarios)

    def tally(self) -> dict[str, int]:
        """Scenario and action counts, keyed for the report summary."""
        counts: Counter[str] = Counter()
        for scenario in self.scenarios:
            counts['scenarios'] += 1
            counts[f'scenarios_{scenario["verdict"]}'] += 1
            for action in scenario['actions']:
                counts['actions'] += 1
                counts[f'actions_{action["outcome"]}'] += 1
        return {
            'scenarios': counts['scenarios'],
            'scenarios_failed': counts['scenarios_fail'],
            'actions': counts['actions'],
            'actions_passed': counts['actions_pass'],
            'actions_failed': counts['actions_fail'],
        }

    def failures(self) -> list[dict[str, Any]]:
        """Failed actions across all scenarios.

        ``kind`` is the exception class name the runner prefixed the error
        text with, e.g. ``ValidationError`` or ``CountMismatchError``.
        """
        failures = []
        for scenario in self.scenarios:
            for action in scenario['actions']:
                if action['outcome'] != 'fail':
                    continue
                error = action.get('error', '')
                kind, sep, _ = error.partition(':')
                failures.append({
                    'scenario': scenario['scenario'],
                    'action': action['action'],
                    'kind': kind if sep else 'Error',
                    'error': error,
                })
        return failures

    def to_dict(self) -> dict[str, Any]:
        return {
            'run_id': self.run_id,
            'written_at': self.written_at,
            'successful': self.successful,
            'summary': self.tally(),
            'failures': self.failures(),
            'diagrams': list(self.diagrams),
            'metadata': self.metadata,
            'scenarios': list(self.scenarios),
        }

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding='utf-8')
