"""Sequence-diagram recording for scenario runs.

Actions report every request, response and asynchronous message to a
:class:`DiagramRecorder`. The default :class:`PlantUmlRecorder` buffers
PlantUML sequence-diagram text per scenario and writes
``<out_dir>/_<scenario>.puml`` when the scenario is finalized, optionally
handing the file to an external renderer command.

Payload formatting (truncation, binary summaries, field redaction) is the
recorder's job; actions pass payloads through untouched.
"""

from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

from .errors import ConfigurationError
from .observability.logging import get_logger

logger = get_logger(__name__)

_PLAINTEXT_LIMIT = 30
_HIDDEN = '***'

_DIAGRAM_HEADER = (
    '@startuml',
    'autonumber',
    'skinparam handwritten false',
    'control MQTT',
    'actor ALT #red',
    '',
)


@dataclass(frozen=True, slots=True)
class DiagramConfiguration:
    """Per-action redaction settings for diagram payloads."""

    hidden_fields: tuple[str, ...] = ()
    hide_plaintext: bool = False

    @classmethod
    def from_definition(cls, raw: Any) -> DiagramConfiguration:
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise ConfigurationError('diagramConfiguration must be a mapping')

        hidden = raw.get('hiddenFields', ())
        hide_plaintext = raw.get('hidePlaintext', False)
        if not isinstance(hide_plaintext, bool):
            raise ConfigurationError('diagramConfiguration.hidePlaintext must be a boolean')
        if not isinstance(hidden, (list, tuple)) or not all(isinstance(f, str) for f in hidden):
            raise ConfigurationError('diagramConfiguration.hiddenFields must be a list of strings')
        return cls(hidden_fields=tuple(hidden), hide_plaintext=hide_plaintext)


DEFAULT_DIAGRAM_CONFIGURATION = DiagramConfiguration()


# ── Payload formatting ─────────────────────────────────────────────


def format_payload(payload: Any, config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION) -> str:
    """Render a payload for a diagram note."""
    if isinstance(payload, (bytes, bytearray)):
        return f'binary data ({len(payload)} bytes)'
    if isinstance(payload, str):
        text = _HIDDEN if config.hide_plaintext else payload
        return _trim(text, _PLAINTEXT_LIMIT)
    if isinstance(payload, Mapping) and config.hidden_fields:
        payload = {
            key: _HIDDEN if key in config.hidden_fields else value
            for key, value in payload.items()
        }
    return json.dumps(payload, indent=1, default=str)


def _trim(text: str, limit: int) -> str:
    return text if len(text) <= limit else f'{text[:limit]}...'


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _enquote(value: str) -> str:
    return f'"{value}"'


# ── Recorder contract ──────────────────────────────────────────────


class DiagramRecorder(Protocol):
    """Sink for diagram events emitted by actions."""

    def start_scenario(self, scenario: str) -> None: ...

    def record_request(
        self, scenario: str, target: str, summary: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_response(
        self, scenario: str, source: str, status: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_failed_response(
        self, scenario: str, source: str, status: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_validation_failure(
        self, scenario: str, source: str, status: str, error: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_async_message(
        self, scenario: str, source: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_mqtt_message(
        self, scenario: str, topic: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_mqtt_publish(
        self, scenario: str, topic: str, payload: Any,
        config: DiagramConfiguration = ...,
    ) -> None: ...

    def record_missing_messages(
        self, scenario: str, topic: str, expected: int, received: int, reason: str,
    ) -> None: ...

    async def finalize(self, scenario: str) -> Path | None: ...


class NullRecorder:
    """Recorder used when diagrams are disabled."""

    def start_scenario(self, scenario: str) -> None:
        pass

    def record_request(self, scenario, target, summary, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_response(self, scenario, source, status, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_failed_response(self, scenario, source, status, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_validation_failure(
        self, scenario, source, status, error, payload, config=DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        pass

    def record_async_message(self, scenario, source, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_mqtt_message(self, scenario, topic, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_mqtt_publish(self, scenario, topic, payload, config=DEFAULT_DIAGRAM_CONFIGURATION) -> None:
        pass

    def record_missing_messages(self, scenario, topic, expected, received, reason) -> None:
        pass

    async def finalize(self, scenario: str) -> Path | None:
        return None


class PlantUmlRecorder:
    """Buffer PlantUML sequence-diagram text per scenario.

    Args:
        out_dir: Directory receiving ``_<scenario>.puml`` files.
        render_command: Optional command run with the ``.puml`` path as its
            last argument once the file is written (e.g. ``plantuml -tpng``).
    """

    def __init__(self, out_dir: str | Path, *, render_command: str = '') -> None:
        self._out_dir = Path(out_dir)
        self._render_command = render_command
        self._lines: dict[str, list[str]] = {}

    def text(self, scenario: str) -> str:
        """Return the diagram source recorded so far for ``scenario``."""
        return '\n'.join(self._lines.get(scenario, ()))

    def start_scenario(self, scenario: str) -> None:
        self._lines[scenario] = list(_DIAGRAM_HEADER)

    def _append(self, scenario: str, *lines: str) -> None:
        if scenario not in self._lines:
            self.start_scenario(scenario)
        self._lines[scenario].extend(lines)

    def _note(self, scenario: str, side: str, payload: Any, config: DiagramConfiguration) -> None:
        self._append(
            scenario,
            f'note {side}',
            f'**{_now_iso()}**',
            format_payload(payload, config),
            'end note',
        )

    def record_request(
        self, scenario: str, target: str, summary: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        quoted = _enquote(target)
        self._append(scenario, f'ALT -> {quoted}: {summary}', f'activate {quoted}')
        if payload:
            self._note(scenario, 'right', payload, config)

    def _response_arrow(self, scenario: str, source: str, status: str, color: str) -> None:
        quoted = _enquote(source)
        self._append(
            scenario,
            f'{quoted} --> ALT: <color {color}>{status}</color>',
            f'deactivate {quoted}',
        )

    def record_response(
        self, scenario: str, source: str, status: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._response_arrow(scenario, source, status, 'green')
        if payload:
            self._note(scenario, 'left', payload, config)

    def record_failed_response(
        self, scenario: str, source: str, status: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._response_arrow(scenario, source, status, 'red')
        self._append(
            scenario,
            f'note right:  <color red>{format_payload(payload, config)}</color>',
            '||20||',
        )

    def record_validation_failure(
        self, scenario: str, source: str, status: str, error: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._response_arrow(scenario, source, status, 'green')
        self._append(scenario, 'note left #FF6666', f'**{_now_iso()}**')
        self._append(
            scenario,
            format_payload({'errorMsg': error, 'responseBody': payload}, config),
            'end note',
        )

    def record_async_message(
        self, scenario: str, source: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._append(scenario, f'{_enquote(source)} -[#0000FF]->o ALT : [WS]')
        self._note(scenario, 'left #aqua', payload, config)

    def record_mqtt_message(
        self, scenario: str, topic: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._append(scenario, f'MQTT -[#green]->o ALT : {topic}')
        self._note(scenario, 'right #99FF99', payload, config)

    def record_mqtt_publish(
        self, scenario: str, topic: str, payload: Any,
        config: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION,
    ) -> None:
        self._append(scenario, f'ALT -[#green]->o MQTT : {topic}')
        self._note(scenario, 'left #99FF99', payload, config)

    def record_missing_messages(
        self, scenario: str, topic: str, expected: int, received: int, reason: str,
    ) -> None:
        self._append(
            scenario,
            f'MQTT -[#red]->x ALT : {topic}',
            'note right #FF6666',
            f'**{_now_iso()}**',
            f'received {received}/{expected} messages',
            reason,
            'end note',
        )

    async def finalize(self, scenario: str) -> Path | None:
        """Write the diagram source and run the renderer if configured."""
        if scenario not in self._lines:
            return None

        self._out_dir.mkdir(parents=True, exist_ok=True)
        path = self._out_dir / f'_{scenario}.puml'
        path.write_text('\n'.join([*self._lines[scenario], '@enduml', '']), encoding='utf-8')

        if self._render_command:
            await self._render(path)
        return path

    async def _render(self, path: Path) -> None:
        argv = [*shlex.split(self._render_command), str(path)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning('diagram_render_unavailable', command=argv[0], error=str(exc))
            return
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.warning(
                'diagram_render_failed',
                path=str(path),
                returncode=proc.returncode,
                stderr=stderr.decode('utf-8', errors='replace')[:500],
            )
