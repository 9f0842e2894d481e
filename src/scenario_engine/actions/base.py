"""Shared action contract: type tags, invocation handle, collaborators, merge rules.

Action definitions are immutable values. Everything that changes while an
action runs (counters, open sockets, reconnect attempts) lives in the
:class:`Invocation` and the per-invocation session objects of each variant,
so one definition can be invoked by several scenarios.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Mapping

import aiomqtt
import httpx
from websockets.asyncio.client import connect as ws_connect

from ..cache import VariableCache
from ..diagrams import (
    DEFAULT_DIAGRAM_CONFIGURATION,
    DiagramConfiguration,
    DiagramRecorder,
    NullRecorder,
)
from ..errors import ConfigurationError
from ..expressions import evaluate_predicate, resolve_string, scope_for, to_text
from ..observability.logging import get_logger
from ..proto import ProtoCodec
from ..settings import RunnerSettings

logger = get_logger(__name__)


class ActionType(str, Enum):
    """Protocol tag of an action variant."""

    REST = 'REST'
    MQTT_SUBSCRIBE = 'MQTT_SUBSCRIBE'
    MQTT_PUBLISH = 'MQTT_PUBLISH'
    WEBSOCKET = 'WEBSOCKET'


@dataclass(frozen=True, slots=True, kw_only=True)
class ActionFields:
    """Fields every action variant carries."""

    name: str
    description: str = ''
    invoke_even_on_fail: bool = False
    allow_failure: bool = False
    diagram_configuration: DiagramConfiguration = DEFAULT_DIAGRAM_CONFIGURATION

    def describe(self) -> str:
        return self.description or self.name


# ── Collaborators ──────────────────────────────────────────────────


@dataclass(slots=True)
class Services:
    """Collaborators and tuning shared by every action invocation.

    Tests inject fakes for the diagram recorder, the HTTP client
    (``httpx.MockTransport``), the MQTT client factory and the WebSocket
    connect function.
    """

    recorder: DiagramRecorder = field(default_factory=NullRecorder)
    proto_codec: ProtoCodec = field(default_factory=ProtoCodec)
    http_client: httpx.AsyncClient | None = None
    mqtt_client_factory: Callable[..., Any] = aiomqtt.Client
    ws_connect: Callable[..., Any] = ws_connect
    rest_max_attempts: int = 3
    rest_retry_delay: float = 1.0
    rest_timeout_seconds: float = 30.0
    ws_max_reconnects: int = 3
    mqtt_keepalive: int = 60

    @classmethod
    def from_settings(cls, settings: RunnerSettings, **overrides: Any) -> Services:
        values: dict[str, Any] = {
            'rest_max_attempts': settings.rest_max_attempts,
            'rest_retry_delay': settings.rest_retry_delay,
            'rest_timeout_seconds': settings.rest_timeout_seconds,
            'ws_max_reconnects': settings.ws_max_reconnects,
            'mqtt_keepalive': settings.mqtt_keepalive,
        }
        values.update(overrides)
        return cls(**values)


# ── Invocation handle ──────────────────────────────────────────────


class Invocation:
    """Completion of one action run plus a way to release its resources.

    Awaiting the invocation returns the action's result or raises its
    error. ``cancel()`` is only meaningful when the variant registered a
    ``close`` callback (WebSocket); for the others it does nothing, since
    REST and MQTT runs stop on their own timers or completion.
    """

    def __init__(
        self,
        task: asyncio.Task,
        *,
        close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.task = task
        self._close = close

    def __await__(self):
        return self.task.__await__()

    @property
    def done(self) -> bool:
        return self.task.done()

    @property
    def cancellable(self) -> bool:
        return self._close is not None

    async def cancel(self) -> None:
        if self._close is None:
            return
        await self._close()
        if not self.task.done():
            self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


def start_invocation(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str,
    close: Callable[[], Awaitable[None]] | None = None,
) -> Invocation:
    return Invocation(asyncio.create_task(coro, name=name), close=close)


# ── Definition parsing & template merge ────────────────────────────


def common_fields(definition: Mapping[str, Any], *, name: str | None = None) -> dict[str, Any]:
    """Parse the shared fields from a raw (camelCase) definition."""
    resolved_name = definition.get('name') or name
    if not resolved_name:
        raise ConfigurationError('Action definition requires a name')
    return {
        'name': resolved_name,
        'description': definition.get('description') or resolved_name,
        'invoke_even_on_fail': bool(definition.get('invokeEvenOnFail', False)),
        'allow_failure': bool(definition.get('allowFailure', False)),
        'diagram_configuration': DiagramConfiguration.from_definition(
            definition.get('diagramConfiguration'),
        ),
    }


def merged_common_fields(override: Mapping[str, Any], template: ActionFields) -> dict[str, Any]:
    """Shared fields of an action derived from ``template``."""
    diagram_raw = override.get('diagramConfiguration')
    return {
        'name': override.get('name') or template.name,
        'description': (
            override.get('description') or override.get('name') or template.description
        ),
        'invoke_even_on_fail': pick(override, 'invokeEvenOnFail', template.invoke_even_on_fail),
        'allow_failure': pick(override, 'allowFailure', template.allow_failure),
        'diagram_configuration': (
            DiagramConfiguration.from_definition(diagram_raw)
            if diagram_raw is not None
            else template.diagram_configuration
        ),
    }


def pick(override: Mapping[str, Any], key: str, template_value: Any) -> Any:
    """Scalar rule: the override wins when present."""
    value = override.get(key)
    return template_value if value is None else value


def merge_mapping(
    template: Mapping[str, Any] | None,
    override: Mapping[str, Any] | None,
) -> dict[str, Any] | None:
    """Associative rule: shallow merge, override keys win."""
    if template is None and override is None:
        return None
    return {**(template or {}), **(override or {})}


def merge_data(template: Any, override: Any) -> Any:
    """Data rule: list templates concatenate, mappings merge."""
    if template is None:
        return override
    if isinstance(template, (list, tuple)):
        return [*template, *(override or [])]
    if isinstance(template, Mapping):
        return {**template, **(override or {})}
    return template if override is None else override


def append_list(template: Any, override: Any) -> tuple[Any, ...]:
    """Accumulating rule: template entries kept, override entries appended."""
    return (*(template or ()), *(override or ()))


def as_tuple(value: Any) -> tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


# ── Message relevance ──────────────────────────────────────────────


def message_is_relevant(
    filters: tuple[str, ...],
    cache: VariableCache,
    message: Any,
) -> bool:
    """True when any filter holds for ``message``, or when there are none.

    ``{{ }}`` fragments in a filter are expanded against the cache first;
    the expanded filter is then evaluated with ``msg`` bound to the message.
    """
    if not filters:
        return True
    for message_filter in filters:
        expanded = to_text(resolve_string(message_filter, scope_for(cache)))
        result = evaluate_predicate(expanded, scope_for(cache, msg=message))
        logger.debug('message_filter', filter=expanded, result=result)
        if result:
            return True
    return False
