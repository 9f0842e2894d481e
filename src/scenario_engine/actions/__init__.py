"""Action variants and tag-based dispatch.

Each variant module exposes a frozen definition dataclass with
``from_definition``/``from_template`` constructors and an ``invoke``
function. Dispatch goes through the ``type`` tag, never through
inheritance.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Union

from ..errors import ConfigurationError
from ..scenario import Scenario
from . import mqtt_publish, mqtt_subscribe, rest, websocket
from .base import ActionFields, ActionType, Invocation, Services
from .mqtt_publish import MqttPublishAction
from .mqtt_subscribe import MqttSubscribeAction
from .rest import RestAction
from .websocket import WebSocketAction

Action = Union[RestAction, MqttSubscribeAction, MqttPublishAction, WebSocketAction]

_VARIANTS: dict[ActionType, type] = {
    ActionType.REST: RestAction,
    ActionType.MQTT_SUBSCRIBE: MqttSubscribeAction,
    ActionType.MQTT_PUBLISH: MqttPublishAction,
    ActionType.WEBSOCKET: WebSocketAction,
}

_INVOKERS: dict[ActionType, Callable[[Any, Scenario, Services], Invocation]] = {
    ActionType.REST: rest.invoke,
    ActionType.MQTT_SUBSCRIBE: mqtt_subscribe.invoke,
    ActionType.MQTT_PUBLISH: mqtt_publish.invoke,
    ActionType.WEBSOCKET: websocket.invoke,
}

# Alternative spellings accepted in definition files.
_TYPE_ALIASES = {
    'MQTT': ActionType.MQTT_SUBSCRIBE,
    'WS': ActionType.WEBSOCKET,
}


def action_type(raw: Any) -> ActionType:
    """Parse a ``type`` value from a definition file."""
    if raw is None:
        raise ConfigurationError('Action definition requires a type')
    text = str(raw).upper()
    if text in _TYPE_ALIASES:
        return _TYPE_ALIASES[text]
    try:
        return ActionType(text)
    except ValueError:
        raise ConfigurationError(
            f'Unknown action type {raw!r}; expected one of '
            f'{[t.value for t in ActionType]}'
        ) from None


def from_definition(definition: Mapping[str, Any], **defaults: Any) -> Action:
    """Build an action from a raw definition.

    ``defaults`` (``service``, ``base_url``) come from the enclosing action
    file and only apply to the REST and WebSocket variants.
    """
    kind = action_type(definition.get('type'))
    variant = _VARIANTS[kind]
    if kind in (ActionType.REST, ActionType.WEBSOCKET):
        return variant.from_definition(definition, **defaults)
    return variant.from_definition(definition)


def from_template(override: Mapping[str, Any], template: Action) -> Action:
    """Specialize ``template`` with the fields of ``override``."""
    raw_type = override.get('type')
    if raw_type is not None and action_type(raw_type) != template.type:
        raise ConfigurationError(
            f'Cannot derive a {raw_type} action from {template.type.value} '
            f'template {template.name!r}'
        )
    return _VARIANTS[template.type].from_template(override, template)


def invoke_action(action: Action, scenario: Scenario, services: Services) -> Invocation:
    return _INVOKERS[action.type](action, scenario, services)


__all__ = [
    'Action',
    'ActionFields',
    'ActionType',
    'Invocation',
    'MqttPublishAction',
    'MqttSubscribeAction',
    'RestAction',
    'Services',
    'WebSocketAction',
    'action_type',
    'from_definition',
    'from_template',
    'invoke_action',
]
