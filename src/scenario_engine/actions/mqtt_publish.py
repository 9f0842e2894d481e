"""MQTT publish action: send one message and disconnect.

Broker and publish failures are logged without failing the action;
resolution and encoding failures still fail it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping

import aiomqtt

from ..errors import ConfigurationError
from ..expressions import resolve_string, resolve_value, scope_for, to_text
from ..observability.logging import get_logger
from ..scenario import Scenario
from .base import (
    ActionFields,
    ActionType,
    Invocation,
    Services,
    common_fields,
    merge_data,
    merged_common_fields,
    pick,
    start_invocation,
)
from .broker import broker_options, client_identifier

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class MqttPublishAction(ActionFields):
    """Publish a JSON or protobuf payload to a topic."""

    type: ActionType = field(default=ActionType.MQTT_PUBLISH, init=False)
    url: str
    topic: str
    data: Any = None
    username: str | None = None
    password: str | None = None
    allow_insecure: bool = False
    proto_file: str | None = None
    proto_class: str | None = None

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any]) -> MqttPublishAction:
        for key in ('url', 'topic'):
            if not definition.get(key):
                raise ConfigurationError(
                    f'MQTT publish action {definition.get("name")!r} is missing {key!r}'
                )
        return cls(
            **common_fields(definition),
            url=definition['url'],
            topic=definition['topic'],
            data=definition.get('data'),
            username=definition.get('username'),
            password=definition.get('password'),
            allow_insecure=bool(definition.get('allowInsecure', False)),
            proto_file=definition.get('protoFile'),
            proto_class=definition.get('protoClass'),
        )

    @classmethod
    def from_template(
        cls, override: Mapping[str, Any], template: MqttPublishAction,
    ) -> MqttPublishAction:
        return cls(
            **merged_common_fields(override, template),
            url=pick(override, 'url', template.url),
            topic=pick(override, 'topic', template.topic),
            data=merge_data(template.data, override.get('data')),
            username=pick(override, 'username', template.username),
            password=pick(override, 'password', template.password),
            allow_insecure=bool(pick(override, 'allowInsecure', template.allow_insecure)),
            proto_file=pick(override, 'protoFile', template.proto_file),
            proto_class=pick(override, 'protoClass', template.proto_class),
        )


def invoke(action: MqttPublishAction, scenario: Scenario, services: Services) -> Invocation:
    return start_invocation(
        _publish(action, scenario, services), name=f'{scenario.name}:{action.name}',
    )


async def _publish(action: MqttPublishAction, scenario: Scenario, services: Services) -> bool:
    """Returns whether the message reached the broker."""
    scope = scope_for(scenario.cache)
    topic = to_text(resolve_string(action.topic, scope))
    data = resolve_value(action.data, scope)
    if action.proto_file:
        payload: bytes | str = services.proto_codec.encode(
            action.proto_file, action.proto_class or '', data or {},
        )
    else:
        payload = json.dumps(data)

    credentials = {
        key: to_text(resolve_string(value, scope))
        for key, value in (('username', action.username), ('password', action.password))
        if value is not None
    }
    client = services.mqtt_client_factory(
        **broker_options(action.url, allow_insecure=action.allow_insecure),
        **credentials,
        identifier=client_identifier(action.name),
        keepalive=services.mqtt_keepalive,
    )

    try:
        async with client:
            logger.debug('mqtt_connected', url=action.url)
            await client.publish(topic, payload)
    except aiomqtt.MqttError as exc:
        logger.error('mqtt_publish_failed', url=action.url, topic=topic, error=str(exc))
        return False

    logger.debug('mqtt_published', topic=topic, payload=data)
    services.recorder.record_mqtt_publish(
        scenario.name, topic, {'payload': data}, action.diagram_configuration,
    )
    return True
