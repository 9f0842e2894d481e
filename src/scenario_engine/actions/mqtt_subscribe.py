"""MQTT subscribe action: count relevant messages over a fixed listen window."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

import aiomqtt

from ..errors import (
    ConfigurationError,
    CountMismatchError,
    ProtoCodecError,
    ProtocolError,
    TransportError,
)
from ..expressions import resolve_string, scope_for, to_text
from ..observability.logging import get_logger
from ..scenario import Scenario
from .base import (
    ActionFields,
    ActionType,
    Invocation,
    Services,
    as_tuple,
    common_fields,
    merged_common_fields,
    message_is_relevant,
    pick,
    start_invocation,
)
from .broker import broker_options, client_identifier

logger = get_logger(__name__)

MESSAGE_TYPES = ('json', 'proto')

# Text encodings a proto payload may arrive in, keyed by their wire names.
_TEXT_CODECS = {
    'ascii': 'ascii',
    'utf8': 'utf-8',
    'utf-8': 'utf-8',
    'utf16le': 'utf-16-le',
    'ucs2': 'utf-16-le',
    'ucs-2': 'utf-16-le',
    'latin1': 'latin-1',
    'binary': 'latin-1',
}


@dataclass(frozen=True, slots=True, kw_only=True)
class MqttSubscribeAction(ActionFields):
    """Listen on a topic and expect an exact number of relevant messages."""

    type: ActionType = field(default=ActionType.MQTT_SUBSCRIBE, init=False)
    url: str
    topic: str
    duration_seconds: float
    expected_number_of_messages: int
    username: str | None = None
    password: str | None = None
    allow_insecure: bool = False
    message_type: str = 'json'
    message_filter: tuple[str, ...] = ()
    message_encoding: str | None = None
    proto_file: str | None = None
    proto_class: str | None = None

    def __post_init__(self) -> None:
        if self.message_type not in MESSAGE_TYPES:
            raise ConfigurationError(
                f'{self.name}: messageType must be one of {MESSAGE_TYPES}, '
                f'got {self.message_type!r}'
            )
        if self.message_type == 'proto' and not (self.proto_file and self.proto_class):
            raise ConfigurationError(f'{self.name}: proto messages need protoFile and protoClass')
        if self.message_encoding is not None and self.message_encoding not in (
            *_TEXT_CODECS, 'base64', 'hex',
        ):
            raise ConfigurationError(
                f'{self.name}: unsupported messageEncoding {self.message_encoding!r}'
            )

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any]) -> MqttSubscribeAction:
        for key in ('url', 'topic', 'durationInSec', 'expectedNumberOfMessages'):
            if definition.get(key) is None:
                raise ConfigurationError(
                    f'MQTT action {definition.get("name")!r} is missing {key!r}'
                )
        return cls(
            **common_fields(definition),
            url=definition['url'],
            topic=definition['topic'],
            duration_seconds=float(definition['durationInSec']),
            expected_number_of_messages=int(definition['expectedNumberOfMessages']),
            username=definition.get('username'),
            password=definition.get('password'),
            allow_insecure=bool(definition.get('allowInsecure', False)),
            message_type=definition.get('messageType') or 'json',
            message_filter=as_tuple(definition.get('messageFilter')),
            message_encoding=definition.get('messageEncoding'),
            proto_file=definition.get('protoFile'),
            proto_class=definition.get('protoClass'),
        )

    @classmethod
    def from_template(
        cls, override: Mapping[str, Any], template: MqttSubscribeAction,
    ) -> MqttSubscribeAction:
        filters = override.get('messageFilter')
        return cls(
            **merged_common_fields(override, template),
            url=pick(override, 'url', template.url),
            topic=pick(override, 'topic', template.topic),
            duration_seconds=float(pick(override, 'durationInSec', template.duration_seconds)),
            expected_number_of_messages=int(
                pick(override, 'expectedNumberOfMessages', template.expected_number_of_messages)
            ),
            username=pick(override, 'username', template.username),
            password=pick(override, 'password', template.password),
            allow_insecure=bool(pick(override, 'allowInsecure', template.allow_insecure)),
            message_type=pick(override, 'messageType', template.message_type),
            message_filter=template.message_filter if filters is None else as_tuple(filters),
            message_encoding=pick(override, 'messageEncoding', template.message_encoding),
            proto_file=pick(override, 'protoFile', template.proto_file),
            proto_class=pick(override, 'protoClass', template.proto_class),
        )


def invoke(action: MqttSubscribeAction, scenario: Scenario, services: Services) -> Invocation:
    subscription = _Subscription(action, scenario, services)
    return start_invocation(subscription.run(), name=f'{scenario.name}:{action.name}')


class _Subscription:
    """One listen window; owns the received-message counter.

    The broker connection is not re-established inside the window: a drop
    fails the invocation with ``TransportError``. A reconnecting client
    would end in the same place, since the first close settles the
    outcome before a retry could count anything.
    """

    def __init__(
        self, action: MqttSubscribeAction, scenario: Scenario, services: Services,
    ) -> None:
        self._action = action
        self._scenario = scenario
        self._services = services
        self.received = 0

    async def run(self) -> int:
        action = self._action
        scope = scope_for(self._scenario.cache)
        topic = to_text(resolve_string(action.topic, scope))
        credentials = {
            key: to_text(resolve_string(value, scope))
            for key, value in (('username', action.username), ('password', action.password))
            if value is not None
        }

        client = self._services.mqtt_client_factory(
            **broker_options(action.url, allow_insecure=action.allow_insecure),
            **credentials,
            identifier=client_identifier(action.name),
            keepalive=self._services.mqtt_keepalive,
        )

        try:
            async with client:
                logger.debug(
                    'mqtt_connected', url=action.url, duration_seconds=action.duration_seconds,
                )
                await self._subscribe(client, topic)
                try:
                    await asyncio.wait_for(
                        self._consume(client, topic), timeout=action.duration_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        except aiomqtt.MqttError as exc:
            logger.error('mqtt_connection_error', url=action.url, error=str(exc))
            self._record_missing(topic, str(exc))
            raise TransportError(f'Error during connection to {action.url}: {exc}') from exc

        logger.debug('mqtt_window_closed', topic=topic, received=self.received)
        if self.received != action.expected_number_of_messages:
            error = CountMismatchError(
                action.expected_number_of_messages, self.received, source=topic,
            )
            logger.error('mqtt_count_mismatch', topic=topic, error=str(error))
            self._record_missing(topic, str(error))
            raise error
        return self.received

    async def _subscribe(self, client: Any, topic: str) -> None:
        try:
            await client.subscribe(topic)
        except aiomqtt.MqttError as exc:
            logger.error('mqtt_subscribe_failed', topic=topic, error=str(exc))
            self._record_missing(topic, str(exc))
            raise ProtocolError(f'Error while subscribing to {topic}: {exc}') from exc
        logger.debug('mqtt_subscribed', topic=topic)

    async def _consume(self, client: Any, topic: str) -> None:
        # Runs until the listen window cancels it.
        async for message in client.messages:
            try:
                decoded = self._decode(message.payload)
            except (ProtocolError, ProtoCodecError) as exc:
                logger.error('mqtt_undecodable_message', topic=topic, error=str(exc))
                self._record_missing(topic, str(exc))
                raise
            if message_is_relevant(self._action.message_filter, self._scenario.cache, decoded):
                self.received += 1
                logger.debug(
                    'mqtt_relevant_message',
                    received=self.received,
                    expected=self._action.expected_number_of_messages,
                    message=decoded,
                )
                self._services.recorder.record_mqtt_message(
                    self._scenario.name, topic, decoded, self._action.diagram_configuration,
                )
            else:
                logger.debug('mqtt_irrelevant_message', message=decoded)

    def _decode(self, payload: Any) -> Any:
        action = self._action
        if action.message_type == 'proto':
            data = _payload_bytes(payload, action.message_encoding)
            return self._services.proto_codec.decode(action.proto_file, action.proto_class, data)

        try:
            return json.loads(payload)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f'MQTT message on {action.topic} is not valid JSON: {exc}') from exc

    def _record_missing(self, topic: str, reason: str) -> None:
        self._services.recorder.record_missing_messages(
            self._scenario.name,
            topic,
            self._action.expected_number_of_messages,
            self.received,
            reason,
        )


def _payload_bytes(payload: Any, encoding: str | None) -> bytes:
    """Raw proto bytes from a payload, honouring a configured text encoding."""
    if isinstance(payload, (bytes, bytearray)) and encoding not in ('base64', 'hex'):
        return bytes(payload)

    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode('ascii')
        text = str(payload)
        if encoding == 'base64':
            return base64.b64decode(text)
        if encoding == 'hex':
            return bytes.fromhex(text)
        return text.encode(_TEXT_CODECS.get(encoding or 'utf-8', 'utf-8'))
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f'Cannot decode {encoding} payload: {exc}') from exc
