"""WebSocket action: open a socket, optionally send once, count relevant messages.

The invocation completes when the server closes the socket. An abnormal
closure (1006) triggers a reconnect, up to ``ws_max_reconnects`` times; the
initial payload is never re-sent. The runner force-closes any socket still
open when the scenario ends.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode

from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import (
    ConfigurationError,
    CountMismatchError,
    ProtocolError,
    ScenarioError,
    TransportError,
)
from ..expressions import resolve_mapping, resolve_string, resolve_value, scope_for, to_text
from ..observability.logging import get_logger
from ..scenario import Scenario
from .base import (
    ActionFields,
    ActionType,
    Invocation,
    Services,
    as_tuple,
    common_fields,
    merge_data,
    merge_mapping,
    merged_common_fields,
    message_is_relevant,
    pick,
    start_invocation,
)

logger = get_logger(__name__)

ABNORMAL_CLOSURE = 1006


@dataclass(frozen=True, slots=True, kw_only=True)
class WebSocketAction(ActionFields):
    """Socket session against a named service.

    ``headers`` are resolved and sent as URL query parameters, not as HTTP
    headers.
    """

    type: ActionType = field(default=ActionType.WEBSOCKET, init=False)
    service: str
    url: str
    expected_number_of_messages: int
    headers: Mapping[str, Any] | None = None
    data: Any = None
    message_filter: tuple[str, ...] = ()

    @classmethod
    def from_definition(
        cls,
        definition: Mapping[str, Any],
        *,
        service: str = '',
        base_url: str = '',
    ) -> WebSocketAction:
        url = definition.get('url')
        if not url:
            endpoint = definition.get('endpoint', '')
            url = f'{base_url.rstrip("/")}{endpoint}' if base_url else endpoint
        if not url:
            raise ConfigurationError(
                f'WebSocket action {definition.get("name")!r} needs a url or endpoint'
            )
        expected = definition.get('expectedNumberOfMessages')
        if expected is None:
            raise ConfigurationError(
                f'WebSocket action {definition.get("name")!r} is missing '
                f"'expectedNumberOfMessages'"
            )
        return cls(
            **common_fields(definition),
            service=definition.get('service') or service or url,
            url=url,
            expected_number_of_messages=int(expected),
            headers=definition.get('headers'),
            data=definition.get('data'),
            message_filter=as_tuple(definition.get('messageFilter')),
        )

    @classmethod
    def from_template(
        cls, override: Mapping[str, Any], template: WebSocketAction,
    ) -> WebSocketAction:
        filters = override.get('messageFilter')
        return cls(
            **merged_common_fields(override, template),
            service=pick(override, 'service', template.service),
            url=pick(override, 'url', template.url),
            expected_number_of_messages=int(
                pick(override, 'expectedNumberOfMessages', template.expected_number_of_messages)
            ),
            headers=merge_mapping(template.headers, override.get('headers')),
            data=merge_data(template.data, override.get('data')),
            message_filter=template.message_filter if filters is None else as_tuple(filters),
        )


def invoke(action: WebSocketAction, scenario: Scenario, services: Services) -> Invocation:
    session = _WebSocketSession(action, scenario, services)
    return start_invocation(
        session.run(), name=f'{scenario.name}:{action.name}', close=session.close,
    )


class _WebSocketSession:
    """Connection state shared across the reconnects of one invocation."""

    def __init__(self, action: WebSocketAction, scenario: Scenario, services: Services) -> None:
        self._action = action
        self._scenario = scenario
        self._services = services
        self._connection: Any = None
        self._closing = False
        self.messages: list[Any] = []
        self.reconnects = 0
        self.payload_sent = False

    async def run(self) -> int:
        action = self._action
        scope = scope_for(self._scenario.cache)
        url = self._url(scope)
        payload = resolve_value(action.data, scope)

        while True:
            connection = await self._connect(url)
            self._connection = connection
            logger.debug('ws_opened', url=url, reconnects=self.reconnects)

            if payload and not self.payload_sent:
                text = json.dumps(payload)
                await connection.send(text)
                self.payload_sent = True
                logger.debug('ws_sent', payload=text)

            try:
                async for raw in connection:
                    self._on_message(raw)
            except ConnectionClosed:
                pass
            except ScenarioError:
                await connection.close()
                raise

            close_code = connection.close_code
            if (
                close_code == ABNORMAL_CLOSURE
                and not self._closing
                and self.reconnects < self._services.ws_max_reconnects
            ):
                self.reconnects += 1
                logger.warning(
                    'ws_reconnecting',
                    attempt=self.reconnects,
                    max_reconnects=self._services.ws_max_reconnects,
                )
                continue

            logger.debug('ws_closed', close_code=close_code, received=len(self.messages))
            break

        if len(self.messages) != action.expected_number_of_messages:
            error = CountMismatchError(
                action.expected_number_of_messages, len(self.messages), source=action.service,
            )
            logger.error('ws_count_mismatch', error=str(error))
            raise error
        return len(self.messages)

    async def close(self) -> None:
        """Force-close the socket; used by the runner at scenario end."""
        self._closing = True
        if self._connection is not None:
            await self._connection.close()

    async def _connect(self, url: str) -> Any:
        try:
            return await self._services.ws_connect(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.error('ws_connect_failed', url=url, error=str(exc))
            raise TransportError(f'Cannot open WebSocket to {url}: {exc}') from exc

    def _on_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError as exc:
            raise ProtocolError(f'WebSocket message is not valid JSON: {exc}') from exc

        if not message_is_relevant(self._action.message_filter, self._scenario.cache, message):
            logger.debug('ws_irrelevant_message', message=message)
            return

        self.messages.append(raw)
        logger.debug(
            'ws_relevant_message',
            received=len(self.messages),
            expected=self._action.expected_number_of_messages,
            message=message,
        )
        self._services.recorder.record_async_message(
            self._scenario.name, self._action.service, message,
            self._action.diagram_configuration,
        )

    def _url(self, scope: dict[str, Any]) -> str:
        url = to_text(resolve_string(self._action.url, scope))
        query = {
            key: to_text(value)
            for key, value in resolve_mapping(self._action.headers, scope).items()
        }
        if not query:
            return url
        separator = '&' if '?' in url else '?'
        return f'{url}{separator}{urlencode(query)}'
