"""Tests for the WebSocket action session.

The websockets ``connect`` function is replaced by a scripted fake server
handing out one fake connection per connect attempt.

Validates:
  - Abnormal closure (1006) reconnects, bounded, payload sent once
  - Relevance filtering and the close-time count check
  - Headers serialized as query parameters
  - cancel() force-closes the open socket
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError, InvalidURI

from scenario_engine.actions import Services, from_definition, invoke_action
from scenario_engine.diagrams import PlantUmlRecorder
from scenario_engine.errors import CountMismatchError, ProtocolError, TransportError


# ── Fakes ──────────────────────────────────────────────────────────


class FakeConnection:
    """Delivers scripted messages, then closes with ``close_code``.

    With ``hold=True`` the connection stays open after its messages until
    ``close()`` is called.
    """

    def __init__(self, messages: list[Any] = (), *, close_code: int = 1000, hold: bool = False):
        self._messages = list(messages)
        self._final_code = close_code
        self._hold = hold
        self._closed = asyncio.Event()
        self.close_code: int | None = None
        self.sent: list[str] = []
        self.close_calls = 0

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_code is None:
            self.close_code = 1000
        self._closed.set()

    def __aiter__(self):
        return self._receive()

    async def _receive(self):
        for message in self._messages:
            yield message
        if self._hold:
            await self._closed.wait()
            return
        self.close_code = self._final_code
        if self._final_code == 1006:
            raise ConnectionClosedError(None, None)


class FakeServer:
    def __init__(self, *connections: FakeConnection | Exception) -> None:
        self._script = list(connections)
        self.urls: list[str] = []
        self.opened: list[FakeConnection] = []

    async def connect(self, url: str) -> FakeConnection:
        self.urls.append(url)
        step = self._script.pop(0)
        if isinstance(step, Exception):
            raise step
        self.opened.append(step)
        return step


def _socket(**overrides):
    definition = {
        'name': 'events',
        'type': 'WEBSOCKET',
        'url': 'ws://events/stream',
        'expectedNumberOfMessages': 1,
    }
    definition.update(overrides)
    return from_definition(definition, service='event-service')


def _services(server: FakeServer, tmp_path, **kwargs) -> Services:
    return Services(ws_connect=server.connect, recorder=PlantUmlRecorder(tmp_path), **kwargs)


def _msg(**fields: Any) -> str:
    return json.dumps(fields)


# ── Reconnects ─────────────────────────────────────────────────────


class TestReconnect:

    @pytest.mark.asyncio
    async def test_abnormal_closure_reconnects_once_per_closure(self, scenario, tmp_path):
        server = FakeServer(
            FakeConnection([_msg(n=1)], close_code=1006),
            FakeConnection([_msg(n=2)], close_code=1006),
            FakeConnection([_msg(n=3)], close_code=1000),
        )
        action = _socket(expectedNumberOfMessages=3, data={'subscribe': 'all'})

        received = await invoke_action(action, scenario, _services(server, tmp_path))

        assert received == 3
        assert len(server.urls) == 3
        first, second, third = server.opened
        assert first.sent == [json.dumps({'subscribe': 'all'})]
        assert second.sent == []
        assert third.sent == []

    @pytest.mark.asyncio
    async def test_reconnects_are_bounded(self, scenario, tmp_path):
        server = FakeServer(*(FakeConnection(close_code=1006) for _ in range(5)))

        with pytest.raises(CountMismatchError, match='0/1'):
            await invoke_action(_socket(), scenario, _services(server, tmp_path))

        # One initial connect plus three reconnects.
        assert len(server.urls) == 4

    @pytest.mark.asyncio
    async def test_custom_reconnect_limit(self, scenario, tmp_path):
        server = FakeServer(*(FakeConnection(close_code=1006) for _ in range(5)))
        action = _socket(expectedNumberOfMessages=0)

        await invoke_action(action, scenario, _services(server, tmp_path, ws_max_reconnects=1))
        assert len(server.urls) == 2

    @pytest.mark.asyncio
    async def test_normal_close_does_not_reconnect(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(n=1)], close_code=1000))

        assert await invoke_action(_socket(), scenario, _services(server, tmp_path)) == 1
        assert len(server.urls) == 1

    @pytest.mark.asyncio
    async def test_other_close_codes_do_not_reconnect(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([], close_code=1011))

        with pytest.raises(CountMismatchError):
            await invoke_action(_socket(), scenario, _services(server, tmp_path))
        assert len(server.urls) == 1


# ── Messages ───────────────────────────────────────────────────────


class TestMessages:

    @pytest.mark.asyncio
    async def test_irrelevant_messages_not_counted(self, scenario, tmp_path):
        server = FakeServer(
            FakeConnection([_msg(kind='tick'), _msg(kind='alert'), _msg(kind='tick')]),
        )
        services = _services(server, tmp_path)
        action = _socket(messageFilter=["msg.kind === 'alert'"])

        assert await invoke_action(action, scenario, services) == 1
        assert services.recorder.text(scenario.name).count('[WS]') == 1

    @pytest.mark.asyncio
    async def test_identical_messages_counted_separately(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(kind='a'), _msg(kind='a')]))
        action = _socket(expectedNumberOfMessages=2)

        assert await invoke_action(action, scenario, _services(server, tmp_path)) == 2

    @pytest.mark.asyncio
    async def test_count_mismatch_names_service(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(a=1)]))
        action = _socket(expectedNumberOfMessages=2)

        with pytest.raises(CountMismatchError) as exc_info:
            await invoke_action(action, scenario, _services(server, tmp_path))
        assert exc_info.value.source == 'event-service'
        assert '1/2' in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_json_closes_and_fails(self, scenario, tmp_path):
        connection = FakeConnection(['not json'], hold=True)
        server = FakeServer(connection)

        with pytest.raises(ProtocolError, match='not valid JSON'):
            await invoke_action(_socket(), scenario, _services(server, tmp_path))
        assert connection.close_calls == 1

    @pytest.mark.asyncio
    async def test_connect_failure(self, scenario, tmp_path):
        server = FakeServer(OSError('Connection refused'))

        with pytest.raises(TransportError, match='Connection refused'):
            await invoke_action(_socket(), scenario, _services(server, tmp_path))

    @pytest.mark.asyncio
    async def test_handshake_failure(self, scenario, tmp_path):
        server = FakeServer(InvalidURI('nope', 'bad scheme'))

        with pytest.raises(TransportError):
            await invoke_action(_socket(), scenario, _services(server, tmp_path))


# ── Request shaping ────────────────────────────────────────────────


class TestRequest:

    @pytest.mark.asyncio
    async def test_headers_become_query_parameters(self, scenario, tmp_path):
        scenario.cache.set('token', 'abc')
        server = FakeServer(FakeConnection([_msg(a=1)]))
        action = _socket(headers={'token': '{{ token }}', 'channel': 'alerts'})

        await invoke_action(action, scenario, _services(server, tmp_path))
        assert server.urls == ['ws://events/stream?token=abc&channel=alerts']

    @pytest.mark.asyncio
    async def test_query_parameters_appended_to_existing_query(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(a=1)]))
        action = _socket(url='ws://events/stream?v=2', headers={'token': 't'})

        await invoke_action(action, scenario, _services(server, tmp_path))
        assert server.urls == ['ws://events/stream?v=2&token=t']

    @pytest.mark.asyncio
    async def test_payload_resolved_from_cache(self, scenario, tmp_path):
        scenario.cache.set('deviceId', 'd-1')
        server = FakeServer(FakeConnection([_msg(a=1)]))
        action = _socket(data={'watch': '{{ deviceId }}'})

        await invoke_action(action, scenario, _services(server, tmp_path))
        assert server.opened[0].sent == ['{"watch": "d-1"}']

    @pytest.mark.asyncio
    async def test_no_payload_sends_nothing(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(a=1)]))

        await invoke_action(_socket(), scenario, _services(server, tmp_path))
        assert server.opened[0].sent == []


# ── Cancellation ───────────────────────────────────────────────────


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_force_closes_socket(self, scenario, tmp_path):
        connection = FakeConnection([_msg(a=1)], hold=True)
        server = FakeServer(connection)

        invocation = invoke_action(_socket(), scenario, _services(server, tmp_path))
        assert invocation.cancellable is True
        await asyncio.sleep(0.01)
        assert not invocation.done

        await invocation.cancel()

        assert connection.close_calls == 1
        assert invocation.done
        assert len(server.urls) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_connect(self, scenario, tmp_path):
        server = FakeServer(FakeConnection([_msg(a=1)]))
        invocation = invoke_action(_socket(), scenario, _services(server, tmp_path))

        await invocation.cancel()
        assert invocation.done
