"""Error hierarchy for scenario execution.

Every error an action raises ends up as a failed ``TestResult``; the
runner is the only place that converts them. Transport retries (REST) and
reconnects (WebSocket) are handled inside the action and only surface here
once exhausted.
"""

from __future__ import annotations


class ScenarioError(Exception):
    """Base error for anything that fails an action invocation."""


class TransportError(ScenarioError):
    """Network or connection failure."""


class ProtocolError(ScenarioError):
    """Unexpected status code, subscribe error, or malformed message."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str = '',
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ValidationError(ScenarioError):
    """A header or body predicate evaluated falsy or raised."""


class CountMismatchError(ScenarioError):
    """Received message count differs from the expected count."""

    def __init__(self, expected: int, received: int, *, source: str = '') -> None:
        self.expected = expected
        self.received = received
        self.source = source
        where = f' on {source}' if source else ''
        super().__init__(
            f'Unexpected number of messages received{where}: '
            f'{received}/{expected}'
        )


class ExpressionError(ScenarioError):
    """Malformed template/filter expression, unknown name, or runtime error."""


class ProtoCodecError(ScenarioError):
    """Protobuf schema compile, encode, or decode failure."""


class ConfigurationError(ScenarioError):
    """Invalid action or scenario definition."""
