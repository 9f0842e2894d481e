"""MQTT broker connection options shared by the subscribe and publish actions."""

from __future__ import annotations

import secrets
import ssl
from typing import Any
from urllib.parse import urlsplit

from ..errors import ConfigurationError

_DEFAULT_PORTS = {
    'mqtt': 1883,
    'tcp': 1883,
    'mqtts': 8883,
    'ssl': 8883,
    'tls': 8883,
    'ws': 80,
    'wss': 443,
}

_TLS_SCHEMES = frozenset({'mqtts', 'ssl', 'tls', 'wss'})
_WEBSOCKET_SCHEMES = frozenset({'ws', 'wss'})


def broker_options(url: str, *, allow_insecure: bool = False) -> dict[str, Any]:
    """Translate a broker URL into ``aiomqtt.Client`` keyword arguments.

    Supported schemes: ``mqtt``/``tcp``, ``mqtts``/``ssl``/``tls``, ``ws``
    and ``wss``. ``allow_insecure`` disables certificate and hostname
    verification on TLS connections.
    """
    parsed = urlsplit(url if '://' in url else f'mqtt://{url}')
    scheme = parsed.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ConfigurationError(f'Unsupported MQTT broker scheme {scheme!r} in {url}')
    if not parsed.hostname:
        raise ConfigurationError(f'MQTT broker URL has no host: {url}')

    options: dict[str, Any] = {
        'hostname': parsed.hostname,
        'port': parsed.port or _DEFAULT_PORTS[scheme],
    }
    if scheme in _WEBSOCKET_SCHEMES:
        options['transport'] = 'websockets'
        options['websocket_path'] = parsed.path or '/'
    if scheme in _TLS_SCHEMES:
        context = ssl.create_default_context()
        if allow_insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        options['tls_context'] = context
        options['tls_insecure'] = allow_insecure
    return options


def client_identifier(action_name: str) -> str:
    """Action name plus a random suffix, unique per connection."""
    return f'{action_name}{secrets.token_hex(4)}'
