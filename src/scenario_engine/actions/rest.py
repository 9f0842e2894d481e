"""REST action: one HTTP request with validation and variable extraction.

Invocation protocol:
1. Resolve URL, query parameters, headers, form and body against the cache.
2. Send with up to ``rest_max_attempts`` attempts and a fixed delay between
   them; only transport failures (``httpx.TransportError``) are retried.
3. Record the outgoing request once, whatever the outcome.
4. Expected status: validate predicates starting with ``head``, parse the
   body, validate predicates starting with ``res``, then store ``variables``
   rules into the cache.
5. Unexpected status: record the failed response and raise ProtocolError.
"""

from __future__ import annotations

import asyncio
import re
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import httpx

from ..errors import (
    ConfigurationError,
    ExpressionError,
    ProtocolError,
    TransportError,
    ValidationError,
)
from ..expressions import (
    evaluate,
    resolve_mapping,
    resolve_string,
    resolve_value,
    scope_for,
    to_text,
)
from ..observability.logging import get_logger
from ..scenario import Scenario
from .base import (
    ActionFields,
    ActionType,
    Invocation,
    Services,
    append_list,
    as_tuple,
    common_fields,
    merge_data,
    merge_mapping,
    merged_common_fields,
    pick,
    start_invocation,
)

logger = get_logger(__name__)

DEFAULT_EXPECTED_STATUS_CODES = (200, 201, 204)

_FILE_PREFIX = 'file:'

# Validations apply to the headers or the body depending on what they start with.
_VALIDATION_TARGET_RE = re.compile(r'\s*(res|head)\b')


@dataclass(frozen=True, slots=True, kw_only=True)
class RestAction(ActionFields):
    """HTTP request against a named service."""

    type: ActionType = field(default=ActionType.REST, init=False)
    service: str
    url: str
    method: str = 'GET'
    query_parameters: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, Any] | None = None
    data: Any = None
    data_binary: str | None = None
    form: Mapping[str, Any] | None = None
    variable_as_payload: str | None = None
    response_validation: tuple[str, ...] = ()
    variables: Mapping[str, str] = field(default_factory=dict)
    expected_status_codes: tuple[int, ...] = DEFAULT_EXPECTED_STATUS_CODES
    client_certificate: str | None = None
    client_key: str | None = None
    expect_binary_response: bool = False

    @classmethod
    def from_definition(
        cls,
        definition: Mapping[str, Any],
        *,
        service: str = '',
        base_url: str = '',
    ) -> RestAction:
        url = definition.get('url')
        if not url:
            endpoint = definition.get('endpoint', '')
            url = f'{base_url.rstrip("/")}{endpoint}' if base_url else endpoint
        if not url:
            raise ConfigurationError(
                f'REST action {definition.get("name")!r} needs a url or endpoint'
            )
        return cls(
            **common_fields(definition),
            service=definition.get('service') or service or url,
            url=url,
            method=str(definition.get('method', 'GET')).upper(),
            query_parameters=dict(definition.get('queryParameters') or {}),
            headers=definition.get('headers'),
            data=definition.get('data'),
            data_binary=definition.get('dataBinary'),
            form=definition.get('form'),
            variable_as_payload=definition.get('variableAsPayload'),
            response_validation=as_tuple(definition.get('responseValidation')),
            variables=dict(definition.get('variables') or {}),
            expected_status_codes=tuple(
                definition.get('expectedStatusCodes') or DEFAULT_EXPECTED_STATUS_CODES
            ),
            client_certificate=definition.get('clientCertificate'),
            client_key=definition.get('clientKey'),
            expect_binary_response=bool(definition.get('expectBinaryResponse', False)),
        )

    @classmethod
    def from_template(cls, override: Mapping[str, Any], template: RestAction) -> RestAction:
        return cls(
            **merged_common_fields(override, template),
            service=pick(override, 'service', template.service),
            url=pick(override, 'url', template.url),
            method=str(pick(override, 'method', template.method)).upper(),
            query_parameters=merge_mapping(
                template.query_parameters, override.get('queryParameters'),
            ) or {},
            headers=merge_mapping(template.headers, override.get('headers')),
            data=merge_data(template.data, override.get('data')),
            data_binary=pick(override, 'dataBinary', template.data_binary),
            form=merge_mapping(template.form, override.get('form')),
            variable_as_payload=pick(override, 'variableAsPayload', template.variable_as_payload),
            response_validation=append_list(
                template.response_validation, override.get('responseValidation'),
            ),
            variables=merge_mapping(template.variables, override.get('variables')) or {},
            expected_status_codes=tuple(
                pick(override, 'expectedStatusCodes', template.expected_status_codes)
            ),
            client_certificate=pick(override, 'clientCertificate', template.client_certificate),
            client_key=pick(override, 'clientKey', template.client_key),
            expect_binary_response=bool(
                pick(override, 'expectBinaryResponse', template.expect_binary_response)
            ),
        )


def invoke(action: RestAction, scenario: Scenario, services: Services) -> Invocation:
    call = _RestCall(action, scenario, services)
    return start_invocation(call.run(), name=f'{scenario.name}:{action.name}')


@dataclass(slots=True)
class _RequestBody:
    json: Any = None
    content: str | bytes | None = None
    diagram: Any = None


class _RestCall:
    """State of a single REST invocation."""

    def __init__(self, action: RestAction, scenario: Scenario, services: Services) -> None:
        self._action = action
        self._scenario = scenario
        self._services = services

    async def run(self) -> Any:
        action = self._action
        scope = scope_for(self._scenario.cache)

        url = httpx.URL(to_text(resolve_string(action.url, scope)))
        params = resolve_mapping(action.query_parameters, scope)
        if params:
            url = url.copy_merge_params(params)
        headers = {
            key: to_text(value)
            for key, value in resolve_mapping(action.headers, scope).items()
        }
        form = resolve_mapping(action.form, scope) or None
        body = self._request_body(scope)
        summary = f'{action.method} {url.raw_path.decode("ascii")}'

        logger.debug(
            'rest_request',
            method=action.method,
            url=str(url),
            headers=headers,
            expected_status_codes=list(action.expected_status_codes),
        )

        tls_client = self._tls_client(scope)
        client = tls_client or self._services.http_client
        owned = client is None
        if client is None:
            client = httpx.AsyncClient(timeout=self._services.rest_timeout_seconds)

        try:
            try:
                response = await self._send(
                    client,
                    method=action.method,
                    url=url,
                    headers=headers or None,
                    json=body.json,
                    content=body.content,
                    data=form,
                )
            finally:
                self._services.recorder.record_request(
                    self._scenario.name,
                    action.service,
                    summary,
                    body.diagram,
                    action.diagram_configuration,
                )
        finally:
            if owned or tls_client is not None:
                await client.aclose()

        return self._handle_response(response)

    async def _send(self, client: httpx.AsyncClient, **request: Any) -> httpx.Response:
        """Execute the request, retrying transport failures with a fixed delay."""
        max_attempts = self._services.rest_max_attempts
        delay = self._services.rest_retry_delay

        for attempt in range(1, max_attempts + 1):
            try:
                return await client.request(
                    timeout=self._services.rest_timeout_seconds, **request,
                )
            except httpx.TransportError as exc:
                if attempt >= max_attempts:
                    raise TransportError(
                        f'{request["method"]} {request["url"]} failed after '
                        f'{attempt} attempts: {type(exc).__name__}: {exc}'
                    ) from exc
                logger.warning(
                    'rest_transport_retry',
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay=delay,
                    error=f'{type(exc).__name__}: {exc}',
                )
                await asyncio.sleep(delay)

        # Should not reach here, but guard against it.
        raise TransportError('exhausted retries with no response')

    def _handle_response(self, response: httpx.Response) -> Any:
        action = self._action
        recorder = self._services.recorder
        scenario_name = self._scenario.name
        status = f'{response.reason_phrase} ({response.status_code})'

        if response.status_code not in action.expected_status_codes:
            logger.error(
                'rest_unexpected_status',
                status=response.status_code,
                reason=response.reason_phrase,
                body=response.text[:1000],
            )
            recorder.record_failed_response(
                scenario_name, action.service, status, response.text,
                action.diagram_configuration,
            )
            raise ProtocolError(
                f'Unexpected status {response.status_code} '
                f'(expected one of {list(action.expected_status_codes)})',
                status_code=response.status_code,
                body=response.text,
            )

        logger.debug(
            'rest_response',
            status=response.status_code,
            reason=response.reason_phrase,
            headers=dict(response.headers),
        )

        head = dict(response.headers)
        try:
            self._validate('head', scope_for(self._scenario.cache, head=head), 'Header')
        except (ValidationError, ExpressionError) as exc:
            recorder.record_validation_failure(
                scenario_name, action.service, status, str(exc), head,
                action.diagram_configuration,
            )
            raise

        res: Any = None
        if response.content:
            res = self._parse_body(response)
            try:
                self._validate('res', scope_for(self._scenario.cache, res=res, head=head), 'Body')
            except (ValidationError, ExpressionError) as exc:
                recorder.record_validation_failure(
                    scenario_name, action.service, status, str(exc), res,
                    action.diagram_configuration,
                )
                raise
        recorder.record_response(
            scenario_name, action.service, status, res, action.diagram_configuration,
        )

        self._store_variables(res=res, head=head, has_body=bool(response.content))
        return res

    def _validate(self, target: str, scope: dict[str, Any], what: str) -> None:
        for validation in self._action.response_validation:
            match = _VALIDATION_TARGET_RE.match(validation)
            if match is None or match.group(1) != target:
                continue
            result = evaluate(validation, scope)
            if not result:
                logger.error('validation_failed', kind=what.lower(), validation=validation, result=result)
                raise ValidationError(f'{what} failed validation: ({validation})')
            logger.debug('validation_passed', kind=what.lower(), validation=validation, result=result)

    def _store_variables(self, *, res: Any, head: dict[str, str], has_body: bool) -> None:
        cache = self._scenario.cache
        for key, source in self._action.variables.items():
            if source.startswith('res') and has_body:
                cache.set(key, evaluate(source, scope_for(cache, res=res, head=head)))
            elif source.startswith('head'):
                cache.set(key, evaluate(source, scope_for(cache, res=res, head=head)))
            else:
                continue
            logger.debug('cache_set', key=key, value=cache.get(key))

    def _parse_body(self, response: httpx.Response) -> Any:
        if self._action.expect_binary_response:
            return response.content

        content_type = response.headers.get('content-type', '')
        if content_type.startswith('application/json'):
            try:
                return response.json()
            except ValueError as exc:
                raise ProtocolError(
                    f'Response declared {content_type} but the body is not valid JSON',
                    status_code=response.status_code,
                    body=response.text,
                ) from exc
        if content_type.startswith('text/plain'):
            return response.text

        logger.debug('rest_opaque_body', content_type=content_type, size=len(response.content))
        return response.content

    def _request_body(self, scope: dict[str, Any]) -> _RequestBody:
        action = self._action
        if action.data is not None:
            data = resolve_value(action.data, scope)
            return _RequestBody(json=data, diagram=data)

        if action.data_binary is not None:
            path = Path(to_text(resolve_string(action.data_binary, scope)))
            try:
                return _RequestBody(content=path.read_bytes())
            except OSError as exc:
                raise ConfigurationError(f'Cannot read dataBinary file {path}: {exc}') from exc

        if action.variable_as_payload is not None:
            payload = self._scenario.cache.get(action.variable_as_payload)
            if not isinstance(payload, (str, bytes)):
                raise ValidationError(
                    f'Variable {action.variable_as_payload} is not of type str or '
                    f'bytes and cannot be used as payload.'
                )
            return _RequestBody(content=payload, diagram=payload)

        return _RequestBody()

    def _tls_client(self, scope: dict[str, Any]) -> httpx.AsyncClient | None:
        """Dedicated client presenting the action's client certificate."""
        action = self._action
        if not (action.client_certificate and action.client_key):
            return None

        certificate = _read_file_or_input(to_text(resolve_string(action.client_certificate, scope)))
        key = _read_file_or_input(to_text(resolve_string(action.client_key, scope)))

        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        with tempfile.TemporaryDirectory() as tmp:
            cert_path = Path(tmp) / 'client_cert.pem'
            key_path = Path(tmp) / 'client_key.pem'
            cert_path.write_bytes(certificate)
            key_path.write_bytes(key)
            try:
                context.load_cert_chain(cert_path, key_path)
            except (ssl.SSLError, OSError) as exc:
                raise ConfigurationError(f'Invalid client certificate or key: {exc}') from exc

        return httpx.AsyncClient(verify=context, timeout=self._services.rest_timeout_seconds)


def _read_file_or_input(value: str) -> bytes:
    if value.startswith(_FILE_PREFIX):
        path = Path(value[len(_FILE_PREFIX):])
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f'Cannot read {path}: {exc}') from exc
    return value.encode('utf-8')
