"""Tests for action definitions and template merge rules.

Validates:
  - Parsing camelCase definitions into frozen action values
  - Scalar override, associative merge, list-data concat, validation append
  - Templates are never mutated
  - Tag-based dispatch in from_definition/from_template
"""

from __future__ import annotations

import dataclasses

import pytest

from scenario_engine.actions import (
    ActionType,
    MqttPublishAction,
    MqttSubscribeAction,
    RestAction,
    WebSocketAction,
    action_type,
    from_definition,
    from_template,
)
from scenario_engine.errors import ConfigurationError


REST_TEMPLATE = {
    'name': 'createUser',
    'type': 'REST',
    'method': 'post',
    'url': 'http://users/api/users',
    'headers': {'Authorization': 'Bearer template', 'X-Trace': 'on'},
    'queryParameters': {'verbose': 'true'},
    'data': {'name': 'bob', 'role': 'user'},
    'responseValidation': ['res.id != null'],
    'variables': {'userId': 'res.id'},
}


@pytest.fixture
def template() -> RestAction:
    return from_definition(REST_TEMPLATE, service='user-service')


# ── Parsing ────────────────────────────────────────────────────────


class TestFromDefinition:

    def test_rest_fields(self, template: RestAction):
        assert isinstance(template, RestAction)
        assert template.type == ActionType.REST
        assert template.method == 'POST'
        assert template.service == 'user-service'
        assert template.response_validation == ('res.id != null',)
        assert template.expected_status_codes == (200, 201, 204)
        assert template.description == 'createUser'

    def test_endpoint_joined_with_base_url(self):
        action = from_definition(
            {'name': 'list', 'type': 'REST', 'endpoint': '/users'},
            service='svc',
            base_url='http://host:8080/',
        )
        assert action.url == 'http://host:8080/users'

    def test_actions_are_frozen(self, template: RestAction):
        with pytest.raises(dataclasses.FrozenInstanceError):
            template.url = 'http://elsewhere'  # type: ignore[misc]

    def test_mqtt_alias(self):
        action = from_definition({
            'name': 'listen',
            'type': 'MQTT',
            'url': 'mqtt://broker:1883',
            'topic': 't',
            'durationInSec': 2,
            'expectedNumberOfMessages': 1,
        })
        assert isinstance(action, MqttSubscribeAction)
        assert action.type == ActionType.MQTT_SUBSCRIBE
        assert action.message_type == 'json'

    def test_publish_and_websocket(self):
        publish = from_definition({
            'name': 'pub', 'type': 'MQTT_PUBLISH', 'url': 'mqtt://b', 'topic': 't',
            'data': {'a': 1},
        })
        socket = from_definition(
            {'name': 'ws', 'type': 'WEBSOCKET', 'endpoint': '/events', 'expectedNumberOfMessages': 2},
            service='events',
            base_url='ws://events',
        )
        assert isinstance(publish, MqttPublishAction)
        assert isinstance(socket, WebSocketAction)
        assert socket.url == 'ws://events/events'
        assert socket.service == 'events'

    def test_unknown_type_rejected(self):
        with pytest.raises(ConfigurationError, match='Unknown action type'):
            action_type('SOAP')

    def test_missing_name_rejected(self):
        with pytest.raises(ConfigurationError, match='name'):
            from_definition({'type': 'REST', 'url': 'http://x'})

    def test_mqtt_missing_topic_rejected(self):
        with pytest.raises(ConfigurationError, match='topic'):
            from_definition({
                'name': 'listen', 'type': 'MQTT_SUBSCRIBE', 'url': 'mqtt://b',
                'durationInSec': 1, 'expectedNumberOfMessages': 1,
            })

    def test_proto_requires_schema(self):
        with pytest.raises(ConfigurationError, match='protoFile'):
            from_definition({
                'name': 'listen', 'type': 'MQTT_SUBSCRIBE', 'url': 'mqtt://b', 'topic': 't',
                'durationInSec': 1, 'expectedNumberOfMessages': 1, 'messageType': 'proto',
            })


# ── Merge rules ────────────────────────────────────────────────────


class TestRestTemplateMerge:

    def test_overriding_one_header_keeps_the_others(self, template: RestAction):
        action = from_template({'headers': {'Authorization': 'Bearer {{ token }}'}}, template)
        assert action.headers == {'Authorization': 'Bearer {{ token }}', 'X-Trace': 'on'}

    def test_scalar_override(self, template: RestAction):
        action = from_template({'method': 'put', 'url': 'http://users/api/users/1'}, template)
        assert action.method == 'PUT'
        assert action.url == 'http://users/api/users/1'
        assert action.service == 'user-service'

    def test_scalars_kept_when_absent(self, template: RestAction):
        action = from_template({}, template)
        assert action.url == template.url
        assert action.method == template.method
        assert action.expected_status_codes == template.expected_status_codes

    def test_data_mapping_merged(self, template: RestAction):
        action = from_template({'data': {'role': 'admin'}}, template)
        assert action.data == {'name': 'bob', 'role': 'admin'}

    def test_data_list_concatenated(self):
        base = from_definition(
            {'name': 'bulk', 'type': 'REST', 'url': 'http://x', 'data': [{'id': 1}]},
        )
        action = from_template({'data': [{'id': 2}]}, base)
        assert action.data == [{'id': 1}, {'id': 2}]

    def test_validations_appended(self, template: RestAction):
        action = from_template({'responseValidation': ["res.role === 'admin'"]}, template)
        assert action.response_validation == ('res.id != null', "res.role === 'admin'")

    def test_variables_merged(self, template: RestAction):
        action = from_template({'variables': {'role': 'res.role'}}, template)
        assert action.variables == {'userId': 'res.id', 'role': 'res.role'}

    def test_query_parameters_merged(self, template: RestAction):
        action = from_template({'queryParameters': {'page': '2'}}, template)
        assert action.query_parameters == {'verbose': 'true', 'page': '2'}

    def test_description_from_override_name(self, template: RestAction):
        action = from_template({'name': 'createAdmin'}, template)
        assert action.name == 'createAdmin'
        assert action.description == 'createAdmin'

    def test_template_not_mutated(self, template: RestAction):
        before = dataclasses.asdict(template)
        from_template(
            {
                'headers': {'Authorization': 'x'},
                'data': {'role': 'admin'},
                'responseValidation': ['true'],
                'variables': {'v': 'res.v'},
            },
            template,
        )
        assert dataclasses.asdict(template) == before

    def test_type_mismatch_rejected(self, template: RestAction):
        with pytest.raises(ConfigurationError, match='Cannot derive'):
            from_template({'type': 'WEBSOCKET'}, template)


class TestOtherTemplateMerges:

    def test_mqtt_subscribe_override(self):
        base = from_definition({
            'name': 'listen', 'type': 'MQTT_SUBSCRIBE', 'url': 'mqtt://b', 'topic': 'devices/+',
            'durationInSec': 5, 'expectedNumberOfMessages': 1,
            'messageFilter': ["msg.kind === 'a'"],
        })
        action = from_template({'expectedNumberOfMessages': 3, 'topic': 'devices/1'}, base)
        assert action.expected_number_of_messages == 3
        assert action.topic == 'devices/1'
        assert action.duration_seconds == 5.0
        assert action.message_filter == ("msg.kind === 'a'",)

    def test_websocket_headers_merged(self):
        base = from_definition({
            'name': 'ws', 'type': 'WEBSOCKET', 'url': 'ws://x', 'expectedNumberOfMessages': 1,
            'headers': {'token': 'a', 'channel': 'c'},
        })
        action = from_template({'headers': {'token': 'b'}}, base)
        assert action.headers == {'token': 'b', 'channel': 'c'}

    def test_publish_data_merged(self):
        base = from_definition({
            'name': 'pub', 'type': 'MQTT_PUBLISH', 'url': 'mqtt://b', 'topic': 't',
            'data': {'a': 1, 'b': 2},
        })
        action = from_template({'data': {'b': 3}}, base)
        assert action.data == {'a': 1, 'b': 3}
        assert base.data == {'a': 1, 'b': 2}
