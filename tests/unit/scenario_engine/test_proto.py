"""Tests for the runtime-compiled protobuf codec.

Validates:
  - Encode/decode against a .proto file compiled with grpcio-tools
  - Short, nested and fully-qualified message names
  - Schema and payload errors raise ProtoCodecError
"""

from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip('grpc_tools')

from scenario_engine.errors import ProtoCodecError, ScenarioError  # noqa: E402
from scenario_engine.proto import ProtoCodec  # noqa: E402

SCHEMA = Path(__file__).parent / 'resources' / 'device.proto'


@pytest.fixture
def codec() -> ProtoCodec:
    return ProtoCodec()


class TestProtoCodec:

    def test_encode_then_decode(self, codec):
        data = codec.encode(SCHEMA, 'Device', {'deviceId': 'd-1', 'batteryLevel': 80})

        assert isinstance(data, bytes)
        assert codec.decode(SCHEMA, 'Device', data) == {'deviceId': 'd-1', 'batteryLevel': 80}

    def test_original_field_names_accepted(self, codec):
        data = codec.encode(SCHEMA, 'telemetry.Device', {'device_id': 'd-2'})
        assert codec.decode(SCHEMA, 'Device', data) == {'deviceId': 'd-2'}

    def test_nested_message(self, codec):
        data = codec.encode(SCHEMA, 'Location', {'lat': 1.5, 'lon': -2.25})
        assert codec.decode(SCHEMA, 'telemetry.Device.Location', data) == {'lat': 1.5, 'lon': -2.25}

    def test_compiled_once(self, codec):
        first = codec.message_class(SCHEMA, 'Device')
        assert codec.message_class(str(SCHEMA), 'Device') is first

    def test_unknown_message(self, codec):
        with pytest.raises(ProtoCodecError, match='not found'):
            codec.message_class(SCHEMA, 'Nope')

    def test_missing_schema(self, codec, tmp_path):
        with pytest.raises(ProtoCodecError, match='not found'):
            codec.decode(tmp_path / 'missing.proto', 'Device', b'')

    def test_invalid_schema(self, codec, tmp_path):
        broken = tmp_path / 'broken.proto'
        broken.write_text('syntax = "proto3"; message {', encoding='utf-8')
        with pytest.raises(ProtoCodecError, match='protoc failed'):
            codec.message_class(broken, 'Anything')

    def test_unknown_field_on_encode(self, codec):
        with pytest.raises(ProtoCodecError, match='Cannot encode'):
            codec.encode(SCHEMA, 'Device', {'colour': 'red'})

    def test_codec_errors_fail_actions(self):
        assert issubclass(ProtoCodecError, ScenarioError)
