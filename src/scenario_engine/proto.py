"""Protobuf payload codec driven by ``.proto`` schema files.

Schemas are compiled at runtime into a ``FileDescriptorSet`` with the
``protoc`` bundled in ``grpcio-tools`` and turned into message classes with
``google.protobuf``. Imports inside a schema are resolved against the
schema's own directory first, then each ancestor directory.

Decoded messages come back as plain dicts using the JSON (lowerCamelCase)
field names, so filters can be written the same way for JSON and proto
payloads.
"""

from __future__ import annotations

import importlib.resources
import tempfile
from pathlib import Path
from typing import Any, Iterator, Mapping

from google.protobuf import descriptor_pb2, descriptor_pool, json_format, message_factory
from google.protobuf.message import DecodeError, Message
from grpc_tools import protoc

from .errors import ProtoCodecError


class ProtoCodec:
    """Encode/decode payloads against message types from ``.proto`` files.

    Compiled schemas are cached per resolved file path.
    """

    def __init__(self) -> None:
        self._compiled: dict[Path, tuple[descriptor_pool.DescriptorPool, descriptor_pb2.FileDescriptorSet]] = {}
        self._classes: dict[tuple[Path, str], type[Message]] = {}

    def encode(self, schema_path: str | Path, class_name: str, obj: Mapping[str, Any]) -> bytes:
        message_class = self.message_class(schema_path, class_name)
        try:
            message = json_format.ParseDict(dict(obj), message_class())
        except json_format.ParseError as exc:
            raise ProtoCodecError(f'Cannot encode {class_name}: {exc}') from exc
        return message.SerializeToString()

    def decode(self, schema_path: str | Path, class_name: str, data: bytes) -> dict[str, Any]:
        message_class = self.message_class(schema_path, class_name)
        try:
            message = message_class.FromString(bytes(data))
        except DecodeError as exc:
            raise ProtoCodecError(f'Cannot decode {class_name}: {exc}') from exc
        return json_format.MessageToDict(message)

    def message_class(self, schema_path: str | Path, class_name: str) -> type[Message]:
        path = Path(schema_path).resolve()
        key = (path, class_name)
        if key not in self._classes:
            pool, descriptor_set = self._compile(path)
            full_name = _find_message_name(descriptor_set, class_name)
            descriptor = pool.FindMessageTypeByName(full_name)
            self._classes[key] = message_factory.GetMessageClass(descriptor)
        return self._classes[key]

    def _compile(
        self, path: Path,
    ) -> tuple[descriptor_pool.DescriptorPool, descriptor_pb2.FileDescriptorSet]:
        if path not in self._compiled:
            if not path.is_file():
                raise ProtoCodecError(f'Proto schema not found: {path}')
            descriptor_set = _compile_descriptor_set(path)
            pool = descriptor_pool.DescriptorPool()
            for file_proto in descriptor_set.file:
                pool.AddSerializedFile(file_proto.SerializeToString())
            self._compiled[path] = (pool, descriptor_set)
        return self._compiled[path]


def _compile_descriptor_set(path: Path) -> descriptor_pb2.FileDescriptorSet:
    well_known = importlib.resources.files('grpc_tools') / '_proto'
    include_dirs = [path.parent, *path.parent.parents]

    with tempfile.TemporaryDirectory() as tmp:
        out = Path(tmp) / 'descriptor_set.pb'
        args = [
            'grpc_tools.protoc',
            *(f'--proto_path={d}' for d in include_dirs),
            f'--proto_path={well_known}',
            f'--descriptor_set_out={out}',
            '--include_imports',
            str(path),
        ]
        if protoc.main(args) != 0:
            raise ProtoCodecError(f'protoc failed to compile {path}')
        return descriptor_pb2.FileDescriptorSet.FromString(out.read_bytes())


def _find_message_name(
    descriptor_set: descriptor_pb2.FileDescriptorSet,
    class_name: str,
) -> str:
    """Resolve a short or fully-qualified message name to its full name."""
    candidates = [
        full_name
        for file_proto in descriptor_set.file
        for full_name in _message_names(file_proto.package, file_proto.message_type)
    ]
    for full_name in candidates:
        if full_name == class_name:
            return full_name
    for full_name in candidates:
        if full_name.endswith(f'.{class_name}'):
            return full_name
    raise ProtoCodecError(f'Message type {class_name!r} not found in schema')


def _message_names(prefix: str, message_types: Any) -> Iterator[str]:
    for message_type in message_types:
        full_name = f'{prefix}.{message_type.name}' if prefix else message_type.name
        yield full_name
        yield from _message_names(full_name, message_type.nested_type)
