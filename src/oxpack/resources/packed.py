"""Packed resources table, format version 1.

Layout (all integers little-endian)::

    b"pyembed\\x01"
    u8   number of blob sections
    u32  blob index length
    u32  number of resources
    u32  resource index length
    blob index       (one entry per blob section, then END_OF_INDEX)
    resource index   (one entry per resource, then END_OF_INDEX)
    blob sections    (ordered by field id)

Each resource index entry lists the fields the resource defines and the
lengths of their payloads. Payloads live in the blob section for their field,
concatenated in resource order.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import PurePosixPath
from typing import BinaryIO

from oxpack.errors import ValidationError

HEADER_V1 = b"pyembed\x01"

START_OF_ENTRY = 0x01
BLOB_FIELD_TYPE = 0x01
BLOB_LENGTH = 0x02
END_OF_ENTRY = 0xFF
END_OF_INDEX = 0x00


class ResourceField(IntEnum):
    MODULE_NAME = 0x02
    IS_PACKAGE = 0x03
    IS_NAMESPACE_PACKAGE = 0x04
    IN_MEMORY_SOURCE = 0x05
    IN_MEMORY_BYTECODE = 0x06
    IN_MEMORY_BYTECODE_OPT1 = 0x07
    IN_MEMORY_BYTECODE_OPT2 = 0x08
    IN_MEMORY_EXTENSION_MODULE_SHARED_LIBRARY = 0x09
    IN_MEMORY_RESOURCES_DATA = 0x0A
    IN_MEMORY_PACKAGE_DISTRIBUTION = 0x0B
    IN_MEMORY_SHARED_LIBRARY = 0x0C
    SHARED_LIBRARY_DEPENDENCY_NAMES = 0x0D
    RELATIVE_FILESYSTEM_MODULE_SOURCE = 0x0E
    RELATIVE_FILESYSTEM_MODULE_BYTECODE = 0x0F
    RELATIVE_FILESYSTEM_MODULE_BYTECODE_OPT1 = 0x10
    RELATIVE_FILESYSTEM_MODULE_BYTECODE_OPT2 = 0x11
    RELATIVE_FILESYSTEM_EXTENSION_MODULE_SHARED_LIBRARY = 0x12
    RELATIVE_FILESYSTEM_PACKAGE_RESOURCES = 0x13
    RELATIVE_FILESYSTEM_PACKAGE_DISTRIBUTION = 0x14


@dataclass(slots=True)
class PackedResource:
    """A resource with every payload resolved, ready to be serialized."""

    name: str
    is_package: bool = False
    is_namespace_package: bool = False
    in_memory_source: bytes | None = None
    in_memory_bytecode: bytes | None = None
    in_memory_bytecode_opt1: bytes | None = None
    in_memory_bytecode_opt2: bytes | None = None
    in_memory_extension_module_shared_library: bytes | None = None
    in_memory_resources: dict[str, bytes] | None = None
    in_memory_distribution_resources: dict[str, bytes] | None = None
    in_memory_shared_library: bytes | None = None
    shared_library_dependency_names: list[str] | None = None
    relative_path_module_source: PurePosixPath | None = None
    relative_path_bytecode: PurePosixPath | None = None
    relative_path_bytecode_opt1: PurePosixPath | None = None
    relative_path_bytecode_opt2: PurePosixPath | None = None
    relative_path_extension_module_shared_library: PurePosixPath | None = None
    relative_path_package_resources: dict[str, PurePosixPath] | None = None
    relative_path_distribution_resources: dict[str, PurePosixPath] | None = None


@dataclass(slots=True)
class _Entry:
    index: bytearray = field(default_factory=bytearray)
    blobs: dict[ResourceField, list[bytes]] = field(default_factory=dict)

    def flag(self, field_id: ResourceField) -> None:
        self.index.append(field_id)

    def blob(self, field_id: ResourceField, fmt: str, payload: bytes) -> None:
        self.index.append(field_id)
        self.index += struct.pack(fmt, len(payload))
        self.blobs.setdefault(field_id, []).append(payload)

    def mapping(self, field_id: ResourceField, value_fmt: str, items: dict[str, bytes]) -> None:
        self.index.append(field_id)
        self.index += struct.pack("<I", len(items))
        chunks = self.blobs.setdefault(field_id, [])
        for key in sorted(items):
            encoded = key.encode("utf-8")
            self.index += struct.pack("<H", len(encoded))
            self.index += struct.pack(value_fmt, len(items[key]))
            chunks.append(encoded)
            chunks.append(items[key])


_IN_MEMORY_BYTES: tuple[tuple[str, ResourceField, str], ...] = (
    ("in_memory_source", ResourceField.IN_MEMORY_SOURCE, "<I"),
    ("in_memory_bytecode", ResourceField.IN_MEMORY_BYTECODE, "<I"),
    ("in_memory_bytecode_opt1", ResourceField.IN_MEMORY_BYTECODE_OPT1, "<I"),
    ("in_memory_bytecode_opt2", ResourceField.IN_MEMORY_BYTECODE_OPT2, "<I"),
    (
        "in_memory_extension_module_shared_library",
        ResourceField.IN_MEMORY_EXTENSION_MODULE_SHARED_LIBRARY,
        "<I",
    ),
)

_RELATIVE_PATHS: tuple[tuple[str, ResourceField], ...] = (
    ("relative_path_module_source", ResourceField.RELATIVE_FILESYSTEM_MODULE_SOURCE),
    ("relative_path_bytecode", ResourceField.RELATIVE_FILESYSTEM_MODULE_BYTECODE),
    ("relative_path_bytecode_opt1", ResourceField.RELATIVE_FILESYSTEM_MODULE_BYTECODE_OPT1),
    ("relative_path_bytecode_opt2", ResourceField.RELATIVE_FILESYSTEM_MODULE_BYTECODE_OPT2),
    (
        "relative_path_extension_module_shared_library",
        ResourceField.RELATIVE_FILESYSTEM_EXTENSION_MODULE_SHARED_LIBRARY,
    ),
)


def _encode_resource(resource: PackedResource) -> _Entry:
    entry = _Entry()
    entry.index.append(START_OF_ENTRY)

    name = resource.name.encode("utf-8")
    if len(name) > 0xFFFF:
        raise ValidationError("Resource name is too long to serialize.", context={"name": resource.name})
    entry.blob(ResourceField.MODULE_NAME, "<H", name)

    if resource.is_package:
        entry.flag(ResourceField.IS_PACKAGE)
    if resource.is_namespace_package:
        entry.flag(ResourceField.IS_NAMESPACE_PACKAGE)

    for attribute, field_id, fmt in _IN_MEMORY_BYTES:
        value = getattr(resource, attribute)
        if value is not None:
            entry.blob(field_id, fmt, value)

    if resource.in_memory_resources is not None:
        entry.mapping(ResourceField.IN_MEMORY_RESOURCES_DATA, "<Q", resource.in_memory_resources)
    if resource.in_memory_distribution_resources is not None:
        entry.mapping(
            ResourceField.IN_MEMORY_PACKAGE_DISTRIBUTION,
            "<Q",
            resource.in_memory_distribution_resources,
        )
    if resource.in_memory_shared_library is not None:
        entry.blob(ResourceField.IN_MEMORY_SHARED_LIBRARY, "<Q", resource.in_memory_shared_library)

    if resource.shared_library_dependency_names is not None:
        field_id = ResourceField.SHARED_LIBRARY_DEPENDENCY_NAMES
        entry.index.append(field_id)
        entry.index += struct.pack("<H", len(resource.shared_library_dependency_names))
        chunks = entry.blobs.setdefault(field_id, [])
        for dependency in resource.shared_library_dependency_names:
            encoded = dependency.encode("utf-8")
            entry.index += struct.pack("<H", len(encoded))
            chunks.append(encoded)

    for attribute, field_id in _RELATIVE_PATHS:
        value = getattr(resource, attribute)
        if value is not None:
            entry.blob(field_id, "<I", value.as_posix().encode("utf-8"))

    if resource.relative_path_package_resources is not None:
        entry.mapping(
            ResourceField.RELATIVE_FILESYSTEM_PACKAGE_RESOURCES,
            "<I",
            _encode_paths(resource.relative_path_package_resources),
        )
    if resource.relative_path_distribution_resources is not None:
        entry.mapping(
            ResourceField.RELATIVE_FILESYSTEM_PACKAGE_DISTRIBUTION,
            "<I",
            _encode_paths(resource.relative_path_distribution_resources),
        )

    entry.index.append(END_OF_ENTRY)
    return entry


def _encode_paths(paths: dict[str, PurePosixPath]) -> dict[str, bytes]:
    return {key: path.as_posix().encode("utf-8") for key, path in paths.items()}


def write_packed_resources_v1(resources: Iterable[PackedResource], dest: BinaryIO) -> None:
    """Serialize ``resources`` in iteration order to ``dest``."""
    entries = [_encode_resource(resource) for resource in resources]

    sections: dict[ResourceField, list[bytes]] = {}
    for entry in entries:
        for field_id, chunks in entry.blobs.items():
            sections.setdefault(field_id, []).extend(chunks)
    ordered_sections = sorted(sections.items())

    blob_index = bytearray()
    for field_id, chunks in ordered_sections:
        blob_index.append(START_OF_ENTRY)
        blob_index.append(BLOB_FIELD_TYPE)
        blob_index.append(field_id)
        blob_index.append(BLOB_LENGTH)
        blob_index += struct.pack("<Q", sum(len(chunk) for chunk in chunks))
        blob_index.append(END_OF_ENTRY)
    blob_index.append(END_OF_INDEX)

    resource_index = bytearray()
    for entry in entries:
        resource_index += entry.index
    resource_index.append(END_OF_INDEX)

    dest.write(HEADER_V1)
    dest.write(
        struct.pack(
            "<BIII",
            len(ordered_sections),
            len(blob_index),
            len(entries),
            len(resource_index),
        )
    )
    dest.write(blob_index)
    dest.write(resource_index)
    for _, chunks in ordered_sections:
        for chunk in chunks:
            dest.write(chunk)


__all__ = [
    "HEADER_V1",
    "PackedResource",
    "ResourceField",
    "write_packed_resources_v1",
]
