"""Packaged resources: the immutable output of a resource collection."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, BinaryIO

from oxpack.manifest import FileContent, FileManifest
from oxpack.models import DataLocation
from oxpack.observability import StructuredLogger
from oxpack.resources.packed import PackedResource, write_packed_resources_v1

if TYPE_CHECKING:
    from oxpack.resources.collection import ExtensionModuleBuildState


@dataclass(frozen=True, slots=True)
class ExtraFile:
    path: PurePosixPath
    data: DataLocation
    executable: bool = False


@dataclass(frozen=True, slots=True)
class LinkingInfo:
    """Inputs the native toolchain needs to link the interpreter image."""

    object_files: tuple[DataLocation, ...] = ()
    link_libraries: tuple[str, ...] = ()
    link_frameworks: tuple[str, ...] = ()
    link_system_libraries: tuple[str, ...] = ()
    link_libraries_external: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class EmbeddedResources:
    resources: Mapping[str, PackedResource] = field(default_factory=dict)
    extra_files: tuple[ExtraFile, ...] = ()
    extension_modules: Mapping[str, ExtensionModuleBuildState] = field(default_factory=dict)

    def write_blobs(self, module_names: BinaryIO, resources: BinaryIO) -> None:
        """Write the resource name list and the packed resources table."""
        for name in self.resources:
            module_names.write(name.encode("utf-8"))
            module_names.write(b"\n")
        write_packed_resources_v1(self.resources.values(), resources)

    def builtin_extensions(self) -> list[tuple[str, str]]:
        """Return ``(module, init function)`` pairs for the builtin import table."""
        return [
            (name, state.init_fn)
            for name, state in sorted(self.extension_modules.items())
            if state.init_fn is not None
        ]

    def extra_install_files(self) -> FileManifest:
        manifest = FileManifest()
        for extra in self.extra_files:
            manifest.add_file(
                extra.path,
                FileContent(data=extra.data.resolve(), executable=extra.executable),
            )
        return manifest

    def resolve_linking_info(self, *, logger: StructuredLogger | None = None) -> LinkingInfo:
        log = logger if logger is not None else StructuredLogger()
        object_files: list[DataLocation] = []
        link_libraries: set[str] = set()
        link_frameworks: set[str] = set()
        link_system_libraries: set[str] = set()
        link_libraries_external: set[str] = set()

        log.log(
            operation="resolve_linking_info",
            message=f"resolving inputs for {len(self.extension_modules)} extension modules",
        )
        for name, state in sorted(self.extension_modules.items()):
            if state.link_object_files:
                log.log(
                    operation="resolve_linking_info",
                    resource=name,
                    message=f"adding {len(state.link_object_files)} object files",
                )
                object_files.extend(state.link_object_files)

            link_frameworks |= state.link_frameworks
            link_system_libraries |= state.link_system_libraries
            link_libraries |= state.link_static_libraries
            link_libraries |= state.link_dynamic_libraries
            link_libraries_external |= state.link_external_libraries

            libraries = sorted(
                state.link_frameworks
                | state.link_system_libraries
                | state.link_static_libraries
                | state.link_dynamic_libraries
                | state.link_external_libraries
            )
            if libraries:
                log.log(
                    operation="resolve_linking_info",
                    resource=name,
                    message="libraries required",
                    extra={"libraries": libraries},
                )

        return LinkingInfo(
            object_files=tuple(object_files),
            link_libraries=tuple(sorted(link_libraries)),
            link_frameworks=tuple(sorted(link_frameworks)),
            link_system_libraries=tuple(sorted(link_system_libraries)),
            link_libraries_external=tuple(sorted(link_libraries_external)),
        )


__all__ = ["EmbeddedResources", "ExtraFile", "LinkingInfo"]
