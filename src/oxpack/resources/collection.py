"""Accumulate Python resources and their placements before packaging.

A collection maps resource names to facet records. Each add operation fills
in one facet of the record for a name, overwriting any previous value of
that facet. Extension modules that are statically linked into the
interpreter image are tracked separately as build states and never appear in
the resource records.
"""

from __future__ import annotations

import warnings
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field, fields
from pathlib import Path, PurePosixPath

from oxpack.bytecode import BytecodeCompiler
from oxpack.errors import ConfigurationError, DunderFileWarning
from oxpack.models import (
    LOCATION_IN_MEMORY,
    ConcreteLocation,
    DataLocation,
    ExtensionModule,
    InMemory,
    ModuleBytecodeRequest,
    ModuleSource,
    OptimizeLevel,
    PackageDistributionResource,
    PackageResource,
    RelativePath,
    SharedLibrary,
)
from oxpack.observability import StructuredLogger
from oxpack.policy import FilesystemRelativeOnly, InMemoryOnly, ResourcesPolicy
from oxpack.resources.filtering import resolve_resource_names_from_files
from oxpack.resources.packed import PackedResource
from oxpack.resources.prepared import EmbeddedResources, ExtraFile

RelativeData = tuple[PurePosixPath, DataLocation]


@dataclass(slots=True)
class ExtensionModuleBuildState:
    """Everything needed to link an extension module into libpython."""

    init_fn: str | None = None
    link_object_files: list[DataLocation] = field(default_factory=list)
    link_frameworks: set[str] = field(default_factory=set)
    link_system_libraries: set[str] = field(default_factory=set)
    link_static_libraries: set[str] = field(default_factory=set)
    link_dynamic_libraries: set[str] = field(default_factory=set)
    link_external_libraries: set[str] = field(default_factory=set)


@dataclass(slots=True)
class ResourceEntry:
    name: str
    is_package: bool = False
    is_namespace_package: bool = False
    in_memory_source: DataLocation | None = None
    in_memory_bytecode: dict[int, DataLocation] = field(default_factory=dict)
    in_memory_extension_module_shared_library: DataLocation | None = None
    in_memory_resources: dict[str, DataLocation] = field(default_factory=dict)
    in_memory_distribution_resources: dict[str, DataLocation] = field(default_factory=dict)
    in_memory_shared_library: DataLocation | None = None
    shared_library_dependency_names: list[str] | None = None
    relative_path_module_source: RelativeData | None = None
    relative_path_bytecode: dict[int, RelativeData] = field(default_factory=dict)
    relative_path_extension_module_shared_library: RelativeData | None = None
    relative_path_package_resources: dict[str, RelativeData] = field(default_factory=dict)
    relative_path_distribution_resources: dict[str, RelativeData] = field(default_factory=dict)
    relative_path_shared_library: RelativeData | None = None

    def is_empty(self) -> bool:
        for f in fields(self):
            if f.name in ("name", "is_package", "is_namespace_package"):
                continue
            if getattr(self, f.name):
                return False
        return True

    def has_extension_module(self) -> bool:
        return (
            self.in_memory_extension_module_shared_library is not None
            or self.relative_path_extension_module_shared_library is not None
        )

    def source_datas(self) -> Iterator[DataLocation]:
        if self.in_memory_source is not None:
            yield self.in_memory_source
        if self.relative_path_module_source is not None:
            yield self.relative_path_module_source[1]
        yield from self.in_memory_bytecode.values()
        for _, source in self.relative_path_bytecode.values():
            yield source


class ResourceCollection:
    """Resources destined for a binary, keyed by resource name."""

    def __init__(self, policy: ResourcesPolicy, cache_tag: str) -> None:
        self.policy = policy
        self.cache_tag = cache_tag
        self._resources: dict[str, ResourceEntry] = {}
        self._extension_modules: dict[str, ExtensionModuleBuildState] = {}
        # Shared libraries each extension module registered, with whether
        # they went into memory.
        self._extension_dependencies: dict[str, list[tuple[str, bool]]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._resources or name in self._extension_modules

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> ResourceEntry | None:
        return self._resources.get(name)

    def iter_resources(self) -> Iterator[tuple[str, ResourceEntry]]:
        return iter(self._resources.items())

    def builtin_extension_module_names(self) -> list[str]:
        return sorted(self._extension_modules)

    def extension_module_state(self, name: str) -> ExtensionModuleBuildState | None:
        return self._extension_modules.get(name)

    def add_module_source(self, module: ModuleSource, location: ConcreteLocation) -> None:
        self._check_location(location)
        entry = self._entry(module.name)
        entry.is_package = entry.is_package or module.is_package
        if isinstance(location, InMemory):
            entry.in_memory_source = module.source
        else:
            entry.relative_path_module_source = (
                _module_source_path(location.prefix, module.name, is_package=module.is_package),
                module.source,
            )

    def add_module_bytecode_request(
        self,
        request: ModuleBytecodeRequest,
        location: ConcreteLocation,
    ) -> None:
        self._check_location(location)
        entry = self._entry(request.name)
        entry.is_package = entry.is_package or request.is_package
        if isinstance(location, InMemory):
            entry.in_memory_bytecode[request.optimize_level] = request.source
        else:
            entry.relative_path_bytecode[request.optimize_level] = (
                _bytecode_path(
                    location.prefix,
                    request.name,
                    is_package=request.is_package,
                    cache_tag=request.cache_tag or self.cache_tag,
                    optimize_level=request.optimize_level,
                ),
                request.source,
            )

    def add_package_resource(self, resource: PackageResource, location: ConcreteLocation) -> None:
        self._check_location(location)
        entry = self._entry(resource.leaf_package)
        entry.is_package = True
        if isinstance(location, InMemory):
            entry.in_memory_resources[resource.relative_name] = resource.data
        else:
            entry.relative_path_package_resources[resource.relative_name] = (
                _package_path(location.prefix, resource.leaf_package) / resource.relative_name,
                resource.data,
            )

    def add_package_distribution_resource(
        self,
        resource: PackageDistributionResource,
        location: ConcreteLocation,
    ) -> None:
        self._check_location(location)
        entry = self._entry(resource.package)
        entry.is_package = True
        if isinstance(location, InMemory):
            entry.in_memory_distribution_resources[resource.name] = resource.data
        else:
            entry.relative_path_distribution_resources[resource.name] = (
                PurePosixPath(location.prefix) / resource.directory_name / resource.name,
                resource.data,
            )

    def add_shared_library(self, library: SharedLibrary, location: ConcreteLocation) -> None:
        self._check_location(location)
        entry = self._entry(library.name)
        if isinstance(location, InMemory):
            entry.in_memory_shared_library = library.data
        else:
            entry.relative_path_shared_library = (
                PurePosixPath(location.prefix) / library.install_filename,
                library.data,
            )

    def add_builtin_distribution_extension_module(self, module: ExtensionModule) -> None:
        """Link a distribution extension module into libpython.

        Modules built into the distribution's libpython by default need no
        object files of their own; everything else must provide them.
        """
        if not module.builtin_default and not module.object_file_data:
            raise ConfigurationError(
                f"Cannot add extension module {module.name} as builtin because it lacks object file data.",
                context={"module": module.name},
            )
        self._clear_extension_placements(module.name)
        links = module.link_libraries
        self._extension_modules[module.name] = ExtensionModuleBuildState(
            init_fn=module.init_fn,
            link_object_files=[] if module.builtin_default else list(module.object_file_data),
            link_frameworks={link.name for link in links if link.framework},
            link_system_libraries={link.name for link in links if link.system},
            link_static_libraries={link.name for link in links if link.static_library is not None},
            link_dynamic_libraries={
                link.name for link in links if link.dynamic_library is not None
            },
        )

    def add_in_memory_distribution_extension_module(self, module: ExtensionModule) -> None:
        self._check_location(LOCATION_IN_MEMORY)
        if module.shared_library is None:
            raise ConfigurationError(
                f"Cannot add extension module {module.name} for in-memory loading because it lacks shared library data.",
                context={"module": module.name},
            )
        data = module.shared_library.to_memory()

        self._clear_extension_placements(module.name)
        depends = self._add_dependency_libraries(module, LOCATION_IN_MEMORY)

        entry = self._entry(module.name)
        entry.is_package = entry.is_package or module.is_package
        entry.in_memory_extension_module_shared_library = data
        entry.shared_library_dependency_names = depends

    def add_relative_path_distribution_extension_module(
        self,
        module: ExtensionModule,
        prefix: str,
    ) -> None:
        location = RelativePath(prefix)
        self._check_location(location)
        if module.shared_library is None:
            raise ConfigurationError(
                f"Cannot add extension module {module.name} as path relative because it lacks a shared library.",
                context={"module": module.name, "prefix": prefix},
            )

        self._clear_extension_placements(module.name)
        self._set_relative_extension_module(module, module.shared_library, prefix)
        # Dependencies sit next to the extension module so the platform
        # loader finds them in the importing library's directory.
        self._add_dependency_libraries(module, location)

    def add_builtin_extension_module(self, module: ExtensionModule) -> None:
        if not module.object_file_data:
            raise ConfigurationError(
                f"Cannot add extension module {module.name} as builtin because it lacks object file data.",
                context={"module": module.name},
            )
        self._clear_extension_placements(module.name)
        self._extension_modules[module.name] = ExtensionModuleBuildState(
            init_fn=module.init_fn,
            link_object_files=list(module.object_file_data),
            link_external_libraries={link.name for link in module.link_libraries},
        )

    def add_in_memory_extension_module_shared_library(
        self,
        name: str,
        data: bytes,
        *,
        is_package: bool = False,
    ) -> None:
        self._check_location(LOCATION_IN_MEMORY)
        self._clear_extension_placements(name)
        entry = self._entry(name)
        entry.is_package = entry.is_package or is_package
        entry.in_memory_extension_module_shared_library = DataLocation.from_bytes(data)
        entry.shared_library_dependency_names = []

    def add_relative_path_extension_module(self, module: ExtensionModule, prefix: str) -> None:
        self._check_location(RelativePath(prefix))
        if module.shared_library is None:
            raise ConfigurationError(
                f"Cannot add extension module {module.name} as path relative because it lacks a shared library.",
                context={"module": module.name, "prefix": prefix},
            )
        self._clear_extension_placements(module.name)
        self._set_relative_extension_module(module, module.shared_library, prefix)

    def filter_by_names(
        self,
        allowed: Iterable[str],
        *,
        logger: StructuredLogger | None = None,
    ) -> list[str]:
        """Drop every resource and build state whose name is not allowed.

        Returns the removed names.
        """
        log = logger if logger is not None else StructuredLogger()
        names = set(allowed)
        removed: list[str] = []

        for name in list(self._resources):
            if name not in names:
                del self._resources[name]
                removed.append(name)
                log.log(operation="filter_resources", resource=name, message="removing resource")

        for name in sorted(self._extension_modules):
            if name not in names:
                del self._extension_modules[name]
                removed.append(name)
                log.log(
                    operation="filter_resources",
                    resource=name,
                    message="removing builtin extension module",
                )
        return removed

    def filter_from_files(
        self,
        files: Sequence[str | Path] = (),
        glob_patterns: Sequence[str] = (),
        *,
        logger: StructuredLogger | None = None,
    ) -> list[str]:
        names = resolve_resource_names_from_files(files, glob_patterns)
        return self.filter_by_names(names, logger=logger)

    def find_dunder_file(self) -> list[str]:
        """Return names of modules whose source mentions ``__file__``."""
        found: list[str] = []
        for name, entry in self._resources.items():
            if any(b"__file__" in source.resolve() for source in entry.source_datas()):
                found.append(name)
        return sorted(found)

    def package(
        self,
        compiler: BytecodeCompiler,
        *,
        logger: StructuredLogger | None = None,
    ) -> EmbeddedResources:
        """Resolve every resource into its final form."""
        log = logger if logger is not None else StructuredLogger()

        dunder_file = self.find_dunder_file()
        for name in dunder_file:
            log.warn(operation="package", resource=name, message=f"{name} contains __file__")
        if dunder_file:
            message = (
                "__file__ was encountered in some embedded modules; it is not set for "
                "in-memory modules and this may create problems at run-time"
            )
            log.warn(operation="package", message=message, extra={"modules": dunder_file})
            warnings.warn(
                f"{message}: {', '.join(dunder_file)}",
                DunderFileWarning,
                stacklevel=2,
            )

        resources: dict[str, PackedResource] = {}
        extra_files: list[ExtraFile] = []
        for name, entry in self._resources.items():
            packed = self._pack_entry(entry, compiler, extra_files)
            if packed is not None:
                resources[name] = packed

        log.log(
            operation="package",
            message="packaged resources",
            extra={
                "resources": len(resources),
                "extra_files": len(extra_files),
                "builtin_extension_modules": len(self._extension_modules),
            },
        )
        return EmbeddedResources(
            resources=resources,
            extra_files=tuple(extra_files),
            extension_modules={
                name: self._extension_modules[name] for name in sorted(self._extension_modules)
            },
        )

    def _pack_entry(
        self,
        entry: ResourceEntry,
        compiler: BytecodeCompiler,
        extra_files: list[ExtraFile],
    ) -> PackedResource | None:
        packed = PackedResource(
            name=entry.name,
            is_package=entry.is_package,
            is_namespace_package=entry.is_namespace_package,
        )
        fields_set = False

        if entry.in_memory_source is not None:
            packed.in_memory_source = entry.in_memory_source.resolve()
            fields_set = True
        for level, source in sorted(entry.in_memory_bytecode.items()):
            bytecode = compiler.compile(
                name=entry.name,
                source=source.resolve(),
                optimize_level=_optimize_level(level),
                header="none",
            )
            if level == 0:
                packed.in_memory_bytecode = bytecode
            elif level == 1:
                packed.in_memory_bytecode_opt1 = bytecode
            else:
                packed.in_memory_bytecode_opt2 = bytecode
            fields_set = True
        if entry.in_memory_extension_module_shared_library is not None:
            packed.in_memory_extension_module_shared_library = (
                entry.in_memory_extension_module_shared_library.resolve()
            )
            packed.shared_library_dependency_names = entry.shared_library_dependency_names
            fields_set = True
        if entry.in_memory_resources:
            packed.in_memory_resources = {
                key: data.resolve() for key, data in entry.in_memory_resources.items()
            }
            fields_set = True
        if entry.in_memory_distribution_resources:
            packed.in_memory_distribution_resources = {
                key: data.resolve() for key, data in entry.in_memory_distribution_resources.items()
            }
            fields_set = True
        if entry.in_memory_shared_library is not None:
            packed.in_memory_shared_library = entry.in_memory_shared_library.resolve()
            fields_set = True

        if entry.relative_path_module_source is not None:
            path, data = entry.relative_path_module_source
            packed.relative_path_module_source = path
            extra_files.append(ExtraFile(path=path, data=data))
            fields_set = True
        for level, (path, source) in sorted(entry.relative_path_bytecode.items()):
            bytecode = compiler.compile(
                name=entry.name,
                source=source.resolve(),
                optimize_level=_optimize_level(level),
                header="hash",
            )
            if level == 0:
                packed.relative_path_bytecode = path
            elif level == 1:
                packed.relative_path_bytecode_opt1 = path
            else:
                packed.relative_path_bytecode_opt2 = path
            extra_files.append(ExtraFile(path=path, data=DataLocation.from_bytes(bytecode)))
            fields_set = True
        if entry.relative_path_extension_module_shared_library is not None:
            path, data = entry.relative_path_extension_module_shared_library
            packed.relative_path_extension_module_shared_library = path
            extra_files.append(ExtraFile(path=path, data=data, executable=True))
            fields_set = True
        if entry.relative_path_package_resources:
            packed.relative_path_package_resources = {}
            for key, (path, data) in entry.relative_path_package_resources.items():
                packed.relative_path_package_resources[key] = path
                extra_files.append(ExtraFile(path=path, data=data))
            fields_set = True
        if entry.relative_path_distribution_resources:
            packed.relative_path_distribution_resources = {}
            for key, (path, data) in entry.relative_path_distribution_resources.items():
                packed.relative_path_distribution_resources[key] = path
                extra_files.append(ExtraFile(path=path, data=data))
            fields_set = True

        # Shared libraries installed on disk are found by the platform loader,
        # not through the resources table.
        if entry.relative_path_shared_library is not None:
            path, data = entry.relative_path_shared_library
            extra_files.append(ExtraFile(path=path, data=data, executable=True))

        return packed if fields_set else None

    def _entry(self, name: str) -> ResourceEntry:
        entry = self._resources.get(name)
        if entry is None:
            entry = ResourceEntry(name=name)
            self._resources[name] = entry
        return entry

    def _check_location(self, location: ConcreteLocation) -> None:
        if isinstance(self.policy, InMemoryOnly) and isinstance(location, RelativePath):
            raise ConfigurationError(
                "Cannot add resource to a filesystem-relative location under the in-memory-only policy.",
                context={"policy": str(self.policy), "location": str(location)},
            )
        if isinstance(self.policy, FilesystemRelativeOnly) and isinstance(location, InMemory):
            raise ConfigurationError(
                "Cannot add resource to memory under a filesystem-relative-only policy.",
                context={"policy": str(self.policy), "location": str(location)},
            )

    def _add_dependency_libraries(
        self,
        module: ExtensionModule,
        location: ConcreteLocation,
    ) -> list[str]:
        names: list[str] = []
        for link in module.link_libraries:
            if link.dynamic_library is not None:
                self.add_shared_library(
                    SharedLibrary(name=link.name, data=link.dynamic_library),
                    location,
                )
                names.append(link.name)
        in_memory = isinstance(location, InMemory)
        self._extension_dependencies[module.name] = [(name, in_memory) for name in names]
        return names

    def _clear_dependency_libraries(self, name: str) -> None:
        for dependency, in_memory in self._extension_dependencies.pop(name, []):
            # Still needed by another extension module at the same location.
            if any(
                (dependency, in_memory) in others
                for others in self._extension_dependencies.values()
            ):
                continue
            entry = self._resources.get(dependency)
            if entry is None:
                continue
            if in_memory:
                entry.in_memory_shared_library = None
            else:
                entry.relative_path_shared_library = None
            if entry.is_empty():
                del self._resources[dependency]

    def _clear_extension_placements(self, name: str) -> None:
        self._extension_modules.pop(name, None)
        self._clear_dependency_libraries(name)
        entry = self._resources.get(name)
        if entry is None:
            return
        entry.in_memory_extension_module_shared_library = None
        entry.relative_path_extension_module_shared_library = None
        entry.shared_library_dependency_names = None
        if entry.is_empty():
            del self._resources[name]

    def _set_relative_extension_module(
        self,
        module: ExtensionModule,
        shared_library: DataLocation,
        prefix: str,
    ) -> None:
        entry = self._entry(module.name)
        entry.is_package = entry.is_package or module.is_package
        entry.relative_path_extension_module_shared_library = (
            _extension_module_path(
                prefix,
                module.name,
                is_package=module.is_package,
                suffix=module.extension_file_suffix,
            ),
            shared_library,
        )


def _package_path(prefix: str, package: str) -> PurePosixPath:
    return PurePosixPath(prefix, *package.split("."))


def _module_source_path(prefix: str, name: str, *, is_package: bool) -> PurePosixPath:
    parts = name.split(".")
    if is_package:
        return PurePosixPath(prefix, *parts, "__init__.py")
    return PurePosixPath(prefix, *parts[:-1], f"{parts[-1]}.py")


def _bytecode_path(
    prefix: str,
    name: str,
    *,
    is_package: bool,
    cache_tag: str,
    optimize_level: int,
) -> PurePosixPath:
    parts = name.split(".")
    if is_package:
        directory, leaf = parts, "__init__"
    else:
        directory, leaf = parts[:-1], parts[-1]
    opt = f".opt-{optimize_level}" if optimize_level else ""
    return PurePosixPath(prefix, *directory, "__pycache__", f"{leaf}.{cache_tag}{opt}.pyc")


def _extension_module_path(
    prefix: str,
    name: str,
    *,
    is_package: bool,
    suffix: str,
) -> PurePosixPath:
    parts = name.split(".")
    if is_package:
        return PurePosixPath(prefix, *parts, f"__init__{suffix}")
    return PurePosixPath(prefix, *parts[:-1], f"{parts[-1]}{suffix}")


def _optimize_level(level: int) -> OptimizeLevel:
    if level == 1:
        return 1
    if level == 2:
        return 2
    return 0


__all__ = [
    "ExtensionModuleBuildState",
    "ResourceCollection",
    "ResourceEntry",
]
