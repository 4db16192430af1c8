"""Assemble everything needed to produce a standalone executable."""

from __future__ import annotations

import io
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from oxpack.bytecode import BytecodeCompiler, PythonBytecodeCompiler
from oxpack.distribution.base import PythonDistribution
from oxpack.errors import ConfigurationError, ValidationError
from oxpack.manifest import FileContent, FileManifest
from oxpack.models import (
    DataLocation,
    ExtensionModule,
    ModuleBytecodeRequest,
    ModuleSource,
    PackageDistributionResource,
    PackageResource,
    PythonResource,
)
from oxpack.observability import StructuredLogger
from oxpack.packaging_tool import ensure_pip
from oxpack.packaging_tool import pip_install as _pip_install
from oxpack.packaging_tool import read_package_root as _read_package_root
from oxpack.placement import (
    Placement,
    PlacementKind,
    apply_placements,
    distribution_extension_placements,
    dynamic_extension_placements,
    resource_location,
)
from oxpack.policy import LinkMode, PackagingPolicy, RequestedLinkMode
from oxpack.resources.collection import ResourceCollection
from oxpack.resources.prepared import LinkingInfo

MODULE_NAMES_FILENAME = "py-modules"
PACKED_RESOURCES_FILENAME = "packed-resources"


@dataclass(frozen=True, slots=True)
class EmbeddedBinaryData:
    """Packaged artifacts handed to the native build and install steps."""

    module_names: bytes
    resources: bytes
    extra_files: FileManifest
    linking_info: LinkingInfo
    link_mode: LinkMode
    builtin_extensions: tuple[tuple[str, str], ...]

    def write_files(self, dest_dir: str | Path) -> list[Path]:
        root = Path(dest_dir)
        blobs = FileManifest()
        blobs.add_file(MODULE_NAMES_FILENAME, FileContent(data=self.module_names))
        blobs.add_file(PACKED_RESOURCES_FILENAME, FileContent(data=self.resources))
        return [*blobs.write_files(root), *self.extra_files.write_files(root)]


class StandaloneExecutableBuilder:
    """A packaging session for one distribution and one target."""

    def __init__(
        self,
        distribution: PythonDistribution,
        *,
        target_triple: str | None = None,
        link_mode: RequestedLinkMode = "default",
        policy: PackagingPolicy | None = None,
        include_distribution_resources: bool = True,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.distribution = distribution
        self.target_triple = target_triple or distribution.target_triple
        self.link_mode: LinkMode = distribution.resolve_link_mode(link_mode)
        self.policy = policy if policy is not None else distribution.create_packaging_policy()
        self.capabilities = distribution.loader_capabilities(self.target_triple)
        self.logger = logger if logger is not None else StructuredLogger()
        self.resources = ResourceCollection(self.policy.resources_policy, distribution.cache_tag)
        self._packaged = False

        self.logger.log(
            operation="builder",
            phase="init",
            message="created executable builder",
            extra={
                "target_triple": self.target_triple,
                "link_mode": self.link_mode,
                "resources_policy": str(self.policy.resources_policy),
            },
        )
        if include_distribution_resources:
            self.add_distribution_resources()

    def add_distribution_resources(self) -> None:
        for module in self.distribution.resolve_builtin_extensions(
            self.policy, target_triple=self.target_triple
        ):
            self.add_distribution_extension_module(module)

        for source in self.distribution.source_modules():
            if self.policy.filter_python_resource(source):
                self.add_python_resource(source)
            for level in self.policy.bytecode_optimize_levels:
                request = source.as_bytecode_request(level)
                if self.policy.filter_python_resource(request):
                    self.add_python_resource(request)

        for resource in self.distribution.resource_datas():
            if self.policy.filter_python_resource(resource):
                self.add_python_resource(resource)

    def add_python_resource(self, resource: PythonResource) -> None:
        location = resource_location(self.policy.resources_policy)
        if isinstance(resource, ModuleSource):
            self.resources.add_module_source(resource, location)
        elif isinstance(resource, ModuleBytecodeRequest):
            self.resources.add_module_bytecode_request(resource, location)
        elif isinstance(resource, PackageResource):
            self.resources.add_package_resource(resource, location)
        elif isinstance(resource, PackageDistributionResource):
            self.resources.add_package_distribution_resource(resource, location)
        elif isinstance(resource, ExtensionModule):
            if resource.shared_library is not None:
                self.add_dynamic_extension_module(resource)
            elif resource.object_file_data:
                self.add_static_extension_module(resource)
            else:
                raise ConfigurationError(
                    f"Extension module {resource.name} has neither shared library nor object file data.",
                    context={"module": resource.name},
                )
        else:
            raise ValidationError(f"Unsupported resource type {type(resource).__name__}.")

    def add_python_resources(self, resources: Iterable[PythonResource]) -> None:
        compatible = self.distribution.filter_compatible_resources(
            list(resources),
            target_triple=self.target_triple,
            logger=self.logger,
        )
        for resource in compatible:
            self.add_python_resource(resource)

    def add_distribution_extension_module(self, module: ExtensionModule) -> Placement:
        candidates = distribution_extension_placements(
            module,
            self.policy.resources_policy,
            self.link_mode,
        )
        return apply_placements(
            candidates,
            lambda placement: self._place_distribution_extension_module(module, placement),
            resource=module.name,
            logger=self.logger,
        )

    def add_dynamic_extension_module(self, module: ExtensionModule) -> Placement:
        candidates = dynamic_extension_placements(
            module,
            self.policy.resources_policy,
            self.capabilities,
        )
        return apply_placements(
            candidates,
            lambda placement: self._place_dynamic_extension_module(module, placement),
            resource=module.name,
            logger=self.logger,
        )

    def add_static_extension_module(self, module: ExtensionModule) -> None:
        self.resources.add_builtin_extension_module(module)

    def filter_resources_from_files(
        self,
        files: Sequence[str | Path] = (),
        glob_patterns: Sequence[str] = (),
    ) -> list[str]:
        return self.resources.filter_from_files(files, glob_patterns, logger=self.logger)

    def pip_install(
        self,
        args: Sequence[str],
        *,
        extra_envs: Mapping[str, str] | None = None,
        bootstrap_pip: bool = True,
    ) -> list[PythonResource]:
        """Install packages with the distribution's pip and return compatible resources."""
        if bootstrap_pip:
            ensure_pip(self.distribution, logger=self.logger)
        installed = _pip_install(
            self.distribution,
            args,
            extra_envs=extra_envs,
            logger=self.logger,
        )
        return self.distribution.filter_compatible_resources(
            installed,
            target_triple=self.target_triple,
            logger=self.logger,
        )

    def read_package_root(self, path: str | Path, packages: Sequence[str]) -> list[PythonResource]:
        found = _read_package_root(self.distribution, path, packages)
        return self.distribution.filter_compatible_resources(
            found,
            target_triple=self.target_triple,
            logger=self.logger,
        )

    def to_embedded_data(self, compiler: BytecodeCompiler | None = None) -> EmbeddedBinaryData:
        """Package the collected resources. A builder can only be packaged once."""
        if self._packaged:
            raise ValidationError(
                "Resources have already been packaged.",
                hint="Create a new builder for another packaging run.",
            )
        self._packaged = True

        if compiler is None:
            with PythonBytecodeCompiler(self.distribution.python_exe, logger=self.logger) as owned:
                embedded = self.resources.package(owned, logger=self.logger)
        else:
            embedded = self.resources.package(compiler, logger=self.logger)

        extra_files = embedded.extra_install_files()
        linking_info = embedded.resolve_linking_info(logger=self.logger)

        libpython = self.distribution.libpython_shared_library
        if self.link_mode == "dynamic" and libpython is not None:
            extra_files.add_file(
                libpython.name,
                FileContent(data=DataLocation.from_path(libpython).resolve(), executable=False),
            )

        module_names = io.BytesIO()
        resources = io.BytesIO()
        embedded.write_blobs(module_names, resources)

        return EmbeddedBinaryData(
            module_names=module_names.getvalue(),
            resources=resources.getvalue(),
            extra_files=extra_files,
            linking_info=linking_info,
            link_mode=self.link_mode,
            builtin_extensions=tuple(embedded.builtin_extensions()),
        )

    def _place_distribution_extension_module(
        self,
        module: ExtensionModule,
        placement: Placement,
    ) -> None:
        if placement.kind == PlacementKind.BUILTIN:
            self.resources.add_builtin_distribution_extension_module(module)
        elif placement.kind == PlacementKind.IN_MEMORY:
            if not self.capabilities.in_memory_shared_library_loading:
                raise ConfigurationError(
                    "Loading extension modules from memory is not supported by this build configuration.",
                    context={"module": module.name, "target_triple": self.target_triple},
                )
            self.resources.add_in_memory_distribution_extension_module(module)
        else:
            if not self.capabilities.shared_library_loading:
                raise ConfigurationError(
                    "Loading extension modules from files is not supported by this build configuration.",
                    context={"module": module.name, "target_triple": self.target_triple},
                )
            self.resources.add_relative_path_distribution_extension_module(
                module,
                _required_prefix(placement, module),
            )

    def _place_dynamic_extension_module(
        self,
        module: ExtensionModule,
        placement: Placement,
    ) -> None:
        if module.shared_library is None:
            raise ConfigurationError(
                f"Extension module {module.name} has no shared library to place.",
                context={"module": module.name, "placement": str(placement)},
            )
        if placement.kind == PlacementKind.IN_MEMORY:
            self.resources.add_in_memory_extension_module_shared_library(
                module.name,
                module.shared_library.resolve(),
                is_package=module.is_package,
            )
        elif placement.kind == PlacementKind.RELATIVE_PATH:
            self.resources.add_relative_path_extension_module(
                module,
                _required_prefix(placement, module),
            )
        else:
            raise ConfigurationError(
                f"Extension module {module.name} cannot be placed as {placement}.",
                context={"module": module.name},
            )


def _required_prefix(placement: Placement, module: ExtensionModule) -> str:
    if placement.prefix is None:
        raise ConfigurationError(
            f"Placement {placement} for extension module {module.name} has no install prefix.",
            context={"module": module.name, "placement": str(placement)},
        )
    return placement.prefix


__all__ = [
    "EmbeddedBinaryData",
    "MODULE_NAMES_FILENAME",
    "PACKED_RESOURCES_FILENAME",
    "StandaloneExecutableBuilder",
]
