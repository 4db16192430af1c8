"""Policy configuration: where resources go and which ones are packaged."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal

from oxpack.config import TargetCompatibility
from oxpack.errors import ValidationError
from oxpack.models import (
    ExtensionModule,
    ModuleBytecodeRequest,
    ModuleSource,
    OptimizeLevel,
    PackageDistributionResource,
    PackageResource,
    PythonResource,
)

LinkMode = Literal["static", "dynamic"]
RequestedLinkMode = Literal["default", "static", "dynamic"]
ExtensionModuleFilter = Literal["minimal", "all", "no-libraries"]

EXTENSION_MODULE_FILTERS: tuple[ExtensionModuleFilter, ...] = ("minimal", "all", "no-libraries")


@dataclass(frozen=True, slots=True)
class InMemoryOnly:
    def __str__(self) -> str:
        return "in-memory-only"


@dataclass(frozen=True, slots=True)
class FilesystemRelativeOnly:
    prefix: str

    def __str__(self) -> str:
        return f"filesystem-relative-only:{self.prefix}"


@dataclass(frozen=True, slots=True)
class PreferInMemoryFallbackFilesystemRelative:
    prefix: str

    def __str__(self) -> str:
        return f"prefer-in-memory-fallback-filesystem-relative:{self.prefix}"


ResourcesPolicy = InMemoryOnly | FilesystemRelativeOnly | PreferInMemoryFallbackFilesystemRelative


def parse_resources_policy(value: str) -> ResourcesPolicy:
    """Parse the string form used in build configuration files."""
    if value == "in-memory-only":
        return InMemoryOnly()
    kind, sep, prefix = value.partition(":")
    if sep and prefix:
        if kind == "filesystem-relative-only":
            return FilesystemRelativeOnly(prefix)
        if kind == "prefer-in-memory-fallback-filesystem-relative":
            return PreferInMemoryFallbackFilesystemRelative(prefix)
    raise ValidationError(
        f"Invalid resources policy {value!r}.",
        hint=(
            "Use 'in-memory-only', 'filesystem-relative-only:<prefix>', or "
            "'prefer-in-memory-fallback-filesystem-relative:<prefix>'."
        ),
    )


@dataclass(frozen=True, slots=True)
class PackagingPolicy:
    resources_policy: ResourcesPolicy = field(default_factory=InMemoryOnly)
    extension_module_filter: ExtensionModuleFilter = "all"
    preferred_extension_module_variants: Mapping[str, str] = field(default_factory=dict)
    include_distribution_sources: bool = True
    include_distribution_resources: bool = True
    include_test: bool = False
    bytecode_optimize_levels: tuple[OptimizeLevel, ...] = (0,)
    compatibility: TargetCompatibility = field(default_factory=TargetCompatibility.default)

    def __post_init__(self) -> None:
        if self.extension_module_filter not in EXTENSION_MODULE_FILTERS:
            raise ValidationError(
                f"Unknown extension module filter {self.extension_module_filter!r}.",
                hint=f"Use one of {', '.join(EXTENSION_MODULE_FILTERS)}.",
            )
        for level in self.bytecode_optimize_levels:
            if level not in (0, 1, 2):
                raise ValidationError(f"Invalid bytecode optimization level {level!r}.")

    def resolve_extension_modules(
        self,
        variants: Iterable[Sequence[ExtensionModule]],
        *,
        target_triple: str,
    ) -> list[ExtensionModule]:
        """Select one variant per extension module according to the filter."""
        broken = self.compatibility.broken_extensions_for(target_triple)
        selected: list[ExtensionModule] = []
        for candidates in variants:
            if not candidates:
                continue
            default = self._preferred_variant(candidates)
            if default.name in broken:
                continue
            if self.extension_module_filter == "minimal":
                if default.is_minimally_required():
                    selected.append(default)
            elif self.extension_module_filter == "all":
                selected.append(default)
            else:
                for candidate in (default, *candidates):
                    if candidate.builtin_default or not candidate.requires_libraries():
                        selected.append(candidate)
                        break
        return selected

    def filter_python_resource(self, resource: PythonResource) -> bool:
        """Whether a distribution-provided resource should be packaged."""
        if isinstance(resource, (ModuleSource, ModuleBytecodeRequest, PackageResource)):
            if resource.is_test and not self.include_test:
                return False
        if isinstance(resource, ModuleSource):
            return not resource.is_stdlib or self.include_distribution_sources
        if isinstance(resource, PackageResource):
            return not resource.is_stdlib or self.include_distribution_resources
        if isinstance(resource, ModuleBytecodeRequest):
            return resource.optimize_level in self.bytecode_optimize_levels
        if isinstance(resource, (PackageDistributionResource, ExtensionModule)):
            return True
        return False

    def _preferred_variant(self, candidates: Sequence[ExtensionModule]) -> ExtensionModule:
        wanted = self.preferred_extension_module_variants.get(candidates[0].name)
        if wanted is not None:
            for candidate in candidates:
                if candidate.variant == wanted:
                    return candidate
        return candidates[0]


__all__ = [
    "EXTENSION_MODULE_FILTERS",
    "ExtensionModuleFilter",
    "FilesystemRelativeOnly",
    "InMemoryOnly",
    "LinkMode",
    "PackagingPolicy",
    "PreferInMemoryFallbackFilesystemRelative",
    "RequestedLinkMode",
    "ResourcesPolicy",
    "parse_resources_policy",
]
