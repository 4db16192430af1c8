"""Typed interface for Python distributions consumed by the packager."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from oxpack.config import LoaderCapabilities, TargetCompatibility
from oxpack.models import (
    ExtensionModule,
    ModuleSource,
    ModuleSuffixes,
    PackageResource,
    PythonResource,
)
from oxpack.observability import StructuredLogger
from oxpack.policy import LinkMode, PackagingPolicy, RequestedLinkMode


@runtime_checkable
class PythonDistribution(Protocol):
    """Capabilities the placement engine needs from a distribution flavor."""

    @property
    def target_triple(self) -> str: ...

    @property
    def cache_tag(self) -> str: ...

    @property
    def python_exe(self) -> Path: ...

    @property
    def module_suffixes(self) -> ModuleSuffixes: ...

    @property
    def libpython_shared_library(self) -> Path | None: ...

    def resolve_builtin_extensions(
        self,
        policy: PackagingPolicy,
        *,
        target_triple: str,
    ) -> list[ExtensionModule]:
        """Return the extension modules the policy selects for this target."""

    def resolve_link_mode(self, requested: RequestedLinkMode) -> LinkMode:
        """Map a requested interpreter link mode onto one the distribution supports."""

    def loader_capabilities(self, target_triple: str) -> LoaderCapabilities:
        """Describe how the produced binary can load extension modules."""

    def source_modules(self) -> list[ModuleSource]:
        """Enumerate module sources shipped with the distribution."""

    def resource_datas(self) -> list[PackageResource]:
        """Enumerate non-module data resources shipped with the distribution."""

    def iter_extension_modules(self) -> Iterator[ExtensionModule]:
        """Yield every extension module variant."""

    def create_packaging_policy(
        self,
        *,
        compatibility: TargetCompatibility | None = None,
    ) -> PackagingPolicy:
        """Return the default packaging policy for this distribution."""

    def filter_compatible_resources(
        self,
        resources: Sequence[PythonResource],
        *,
        target_triple: str,
        logger: StructuredLogger | None = None,
    ) -> list[PythonResource]:
        """Drop resources that cannot work with this distribution."""
