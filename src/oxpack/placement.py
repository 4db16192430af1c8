"""Decide where extension modules and other resources are placed.

The decision functions are pure: they return an ordered tuple of candidate
placements. ``apply_placements`` tries the candidates in order and is the only
place where a failed placement falls back to an alternative.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from oxpack.config import LoaderCapabilities
from oxpack.errors import ConfigurationError, OxpackError
from oxpack.models import LOCATION_IN_MEMORY, ConcreteLocation, ExtensionModule, RelativePath
from oxpack.observability import StructuredLogger
from oxpack.policy import (
    FilesystemRelativeOnly,
    InMemoryOnly,
    LinkMode,
    PreferInMemoryFallbackFilesystemRelative,
    ResourcesPolicy,
)


class PlacementKind(StrEnum):
    BUILTIN = "builtin"
    IN_MEMORY = "in-memory"
    RELATIVE_PATH = "relative-path"


@dataclass(frozen=True, slots=True)
class Placement:
    kind: PlacementKind
    prefix: str | None = None

    def __post_init__(self) -> None:
        if (self.kind == PlacementKind.RELATIVE_PATH) != (self.prefix is not None):
            raise ConfigurationError(
                "Only relative-path placements carry a prefix.",
                context={"kind": str(self.kind)},
            )

    def __str__(self) -> str:
        if self.prefix is not None:
            return f"{self.kind}:{self.prefix}"
        return str(self.kind)


BUILTIN = Placement(PlacementKind.BUILTIN)
IN_MEMORY = Placement(PlacementKind.IN_MEMORY)


def relative_path(prefix: str) -> Placement:
    return Placement(PlacementKind.RELATIVE_PATH, prefix)


def distribution_extension_placements(
    module: ExtensionModule,
    policy: ResourcesPolicy,
    link_mode: LinkMode,
) -> tuple[Placement, ...]:
    """Candidate placements for an extension module shipped by the distribution."""
    # Distribution modules may be builtin even when the policy forbids memory loading.
    if module.builtin_default or link_mode == "static":
        return (BUILTIN,)
    if isinstance(policy, InMemoryOnly):
        return (IN_MEMORY,)
    if isinstance(policy, FilesystemRelativeOnly):
        return (relative_path(policy.prefix),)
    return (IN_MEMORY, relative_path(policy.prefix))


def dynamic_extension_placements(
    module: ExtensionModule,
    policy: ResourcesPolicy,
    capabilities: LoaderCapabilities,
) -> tuple[Placement, ...]:
    """Candidate placements for a user-supplied, dynamically loaded extension module."""
    if module.shared_library is None:
        raise ConfigurationError(
            "Extension module instance has no shared library data.",
            context={"module": module.name},
        )

    if isinstance(policy, InMemoryOnly):
        if not capabilities.in_memory_shared_library_loading:
            raise ConfigurationError(
                "In-memory-only resources policy active but in-memory extension module "
                f"importing is not supported by this configuration: cannot load {module.name}.",
                hint="Use a filesystem-relative resources policy for this target.",
                context={"module": module.name, "policy": str(policy)},
            )
        return (IN_MEMORY,)

    if isinstance(policy, FilesystemRelativeOnly):
        if not capabilities.shared_library_loading:
            raise ConfigurationError(
                "Filesystem-relative-only policy active but file-based extension module "
                "loading is not supported by this configuration.",
                context={"module": module.name, "policy": str(policy)},
            )
        return (relative_path(policy.prefix),)

    candidates: list[Placement] = []
    if capabilities.in_memory_shared_library_loading:
        candidates.append(IN_MEMORY)
    if capabilities.shared_library_loading:
        candidates.append(relative_path(policy.prefix))
    if not candidates:
        raise ConfigurationError(
            "Prefer-in-memory-fallback-filesystem-relative policy active but could not "
            "find a mechanism to add an extension module.",
            context={"module": module.name, "policy": str(policy)},
        )
    return tuple(candidates)


def resource_location(policy: ResourcesPolicy) -> ConcreteLocation:
    """Location for resources other than extension modules."""
    if isinstance(policy, FilesystemRelativeOnly):
        return RelativePath(policy.prefix)
    if isinstance(policy, (InMemoryOnly, PreferInMemoryFallbackFilesystemRelative)):
        return LOCATION_IN_MEMORY
    raise ConfigurationError(f"Unknown resources policy {policy!r}.")


def apply_placements(
    candidates: Sequence[Placement],
    attempt: Callable[[Placement], None],
    *,
    resource: str,
    logger: StructuredLogger | None = None,
) -> Placement:
    """Apply the first candidate placement that succeeds.

    A failed candidate is logged at ``warn`` level with its error before the
    next one is tried. When every candidate fails, the last error is raised,
    chained to the first.
    """
    log = logger if logger is not None else StructuredLogger()
    if not candidates:
        raise ConfigurationError(
            "No placement candidates for resource.",
            context={"resource": resource},
        )

    first_error: OxpackError | None = None
    last = len(candidates) - 1
    for index, placement in enumerate(candidates):
        try:
            attempt(placement)
        except OxpackError as exc:
            if index == last:
                if first_error is not None:
                    raise exc from first_error
                raise
            if first_error is None:
                first_error = exc
            log.warn(
                operation="placement",
                resource=resource,
                message=f"{placement} placement failed; falling back to {candidates[index + 1]}",
                extra={"error": exc.to_dict()},
            )
            continue

        log.log(
            operation="placement",
            resource=resource,
            message=f"placed as {placement}",
        )
        return placement

    raise AssertionError("unreachable")


__all__ = [
    "BUILTIN",
    "IN_MEMORY",
    "Placement",
    "PlacementKind",
    "apply_placements",
    "distribution_extension_placements",
    "dynamic_extension_placements",
    "relative_path",
    "resource_location",
]
