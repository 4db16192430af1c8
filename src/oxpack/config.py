"""Target platform configuration values.

Compatibility tables are built once (usually via ``TargetCompatibility.default()``)
and passed explicitly to the distribution and packaging policy.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from oxpack.errors import ValidationError

LINUX_TARGET_TRIPLES = (
    "x86_64-unknown-linux-gnu",
    "x86_64-unknown-linux-musl",
)

MACOS_TARGET_TRIPLES = ("x86_64-apple-darwin",)

WINDOWS_TARGET_TRIPLES = (
    "i686-pc-windows-gnu",
    "i686-pc-windows-msvc",
    "x86_64-pc-windows-gnu",
    "x86_64-pc-windows-msvc",
)

# Extensions with linking issues; these are never packaged.
BROKEN_EXTENSIONS_LINUX = ("_crypt", "nis")
BROKEN_EXTENSIONS_MACOS = ("curses", "_curses_panel", "readline")


@dataclass(frozen=True, slots=True)
class TargetCompatibility:
    """Per-target knowledge about extension modules that cannot be packaged."""

    broken_extensions: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def default(cls) -> TargetCompatibility:
        table: dict[str, frozenset[str]] = {}
        for triple in LINUX_TARGET_TRIPLES:
            table[triple] = frozenset(BROKEN_EXTENSIONS_LINUX)
        for triple in MACOS_TARGET_TRIPLES:
            table[triple] = frozenset(BROKEN_EXTENSIONS_MACOS)
        for triple in WINDOWS_TARGET_TRIPLES:
            table[triple] = frozenset()
        return cls(broken_extensions=table)

    def broken_extensions_for(self, target_triple: str) -> frozenset[str]:
        return self.broken_extensions.get(target_triple, frozenset())

    def with_broken_extension(self, target_triple: str, name: str) -> TargetCompatibility:
        table = dict(self.broken_extensions)
        table[target_triple] = self.broken_extensions_for(target_triple) | {name}
        return TargetCompatibility(broken_extensions=table)


@dataclass(frozen=True, slots=True)
class LoaderCapabilities:
    """What the produced binary's loader can do with extension modules.

    :ivar shared_library_loading: extension modules can be loaded from shared
        library files on disk.
    :ivar in_memory_shared_library_loading: shared libraries can additionally
        be mapped from an in-process buffer.
    """

    shared_library_loading: bool = False
    in_memory_shared_library_loading: bool = False

    def __post_init__(self) -> None:
        if self.in_memory_shared_library_loading and not self.shared_library_loading:
            raise ValidationError(
                "In-memory shared library loading requires shared library loading.",
                hint="Enable shared_library_loading or disable in-memory loading.",
            )


def is_windows_target(target_triple: str) -> bool:
    return "pc-windows" in target_triple


def is_musl_target(target_triple: str) -> bool:
    return "linux-musl" in target_triple


__all__ = [
    "BROKEN_EXTENSIONS_LINUX",
    "BROKEN_EXTENSIONS_MACOS",
    "LINUX_TARGET_TRIPLES",
    "LoaderCapabilities",
    "MACOS_TARGET_TRIPLES",
    "TargetCompatibility",
    "WINDOWS_TARGET_TRIPLES",
    "is_musl_target",
    "is_windows_target",
]
