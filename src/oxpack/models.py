"""Core typed dataclasses describing packageable Python resources."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal

from oxpack.errors import IntegrityError, ValidationError

OptimizeLevel = Literal[0, 1, 2]
DistributionLocationKind = Literal["dist-info", "egg-info"]


@dataclass(frozen=True, slots=True)
class DataLocation:
    """Bytes held in memory or a reference to a file holding them."""

    data: bytes | None = None
    path: Path | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise ValidationError("DataLocation requires exactly one of data or path.")

    @classmethod
    def from_bytes(cls, data: bytes) -> DataLocation:
        return cls(data=data)

    @classmethod
    def from_path(cls, path: str | Path) -> DataLocation:
        return cls(path=Path(path))

    def resolve(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise ValidationError("DataLocation requires exactly one of data or path.")
        try:
            return self.path.read_bytes()
        except OSError as exc:
            raise IntegrityError(
                "Unable to read resource data.",
                hint="The distribution or package tree may be incomplete.",
                context={"path": str(self.path), "error": str(exc)},
            ) from exc

    def to_memory(self) -> DataLocation:
        if self.data is not None:
            return self
        return DataLocation(data=self.resolve())


@dataclass(frozen=True, slots=True)
class InMemory:
    """Bytes are embedded in the produced binary's resource table."""

    def __str__(self) -> str:
        return "in-memory"


@dataclass(frozen=True, slots=True)
class RelativePath:
    """Bytes are installed on disk under ``prefix`` next to the binary."""

    prefix: str

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ValidationError("RelativePath requires a non-empty prefix.")
        path = PurePosixPath(self.prefix.replace("\\", "/"))
        if path.is_absolute() or ".." in path.parts:
            raise ValidationError(
                "RelativePath prefix must be relative and stay under the install directory.",
                context={"prefix": self.prefix},
            )

    def __str__(self) -> str:
        return f"filesystem-relative:{self.prefix}"


ConcreteLocation = InMemory | RelativePath

LOCATION_IN_MEMORY = InMemory()


@dataclass(frozen=True, slots=True)
class ModuleSource:
    name: str
    source: DataLocation
    is_package: bool = False
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False

    def as_bytecode_request(self, optimize_level: OptimizeLevel) -> ModuleBytecodeRequest:
        return ModuleBytecodeRequest(
            name=self.name,
            source=self.source,
            optimize_level=optimize_level,
            is_package=self.is_package,
            cache_tag=self.cache_tag,
            is_stdlib=self.is_stdlib,
            is_test=self.is_test,
        )


@dataclass(frozen=True, slots=True)
class ModuleBytecodeRequest:
    """Bytecode to be produced from source at packaging time."""

    name: str
    source: DataLocation
    optimize_level: OptimizeLevel = 0
    is_package: bool = False
    cache_tag: str = ""
    is_stdlib: bool = False
    is_test: bool = False


@dataclass(frozen=True, slots=True)
class PackageResource:
    leaf_package: str
    relative_name: str
    data: DataLocation
    is_stdlib: bool = False
    is_test: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.leaf_package}/{self.relative_name}"


@dataclass(frozen=True, slots=True)
class PackageDistributionResource:
    """A file from a package's ``.dist-info`` or ``.egg-info`` directory."""

    package: str
    version: str
    name: str
    data: DataLocation
    location_kind: DistributionLocationKind = "dist-info"

    @property
    def directory_name(self) -> str:
        return f"{self.package}-{self.version}.{self.location_kind}"


@dataclass(frozen=True, slots=True)
class LibraryDependency:
    name: str
    static_library: DataLocation | None = None
    dynamic_library: DataLocation | None = None
    framework: bool = False
    system: bool = False


@dataclass(frozen=True, slots=True)
class ExtensionModule:
    name: str
    init_fn: str | None = None
    extension_file_suffix: str = ""
    object_file_data: tuple[DataLocation, ...] = ()
    shared_library: DataLocation | None = None
    link_libraries: tuple[LibraryDependency, ...] = ()
    builtin_default: bool = False
    required: bool = False
    is_package: bool = False
    is_stdlib: bool = False
    variant: str | None = None
    licenses: tuple[str, ...] = ()

    def is_minimally_required(self) -> bool:
        return self.required or self.builtin_default

    def requires_libraries(self) -> bool:
        return any(not link.system for link in self.link_libraries)


@dataclass(frozen=True, slots=True)
class SharedLibrary:
    name: str
    data: DataLocation
    filename: str | None = None

    @property
    def install_filename(self) -> str:
        if self.filename:
            return self.filename
        if self.data.path is not None:
            return self.data.path.name
        return self.name


PythonResource = (
    ModuleSource
    | ModuleBytecodeRequest
    | PackageResource
    | PackageDistributionResource
    | ExtensionModule
)


def resource_name(resource: PythonResource) -> str:
    """Return the collection key a resource is recorded under."""
    if isinstance(resource, PackageResource):
        return resource.leaf_package
    if isinstance(resource, PackageDistributionResource):
        return resource.package
    return resource.name


def is_in_packages(resource: PythonResource, packages: tuple[str, ...] | list[str]) -> bool:
    name = resource_name(resource)
    return any(name == package or name.startswith(f"{package}.") for package in packages)


@dataclass(frozen=True, slots=True)
class LicenseInfo:
    licenses: tuple[str, ...]
    license_filename: str
    license_text: str


@dataclass(frozen=True, slots=True)
class ModuleSuffixes:
    source: tuple[str, ...] = (".py",)
    bytecode: tuple[str, ...] = (".pyc",)
    debug_bytecode: tuple[str, ...] = ()
    optimized_bytecode: tuple[str, ...] = ()
    extension: tuple[str, ...] = field(default_factory=lambda: (".so",))


__all__ = [
    "ConcreteLocation",
    "DataLocation",
    "DistributionLocationKind",
    "ExtensionModule",
    "InMemory",
    "LOCATION_IN_MEMORY",
    "LibraryDependency",
    "LicenseInfo",
    "ModuleBytecodeRequest",
    "ModuleSource",
    "ModuleSuffixes",
    "OptimizeLevel",
    "PackageDistributionResource",
    "PackageResource",
    "PythonResource",
    "RelativePath",
    "SharedLibrary",
    "is_in_packages",
    "resource_name",
]
