"""Public package entrypoint for oxpack."""

from .builder import EmbeddedBinaryData, StandaloneExecutableBuilder
from .config import LoaderCapabilities, TargetCompatibility
from .distribution import PythonDistribution, StandaloneDistribution
from .errors import (
    ConfigurationError,
    DunderFileWarning,
    ErrorCode,
    ExternalProcessError,
    IntegrityError,
    OxpackError,
    ValidationError,
)
from .models import (
    LOCATION_IN_MEMORY,
    DataLocation,
    ExtensionModule,
    InMemory,
    LibraryDependency,
    ModuleBytecodeRequest,
    ModuleSource,
    PackageDistributionResource,
    PackageResource,
    RelativePath,
    SharedLibrary,
)
from .observability import StructuredLogger
from .policy import (
    FilesystemRelativeOnly,
    InMemoryOnly,
    PackagingPolicy,
    PreferInMemoryFallbackFilesystemRelative,
    parse_resources_policy,
)
from .resources import EmbeddedResources, LinkingInfo, ResourceCollection

__all__ = [
    "ConfigurationError",
    "DataLocation",
    "DunderFileWarning",
    "EmbeddedBinaryData",
    "EmbeddedResources",
    "ErrorCode",
    "ExtensionModule",
    "ExternalProcessError",
    "FilesystemRelativeOnly",
    "InMemory",
    "InMemoryOnly",
    "IntegrityError",
    "LOCATION_IN_MEMORY",
    "LibraryDependency",
    "LinkingInfo",
    "LoaderCapabilities",
    "ModuleBytecodeRequest",
    "ModuleSource",
    "OxpackError",
    "PackageDistributionResource",
    "PackageResource",
    "PackagingPolicy",
    "PreferInMemoryFallbackFilesystemRelative",
    "PythonDistribution",
    "RelativePath",
    "ResourceCollection",
    "SharedLibrary",
    "StandaloneDistribution",
    "StandaloneExecutableBuilder",
    "StructuredLogger",
    "TargetCompatibility",
    "ValidationError",
    "parse_resources_policy",
]
