"""Resource collection, packaging, and serialization."""

from .collection import ExtensionModuleBuildState, ResourceCollection, ResourceEntry
from .filtering import resolve_resource_names_from_files
from .packed import PackedResource, write_packed_resources_v1
from .prepared import EmbeddedResources, ExtraFile, LinkingInfo

__all__ = [
    "EmbeddedResources",
    "ExtensionModuleBuildState",
    "ExtraFile",
    "LinkingInfo",
    "PackedResource",
    "ResourceCollection",
    "ResourceEntry",
    "resolve_resource_names_from_files",
    "write_packed_resources_v1",
]
