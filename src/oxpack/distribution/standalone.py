"""Standalone Python distributions described by a ``PYTHON.json`` manifest.

A standalone distribution is an archive whose root holds a single ``python/``
directory. The manifest inside it describes the interpreter build: object
files, extension modules and their link requirements, module suffixes, and
how extension modules can be loaded at run time.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO

from oxpack.archive import extract_tar_zst_file, materialize_archive
from oxpack.config import LoaderCapabilities, TargetCompatibility, is_musl_target, is_windows_target
from oxpack.distribution.scanning import (
    STDLIB_TEST_PACKAGES,
    find_python_resources,
    walk_tree_files,
)
from oxpack.errors import ConfigurationError, IntegrityError
from oxpack.models import (
    DataLocation,
    ExtensionModule,
    LibraryDependency,
    LicenseInfo,
    ModuleSource,
    ModuleSuffixes,
    PackageResource,
    PythonResource,
)
from oxpack.observability import StructuredLogger
from oxpack.policy import LinkMode, PackagingPolicy, RequestedLinkMode

MANIFEST_VERSION = "5"
MANIFEST_PATH = "python/PYTHON.json"

_ALLOWED_PYTHON_ENTRIES = frozenset(
    {"build", "install", "lib", "licenses", "LICENSE.rst", "PYTHON.json"}
)
_SUFFIX_KINDS = ("source", "bytecode", "debug_bytecode", "optimized_bytecode", "extension")


@dataclass(slots=True)
class StandaloneDistribution:
    base_dir: Path
    target_triple: str
    python_tag: str
    python_abi_tag: str | None
    python_platform_tag: str
    version: str
    python_exe: Path
    stdlib_path: Path
    link_mode: LinkMode
    python_symbol_visibility: str
    extension_module_loading: tuple[str, ...]
    cache_tag: str
    module_suffixes: ModuleSuffixes
    inittab_object: Path
    inittab_cflags: tuple[str, ...] = ()
    libpython_shared_library: Path | None = None
    licenses: tuple[str, ...] = ()
    license_path: Path | None = None
    tcl_library_path: Path | None = None
    objs_core: dict[str, Path] = field(default_factory=dict)
    links_core: list[LibraryDependency] = field(default_factory=list)
    extension_modules: dict[str, list[ExtensionModule]] = field(default_factory=dict)
    includes: dict[str, Path] = field(default_factory=dict)
    libraries: dict[str, DataLocation] = field(default_factory=dict)
    py_modules: dict[str, Path] = field(default_factory=dict)
    resources: dict[str, dict[str, Path]] = field(default_factory=dict)
    license_infos: dict[str, list[LicenseInfo]] = field(default_factory=dict)
    stdlib_test_packages: tuple[str, ...] = STDLIB_TEST_PACKAGES
    compatibility: TargetCompatibility = field(default_factory=TargetCompatibility.default)

    @classmethod
    def from_tar_zst_file(
        cls,
        path: str | Path,
        extract_dir: str | Path,
        *,
        compatibility: TargetCompatibility | None = None,
        logger: StructuredLogger | None = None,
    ) -> StandaloneDistribution:
        root = extract_tar_zst_file(path, extract_dir, sentinel=MANIFEST_PATH, logger=logger)
        return cls.from_directory(root, compatibility=compatibility)

    @classmethod
    def from_tar_zst(
        cls,
        source: BinaryIO,
        extract_dir: str | Path,
        *,
        compatibility: TargetCompatibility | None = None,
        logger: StructuredLogger | None = None,
    ) -> StandaloneDistribution:
        root = materialize_archive(source, extract_dir, sentinel=MANIFEST_PATH, logger=logger)
        return cls.from_directory(root, compatibility=compatibility)

    @classmethod
    def from_directory(
        cls,
        dist_dir: str | Path,
        *,
        compatibility: TargetCompatibility | None = None,
    ) -> StandaloneDistribution:
        """Build a distribution model by scanning an extracted distribution."""
        base_dir = Path(dist_dir)
        _validate_layout(base_dir)
        python_path = base_dir / "python"
        manifest = read_manifest(python_path / "PYTHON.json")

        build_info = _required_dict(manifest, "build_info")
        core = _required_dict(build_info, "core")

        objs_core = {obj: python_path / obj for obj in _required_str_list(core, "objs")}
        libraries: dict[str, DataLocation] = {}
        links_core: list[LibraryDependency] = []
        for entry in _required_list(core, "links"):
            dependency = _library_dependency(entry, python_path)
            if dependency.static_library is not None:
                libraries[dependency.name] = dependency.static_library
            links_core.append(dependency)

        suffix_table = _required_dict(manifest, "python_suffixes")
        missing = [kind for kind in _SUFFIX_KINDS if kind not in suffix_table]
        if missing:
            raise IntegrityError(
                "Distribution does not define all module suffixes.",
                context={"missing": ", ".join(missing)},
            )
        module_suffixes = ModuleSuffixes(
            **{kind: tuple(_required_str_list(suffix_table, kind)) for kind in _SUFFIX_KINDS}
        )
        extension_suffix = module_suffixes.extension[0] if module_suffixes.extension else ""

        license_infos: dict[str, list[LicenseInfo]] = {}
        licenses = tuple(_optional_str_list(manifest, "licenses"))
        license_path = _optional_str(manifest, "license_path")
        if license_path is not None:
            license_infos["python"] = [
                LicenseInfo(
                    licenses=licenses,
                    license_filename="LICENSE.python.txt",
                    license_text=_read_text(python_path / license_path),
                )
            ]

        extension_modules: dict[str, list[ExtensionModule]] = {}
        for module, variants in sorted(_required_dict(build_info, "extensions").items()):
            if not isinstance(variants, list):
                raise IntegrityError(
                    "Invalid extension module entry in PYTHON.json.",
                    context={"module": module},
                )
            parsed: list[ExtensionModule] = []
            for variant in variants:
                if not isinstance(variant, dict):
                    raise IntegrityError(
                        "Invalid extension module variant in PYTHON.json.",
                        context={"module": module},
                    )
                links: list[LibraryDependency] = []
                for link in _required_list(variant, "links"):
                    dependency = _library_dependency(link, python_path)
                    if dependency.static_library is not None:
                        libraries[dependency.name] = dependency.static_library
                    links.append(dependency)

                variant_licenses = tuple(_optional_str_list(variant, "licenses"))
                license_paths = _optional_str_list(variant, "license_paths")
                if license_paths:
                    license_infos[module] = [
                        LicenseInfo(
                            licenses=variant_licenses,
                            license_filename=Path(p).name,
                            license_text=_read_text(python_path / p),
                        )
                        for p in license_paths
                    ]

                shared_lib = _optional_str(variant, "shared_lib")
                parsed.append(
                    ExtensionModule(
                        name=module,
                        init_fn=_required_str(variant, "init_fn"),
                        extension_file_suffix=extension_suffix,
                        object_file_data=tuple(
                            DataLocation.from_path(python_path / obj)
                            for obj in _required_str_list(variant, "objs")
                        ),
                        shared_library=(
                            DataLocation.from_path(python_path / shared_lib)
                            if shared_lib is not None
                            else None
                        ),
                        link_libraries=tuple(links),
                        builtin_default=_required_bool(variant, "in_core"),
                        required=_required_bool(variant, "required"),
                        is_package=False,
                        is_stdlib=True,
                        variant=_required_str(variant, "variant"),
                        licenses=variant_licenses,
                    )
                )
            extension_modules[module] = parsed

        python_paths = _required_dict(manifest, "python_paths")
        include_path = python_path / _required_str(python_paths, "include")
        stdlib_path = python_path / _required_str(python_paths, "stdlib")
        includes = {
            entry.relative_to(include_path).as_posix(): entry
            for entry in walk_tree_files(include_path)
        }

        cache_tag = _required_str(manifest, "python_implementation_cache_tag")
        test_packages = tuple(
            _optional_str_list(manifest, "python_stdlib_test_packages") or STDLIB_TEST_PACKAGES
        )
        py_modules: dict[str, Path] = {}
        resources: dict[str, dict[str, Path]] = {}
        for resource in find_python_resources(
            stdlib_path,
            cache_tag=cache_tag,
            suffixes=module_suffixes,
            is_stdlib=True,
            test_packages=test_packages,
        ):
            if isinstance(resource, ModuleSource):
                py_modules[resource.name] = _scanned_path(resource.source, resource.name)
            elif isinstance(resource, PackageResource):
                resources.setdefault(resource.leaf_package, {})[resource.relative_name] = (
                    _scanned_path(resource.data, resource.full_name)
                )

        raw_link_mode = _required_str(manifest, "libpython_link_mode")
        libpython_shared_library: Path | None = None
        link_mode: LinkMode
        if raw_link_mode == "static":
            link_mode = "static"
        elif raw_link_mode == "shared":
            link_mode = "dynamic"
            libpython_shared_library = python_path / _required_str(core, "shared_lib")
        else:
            raise ConfigurationError(
                f"Unhandled libpython link mode {raw_link_mode!r}.",
                hint="Use a distribution built with a static or shared libpython.",
            )

        tcl_library_path = _optional_str(manifest, "tcl_library_path")
        return cls(
            base_dir=base_dir,
            target_triple=_required_str(manifest, "target_triple"),
            python_tag=_required_str(manifest, "python_tag"),
            python_abi_tag=_optional_str(manifest, "python_abi_tag"),
            python_platform_tag=_required_str(manifest, "python_platform_tag"),
            version=_required_str(manifest, "python_version"),
            python_exe=python_path / _required_str(manifest, "python_exe"),
            stdlib_path=stdlib_path,
            link_mode=link_mode,
            python_symbol_visibility=_required_str(manifest, "python_symbol_visibility"),
            extension_module_loading=tuple(
                _required_str_list(manifest, "python_extension_module_loading")
            ),
            cache_tag=cache_tag,
            module_suffixes=module_suffixes,
            inittab_object=python_path / _required_str(build_info, "inittab_object"),
            inittab_cflags=tuple(_required_str_list(build_info, "inittab_cflags")),
            libpython_shared_library=libpython_shared_library,
            licenses=licenses,
            license_path=Path(license_path) if license_path is not None else None,
            tcl_library_path=Path(tcl_library_path) if tcl_library_path is not None else None,
            objs_core=objs_core,
            links_core=links_core,
            extension_modules=extension_modules,
            includes=includes,
            libraries=libraries,
            py_modules=py_modules,
            resources=resources,
            license_infos=license_infos,
            stdlib_test_packages=test_packages,
            compatibility=compatibility if compatibility is not None else TargetCompatibility.default(),
        )

    def is_extension_module_file_loadable(self) -> bool:
        return "shared-library" in self.extension_module_loading

    def loader_capabilities(self, target_triple: str) -> LoaderCapabilities:
        file_loadable = self.is_extension_module_file_loadable()
        # Loading from memory needs a Windows loader and dllexport'ed symbols.
        in_memory = (
            file_loadable
            and is_windows_target(target_triple)
            and self.python_symbol_visibility == "dllexport"
        )
        return LoaderCapabilities(
            shared_library_loading=file_loadable,
            in_memory_shared_library_loading=in_memory,
        )

    def resolve_link_mode(self, requested: RequestedLinkMode) -> LinkMode:
        if is_windows_target(self.target_triple):
            # Static and dynamic Windows distributions are built differently;
            # each only supports its own mode.
            supports_static = self.libpython_shared_library is None
            supports_dynamic = self.libpython_shared_library is not None
        elif is_musl_target(self.target_triple):
            supports_static, supports_dynamic = True, False
        else:
            supports_static, supports_dynamic = True, True

        if requested == "default":
            if supports_static:
                return "static"
            if supports_dynamic:
                return "dynamic"
            raise ConfigurationError("No libpython link modes are supported by this distribution.")
        if requested == "static":
            if not supports_static:
                raise ConfigurationError(
                    "Python distribution does not support statically linking libpython.",
                    context={"target_triple": self.target_triple},
                )
            return "static"
        if requested == "dynamic":
            if not supports_dynamic:
                raise ConfigurationError(
                    "Python distribution does not support dynamically linking libpython.",
                    context={"target_triple": self.target_triple},
                )
            return "dynamic"
        raise ConfigurationError(f"Unknown libpython link mode {requested!r}.")

    def resolve_builtin_extensions(
        self,
        policy: PackagingPolicy,
        *,
        target_triple: str,
    ) -> list[ExtensionModule]:
        return policy.resolve_extension_modules(
            self.extension_modules.values(),
            target_triple=target_triple,
        )

    def iter_extension_modules(self) -> Iterator[ExtensionModule]:
        for variants in self.extension_modules.values():
            yield from variants

    def source_modules(self) -> list[ModuleSource]:
        return [
            ModuleSource(
                name=name,
                source=DataLocation.from_path(path),
                is_package=path.stem == "__init__",
                cache_tag=self.cache_tag,
                is_stdlib=True,
                is_test=_is_test(name, self.stdlib_test_packages),
            )
            for name, path in sorted(self.py_modules.items())
        ]

    def resource_datas(self) -> list[PackageResource]:
        return [
            PackageResource(
                leaf_package=package,
                relative_name=name,
                data=DataLocation.from_path(path),
                is_stdlib=True,
                is_test=_is_test(package, self.stdlib_test_packages),
            )
            for package, inner in sorted(self.resources.items())
            for name, path in sorted(inner.items())
        ]

    def create_packaging_policy(
        self,
        *,
        compatibility: TargetCompatibility | None = None,
    ) -> PackagingPolicy:
        return PackagingPolicy(
            compatibility=compatibility if compatibility is not None else self.compatibility,
        )

    def filter_compatible_resources(
        self,
        resources: Sequence[PythonResource],
        *,
        target_triple: str,
        logger: StructuredLogger | None = None,
    ) -> list[PythonResource]:
        log = logger if logger is not None else StructuredLogger()
        file_loadable = self.loader_capabilities(target_triple).shared_library_loading
        compatible: list[PythonResource] = []
        for resource in resources:
            if isinstance(resource, ExtensionModule):
                loadable_dynamic = resource.shared_library is not None and file_loadable
                linkable_static = bool(resource.object_file_data) and self.link_mode == "static"
                if not (loadable_dynamic or linkable_static):
                    log.warn(
                        operation="filter_compatible_resources",
                        resource=resource.name,
                        message="ignoring extension module not loadable for the target configuration",
                    )
                    continue
            compatible.append(resource)
        return compatible


def read_manifest(path: Path) -> dict[str, Any]:
    """Read and version-check a ``PYTHON.json`` manifest."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise IntegrityError(
            "PYTHON.json does not exist.",
            hint="Use an up-to-date standalone Python distribution.",
            context={"path": str(path)},
        ) from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise IntegrityError(
            "PYTHON.json is not valid JSON.",
            hint=str(exc),
            context={"path": str(path)},
        ) from exc
    if not isinstance(payload, dict):
        raise IntegrityError("PYTHON.json does not parse to an object.", context={"path": str(path)})
    if "version" not in payload:
        raise IntegrityError("version key not present in PYTHON.json.", context={"path": str(path)})
    version = payload["version"]
    if version != MANIFEST_VERSION:
        raise IntegrityError(
            f"Expected version {MANIFEST_VERSION} standalone distribution; found version {version}.",
            context={"path": str(path)},
        )
    return payload


def python_exe_path(dist_dir: str | Path) -> Path:
    python_path = Path(dist_dir) / "python"
    manifest = read_manifest(python_path / "PYTHON.json")
    return python_path / _required_str(manifest, "python_exe")


def _validate_layout(base_dir: Path) -> None:
    if not base_dir.is_dir():
        raise IntegrityError("Distribution root is not a directory.", context={"path": str(base_dir)})
    for entry in sorted(base_dir.iterdir()):
        if entry.name != "python":
            raise IntegrityError(
                "Unexpected entry in distribution root directory.",
                context={"entry": entry.name},
            )
    python_path = base_dir / "python"
    if not python_path.is_dir():
        raise IntegrityError(
            "Distribution root does not contain a python/ directory.",
            context={"path": str(base_dir)},
        )
    for entry in sorted(python_path.iterdir()):
        if entry.name not in _ALLOWED_PYTHON_ENTRIES:
            raise IntegrityError(
                "Unexpected entry in python/ directory.",
                context={"entry": entry.name},
            )


def _library_dependency(entry: Any, python_path: Path) -> LibraryDependency:
    if not isinstance(entry, dict):
        raise IntegrityError("Invalid link entry in PYTHON.json.")
    path_static = _optional_str(entry, "path_static")
    path_dynamic = _optional_str(entry, "path_dynamic")
    return LibraryDependency(
        name=_required_str(entry, "name"),
        static_library=(
            DataLocation.from_path(python_path / path_static) if path_static is not None else None
        ),
        dynamic_library=(
            DataLocation.from_path(python_path / path_dynamic) if path_dynamic is not None else None
        ),
        framework=bool(entry.get("framework", False)),
        system=bool(entry.get("system", False)),
    )


def _is_test(name: str, test_packages: Sequence[str]) -> bool:
    return any(name == package or name.startswith(f"{package}.") for package in test_packages)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise IntegrityError(
            "Unable to read license file.",
            context={"path": str(path), "error": str(exc)},
        ) from exc


def _scanned_path(location: DataLocation, name: str) -> Path:
    if location.path is None:
        raise IntegrityError(
            f"Standard library resource {name} was not scanned from a file.",
            context={"resource": name},
        )
    return location.path


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _required_bool(payload: dict[str, Any], key: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _required_dict(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _required_list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if not isinstance(value, list):
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _required_str_list(payload: dict[str, Any], key: str) -> list[str]:
    value = _required_list(payload, key)
    if not all(isinstance(item, str) for item in value):
        raise IntegrityError(f"Invalid PYTHON.json `{key}` value.")
    return value


def _optional_str_list(payload: dict[str, Any], key: str) -> list[str]:
    if payload.get(key) is None:
        return []
    return _required_str_list(payload, key)


__all__ = [
    "MANIFEST_PATH",
    "MANIFEST_VERSION",
    "StandaloneDistribution",
    "python_exe_path",
    "read_manifest",
]
