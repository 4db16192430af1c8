"""Discover Python resources in a directory tree."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from pathlib import Path

from oxpack.models import (
    DataLocation,
    ExtensionModule,
    ModuleSource,
    ModuleSuffixes,
    PackageDistributionResource,
    PackageResource,
    PythonResource,
)

STDLIB_TEST_PACKAGES: tuple[str, ...] = (
    "bsddb.test",
    "ctypes.test",
    "distutils.tests",
    "email.test",
    "idlelib.idle_test",
    "json.tests",
    "lib-tk.test",
    "lib2to3.tests",
    "sqlite3.test",
    "test",
    "tkinter.test",
    "unittest.test",
)


def is_stdlib_test_package(name: str, test_packages: Sequence[str] = STDLIB_TEST_PACKAGES) -> bool:
    return any(name == package or name.startswith(f"{package}.") for package in test_packages)


def walk_tree_files(root: Path) -> Iterator[Path]:
    """Yield every file below ``root`` in a stable order."""
    for path in sorted(root.rglob("*")):
        if path.is_file():
            yield path


def find_python_resources(
    root: str | Path,
    *,
    cache_tag: str,
    suffixes: ModuleSuffixes,
    is_stdlib: bool = False,
    test_packages: Sequence[str] = STDLIB_TEST_PACKAGES,
    read_data: bool = False,
) -> list[PythonResource]:
    """Classify every file under ``root`` as a Python resource.

    Compiled bytecode and files outside any package are ignored. With
    ``read_data`` the file contents are loaded into memory, which is required
    when ``root`` is a temporary directory.
    """
    base = Path(root)
    resources: list[PythonResource] = []

    for path in walk_tree_files(base):
        parts = path.relative_to(base).parts
        data = DataLocation.from_path(path)
        if read_data:
            data = data.to_memory()

        dist = _distribution_directory(parts[0]) if len(parts) >= 2 else None
        if dist is not None:
            package, version, kind = dist
            resources.append(
                PackageDistributionResource(
                    package=package,
                    version=version,
                    name="/".join(parts[1:]),
                    data=data,
                    location_kind=kind,
                )
            )
            continue

        if "__pycache__" in parts:
            continue

        filename = parts[-1]
        directories = parts[:-1]

        extension_suffix = _matching_suffix(filename, suffixes.extension)
        if extension_suffix is not None and _all_identifiers(directories):
            resources.append(
                ExtensionModule(
                    name=".".join((*directories, filename[: -len(extension_suffix)])),
                    extension_file_suffix=extension_suffix,
                    shared_library=data,
                    is_package=False,
                    is_stdlib=is_stdlib,
                )
            )
            continue

        source_suffix = _matching_suffix(filename, suffixes.source)
        if source_suffix is not None and _all_identifiers(directories):
            stem = filename[: -len(source_suffix)]
            is_package = stem == "__init__"
            module_parts = directories if is_package else (*directories, stem)
            if not module_parts:
                continue
            name = ".".join(module_parts)
            resources.append(
                ModuleSource(
                    name=name,
                    source=data,
                    is_package=is_package,
                    cache_tag=cache_tag,
                    is_stdlib=is_stdlib,
                    is_test=is_stdlib and is_stdlib_test_package(name, test_packages),
                )
            )
            continue

        bytecode_suffixes = (
            *suffixes.bytecode,
            *suffixes.debug_bytecode,
            *suffixes.optimized_bytecode,
        )
        if _matching_suffix(filename, bytecode_suffixes) is not None:
            continue

        package_parts = _leaf_package(base, directories)
        if package_parts is None:
            continue
        leaf_package = ".".join(package_parts)
        resources.append(
            PackageResource(
                leaf_package=leaf_package,
                relative_name="/".join(parts[len(package_parts) :]),
                data=data,
                is_stdlib=is_stdlib,
                is_test=is_stdlib and is_stdlib_test_package(leaf_package, test_packages),
            )
        )

    return resources


def _distribution_directory(name: str) -> tuple[str, str, str] | None:
    for kind in ("dist-info", "egg-info"):
        marker = f".{kind}"
        if name.endswith(marker):
            package, _, version = name[: -len(marker)].partition("-")
            return package, version, kind
    return None


def _matching_suffix(filename: str, suffixes: Sequence[str]) -> str | None:
    # Prefer the longest match so ``.cpython-312-x86_64-linux-gnu.so`` wins over ``.so``.
    matches = [suffix for suffix in suffixes if suffix and filename.endswith(suffix)]
    if not matches:
        return None
    return max(matches, key=len)


def _all_identifiers(parts: Sequence[str]) -> bool:
    return all(part.isidentifier() for part in parts)


def _leaf_package(root: Path, directories: Sequence[str]) -> tuple[str, ...] | None:
    for end in range(len(directories), 0, -1):
        candidate = tuple(directories[:end])
        if not _all_identifiers(candidate):
            continue
        if root.joinpath(*candidate, "__init__.py").is_file():
            return candidate
    return None


__all__ = [
    "STDLIB_TEST_PACKAGES",
    "find_python_resources",
    "is_stdlib_test_package",
    "walk_tree_files",
]
