import io
import struct
from pathlib import Path, PurePosixPath

import pytest
from conftest import FakeCompiler

from oxpack.errors import ConfigurationError, DunderFileWarning, ExternalProcessError, ValidationError
from oxpack.models import (
    LOCATION_IN_MEMORY,
    DataLocation,
    ExtensionModule,
    LibraryDependency,
    ModuleBytecodeRequest,
    ModuleSource,
    PackageDistributionResource,
    PackageResource,
    RelativePath,
)
from oxpack.observability import StructuredLogger
from oxpack.policy import (
    FilesystemRelativeOnly,
    InMemoryOnly,
    PreferInMemoryFallbackFilesystemRelative,
)
from oxpack.resources import ResourceCollection
from oxpack.resources.packed import HEADER_V1

CACHE_TAG = "cpython-312"


def test_re_adding_a_facet_overwrites_instead_of_duplicating() -> None:
    collection = _prefer()
    collection.add_module_source(_source("app", b"v1"), LOCATION_IN_MEMORY)
    collection.add_module_source(_source("app", b"v2"), LOCATION_IN_MEMORY)
    collection.add_module_source(_source("app", b"v3"), RelativePath("lib"))

    assert len(collection) == 1
    entry = collection.get("app")
    assert entry is not None
    assert entry.in_memory_source == DataLocation.from_bytes(b"v2")
    assert entry.relative_path_module_source == (
        PurePosixPath("lib/app.py"),
        DataLocation.from_bytes(b"v3"),
    )


def test_relative_install_paths_follow_python_layout() -> None:
    collection = ResourceCollection(FilesystemRelativeOnly("lib"), CACHE_TAG)
    location = RelativePath("lib")
    collection.add_module_source(_source("pkg", b"", is_package=True), location)
    collection.add_module_bytecode_request(
        ModuleBytecodeRequest(name="pkg.mod", source=DataLocation.from_bytes(b""), optimize_level=1),
        location,
    )
    collection.add_module_bytecode_request(
        ModuleBytecodeRequest(name="pkg", source=DataLocation.from_bytes(b""), is_package=True),
        location,
    )
    collection.add_package_resource(
        PackageResource(leaf_package="pkg.sub", relative_name="data/a.txt", data=DataLocation.from_bytes(b"")),
        location,
    )
    collection.add_package_distribution_resource(
        PackageDistributionResource(
            package="pkg", version="1.0", name="METADATA", data=DataLocation.from_bytes(b"")
        ),
        location,
    )

    pkg = collection.get("pkg")
    assert pkg is not None
    assert pkg.relative_path_module_source is not None
    assert pkg.relative_path_module_source[0] == PurePosixPath("lib/pkg/__init__.py")
    assert pkg.relative_path_bytecode[0][0] == PurePosixPath("lib/pkg/__pycache__/__init__.cpython-312.pyc")
    assert pkg.relative_path_distribution_resources["METADATA"][0] == PurePosixPath(
        "lib/pkg-1.0.dist-info/METADATA"
    )
    module = collection.get("pkg.mod")
    assert module is not None
    assert module.relative_path_bytecode[1][0] == PurePosixPath(
        "lib/pkg/__pycache__/mod.cpython-312.opt-1.pyc"
    )
    sub = collection.get("pkg.sub")
    assert sub is not None
    assert sub.relative_path_package_resources["data/a.txt"][0] == PurePosixPath("lib/pkg/sub/data/a.txt")


def test_location_must_match_resources_policy() -> None:
    in_memory_only = ResourceCollection(InMemoryOnly(), CACHE_TAG)
    with pytest.raises(ConfigurationError):
        in_memory_only.add_module_source(_source("app", b""), RelativePath("lib"))

    filesystem_only = ResourceCollection(FilesystemRelativeOnly("lib"), CACHE_TAG)
    with pytest.raises(ConfigurationError):
        filesystem_only.add_module_source(_source("app", b""), LOCATION_IN_MEMORY)
    with pytest.raises(ConfigurationError):
        filesystem_only.add_in_memory_distribution_extension_module(_extension("_ssl", shared=b"so"))

    assert len(in_memory_only) == 0
    assert len(filesystem_only) == 0


def test_builtin_default_distribution_module_links_without_objects() -> None:
    collection = _prefer()
    module = ExtensionModule(
        name="_abc",
        init_fn="PyInit__abc",
        builtin_default=True,
        object_file_data=(DataLocation.from_bytes(b"ignored"),),
    )
    collection.add_builtin_distribution_extension_module(module)

    state = collection.extension_module_state("_abc")
    assert state is not None
    assert state.link_object_files == []
    assert collection.get("_abc") is None
    assert collection.builtin_extension_module_names() == ["_abc"]


def test_builtin_distribution_module_splits_link_categories() -> None:
    collection = _prefer()
    module = _extension(
        "_ssl",
        objects=(b"ssl.o",),
        links=(
            LibraryDependency(name="ssl", static_library=DataLocation.from_bytes(b"a")),
            LibraryDependency(name="z", dynamic_library=DataLocation.from_bytes(b"so")),
            LibraryDependency(name="dl", system=True),
            LibraryDependency(name="Security", framework=True),
        ),
    )
    collection.add_builtin_distribution_extension_module(module)

    state = collection.extension_module_state("_ssl")
    assert state is not None
    assert state.link_object_files == [DataLocation.from_bytes(b"ssl.o")]
    assert state.link_static_libraries == {"ssl"}
    assert state.link_dynamic_libraries == {"z"}
    assert state.link_system_libraries == {"dl"}
    assert state.link_frameworks == {"Security"}
    assert state.link_external_libraries == set()


def test_builtin_distribution_module_without_objects_is_rejected() -> None:
    collection = _prefer()
    with pytest.raises(ConfigurationError, match="lacks object file data"):
        collection.add_builtin_distribution_extension_module(_extension("_ssl"))
    assert "_ssl" not in collection


def test_in_memory_module_without_shared_library_leaves_collection_unchanged() -> None:
    collection = _prefer()
    collection.add_builtin_distribution_extension_module(_extension("_ssl", objects=(b"o",)))

    with pytest.raises(ConfigurationError, match="lacks shared library data"):
        collection.add_in_memory_distribution_extension_module(_extension("_ssl", objects=(b"o",)))

    assert collection.builtin_extension_module_names() == ["_ssl"]
    assert collection.get("_ssl") is None
    assert len(collection) == 0


def test_in_memory_distribution_module_registers_dynamic_dependencies() -> None:
    collection = _prefer()
    module = _extension(
        "_ssl",
        shared=b"ssl-shared",
        links=(
            LibraryDependency(name="libcrypto", dynamic_library=DataLocation.from_bytes(b"crypto")),
            LibraryDependency(name="ws2_32", system=True),
        ),
    )
    collection.add_in_memory_distribution_extension_module(module)

    entry = collection.get("_ssl")
    assert entry is not None
    assert entry.in_memory_extension_module_shared_library == DataLocation.from_bytes(b"ssl-shared")
    assert entry.shared_library_dependency_names == ["libcrypto"]
    dependency = collection.get("libcrypto")
    assert dependency is not None
    assert dependency.in_memory_shared_library == DataLocation.from_bytes(b"crypto")


def test_relative_distribution_module_installs_dependencies_under_prefix(tmp_path: Path) -> None:
    collection = _prefer()
    library = tmp_path / "libcrypto.so.1.1"
    library.write_bytes(b"crypto")
    module = _extension(
        "pkg._ssl",
        shared=b"ssl-shared",
        suffix=".so",
        links=(LibraryDependency(name="crypto", dynamic_library=DataLocation.from_path(library)),),
    )
    collection.add_relative_path_distribution_extension_module(module, "lib")

    entry = collection.get("pkg._ssl")
    assert entry is not None
    assert entry.relative_path_extension_module_shared_library is not None
    assert entry.relative_path_extension_module_shared_library[0] == PurePosixPath("lib/pkg/_ssl.so")
    dependency = collection.get("crypto")
    assert dependency is not None
    assert dependency.relative_path_shared_library is not None
    assert dependency.relative_path_shared_library[0] == PurePosixPath("lib/libcrypto.so.1.1")


def test_placing_an_extension_module_replaces_its_previous_placement() -> None:
    collection = _prefer()
    module = _extension("_ssl", shared=b"so", objects=(b"o",))

    collection.add_builtin_distribution_extension_module(module)
    collection.add_in_memory_distribution_extension_module(module)
    assert collection.extension_module_state("_ssl") is None
    assert collection.get("_ssl") is not None

    collection.add_relative_path_distribution_extension_module(module, "lib")
    entry = collection.get("_ssl")
    assert entry is not None
    assert entry.in_memory_extension_module_shared_library is None
    assert entry.relative_path_extension_module_shared_library is not None

    collection.add_builtin_distribution_extension_module(module)
    assert collection.get("_ssl") is None
    assert collection.builtin_extension_module_names() == ["_ssl"]


def test_replacing_a_placement_drops_its_dependency_libraries() -> None:
    collection = _prefer()
    crypto = LibraryDependency(name="libcrypto", dynamic_library=DataLocation.from_bytes(b"crypto"))
    module = _extension("_ssl", shared=b"so", objects=(b"o",), links=(crypto,))

    collection.add_in_memory_distribution_extension_module(module)
    assert collection.get("libcrypto") is not None

    collection.add_relative_path_distribution_extension_module(module, "lib")
    dependency = collection.get("libcrypto")
    assert dependency is not None
    assert dependency.in_memory_shared_library is None
    assert dependency.relative_path_shared_library is not None

    collection.add_builtin_distribution_extension_module(module)
    assert collection.get("libcrypto") is None
    assert [name for name, _ in collection.iter_resources()] == []


def test_shared_dependency_survives_while_another_module_needs_it() -> None:
    collection = _prefer()
    crypto = LibraryDependency(name="libcrypto", dynamic_library=DataLocation.from_bytes(b"crypto"))
    ssl = _extension("_ssl", shared=b"ssl", objects=(b"o",), links=(crypto,))
    hashlib = _extension("_hashlib", shared=b"hashlib", links=(crypto,))

    collection.add_in_memory_distribution_extension_module(ssl)
    collection.add_in_memory_distribution_extension_module(hashlib)
    collection.add_builtin_distribution_extension_module(ssl)

    dependency = collection.get("libcrypto")
    assert dependency is not None
    assert dependency.in_memory_shared_library == DataLocation.from_bytes(b"crypto")
    assert [name for name, _ in collection.iter_resources()] == ["libcrypto", "_hashlib"]

def test_user_builtin_module_links_every_library_externally() -> None:
    collection = _prefer()
    module = _extension(
        "fast",
        objects=(b"a.o", b"b.o"),
        links=(
            LibraryDependency(name="m", system=True),
            LibraryDependency(name="foo", static_library=DataLocation.from_bytes(b"")),
        ),
    )
    collection.add_builtin_extension_module(module)

    state = collection.extension_module_state("fast")
    assert state is not None
    assert len(state.link_object_files) == 2
    assert state.link_external_libraries == {"m", "foo"}
    assert state.link_static_libraries == set()

    with pytest.raises(ConfigurationError):
        collection.add_builtin_extension_module(_extension("empty"))


def test_user_extension_module_placements() -> None:
    collection = _prefer()
    collection.add_in_memory_extension_module_shared_library("pkg.fast", b"so", is_package=True)
    entry = collection.get("pkg.fast")
    assert entry is not None
    assert entry.is_package
    assert entry.in_memory_extension_module_shared_library == DataLocation.from_bytes(b"so")

    with pytest.raises(ConfigurationError):
        collection.add_relative_path_extension_module(_extension("pkg.fast"), "lib")
    assert entry.in_memory_extension_module_shared_library is not None

    collection.add_relative_path_extension_module(_extension("pkg.fast", shared=b"so2", suffix=".pyd"), "lib")
    entry = collection.get("pkg.fast")
    assert entry is not None
    assert entry.in_memory_extension_module_shared_library is None
    assert entry.relative_path_extension_module_shared_library is not None
    assert entry.relative_path_extension_module_shared_library[0] == PurePosixPath("lib/pkg/fast.pyd")


def test_filter_by_names_drops_records_and_build_states_idempotently() -> None:
    collection = _populated()
    logger = StructuredLogger()

    removed = collection.filter_by_names({"A", "B"}, logger=logger)
    assert sorted(removed) == ["C", "_ssl", "d"]
    snapshot = _snapshot(collection)

    assert collection.filter_by_names({"A", "B"}) == []
    assert _snapshot(collection) == snapshot
    assert [name for name, _ in collection.iter_resources()] == ["A"]
    assert collection.builtin_extension_module_names() == ["B"]
    assert sorted(r["resource"] for r in logger.records_for("filter_resources")) == ["C", "_ssl", "d"]


def test_filter_from_files_reads_names_and_globs(tmp_path: Path) -> None:
    collection = _populated()
    (tmp_path / "names.txt").write_text("# kept modules\nA\n\n", encoding="utf-8")
    (tmp_path / "extra-1.names").write_text("B\n", encoding="utf-8")
    (tmp_path / "extra-2.names").write_text("  d  \n", encoding="utf-8")

    collection.filter_from_files([tmp_path / "names.txt"], [str(tmp_path / "*.names")])

    assert [name for name, _ in collection.iter_resources()] == ["A", "d"]
    assert collection.builtin_extension_module_names() == ["B"]


def test_missing_names_file_is_validation_error(tmp_path: Path) -> None:
    collection = _populated()

    with pytest.raises(ValidationError, match="resource names file"):
        collection.filter_from_files([tmp_path / "missing.txt"])
    assert len(collection) == 3


def test_find_dunder_file_scans_sources_and_bytecode_requests() -> None:
    collection = _prefer()
    collection.add_module_source(_source("uses_file", b"print(__file__)\n"), LOCATION_IN_MEMORY)
    collection.add_module_bytecode_request(
        ModuleBytecodeRequest(name="bytecode_only", source=DataLocation.from_bytes(b"x = __file__")),
        LOCATION_IN_MEMORY,
    )
    collection.add_module_source(_source("clean", b"x = 1\n"), LOCATION_IN_MEMORY)

    assert collection.find_dunder_file() == ["bytecode_only", "uses_file"]


def test_package_warns_about_dunder_file_without_failing(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    collection.add_module_source(_source("uses_file", b"print(__file__)\n"), LOCATION_IN_MEMORY)
    logger = StructuredLogger()

    with pytest.warns(DunderFileWarning, match="uses_file"):
        embedded = collection.package(fake_compiler, logger=logger)

    assert "uses_file" in embedded.resources
    assert any(record["resource"] == "uses_file" for record in logger.warnings())


def test_package_compiles_bytecode_per_location(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    source = DataLocation.from_bytes(b"x = 1\n")
    for level in (0, 2):
        collection.add_module_bytecode_request(
            ModuleBytecodeRequest(name="app", source=source, optimize_level=level),
            LOCATION_IN_MEMORY,
        )
    collection.add_module_bytecode_request(
        ModuleBytecodeRequest(name="app", source=source, optimize_level=1),
        RelativePath("lib"),
    )

    embedded = collection.package(fake_compiler)

    packed = embedded.resources["app"]
    assert packed.in_memory_bytecode == b"none:app:0:x = 1\n"
    assert packed.in_memory_bytecode_opt1 is None
    assert packed.in_memory_bytecode_opt2 == b"none:app:2:x = 1\n"
    assert packed.relative_path_bytecode_opt1 == PurePosixPath("lib/__pycache__/app.cpython-312.opt-1.pyc")
    assert sorted(fake_compiler.calls) == [("app", 0, "none"), ("app", 1, "hash"), ("app", 2, "none")]

    files = embedded.extra_install_files()
    content = files.get("lib/__pycache__/app.cpython-312.opt-1.pyc")
    assert content is not None
    assert content.data == b"hash:app:1:x = 1\n"


def test_package_propagates_compiler_failures(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    collection.add_module_bytecode_request(
        ModuleBytecodeRequest(name="broken", source=DataLocation.from_bytes(b"def (")),
        LOCATION_IN_MEMORY,
    )
    fake_compiler.fail_on.add("broken")

    with pytest.raises(ExternalProcessError):
        collection.package(fake_compiler)


def test_extra_install_files_cover_every_relative_resource(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    location = RelativePath("lib")
    collection.add_module_source(_source("app", b"src"), location)
    collection.add_package_resource(
        PackageResource(leaf_package="app", relative_name="a.txt", data=DataLocation.from_bytes(b"a")),
        location,
    )
    collection.add_relative_path_distribution_extension_module(
        _extension(
            "fast",
            shared=b"so",
            suffix=".so",
            links=(LibraryDependency(name="dep", dynamic_library=DataLocation.from_bytes(b"dep")),),
        ),
        "lib",
    )

    embedded = collection.package(fake_compiler)
    files = embedded.extra_install_files()

    assert {str(path): content.data for path, content in files} == {
        "lib/app.py": b"src",
        "lib/app/a.txt": b"a",
        "lib/fast.so": b"so",
        "lib/dep": b"dep",
    }
    extension = files.get("lib/fast.so")
    assert extension is not None and extension.executable
    assert "dep" not in embedded.resources


def test_write_blobs_lists_names_in_collection_order(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    for name in ("zeta", "alpha", "mid"):
        collection.add_module_source(_source(name, b"pass\n"), LOCATION_IN_MEMORY)

    embedded = collection.package(fake_compiler)
    names = io.BytesIO()
    packed = io.BytesIO()
    embedded.write_blobs(names, packed)

    assert names.getvalue() == b"zeta\nalpha\nmid\n"
    data = packed.getvalue()
    assert data.startswith(HEADER_V1)
    sections, blob_index_length, count, index_length = struct.unpack_from("<BIII", data, len(HEADER_V1))
    assert count == 3
    assert sections == 2
    assert len(data) == (
        len(HEADER_V1) + 13 + blob_index_length + index_length + len(b"zetaalphamid") + 3 * len(b"pass\n")
    )


def test_linking_info_unions_static_modules(fake_compiler: FakeCompiler) -> None:
    collection = _prefer()
    collection.add_builtin_distribution_extension_module(
        _extension(
            "_ssl",
            objects=(b"ssl1.o", b"ssl2.o"),
            links=(
                LibraryDependency(name="ssl", static_library=DataLocation.from_bytes(b"")),
                LibraryDependency(name="dl", system=True),
            ),
        )
    )
    collection.add_builtin_distribution_extension_module(
        _extension(
            "_sqlite3",
            init_fn="PyInit__sqlite3",
            objects=(b"sqlite.o",),
            links=(
                LibraryDependency(name="sqlite3", dynamic_library=DataLocation.from_bytes(b"")),
                LibraryDependency(name="dl", system=True),
                LibraryDependency(name="CoreFoundation", framework=True),
            ),
        )
    )
    collection.add_builtin_extension_module(
        _extension("user", objects=(b"user.o",), links=(LibraryDependency(name="ext"),))
    )

    embedded = collection.package(fake_compiler)
    info = embedded.resolve_linking_info()

    assert len(info.object_files) == 4
    assert info.link_libraries == ("sqlite3", "ssl")
    assert info.link_system_libraries == ("dl",)
    assert info.link_frameworks == ("CoreFoundation",)
    assert info.link_libraries_external == ("ext",)
    assert embedded.builtin_extensions() == [
        ("_sqlite3", "PyInit__sqlite3"),
        ("_ssl", "PyInit__ssl"),
        ("user", "PyInit_user"),
    ]


def _prefer() -> ResourceCollection:
    return ResourceCollection(PreferInMemoryFallbackFilesystemRelative("lib"), CACHE_TAG)


def _source(name: str, data: bytes, *, is_package: bool = False) -> ModuleSource:
    return ModuleSource(
        name=name,
        source=DataLocation.from_bytes(data),
        is_package=is_package,
        cache_tag=CACHE_TAG,
    )


def _extension(
    name: str,
    *,
    shared: bytes | None = None,
    objects: tuple[bytes, ...] = (),
    links: tuple[LibraryDependency, ...] = (),
    suffix: str = ".cpython-312-x86_64-linux-gnu.so",
    init_fn: str | None = None,
) -> ExtensionModule:
    return ExtensionModule(
        name=name,
        init_fn=init_fn if init_fn is not None else f"PyInit_{name}",
        extension_file_suffix=suffix,
        object_file_data=tuple(DataLocation.from_bytes(o) for o in objects),
        shared_library=DataLocation.from_bytes(shared) if shared is not None else None,
        link_libraries=links,
    )


def _populated() -> ResourceCollection:
    collection = _prefer()
    collection.add_module_source(_source("A", b""), LOCATION_IN_MEMORY)
    collection.add_builtin_distribution_extension_module(_extension("B", objects=(b"o",)))
    collection.add_module_source(_source("C", b""), LOCATION_IN_MEMORY)
    collection.add_package_resource(
        PackageResource(leaf_package="d", relative_name="x", data=DataLocation.from_bytes(b"")),
        LOCATION_IN_MEMORY,
    )
    collection.add_builtin_distribution_extension_module(_extension("_ssl", objects=(b"o",)))
    return collection


def _snapshot(collection: ResourceCollection) -> tuple[list[str], list[str]]:
    return (
        [name for name, _ in collection.iter_resources()],
        collection.builtin_extension_module_names(),
    )
