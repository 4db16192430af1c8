from pathlib import Path

import pytest

from oxpack.errors import (
    ConfigurationError,
    ErrorCode,
    ExternalProcessError,
    IntegrityError,
    ValidationError,
)
from oxpack.models import (
    DataLocation,
    ExtensionModule,
    LibraryDependency,
    ModuleSource,
    PackageDistributionResource,
    PackageResource,
    RelativePath,
    SharedLibrary,
    is_in_packages,
    resource_name,
)


def test_error_codes_are_stable_and_machine_readable() -> None:
    errors = [
        ConfigurationError("bad placement"),
        IntegrityError("bad archive"),
        ExternalProcessError("child failed"),
        ValidationError("bad input"),
    ]
    assert [error.code for error in errors] == [
        ErrorCode.CONFIGURATION.value,
        ErrorCode.INTEGRITY.value,
        ErrorCode.EXTERNAL_PROCESS.value,
        ErrorCode.VALIDATION.value,
    ]


def test_error_renders_hint_and_context() -> None:
    error = IntegrityError(
        "Malicious symlink detected in archive.",
        hint="Only use trusted archives.",
        context={"member": "python/evil", "empty": ""},
    )
    rendered = str(error)
    assert rendered.splitlines()[0] == "Malicious symlink detected in archive."
    assert "Hint: Only use trusted archives." in rendered
    assert "member: python/evil" in rendered
    assert "empty" not in rendered

    payload = error.to_dict()
    assert payload["code"] == "E_INTEGRITY"
    assert payload["hint"] == "Only use trusted archives."
    assert payload["context"] == {"member": "python/evil", "empty": ""}


def test_data_location_requires_exactly_one_source() -> None:
    with pytest.raises(ValidationError):
        DataLocation()
    with pytest.raises(ValidationError):
        DataLocation(data=b"x", path=Path("x"))


def test_data_location_resolves_lazily(tmp_path: Path) -> None:
    path = tmp_path / "payload.bin"
    location = DataLocation.from_path(path)
    path.write_bytes(b"late bytes")

    assert location.resolve() == b"late bytes"
    assert location.to_memory() == DataLocation.from_bytes(b"late bytes")


def test_data_location_missing_file_is_integrity_error(tmp_path: Path) -> None:
    with pytest.raises(IntegrityError):
        DataLocation.from_path(tmp_path / "missing").resolve()


@pytest.mark.parametrize("prefix", ["", "/abs/lib", "lib/../../escape", "..\\up"])
def test_relative_path_rejects_unsafe_prefixes(prefix: str) -> None:
    with pytest.raises(ValidationError):
        RelativePath(prefix)


def test_resource_names_follow_collection_keys() -> None:
    data = DataLocation.from_bytes(b"")
    assert resource_name(ModuleSource(name="pkg.mod", source=data)) == "pkg.mod"
    assert (
        resource_name(PackageResource(leaf_package="pkg.sub", relative_name="a/b.txt", data=data))
        == "pkg.sub"
    )
    dist = PackageDistributionResource(package="pkg", version="1.0", name="METADATA", data=data)
    assert resource_name(dist) == "pkg"
    assert dist.directory_name == "pkg-1.0.dist-info"

    module = ModuleSource(name="pkg.mod", source=data)
    assert is_in_packages(module, ("pkg",))
    assert not is_in_packages(module, ("pk",))


def test_extension_module_library_requirements() -> None:
    system_only = ExtensionModule(
        name="_crypt",
        link_libraries=(LibraryDependency(name="crypt", system=True),),
    )
    with_library = ExtensionModule(
        name="_ssl",
        link_libraries=(LibraryDependency(name="ssl", static_library=DataLocation.from_bytes(b"")),),
    )
    assert not system_only.requires_libraries()
    assert with_library.requires_libraries()
    assert ExtensionModule(name="_abc", builtin_default=True).is_minimally_required()


def test_shared_library_install_filename() -> None:
    assert SharedLibrary(name="ssl", data=DataLocation.from_path("/x/libssl.so.1")).install_filename == (
        "libssl.so.1"
    )
    assert SharedLibrary(name="ssl", data=DataLocation.from_bytes(b"")).install_filename == "ssl"
