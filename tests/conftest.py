"""Shared test fixtures."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from oxpack.bytecode import BytecodeHeaderMode
from oxpack.models import OptimizeLevel

STDLIB = "install/lib/python3.12"


@dataclass(slots=True)
class FakeCompiler:
    """Bytecode compiler double that records every request."""

    calls: list[tuple[str, int, str]] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)

    def compile(
        self,
        *,
        name: str,
        source: bytes,
        optimize_level: OptimizeLevel,
        header: BytecodeHeaderMode,
    ) -> bytes:
        from oxpack.errors import ExternalProcessError

        self.calls.append((name, optimize_level, header))
        if name in self.fail_on:
            raise ExternalProcessError(f"Failed to compile bytecode for {name}.")
        return f"{header}:{name}:{optimize_level}:".encode() + source


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def distribution_dir(tmp_path: Path) -> Path:
    return write_distribution(tmp_path / "dist")


def base_manifest() -> dict[str, Any]:
    return {
        "version": "5",
        "target_triple": "x86_64-unknown-linux-gnu",
        "python_tag": "cp312",
        "python_abi_tag": "cp312",
        "python_platform_tag": "linux_x86_64",
        "python_version": "3.12.0",
        "python_exe": "install/bin/python3",
        "python_implementation_cache_tag": "cpython-312",
        "python_paths": {
            "include": "install/include/python3.12",
            "stdlib": STDLIB,
        },
        "python_stdlib_test_packages": ["test"],
        "python_suffixes": {
            "source": [".py"],
            "bytecode": [".pyc"],
            "debug_bytecode": [".pyc"],
            "optimized_bytecode": [".pyc"],
            "extension": [".cpython-312-x86_64-linux-gnu.so", ".so"],
        },
        "python_symbol_visibility": "global-default",
        "python_extension_module_loading": ["builtin", "shared-library"],
        "libpython_link_mode": "static",
        "licenses": ["Python-2.0"],
        "license_path": "licenses/LICENSE.python.txt",
        "build_info": {
            "core": {
                "objs": ["build/core/main.o"],
                "links": [{"name": "m", "system": True}],
            },
            "extensions": {
                "_abc": [
                    {
                        "in_core": True,
                        "init_fn": "PyInit__abc",
                        "links": [],
                        "objs": [],
                        "required": True,
                        "variant": "default",
                    }
                ],
                "_crypt": [
                    {
                        "in_core": False,
                        "init_fn": "PyInit__crypt",
                        "links": [{"name": "crypt", "system": True}],
                        "objs": ["build/extensions/_crypt/_crypt.o"],
                        "required": False,
                        "variant": "default",
                        "shared_lib": "build/extensions/_crypt/_crypt.so",
                    }
                ],
                "_ssl": [
                    {
                        "in_core": False,
                        "init_fn": "PyInit__ssl",
                        "licenses": ["OpenSSL"],
                        "license_paths": ["licenses/LICENSE.openssl.txt"],
                        "links": [
                            {"name": "ssl", "path_static": "build/lib/libssl.a"},
                            {"name": "dl", "system": True},
                        ],
                        "objs": ["build/extensions/_ssl/_ssl.o"],
                        "required": False,
                        "variant": "default",
                        "shared_lib": "build/extensions/_ssl/_ssl.so",
                    }
                ],
                "_sqlite3": [
                    {
                        "in_core": False,
                        "init_fn": "PyInit__sqlite3",
                        "links": [{"name": "sqlite3", "path_static": "build/lib/libsqlite3.a"}],
                        "objs": ["build/extensions/_sqlite3/_sqlite3.o"],
                        "required": False,
                        "variant": "default",
                        "shared_lib": "build/extensions/_sqlite3/_sqlite3.so",
                    },
                    {
                        "in_core": False,
                        "init_fn": "PyInit__sqlite3",
                        "links": [],
                        "objs": ["build/extensions/_sqlite3/_sqlite3_nolib.o"],
                        "required": False,
                        "variant": "nolib",
                        "shared_lib": "build/extensions/_sqlite3/_sqlite3_nolib.so",
                    },
                ],
            },
            "inittab_object": "build/core/config.o",
            "inittab_cflags": ["-std=c99"],
            "object_file_format": "elf",
        },
    }


def write_distribution(
    root: Path,
    *,
    manifest: dict[str, Any] | None = None,
    extra_files: dict[str, bytes] | None = None,
) -> Path:
    """Write a minimal standalone distribution tree under ``root``."""
    python = root / "python"
    files: dict[str, bytes] = {
        f"{STDLIB}/os.py": b"import sys\n",
        f"{STDLIB}/json/__init__.py": b"from .decoder import loads\n",
        f"{STDLIB}/json/decoder.py": b"def loads(s):\n    return s\n",
        f"{STDLIB}/json/schema.txt": b"schema",
        f"{STDLIB}/test/__init__.py": b"",
        f"{STDLIB}/test/test_os.py": b"print(__file__)\n",
        f"{STDLIB}/__pycache__/os.cpython-312.pyc": b"\x00",
        "install/include/python3.12/Python.h": b"/* header */\n",
        "install/bin/python3": b"#!/bin/sh\n",
        "licenses/LICENSE.python.txt": b"PSF license text",
        "licenses/LICENSE.openssl.txt": b"OpenSSL license text",
        "build/core/main.o": b"core-object",
        "build/core/config.o": b"inittab-object",
        "build/lib/libssl.a": b"libssl",
        "build/lib/libsqlite3.a": b"libsqlite3",
        "build/extensions/_crypt/_crypt.o": b"crypt-object",
        "build/extensions/_crypt/_crypt.so": b"crypt-shared",
        "build/extensions/_ssl/_ssl.o": b"ssl-object",
        "build/extensions/_ssl/_ssl.so": b"ssl-shared",
        "build/extensions/_sqlite3/_sqlite3.o": b"sqlite3-object",
        "build/extensions/_sqlite3/_sqlite3.so": b"sqlite3-shared",
        "build/extensions/_sqlite3/_sqlite3_nolib.o": b"sqlite3-nolib-object",
        "build/extensions/_sqlite3/_sqlite3_nolib.so": b"sqlite3-nolib-shared",
    }
    files.update(extra_files or {})
    for relative, data in files.items():
        path = python / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    payload = manifest if manifest is not None else base_manifest()
    (python / "PYTHON.json").write_text(json.dumps(payload), encoding="utf-8")
    return root
