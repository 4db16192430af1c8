"""Resolve resource allow-sets from name files."""

from __future__ import annotations

import glob
from collections.abc import Sequence
from pathlib import Path

from oxpack.errors import ValidationError


def read_resource_names_file(path: str | Path) -> set[str]:
    """Read a newline-delimited list of resource names.

    Blank lines and lines starting with ``#`` are ignored.
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(
            "Unable to read resource names file.",
            context={"path": str(file_path), "error": str(exc)},
        ) from exc

    names: set[str] = set()
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        names.add(stripped)
    return names


def resolve_resource_names_from_files(
    files: Sequence[str | Path] = (),
    glob_patterns: Sequence[str] = (),
) -> set[str]:
    """Union the names listed in ``files`` and every file matching ``glob_patterns``."""
    paths = [Path(f) for f in files]
    for pattern in glob_patterns:
        paths.extend(Path(match) for match in sorted(glob.glob(pattern)))

    names: set[str] = set()
    for path in paths:
        names |= read_resource_names_file(path)
    return names


__all__ = ["read_resource_names_file", "resolve_resource_names_from_files"]
