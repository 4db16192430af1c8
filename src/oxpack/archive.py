"""Concurrency-safe, traversal-checked extraction of distribution archives.

Extraction happens at most once per target directory: a sentinel file marks a
completed extraction, and the check-then-extract sequence runs under a
cross-process file lock. Every member is validated before anything is written,
so a malicious archive leaves no partial output behind.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import zstandard
from filelock import FileLock

from oxpack.errors import IntegrityError, ValidationError
from oxpack.observability import StructuredLogger

ARCHIVE_SUFFIX = ".tar.zst"
DEFAULT_SENTINEL = "python/PYTHON.json"

_SPOOL_MAX_SIZE = 64 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class _SymlinkCopy:
    source: Path
    dest: Path


def lock_path_for(extract_dir: str | Path) -> Path:
    root = Path(extract_dir)
    return root.parent / f"{root.name}.lock"


def extract_tar_zst_file(
    path: str | Path,
    extract_dir: str | Path,
    *,
    sentinel: str = DEFAULT_SENTINEL,
    copy_symlinks: bool | None = None,
    logger: StructuredLogger | None = None,
) -> Path:
    """Extract a ``.tar.zst`` archive file into ``extract_dir`` once."""
    archive_path = Path(path)
    if not archive_path.name.endswith(ARCHIVE_SUFFIX):
        raise ValidationError(
            "Unhandled distribution archive format.",
            hint=f"Distribution archives must end with {ARCHIVE_SUFFIX}.",
            context={"path": str(archive_path)},
        )
    try:
        handle = archive_path.open("rb")
    except OSError as exc:
        raise ValidationError(
            "Unable to open distribution archive.",
            context={"path": str(archive_path), "error": str(exc)},
        ) from exc
    with handle:
        return materialize_archive(
            handle,
            extract_dir,
            sentinel=sentinel,
            copy_symlinks=copy_symlinks,
            logger=logger,
        )


def materialize_archive(
    source: BinaryIO,
    extract_dir: str | Path,
    *,
    sentinel: str = DEFAULT_SENTINEL,
    copy_symlinks: bool | None = None,
    logger: StructuredLogger | None = None,
) -> Path:
    """Extract a zstd-compressed tar stream into ``extract_dir`` exactly once."""
    log = logger if logger is not None else StructuredLogger()
    if copy_symlinks is None:
        copy_symlinks = os.name == "nt"

    root = Path(extract_dir)
    root.parent.mkdir(parents=True, exist_ok=True)

    with FileLock(str(lock_path_for(root))):
        if (root / sentinel).exists():
            log.log(
                operation="materialize",
                message="archive already extracted",
                extra={"path": str(root)},
            )
            return root
        if root.exists() and not root.is_dir():
            raise IntegrityError(
                "Extraction root exists and is not a directory.",
                context={"path": str(root)},
            )

        absolute_root = Path(os.path.abspath(root))
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_SIZE) as buffer:
            _decompress(source, buffer)
            buffer.seek(0)
            try:
                archive = tarfile.open(fileobj=buffer, mode="r:")
            except tarfile.TarError as exc:
                raise IntegrityError(
                    "Unable to read tar archive.",
                    context={"path": str(root), "error": str(exc)},
                ) from exc
            with archive:
                try:
                    members = archive.getmembers()
                except tarfile.TarError as exc:
                    raise IntegrityError(
                        "Failed to iterate over archive.",
                        context={"path": str(root), "error": str(exc)},
                    ) from exc
                regular, symlinks = _plan_extraction(
                    members,
                    root=absolute_root,
                    copy_symlinks=copy_symlinks,
                )
                absolute_root.mkdir(parents=True, exist_ok=True)
                for member in regular:
                    try:
                        archive.extract(member, path=absolute_root, filter="tar")
                    except (OSError, tarfile.TarError) as exc:
                        raise IntegrityError(
                            "Unable to extract tar member.",
                            context={"member": member.name, "error": str(exc)},
                        ) from exc

        for link in symlinks:
            try:
                link.dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(link.source, link.dest)
            except OSError as exc:
                raise IntegrityError(
                    "Unable to copy symlinked file.",
                    context={"source": str(link.source), "dest": str(link.dest), "error": str(exc)},
                ) from exc

        _clear_readonly(absolute_root)
        log.log(
            operation="materialize",
            message="extracted archive",
            extra={
                "path": str(root),
                "members": len(regular),
                "copied_symlinks": len(symlinks),
            },
        )
    return root


def _decompress(source: BinaryIO, destination: BinaryIO) -> None:
    decompressor = zstandard.ZstdDecompressor()
    try:
        decompressor.copy_stream(source, destination)
    except zstandard.ZstdError as exc:
        raise IntegrityError(
            "Unable to decompress zstd archive stream.",
            hint="The archive may be truncated or not zstd-compressed.",
            context={"error": str(exc)},
        ) from exc


def _plan_extraction(
    members: list[tarfile.TarInfo],
    *,
    root: Path,
    copy_symlinks: bool,
) -> tuple[list[tarfile.TarInfo], list[_SymlinkCopy]]:
    regular: list[tarfile.TarInfo] = []
    symlinks: list[_SymlinkCopy] = []
    for member in members:
        dest = _resolve_under(root, Path(member.name), member=member.name)
        if member.issym() or member.islnk():
            # Symlink targets are relative to the entry's directory, hard
            # link targets to the archive root.
            base = dest.parent if member.issym() else root
            source = Path(os.path.normpath(base / member.linkname))
            if not source.is_relative_to(root):
                raise IntegrityError(
                    "Malicious symlink detected in archive.",
                    hint="Only use distribution archives from trusted sources.",
                    context={"member": member.name, "target": member.linkname},
                )
            if member.issym() and copy_symlinks:
                symlinks.append(_SymlinkCopy(source=source, dest=dest))
                continue
        regular.append(member)
    return regular, symlinks


def _resolve_under(root: Path, relative: Path, *, member: str) -> Path:
    if relative.is_absolute():
        raise IntegrityError(
            "Archive member uses an absolute path.",
            context={"member": member},
        )
    dest = Path(os.path.normpath(root / relative))
    if not dest.is_relative_to(root):
        raise IntegrityError(
            "Archive member escapes the extraction root.",
            context={"member": member},
        )
    return dest


def _clear_readonly(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            path = Path(dirpath) / name
            mode = path.lstat().st_mode
            if stat.S_ISLNK(mode) or mode & stat.S_IWUSR:
                continue
            try:
                path.chmod(stat.S_IMODE(mode) | stat.S_IWUSR)
            except OSError as exc:
                raise IntegrityError(
                    "Unable to mark extracted file as writable.",
                    context={"path": str(path), "error": str(exc)},
                ) from exc


__all__ = [
    "ARCHIVE_SUFFIX",
    "DEFAULT_SENTINEL",
    "extract_tar_zst_file",
    "lock_path_for",
    "materialize_archive",
]
