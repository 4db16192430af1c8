"""Files to install on disk next to a produced binary."""

from __future__ import annotations

import stat
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from oxpack.errors import IntegrityError, ValidationError


@dataclass(frozen=True, slots=True)
class FileContent:
    data: bytes
    executable: bool = False


@dataclass(slots=True)
class FileManifest:
    """Mapping of relative install paths to file contents."""

    files: dict[PurePosixPath, FileContent] = field(default_factory=dict)

    def add_file(self, path: str | PurePosixPath, content: FileContent) -> None:
        relative = PurePosixPath(str(path).replace("\\", "/"))
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValidationError(
                "Manifest paths must be relative and stay under the install directory.",
                context={"path": str(path)},
            )
        self.files[relative] = content

    def add_manifest(self, other: FileManifest) -> None:
        for path, content in other.files.items():
            self.add_file(path, content)

    def __iter__(self) -> Iterator[tuple[PurePosixPath, FileContent]]:
        return iter(sorted(self.files.items()))

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, path: object) -> bool:
        return PurePosixPath(str(path)) in self.files

    def get(self, path: str | PurePosixPath) -> FileContent | None:
        return self.files.get(PurePosixPath(str(path)))

    def write_files(self, dest_dir: str | Path) -> list[Path]:
        """Write every file under ``dest_dir``, returning the written paths."""
        root = Path(dest_dir)
        written: list[Path] = []
        for relative, content in self:
            target = root.joinpath(*relative.parts)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content.data)
                if content.executable:
                    mode = target.stat().st_mode
                    target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            except OSError as exc:
                raise IntegrityError(
                    "Unable to write install file.",
                    context={"path": str(target), "error": str(exc)},
                ) from exc
            written.append(target)
        return written


__all__ = ["FileContent", "FileManifest"]
