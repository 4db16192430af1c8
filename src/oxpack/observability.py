"""Structured logging and observability helpers."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

Level = Literal["info", "warn"]


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        message: str,
        phase: str | None = None,
        resource: str | None = None,
        level: Level = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "phase": phase,
            "resource": resource,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)

    def warn(
        self,
        *,
        operation: str,
        message: str,
        phase: str | None = None,
        resource: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.log(
            operation=operation,
            message=message,
            phase=phase,
            resource=resource,
            level="warn",
            extra=extra,
        )

    def relay_lines(self, lines: Iterable[str], *, operation: str) -> list[str]:
        """Record each line of child process output and return them."""
        relayed: list[str] = []
        for line in lines:
            text = line.rstrip("\r\n")
            relayed.append(text)
            self.log(operation=operation, phase="output", message=text)
        return relayed

    def records_for(self, operation: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("operation") == operation]

    def warnings(self) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("level") == "warn"]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
