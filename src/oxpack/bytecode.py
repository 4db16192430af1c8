"""Compile Python source to bytecode with the target distribution's interpreter.

Bytecode must match the interpreter that will execute it, so compilation runs
in a long-lived child process of the distribution's ``python`` executable.
Requests and responses are exchanged over the child's stdin and stdout.

Request::

    compile\\n
    <name length>\\n
    <source length>\\n
    <optimize level>\\n
    <header mode>\\n
    <name bytes><source bytes>

Response::

    ok\\n<length>\\n<bytecode>      or      error\\n<length>\\n<message>

Warnings raised while compiling are sent ahead of the response as
``warning\\n<length>\\n<message>`` frames. The child's stderr goes to a
temporary file so unread diagnostics can never block it.
"""

from __future__ import annotations

import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Literal, Protocol

from oxpack.errors import ExternalProcessError
from oxpack.models import OptimizeLevel
from oxpack.observability import StructuredLogger

BytecodeHeaderMode = Literal["none", "hash"]

_COMPILER_SCRIPT = """\
import importlib.util
import marshal
import sys
import warnings

stdin = sys.stdin.buffer
stdout = sys.stdout.buffer


def reply(status, payload):
    stdout.write(status + b"\\n" + str(len(payload)).encode("ascii") + b"\\n" + payload)
    stdout.flush()


while True:
    command = stdin.readline().rstrip(b"\\n")
    if not command or command == b"exit":
        break
    name_length = int(stdin.readline())
    source_length = int(stdin.readline())
    optimize = int(stdin.readline())
    header = stdin.readline().rstrip(b"\\n")
    name = stdin.read(name_length).decode("utf-8")
    source = stdin.read(source_length)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            code = compile(source, name, "exec", dont_inherit=True, optimize=optimize)
        except Exception as exc:
            code = None
            error = "%s: %s" % (type(exc).__name__, exc)
    for warning in caught:
        message = "%s:%s: %s: %s" % (
            warning.filename, warning.lineno, warning.category.__name__, warning.message
        )
        reply(b"warning", message.encode("utf-8", "replace"))
    if code is None:
        reply(b"error", error.encode("utf-8", "replace"))
        continue
    data = marshal.dumps(code)
    if header == b"hash":
        # Hash-based, unchecked pyc header.
        data = (
            importlib.util.MAGIC_NUMBER
            + (1).to_bytes(4, "little")
            + importlib.util.source_hash(source)
            + data
        )
    reply(b"ok", data)
"""


class BytecodeCompiler(Protocol):
    def compile(
        self,
        *,
        name: str,
        source: bytes,
        optimize_level: OptimizeLevel,
        header: BytecodeHeaderMode,
    ) -> bytes:
        """Return bytecode for ``source`` or raise ``ExternalProcessError``."""


@dataclass(slots=True)
class PythonBytecodeCompiler:
    python_exe: Path
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _process: subprocess.Popen[bytes] | None = field(default=None, init=False, repr=False)
    _stderr: IO[bytes] | None = field(default=None, init=False, repr=False)

    def __enter__(self) -> PythonBytecodeCompiler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        if self._process is not None:
            return
        stderr = tempfile.TemporaryFile()
        try:
            self._process = subprocess.Popen(
                [str(self.python_exe), "-c", _COMPILER_SCRIPT],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=stderr,
            )
        except OSError as exc:
            stderr.close()
            raise ExternalProcessError(
                "Unable to start bytecode compiler.",
                hint="Check that the distribution's python executable runs on this host.",
                context={"python_exe": str(self.python_exe), "error": str(exc)},
            ) from exc
        self._stderr = stderr
        self.logger.log(
            operation="bytecode",
            phase="start",
            message="started bytecode compiler",
            extra={"python_exe": str(self.python_exe)},
        )

    def compile(
        self,
        *,
        name: str,
        source: bytes,
        optimize_level: OptimizeLevel,
        header: BytecodeHeaderMode,
    ) -> bytes:
        self.start()
        process = self._process
        if process is None or process.stdin is None or process.stdout is None:
            raise ExternalProcessError(
                "Bytecode compiler is not running.",
                context={"module": name, "python_exe": str(self.python_exe)},
            )

        encoded_name = name.encode("utf-8")
        request = b"".join(
            [
                b"compile\n",
                f"{len(encoded_name)}\n".encode("ascii"),
                f"{len(source)}\n".encode("ascii"),
                f"{optimize_level}\n".encode("ascii"),
                f"{header}\n".encode("ascii"),
                encoded_name,
                source,
            ]
        )
        try:
            process.stdin.write(request)
            process.stdin.flush()
        except OSError as exc:
            raise self._process_failure(name) from exc

        while True:
            status = process.stdout.readline().rstrip(b"\n")
            length_line = process.stdout.readline()
            if not status or not length_line:
                raise self._process_failure(name)
            payload = _read_exactly(process.stdout, int(length_line))
            if status != b"warning":
                break
            self.logger.warn(
                operation="bytecode",
                phase="warning",
                resource=name,
                message=payload.decode("utf-8", errors="replace"),
            )

        if status == b"error":
            raise ExternalProcessError(
                f"Failed to compile bytecode for {name}.",
                hint="The source may use syntax unsupported by the target interpreter.",
                context={"module": name, "error": payload.decode("utf-8", errors="replace")},
            )
        if status != b"ok":
            raise ExternalProcessError(
                "Unexpected response from bytecode compiler.",
                context={"module": name, "status": status.decode("utf-8", errors="replace")},
            )
        return payload

    def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None
        # communicate() writes the exit command and closes stdin itself.
        process.communicate(input=b"exit\n")
        stderr = self._stderr_tail()
        self.logger.log(
            operation="bytecode",
            phase="stop",
            message="stopped bytecode compiler",
            extra={"returncode": process.returncode},
        )
        if process.returncode != 0:
            raise ExternalProcessError(
                "Bytecode compiler exited with an error.",
                context={"returncode": str(process.returncode), "stderr": stderr},
            )

    def _stderr_tail(self) -> str:
        stream = self._stderr
        self._stderr = None
        if stream is None:
            return ""
        with stream:
            stream.seek(0)
            return stream.read().decode("utf-8", errors="replace")[-2000:]

    def _process_failure(self, name: str) -> ExternalProcessError:
        process = self._process
        self._process = None
        returncode: int | None = None
        if process is not None:
            process.kill()
            returncode = process.wait()
            for stream in (process.stdin, process.stdout):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        # Unflushed request bytes for a dead child.
                        pass
        return ExternalProcessError(
            "Bytecode compiler process terminated unexpectedly.",
            context={
                "module": name,
                "returncode": str(returncode),
                "stderr": self._stderr_tail(),
            },
        )


def _read_exactly(stream: IO[bytes], length: int) -> bytes:
    chunks: list[bytes] = []
    remaining = length
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise ExternalProcessError(
                "Bytecode compiler response was truncated.",
                context={"expected": str(length), "received": str(length - remaining)},
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


__all__ = [
    "BytecodeCompiler",
    "BytecodeHeaderMode",
    "PythonBytecodeCompiler",
]
