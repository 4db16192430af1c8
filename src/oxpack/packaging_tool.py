"""Run the distribution's interpreter to install and collect packages."""

from __future__ import annotations

import os
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from oxpack.distribution.base import PythonDistribution
from oxpack.distribution.scanning import find_python_resources
from oxpack.errors import ExternalProcessError
from oxpack.models import PythonResource, is_in_packages
from oxpack.observability import StructuredLogger

_OUTPUT_TAIL = 2000


def invoke_python(
    python_exe: str | Path,
    args: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | Path | None = None,
    logger: StructuredLogger | None = None,
) -> list[str]:
    """Run ``python_exe`` with ``args`` and relay its output to the logger.

    Standard output and standard error are combined. Returns the output lines.
    """
    log = logger if logger is not None else StructuredLogger()
    command = [str(python_exe), *args]
    process_env = dict(os.environ)
    if env is not None:
        process_env.update(env)

    log.log(
        operation="invoke_python",
        phase="start",
        message="running interpreter",
        extra={"argv": command},
    )
    try:
        completed = subprocess.run(
            command,
            cwd=str(cwd) if cwd is not None else None,
            env=process_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ExternalProcessError(
            "Unable to run Python interpreter.",
            context={"argv": " ".join(command), "error": str(exc)},
        ) from exc

    output = completed.stdout or ""
    lines = log.relay_lines(output.splitlines(), operation="invoke_python")
    if completed.returncode != 0:
        raise ExternalProcessError(
            "Python interpreter exited with an error.",
            hint="Inspect the relayed output for details.",
            context={
                "argv": " ".join(command),
                "returncode": str(completed.returncode),
                "output": output[-_OUTPUT_TAIL:],
            },
        )
    return lines


def ensure_pip(
    distribution: PythonDistribution,
    *,
    logger: StructuredLogger | None = None,
) -> None:
    """Bootstrap pip into the distribution with ``ensurepip``."""
    invoke_python(distribution.python_exe, ["-m", "ensurepip"], logger=logger)


def pip_install(
    distribution: PythonDistribution,
    args: Sequence[str],
    *,
    extra_envs: Mapping[str, str] | None = None,
    logger: StructuredLogger | None = None,
) -> list[PythonResource]:
    """Install packages with pip into a scratch directory and collect them.

    Resource data is read into memory before the scratch directory is removed.
    """
    with tempfile.TemporaryDirectory(prefix="oxpack-pip-install-") as target:
        invoke_python(
            distribution.python_exe,
            [
                "-m",
                "pip",
                "--disable-pip-version-check",
                "install",
                "--target",
                target,
                "--no-compile",
                *args,
            ],
            env=extra_envs,
            logger=logger,
        )
        return find_python_resources(
            target,
            cache_tag=distribution.cache_tag,
            suffixes=distribution.module_suffixes,
            read_data=True,
        )


def read_package_root(
    distribution: PythonDistribution,
    path: str | Path,
    packages: Sequence[str],
) -> list[PythonResource]:
    """Collect resources belonging to ``packages`` from an existing directory."""
    return [
        resource
        for resource in find_python_resources(
            path,
            cache_tag=distribution.cache_tag,
            suffixes=distribution.module_suffixes,
        )
        if is_in_packages(resource, tuple(packages))
    ]


__all__ = ["ensure_pip", "invoke_python", "pip_install", "read_package_root"]
