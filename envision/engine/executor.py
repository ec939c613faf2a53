"""Script executor: evaluate a profile script and report its assignments."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol

from .errors import ProfileScriptFailureError
from .models import is_managed_variable

logger = logging.getLogger(__name__)

# Variables that always differ in a subshell; not real changes.
SUBSHELL_NOISE: tuple[str, ...] = ("_", "SHLVL", "BASH_EXECUTION_STRING")

EXIT_TIMEOUT = 124
EXIT_COMMAND_NOT_FOUND = 127

# Source the profile with its stdout sent to stderr, then dump the
# resulting environment NUL-separated on stdout.
_SOURCE_AND_DUMP = '. "$1" 1>&2 && env -0'


class ScriptExecutor(Protocol):
    def run(self, path: Path, environ: Mapping[str, str]) -> dict[str, str | None]:
        """Assignments the script makes: value, or None for removal."""
        ...


def parse_env_dump(data: bytes) -> dict[str, str]:
    """Parse ``env -0`` output; undecodable bytes are surrogate-escaped."""
    result: dict[str, str] = {}
    for entry in data.split(b"\0"):
        if not entry:
            continue
        key, sep, value = entry.partition(b"=")
        if not sep:
            continue
        result[os.fsdecode(key)] = os.fsdecode(value)
    return result


def diff_environments(
    before: Mapping[str, str],
    after: Mapping[str, str],
    ignore: Iterable[str] = SUBSHELL_NOISE,
) -> dict[str, str | None]:
    """Names whose value the script changed, added or removed."""
    skipped = set(ignore)

    def _skip(name: str) -> bool:
        return name in skipped or is_managed_variable(name)

    changes: dict[str, str | None] = {}
    for name, value in after.items():
        if _skip(name):
            continue
        if before.get(name) != value:
            changes[name] = value
    for name in before:
        if not _skip(name) and name not in after:
            changes[name] = None
    return dict(sorted(changes.items()))


class BashScriptExecutor:
    """Source a profile in a clean, non-interactive bash and diff the result."""

    def __init__(self, shell: str = "bash", timeout: float | None = 30.0) -> None:
        self._shell = shell
        self._timeout = timeout

    def run(self, path: Path, environ: Mapping[str, str]) -> dict[str, str | None]:
        cmd = [
            self._shell, "--norc", "--noprofile", "-c", _SOURCE_AND_DUMP,
            "envision", str(path),
        ]
        logger.debug("Executing profile %s with %s", path, self._shell)
        try:
            proc = subprocess.run(
                cmd,
                env=dict(environ),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProfileScriptFailureError(
                path, f"timed out after {exc.timeout:g}s", EXIT_TIMEOUT,
            ) from exc
        except FileNotFoundError as exc:
            raise ProfileScriptFailureError(
                path, f"{self._shell}: command not found", EXIT_COMMAND_NOT_FOUND,
            ) from exc

        if proc.returncode != 0:
            message = proc.stderr.decode("utf-8", errors="replace").strip()
            # Negative return codes mean the script died from a signal.
            code = proc.returncode if proc.returncode > 0 else 128 - proc.returncode
            logger.warning("Profile %s failed with exit %d", path, code)
            raise ProfileScriptFailureError(path, message, code)

        after = parse_env_dump(proc.stdout)
        changes = diff_environments(environ, after)
        logger.debug("Profile %s produced %d change(s)", path, len(changes))
        return changes
