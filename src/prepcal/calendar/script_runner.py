"""Scripting-bridge runner contract and the ``osascript`` implementation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

EXTRACTION_TIMEOUT_SECONDS = 30.0
DISCOVERY_TIMEOUT_SECONDS = 10.0

_PERMISSION_MARKERS = (
    "not allowed",
    "permission",
    "access denied",
    "not authorized",
    "eacces",
    "(-1743)",
)


class ScriptRunnerError(RuntimeError):
    """Base error raised by a :class:`ScriptRunner`."""


class ScriptTimeoutError(ScriptRunnerError):
    """The script exceeded its time budget and the process was terminated."""


class ScriptPermissionError(ScriptRunnerError):
    """The user has not granted the bridge access to the calendar application."""


class ScriptExecutionError(ScriptRunnerError):
    """The script ran but exited unsuccessfully."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class ScriptRunner(Protocol):
    async def run(self, script_path: Path, timeout: float) -> str:
        """Execute the script at *script_path* and return its stdout."""
        ...


def looks_like_permission_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _PERMISSION_MARKERS)


@contextlib.contextmanager
def staged_script(body: str, *, prefix: str = "calendar-script") -> Iterator[Path]:
    """Write *body* to a uniquely named temp file and remove it on exit.

    The file is deleted on every exit path, including exceptions and
    cancellation of the surrounding task.
    """
    path = Path(tempfile.gettempdir()) / f"{prefix}-{uuid.uuid4()}.scpt"
    path.write_text(body, encoding="utf-8")
    try:
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove staged script %s: %s", path, exc)


class OsascriptRunner:
    """Run AppleScript files with ``osascript`` under a hard timeout."""

    def __init__(self, executable: str = "osascript") -> None:
        self._executable = executable

    async def run(self, script_path: Path, timeout: float) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                os.fspath(script_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except PermissionError as exc:
            raise ScriptPermissionError(f"Cannot execute {self._executable}: {exc}") from exc
        except OSError as exc:
            raise ScriptExecutionError(f"Cannot execute {self._executable}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ScriptTimeoutError(f"Script timed out after {timeout:.0f} seconds") from exc
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or (
                f"{self._executable} exited with status {process.returncode}"
            )
            if looks_like_permission_error(message):
                raise ScriptPermissionError(message)
            raise ScriptExecutionError(message, returncode=process.returncode)

        return stdout.decode("utf-8", errors="replace").strip()
