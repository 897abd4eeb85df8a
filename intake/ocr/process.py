"""Scoped execution of external OCR tools.

Each tool run owns its process for the duration of a ``with`` block: output
is captured, a wall-clock deadline applies, and on timeout the whole process
group (the tool plus any helpers it spawned) is killed before the error
propagates. Temporary working directories are scoped the same way.
"""

import logging
import os
import shutil
import signal
import subprocess
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ToolError(RuntimeError):
    """An external tool could not run or exited with a non-zero code."""

    def __init__(self, tool: str, message: str, exit_code: int | None = None, stderr: str = ""):
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class ToolTimeoutError(ToolError):
    """An external tool exceeded its deadline; its process tree was killed."""

    def __init__(self, tool: str, timeout: float):
        self.timeout = timeout
        super().__init__(tool, f"'{tool}' exceeded the timeout of {timeout:g} seconds")


class ToolOutput(BaseModel):
    """Captured output of a successful tool run."""

    exit_code: int
    stdout: str
    stderr: str


def _kill_process_tree(proc: subprocess.Popen[str]) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def run_tool(args: Sequence[str], timeout: float, cwd: Path | None = None) -> ToolOutput:
    """Run an external tool to completion.

    Args:
        args: Executable followed by its arguments
        timeout: Wall-clock limit in seconds
        cwd: Working directory for the tool

    Returns:
        Captured stdout/stderr of the successful run

    Raises:
        ToolTimeoutError: If the deadline passed (process tree killed)
        ToolError: If the tool is missing or exited non-zero (stderr attached)
    """
    tool = args[0]
    try:
        proc = subprocess.Popen(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=cwd,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        raise ToolError(tool, f"'{tool}' could not be started: {e}") from e

    with proc:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc)
            proc.communicate()
            raise ToolTimeoutError(tool, timeout) from None

    if proc.returncode != 0:
        raise ToolError(
            tool,
            f"'{tool}' failed (exit code {proc.returncode}): {stderr.strip()}",
            exit_code=proc.returncode,
            stderr=stderr,
        )

    return ToolOutput(exit_code=proc.returncode, stdout=stdout, stderr=stderr)


@contextmanager
def temporary_workspace(parent: str | None = None, prefix: str = "ocr_") -> Iterator[Path]:
    """Create a uniquely named directory that is removed on every exit path.

    Removal failures are logged and never mask the block's own outcome.

    Args:
        parent: Directory to create the workspace in (None = system temp)
        prefix: Name prefix for the workspace directory

    Yields:
        Path of the workspace directory
    """
    workspace = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    try:
        yield workspace
    finally:
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning(f"Could not remove temp directory '{workspace}': {e}")
