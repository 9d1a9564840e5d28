"""
Synchronous external command execution for privileged system tools.

reg.exe, sc.exe and bcdedit write informational text to stderr even when they
succeed, so success is decided by the exit status alone.
"""

import subprocess
from dataclasses import dataclass
from typing import List, Optional

from .schema import ErrorKind
from ..util.logging import StructuredLogger


@dataclass
class CommandResult:
    command: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.returncode == 0

    @property
    def error(self) -> Optional[ErrorKind]:
        if self.success:
            return None
        if self.timed_out:
            return ErrorKind.TIMEOUT
        # reg.exe and sc.exe report access denied as exit code 5
        if self.returncode == 5 or "access is denied" in self.stderr.lower():
            return ErrorKind.PERMISSION_DENIED
        return ErrorKind.STORE_REJECTED

    @property
    def message(self) -> str:
        if self.success:
            return ""
        if self.timed_out:
            return f"{self.command[0]} timed out"
        return self.stderr.strip() or f"{self.command[0]} exited with {self.returncode}"

    def __bool__(self) -> bool:
        return self.success


def run_command(command: List[str], timeout: float, logger: StructuredLogger) -> CommandResult:
    """Run a command to completion with a bounded timeout. Never raises."""
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error(f"Command timed out after {timeout}s: {' '.join(command)}")
        return CommandResult(command, None, _text(e.stdout), _text(e.stderr), timed_out=True)
    except OSError as e:
        logger.error(f"Command could not be started: {' '.join(command)}: {e}")
        return CommandResult(command, None, "", str(e))

    result = CommandResult(command, completed.returncode, completed.stdout or "", completed.stderr or "")
    logger.log_command(command, completed.returncode, result.stderr)
    return result


def _text(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output
