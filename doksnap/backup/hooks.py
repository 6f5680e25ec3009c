"""
Pre/post backup hook execution.

A hook is one command string. It is validated against a restrictive
character set and a denylist, split with shell quoting rules and executed
as an argument vector, never through a shell.
"""

import os
import re
import shlex
import shutil
import logging
import subprocess
from typing import Optional, List


logger = logging.getLogger(__name__)

ALLOWED_PATTERN = re.compile(r'\A[a-zA-Z0-9_/\s.\-:"\'=]+\Z')

DANGEROUS_FRAGMENTS = ['rm -rf', 'mkfs', 'dd if=', '> /dev/', '$(', '`', ';', '&&', '||', '|']


class HookError(Exception):
    """Raised when a hook is rejected or exits with a non-zero status."""
    pass


def parse_hook_command(command: str) -> List[str]:
    """
    Validate a hook command and split it into an argument vector.

    Args:
        command: Hook command string

    Returns:
        List of arguments, first element is the resolved executable

    Raises:
        HookError: If the command is unsafe or the executable cannot be found
    """
    if not ALLOWED_PATTERN.match(command):
        raise HookError("Invalid hook command format: contains unsafe characters")

    if any(fragment in command for fragment in DANGEROUS_FRAGMENTS):
        raise HookError("Hook command contains potentially dangerous operations")

    try:
        parts = shlex.split(command)
    except ValueError as e:
        raise HookError(f"Invalid hook command quoting: {e}")

    if not parts:
        raise HookError("Hook command is empty")

    parts[0] = resolve_executable(parts[0])
    return parts


def resolve_executable(name: str) -> str:
    """Return the absolute path of an executable given as a path or a name on PATH."""
    if os.sep in name:
        if os.path.isfile(name) and os.access(name, os.X_OK):
            return name
        raise HookError(f"Hook executable not found: {name}")

    found = shutil.which(name)
    if not found:
        raise HookError(f"Hook executable not found: {name}")
    return found


def run_hook(command: Optional[str], timeout: Optional[float] = None):
    """
    Run a hook command.

    Args:
        command: Hook command string (None or blank is a no-op)
        timeout: Optional timeout in seconds

    Raises:
        HookError: If validation fails, the command times out or exits non-zero
    """
    if not command or not command.strip():
        return

    args = parse_hook_command(command)
    logger.info(f"Running hook: {os.path.basename(args[0])}")

    try:
        result = subprocess.run(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise HookError(f"Hook command timed out after {timeout} seconds")
    except OSError as e:
        raise HookError(f"Failed to execute hook: {e}")

    if result.returncode != 0:
        stderr = result.stderr.decode('utf-8', errors='replace').strip()
        if stderr:
            logger.warning(f"Hook stderr: {stderr[:1000]}")
        raise HookError(f"Hook command failed with exit code {result.returncode}")
