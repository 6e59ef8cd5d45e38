"""Utility functions for VPN process management."""

import asyncio
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .exceptions import CommandFailed
from ..logging_utility import logger


async def run_command(
        cmd: list[str],
        check: bool = True,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
) -> Tuple[str, str]:
    """
    Run a command without blocking the event loop and return its output.

    Args:
        cmd: Command as list of strings
        check: Whether to raise exception on error
        input_text: Text written to the command's stdin
        timeout: Seconds before the command is killed

    Returns:
        Tuple of (stdout, stderr)
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandFailed(f"Could not run {cmd[0]}: {e.strerror or e}")
    payload = input_text.encode() if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout)
    except asyncio.TimeoutError:
        _kill(process)
        await process.wait()
        raise CommandFailed(f"Command timed out after {timeout}s: {cmd[0]}")
    except asyncio.CancelledError:
        _kill(process)
        raise

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if check and process.returncode != 0:
        raise CommandFailed(
            f"Command failed: {cmd[0]} exited with {process.returncode}\n{err.strip()}",
            returncode=process.returncode,
            stderr=err,
        )
    return out, err


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def wait_for_path(path: Path, max_attempts: int, interval: float) -> bool:
    """
    Wait for a file (e.g. the management socket) to appear.

    Args:
        path: File to wait for
        max_attempts: Maximum number of checks
        interval: Seconds between checks

    Returns:
        bool: True if the file exists
    """
    for i in range(max_attempts):
        if path.exists():
            return True
        logger.debug(f"Waiting for {path.name}... ({i + 1}/{max_attempts})")
        await asyncio.sleep(interval)
    return path.exists()


def read_log_tail(log_file: Path, lines: int = 5) -> list[str]:
    """
    Return the last non-empty lines of the OpenVPN log.

    Args:
        log_file: Path to log file
        lines: Number of lines to return
    """
    try:
        content = log_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [line for line in content.splitlines() if line.strip()][-lines:]


def remove_files(paths: Iterable[Path]) -> None:
    """Delete files, ignoring the ones that are already gone."""
    for path in paths:
        try:
            path.unlink()
            logger.debug(f"Removed {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
