"""Child process spawning and reliable termination.

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Piped stdout/stderr with a bounded per-line read limit
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Cancel-safe termination using asyncio.shield

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination targets the process group, not just the main process
- stdin is DEVNULL so children never inherit the host's stdin
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "IS_WINDOWS",
    "LaunchSpec",
    "ProcessTerminator",
    "build_subprocess_kwargs",
    "spawn",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

# asyncio.StreamReader default limit
DEFAULT_STREAM_LIMIT = 64 * 1024


@dataclass(frozen=True)
class LaunchSpec:
    """Specification for a child process to launch.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Complete environment (None = inherit parent)
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None


def build_subprocess_kwargs(spec: LaunchSpec) -> dict[str, Any]:
    """Build platform-specific subprocess kwargs.

    Args:
        spec: Launch specification

    Returns:
        Dict of kwargs for asyncio.create_subprocess_exec
    """
    kwargs: dict[str, Any] = {}

    if spec.env is not None:
        kwargs["env"] = dict(spec.env)

    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        # POSIX: start_new_session (equivalent to setsid)
        kwargs["start_new_session"] = True

    return kwargs


async def spawn(
    spec: LaunchSpec,
    *,
    limit: int = DEFAULT_STREAM_LIMIT,
) -> asyncio.subprocess.Process:
    """Start the child with both output streams piped.

    Args:
        spec: Launch specification
        limit: Buffer limit of each stdout/stderr StreamReader

    Returns:
        The started process

    Raises:
        OSError: If the OS cannot create the process
    """
    if not spec.argv:
        raise ValueError("argv must not be empty")

    process = await asyncio.create_subprocess_exec(
        *spec.argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=spec.cwd,
        limit=limit,
        **build_subprocess_kwargs(spec),
    )

    logger.debug(
        f"Started subprocess pid={process.pid} "
        f"argv={spec.argv[0]} cwd={spec.cwd}"
    )
    return process


@dataclass
class ProcessTerminator:
    """Graceful-then-forced termination of a child's process group.

    Termination strategy:
    1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
    2. Wait up to term_timeout for graceful exit
    3. If still running, send SIGKILL (or kill() on Windows)
    4. Wait up to kill_timeout for forced exit
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def terminate(self, process: asyncio.subprocess.Process) -> int | None:
        """Terminate the process, shielded from cancellation.

        Returns:
            The reaped return code, or None if the process could not be reaped
        """
        task = asyncio.create_task(self._terminate(process))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Caller cancelled; let the termination finish before propagating
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.debug(f"Double cancel during subprocess termination pid={process.pid}")
            raise

    async def _terminate(self, process: asyncio.subprocess.Process) -> int | None:
        pid = process.pid
        if process.returncode is not None:
            return process.returncode

        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate(process)
            else:
                self._posix_signal(process, signal.SIGTERM)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return process.returncode
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                self._posix_signal(process, signal.SIGKILL)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

        return process.returncode

    def _posix_signal(self, process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        """Send a signal to the child's process group on POSIX systems."""
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(sig)

    def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        try:
            # Works because we used CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()
