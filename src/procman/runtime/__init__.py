"""Runtime module for spawning and terminating child processes.

This module provides isolated process creation and reliable, cancel-safe
termination of the child's whole process group.
"""

from __future__ import annotations

from .launcher import IS_WINDOWS, LaunchSpec, ProcessTerminator, spawn

__all__ = [
    "IS_WINDOWS",
    "LaunchSpec",
    "ProcessTerminator",
    "spawn",
]
