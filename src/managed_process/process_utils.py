"""Process tree utilities built on psutil."""

from __future__ import annotations

import contextlib
import logging

import psutil

logger = logging.getLogger(__name__)


def get_process_tree_info(pid: int) -> str:
    """Describe a process and its descendants for diagnostics."""
    try:
        process = psutil.Process(pid)
        info = [f"Process {pid} ({process.name()}) status={process.status()}"]
        for child in process.children(recursive=True):
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                info.append(f"  child {child.pid} ({child.name()}) status={child.status()}")
        return "\n".join(info)
    except (OSError, psutil.Error):
        return f"Could not get process info for PID {pid}"


def kill_process_tree(pid: int) -> None:
    """Force kill a process and all of its descendants without waiting.

    Descendants are collected before anything is killed so that children
    re-parented by the death of their parent are still reached. Processes
    that are already gone are skipped.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        logger.debug("Process %s already exited, nothing to kill", pid)
        return

    # Leaves first so a dying parent cannot respawn them
    for child in reversed(children):
        with contextlib.suppress(psutil.NoSuchProcess):
            child.kill()

    with contextlib.suppress(psutil.NoSuchProcess):
        parent.kill()
