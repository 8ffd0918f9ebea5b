"""Sweep stray processes bound to a nested display.

Phone environments start Xephyr, gnome-shell and friends on ``:N``. If a
previous run crashed, some of them can outlive it. Before reusing a
display, every process that references it on its command line or through
its ``DISPLAY`` environment is terminated.
"""

import os
from typing import Callable, List

import psutil

from .logging_utils import get_module_logger

logger = get_module_logger("OrphanCleanup")

DisplaySweeper = Callable[[int], int]


def _references_display(proc: psutil.Process, display: str) -> bool:
    cmdline = proc.info.get('cmdline') or []
    for token in cmdline:
        if token == display or token.startswith(f"{display}."):
            return True

    try:
        environ = proc.environ()
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return False
    return environ.get('DISPLAY') in (display, f"{display}.0")


def find_display_processes(display_number: int) -> List[psutil.Process]:
    """Find processes that run on (or serve) display ``:display_number``.

    Returns:
        List of psutil.Process objects, excluding this process
    """
    display = f":{display_number}"
    current_pid = os.getpid()
    found = []

    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        try:
            if proc.pid == current_pid:
                continue
            if _references_display(proc, display):
                found.append(proc)
                logger.debug(
                    "Found process on %s: pid=%d name=%s",
                    display, proc.pid, proc.info.get('name')
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return found


def sweep_display_processes(display_number: int, timeout: float = 5.0) -> int:
    """Terminate every process bound to ``:display_number``.

    Args:
        display_number: Nested display number
        timeout: Seconds to wait for graceful termination before killing

    Returns:
        Number of processes signalled
    """
    stray = find_display_processes(display_number)
    if not stray:
        return 0

    signalled = 0
    logger.info("Sweeping %d process(es) on display :%d", len(stray), display_number)

    for proc in stray:
        try:
            proc.terminate()
            signalled += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    gone, alive = psutil.wait_procs(stray, timeout=timeout)
    if gone:
        logger.debug("Gracefully terminated %d process(es)", len(gone))

    for proc in alive:
        try:
            logger.warning("Force killing unresponsive process: pid=%d", proc.pid)
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    if alive:
        psutil.wait_procs(alive, timeout=1.0)

    return signalled


__all__ = ["DisplaySweeper", "find_display_processes", "sweep_display_processes"]
