"""
Process tree termination for encoder invocations.

ffmpeg can leave helper processes behind, so a timed-out stage has to take
down the whole tree, not only the direct child. Two backends are provided and
picked by host platform in get_process_terminator(); callers never branch on
the platform themselves.

Usage:
    terminator = get_process_terminator(grace_seconds=3.0)
    process = await asyncio.create_subprocess_exec(*cmd, **terminator.spawn_options())
    ...
    terminator.terminate_tree(process.pid)  # blocking, run in an executor
"""

import logging
import os
import signal
import subprocess
import sys
import time
from abc import ABC, abstractmethod

import psutil

logger = logging.getLogger(__name__)


class ProcessTreeTerminator(ABC):
    """Graceful-then-forceful termination of a process and all its descendants."""

    def __init__(self, grace_seconds: float = 3.0):
        self.grace_seconds = grace_seconds

    def spawn_options(self) -> dict:
        """Extra keyword arguments for create_subprocess_exec."""
        return {}

    @abstractmethod
    def terminate_tree(self, pid: int) -> None:
        """
        Terminate the process `pid` and everything it spawned.

        Blocks for at most roughly twice the grace window.
        """


class PsutilTreeTerminator(ProcessTreeTerminator):
    """Walks the tree with psutil. Works everywhere, used on Windows."""

    def spawn_options(self) -> dict:
        if sys.platform == "win32":
            return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        return {}

    def terminate_tree(self, pid: int) -> None:
        try:
            parent = psutil.Process(pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            logger.debug(f"Process {pid} already gone")
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.grace_seconds)
        if not alive:
            logger.info(f"Process tree {pid} terminated gracefully ({len(procs)} processes)")
            return

        logger.warning(
            f"{len(alive)} process(es) in tree {pid} ignored terminate, killing"
        )
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=self.grace_seconds)


class SignalTreeTerminator(ProcessTreeTerminator):
    """
    POSIX process-group signalling.

    The child is started in its own session, so its pid is also the process
    group id and every descendant that does not detach shares it.
    """

    def __init__(self, grace_seconds: float = 3.0):
        super().__init__(grace_seconds)
        self._fallback = PsutilTreeTerminator(grace_seconds)

    def spawn_options(self) -> dict:
        return {"start_new_session": True}

    def terminate_tree(self, pid: int) -> None:
        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            logger.debug(f"Process {pid} already gone")
            return
        except PermissionError:
            logger.warning(f"Cannot access process group of {pid}, walking tree instead")
            self._fallback.terminate_tree(pid)
            return

        if pgid != pid:
            # Not a group leader; signalling the group would hit unrelated processes
            logger.warning(f"Process {pid} is not a group leader, walking tree instead")
            self._fallback.terminate_tree(pid)
            return

        try:
            os.killpg(pgid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError:
            self._fallback.terminate_tree(pid)
            return

        deadline = time.monotonic() + self.grace_seconds
        while time.monotonic() < deadline:
            if not self._group_exists(pgid):
                logger.info(f"Process group {pgid} terminated gracefully")
                return
            time.sleep(0.05)

        logger.warning(f"Process group {pgid} ignored SIGTERM for {self.grace_seconds}s, sending SIGKILL")
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    @staticmethod
    def _group_exists(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


def get_process_terminator(grace_seconds: float = 3.0) -> ProcessTreeTerminator:
    """Pick the termination backend for this host."""
    if sys.platform == "win32" or not hasattr(os, "killpg"):
        return PsutilTreeTerminator(grace_seconds)
    return SignalTreeTerminator(grace_seconds)
