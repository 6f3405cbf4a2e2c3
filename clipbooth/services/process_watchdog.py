"""
Process Watchdog - runs one encoder invocation under a wall-clock budget.

Every ffmpeg/ffprobe call in the pipeline goes through here. The watchdog:
- streams stderr, logging progress lines and keeping a short diagnostic tail
- settles exactly once: process exit or timer expiry, whichever comes first
- on expiry, terminates the whole process tree and raises StageTimeoutError
- verifies the stage's output file before reporting success

It never retries; fallback decisions belong to the pipeline.
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from clipbooth.config import get_settings
from clipbooth.errors import EncodingError, StageTimeoutError
from clipbooth.services.process_tree import ProcessTreeTerminator, get_process_terminator

logger = logging.getLogger(__name__)

_EXITED = "exited"
_TIMED_OUT = "timed_out"

_LINE_SPLIT = re.compile(r"[\r\n]")
_PROGRESS_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")


@dataclass
class EncodingResult:
    """Outcome of one encoder invocation. Used for logging/telemetry only."""

    stage: str
    success: bool
    output_path: Optional[str]
    stderr_tail: str
    elapsed_seconds: float
    returncode: Optional[int] = None
    stdout: str = ""


def verify_output_file(path: str, stage: str) -> None:
    """Raise EncodingError unless `path` exists and is non-empty."""
    output = Path(path)
    if not output.is_file():
        raise EncodingError(f"Expected output {output.name} was not created", stage=stage)
    if output.stat().st_size == 0:
        raise EncodingError(f"Output {output.name} is empty", stage=stage)


class ProcessWatchdog:
    """
    Timeout-and-kill supervisor around a single external process.

    One instance can be reused for sequential invocations; it holds no
    per-invocation state.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        terminator: Optional[ProcessTreeTerminator] = None,
    ):
        self.settings = get_settings()
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else self.settings.stage_timeout_seconds
        )
        self.terminator = terminator or get_process_terminator(self.settings.kill_grace_seconds)

    async def run(
        self,
        args: Sequence[str],
        stage: str,
        timeout_seconds: Optional[float] = None,
        output_path: Optional[str] = None,
        capture_stdout: bool = False,
    ) -> EncodingResult:
        """
        Run `args` and wait for it under the watchdog.

        Args:
            args: Full command line (binary first)
            stage: Stage name used in logs and errors
            timeout_seconds: Override of the default budget for this call
            output_path: File the command must produce (verified on success)
            capture_stdout: Collect stdout into the result (ffprobe)

        Returns:
            EncodingResult for a clean exit

        Raises:
            StageTimeoutError: The budget elapsed first; the tree was killed
            EncodingError: Non-zero exit, spawn failure, or missing output
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        start_time = time.monotonic()
        logger.debug(f"stage={stage} running: {' '.join(str(a) for a in args[:12])}...")

        try:
            process = await asyncio.create_subprocess_exec(
                *[str(a) for a in args],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                **self.terminator.spawn_options(),
            )
        except OSError as e:
            raise EncodingError(f"Could not start {args[0]}: {e}", stage=stage) from e

        tail: deque[str] = deque(maxlen=self.settings.stderr_tail_lines)
        stderr_task = asyncio.create_task(self._drain_stderr(process.stderr, tail, stage))
        stdout_task = asyncio.create_task(process.stdout.read()) if capture_stdout else None

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def settle(kind: str) -> None:
            # First caller wins; a late exit or late timer is discarded
            if not outcome.done():
                outcome.set_result(kind)

        exit_task = asyncio.create_task(process.wait())
        exit_task.add_done_callback(lambda _task: settle(_EXITED))
        timer = loop.call_later(timeout, settle, _TIMED_OUT)

        try:
            kind = await outcome
        except asyncio.CancelledError:
            logger.warning(f"stage={stage} cancelled, killing process tree {process.pid}")
            await self._kill_tree(process, exit_task)
            self._discard(stderr_task, stdout_task)
            raise
        finally:
            timer.cancel()

        elapsed = time.monotonic() - start_time

        if kind == _TIMED_OUT:
            logger.error(f"stage={stage} status=timeout elapsed={elapsed:.2f}s budget={timeout:.1f}s")
            await self._kill_tree(process, exit_task)
            self._discard(stderr_task, stdout_task)
            raise StageTimeoutError(
                f"Encoder did not finish within {timeout:.1f}s",
                stage=stage,
                timeout_seconds=timeout,
            )

        # Orphaned helpers can keep the pipes open after the child exits
        stdout_text = ""
        grace = self.settings.kill_grace_seconds
        try:
            await asyncio.wait_for(asyncio.shield(stderr_task), timeout=grace)
            if stdout_task is not None:
                stdout_bytes = await asyncio.wait_for(asyncio.shield(stdout_task), timeout=grace)
                stdout_text = stdout_bytes.decode("utf-8", errors="replace")
        except asyncio.TimeoutError:
            logger.warning(f"stage={stage} output pipes still open after exit, discarding")
        finally:
            self._discard(stderr_task, stdout_task)

        stderr_tail = "\n".join(tail)
        returncode = process.returncode

        if returncode != 0:
            last_line = tail[-1] if tail else "no diagnostic output"
            logger.error(
                f"stage={stage} status=failed code={returncode} elapsed={elapsed:.2f}s: {last_line}"
            )
            raise EncodingError(
                f"Encoder exited with code {returncode}: {last_line}",
                stage=stage,
                returncode=returncode,
                stderr_tail=stderr_tail,
            )

        if output_path is not None:
            verify_output_file(output_path, stage)

        logger.info(f"stage={stage} status=ok elapsed={elapsed:.2f}s")
        return EncodingResult(
            stage=stage,
            success=True,
            output_path=output_path,
            stderr_tail=stderr_tail,
            elapsed_seconds=elapsed,
            returncode=returncode,
            stdout=stdout_text,
        )

    async def _drain_stderr(self, stream: asyncio.StreamReader, tail: deque, stage: str) -> None:
        """Read stderr in chunks; ffmpeg separates progress updates with \\r."""
        pending = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT.split(pending)
            for line in lines:
                self._handle_line(line, tail, stage)
        self._handle_line(pending, tail, stage)

    def _handle_line(self, line: str, tail: deque, stage: str) -> None:
        line = line.strip()
        if not line:
            return
        match = _PROGRESS_RE.search(line)
        if match:
            h, m, s = match.groups()
            seconds = int(h) * 3600 + int(m) * 60 + float(s)
            logger.debug(f"stage={stage} progress={seconds:.2f}s")
            return
        tail.append(line)

    async def _kill_tree(self, process: asyncio.subprocess.Process, exit_task: asyncio.Task) -> None:
        """Terminate the tree (blocking, in a worker thread) and reap the child."""
        if process.returncode is None:
            # Runs with the caller's context, so records stay attributed to the job
            await asyncio.to_thread(self.terminator.terminate_tree, process.pid)
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self.settings.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Process {process.pid} still not reaped after kill")
            exit_task.cancel()

    @staticmethod
    def _discard(*tasks: Optional[asyncio.Task]) -> None:
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
