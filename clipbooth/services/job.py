"""
Processing job state shared by the pipeline stages.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class StageRecord:
    """Timing and outcome of one stage, reported back with the result."""

    stage: str
    status: str = "running"
    elapsed_seconds: float = 0.0
    started_at: float = field(default_factory=time.monotonic, repr=False)


@dataclass
class ProcessingJob:
    """
    One orchestration run.

    Owns an isolated working directory that the pipeline creates fresh and
    removes on every exit path. Only the pipeline mutates `stage`.
    """

    job_id: str
    work_dir: Path
    timeout_ms: int
    stage: str = "created"
    started_at: float = field(default_factory=time.monotonic)
    stage_results: list[StageRecord] = field(default_factory=list)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def path(self, filename: str) -> str:
        """Path of a file inside the job's working directory."""
        return str(self.work_dir / filename)

    def enter_stage(self, stage: str) -> None:
        # A stage still running when the next one starts has succeeded
        self.finish_stage("ok")
        self.stage = stage
        self.stage_results.append(StageRecord(stage=stage))
        logger.info(f"job={self.job_id} stage={stage} status=started elapsed={self.elapsed_seconds:.2f}s")

    def finish_stage(self, status: str) -> Optional[StageRecord]:
        """Close the current stage record, if one is open."""
        if not self.stage_results or self.stage_results[-1].status != "running":
            return None
        record = self.stage_results[-1]
        record.status = status
        record.elapsed_seconds = time.monotonic() - record.started_at
        return record
