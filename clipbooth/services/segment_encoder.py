"""
Segment encoder - normal and slow-motion sub-clips for the multi-stage path.
"""

import logging
from typing import Optional

from clipbooth.config import get_settings
from clipbooth.schemas.requests import Timing
from clipbooth.services.ffmpeg_commands import filter_encode_command
from clipbooth.services.filter_graph import EMPTY_TIMING_SECONDS, FilterGraphBuilder
from clipbooth.services.job import ProcessingJob
from clipbooth.services.process_watchdog import ProcessWatchdog

logger = logging.getLogger(__name__)


class SegmentEncoder:
    """
    Cuts the normalized clip into its speed segments.

    Both segments share resolution, frame rate and codec settings so the
    concatenator can join them with a stream copy.
    """

    def __init__(
        self,
        watchdog: Optional[ProcessWatchdog] = None,
        graph_builder: Optional[FilterGraphBuilder] = None,
    ):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()
        self.graph_builder = graph_builder or FilterGraphBuilder()

    async def encode_segments(self, job: ProcessingJob, normalized_path: str, timing: Timing) -> list[str]:
        """
        Encode the segments in playback order.

        Args:
            job: Current job (working directory, timeout)
            normalized_path: Upright fixed-size intermediate
            timing: Normal/slow-motion durations

        Returns:
            Segment paths in order; zero-length segments are skipped

        Raises:
            ProcessingError: A segment encode failed (no further fallback)
        """
        plan: list[tuple[str, float, float, bool]] = []
        if timing.normal_duration > 0:
            plan.append(("seg_normal.mp4", 0.0, timing.normal_duration, False))
        if timing.slowmo_duration > 0:
            plan.append(("seg_slowmo.mp4", timing.normal_duration, timing.slowmo_duration, True))
        if not plan:
            logger.warning(f"job={job.job_id} both durations are zero, encoding placeholder segment")
            plan.append(("seg_normal.mp4", 0.0, EMPTY_TIMING_SECONDS, False))

        segments = []
        for filename, start, duration, slow in plan:
            output_path = job.path(filename)
            built = self.graph_builder.build_segment(start, duration, slow)
            cmd = filter_encode_command(self.settings, normalized_path, built, output_path)
            await self.watchdog.run(
                cmd,
                stage=f"segment_{'slowmo' if slow else 'normal'}",
                timeout_seconds=job.timeout_seconds,
                output_path=output_path,
            )
            segments.append(output_path)

        logger.info(f"job={job.job_id} encoded {len(segments)} segment(s)")
        return segments
