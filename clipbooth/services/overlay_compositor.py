"""
Overlay compositor - burns the transparent overlay into the video.

This is the encode that fixes the final frame size and codec profile on the
multi-stage path, whatever produced its input.
"""

import logging
from typing import Optional

from clipbooth.config import get_settings
from clipbooth.services.ffmpeg_commands import filter_encode_command
from clipbooth.services.filter_graph import FilterGraphBuilder
from clipbooth.services.job import ProcessingJob
from clipbooth.services.process_watchdog import ProcessWatchdog

logger = logging.getLogger(__name__)


class OverlayCompositor:
    """Composites the overlay at the origin and re-encodes to baseline H.264."""

    def __init__(
        self,
        watchdog: Optional[ProcessWatchdog] = None,
        graph_builder: Optional[FilterGraphBuilder] = None,
    ):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()
        self.graph_builder = graph_builder or FilterGraphBuilder()

    async def composite(self, job: ProcessingJob, video_path: str, overlay_path: str) -> str:
        """
        Args:
            job: Current job
            video_path: Pre-overlay video
            overlay_path: Transparent PNG

        Returns:
            Path of the styled video (no audio)
        """
        output_path = job.path("styled.mp4")
        built = self.graph_builder.build_overlay()
        cmd = filter_encode_command(
            self.settings,
            video_path,
            built,
            output_path,
            overlay_path=overlay_path,
        )
        await self.watchdog.run(
            cmd,
            stage="overlay",
            timeout_seconds=job.timeout_seconds,
            output_path=output_path,
        )
        logger.info(f"job={job.job_id} overlay applied")
        return output_path
