"""
Concatenator - joins segment files with ffmpeg's concat demuxer.
"""

import logging
import os
from typing import Optional

from clipbooth.config import get_settings
from clipbooth.errors import EncodingError
from clipbooth.services.job import ProcessingJob
from clipbooth.services.process_watchdog import ProcessWatchdog

logger = logging.getLogger(__name__)

CONCAT_LIST_NAME = "concat_list.txt"


def _quote_concat_path(path: str) -> str:
    """Quote a path for a concat list line."""
    return "'" + path.replace("'", "'\\''") + "'"


class Concatenator:
    """Stream-copy concatenation; never re-encodes."""

    def __init__(self, watchdog: Optional[ProcessWatchdog] = None):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()

    def write_concat_list(self, job: ProcessingJob, segments: list[str]) -> str:
        """Write the ordered list file and return its path."""
        list_path = job.path(CONCAT_LIST_NAME)
        with open(list_path, "w", encoding="utf-8") as f:
            for segment in segments:
                # Entries are relative to the list file's directory
                f.write(f"file {_quote_concat_path(os.path.basename(segment))}\n")
        return list_path

    async def concatenate(self, job: ProcessingJob, segments: list[str]) -> str:
        """
        Join `segments` in order into one stream.

        The segments and the list file are deleted once the joined file has
        been verified.

        Returns:
            Path of the concatenated file

        Raises:
            EncodingError: No segments, or the encoder failed
        """
        if not segments:
            raise EncodingError("No segments to concatenate", stage="concatenate")

        try:
            list_path = self.write_concat_list(job, segments)
        except OSError as e:
            raise EncodingError(f"Could not write concat list: {e}", stage="concatenate") from e
        output_path = job.path("concatenated.mp4")
        cmd = [
            self.settings.ffmpeg_binary,
            "-y", "-hide_banner",
            "-f", "concat",
            "-safe", "0",
            "-i", list_path,
            "-c", "copy",
            "-an",
            output_path,
        ]

        await self.watchdog.run(
            cmd,
            stage="concatenate",
            timeout_seconds=job.timeout_seconds,
            output_path=output_path,
        )

        for path in [*segments, list_path]:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove intermediate {path}: {e}")

        logger.info(f"job={job.job_id} concatenated {len(segments)} segment(s)")
        return output_path
