"""
Audio mixer - optional background music.

Music is a courtesy: an unknown track id, a missing file or a failed mix all
end in a video-only output instead of a failed job. The recorded microphone
audio is never carried into the output.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from clipbooth.config import get_music_option, get_settings
from clipbooth.errors import MissingAssetError, ProcessingError
from clipbooth.schemas.requests import StyleConfig
from clipbooth.services.job import ProcessingJob
from clipbooth.services.process_watchdog import ProcessWatchdog

logger = logging.getLogger(__name__)


@dataclass
class MixResult:
    """Final file and whether music made it in."""

    output_path: str
    has_music: bool
    music_id: Optional[str] = None


class AudioMixer:
    """Adds a looped, video-length-limited music track."""

    def __init__(self, watchdog: Optional[ProcessWatchdog] = None):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()

    def resolve_music(self, music_id: str) -> str:
        """
        Map a track id to its file.

        Raises:
            MissingAssetError: Unknown id, or the file is not installed
        """
        option = get_music_option(music_id)
        if option is None or not option.get("file"):
            raise MissingAssetError(f"Unknown music id: {music_id!r}", stage="audio_mix")

        path = self.settings.music_path(option["file"])
        if not os.path.isfile(path):
            raise MissingAssetError(f"Music file not found: {path}", stage="audio_mix")
        return path

    async def mix(self, job: ProcessingJob, video_path: str, style: StyleConfig) -> MixResult:
        """
        Produce the final file from the styled video.

        Returns:
            MixResult; has_music is False whenever music was skipped

        Raises:
            ProcessingError: Only if even the video-only copy fails
        """
        output_path = job.path("output.mp4")

        if not style.wants_music:
            logger.info(f"job={job.job_id} no music selected, writing video-only output")
            await self._copy_video_only(job, video_path, output_path)
            return MixResult(output_path=output_path, has_music=False)

        try:
            music_path = self.resolve_music(style.music)
        except MissingAssetError as e:
            logger.warning(f"job={job.job_id} {e}; continuing without music")
            await self._copy_video_only(job, video_path, output_path)
            return MixResult(output_path=output_path, has_music=False, music_id=style.music)

        try:
            await self._mix_music(job, video_path, music_path, output_path)
        except ProcessingError as e:
            logger.warning(f"job={job.job_id} music mix failed ({e}); falling back to video-only")
            await self._copy_video_only(job, video_path, output_path)
            return MixResult(output_path=output_path, has_music=False, music_id=style.music)

        logger.info(f"job={job.job_id} music applied: {style.music}")
        return MixResult(output_path=output_path, has_music=True, music_id=style.music)

    async def _mix_music(self, job: ProcessingJob, video_path: str, music_path: str, output_path: str) -> None:
        cmd = [
            self.settings.ffmpeg_binary,
            "-y", "-hide_banner",
            "-i", video_path,
            "-stream_loop", "-1",
            "-i", music_path,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", self.settings.audio_bitrate,
            "-shortest",
            "-avoid_negative_ts", "make_zero",
            "-movflags", "+faststart",
            output_path,
        ]
        await self.watchdog.run(
            cmd,
            stage="audio_mix",
            timeout_seconds=job.timeout_seconds,
            output_path=output_path,
        )

    async def _copy_video_only(self, job: ProcessingJob, video_path: str, output_path: str) -> None:
        cmd = [
            self.settings.ffmpeg_binary,
            "-y", "-hide_banner",
            "-i", video_path,
            "-map", "0:v:0",
            "-c:v", "copy",
            "-an",
            "-movflags", "+faststart",
            output_path,
        ]
        await self.watchdog.run(
            cmd,
            stage="audio_copy",
            timeout_seconds=job.timeout_seconds,
            output_path=output_path,
        )
