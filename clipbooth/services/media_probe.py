"""
Media probe - rotation and aspect detection with ffprobe.

Phones and webcams disagree about how they store orientation: some write a
`rotate` stream tag, others only a display matrix side-data entry. The probe
reads both, normalizes to a quarter turn, and classifies the displayed aspect
ratio so the filter graph can decide between cropping and padding.

The probe fails open: if ffprobe is missing, hangs or returns garbage, the
pipeline proceeds unrotated and padded rather than aborting the job.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from clipbooth.config import get_settings
from clipbooth.errors import ProcessingError
from clipbooth.services.process_watchdog import ProcessWatchdog

logger = logging.getLogger(__name__)

LEGACY_ASPECT = 4 / 3
WIDESCREEN_ASPECT = 16 / 9


class AspectClass(str, Enum):
    """Displayed aspect ratio of a source clip."""

    WIDESCREEN = "widescreen"  # ~16:9 landscape
    LEGACY_4_3 = "legacy_4_3"  # ~4:3 in either orientation
    VERTICAL = "vertical"  # Already portrait
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VideoAsset:
    """Probed properties of a video file. Immutable once probed."""

    path: str
    width: int = 0
    height: int = 0
    rotation: int = 0  # Clockwise degrees needed for upright display
    aspect_class: AspectClass = AspectClass.UNKNOWN
    duration_seconds: float = 0.0

    @property
    def needs_crop(self) -> bool:
        """4:3 sources are scaled up and center-cropped; everything else is padded."""
        return self.aspect_class == AspectClass.LEGACY_4_3


def normalize_rotation(degrees: float) -> int:
    """Snap any angle to the nearest of 0/90/180/270."""
    return int(round(degrees / 90.0)) % 4 * 90


def classify_aspect(width: int, height: int, tolerance: float = 0.1) -> AspectClass:
    """
    Classify displayed dimensions.

    Args:
        width: Displayed width (after rotation)
        height: Displayed height (after rotation)
        tolerance: Allowed deviation of the long/short ratio

    Returns:
        AspectClass for the frame
    """
    if width <= 0 or height <= 0:
        return AspectClass.UNKNOWN

    ratio = max(width, height) / min(width, height)
    if abs(ratio - LEGACY_ASPECT) <= tolerance:
        return AspectClass.LEGACY_4_3
    if height > width:
        return AspectClass.VERTICAL
    if abs(ratio - WIDESCREEN_ASPECT) <= tolerance:
        return AspectClass.WIDESCREEN
    return AspectClass.UNKNOWN


def _read_rotation(stream: dict[str, Any]) -> int:
    """Rotation from the stream tag first, then from the display matrix."""
    tags = stream.get("tags")
    rotate_tag = tags.get("rotate") if isinstance(tags, dict) else None
    if rotate_tag is not None:
        try:
            return normalize_rotation(float(rotate_tag))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable rotate tag: {rotate_tag!r}")

    side_data_list = stream.get("side_data_list")
    for side_data in side_data_list if isinstance(side_data_list, list) else []:
        if not isinstance(side_data, dict) or side_data.get("side_data_type") != "Display Matrix":
            continue
        rotation = side_data.get("rotation")
        if rotation is None:
            continue
        try:
            # Display matrix rotation is counter-clockwise
            return normalize_rotation(-float(rotation))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable display matrix rotation: {rotation!r}")

    return 0


def parse_probe_output(path: str, data: dict[str, Any], tolerance: float = 0.1) -> VideoAsset:
    """
    Build a VideoAsset from ffprobe's JSON output.

    Raises:
        ValueError: Not a JSON object, no video stream, or unreadable dimensions
    """
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected probe output for {path}: {type(data).__name__}")

    video_stream: Optional[dict] = None
    streams = data.get("streams")
    for stream in streams if isinstance(streams, list) else []:
        if isinstance(stream, dict) and stream.get("codec_type") == "video":
            video_stream = stream
            break

    if video_stream is None:
        raise ValueError(f"No video stream found in {path}")

    try:
        coded_width = int(video_stream.get("width") or 0)
        coded_height = int(video_stream.get("height") or 0)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Unreadable dimensions in {path}: {e}") from e
    rotation = _read_rotation(video_stream)

    if rotation in (90, 270):
        width, height = coded_height, coded_width
    else:
        width, height = coded_width, coded_height

    format_info = data.get("format")
    if not isinstance(format_info, dict):
        format_info = {}
    duration = video_stream.get("duration") or format_info.get("duration") or 0
    try:
        duration_seconds = float(duration)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoAsset(
        path=path,
        width=width,
        height=height,
        rotation=rotation,
        aspect_class=classify_aspect(width, height, tolerance),
        duration_seconds=duration_seconds,
    )


class MediaProbe:
    """Bounded, read-only ffprobe wrapper."""

    def __init__(self, watchdog: Optional[ProcessWatchdog] = None):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()

    def _build_command(self, path: str) -> list[str]:
        return [
            self.settings.ffprobe_binary,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            path,
        ]

    async def probe(self, path: str) -> VideoAsset:
        """
        Probe a video file. Never raises.

        Args:
            path: Path to the video file

        Returns:
            VideoAsset; rotation=0 and aspect=unknown (pad) when probing failed
        """
        try:
            result = await self.watchdog.run(
                self._build_command(path),
                stage="probe",
                timeout_seconds=self.settings.probe_timeout_seconds,
                capture_stdout=True,
            )
            asset = parse_probe_output(
                path,
                json.loads(result.stdout),
                tolerance=self.settings.legacy_aspect_tolerance,
            )
        except (ProcessingError, ValueError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Probe failed for {path}, assuming upright/padded: {e}")
            return VideoAsset(path=path)

        logger.info(
            f"Probed {path}: {asset.width}x{asset.height}, rotation={asset.rotation}, "
            f"aspect={asset.aspect_class.value}, duration={asset.duration_seconds:.2f}s"
        )
        return asset

    async def probe_duration(self, path: str) -> float:
        """Duration in seconds, 0.0 when unknown."""
        asset = await self.probe(path)
        return asset.duration_seconds
