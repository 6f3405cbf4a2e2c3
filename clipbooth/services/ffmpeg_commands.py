"""
Shared ffmpeg command-line fragments.

Kept in one place so every encode in the pipeline writes the same
mobile-safe H.264 stream and the concat step can stream-copy segments.
"""

from typing import Optional

from clipbooth.config import Settings
from clipbooth.services.filter_graph import BuiltGraph


def seek_args(start: float = 0.0, duration: Optional[float] = None) -> list[str]:
    """Input-side trim; must precede the -i it applies to."""
    args: list[str] = []
    if start > 0:
        args.extend(["-ss", f"{start:.3f}"])
    if duration is not None:
        args.extend(["-t", f"{duration:.3f}"])
    return args


def h264_output_args(settings: Settings) -> list[str]:
    """Baseline-profile H.264, streaming-friendly MP4."""
    return [
        "-c:v", "libx264",
        "-preset", settings.ffmpeg_preset,
        "-crf", str(settings.ffmpeg_crf),
        "-profile:v", settings.h264_profile,
        "-level", settings.h264_level,
        "-pix_fmt", settings.pixel_format,
        "-r", str(settings.target_fps),
        # Rotation is applied in the graph; clear any tag carried over from the input
        "-metadata:s:v:0", "rotate=0",
        "-movflags", "+faststart",
    ]


def filter_encode_command(
    settings: Settings,
    video_path: str,
    built: BuiltGraph,
    output_path: str,
    overlay_path: Optional[str] = None,
    pre_input_flags: Optional[list[str]] = None,
) -> list[str]:
    """
    Full command for a filter_complex encode with video output only.

    Args:
        settings: Application settings
        video_path: Input 0
        built: Graph to apply; its input trim is applied to input 0
        output_path: Destination MP4
        overlay_path: Optional input 1 (overlay image)
        pre_input_flags: Decoder flags for input 0 (e.g. -noautorotate)
    """
    cmd = [settings.ffmpeg_binary, "-y", "-hide_banner"]
    cmd.extend(pre_input_flags or [])
    cmd.extend(seek_args(built.input_start, built.input_duration))
    cmd.extend(["-i", video_path])
    if overlay_path is not None:
        cmd.extend(["-i", overlay_path])
    cmd.extend(["-filter_complex", built.graph.serialize(), "-map", built.map_label])
    cmd.extend(h264_output_args(settings))
    cmd.append("-an")
    cmd.append(output_path)
    return cmd
