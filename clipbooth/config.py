"""
Configuration module using Pydantic Settings for environment variable management.

Only the knobs an operator actually tunes are exposed. Encoder settings that
define the output contract are hardcoded so every kiosk produces the same file.
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# ============================================================
# MUSIC / FONT OPTIONS
# ============================================================

class MusicOption:
    """Available background track identifiers."""

    NONE = "none"
    BEGGIN = "beggin"
    MASTER_PUPPETS = "master_puppets"
    NIGHT_DANCER = "night_dancer"


_MUSIC_OPTIONS = {
    MusicOption.NONE: {"id": MusicOption.NONE, "name": "No music", "file": None},
    MusicOption.BEGGIN: {
        "id": MusicOption.BEGGIN,
        "name": "Beggin - Maneskin",
        "file": "beggin.mp3",
    },
    MusicOption.MASTER_PUPPETS: {
        "id": MusicOption.MASTER_PUPPETS,
        "name": "Master of Puppets - Metallica",
        "file": "master_puppets.mp3",
    },
    MusicOption.NIGHT_DANCER: {
        "id": MusicOption.NIGHT_DANCER,
        "name": "Night Dancer - Imase",
        "file": "night_dancer.mp3",
    },
}

_FONT_OPTIONS = {
    "montserrat": {"id": "montserrat", "name": "Montserrat", "file": "Montserrat-Regular.ttf"},
    "playfair": {"id": "playfair", "name": "Playfair Display", "file": "PlayfairDisplay-Regular.ttf"},
    "chewy": {"id": "chewy", "name": "Chewy", "file": "Chewy-Regular.ttf"},
}


def get_music_option(music_id: str) -> Optional[dict]:
    """
    Look up a background track by identifier.

    Args:
        music_id: One of the MusicOption constants

    Returns:
        Track info dict, or None if the identifier is unknown
    """
    return _MUSIC_OPTIONS.get(music_id)


def get_available_music() -> list[dict]:
    """Get list of selectable background tracks (including "none")."""
    return [dict(option) for option in _MUSIC_OPTIONS.values()]


def get_available_fonts() -> list[dict]:
    """Get list of fonts the overlay renderer knows about."""
    return [dict(option) for option in _FONT_OPTIONS.values()]


class Settings(BaseSettings):
    """
    Application settings.

    Paths, timeouts and logging are loaded from environment variables
    (prefixed with CLIPBOOTH_). All rendering settings are hardcoded.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "clipbooth"
    debug: bool = False
    log_level: str = "INFO"

    # External tools
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"

    # Directories
    temp_directory: str = "/tmp/clipbooth"
    output_directory: str = "/tmp/clipbooth/processed"
    assets_directory: str = "assets"
    job_log_directory: Optional[str] = None  # Per-job log files when set

    # Watchdog
    stage_timeout_ms: int = 120_000  # Wall-clock budget for one encoder invocation
    probe_timeout_seconds: float = 10.0
    kill_grace_seconds: float = 3.0  # Between graceful and forceful termination

    # Input sanity
    min_input_size_bytes: int = 1024

    # Housekeeping
    stale_file_max_age_seconds: int = 3600

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    # Output contract
    @property
    def target_output_width(self) -> int:
        return 480

    @property
    def target_output_height(self) -> int:
        return 854

    @property
    def target_fps(self) -> int:
        return 30

    # Encoder
    @property
    def ffmpeg_preset(self) -> str:
        return "ultrafast"

    @property
    def ffmpeg_crf(self) -> int:
        return 30

    @property
    def h264_profile(self) -> str:
        return "baseline"  # Plays on old phones

    @property
    def h264_level(self) -> str:
        return "3.0"

    @property
    def pixel_format(self) -> str:
        return "yuv420p"

    @property
    def audio_bitrate(self) -> str:
        return "128k"

    # Effects
    @property
    def slowmo_factor(self) -> float:
        return 2.0

    @property
    def legacy_aspect_tolerance(self) -> float:
        return 0.1

    # Diagnostics
    @property
    def stderr_tail_lines(self) -> int:
        return 20

    @property
    def stage_timeout_seconds(self) -> float:
        return self.stage_timeout_ms / 1000

    class Config:
        env_prefix = "CLIPBOOTH_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def music_path(self, filename: str) -> str:
        """Path of a bundled music file."""
        return os.path.join(self.assets_directory, "music", filename)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
