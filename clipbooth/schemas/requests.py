"""
Request schemas for the video pipeline.

These are built by the upload layer from the kiosk's form fields and handed to
the pipeline whole. The pipeline only reads them.
"""

from typing import Optional

from pydantic import BaseModel, Field


class StyleConfig(BaseModel):
    """Visual/audio style chosen on the kiosk."""

    model_config = {"frozen": True}

    music: Optional[str] = Field(
        default=None, description="Background track id (see config.MusicOption), or 'none'"
    )
    frame: Optional[str] = Field(default=None, description="Frame id ('none' or 'custom')")
    frame_color: Optional[str] = Field(default=None, description="Custom frame color, e.g. #8B5CF6")
    text: Optional[str] = Field(default=None, description="Caption rendered into the overlay")
    text_font: str = Field(default="montserrat", description="Font id used by the overlay renderer")
    text_color: str = Field(default="#FFFFFF", description="Caption color")

    @property
    def wants_music(self) -> bool:
        return bool(self.music) and self.music != "none"


class Timing(BaseModel):
    """Durations of the normal-speed and slow-motion parts of the source clip."""

    model_config = {"frozen": True}

    normal_duration: float = Field(
        default=5.0, ge=0.0, description="Seconds of source played at normal speed"
    )
    slowmo_duration: float = Field(
        default=5.0, ge=0.0, description="Seconds of source (after the normal part) played at half speed"
    )

    @property
    def is_empty(self) -> bool:
        return self.normal_duration <= 0 and self.slowmo_duration <= 0

    @property
    def source_seconds(self) -> float:
        """Seconds of input consumed by the effect."""
        return self.normal_duration + self.slowmo_duration

    def expected_output_seconds(self, slowmo_factor: float = 2.0) -> float:
        """Duration the finished clip should have."""
        if self.is_empty:
            return 1.0
        return self.normal_duration + slowmo_factor * self.slowmo_duration
