"""
Services for the video pipeline.

Includes:
- Encoder plumbing (watchdog, process tree termination, filter graphs)
- Pipeline stages (probe, segments, concat, overlay, audio)
- Orchestration and housekeeping
"""

from clipbooth.services.audio_mixer import AudioMixer, MixResult
from clipbooth.services.concatenator import Concatenator
from clipbooth.services.filter_graph import FilterGraph, FilterGraphBuilder, FilterNode
from clipbooth.services.housekeeping import cleanup_stale_files
from clipbooth.services.media_probe import AspectClass, MediaProbe, VideoAsset
from clipbooth.services.overlay_compositor import OverlayCompositor
from clipbooth.services.process_watchdog import EncodingResult, ProcessWatchdog
from clipbooth.services.segment_encoder import SegmentEncoder

# Orchestration
from clipbooth.services.video_pipeline import (
    PipelineRequest,
    PipelineResult,
    VideoPipeline,
    create_pipeline,
    process_video,
)

__all__ = [
    # Encoder plumbing
    "ProcessWatchdog",
    "EncodingResult",
    "FilterGraph",
    "FilterGraphBuilder",
    "FilterNode",
    # Stages
    "MediaProbe",
    "VideoAsset",
    "AspectClass",
    "SegmentEncoder",
    "Concatenator",
    "OverlayCompositor",
    "AudioMixer",
    "MixResult",
    # Orchestration
    "VideoPipeline",
    "PipelineRequest",
    "PipelineResult",
    "create_pipeline",
    "process_video",
    "cleanup_stale_files",
]
