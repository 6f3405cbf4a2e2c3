"""
Filter graph construction for ffmpeg.

Graphs are modelled as an ordered list of named filter nodes with explicit
input/output pad labels and only turned into ffmpeg's textual
`-filter_complex` syntax at invocation time. Tests assert on node names and
arguments instead of diffing strings.

Every graph ends in a frame of exactly target_output_width x
target_output_height, whatever the source orientation or aspect.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from clipbooth.config import get_settings
from clipbooth.schemas.requests import Timing

logger = logging.getLogger(__name__)

VIDEO_INPUT = "0:v"
OVERLAY_INPUT = "1:v"

# Length of the placeholder clip produced when both durations are zero
EMPTY_TIMING_SECONDS = 1.0


def _fmt(value: float) -> str:
    """Millisecond precision like the -ss/-t arguments, trailing zeros dropped (5.0 -> '5')."""
    return f"{value:.3f}".rstrip("0").rstrip(".")


@dataclass(frozen=True)
class FilterNode:
    """One filter instance: name, argument string and its pad labels."""

    name: str
    args: str = ""
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    def serialize(self) -> str:
        body = f"{self.name}={self.args}" if self.args else self.name
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{body}{outs}"


@dataclass(frozen=True)
class FilterGraph:
    """Immutable ordered collection of filter nodes."""

    nodes: tuple[FilterNode, ...] = field(default_factory=tuple)

    def serialize(self) -> str:
        """Textual form for ffmpeg's -filter_complex."""
        return ";".join(node.serialize() for node in self.nodes)

    def names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def find(self, name: str) -> list[FilterNode]:
        return [node for node in self.nodes if node.name == name]


@dataclass(frozen=True)
class BuiltGraph:
    """A graph plus what the command line needs to consume it."""

    graph: FilterGraph
    output_label: str
    input_start: float = 0.0
    input_duration: Optional[float] = None  # None = read the whole input

    @property
    def map_label(self) -> str:
        return f"[{self.output_label}]"


class _ChainWriter:
    """Links a linear run of filters with generated intermediate labels."""

    def __init__(self, prefix: str):
        self.prefix = prefix
        self.counter = 0
        self.nodes: list[FilterNode] = []

    def chain(self, specs: list[tuple[str, str]], source: str, sink: str) -> None:
        current = source
        for index, (name, args) in enumerate(specs):
            if index == len(specs) - 1:
                target = sink
            else:
                target = f"{self.prefix}{self.counter}"
                self.counter += 1
            self.nodes.append(FilterNode(name, args, (current,), (target,)))
            current = target

    def add(self, node: FilterNode) -> None:
        self.nodes.append(node)

    def build(self) -> FilterGraph:
        return FilterGraph(tuple(self.nodes))


class FilterGraphBuilder:
    """
    Builds the filter graphs used by the single-pass and multi-stage paths.

    Policy:
    - rotation is its own node(s) ahead of any scaling
    - 4:3 sources: scale up, center crop; everything else: scale down, pad black
    - the overlay image is fitted to the same frame with transparent padding
      before compositing at the origin
    """

    def __init__(self):
        self.settings = get_settings()
        self.width = self.settings.target_output_width
        self.height = self.settings.target_output_height

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    @staticmethod
    def rotation_specs(rotation: int) -> list[tuple[str, str]]:
        """Filters that turn a frame upright given its clockwise display rotation."""
        if rotation == 90:
            return [("transpose", "1")]
        if rotation == 180:
            return [("hflip", ""), ("vflip", "")]
        if rotation == 270:
            return [("transpose", "2")]
        return []

    def fit_specs(self, needs_crop: bool) -> list[tuple[str, str]]:
        """Scale into the target frame, then normalize SAR and frame rate."""
        w, h = self.width, self.height
        if needs_crop:
            specs = [
                ("scale", f"{w}:{h}:force_original_aspect_ratio=increase"),
                ("crop", f"{w}:{h}"),
            ]
        else:
            specs = [
                ("scale", f"{w}:{h}:force_original_aspect_ratio=decrease"),
                ("pad", f"{w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black"),
            ]
        specs.append(("setsar", "1"))
        specs.append(("fps", str(self.settings.target_fps)))
        return specs

    def overlay_fit_specs(self) -> list[tuple[str, str]]:
        """Fit the overlay image to the frame, padding with transparency."""
        w, h = self.width, self.height
        return [
            ("format", "rgba"),
            ("scale", f"{w}:{h}:force_original_aspect_ratio=decrease"),
            ("pad", f"{w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black@0"),
        ]

    def _slowmo_setpts(self) -> str:
        return f"{_fmt(self.settings.slowmo_factor)}*(PTS-STARTPTS)"

    def _composite(self, writer: _ChainWriter, video_label: str, output_label: str) -> None:
        writer.chain(self.overlay_fit_specs(), OVERLAY_INPUT, "ovl")
        writer.add(FilterNode("overlay", "0:0:format=auto", (video_label, "ovl"), ("composited",)))
        writer.chain([("format", self.settings.pixel_format)], "composited", output_label)

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def build_single_pass(self, timing: Timing, rotation: int, needs_crop: bool) -> BuiltGraph:
        """
        One graph covering rotation, fit, speed ramp and overlay.

        Inputs: 0 = source clip, 1 = overlay image.
        """
        writer = _ChainWriter("sp")
        writer.chain(self.rotation_specs(rotation) + self.fit_specs(needs_crop), VIDEO_INPUT, "base")

        normal = timing.normal_duration
        slowmo = timing.slowmo_duration
        slow_pts = self._slowmo_setpts()

        if normal > 0 and slowmo > 0:
            writer.add(FilterNode("split", "2", ("base",), ("nrm_in", "slo_in")))
            writer.chain(
                [("trim", f"start=0:end={_fmt(normal)}"), ("setpts", "PTS-STARTPTS")],
                "nrm_in",
                "nrm",
            )
            writer.chain(
                [("trim", f"start={_fmt(normal)}:end={_fmt(normal + slowmo)}"), ("setpts", slow_pts)],
                "slo_in",
                "slo",
            )
            writer.add(FilterNode("concat", "n=2:v=1:a=0", ("nrm", "slo"), ("speed",)))
            source_seconds = normal + slowmo
        elif normal > 0:
            writer.chain(
                [("trim", f"start=0:end={_fmt(normal)}"), ("setpts", "PTS-STARTPTS")],
                "base",
                "speed",
            )
            source_seconds = normal
        elif slowmo > 0:
            writer.chain(
                [("trim", f"start=0:end={_fmt(slowmo)}"), ("setpts", slow_pts)],
                "base",
                "speed",
            )
            source_seconds = slowmo
        else:
            logger.warning(
                f"Both durations are zero, emitting a {_fmt(EMPTY_TIMING_SECONDS)}s placeholder clip"
            )
            writer.chain(
                [("trim", f"start=0:end={_fmt(EMPTY_TIMING_SECONDS)}"), ("setpts", "PTS-STARTPTS")],
                "base",
                "speed",
            )
            source_seconds = EMPTY_TIMING_SECONDS

        self._composite(writer, "speed", "out")
        return BuiltGraph(
            graph=writer.build(),
            output_label="out",
            input_start=0.0,
            input_duration=source_seconds,
        )

    def build_normalize(
        self,
        rotation: int,
        needs_crop: bool,
        source_seconds: Optional[float] = None,
    ) -> BuiltGraph:
        """Upright, fixed-size, fixed-rate intermediate from the raw clip."""
        writer = _ChainWriter("nm")
        writer.chain(self.rotation_specs(rotation) + self.fit_specs(needs_crop), VIDEO_INPUT, "v")
        return BuiltGraph(graph=writer.build(), output_label="v", input_duration=source_seconds)

    def build_segment(self, start: float, duration: float, slow: bool) -> BuiltGraph:
        """
        One speed segment of the normalized clip.

        The cut is done with input seeking (-ss/-t), so timestamps start at 0
        and only need scaling for the slow segment.
        """
        writer = _ChainWriter("sg")
        setpts = self._slowmo_setpts() if slow else "PTS-STARTPTS"
        writer.chain([("setpts", setpts)] + self.fit_specs(needs_crop=False), VIDEO_INPUT, "v")
        return BuiltGraph(
            graph=writer.build(),
            output_label="v",
            input_start=start,
            input_duration=duration,
        )

    def build_overlay(self) -> BuiltGraph:
        """Composite the overlay image (input 1) onto a normalized video (input 0)."""
        writer = _ChainWriter("ov")
        self._composite(writer, VIDEO_INPUT, "out")
        return BuiltGraph(graph=writer.build(), output_label="out")
