"""
Video Pipeline - orchestrates one kiosk clip from raw recording to final MP4.

Flow:
1. Validate and stage inputs in a fresh job working directory
2. Probe rotation/aspect (fails open)
3. Single pass: trim + speed ramp + fit + overlay in one encode
4. On failure, multi-stage path:
   normalize (computed rotation -> encoder autorotate -> no rotation),
   then segments -> concat -> overlay
5. Music mix (never fatal)
6. Move the result to the output directory

The working directory is removed on every exit path. A pipeline instance runs
one job at a time; use create_pipeline() to get a fresh one per job.
"""

import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

import psutil

from clipbooth.config import get_settings
from clipbooth.errors import (
    EncodingError,
    InvalidInputError,
    PipelineBusyError,
    ProcessingError,
    StageTimeoutError,
)
from clipbooth.logging_setup import LOG_FORMAT, JobLogFilter, current_job_id
from clipbooth.schemas.requests import StyleConfig, Timing
from clipbooth.services.audio_mixer import AudioMixer
from clipbooth.services.concatenator import Concatenator
from clipbooth.services.ffmpeg_commands import filter_encode_command
from clipbooth.services.filter_graph import EMPTY_TIMING_SECONDS, FilterGraphBuilder
from clipbooth.services.job import ProcessingJob, StageRecord
from clipbooth.services.media_probe import MediaProbe, VideoAsset
from clipbooth.services.overlay_compositor import OverlayCompositor
from clipbooth.services.process_watchdog import ProcessWatchdog
from clipbooth.services.segment_encoder import SegmentEncoder

logger = logging.getLogger(__name__)

SINGLE_PASS = "single_pass"


def _rss_mb() -> float:
    """Resident memory of this process in MB, 0 when unavailable."""
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except psutil.Error:
        return 0.0


@dataclass
class ProcessingProgress:
    """Progress update for the kiosk UI."""

    job_id: str
    step: str
    progress: int
    total: int = 100


@dataclass
class PipelineRequest:
    """Everything the upload layer hands over for one clip."""

    video_path: str
    overlay_path: str
    style: StyleConfig = field(default_factory=StyleConfig)
    timing: Timing = field(default_factory=Timing)
    job_id: Optional[str] = None

    def __post_init__(self):
        if self.job_id is None:
            self.job_id = str(uuid.uuid4())


@dataclass
class PipelineResult:
    """Finished clip."""

    job_id: str
    output_path: str
    strategy: str  # single_pass or the normalization strategy that worked
    elapsed_seconds: float
    has_music: bool
    expected_duration_seconds: float
    output_duration_seconds: float = 0.0
    stage_results: list[StageRecord] = field(default_factory=list)


@dataclass(frozen=True)
class StrategyContext:
    """Read-only job state handed to a normalization strategy."""

    job: ProcessingJob
    input_path: str
    asset: VideoAsset
    timing: Timing


@dataclass(frozen=True)
class Strategy:
    """A named way of producing the normalized intermediate."""

    name: str
    run: Callable[[StrategyContext], Awaitable[str]]


class VideoPipeline:
    """
    Single-job video pipeline.

    Collaborators are injectable so tests can replace the encoder; by default
    they all share one ProcessWatchdog.
    """

    def __init__(
        self,
        watchdog: Optional[ProcessWatchdog] = None,
        media_probe: Optional[MediaProbe] = None,
        graph_builder: Optional[FilterGraphBuilder] = None,
        segment_encoder: Optional[SegmentEncoder] = None,
        concatenator: Optional[Concatenator] = None,
        overlay_compositor: Optional[OverlayCompositor] = None,
        audio_mixer: Optional[AudioMixer] = None,
        progress_callback: Optional[Callable[[ProcessingProgress], None]] = None,
    ):
        self.settings = get_settings()
        self.watchdog = watchdog or ProcessWatchdog()
        self.graph_builder = graph_builder or FilterGraphBuilder()
        self.media_probe = media_probe or MediaProbe(self.watchdog)
        self.segment_encoder = segment_encoder or SegmentEncoder(self.watchdog, self.graph_builder)
        self.concatenator = concatenator or Concatenator(self.watchdog)
        self.overlay_compositor = overlay_compositor or OverlayCompositor(self.watchdog, self.graph_builder)
        self.audio_mixer = audio_mixer or AudioMixer(self.watchdog)
        self.progress_callback = progress_callback

        # Tried in order after the single pass fails
        self.normalization_strategies: list[Strategy] = [
            Strategy("normalize", self._normalize_computed),
            Strategy("normalize_autorotate", self._normalize_autorotate),
            Strategy("normalize_no_rotation", self._normalize_no_rotation),
        ]

        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def process(self, request: PipelineRequest) -> PipelineResult:
        """
        Run one clip through the pipeline.

        Args:
            request: PipelineRequest with input paths, style and timing

        Returns:
            PipelineResult with the path of the finished MP4

        Raises:
            PipelineBusyError: This instance is already running a job
            ProcessingError: Categorized terminal failure
        """
        if self._busy:
            raise PipelineBusyError("Pipeline instance is already processing a job")
        self._busy = True

        job: Optional[ProcessingJob] = None
        context_token = current_job_id.set(request.job_id)
        job_log_handler = self._setup_job_logging(request.job_id)
        try:
            job = self._create_job(request.job_id)
            return await self._run(job, request)
        except ProcessingError as e:
            self._log_failure(request.job_id, job, e)
            raise
        except OSError as e:
            # Filesystem trouble outside the wrapped steps still gets a category
            error = EncodingError(f"Filesystem error: {e}", stage=job.stage if job else "created")
            self._log_failure(request.job_id, job, error)
            raise error from e
        finally:
            if job is not None:
                self._cleanup_work_dir(job)
            self._cleanup_job_logging(job_log_handler)
            current_job_id.reset(context_token)
            self._busy = False

    @staticmethod
    def _log_failure(job_id: str, job: Optional[ProcessingJob], error: ProcessingError) -> None:
        stage = job.stage if job else "created"
        if job is not None:
            job.finish_stage("failed")
        logger.error(f"job={job_id} status=failed category={error.category.value} stage={stage}: {error}")

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    async def _run(self, job: ProcessingJob, request: PipelineRequest) -> PipelineResult:
        timing = request.timing
        expected_duration = timing.expected_output_seconds(self.settings.slowmo_factor)
        logger.info(
            f"job={job.job_id} starting: normal={timing.normal_duration}s slowmo={timing.slowmo_duration}s "
            f"expected={expected_duration}s music={request.style.music or 'none'} "
            f"target={self.settings.target_output_width}x{self.settings.target_output_height}"
        )

        job.enter_stage("prepare")
        self._report(job, "Preparing files", 10)
        input_path, overlay_path = self._stage_inputs(job, request)

        job.enter_stage("probe")
        asset = await self.media_probe.probe(input_path)
        self._report(job, "Applying speed effects", 20)

        video_path = await self._single_pass(job, input_path, overlay_path, asset, timing)
        strategy_name = SINGLE_PASS

        if video_path is None:
            context = StrategyContext(job=job, input_path=input_path, asset=asset, timing=timing)
            normalized_path, strategy_name = await self._run_strategies(context)
            self._report(job, "Joining segments", 50)

            job.enter_stage("segment")
            segments = await self.segment_encoder.encode_segments(job, normalized_path, timing)

            job.enter_stage("concatenate")
            concatenated = await self.concatenator.concatenate(job, segments)
            self._remove_quietly(normalized_path)

            self._report(job, "Applying overlay", 70)
            job.enter_stage("overlay")
            video_path = await self.overlay_compositor.composite(job, concatenated, overlay_path)
            self._remove_quietly(concatenated)

        self._report(job, "Applying music", 85)
        job.enter_stage("audio_mix")
        mix = await self.audio_mixer.mix(job, video_path, request.style)

        self._report(job, "Finishing", 95)
        job.enter_stage("finalize")
        final_path = self._publish(job, mix.output_path)
        output_duration = await self._check_duration(job, final_path, expected_duration)
        job.finish_stage("ok")

        elapsed = job.elapsed_seconds
        speed_ratio = expected_duration / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"job={job.job_id} status=completed strategy={strategy_name} "
            f"elapsed={elapsed:.2f}s clip={expected_duration:.2f}s speed_ratio={speed_ratio:.3f}x "
            f"music={mix.has_music} rss={_rss_mb():.0f}MB"
        )
        self._report(job, "Completed", 100)

        return PipelineResult(
            job_id=job.job_id,
            output_path=final_path,
            strategy=strategy_name,
            elapsed_seconds=elapsed,
            has_music=mix.has_music,
            expected_duration_seconds=expected_duration,
            output_duration_seconds=output_duration,
            stage_results=list(job.stage_results),
        )

    async def _single_pass(
        self,
        job: ProcessingJob,
        input_path: str,
        overlay_path: str,
        asset: VideoAsset,
        timing: Timing,
    ) -> Optional[str]:
        """Fast path. Returns None (never raises) when it fails."""
        job.enter_stage(SINGLE_PASS)
        output_path = job.path("single_pass.mp4")
        built = self.graph_builder.build_single_pass(timing, asset.rotation, asset.needs_crop)
        cmd = filter_encode_command(
            self.settings,
            input_path,
            built,
            output_path,
            overlay_path=overlay_path,
            pre_input_flags=["-noautorotate"],
        )
        try:
            await self.watchdog.run(
                cmd,
                stage=SINGLE_PASS,
                timeout_seconds=job.timeout_seconds,
                output_path=output_path,
            )
        except ProcessingError as e:
            job.finish_stage("failed")
            logger.warning(
                f"job={job.job_id} strategy={SINGLE_PASS} status=failed category={e.category.value}: {e}; "
                f"falling back to multi-stage"
            )
            self._remove_quietly(output_path)
            return None

        logger.info(f"job={job.job_id} strategy={SINGLE_PASS} status=succeeded")
        return output_path

    async def _run_strategies(self, context: StrategyContext) -> tuple[str, str]:
        """
        Try each normalization strategy in order, stopping at the first success.

        Returns:
            (normalized path, strategy name)

        Raises:
            StageTimeoutError: Every strategy failed and the last one timed out
            EncodingError: Every strategy failed
        """
        job = context.job
        last_error: Optional[ProcessingError] = None

        for strategy in self.normalization_strategies:
            job.enter_stage(strategy.name)
            try:
                result = await strategy.run(context)
            except ProcessingError as e:
                last_error = e
                job.finish_stage("failed")
                logger.warning(
                    f"job={job.job_id} strategy={strategy.name} status=failed "
                    f"category={e.category.value}: {e}"
                )
                continue
            logger.info(f"job={job.job_id} strategy={strategy.name} status=succeeded")
            return result, strategy.name

        names = ", ".join(s.name for s in self.normalization_strategies)
        if last_error is None:
            raise EncodingError("No normalization strategies configured", stage="normalize")

        message = f"All normalization strategies failed ({names}); last error: {last_error.message}"
        if isinstance(last_error, StageTimeoutError):
            raise StageTimeoutError(
                message, stage=last_error.stage, timeout_seconds=last_error.timeout_seconds
            ) from last_error
        raise EncodingError(message, stage=last_error.stage) from last_error

    # ------------------------------------------------------------------
    # Normalization strategies
    # ------------------------------------------------------------------

    def _source_seconds(self, timing: Timing) -> float:
        return EMPTY_TIMING_SECONDS if timing.is_empty else timing.source_seconds

    async def _encode_normalized(
        self,
        context: StrategyContext,
        rotation: int,
        needs_crop: bool,
        decoder_flags: list[str],
        stage: str,
    ) -> str:
        output_path = context.job.path("normalized.mp4")
        built = self.graph_builder.build_normalize(
            rotation, needs_crop, source_seconds=self._source_seconds(context.timing)
        )
        cmd = filter_encode_command(
            self.settings,
            context.input_path,
            built,
            output_path,
            pre_input_flags=decoder_flags,
        )
        await self.watchdog.run(
            cmd,
            stage=stage,
            timeout_seconds=context.job.timeout_seconds,
            output_path=output_path,
        )
        return output_path

    async def _normalize_computed(self, context: StrategyContext) -> str:
        """Probed rotation applied as filters, decoder autorotation off."""
        return await self._encode_normalized(
            context,
            rotation=context.asset.rotation,
            needs_crop=context.asset.needs_crop,
            decoder_flags=["-noautorotate"],
            stage="normalize",
        )

    async def _normalize_autorotate(self, context: StrategyContext) -> str:
        """Let the encoder apply its own rotation metadata handling."""
        return await self._encode_normalized(
            context,
            rotation=0,
            needs_crop=context.asset.needs_crop,
            decoder_flags=["-autorotate"],
            stage="normalize_autorotate",
        )

    async def _normalize_no_rotation(self, context: StrategyContext) -> str:
        """No rotation of any kind, always pad. Last resort."""
        return await self._encode_normalized(
            context,
            rotation=0,
            needs_crop=False,
            decoder_flags=["-noautorotate"],
            stage="normalize_no_rotation",
        )

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _create_job(self, job_id: str) -> ProcessingJob:
        try:
            os.makedirs(self.settings.temp_directory, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix=f"job-{job_id}-", dir=self.settings.temp_directory)
        except OSError as e:
            raise EncodingError(f"Could not create working directory: {e}", stage="created") from e
        logger.info(f"job={job_id} working directory: {work_dir}")
        return ProcessingJob(
            job_id=job_id,
            work_dir=Path(work_dir),
            timeout_ms=self.settings.stage_timeout_ms,
        )

    def _stage_inputs(self, job: ProcessingJob, request: PipelineRequest) -> tuple[str, str]:
        """Validate the inputs and copy them into the working directory."""
        video_size = self._checked_size(request.video_path, "Video")
        if video_size < self.settings.min_input_size_bytes:
            raise InvalidInputError(
                f"Video file is too small ({video_size} bytes, minimum "
                f"{self.settings.min_input_size_bytes})",
                stage="prepare",
            )
        if self._checked_size(request.overlay_path, "Overlay") == 0:
            raise InvalidInputError("Overlay image is empty", stage="prepare")

        extension = os.path.splitext(request.video_path)[1] or ".mp4"
        input_path = job.path(f"input{extension}")
        overlay_path = job.path("overlay.png")
        try:
            shutil.copyfile(request.video_path, input_path)
            shutil.copyfile(request.overlay_path, overlay_path)
        except OSError as e:
            raise InvalidInputError(f"Could not read input files: {e}", stage="prepare") from e

        return input_path, overlay_path

    @staticmethod
    def _checked_size(path: str, label: str) -> int:
        if not path or not os.path.isfile(path):
            raise InvalidInputError(f"{label} file not found: {path}", stage="prepare")
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise InvalidInputError(f"{label} file is unreadable: {e}", stage="prepare") from e
        if size == 0:
            raise InvalidInputError(f"{label} file is empty: {path}", stage="prepare")
        return size

    def _publish(self, job: ProcessingJob, output_path: str) -> str:
        """Move the finished file out of the working directory."""
        final_path = os.path.join(self.settings.output_directory, f"processed-{uuid.uuid4()}.mp4")
        try:
            os.makedirs(self.settings.output_directory, exist_ok=True)
            shutil.move(output_path, final_path)
        except OSError as e:
            raise EncodingError(f"Could not publish output to {final_path}: {e}", stage="finalize") from e
        logger.info(f"job={job.job_id} output: {final_path}")
        return final_path

    async def _check_duration(self, job: ProcessingJob, path: str, expected: float) -> float:
        """Probe the output and log how far it is from the expected duration."""
        actual = await self.media_probe.probe_duration(path)
        if actual <= 0:
            logger.warning(f"job={job.job_id} could not verify output duration")
            return 0.0

        frame_interval = 1.0 / self.settings.target_fps
        drift = abs(actual - expected)
        if drift > 2 * frame_interval:
            logger.warning(
                f"job={job.job_id} output duration {actual:.3f}s differs from expected "
                f"{expected:.3f}s by {drift:.3f}s"
            )
        else:
            logger.info(f"job={job.job_id} output duration {actual:.3f}s (expected {expected:.3f}s)")
        return actual

    def _cleanup_work_dir(self, job: ProcessingJob) -> None:
        if job.work_dir.is_dir():
            try:
                shutil.rmtree(job.work_dir)
                logger.info(f"job={job.job_id} working directory removed")
            except OSError as e:
                logger.warning(f"job={job.job_id} failed to cleanup work dir: {e}")

    @staticmethod
    def _remove_quietly(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove intermediate {path}: {e}")

    def _report(self, job: ProcessingJob, step: str, progress: int) -> None:
        if self.progress_callback is not None:
            self.progress_callback(ProcessingProgress(job_id=job.job_id, step=step, progress=progress))

    # ------------------------------------------------------------------
    # Job-scoped log file
    # ------------------------------------------------------------------

    def _setup_job_logging(self, job_id: str) -> Optional[logging.FileHandler]:
        """
        Write this job's clipbooth.* log records to their own file.

        Only active when job_log_directory is configured.
        """
        if not self.settings.job_log_directory:
            return None

        try:
            logs_dir = Path(self.settings.job_log_directory)
            logs_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            file_handler = logging.FileHandler(
                logs_dir / f"job_{job_id}_{timestamp}.log", encoding="utf-8"
            )
        except OSError as e:
            logger.warning(f"Failed to setup job logging: {e}")
            return None

        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        # Concurrent jobs share the clipbooth logger; keep only this job's records
        file_handler.addFilter(JobLogFilter(job_id))
        logging.getLogger("clipbooth").addHandler(file_handler)
        logger.info(f"Job logging initialized: {file_handler.baseFilename}")
        return file_handler

    @staticmethod
    def _cleanup_job_logging(file_handler: Optional[logging.FileHandler]) -> None:
        if file_handler is None:
            return
        logging.getLogger("clipbooth").removeHandler(file_handler)
        file_handler.close()


def create_pipeline(**kwargs) -> VideoPipeline:
    """A fresh pipeline for one job. Instances are never shared between jobs."""
    return VideoPipeline(**kwargs)


async def process_video(
    video_path: str,
    overlay_path: str,
    style: Optional[StyleConfig] = None,
    normal_duration: float = 5.0,
    slowmo_duration: float = 5.0,
    progress_callback: Optional[Callable[[ProcessingProgress], None]] = None,
) -> PipelineResult:
    """
    Public entry point used by the upload layer.

    Args:
        video_path: Raw recording
        overlay_path: Pre-rendered transparent overlay (target resolution)
        style: Style selection; defaults to no music
        normal_duration: Seconds played at normal speed
        slowmo_duration: Seconds played at half speed after the normal part

    Returns:
        PipelineResult
    """
    request = PipelineRequest(
        video_path=video_path,
        overlay_path=overlay_path,
        style=style or StyleConfig(),
        timing=Timing(normal_duration=normal_duration, slowmo_duration=slowmo_duration),
    )
    pipeline = create_pipeline(progress_callback=progress_callback)
    return await pipeline.process(request)
