"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
import time
from typing import Optional

import pytest

from clipbooth.config import get_settings
from clipbooth.services.process_watchdog import EncodingResult


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Settings pointing every directory at the test's tmp_path."""
    monkeypatch.setenv("CLIPBOOTH_TEMP_DIRECTORY", str(tmp_path / "work"))
    monkeypatch.setenv("CLIPBOOTH_OUTPUT_DIRECTORY", str(tmp_path / "processed"))
    monkeypatch.setenv("CLIPBOOTH_ASSETS_DIRECTORY", str(tmp_path / "assets"))
    monkeypatch.setenv("CLIPBOOTH_KILL_GRACE_SECONDS", "1.0")
    monkeypatch.delenv("CLIPBOOTH_JOB_LOG_DIRECTORY", raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


def probe_json(
    width: int = 1920,
    height: int = 1080,
    rotation: Optional[int] = None,
    duration: Optional[float] = 12.0,
) -> dict:
    """ffprobe -print_format json output for a single video stream."""
    stream = {"codec_type": "video", "codec_name": "h264", "width": width, "height": height}
    if rotation is not None:
        stream["tags"] = {"rotate": str(rotation)}
    if duration is not None:
        stream["duration"] = f"{duration:.6f}"
    return {"streams": [stream], "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2"}}


class FakeWatchdog:
    """
    Stand-in for ProcessWatchdog that records commands instead of running them.

    - probe calls answer with `input_probe` (source clip) or a stream of
      `output_duration` seconds (published output)
    - stages listed in `failures` raise the given error
    - every other call writes a small file at `output_path`
    """

    def __init__(self, input_probe: Optional[dict] = None, output_duration: Optional[float] = None, delay: float = 0.0):
        self.input_probe = input_probe if input_probe is not None else probe_json()
        self.output_duration = output_duration
        self.delay = delay
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, list[str]]] = []

    @property
    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]

    def command(self, stage: str) -> list[str]:
        """Arguments of the last call for `stage`."""
        for called_stage, args in reversed(self.calls):
            if called_stage == stage:
                return args
        raise AssertionError(f"stage {stage} was never run; ran {self.stages}")

    async def run(self, args, stage, timeout_seconds=None, output_path=None, capture_stdout=False):
        self.calls.append((stage, list(args)))
        if self.delay:
            await asyncio.sleep(self.delay)

        if stage in self.failures:
            raise self.failures[stage]

        stdout = ""
        if stage == "probe":
            target = os.path.basename(args[-1])
            if target.startswith("processed-"):
                data = probe_json(480, 854, duration=self.output_duration)
            else:
                data = self.input_probe
            stdout = json.dumps(data)

        if output_path is not None:
            with open(output_path, "wb") as f:
                f.write(b"\x00\x00\x00\x18ftypmp42")

        return EncodingResult(
            stage=stage,
            success=True,
            output_path=output_path,
            stderr_tail="",
            elapsed_seconds=0.01,
            returncode=0,
            stdout=stdout,
        )


@pytest.fixture
def fake_watchdog():
    return FakeWatchdog()


@pytest.fixture
def input_files(tmp_path):
    """A plausibly sized source clip and an overlay image."""
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    video = uploads / "recording.mp4"
    video.write_bytes(b"\x00" * 4096)
    overlay = uploads / "overlay.png"
    overlay.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 256)
    return str(video), str(overlay)


@pytest.fixture
def job(tmp_path):
    """A ProcessingJob with an existing working directory."""
    from clipbooth.services.job import ProcessingJob

    work_dir = tmp_path / "job-test"
    work_dir.mkdir()
    return ProcessingJob(job_id="test", work_dir=work_dir, timeout_ms=5000)


def make_old(path, age_seconds: float) -> None:
    """Backdate a file's modification time."""
    stamp = time.time() - age_seconds
    os.utime(path, (stamp, stamp))
