"""
Tests for the individual multi-stage steps and the audio mixer.
"""

import asyncio
import logging
import os

import pytest

from clipbooth.errors import EncodingError
from clipbooth.schemas.requests import StyleConfig, Timing
from clipbooth.services.audio_mixer import AudioMixer
from clipbooth.services.concatenator import Concatenator
from clipbooth.services.overlay_compositor import OverlayCompositor
from clipbooth.services.segment_encoder import SegmentEncoder


def _touch(path) -> str:
    with open(path, "wb") as f:
        f.write(b"data")
    return str(path)


class TestSegmentEncoder:
    """Tests for SegmentEncoder."""

    def test_normal_and_slowmo(self, fake_watchdog, job):
        segments = asyncio.run(
            SegmentEncoder(fake_watchdog).encode_segments(job, "normalized.mp4", Timing(normal_duration=5, slowmo_duration=5))
        )

        assert [os.path.basename(s) for s in segments] == ["seg_normal.mp4", "seg_slowmo.mp4"]
        assert fake_watchdog.stages == ["segment_normal", "segment_slowmo"]

        slow_cmd = fake_watchdog.command("segment_slowmo")
        assert slow_cmd[slow_cmd.index("-ss") + 1] == "5.000"
        assert slow_cmd[slow_cmd.index("-t") + 1] == "5.000"
        assert "2*(PTS-STARTPTS)" in slow_cmd[slow_cmd.index("-filter_complex") + 1]

    def test_zero_slowmo_is_skipped(self, fake_watchdog, job):
        segments = asyncio.run(
            SegmentEncoder(fake_watchdog).encode_segments(job, "normalized.mp4", Timing(normal_duration=6, slowmo_duration=0))
        )
        assert len(segments) == 1
        assert fake_watchdog.stages == ["segment_normal"]

    def test_both_zero_encodes_placeholder(self, fake_watchdog, job):
        asyncio.run(
            SegmentEncoder(fake_watchdog).encode_segments(job, "normalized.mp4", Timing(normal_duration=0, slowmo_duration=0))
        )
        cmd = fake_watchdog.command("segment_normal")
        assert cmd[cmd.index("-t") + 1] == "1.000"

    def test_segments_share_encoding(self, fake_watchdog, job):
        asyncio.run(SegmentEncoder(fake_watchdog).encode_segments(job, "normalized.mp4", Timing()))
        normal = fake_watchdog.command("segment_normal")
        slow = fake_watchdog.command("segment_slowmo")
        tail = normal.index("-c:v")
        assert normal[tail:-1] == slow[slow.index("-c:v"):-1]


class TestConcatenator:
    """Tests for Concatenator."""

    def test_concat_list_format(self, job):
        segments = [job.path("seg_normal.mp4"), job.path("seg_slowmo.mp4")]
        list_path = Concatenator().write_concat_list(job, segments)

        with open(list_path, encoding="utf-8") as f:
            assert f.read() == "file 'seg_normal.mp4'\nfile 'seg_slowmo.mp4'\n"

    def test_quotes_in_names(self, job):
        list_path = Concatenator().write_concat_list(job, [job.path("it's.mp4")])
        with open(list_path, encoding="utf-8") as f:
            assert f.read() == "file 'it'\\''s.mp4'\n"

    def test_stream_copy_and_cleanup(self, fake_watchdog, job):
        segments = [_touch(job.path("seg_normal.mp4")), _touch(job.path("seg_slowmo.mp4"))]

        output = asyncio.run(Concatenator(fake_watchdog).concatenate(job, segments))

        cmd = fake_watchdog.command("concatenate")
        assert cmd[cmd.index("-f") + 1] == "concat"
        assert cmd[cmd.index("-safe") + 1] == "0"
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert "-filter_complex" not in cmd
        assert os.path.basename(output) == "concatenated.mp4"
        assert not any(os.path.exists(s) for s in segments)
        assert not os.path.exists(job.path("concat_list.txt"))

    def test_failure_keeps_segments(self, fake_watchdog, job):
        segments = [_touch(job.path("seg_normal.mp4"))]
        fake_watchdog.failures["concatenate"] = EncodingError("bad segment", stage="concatenate")

        with pytest.raises(EncodingError):
            asyncio.run(Concatenator(fake_watchdog).concatenate(job, segments))

        assert os.path.exists(segments[0])

    def test_no_segments(self, fake_watchdog, job):
        with pytest.raises(EncodingError, match="No segments"):
            asyncio.run(Concatenator(fake_watchdog).concatenate(job, []))


class TestOverlayCompositor:
    """Tests for OverlayCompositor."""

    def test_composite(self, fake_watchdog, job):
        output = asyncio.run(OverlayCompositor(fake_watchdog).composite(job, "concatenated.mp4", "overlay.png"))

        cmd = fake_watchdog.command("overlay")
        inputs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]
        assert inputs == ["concatenated.mp4", "overlay.png"]
        assert "overlay=0:0:format=auto" in cmd[cmd.index("-filter_complex") + 1]
        assert cmd[cmd.index("-profile:v") + 1] == "baseline"
        assert os.path.basename(output) == "styled.mp4"


class TestAudioMixer:
    """Tests for AudioMixer."""

    @pytest.fixture
    def music_file(self, settings):
        path = settings.music_path("beggin.mp3")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        return _touch(path)

    def test_no_music(self, fake_watchdog, job):
        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig()))

        assert not result.has_music
        assert fake_watchdog.stages == ["audio_copy"]
        cmd = fake_watchdog.command("audio_copy")
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-an" in cmd

    def test_none_music(self, fake_watchdog, job):
        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig(music="none")))
        assert not result.has_music
        assert fake_watchdog.stages == ["audio_copy"]

    def test_music_mixed(self, fake_watchdog, job, music_file):
        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig(music="beggin")))

        assert result.has_music
        assert result.music_id == "beggin"
        cmd = fake_watchdog.command("audio_mix")
        assert cmd[cmd.index("-stream_loop") + 1] == "-1"
        assert cmd.index("-stream_loop") < cmd.index(music_file)
        assert "-shortest" in cmd
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"

    def test_unknown_music_falls_back(self, fake_watchdog, job, caplog):
        caplog.set_level(logging.WARNING)
        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig(music="polka")))

        assert not result.has_music
        assert fake_watchdog.stages == ["audio_copy"]
        assert "Unknown music id" in caplog.text

    def test_missing_music_file_falls_back(self, fake_watchdog, job, caplog):
        caplog.set_level(logging.WARNING)
        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig(music="beggin")))

        assert not result.has_music
        assert "Music file not found" in caplog.text

    def test_failed_mix_falls_back(self, fake_watchdog, job, music_file, caplog):
        fake_watchdog.failures["audio_mix"] = EncodingError("no audio stream", stage="audio_mix")

        result = asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig(music="beggin")))

        assert not result.has_music
        assert fake_watchdog.stages == ["audio_mix", "audio_copy"]
        assert "falling back to video-only" in caplog.text

    def test_copy_failure_propagates(self, fake_watchdog, job):
        fake_watchdog.failures["audio_copy"] = EncodingError("disk full", stage="audio_copy")
        with pytest.raises(EncodingError):
            asyncio.run(AudioMixer(fake_watchdog).mix(job, "styled.mp4", StyleConfig()))


class TestConcatenatorFilesystem:
    """Tests for concat list write failures."""

    def test_unwritable_list_is_encoding_error(self, fake_watchdog, job):
        os.mkdir(job.path("concat_list.txt"))
        segments = [_touch(job.path("seg_normal.mp4"))]

        with pytest.raises(EncodingError, match="Could not write concat list") as exc_info:
            asyncio.run(Concatenator(fake_watchdog).concatenate(job, segments))

        assert exc_info.value.stage == "concatenate"
        assert fake_watchdog.calls == []
