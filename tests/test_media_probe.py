"""
Tests for rotation/aspect probing.
"""

import asyncio

import pytest

from clipbooth.errors import StageTimeoutError
from clipbooth.services.media_probe import (
    AspectClass,
    MediaProbe,
    VideoAsset,
    classify_aspect,
    normalize_rotation,
    parse_probe_output,
)

from conftest import FakeWatchdog, probe_json


class TestRotation:
    """Tests for rotation normalization."""

    @pytest.mark.parametrize(
        "degrees,expected",
        [(0, 0), (90, 90), (-90, 270), (180, 180), (-180, 180), (270, 270), (360, 0), (89.6, 90), (-270, 90)],
    )
    def test_normalize_rotation(self, degrees, expected):
        assert normalize_rotation(degrees) == expected


class TestAspect:
    """Tests for aspect classification."""

    @pytest.mark.parametrize(
        "width,height,expected",
        [
            (1920, 1080, AspectClass.WIDESCREEN),
            (1280, 720, AspectClass.WIDESCREEN),
            (640, 480, AspectClass.LEGACY_4_3),
            (480, 640, AspectClass.LEGACY_4_3),
            (1080, 1920, AspectClass.VERTICAL),
            (1000, 1000, AspectClass.UNKNOWN),
            (2560, 1080, AspectClass.UNKNOWN),
            (0, 1080, AspectClass.UNKNOWN),
        ],
    )
    def test_classify(self, width, height, expected):
        assert classify_aspect(width, height) == expected

    def test_only_legacy_is_cropped(self):
        assert VideoAsset("a.mp4", aspect_class=AspectClass.LEGACY_4_3).needs_crop
        assert not VideoAsset("a.mp4", aspect_class=AspectClass.WIDESCREEN).needs_crop
        assert not VideoAsset("a.mp4").needs_crop


class TestParseProbeOutput:
    """Tests for ffprobe JSON parsing."""

    def test_plain_landscape(self):
        asset = parse_probe_output("a.mp4", probe_json(1920, 1080, duration=12.5))
        assert (asset.width, asset.height, asset.rotation) == (1920, 1080, 0)
        assert asset.aspect_class == AspectClass.WIDESCREEN
        assert asset.duration_seconds == pytest.approx(12.5)

    def test_rotate_tag_swaps_dimensions(self):
        asset = parse_probe_output("a.mp4", probe_json(1920, 1080, rotation=90))
        assert asset.rotation == 90
        assert (asset.width, asset.height) == (1080, 1920)
        assert asset.aspect_class == AspectClass.VERTICAL

    def test_display_matrix_rotation(self):
        data = {
            "streams": [
                {
                    "codec_type": "video",
                    "width": 1920,
                    "height": 1080,
                    "side_data_list": [{"side_data_type": "Display Matrix", "rotation": -90}],
                }
            ]
        }
        asset = parse_probe_output("a.mp4", data)
        assert asset.rotation == 90
        assert (asset.width, asset.height) == (1080, 1920)

    def test_rotate_tag_wins_over_display_matrix(self):
        data = probe_json(1920, 1080, rotation=180)
        data["streams"][0]["side_data_list"] = [{"side_data_type": "Display Matrix", "rotation": 90}]
        assert parse_probe_output("a.mp4", data).rotation == 180

    def test_unparseable_rotate_tag_is_ignored(self):
        data = probe_json(640, 480)
        data["streams"][0]["tags"] = {"rotate": "sideways"}
        asset = parse_probe_output("a.mp4", data)
        assert asset.rotation == 0
        assert asset.aspect_class == AspectClass.LEGACY_4_3

    def test_duration_from_format(self):
        data = probe_json(duration=None)
        data["format"]["duration"] = "7.250000"
        assert parse_probe_output("a.mp4", data).duration_seconds == pytest.approx(7.25)

    def test_audio_only_raises(self):
        with pytest.raises(ValueError):
            parse_probe_output("a.m4a", {"streams": [{"codec_type": "audio"}]})


class TestMediaProbe:
    """Tests for the fail-open probe wrapper."""

    def test_probe_uses_watchdog(self):
        watchdog = FakeWatchdog(input_probe=probe_json(640, 480, rotation=270))
        probe = MediaProbe(watchdog)

        asset = asyncio.run(probe.probe("/tmp/input.mp4"))

        assert asset.rotation == 270
        assert asset.needs_crop
        cmd = watchdog.command("probe")
        assert cmd[0] == "ffprobe"
        assert cmd[-1] == "/tmp/input.mp4"

    def test_probe_failure_falls_back_to_defaults(self, caplog):
        watchdog = FakeWatchdog()
        watchdog.failures["probe"] = StageTimeoutError("hung", stage="probe", timeout_seconds=10)
        probe = MediaProbe(watchdog)

        asset = asyncio.run(probe.probe("/tmp/input.mp4"))

        assert asset == VideoAsset(path="/tmp/input.mp4")
        assert asset.rotation == 0
        assert not asset.needs_crop
        assert "Probe failed" in caplog.text

    def test_garbage_output_falls_back_to_defaults(self, mocker):
        watchdog = FakeWatchdog()
        result = mocker.MagicMock(stdout="not json")
        mocker.patch.object(watchdog, "run", mocker.AsyncMock(return_value=result))

        asset = asyncio.run(MediaProbe(watchdog).probe("/tmp/input.mp4"))

        assert asset.aspect_class == AspectClass.UNKNOWN

    def test_probe_duration(self):
        watchdog = FakeWatchdog(input_probe=probe_json(duration=9.5))
        assert asyncio.run(MediaProbe(watchdog).probe_duration("clip.mp4")) == pytest.approx(9.5)


class TestMalformedProbeOutput:
    """Tests for ffprobe output that is valid JSON but not the expected shape."""

    @pytest.mark.parametrize(
        "data",
        [
            [],
            "streams",
            {"streams": "video"},
            {"streams": [["video"]]},
            {"streams": [{"codec_type": "video", "width": [1920], "height": 1080}]},
        ],
    )
    def test_parse_rejects_with_value_error(self, data):
        with pytest.raises(ValueError):
            parse_probe_output("a.mp4", data)

    def test_odd_tags_and_side_data_are_ignored(self):
        data = probe_json(1920, 1080)
        data["streams"][0]["tags"] = ["rotate", "90"]
        data["streams"][0]["side_data_list"] = ["Display Matrix", {"side_data_type": "Display Matrix"}]
        data["format"] = "mp4"

        asset = parse_probe_output("a.mp4", data)

        assert asset.rotation == 0
        assert asset.aspect_class == AspectClass.WIDESCREEN

    @pytest.mark.parametrize("stdout", ["[]", "[{\"codec_type\": \"video\"}]", "42", "null"])
    def test_non_object_json_fails_open(self, mocker, stdout):
        watchdog = FakeWatchdog()
        mocker.patch.object(watchdog, "run", mocker.AsyncMock(return_value=mocker.MagicMock(stdout=stdout)))

        asset = asyncio.run(MediaProbe(watchdog).probe("/tmp/input.mp4"))

        assert asset == VideoAsset(path="/tmp/input.mp4")
