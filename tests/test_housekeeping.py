"""
Tests for stale file cleanup.
"""

import os

from clipbooth.services.housekeeping import cleanup_stale_files

from conftest import make_old


class TestCleanupStaleFiles:
    """Tests for cleanup_stale_files."""

    def test_removes_only_old_entries(self, tmp_path):
        old_file = tmp_path / "processed-old.mp4"
        old_file.write_bytes(b"x")
        make_old(old_file, 7200)
        new_file = tmp_path / "processed-new.mp4"
        new_file.write_bytes(b"x")
        old_dir = tmp_path / "job-abandoned"
        old_dir.mkdir()
        (old_dir / "input.mp4").write_bytes(b"x")
        make_old(old_dir, 7200)

        removed = cleanup_stale_files([str(tmp_path)], max_age_seconds=3600)

        assert removed == 2
        assert not old_file.exists()
        assert not old_dir.exists()
        assert new_file.exists()

    def test_missing_directory_is_ignored(self, tmp_path):
        assert cleanup_stale_files([str(tmp_path / "nope")], max_age_seconds=0) == 0

    def test_defaults_sweep_configured_directories(self, settings):
        os.makedirs(settings.output_directory, exist_ok=True)
        stale = os.path.join(settings.temp_directory, "job-crashed-1234")
        os.makedirs(stale)
        make_old(stale, settings.stale_file_max_age_seconds + 60)
        # The output directory lives inside the temp directory and must survive
        make_old(settings.output_directory, settings.stale_file_max_age_seconds + 60)

        assert cleanup_stale_files() == 1
        assert not os.path.exists(stale)
        assert os.path.isdir(settings.output_directory)
