"""
Housekeeping - removes leftovers from crashed or abandoned jobs.

Normal runs clean up after themselves; this catches work directories and
outputs left behind when the process was killed mid-job.
"""

import logging
import os
import shutil
import time
from typing import Iterable, Optional

from clipbooth.config import get_settings

logger = logging.getLogger(__name__)


def cleanup_stale_files(
    directories: Optional[Iterable[str]] = None,
    max_age_seconds: Optional[float] = None,
) -> int:
    """
    Remove entries older than `max_age_seconds` from each directory.

    Args:
        directories: Directories to sweep (default: temp and output directories)
        max_age_seconds: Age cutoff based on modification time

    Returns:
        Number of top-level entries removed
    """
    settings = get_settings()
    if directories is None:
        directories = [settings.temp_directory, settings.output_directory]
    if max_age_seconds is None:
        max_age_seconds = settings.stale_file_max_age_seconds

    cutoff = time.time() - max_age_seconds
    removed = 0

    for directory in directories:
        if not os.path.isdir(directory):
            continue
        for entry in os.scandir(directory):
            try:
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
                if entry.is_dir(follow_symlinks=False):
                    # The output directory can live inside the temp directory
                    if os.path.abspath(entry.path) in _protected(settings):
                        continue
                    shutil.rmtree(entry.path)
                else:
                    os.remove(entry.path)
            except FileNotFoundError:
                # Removed concurrently by its own job
                continue
            except OSError as e:
                logger.warning(f"Failed to remove stale entry {entry.path}: {e}")
                continue
            removed += 1
            logger.debug(f"Removed stale entry: {entry.path}")

    if removed:
        logger.info(f"Cleaned up {removed} stale file(s)")
    return removed


def _protected(settings) -> set[str]:
    return {
        os.path.abspath(settings.temp_directory),
        os.path.abspath(settings.output_directory),
    }
