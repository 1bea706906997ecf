"""
File archive step.

Packs the configured include paths into {dump_path}/archive.tar so the
compressor picks them up together with the database dumps. Exclude patterns
are glob patterns matched against the full path or the file name.
"""

import logging
import os
import tarfile
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional

from launch_agent.errors import ArchiveError
from launch_agent.models import ModelConfig


logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = 'archive.tar'


def should_exclude(path: str, exclude_patterns: List[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    Args:
        path: Absolute path to check
        exclude_patterns: Glob patterns (e.g., *.pyc, __pycache__, /var/log/*)

    Returns:
        True if path matches any exclude pattern, False otherwise
    """
    if not exclude_patterns:
        return False

    path_name = os.path.basename(path.rstrip('/'))

    for pattern in exclude_patterns:
        if fnmatch(path, pattern) or fnmatch(path_name, pattern):
            return True
        # Directory patterns exclude everything underneath
        if path.startswith(pattern.rstrip('/') + '/'):
            return True
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


def _tar_filter(excludes: List[str]):
    def _filter(tarinfo: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        if should_exclude('/' + tarinfo.name, excludes):
            return None
        return tarinfo
    return _filter


def run(model: ModelConfig) -> Optional[str]:
    """
    Archive the model's include paths.

    Missing include paths are skipped with a warning.

    Returns:
        Path of the created tar file, or None when no archive is configured

    Raises:
        ArchiveError: If includes are empty or the tar cannot be written
    """
    if model.archive is None:
        return None

    includes = list(model.archive.includes)
    excludes = list(model.archive.excludes)
    if not includes:
        raise ArchiveError("archive.includes is empty")

    logger.info(f"=> includes {len(includes)} rules")

    archive_path = os.path.join(model.dump_path, ARCHIVE_FILENAME)
    try:
        os.makedirs(model.dump_path, exist_ok=True)
        with tarfile.open(archive_path, 'w') as tar:
            for include in includes:
                source = Path(include).expanduser().resolve()
                if not source.exists():
                    logger.warning(f"Archive include not found, skipping: {include}")
                    continue
                if should_exclude(str(source), excludes):
                    continue
                # Absolute paths are kept so restores land where they came from
                tar.add(
                    source,
                    arcname=str(source).lstrip('/'),
                    recursive=True,
                    filter=_tar_filter(excludes)
                )
    except PermissionError as e:
        raise ArchiveError(f"Permission denied while archiving: {e}")
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to archive files: {e}")

    return archive_path
