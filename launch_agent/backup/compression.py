"""
Compression handlers for backup artifacts.

Supports multiple formats:
- tar: No compression (tar only), the default
- tgz / tar.gz: Gzip compressed tar
- tbz2 / tar.bz2: Bzip2 compressed tar
- txz / tar.xz: LZMA compressed tar
- zip: Standard zip compression

The compressor always runs, even when no compression is configured, and
produces exactly one artifact named after the current time
(YYYY.MM.DD.HH.MM.SS.<ext>). With a split size configured, an artifact
larger than that size is cut into a directory of numbered parts:
<ts>/<ts>.<ext>-000, <ts>/<ts>.<ext>-001, ...
"""

import logging
import os
import tarfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import List

from launch_agent.errors import CompressionError
from launch_agent.models import ModelConfig


logger = logging.getLogger(__name__)

ARTIFACT_TIMESTAMP_FORMAT = '%Y.%m.%d.%H.%M.%S'

# format name -> (extension, tarfile mode or None for zip)
FORMATS = {
    'tar': ('tar', 'w'),
    'none': ('tar', 'w'),
    'tgz': ('tar.gz', 'w:gz'),
    'tar.gz': ('tar.gz', 'w:gz'),
    'tbz2': ('tar.bz2', 'w:bz2'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'txz': ('tar.xz', 'w:xz'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'zip': ('zip', None),
}

SPLIT_BUFFER_SIZE = 1024 * 1024


def create_archive(
    source_paths: List[str],
    output_path: str,
    compression_format: str = 'tar'
) -> str:
    """
    Create an archive from source paths.

    Args:
        source_paths: List of file/directory paths to include in archive
        output_path: Path where archive should be created (without extension)
        compression_format: One of FORMATS

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If the format is unknown or archive creation fails
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    if compression_format not in FORMATS:
        raise CompressionError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )

    extension, mode = FORMATS[compression_format]
    archive_path = f"{output_path}.{extension}"

    try:
        if mode is None:
            _create_zip(source_paths, archive_path)
        else:
            _create_tar(source_paths, archive_path, mode)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive {archive_path}")
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def _create_zip(source_paths: List[str], archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source_path in source_paths:
            source = Path(source_path)

            if source.is_file():
                zipf.write(source, source.name)
            elif source.is_dir():
                for item in source.rglob('*'):
                    if item.is_file():
                        zipf.write(item, item.relative_to(source.parent))
            else:
                raise CompressionError(f"Path does not exist: {source_path}")


def _create_tar(source_paths: List[str], archive_path: str, mode: str):
    with tarfile.open(archive_path, mode) as tar:
        for source_path in source_paths:
            source = Path(source_path)

            if not source.exists():
                raise CompressionError(f"Path does not exist: {source_path}")

            # Basename as arcname keeps the archive shallow
            tar.add(source, arcname=source.name, recursive=True)


def generate_artifact_name(now: datetime = None) -> str:
    """Timestamp name whose string order equals chronological order."""
    return (now or datetime.now()).strftime(ARTIFACT_TIMESTAMP_FORMAT)


def split_archive(archive_path: str, part_size: int) -> str:
    """
    Cut an archive into numbered parts inside a directory.

    The directory is named after the archive without its extension, each
    part keeps the full archive name plus a -NNN suffix. The original file
    is removed.

    Returns:
        Path to the parts directory

    Raises:
        CompressionError: If splitting fails
    """
    if part_size <= 0:
        raise CompressionError(f"Invalid split size: {part_size}")

    archive = Path(archive_path)
    name = archive.name
    parts_dir = archive.parent / strip_archive_extension(name)

    try:
        parts_dir.mkdir(parents=True, exist_ok=True)
        index = 0
        with open(archive, 'rb') as source:
            while True:
                written = 0
                part_path = parts_dir / f"{name}-{index:03d}"
                with open(part_path, 'wb') as part:
                    while written < part_size:
                        chunk = source.read(min(SPLIT_BUFFER_SIZE, part_size - written))
                        if not chunk:
                            break
                        part.write(chunk)
                        written += len(chunk)
                if written == 0:
                    part_path.unlink()
                    break
                index += 1
                if written < part_size:
                    break
        archive.unlink()
    except OSError as e:
        raise CompressionError(f"Failed to split archive {archive_path}: {e}")

    logger.info(f"Split {name} into {index} parts")
    return str(parts_dir)


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    for extension in sorted({ext for ext, _ in FORMATS.values()}, key=len, reverse=True):
        if filename.endswith('.' + extension):
            return filename[:-(len(extension) + 1)]
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Size of an artifact in bytes; a split artifact sums its parts.

    Raises:
        CompressionError: If the artifact doesn't exist or cannot be accessed
    """
    try:
        if os.path.isdir(archive_path):
            return sum(
                entry.stat().st_size for entry in os.scandir(archive_path) if entry.is_file()
            )
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except Exception as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def run(model: ModelConfig) -> str:
    """
    Compress the model's dump directory into one artifact.

    Returns:
        Path to the artifact file, or to the parts directory when split

    Raises:
        CompressionError: If compression fails
    """
    compress_with = model.compress_with
    logger.info(f"=> Compress | {compress_with.type}")

    output_path = os.path.join(model.temp_path, generate_artifact_name())
    archive_path = create_archive([model.dump_path], output_path, compress_with.type)

    if compress_with.split > 0 and os.path.getsize(archive_path) > compress_with.split:
        archive_path = split_archive(archive_path, compress_with.split)

    logger.info(f"->> {archive_path}")
    return archive_path
