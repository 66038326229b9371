"""
Compression and archive handling for backup artifacts.

Supports two algorithms, chosen once per process by name:
- gzip: gzip compressed tar (.tgz)
- bzip2: bzip2 compressed tar (.tbz2)

Archives are always a tar container, whether they hold one SQL file or one
file per schema, so restore handles both the same way.
"""

import os
import re
import bz2
import gzip
import tarfile
from pathlib import Path
from typing import List
from datetime import datetime, timezone

from dbbackup.config import ConfigError


DEFAULT_FILENAME_PATTERN = 'db_backup_{{ .now }}.{{ .compression }}'

_NOW_TOKEN = re.compile(r'\{\{\s*\.now\s*\}\}')
_COMPRESSION_TOKEN = re.compile(r'\{\{\s*\.compression\s*\}\}')


class CompressionError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


class Compressor:
    """Wraps file objects in a compressing writer or decompressing reader."""

    name = None
    extension = None

    def compress(self, fileobj):
        raise NotImplementedError

    def uncompress(self, fileobj):
        raise NotImplementedError

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"


class GzipCompressor(Compressor):
    name = 'gzip'
    extension = 'tgz'

    def compress(self, fileobj):
        return gzip.GzipFile(fileobj=fileobj, mode='wb')

    def uncompress(self, fileobj):
        return gzip.GzipFile(fileobj=fileobj, mode='rb')


class Bzip2Compressor(Compressor):
    name = 'bzip2'
    extension = 'tbz2'

    def compress(self, fileobj):
        return bz2.BZ2File(fileobj, mode='wb')

    def uncompress(self, fileobj):
        return bz2.BZ2File(fileobj, mode='rb')


_COMPRESSORS = {
    'gzip': GzipCompressor,
    'bzip2': Bzip2Compressor
}


def get_compressor(name: str) -> Compressor:
    """
    Look up a compressor by algorithm name.

    Raises:
        ConfigError: If the name is not a supported algorithm
    """
    key = (name or '').strip().lower()
    if key not in _COMPRESSORS:
        raise ConfigError(
            f"Invalid compression: {name!r}. "
            f"Valid options: {list(_COMPRESSORS.keys())}"
        )
    return _COMPRESSORS[key]()


def create_archive(source_paths: List[str], output_path: str, compressor: Compressor) -> str:
    """
    Bundle files into a compressed tar archive.

    Each file is stored under its base name. The tar is written as a stream
    through the compressor, so nothing is buffered in memory.

    Args:
        source_paths: Files to include in archive
        output_path: Full path of the archive to create
        compressor: Compressor wrapping the output file

    Returns:
        output_path

    Raises:
        CompressionError: If archive creation fails
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    try:
        with open(output_path, 'wb') as raw:
            with compressor.compress(raw) as compressed:
                with tarfile.open(fileobj=compressed, mode='w|') as tar:
                    for source_path in source_paths:
                        source = Path(source_path)

                        if not source.is_file():
                            raise CompressionError(f"Path is not a file: {source_path}")

                        tar.add(source, arcname=source.name, recursive=False)

        return output_path

    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            os.remove(output_path)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}") from e


def extract_archive(archive_path: str, dest_dir: str, compressor: Compressor) -> List[str]:
    """
    Uncompress and unpack an archive into dest_dir.

    Returns:
        Names of the regular files in dest_dir, in sorted order

    Raises:
        CompressionError: If the archive cannot be read
    """
    try:
        with open(archive_path, 'rb') as raw:
            with compressor.uncompress(raw) as uncompressed:
                with tarfile.open(fileobj=uncompressed, mode='r|') as tar:
                    tar.extractall(dest_dir, filter='data')

    except (OSError, EOFError, tarfile.TarError) as e:
        raise CompressionError(f"Failed to extract {archive_path}: {e}") from e

    return sorted(
        entry.name for entry in os.scandir(dest_dir)
        if entry.is_file(follow_symlinks=False)
    )


def format_timestamp(now: datetime = None, safechars: bool = False) -> str:
    """
    RFC3339 timestamp in UTC, e.g. 2024-01-15T12:00:00Z.

    With safechars, ':' becomes '-'.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    timestamp = now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    if safechars:
        timestamp = timestamp.replace(':', '-')
    return timestamp


def generate_archive_filename(
    pattern: str,
    compressor: Compressor,
    safechars: bool = False,
    now: datetime = None
) -> str:
    """
    Render the archive filename pattern.

    Tokens:
        {{ .now }}          RFC3339 timestamp (sanitized when safechars is set)
        {{ .compression }}  the compressor's extension

    Returns:
        Filename (without path)
    """
    pattern = pattern or DEFAULT_FILENAME_PATTERN
    timestamp = format_timestamp(now, safechars)

    filename = _NOW_TOKEN.sub(lambda _: timestamp, pattern)
    filename = _COMPRESSION_TOKEN.sub(lambda _: compressor.extension, filename)
    return filename
