"""
Archive assembly for backup runs.

Supports two formats:
- zip: Standard zip compression (default)
- tar.gz: Gzip compressed tar

The archive holds the run's staging tree as-is:
database/<dump files>, files/<backup name>/<file tree> and manifest.json.
"""

import os
import json
import platform
import tarfile
import zipfile
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backvault import __version__
from .errors import ArchiveCreationError

MANIFEST_NAME = 'manifest.json'

# Map format to archive extension
FORMAT_EXTENSIONS = {
    'zip': 'zip',
    'tar.gz': 'tar.gz',
}


def create_archive(source_dir: str, archive_path: str, compression_format: str = 'zip') -> str:
    """
    Create a compressed archive from a staging directory.

    Entries are stored relative to ``source_dir``.

    Args:
        source_dir: Directory whose contents go into the archive
        archive_path: Full output path, extension included
        compression_format: 'zip' or 'tar.gz'

    Returns:
        Path to the created archive file

    Raises:
        ArchiveCreationError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if compression_format not in FORMAT_EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(FORMAT_EXTENSIONS.keys())}"
        )

    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveCreationError(f"Staging directory does not exist: {source_dir}", path=source_dir)

    handler = _create_zip if compression_format == 'zip' else _create_tar

    try:
        handler(source, archive_path)
        return archive_path
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise ArchiveCreationError(f"Failed to create archive: {e}", path=archive_path, format=compression_format)


def _create_zip(source: Path, archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for item in sorted(source.rglob('*')):
            if item.is_file():
                zipf.write(item, item.relative_to(source).as_posix())


def _create_tar(source: Path, archive_path: str):
    with tarfile.open(archive_path, 'w:gz') as tar:
        for item in sorted(source.iterdir()):
            tar.add(item, arcname=item.name, recursive=True)


def generate_archive_filename(backup_name: str, compression_format: str = 'zip',
                              now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {backup_name}-{YYYY-mm-dd-HH-MM-SS}.{ext}

    Args:
        backup_name: Name of the backup
        compression_format: Compression format
        now: Timestamp to embed (default: current UTC time)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now(timezone.utc)).strftime('%Y-%m-%d-%H-%M-%S')
    extension = FORMAT_EXTENSIONS.get(compression_format, 'zip')

    # Sanitize backup name (replace spaces and special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in backup_name
    )

    return f"{safe_name}-{timestamp}.{extension}"


def build_manifest(backup_name: str, dumps: List[Any], file_count: int, file_size: int,
                   created_at: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Describe an archive's contents.

    Args:
        backup_name: Name of the backup
        dumps: DumpResult instances included in the archive
        file_count: Number of collected files
        file_size: Total size of collected files in bytes
        created_at: Creation time (default: current UTC time)

    Returns:
        Manifest dict, serialised once as manifest.json
    """
    return {
        'backup_name': backup_name,
        'created_at': (created_at or datetime.now(timezone.utc)).isoformat(),
        'databases': [
            {
                'connection': dump.connection,
                'driver': dump.driver,
                'file': os.path.basename(dump.path),
                'size': dump.size,
            }
            for dump in dumps
        ],
        'files': {
            'total_count': file_count,
            'total_size': file_size,
        },
        'backvault_version': __version__,
        'python_version': platform.python_version(),
    }


def write_manifest(manifest: Dict[str, Any], directory: str) -> str:
    """
    Write manifest.json into a staging directory.

    Returns:
        Path of the written manifest

    Raises:
        ArchiveCreationError: If the manifest cannot be written
    """
    manifest_path = os.path.join(directory, MANIFEST_NAME)
    try:
        with open(manifest_path, 'w') as f:
            json.dump(manifest, f, indent=2)
    except OSError as e:
        raise ArchiveCreationError(f"Failed to write manifest: {e}", path=manifest_path)
    return manifest_path
