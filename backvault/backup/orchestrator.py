"""
Backup orchestrator - sequences one complete backup run.

Workflow:
1. Create a unique working directory for the run
2. Dump each configured database connection
3. Collect files and copy them into the working tree
4. Create a compressed archive with a manifest
5. Encrypt the archive (if enabled)
6. Stream the archive to every configured destination
7. Cleanup the working directory (always)
"""

import os
import glob
import shutil
import logging
import tempfile
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backvault.notifications import BackupFailed, BackupSucceeded, safe_publish
from backvault.utils.crypto import encrypt_file
from .collector import FileCollector
from .compression import build_manifest, create_archive, generate_archive_filename, write_manifest
from .dumpers import DatabaseDumper, DumpResult
from .errors import BackupError, DestinationWriteError, EncryptionError, FileAccessError
from .storage import StorageError, create_backends

logger = logging.getLogger(__name__)

# Leftovers of interrupted runs in the working root
STRAY_DUMP_PATTERNS = ('*.sql', '*.sqlite', '*.bak')


class RunState(Enum):
    INITIALIZING = 'initializing'
    DUMPING_DATABASES = 'dumping_databases'
    COLLECTING_FILES = 'collecting_files'
    ARCHIVING = 'archiving'
    ENCRYPTING = 'encrypting'
    DISTRIBUTING = 'distributing'
    CLEANING_UP = 'cleaning_up'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupRunResult:
    filename: str
    size: int
    destinations: List[str]
    state: RunState = RunState.DONE
    databases: List[DumpResult] = field(default_factory=list)
    file_count: int = 0
    warnings: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filename': self.filename,
            'size': self.size,
            'destinations': list(self.destinations),
            'state': self.state.value,
            'databases': [dump.connection for dump in self.databases],
            'file_count': self.file_count,
            'warnings': list(self.warnings),
            'logs': list(self.logs),
        }


class BackupOrchestrator:
    """
    Runs the complete backup workflow for one BackupSettings value.
    """

    def __init__(self, settings, backends: Optional[List] = None, publisher=None,
                 dumper: Optional[DatabaseDumper] = None, collector: Optional[FileCollector] = None):
        """
        Initialize backup orchestrator.

        Args:
            settings: BackupSettings instance
            backends: Storage backends to distribute to (default: built from settings)
            publisher: EventPublisher for success/failure events
            dumper: DatabaseDumper (default: built from settings)
            collector: FileCollector (default: built from settings)
        """
        self.settings = settings
        self.publisher = publisher
        self.dumper = dumper or DatabaseDumper(settings.connections, settings.timeout)
        self.collector = collector or self._default_collector()
        self._backends = backends

        self.state = RunState.INITIALIZING
        self.run_dir = None
        self.logs = []
        self.warnings = []

    def _default_collector(self) -> FileCollector:
        files = self.settings.files

        # Never back up the working root or local destinations into themselves
        excludes = list(files.exclude) + [self.settings.temp_directory]
        for options in self.settings.destinations.values():
            if options.get('driver', 'local') == 'local' and options.get('root'):
                excludes.append(options['root'])

        return FileCollector(
            files.include,
            excludes,
            base_path=files.base_path,
            follow_links=files.follow_links,
            ignore_unreadable=files.ignore_unreadable
        )

    @property
    def backends(self) -> List:
        """
        Destination backends, in distribution order.

        Raises:
            DestinationWriteError: If a destination disk is not configured
        """
        if self._backends is None:
            try:
                self._backends = create_backends(self.settings.destinations, self.settings.destination_disks)
            except (StorageError, ValueError, KeyError) as e:
                raise DestinationWriteError(f"Failed to initialize destinations: {e}")
        return self._backends

    def run(self, only_db: bool = False, only_files: bool = False) -> BackupRunResult:
        """
        Execute one backup run.

        Args:
            only_db: Skip file collection
            only_files: Skip database dumps

        Returns:
            BackupRunResult

        Raises:
            ValueError: If both only_db and only_files are set
            BackupError: If any run-fatal step fails
        """
        if only_db and only_files:
            raise ValueError("only_db and only_files cannot both be set")

        self.logs = []
        self.warnings = []
        self.run_dir = None
        self._log(f"Starting backup: {self.settings.name}")

        try:
            result = self._execute_workflow(only_db, only_files)

        except Exception as e:
            self.state = RunState.FAILED
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            context = e.to_dict() if isinstance(e, BackupError) else {'exception_class': type(e).__name__}
            safe_publish(self.publisher, BackupFailed(error=str(e), context=context))
            raise

        finally:
            self._cleanup()

        self.state = RunState.DONE
        result.state = self.state
        self._log(f"Backup completed successfully: {result.filename}")
        safe_publish(self.publisher, BackupSucceeded(
            filename=result.filename,
            size=result.size,
            destinations=list(result.destinations)
        ))
        return result

    def _execute_workflow(self, only_db: bool, only_files: bool) -> BackupRunResult:
        self.state = RunState.INITIALIZING
        content_dir = self._prepare_working_dir()
        database_dir = os.path.join(content_dir, 'database')
        files_dir = os.path.join(content_dir, 'files', self.settings.name)

        dumps = []
        if not only_files:
            self.state = RunState.DUMPING_DATABASES
            os.makedirs(database_dir, exist_ok=True)
            for connection_name in self.settings.databases:
                self._log(f"Dumping database: {connection_name}")
                dump = self.dumper.dump(connection_name, database_dir)
                dumps.append(dump)
                self._log(f"Dumped {connection_name} ({dump.size} bytes)")

        file_count, file_size = 0, 0
        if not only_db:
            self.state = RunState.COLLECTING_FILES
            file_count, file_size = self._copy_files(files_dir)
            self._log(f"Collected {file_count} files ({file_size} bytes)")

        self.state = RunState.ARCHIVING
        filename = generate_archive_filename(self.settings.name, self.settings.archive_format)
        write_manifest(build_manifest(self.settings.name, dumps, file_count, file_size), content_dir)
        archive_path = create_archive(
            content_dir,
            os.path.join(self.run_dir, filename),
            self.settings.archive_format
        )
        self._log(f"Archive created: {filename} ({os.path.getsize(archive_path)} bytes)")

        if self.settings.encryption.enabled:
            self.state = RunState.ENCRYPTING
            archive_path = self._encrypt(archive_path)
            filename = os.path.basename(archive_path)

        self.state = RunState.DISTRIBUTING
        destinations = self._distribute(archive_path, filename)

        return BackupRunResult(
            filename=filename,
            size=os.path.getsize(archive_path),
            destinations=destinations,
            databases=dumps,
            file_count=file_count,
            warnings=self.warnings,
            logs=self.logs
        )

    def _prepare_working_dir(self) -> str:
        """
        Create the run's private directory under the working root.

        Returns:
            Path of the staging directory that becomes the archive content

        Raises:
            FileAccessError: If the working root is not writable
        """
        root = self.settings.temp_directory
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as e:
            raise FileAccessError(f"Cannot create working directory: {e}", path=root)

        if not os.access(root, os.W_OK):
            raise FileAccessError(f"Working directory is not writable: {root}", path=root)

        self.run_dir = tempfile.mkdtemp(prefix='backup-', dir=root)
        content_dir = os.path.join(self.run_dir, 'content')
        os.makedirs(content_dir)
        self._log(f"Working directory: {self.run_dir}")
        return content_dir

    def _copy_files(self, files_dir: str):
        file_count = 0
        file_size = 0

        for entry in self.collector.iter_entries():
            dest_path = os.path.join(files_dir, entry.relative_path)
            try:
                os.makedirs(os.path.dirname(dest_path), exist_ok=True)
                shutil.copy2(entry.absolute_path, dest_path)
            except OSError as e:
                self._warn(f"Failed to copy {entry.absolute_path}: {e}")
                continue
            file_count += 1
            file_size += entry.size

        for path in self.collector.missing_includes():
            self._warn(f"Include path not found: {path}")
        if self.collector.skipped_count:
            self._warn(f"Skipped {self.collector.skipped_count} unreadable entries")

        return file_count, file_size

    def _encrypt(self, archive_path: str) -> str:
        encrypted_path = f"{archive_path}.enc"
        encrypt_file(archive_path, encrypted_path, self.settings.encryption.password)

        if not os.path.exists(encrypted_path) or os.path.getsize(encrypted_path) == 0:
            raise EncryptionError("Encrypted archive was not written", path=encrypted_path)

        os.remove(archive_path)
        self._log(f"Archive encrypted: {os.path.basename(encrypted_path)}")
        return encrypted_path

    def _distribute(self, archive_path: str, filename: str) -> List[str]:
        """
        Stream the archive to every destination, stopping at the first failure.

        Returns:
            Locations of the stored artifact

        Raises:
            DestinationWriteError: If any destination write fails
        """
        target = f"{self.settings.filename_prefix}{filename}"
        locations = []

        for backend in self.backends:
            self._log(f"Copying {filename} to {backend.name}")
            try:
                with open(archive_path, 'rb') as stream:
                    backend.write_stream(target, stream)
            except (StorageError, OSError) as e:
                raise DestinationWriteError(
                    f"Failed to copy backup to {backend.name}: {e}",
                    backend=backend.name,
                    path=target
                )
            locations.append(backend.path(target))
            self._log(f"Stored on {backend.name}: {target}")

        return locations

    def _cleanup(self):
        """Remove the run directory and stray dump files in the working root."""
        previous_state = self.state
        self.state = RunState.CLEANING_UP

        if self.run_dir and os.path.exists(self.run_dir):
            try:
                shutil.rmtree(self.run_dir)
                self._log("Cleaned up working directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup working directory: {e}", level=logging.WARNING)

        root = self.settings.temp_directory
        for pattern in STRAY_DUMP_PATTERNS:
            for path in glob.glob(os.path.join(root, pattern)):
                try:
                    os.remove(path)
                    self._log(f"Removed stray dump file: {os.path.basename(path)}")
                except OSError as e:
                    self._log(f"Warning: Failed to remove {path}: {e}", level=logging.WARNING)

        self.state = previous_state

    def _warn(self, message: str):
        self.warnings.append(message)
        self._log(f"Warning: {message}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(settings, publisher=None, only_db: bool = False, only_files: bool = False) -> BackupRunResult:
    """
    Execute one backup run with the configured destinations.

    Args:
        settings: BackupSettings instance
        publisher: EventPublisher for success/failure events
        only_db: Skip file collection
        only_files: Skip database dumps

    Returns:
        BackupRunResult
    """
    orchestrator = BackupOrchestrator(settings, publisher=publisher)
    return orchestrator.run(only_db=only_db, only_files=only_files)
