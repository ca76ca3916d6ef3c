"""
Error types for the backup pipeline.

Every failure raised by the pipeline is a BackupError carrying an ErrorKind
and a context dict (connection, driver, path, backend, operation, ...).
Suggested actions and recoverability are looked up by kind, so callers can
either catch a specific subclass or inspect ``error.kind``.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Kinds of backup failure."""
    UNSUPPORTED_DRIVER = 'unsupported_driver'
    CONNECTION_CONFIG = 'connection_config'
    DUMP_COMMAND = 'dump_command'
    EMPTY_DUMP = 'empty_dump'
    FILE_ACCESS = 'file_access'
    DIRECTORY_SCAN = 'directory_scan'
    ARCHIVE_CREATION = 'archive_creation'
    ENCRYPTION = 'encryption'
    DESTINATION_WRITE = 'destination_write'
    TIMEOUT = 'timeout'
    BACKUP = 'backup'


_SUGGESTED_ACTIONS = {
    ErrorKind.UNSUPPORTED_DRIVER: [
        'Use one of the supported drivers: mysql, postgres, sqlite, mssql',
        'Check the driver value of the connection in BACKUP_CONNECTIONS',
    ],
    ErrorKind.CONNECTION_CONFIG: [
        'Verify the connection name is defined in BACKUP_CONNECTIONS',
        'Check host, port, username and database settings',
    ],
    ErrorKind.DUMP_COMMAND: [
        'Verify the database server is reachable and credentials are valid',
        'Ensure pg_dump / sqlcmd is installed and on PATH',
        'Inspect the captured command output for details',
    ],
    ErrorKind.EMPTY_DUMP: [
        'Check that the database user can read every table',
        'Ensure sufficient disk space is available in the temporary directory',
    ],
    ErrorKind.FILE_ACCESS: [
        'Check file and directory permissions',
        'Enable ignore_unreadable to skip unreadable files',
    ],
    ErrorKind.DIRECTORY_SCAN: [
        'Check directory permissions on the included paths',
        'Exclude directories the backup user cannot read',
    ],
    ErrorKind.ARCHIVE_CREATION: [
        'Ensure sufficient disk space is available in the temporary directory',
        'Check that the temporary directory is writable',
    ],
    ErrorKind.ENCRYPTION: [
        'Verify BACKUP_ENCRYPTION_PASSWORD is set and correct',
        'Check the artifact was not truncated or modified',
    ],
    ErrorKind.DESTINATION_WRITE: [
        'Verify the destination backend is reachable and writable',
        'Check credentials and free space on the destination',
    ],
    ErrorKind.TIMEOUT: [
        'Increase BACKUP_TIMEOUT',
        'Check the database server load',
    ],
    ErrorKind.BACKUP: [
        'Check application logs for detailed error information',
        'Verify the backup configuration',
    ],
}

_RECOVERABLE_KINDS = {ErrorKind.FILE_ACCESS, ErrorKind.DIRECTORY_SCAN}


class BackupError(Exception):
    """Base class for all backup pipeline failures."""

    kind = ErrorKind.BACKUP

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, **context: Any):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    @property
    def suggested_actions(self) -> List[str]:
        return list(_SUGGESTED_ACTIONS[self.kind])

    @property
    def is_recoverable(self) -> bool:
        return self.kind in _RECOVERABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and notification events."""
        return {
            'error': True,
            'kind': self.kind.value,
            'message': self.message,
            'exception_class': type(self).__name__,
            'context': dict(self.context),
            'recoverable': self.is_recoverable,
            'suggested_actions': self.suggested_actions,
        }

    def __str__(self):
        if not self.context:
            return self.message
        details = ', '.join(f"{key}={value}" for key, value in sorted(self.context.items())
                            if key != 'command_output')
        return f"{self.message} ({details})" if details else self.message


class UnsupportedDriverError(BackupError):
    kind = ErrorKind.UNSUPPORTED_DRIVER


class ConnectionConfigError(BackupError):
    kind = ErrorKind.CONNECTION_CONFIG


class DumpCommandError(BackupError):
    kind = ErrorKind.DUMP_COMMAND


class BackupTimeoutError(DumpCommandError):
    """Raised when a dump subprocess exceeds its timeout."""
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, **context: Any):
        context.setdefault('timed_out', True)
        super().__init__(message, **context)


class EmptyDumpError(BackupError):
    kind = ErrorKind.EMPTY_DUMP


class FileAccessError(BackupError):
    kind = ErrorKind.FILE_ACCESS


class DirectoryScanError(BackupError):
    kind = ErrorKind.DIRECTORY_SCAN


class ArchiveCreationError(BackupError):
    kind = ErrorKind.ARCHIVE_CREATION


class EncryptionError(BackupError):
    kind = ErrorKind.ENCRYPTION


class DestinationWriteError(BackupError):
    kind = ErrorKind.DESTINATION_WRITE
