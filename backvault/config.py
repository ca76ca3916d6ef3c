import os
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from backvault.backup.retention import RetentionPolicy


def _env_json(name: str, default):
    """Read a JSON-encoded structure from the environment."""
    raw = os.environ.get(name)
    if not raw:
        return default
    return json.loads(raw)


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


def _env_list(name: str) -> list:
    raw = os.environ.get(name, '')
    return [item.strip() for item in raw.split(',') if item.strip()]


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'backvault-dev-key'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', '')
    LOG_FILE = os.environ.get('LOG_FILE') or 'backvault.log'
    LOG_MAX_BYTES = int(os.environ.get('LOG_MAX_BYTES', 10485760))
    LOG_BACKUP_COUNT = int(os.environ.get('LOG_BACKUP_COUNT', 10))

    # Backup identity and working directory
    BACKUP_NAME = os.environ.get('BACKUP_NAME') or 'backvault'
    BACKUP_TEMP_DIR = os.environ.get('BACKUP_TEMP_DIR') or '/data/temp'
    BACKUP_TIMEOUT = int(os.environ.get('BACKUP_TIMEOUT', 3600))
    BACKUP_ARCHIVE_FORMAT = os.environ.get('BACKUP_ARCHIVE_FORMAT') or 'zip'

    # Databases: connection descriptors by name, and the names to dump
    BACKUP_CONNECTIONS = _env_json('BACKUP_CONNECTIONS', {})
    BACKUP_DATABASES = _env_list('BACKUP_DATABASES') or None

    # Files
    BACKUP_BASE_PATH = os.environ.get('BACKUP_BASE_PATH') or os.getcwd()
    BACKUP_INCLUDE = _env_list('BACKUP_INCLUDE')
    BACKUP_EXCLUDE = _env_list('BACKUP_EXCLUDE')
    BACKUP_FOLLOW_LINKS = _env_bool('BACKUP_FOLLOW_LINKS')
    BACKUP_IGNORE_UNREADABLE = _env_bool('BACKUP_IGNORE_UNREADABLE', 'true')

    # Encryption
    BACKUP_ENCRYPTION_ENABLED = _env_bool('BACKUP_ENCRYPTION_ENABLED')
    BACKUP_ENCRYPTION_PASSWORD = os.environ.get('BACKUP_ENCRYPTION_PASSWORD', '')

    # Destinations
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    BACKUP_DESTINATIONS = _env_json('BACKUP_DESTINATIONS', None)
    BACKUP_DESTINATION_DISKS = _env_list('BACKUP_DESTINATION_DISKS') or ['local']
    BACKUP_FILENAME_PREFIX = os.environ.get('BACKUP_FILENAME_PREFIX', '')

    # Retention and monitoring
    BACKUP_RETENTION = _env_json('BACKUP_RETENTION', {})
    BACKUP_MONITOR = _env_json('BACKUP_MONITOR', {})

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON') or '0 1 * * *'
    BACKUP_CLEANUP_CRON = os.environ.get('BACKUP_CLEANUP_CRON') or '0 2 * * *'
    BACKUP_MONITOR_CRON = os.environ.get('BACKUP_MONITOR_CRON') or '0 3 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    BACKUP_TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(DevelopmentConfig):
    """Test configuration: no scheduler, no background work"""
    TESTING = True
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass(frozen=True)
class ConnectionConfig:
    """Descriptor of one database connection."""
    name: str
    driver: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    database: Optional[str] = None
    url: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, name: str, options: Mapping[str, Any]) -> 'ConnectionConfig':
        port = options.get('port')
        return cls(
            name=name,
            driver=(options.get('driver') or '').lower(),
            host=options.get('host'),
            port=int(port) if port not in (None, '') else None,
            username=options.get('username'),
            password=options.get('password'),
            database=options.get('database'),
            url=options.get('url'),
        )


@dataclass(frozen=True)
class FileSourceSettings:
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    base_path: str = '/'
    follow_links: bool = False
    ignore_unreadable: bool = True


@dataclass(frozen=True)
class EncryptionSettings:
    enabled: bool = False
    password: str = field(default='', repr=False)


@dataclass(frozen=True)
class MonitorSettings:
    max_age_days: int = 1
    max_storage_mb: int = 5000


@dataclass(frozen=True)
class BackupSettings:
    """
    Immutable backup configuration.

    Built once from the Flask config and handed to each component; no
    component reads the application config on its own.
    """
    name: str
    temp_directory: str
    timeout: int = 3600
    archive_format: str = 'zip'
    connections: Mapping[str, ConnectionConfig] = field(default_factory=lambda: MappingProxyType({}))
    databases: Tuple[str, ...] = ()
    files: FileSourceSettings = field(default_factory=FileSourceSettings)
    encryption: EncryptionSettings = field(default_factory=EncryptionSettings)
    destinations: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    destination_disks: Tuple[str, ...] = ('local',)
    filename_prefix: str = ''
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a Flask-style config mapping.

        Args:
            cfg: Mapping with BACKUP_* keys (usually ``app.config``)

        Returns:
            BackupSettings instance
        """
        connections = {
            name: ConnectionConfig.from_mapping(name, options or {})
            for name, options in (cfg.get('BACKUP_CONNECTIONS') or {}).items()
        }

        databases = cfg.get('BACKUP_DATABASES')
        if databases is None:
            databases = list(connections)

        destinations = cfg.get('BACKUP_DESTINATIONS')
        if not destinations:
            destinations = {
                'local': {'driver': 'local', 'root': cfg.get('LOCAL_BACKUP_DIR', '/data/local_backups')}
            }

        monitor = cfg.get('BACKUP_MONITOR') or {}
        retention = RetentionPolicy.from_mapping(cfg.get('BACKUP_RETENTION') or {})

        return cls(
            name=cfg.get('BACKUP_NAME') or 'backvault',
            temp_directory=cfg.get('BACKUP_TEMP_DIR') or '/data/temp',
            timeout=int(cfg.get('BACKUP_TIMEOUT', 3600)),
            archive_format=cfg.get('BACKUP_ARCHIVE_FORMAT') or 'zip',
            connections=MappingProxyType(connections),
            databases=tuple(databases),
            files=FileSourceSettings(
                include=tuple(cfg.get('BACKUP_INCLUDE') or ()),
                exclude=tuple(cfg.get('BACKUP_EXCLUDE') or ()),
                base_path=cfg.get('BACKUP_BASE_PATH') or os.getcwd(),
                follow_links=bool(cfg.get('BACKUP_FOLLOW_LINKS', False)),
                ignore_unreadable=bool(cfg.get('BACKUP_IGNORE_UNREADABLE', True)),
            ),
            encryption=EncryptionSettings(
                enabled=bool(cfg.get('BACKUP_ENCRYPTION_ENABLED', False)),
                password=cfg.get('BACKUP_ENCRYPTION_PASSWORD') or '',
            ),
            destinations=MappingProxyType({name: dict(opts) for name, opts in destinations.items()}),
            destination_disks=tuple(cfg.get('BACKUP_DESTINATION_DISKS') or ('local',)),
            filename_prefix=cfg.get('BACKUP_FILENAME_PREFIX') or '',
            retention=retention,
            monitor=MonitorSettings(
                max_age_days=int(monitor.get('max_age_days', 1)),
                max_storage_mb=int(monitor.get('max_storage_mb', retention.max_storage_mb)),
            ),
        )


def get_backup_settings(app) -> BackupSettings:
    """
    Return the BackupSettings for a Flask app, building them on first use.

    Args:
        app: Flask application instance

    Returns:
        BackupSettings instance cached in ``app.extensions``
    """
    settings = app.extensions.get('backup_settings')
    if settings is None:
        settings = BackupSettings.from_mapping(app.config)
        app.extensions['backup_settings'] = settings
    return settings
