"""
Shared pytest fixtures for backvault tests.

This module provides fixtures for:
- Flask app and test client
- BackupSettings built from a temporary layout
- A real SQLite database to dump
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backvault import create_app
from backvault import config as config_module
from backvault.config import BackupSettings


class RecordingPublisher:
    """Publisher that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    @property
    def names(self):
        return [event.name for event in self.events]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sqlite_db(tmp_path):
    """
    Create a small SQLite database file.

    Tables: users (3 rows), empty_table (0 rows)
    """
    db_path = tmp_path / 'app.sqlite'
    conn = sqlite3.connect(db_path)
    conn.execute('CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, active BOOLEAN, avatar BLOB)')
    conn.executemany(
        'INSERT INTO users (id, name, active, avatar) VALUES (?, ?, ?, ?)',
        [(1, 'alice', 1, None), (2, "o'brien", 0, b'\x00\xff'), (3, 'carol', 1, None)]
    )
    conn.execute('CREATE TABLE empty_table (id INTEGER PRIMARY KEY)')
    conn.commit()
    conn.close()
    return db_path


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates under tmp_path/source:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - cache/cached.bin (excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    cache_dir = source / 'cache'
    cache_dir.mkdir()
    (cache_dir / 'cached.bin').write_bytes(b'cached')

    return source


@pytest.fixture
def backup_config(tmp_path, temp_files, sqlite_db):
    """
    Flask-style config mapping for a complete backup run.

    One SQLite connection, two included files, one local destination.
    """
    return {
        'BACKUP_NAME': 'test-app',
        'BACKUP_TEMP_DIR': str(tmp_path / 'work'),
        'BACKUP_TIMEOUT': 60,
        'BACKUP_ARCHIVE_FORMAT': 'zip',
        'BACKUP_CONNECTIONS': {
            'main': {'driver': 'sqlite', 'database': str(sqlite_db)},
        },
        'BACKUP_DATABASES': ['main'],
        'BACKUP_BASE_PATH': str(temp_files),
        'BACKUP_INCLUDE': [str(temp_files / 'test_file1.txt'), str(temp_files / 'nested')],
        'BACKUP_EXCLUDE': [],
        'BACKUP_ENCRYPTION_ENABLED': False,
        'BACKUP_ENCRYPTION_PASSWORD': '',
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'BACKUP_DESTINATIONS': {
            'local': {'driver': 'local', 'root': str(tmp_path / 'backups')},
        },
        'BACKUP_DESTINATION_DISKS': ['local'],
        'BACKUP_RETENTION': {'keep_all_days': 7},
    }


@pytest.fixture
def backup_settings(backup_config):
    return BackupSettings.from_mapping(backup_config)


@pytest.fixture(scope='function')
def app(tmp_path, backup_config, publisher, monkeypatch):
    """
    Create Flask app with test configuration.

    Logs, working directory and backup settings point at temporary directories.
    """
    monkeypatch.setattr(config_module.TestingConfig, 'LOG_DIR', str(tmp_path / 'logs'))
    monkeypatch.setattr(config_module.TestingConfig, 'BACKUP_TEMP_DIR', backup_config['BACKUP_TEMP_DIR'])

    app = create_app('testing', publisher=publisher)

    # Override configuration for testing
    app.config.update(backup_config)

    # Rebuild settings from the overridden config
    app.extensions.pop('backup_settings', None)

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns (ssh class mock, sftp client mock).
    """
    with patch('backvault.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh, mock_sftp


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('backvault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
