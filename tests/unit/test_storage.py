"""
Unit tests for storage backends (backvault/backup/storage.py).

Tests LocalStorage, S3Storage and SFTPStorage through the common
backend interface.
"""

import io
import stat
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import paramiko
from botocore.exceptions import ClientError

from backvault.backup.storage import (
    LocalStorage,
    S3Storage,
    SFTPStorage,
    StorageError,
    create_backends,
    create_storage,
)


class TestLocalStorage:
    """Test LocalStorage for local filesystem operations."""

    def test_creates_root(self, tmp_path):
        root = tmp_path / 'a' / 'b'

        storage = LocalStorage(str(root))

        assert root.is_dir()
        assert storage.exists()

    def test_write_and_read_back(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        storage.write_stream('app-2024.zip', io.BytesIO(b'backup data' * 100))

        assert storage.exists('app-2024.zip')
        assert storage.size('app-2024.zip') == 1100
        assert (tmp_path / 'backups' / 'app-2024.zip').read_bytes() == b'backup data' * 100

    def test_write_creates_nested_directories(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'backups'))

        storage.write_stream('2024/06/app.zip', io.BytesIO(b'x'))

        assert storage.all_files() == ['2024/06/app.zip']

    def test_all_files_sorted_relative(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        for name in ('b.zip', 'a.zip', 'sub/c.zip'):
            storage.write_stream(name, io.BytesIO(b'x'))

        assert storage.all_files() == ['a.zip', 'b.zip', 'sub/c.zip']

    def test_last_modified_is_utc(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.write_stream('a.zip', io.BytesIO(b'x'))

        modified = storage.last_modified('a.zip')

        assert modified.tzinfo == timezone.utc
        assert abs((datetime.now(timezone.utc) - modified).total_seconds()) < 60

    def test_size_of_missing_file(self, tmp_path):
        with pytest.raises(StorageError):
            LocalStorage(str(tmp_path)).size('missing.zip')

    def test_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.write_stream('a.zip', io.BytesIO(b'x'))

        storage.delete('a.zip')
        # Deleting a missing file is not an error
        storage.delete('a.zip')

        assert not storage.exists('a.zip')

    def test_path(self, tmp_path):
        assert LocalStorage(str(tmp_path)).path('a.zip') == str(tmp_path / 'a.zip')


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def _storage(self, **kwargs):
        return S3Storage(
            bucket_name='test-bucket',
            access_key='test_access_key',
            secret_key='test_secret_key',
            region='us-east-1',
            **kwargs
        )

    def test_write_small_object(self, mock_s3):
        storage = self._storage()

        storage.write_stream('app.zip', io.BytesIO(b'test data' * 100))

        obj = mock_s3.Object('test-bucket', 'app.zip')
        assert obj.content_length == 900
        assert storage.size('app.zip') == 900
        assert storage.exists('app.zip')

    def test_prefix_applied_and_stripped(self, mock_s3):
        mock_s3.Bucket('test-bucket').put_object(Key='other/outside.zip', Body=b'x')
        storage = self._storage(prefix='/backups/')

        storage.write_stream('app.zip', io.BytesIO(b'data'))

        mock_s3.Object('test-bucket', 'backups/app.zip').load()
        assert storage.all_files() == ['app.zip']
        assert storage.path('app.zip') == 's3://test-bucket/backups/app.zip'

    def test_multipart_upload(self, mock_s3):
        storage = self._storage()
        storage.CHUNK_SIZE = 5 * 1024 * 1024
        payload = b'a' * (11 * 1024 * 1024)

        storage.write_stream('big.zip', io.BytesIO(payload))

        assert mock_s3.Object('test-bucket', 'big.zip').content_length == len(payload)

    def test_multipart_failure_aborts_upload(self, mock_s3):
        storage = self._storage()
        storage.CHUNK_SIZE = 4
        error = ClientError({'Error': {'Code': 'InternalError', 'Message': 'boom'}}, 'UploadPart')

        with patch.object(storage.s3_client, 'upload_part', side_effect=error), \
                patch.object(storage.s3_client, 'abort_multipart_upload') as mock_abort:
            with pytest.raises(StorageError):
                storage.write_stream('big.zip', io.BytesIO(b'0123456789'))

        mock_abort.assert_called_once()

    def test_last_modified_is_aware(self, mock_s3):
        storage = self._storage()
        storage.write_stream('app.zip', io.BytesIO(b'x'))

        assert storage.last_modified('app.zip').tzinfo is not None

    def test_delete(self, mock_s3):
        storage = self._storage()
        storage.write_stream('app.zip', io.BytesIO(b'x'))

        storage.delete('app.zip')

        assert storage.all_files() == []
        assert not storage.exists('app.zip')

    def test_bucket_existence(self, mock_s3):
        assert self._storage().exists() is True
        assert S3Storage('missing-bucket', 'k', 's').exists() is False

    def test_head_of_missing_object(self, mock_s3):
        with pytest.raises(StorageError):
            self._storage().size('missing.zip')

    def test_listing_missing_bucket(self, mock_s3):
        with pytest.raises(StorageError):
            S3Storage('missing-bucket', 'k', 's').all_files()


class TestSFTPStorage:
    """Test SFTPStorage with a mocked SSH client."""

    def _storage(self, **kwargs):
        options = {'host': 'backup.example.com', 'username': 'backup', 'password': 'pw', 'root': '/backups'}
        options.update(kwargs)
        return SFTPStorage(**options)

    def test_connects_lazily_with_password(self, mock_ssh_client):
        mock_ssh, mock_sftp = mock_ssh_client
        storage = self._storage()

        mock_ssh.assert_not_called()
        storage.exists('a.zip')

        mock_ssh.return_value.connect.assert_called_once_with(
            hostname='backup.example.com', port=22, username='backup', timeout=30, password='pw'
        )
        mock_sftp.stat.assert_called_with('/backups/a.zip')

    def test_requires_credentials(self, mock_ssh_client):
        storage = self._storage(password=None)

        with pytest.raises(StorageError):
            storage.all_files()

    def test_missing_private_key(self, mock_ssh_client, tmp_path):
        storage = self._storage(password=None, private_key=str(tmp_path / 'id_rsa'))

        with pytest.raises(StorageError):
            storage.exists()

    def test_authentication_failure(self, mock_ssh_client):
        mock_ssh, _ = mock_ssh_client
        mock_ssh.return_value.connect.side_effect = paramiko.AuthenticationException('denied')

        with pytest.raises(StorageError) as exc_info:
            self._storage().exists()

        assert 'authentication' in str(exc_info.value)

    def test_all_files_walks_directories(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        listings = {
            '/backups': [
                MagicMock(filename='nested', st_mode=stat.S_IFDIR | 0o755),
                MagicMock(filename='a.zip', st_mode=stat.S_IFREG | 0o644),
            ],
            '/backups/nested': [
                MagicMock(filename='b.zip', st_mode=stat.S_IFREG | 0o644),
            ],
        }
        mock_sftp.listdir_attr.side_effect = lambda path: listings[path]

        assert self._storage().all_files() == ['a.zip', 'nested/b.zip']

    def test_write_stream(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        stream = io.BytesIO(b'data')

        self._storage().write_stream('a.zip', stream)

        mock_sftp.putfo.assert_called_once_with(stream, '/backups/a.zip')

    def test_write_creates_missing_directory(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        mock_sftp.stat.side_effect = IOError('missing')

        self._storage().write_stream('2024/a.zip', io.BytesIO(b'data'))

        mock_sftp.mkdir.assert_any_call('/backups')
        mock_sftp.mkdir.assert_any_call('/backups/2024')

    def test_stat_helpers(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        mock_sftp.stat.return_value = MagicMock(st_size=42, st_mtime=0)
        storage = self._storage()

        assert storage.size('a.zip') == 42
        assert storage.last_modified('a.zip') == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_exists_false_on_io_error(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        mock_sftp.stat.side_effect = IOError('No such file')

        assert self._storage().exists('a.zip') is False

    def test_delete_failure(self, mock_ssh_client):
        _, mock_sftp = mock_ssh_client
        mock_sftp.remove.side_effect = IOError('denied')

        with pytest.raises(StorageError):
            self._storage().delete('a.zip')

    def test_path_and_close(self, mock_ssh_client):
        mock_ssh, mock_sftp = mock_ssh_client
        storage = self._storage()
        storage.exists()

        assert storage.path('a.zip') == 'sftp://backup.example.com/backups/a.zip'

        storage.close()
        mock_sftp.close.assert_called_once()
        mock_ssh.return_value.close.assert_called_once()


class TestFactories:
    """Test create_storage() and create_backends()."""

    def test_local(self, tmp_path):
        storage = create_storage('disk', {'driver': 'local', 'root': str(tmp_path)})

        assert isinstance(storage, LocalStorage)
        assert storage.name == 'disk'

    def test_s3(self, mock_s3):
        storage = create_storage('offsite', {'driver': 's3', 'bucket': 'test-bucket', 'prefix': 'nightly'})

        assert isinstance(storage, S3Storage)
        assert storage.prefix == 'nightly/'

    def test_sftp(self):
        storage = create_storage('remote', {'driver': 'sftp', 'host': 'h', 'username': 'u', 'port': '2222'})

        assert isinstance(storage, SFTPStorage)
        assert storage.port == 2222

    def test_invalid_driver(self):
        with pytest.raises(ValueError):
            create_storage('x', {'driver': 'ftp'})

    def test_create_backends_in_order(self, tmp_path):
        destinations = {
            'one': {'driver': 'local', 'root': str(tmp_path / 'one')},
            'two': {'driver': 'local', 'root': str(tmp_path / 'two')},
        }

        backends = create_backends(destinations, ['two', 'one'])

        assert [b.name for b in backends] == ['two', 'one']

    def test_create_backends_unknown_disk(self, tmp_path):
        with pytest.raises(ValueError):
            create_backends({}, ['missing'])
