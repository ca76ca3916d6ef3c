"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Store in an AWS S3 (or compatible) bucket
- SFTPStorage: Store on a remote host over SSH/SFTP

Every backend exposes the same operations on paths relative to its root:
exists, all_files, size, last_modified, write_stream, delete and
path.
"""

import os
import stat
import shutil
import posixpath
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, List, Optional

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class StorageBackend:
    """Base class for artifact storage backends."""

    name = 'storage'

    def exists(self, path: str = '') -> bool:
        raise NotImplementedError

    def all_files(self) -> List[str]:
        raise NotImplementedError

    def size(self, path: str) -> int:
        raise NotImplementedError

    def last_modified(self, path: str) -> datetime:
        raise NotImplementedError

    def write_stream(self, path: str, stream: BinaryIO):
        raise NotImplementedError

    def delete(self, path: str):
        raise NotImplementedError

    def path(self, path: str) -> str:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """
    Backend storing artifacts in a local directory.
    """

    def __init__(self, root: str, name: str = 'local'):
        """
        Initialize local storage handler.

        Args:
            root: Base directory for stored artifacts
            name: Backend name used in logs and results
        """
        self.name = name
        self.root = Path(root)

        # Create base directory if it doesn't exist
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _resolve(self, path: str) -> Path:
        return self.root / path if path else self.root

    def exists(self, path: str = '') -> bool:
        return self._resolve(path).exists()

    def all_files(self) -> List[str]:
        """
        List every file below the root.

        Returns:
            Sorted list of POSIX paths relative to the root

        Raises:
            StorageError: If listing fails
        """
        if not self.root.exists():
            raise StorageError(f"Local storage root does not exist: {self.root}")

        try:
            return sorted(
                file_path.relative_to(self.root).as_posix()
                for file_path in self.root.rglob('*')
                if file_path.is_file()
            )
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def size(self, path: str) -> int:
        try:
            return self._resolve(path).stat().st_size
        except OSError as e:
            raise StorageError(f"Failed to stat {path}: {e}")

    def last_modified(self, path: str) -> datetime:
        try:
            mtime = self._resolve(path).stat().st_mtime
        except OSError as e:
            raise StorageError(f"Failed to stat {path}: {e}")
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def write_stream(self, path: str, stream: BinaryIO):
        """
        Copy a stream into local storage.

        Args:
            path: Destination path relative to the root
            stream: Readable binary stream

        Raises:
            StorageError: If the write fails
        """
        dest_path = self._resolve(path)

        try:
            # Create directory structure
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(dest_path, 'wb') as f:
                shutil.copyfileobj(stream, f)

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, path: str):
        """
        Delete a file from local storage.

        Args:
            path: Relative path of file to delete

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._resolve(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def path(self, path: str) -> str:
        return str(self._resolve(path))


class S3Storage(StorageBackend):
    """
    Backend storing artifacts in an S3 bucket under an optional key prefix.
    """

    # Streams larger than one chunk go through multipart upload
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        prefix: str = '',
        endpoint_url: Optional[str] = None,
        name: str = 's3'
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (None uses the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            prefix: Key prefix prepended to every artifact path
            endpoint_url: Custom endpoint for S3-compatible services
            name: Backend name used in logs and results
        """
        self.name = name
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/') + '/' if prefix.strip('/') else ''

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, path: str) -> str:
        return f"{self.prefix}{path.lstrip('/')}"

    def _head(self, path: str) -> Dict[str, Any]:
        try:
            return self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(path))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def exists(self, path: str = '') -> bool:
        try:
            if path:
                self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(path))
            else:
                self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NoSuchBucket', 'NotFound'):
                return False
            raise StorageError(f"S3 existence check failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 existence check failed: {e}")

    def all_files(self) -> List[str]:
        """
        List objects below the prefix.

        Returns:
            List of paths relative to the prefix

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    files.append(obj['Key'][len(self.prefix):])

            return files

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def size(self, path: str) -> int:
        return int(self._head(path)['ContentLength'])

    def last_modified(self, path: str) -> datetime:
        return self._head(path)['LastModified']

    def write_stream(self, path: str, stream: BinaryIO):
        """
        Upload a stream to S3.

        Args:
            path: Destination path relative to the prefix
            stream: Readable binary stream

        Raises:
            StorageError: If upload fails
        """
        key = self._key(path)

        try:
            first_chunk = stream.read(self.CHUNK_SIZE)

            if len(first_chunk) < self.CHUNK_SIZE:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=first_chunk)
            else:
                self._multipart_upload(key, first_chunk, stream)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _multipart_upload(self, key: str, first_chunk: bytes, stream: BinaryIO):
        """
        Upload a large stream in CHUNK_SIZE parts.

        Args:
            key: S3 object key
            first_chunk: Data already read from the stream
            stream: Remaining stream
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1
            data = first_chunk

            while data:
                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1
                data = stream.read(self.CHUNK_SIZE)

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except (ClientError, BotoCoreError, OSError):
            # Abort multipart upload on error
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def delete(self, path: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(path))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def path(self, path: str) -> str:
        return f"s3://{self.bucket_name}/{self._key(path)}"


class SFTPStorage(StorageBackend):
    """
    Backend storing artifacts on a remote host via SSH/SFTP.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        port: int = 22,
        root: str = '/',
        name: str = 'sftp'
    ):
        """
        Initialize SFTP storage handler.

        Args:
            host: SSH hostname or IP
            username: SSH username
            password: SSH password (optional if using key)
            private_key: Path to private key file (optional)
            port: SSH port (default 22)
            root: Remote base directory
            name: Backend name used in logs and results
        """
        self.name = name
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.root = root.rstrip('/') or '/'

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish the SSH connection on first use.

        Raises:
            StorageError: If connection fails
        """
        if self.sftp_client is not None:
            return self.sftp_client

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise StorageError("Either password or private_key must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

        return self.sftp_client

    def _remote(self, path: str) -> str:
        return posixpath.join(self.root, path) if path else self.root

    def _stat(self, path: str):
        sftp = self._connect()
        try:
            return sftp.stat(self._remote(path))
        except IOError as e:
            raise StorageError(f"Failed to stat remote file {path}: {e}")

    def exists(self, path: str = '') -> bool:
        sftp = self._connect()
        try:
            sftp.stat(self._remote(path))
            return True
        except IOError:
            return False

    def all_files(self) -> List[str]:
        """
        List every file below the remote root.

        Raises:
            StorageError: If listing fails
        """
        sftp = self._connect()
        files = []
        pending = ['']

        try:
            while pending:
                relative_dir = pending.pop()
                for item in sftp.listdir_attr(self._remote(relative_dir)):
                    relative = posixpath.join(relative_dir, item.filename) if relative_dir else item.filename
                    if stat.S_ISDIR(item.st_mode):
                        pending.append(relative)
                    else:
                        files.append(relative)
        except IOError as e:
            raise StorageError(f"Failed to list remote directory: {e}")

        return sorted(files)

    def size(self, path: str) -> int:
        return self._stat(path).st_size

    def last_modified(self, path: str) -> datetime:
        return datetime.fromtimestamp(self._stat(path).st_mtime, tz=timezone.utc)

    def _ensure_remote_dir(self, remote_dir: str):
        sftp = self._connect()
        current = ''
        for part in remote_dir.split('/'):
            if not part:
                current = current or '/'
                continue
            current = posixpath.join(current, part) if current else part
            try:
                sftp.stat(current)
            except IOError:
                sftp.mkdir(current)

    def write_stream(self, path: str, stream: BinaryIO):
        """
        Upload a stream to the remote host.

        Raises:
            StorageError: If upload fails
        """
        sftp = self._connect()
        remote_path = self._remote(path)

        try:
            self._ensure_remote_dir(posixpath.dirname(remote_path))
            sftp.putfo(stream, remote_path)
        except PermissionError:
            raise StorageError(f"Permission denied writing remote file: {remote_path}")
        except IOError as e:
            raise StorageError(f"Failed to upload {remote_path}: {e}")

    def delete(self, path: str):
        sftp = self._connect()
        try:
            sftp.remove(self._remote(path))
        except IOError as e:
            raise StorageError(f"Failed to delete remote file {path}: {e}")

    def path(self, path: str) -> str:
        return f"sftp://{self.host}{self._remote(path)}"

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


def create_storage(name: str, options: Dict[str, Any]) -> StorageBackend:
    """
    Factory function to create a storage backend from its options.

    Args:
        name: Backend name (key in BACKUP_DESTINATIONS)
        options: Backend options; 'driver' is 'local', 's3' or 'sftp'

    Returns:
        StorageBackend instance

    Raises:
        ValueError: If driver is invalid
    """
    driver = options.get('driver', 'local')

    if driver == 'local':
        return LocalStorage(options.get('root') or options.get('path'), name=name)
    elif driver == 's3':
        return S3Storage(
            bucket_name=options['bucket'],
            access_key=options.get('access_key'),
            secret_key=options.get('secret_key'),
            region=options.get('region', 'us-east-1'),
            prefix=options.get('prefix', ''),
            endpoint_url=options.get('endpoint_url'),
            name=name
        )
    elif driver == 'sftp':
        return SFTPStorage(
            host=options['host'],
            username=options['username'],
            password=options.get('password'),
            private_key=options.get('private_key'),
            port=int(options.get('port', 22)),
            root=options.get('root', '/'),
            name=name
        )
    else:
        raise ValueError(f"Invalid storage driver: {driver}")


def create_backends(destinations: Dict[str, Dict[str, Any]], disk_names) -> List[StorageBackend]:
    """
    Build the backends for the named destination disks, in order.

    Args:
        destinations: Backend options by disk name
        disk_names: Disk names to build

    Returns:
        List of StorageBackend instances

    Raises:
        ValueError: If a disk is not configured or its driver is invalid
        StorageError: If a backend cannot be initialized
    """
    backends = []
    for name in disk_names:
        options = destinations.get(name)
        if options is None:
            raise ValueError(f"Destination '{name}' is not configured")
        backends.append(create_storage(name, options))
    return backends
