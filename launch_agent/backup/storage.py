"""
Storage handlers for backup artifacts.

Supports:
- S3Storage: Upload to S3 or any S3 compatible service
- LocalStorage: Copy into a local directory
- SFTPStorage: Upload to a remote host via SSH/SFTP

Every handler exposes the same capability set (open, upload, delete, list,
download, close) and is created per (model, storage target) pair by
create_storage(). run_storages() fans one artifact out to every target of a
model and applies the retention window of each target.

Remote layout: {path}/{artifact} for single-file artifacts and
{path}/{artifact_dir}/{part} for split artifacts.
"""

import logging
import math
import os
import posixpath
import re
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Type

import boto3
import paramiko
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from launch_agent.backup.retention import Cycler
from launch_agent.errors import StorageError
from launch_agent.models import ModelConfig, StorageConfig


logger = logging.getLogger(__name__)

# 2022.12.04.07.09.47 optionally followed by an extension
ARTIFACT_KEY_PATTERN = re.compile(r'^\d{4}\.\d{2}\.\d{2}\.\d{2}\.\d{2}\.\d{2}(\.|$)')

# S3 multipart limits
PART_SIZE = 64 * 1024 * 1024
MAX_PARTS = 10000


@dataclass
class FileItem:
    """A stored object; filename is relative to the target's path."""
    filename: str
    size: int
    last_modified: datetime


def artifact_units(items: List[FileItem]) -> List[str]:
    """
    Collapse a listing into artifact keys.

    Parts of a split artifact share their directory name, so each
    directory counts as a single artifact.
    """
    keys = set()
    for item in items:
        unit = item.filename.strip('/').split('/', 1)[0]
        if ARTIFACT_KEY_PATTERN.match(unit):
            keys.add(unit)
    return sorted(keys)


class BaseStorage:
    """
    Common state for storage handlers.

    When archive_path is a directory (split artifact), file_keys holds every
    part as '{dir}/{part}' and upload() sends all of them.
    """

    storage_type = ''

    def __init__(self, model: ModelConfig, archive_path: str, storage_config: StorageConfig):
        """
        Initialize storage handler.

        Args:
            model: Model the artifact belongs to
            archive_path: Local artifact file or split directory
            storage_config: Target configuration

        Raises:
            StorageError: If the split directory cannot be read
        """
        self.model = model
        self.archive_path = archive_path
        self.storage_config = storage_config
        self.keep = storage_config.keep
        self.file_keys: List[str] = []

        if storage_config.name:
            cycler_name = f"{model.name}_{storage_config.name}"
        else:
            cycler_name = model.name
        self.cycler = Cycler(cycler_name)

        if os.path.isdir(archive_path):
            base_name = os.path.basename(archive_path.rstrip(os.sep))
            try:
                entries = sorted(os.scandir(archive_path), key=lambda e: e.name)
            except OSError as e:
                raise StorageError(f"Failed to read artifact directory {archive_path}: {e}")
            for entry in entries:
                if not entry.is_dir():
                    self.file_keys.append(f"{base_name}/{entry.name}")

    @property
    def path(self) -> str:
        """Remote prefix for this target; defaults to the model name."""
        return str(self.storage_config.get('path', self.model.name)).strip('/')

    def upload_keys(self, file_key: str) -> List[str]:
        return self.file_keys or [file_key]

    def source_path(self, key: str) -> str:
        return os.path.join(os.path.dirname(self.archive_path.rstrip(os.sep)), key)

    def remote_key(self, key: str) -> str:
        return posixpath.join(self.path, key) if self.path else key

    def open(self):
        raise NotImplementedError

    def close(self):
        pass

    def upload(self, file_key: str):
        raise NotImplementedError

    def delete(self, file_key: str):
        raise NotImplementedError

    def list(self, parent: str = '') -> List[FileItem]:
        raise NotImplementedError

    def download(self, file_key: str) -> str:
        raise NotImplementedError

    def list_artifact_keys(self) -> List[str]:
        return artifact_units(self.list(''))


class S3Storage(BaseStorage):
    """
    Handler for S3 compatible object storage.

    Settings:
        bucket, region, path, endpoint, access_key_id, secret_access_key
        (or access_key_secret), token, max_retries (3), timeout (300),
        storage_class, force_path_style
    """

    storage_type = 's3'

    def __init__(self, model: ModelConfig, archive_path: str, storage_config: StorageConfig):
        super().__init__(model, archive_path, storage_config)
        self.bucket_name = None
        self.storage_class = None
        self.s3_client = None

    def open(self):
        """
        Create the S3 client.

        Raises:
            StorageError: If the client cannot be created
        """
        settings = self.storage_config
        self.bucket_name = settings.get('bucket')
        if not self.bucket_name:
            raise StorageError(f"Storage {settings.name}: 'bucket' is required")

        access_key = settings.get('access_key_id')
        secret_key = settings.get('secret_access_key') or settings.get('access_key_secret')
        if not access_key or not secret_key:
            logger.warning("`access_key_id` or `secret_access_key` is empty.")

        timeout = int(settings.get('timeout', 300))
        boto_config = BotoConfig(
            retries={'max_attempts': int(settings.get('max_retries', 3))},
            connect_timeout=timeout,
            read_timeout=timeout,
            s3={'addressing_style': 'path'} if settings.get('force_path_style') else None
        )
        self.storage_class = settings.get('storage_class')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                aws_session_token=settings.get('token'),
                region_name=settings.get('region'),
                endpoint_url=settings.get('endpoint'),
                config=boto_config
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, file_key: str):
        """
        Upload the artifact (or every part of a split artifact).

        Raises:
            StorageError: If any upload fails
        """
        for key in self.upload_keys(file_key):
            local_path = self.source_path(key)
            s3_key = self.remote_key(key)

            if not os.path.exists(local_path):
                raise StorageError(f"Local file not found: {local_path}")

            try:
                file_size = os.path.getsize(local_path)
                if file_size > PART_SIZE:
                    self._multipart_upload(local_path, s3_key, file_size)
                else:
                    self._simple_upload(local_path, s3_key)
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise StorageError(f"S3 upload of s3://{self.bucket_name}/{s3_key} failed ({error_code}): {e}")
            except BotoCoreError as e:
                raise StorageError(f"S3 upload of s3://{self.bucket_name}/{s3_key} failed: {e}")
            except Exception as e:
                raise StorageError(f"Failed to upload s3://{self.bucket_name}/{s3_key}: {e}")

            logger.info(f"=> s3://{self.bucket_name}/{s3_key}")

    def _extra_args(self) -> Dict[str, str]:
        # Some S3 compatible backends reject an empty StorageClass
        if self.storage_class:
            return {'StorageClass': self.storage_class}
        return {}

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                **self._extra_args()
            )

    def _multipart_upload(self, local_path: str, s3_key: str, file_size: int):
        """
        Upload a large file in parts, one part at a time.

        Part size is 64MiB, raised just enough to stay under 10000 parts.
        """
        chunk_size = PART_SIZE
        if file_size / chunk_size > MAX_PARTS:
            chunk_size = int(math.ceil(file_size / MAX_PARTS))

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            **self._extra_args()
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except Exception as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete(self, file_key: str):
        """
        Delete an artifact; a split artifact removes every part.

        Deleting a missing key is not an error.

        Raises:
            StorageError: If deletion fails
        """
        prefix = self.remote_key(file_key)
        try:
            keys = [
                obj['Key'] for obj in self._list_objects(prefix)
                if obj['Key'] == prefix or obj['Key'].startswith(prefix + '/')
            ]
            for key in keys or [prefix]:
                self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def _list_objects(self, prefix: str) -> list:
        objects = []
        paginator = self.s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
            objects.extend(page.get('Contents', []))
        return objects

    def list(self, parent: str = '') -> List[FileItem]:
        """
        List objects under {path}/{parent}.

        Raises:
            StorageError: If listing fails
        """
        prefix = self.remote_key(parent) if parent else (self.path + '/' if self.path else '')
        strip = len(self.path) + 1 if self.path else 0

        try:
            return [
                FileItem(
                    filename=obj['Key'][strip:],
                    size=obj['Size'],
                    last_modified=obj['LastModified']
                )
                for obj in self._list_objects(prefix)
            ]
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def download(self, file_key: str) -> str:
        """
        Return a presigned download URL valid for one hour.

        Raises:
            StorageError: If signing fails
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': self.remote_key(file_key)},
                ExpiresIn=3600
            )
        except Exception as e:
            raise StorageError(f"Failed to sign request: {e}")


class LocalStorage(BaseStorage):
    """
    Handler for storing artifacts in a local directory.

    Settings:
        path: Destination directory (required)
    """

    storage_type = 'local'

    def __init__(self, model: ModelConfig, archive_path: str, storage_config: StorageConfig):
        super().__init__(model, archive_path, storage_config)
        self.base_path = None

    def open(self):
        path = self.storage_config.get('path')
        if not path:
            raise StorageError(f"Storage {self.storage_config.name}: 'path' is required")

        self.base_path = Path(path).expanduser()
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def remote_key(self, key: str) -> str:
        return key

    def upload(self, file_key: str):
        for key in self.upload_keys(file_key):
            source_path = self.source_path(key)
            dest_path = self.base_path / key

            if not os.path.exists(source_path):
                raise StorageError(f"Source file not found: {source_path}")

            try:
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_path, dest_path)
            except PermissionError as e:
                raise StorageError(f"Permission denied writing to {dest_path}: {e}")
            except Exception as e:
                raise StorageError(f"Failed to store {dest_path}: {e}")

            logger.info(f"=> {dest_path}")

    def delete(self, file_key: str):
        full_path = self.base_path / file_key

        try:
            if full_path.is_dir():
                shutil.rmtree(full_path)
            elif full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list(self, parent: str = '') -> List[FileItem]:
        root = self.base_path / parent if parent else self.base_path

        if not root.exists():
            return []

        try:
            items = []
            for file_path in root.rglob('*'):
                if file_path.is_file():
                    file_stat = file_path.stat()
                    items.append(FileItem(
                        filename=file_path.relative_to(self.base_path).as_posix(),
                        size=file_stat.st_size,
                        last_modified=datetime.fromtimestamp(file_stat.st_mtime, tz=timezone.utc)
                    ))
            return items
        except Exception as e:
            raise StorageError(f"Failed to list local files: {e}")

    def download(self, file_key: str) -> str:
        return str(self.base_path / file_key)


class SFTPStorage(BaseStorage):
    """
    Handler for remote hosts reachable via SSH/SFTP.

    Settings:
        host, port (22), username, password or private_key, path, timeout (30)
    """

    storage_type = 'sftp'

    def __init__(self, model: ModelConfig, archive_path: str, storage_config: StorageConfig):
        super().__init__(model, archive_path, storage_config)
        self.host = storage_config.get('host') or storage_config.get('hostname')
        self.port = int(storage_config.get('port', 22))
        self.username = storage_config.get('username')
        self.password = storage_config.get('password')
        self.private_key_path = storage_config.get('private_key')
        self.ssh_client = None
        self.sftp_client = None

    @property
    def path(self) -> str:
        # Absolute remote directories stay absolute
        return str(self.storage_config.get('path', self.model.name)).rstrip('/')

    def open(self):
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': int(self.storage_config.get('timeout', 30))
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

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except StorageError:
            raise
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        for client in (self.sftp_client, self.ssh_client):
            if client is None:
                continue
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP connection: {e}")
        self.sftp_client = None
        self.ssh_client = None

    def _mkdirs(self, remote_dir: str):
        current = ''
        for part in remote_dir.split('/'):
            if not part:
                current = '/' if not current else current
                continue
            current = posixpath.join(current, part) if current else part
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def upload(self, file_key: str):
        for key in self.upload_keys(file_key):
            local_path = self.source_path(key)
            remote_path = self.remote_key(key)

            try:
                self._mkdirs(posixpath.dirname(remote_path))
                self.sftp_client.put(local_path, remote_path)
            except FileNotFoundError:
                raise StorageError(f"Local file not found: {local_path}")
            except Exception as e:
                raise StorageError(f"Failed to upload {self.host}:{remote_path}: {e}")

            logger.info(f"=> sftp://{self.host}/{remote_path}")

    def delete(self, file_key: str):
        remote_path = self.remote_key(file_key)

        try:
            attrs = self.sftp_client.stat(remote_path)
        except FileNotFoundError:
            return

        try:
            if stat.S_ISDIR(attrs.st_mode):
                for entry in self.sftp_client.listdir_attr(remote_path):
                    self.sftp_client.remove(posixpath.join(remote_path, entry.filename))
                self.sftp_client.rmdir(remote_path)
            else:
                self.sftp_client.remove(remote_path)
        except Exception as e:
            raise StorageError(f"Failed to delete {self.host}:{remote_path}: {e}")

    def _walk(self, remote_dir: str, relative: str, items: List[FileItem]):
        for entry in self.sftp_client.listdir_attr(remote_dir):
            child_relative = posixpath.join(relative, entry.filename) if relative else entry.filename
            child_remote = posixpath.join(remote_dir, entry.filename)
            if stat.S_ISDIR(entry.st_mode):
                self._walk(child_remote, child_relative, items)
            else:
                items.append(FileItem(
                    filename=child_relative,
                    size=entry.st_size,
                    last_modified=datetime.fromtimestamp(entry.st_mtime, tz=timezone.utc)
                ))

    def list(self, parent: str = '') -> List[FileItem]:
        root = self.remote_key(parent) if parent else (self.path or '.')
        items: List[FileItem] = []

        try:
            self._walk(root, parent.strip('/'), items)
        except FileNotFoundError:
            return []
        except Exception as e:
            raise StorageError(f"Failed to list {self.host}:{root}: {e}")

        return items

    def download(self, file_key: str) -> str:
        return f"sftp://{self.host}/{self.remote_key(file_key).lstrip('/')}"


STORAGE_TYPES: Dict[str, Type[BaseStorage]] = {
    S3Storage.storage_type: S3Storage,
    LocalStorage.storage_type: LocalStorage,
    SFTPStorage.storage_type: SFTPStorage,
}


def create_storage(model: ModelConfig, archive_path: str, storage_config: StorageConfig) -> BaseStorage:
    """
    Factory function to create the handler for a storage target.

    Raises:
        StorageError: If the storage type is unknown
    """
    storage_class = STORAGE_TYPES.get(storage_config.type)
    if storage_class is None:
        raise StorageError(
            f"Invalid storage type: {storage_config.type!r}. "
            f"Valid options: {sorted(STORAGE_TYPES)}"
        )
    return storage_class(model, archive_path, storage_config)


def run_storage(model: ModelConfig, archive_path: str, storage_config: StorageConfig) -> List[str]:
    """
    Upload an artifact to one storage target and apply its retention window.

    Returns:
        Keys removed by retention

    Raises:
        StorageError: If the target cannot be opened or the upload fails
    """
    new_file_key = os.path.basename(archive_path.rstrip(os.sep))
    storage = create_storage(model, archive_path, storage_config)

    logger.info(f"=> Storage | {storage_config.type} ({storage_config.name})")
    try:
        storage.open()
        storage.upload(new_file_key)

        try:
            existing_keys = storage.list_artifact_keys()
        except StorageError as e:
            logger.error(f"Skipping retention for {storage.cycler.name}: {e}")
            return []

        return storage.cycler.run(new_file_key, existing_keys, storage.keep, storage.delete)
    finally:
        storage.close()


def run_storages(model: ModelConfig, archive_path: str):
    """
    Fan an artifact out to every storage target of a model.

    With a single target its error propagates immediately. With several
    targets each failure is recorded, the remaining targets still run, and a
    combined StorageError is raised at the end.

    Raises:
        StorageError: If any target failed
    """
    errors: List[str] = []
    single = len(model.storages) == 1

    for storage_config in model.storages:
        try:
            run_storage(model, archive_path, storage_config)
        except Exception as e:
            if single:
                raise
            logger.error(f"Storage {storage_config.name} failed: {e}")
            errors.append(f"{storage_config.name}: {e}")

    if errors:
        raise StorageError(f"Storage errors: {'; '.join(errors)}")
