"""
Unit tests for storage handlers (launch_agent/backup/storage.py).

Tests S3Storage (moto), LocalStorage, SFTPStorage (mocked paramiko) and the
storage fan-out with retention.
"""

import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from launch_agent.backup import storage as storage_module
from launch_agent.backup.retention import Cycler
from launch_agent.backup.storage import (
    FileItem,
    LocalStorage,
    S3Storage,
    SFTPStorage,
    artifact_units,
    create_storage,
    run_storage,
    run_storages,
)
from launch_agent.errors import StorageError
from launch_agent.models import StorageConfig


ARTIFACT_KEY = '2024.01.15.02.00.00.tar'


def _local(name, path, keep=0):
    settings = {'path': str(path)} if path else {}
    return StorageConfig(name=name, type='local', settings=settings, keep=keep)


def _bucket_keys(s3):
    return sorted(obj.key for obj in s3.Bucket('test-bucket').objects.all())


class TestArtifactUnits:
    """Test collapsing listings into artifact keys."""

    def test_units(self):
        now = datetime.now(timezone.utc)
        items = [
            FileItem('2024.01.13.02.00.00.tar.gz', 10, now),
            FileItem('2024.01.14.02.00.00/2024.01.14.02.00.00.tar-000', 10, now),
            FileItem('2024.01.14.02.00.00/2024.01.14.02.00.00.tar-001', 10, now),
            FileItem('notes.txt', 1, now),
            FileItem('other/2024.01.10.02.00.00.tar', 10, now),
        ]

        assert artifact_units(items) == ['2024.01.13.02.00.00.tar.gz', '2024.01.14.02.00.00']


class TestS3Storage:
    """Test S3Storage against moto."""

    def test_open_requires_bucket(self, make_model, artifact):
        config = StorageConfig(name='s3', type='s3', settings={'region': 'us-east-1'})

        with pytest.raises(StorageError, match="'bucket' is required"):
            S3Storage(make_model(), str(artifact), config).open()

    def test_upload_under_model_name(self, mock_s3, make_model, artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(artifact), s3_storage_config)
        storage.open()

        storage.upload(ARTIFACT_KEY)

        assert _bucket_keys(mock_s3) == [f'test_model/{ARTIFACT_KEY}']
        assert mock_s3.Object('test-bucket', f'test_model/{ARTIFACT_KEY}').content_length == 1300

    def test_upload_custom_path(self, mock_s3, make_model, artifact, s3_storage_config):
        settings = dict(s3_storage_config.settings, path='/backups/db/')
        config = StorageConfig(name='s3', type='s3', settings=settings)
        storage = S3Storage(make_model(), str(artifact), config)
        storage.open()

        storage.upload(ARTIFACT_KEY)

        assert _bucket_keys(mock_s3) == [f'backups/db/{ARTIFACT_KEY}']

    def test_upload_split_artifact(self, mock_s3, make_model, split_artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(split_artifact), s3_storage_config)
        storage.open()

        storage.upload(split_artifact.name)

        assert _bucket_keys(mock_s3) == [
            f'test_model/2024.01.15.02.00.00/2024.01.15.02.00.00.tar-{i:03d}' for i in range(3)
        ]

    def test_upload_missing_bucket(self, mock_s3, make_model, artifact, s3_storage_config):
        settings = dict(s3_storage_config.settings, bucket='no-such-bucket')
        storage = S3Storage(make_model(), str(artifact), StorageConfig(name='s3', type='s3', settings=settings))
        storage.open()

        with pytest.raises(StorageError):
            storage.upload(ARTIFACT_KEY)

    def test_list_and_artifact_keys(self, mock_s3, make_model, split_artifact, s3_storage_config):
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='test_model/2024.01.13.02.00.00.tar', Body=b'old')
        bucket.put_object(Key='test_model/notes.txt', Body=b'n')
        bucket.put_object(Key='other_model/2024.01.01.02.00.00.tar', Body=b'x')
        storage = S3Storage(make_model(), str(split_artifact), s3_storage_config)
        storage.open()
        storage.upload(split_artifact.name)

        filenames = sorted(item.filename for item in storage.list())

        assert '2024.01.13.02.00.00.tar' in filenames
        assert 'notes.txt' in filenames
        assert len(filenames) == 5
        assert storage.list_artifact_keys() == ['2024.01.13.02.00.00.tar', '2024.01.15.02.00.00']

    def test_delete_split_unit(self, mock_s3, make_model, split_artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(split_artifact), s3_storage_config)
        storage.open()
        storage.upload(split_artifact.name)
        mock_s3.Bucket('test-bucket').put_object(Key='test_model/2024.01.15.02.00.00.tar', Body=b'keep')

        storage.delete('2024.01.15.02.00.00')

        assert _bucket_keys(mock_s3) == ['test_model/2024.01.15.02.00.00.tar']

    def test_delete_missing_key(self, mock_s3, make_model, artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(artifact), s3_storage_config)
        storage.open()

        storage.delete('2020.01.01.00.00.00.tar')

    def test_download_presigned(self, mock_s3, make_model, artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(artifact), s3_storage_config)
        storage.open()

        url = storage.download(ARTIFACT_KEY)

        assert f'test_model/{ARTIFACT_KEY}' in url
        assert 'Expires' in url or 'X-Amz-Expires' in url

    def test_run_storage_applies_retention(self, mock_s3, make_model, artifact, s3_storage_config):
        bucket = mock_s3.Bucket('test-bucket')
        for day in (11, 12, 13):
            bucket.put_object(Key=f'test_model/2024.01.{day}.02.00.00.tar', Body=b'old')
        config = StorageConfig(name='s3', type='s3', settings=s3_storage_config.settings, keep=2)

        deleted = run_storage(make_model(), str(artifact), config)

        assert deleted == ['2024.01.11.02.00.00.tar', '2024.01.12.02.00.00.tar']
        assert _bucket_keys(mock_s3) == [
            'test_model/2024.01.13.02.00.00.tar',
            f'test_model/{ARTIFACT_KEY}',
        ]


class TestS3MultipartUpload:
    """Test multipart upload with a mocked client."""

    @patch.object(storage_module, 'PART_SIZE', 400)
    def test_multipart_parts(self, make_model, artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(artifact), s3_storage_config)
        storage.bucket_name = 'test-bucket'
        storage.s3_client = MagicMock()
        storage.s3_client.create_multipart_upload.return_value = {'UploadId': 'upload-1'}
        storage.s3_client.upload_part.return_value = {'ETag': 'etag'}

        storage.upload(ARTIFACT_KEY)

        assert storage.s3_client.upload_part.call_count == 4
        parts = storage.s3_client.complete_multipart_upload.call_args[1]['MultipartUpload']['Parts']
        assert [p['PartNumber'] for p in parts] == [1, 2, 3, 4]

    @patch.object(storage_module, 'PART_SIZE', 400)
    def test_multipart_abort_on_error(self, make_model, artifact, s3_storage_config):
        storage = S3Storage(make_model(), str(artifact), s3_storage_config)
        storage.bucket_name = 'test-bucket'
        storage.s3_client = MagicMock()
        storage.s3_client.create_multipart_upload.return_value = {'UploadId': 'upload-1'}
        storage.s3_client.upload_part.side_effect = Exception("connection reset")

        with pytest.raises(StorageError, match="connection reset"):
            storage.upload(ARTIFACT_KEY)

        storage.s3_client.abort_multipart_upload.assert_called_once_with(
            Bucket='test-bucket',
            Key=f'test_model/{ARTIFACT_KEY}',
            UploadId='upload-1'
        )


class TestLocalStorage:
    """Test LocalStorage for filesystem operations."""

    def test_open_requires_path(self, make_model, artifact):
        with pytest.raises(StorageError, match="'path' is required"):
            LocalStorage(make_model(), str(artifact), _local('local', None)).open()

    def test_upload_list_delete(self, make_model, artifact, tmp_path):
        dest = tmp_path / 'dest'
        storage = LocalStorage(make_model(), str(artifact), _local('local', dest))
        storage.open()

        storage.upload(ARTIFACT_KEY)

        assert (dest / ARTIFACT_KEY).read_bytes() == artifact.read_bytes()
        assert [item.filename for item in storage.list()] == [ARTIFACT_KEY]
        assert storage.download(ARTIFACT_KEY) == str(dest / ARTIFACT_KEY)

        storage.delete(ARTIFACT_KEY)
        assert not (dest / ARTIFACT_KEY).exists()

        # Missing keys are not an error
        storage.delete(ARTIFACT_KEY)

    def test_split_artifact(self, make_model, split_artifact, tmp_path):
        dest = tmp_path / 'dest'
        storage = LocalStorage(make_model(), str(split_artifact), _local('local', dest))
        storage.open()

        storage.upload(split_artifact.name)

        assert sorted(os.listdir(dest / split_artifact.name)) == sorted(os.listdir(split_artifact))
        assert storage.list_artifact_keys() == [split_artifact.name]

        storage.delete(split_artifact.name)
        assert not (dest / split_artifact.name).exists()

    def test_list_missing_directory(self, make_model, artifact, tmp_path):
        storage = LocalStorage(make_model(), str(artifact), _local('local', tmp_path / 'dest'))
        storage.base_path = tmp_path / 'never_created'

        assert storage.list() == []


class TestSFTPStorage:
    """Test SFTPStorage with mocked paramiko."""

    @pytest.fixture
    def sftp_config(self):
        return StorageConfig(name='nas', type='sftp', settings={
            'host': 'nas.internal',
            'username': 'backup',
            'password': 'secret',
            'path': '/srv/backups',
        })

    def test_open_and_upload(self, mock_ssh_client, make_model, artifact, sftp_config):
        storage = SFTPStorage(make_model(), str(artifact), sftp_config)
        storage.open()

        storage.upload(ARTIFACT_KEY)

        connect_kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert connect_kwargs['hostname'] == 'nas.internal'
        assert connect_kwargs['port'] == 22
        assert connect_kwargs['password'] == 'secret'
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.put.assert_called_once_with(str(artifact), f'/srv/backups/{ARTIFACT_KEY}')

        storage.close()
        sftp.close.assert_called_once()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_open_without_credentials(self, mock_ssh_client, make_model, artifact):
        config = StorageConfig(name='nas', type='sftp', settings={'host': 'nas.internal'})

        with pytest.raises(StorageError, match='password or private_key'):
            SFTPStorage(make_model(), str(artifact), config).open()

    def test_delete_missing_is_ignored(self, mock_ssh_client, make_model, artifact, sftp_config):
        storage = SFTPStorage(make_model(), str(artifact), sftp_config)
        storage.open()
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.side_effect = FileNotFoundError()

        storage.delete(ARTIFACT_KEY)

        sftp.remove.assert_not_called()

    def test_download_url(self, make_model, artifact, sftp_config):
        storage = SFTPStorage(make_model(), str(artifact), sftp_config)

        assert storage.download(ARTIFACT_KEY) == f'sftp://nas.internal/srv/backups/{ARTIFACT_KEY}'

    def test_failed_open_closes_ssh_client(self, mock_ssh_client, make_model, artifact, sftp_config):
        """An SSH session that connected but could not open SFTP is closed."""
        mock_ssh_client.return_value.open_sftp.side_effect = Exception("subsystem request failed")

        with pytest.raises(StorageError, match='subsystem request failed'):
            run_storage(make_model(storages=(sftp_config,)), str(artifact), sftp_config)

        mock_ssh_client.return_value.connect.assert_called_once()
        mock_ssh_client.return_value.close.assert_called_once()


class TestFanOut:
    """Test uploading one artifact to every storage target."""

    def test_unknown_storage_type(self, make_model, artifact):
        with pytest.raises(StorageError, match='Invalid storage type'):
            create_storage(make_model(), str(artifact), StorageConfig(name='x', type='ftp'))

    def test_second_of_three_fails(self, make_model, artifact, tmp_path):
        """First and third targets upload and cycle; the error names the second."""
        first, third = tmp_path / 'first', tmp_path / 'third'
        for directory in (first, third):
            directory.mkdir()
            (directory / '2024.01.01.02.00.00.tar').write_bytes(b'old')
        model = make_model(storages=(
            _local('first', first, keep=1),
            _local('second', None, keep=1),
            _local('third', third, keep=1),
        ))

        with pytest.raises(StorageError) as exc_info:
            run_storages(model, str(artifact))

        assert 'second' in str(exc_info.value)
        assert 'first:' not in str(exc_info.value)
        assert 'third:' not in str(exc_info.value)
        for directory in (first, third):
            assert os.listdir(directory) == [ARTIFACT_KEY]

    def test_single_target_failure_is_immediate(self, make_model, artifact):
        """With one target its error is returned as is and nothing is cycled."""
        model = make_model(storages=(_local('only', None, keep=1),))

        with patch.object(Cycler, 'run') as mock_cycle:
            with pytest.raises(StorageError, match="'path' is required"):
                run_storages(model, str(artifact))

        mock_cycle.assert_not_called()

    def test_all_targets_succeed(self, make_model, artifact, tmp_path):
        model = make_model(storages=(_local('a', tmp_path / 'a'), _local('b', tmp_path / 'b')))

        run_storages(model, str(artifact))

        assert os.listdir(tmp_path / 'a') == [ARTIFACT_KEY]
        assert os.listdir(tmp_path / 'b') == [ARTIFACT_KEY]

    def test_listing_failure_skips_retention(self, make_model, artifact, tmp_path):
        """A failed listing after a good upload is logged; the upload stands."""
        config = _local('local', tmp_path / 'dest', keep=1)

        with patch.object(LocalStorage, 'list', side_effect=StorageError("listing denied")):
            with patch.object(Cycler, 'run') as mock_cycle:
                deleted = run_storage(make_model(), str(artifact), config)

        assert deleted == []
        mock_cycle.assert_not_called()
        assert (tmp_path / 'dest' / ARTIFACT_KEY).exists()

    def test_cycler_name(self, make_model, artifact, tmp_path):
        storage = create_storage(make_model('daily-db'), str(artifact), _local('s3', tmp_path))

        assert storage.cycler.name == 'daily-db_s3'
