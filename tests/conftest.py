"""
Shared pytest fixtures for launch agent tests.

This module provides fixtures for:
- Configuration files and ModelConfig snapshots
- Flask app and test client
- Mock fixtures for external services (S3, SSH, APScheduler)
- Temporary file fixtures
"""

import os
import textwrap
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from launch_agent import create_app
from launch_agent.models import (
    AgentConfig,
    CompressConfig,
    ModelConfig,
    ScheduleConfig,
    StorageConfig,
    WebhookConfig,
)


@pytest.fixture
def make_model(tmp_path):
    """
    Factory for ModelConfig snapshots rooted in tmp_path.

    Defaults to one local storage target under tmp_path/'backups'.
    """
    def _make_model(name='test_model', storages=None, schedule=None, **kwargs):
        temp_path = tmp_path / 'work' / '1700000000000000000'
        if storages is None:
            storages = (
                StorageConfig(
                    name='local',
                    type='local',
                    settings={'path': str(tmp_path / 'backups')},
                    keep=0
                ),
            )
        return ModelConfig(
            name=name,
            work_dir=str(tmp_path),
            temp_path=str(temp_path),
            dump_path=str(temp_path / name),
            storages=tuple(storages),
            schedule=schedule or ScheduleConfig(enabled=False),
            **kwargs
        )
    return _make_model


@pytest.fixture
def make_agent_config():
    """Factory for AgentConfig snapshots."""
    def _make_agent_config(*models, **kwargs):
        return AgentConfig(models=tuple(models), **kwargs)
    return _make_agent_config


@pytest.fixture
def webhook_config():
    return WebhookConfig(url='https://hooks.example.com/backup', headers={'X-Token': 'abc'})


@pytest.fixture
def config_file(tmp_path):
    """
    Write a launch.yml with two models storing into tmp_path/'backups'.

    Returns the file path.
    """
    backups = tmp_path / 'backups'
    content = textwrap.dedent(f"""
        workdir: {tmp_path / 'work'}
        webhook:
          url: https://hooks.example.com/global
        models:
          daily_db:
            schedule:
              cron: "0 2 * * *"
            compress_with:
              type: tgz
            storages:
              local:
                type: local
                path: {backups}
                keep: 3
          files:
            schedule:
              every: 6h
              at: "01:30"
            archive:
              includes:
                - {tmp_path / 'data'}
            storages:
              local:
                type: local
                path: {backups / 'files'}
    """)
    path = tmp_path / 'launch.yml'
    path.write_text(content)
    os.chmod(path, 0o600)
    return path


@pytest.fixture(scope='function')
def app(config_file):
    """
    Create Flask app with test configuration.

    The scheduler is not started by the testing configuration.
    """
    app = create_app('testing', str(config_file))

    yield app

    app.extensions['launch_agent']['scheduler'].stop()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reads the real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def s3_storage_config():
    return StorageConfig(
        name='s3',
        type='s3',
        settings={
            'bucket': 'test-bucket',
            'region': 'us-east-1',
            'access_key_id': 'testing',
            'secret_access_key': 'testing',
        },
        keep=0
    )


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP storage testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('launch_agent.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def artifact(tmp_path):
    """
    Create an artifact file inside a model temp directory.

    Returns the artifact path.
    """
    temp_dir = tmp_path / 'artifact_temp'
    temp_dir.mkdir()
    path = temp_dir / '2024.01.15.02.00.00.tar'
    path.write_bytes(b'artifact data' * 100)
    return path


@pytest.fixture
def split_artifact(tmp_path):
    """
    Create a split artifact directory with three parts.
    """
    parts_dir = tmp_path / 'split_temp' / '2024.01.15.02.00.00'
    parts_dir.mkdir(parents=True)
    for index in range(3):
        (parts_dir / f"2024.01.15.02.00.00.tar-{index:03d}").write_bytes(b'part' * 10)
    return parts_dir


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()

    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (data_dir / 'test_file.pyc').write_bytes(b'compiled python')

    return data_dir


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('launch_agent.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = True
        scheduler_instance.state = 1
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
