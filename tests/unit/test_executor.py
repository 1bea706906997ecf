"""
Unit tests for the model executor (launch_agent/backup/executor.py).

Tests the pipeline order, failure handling, notifications and cleanup.
"""

import os
import tarfile
from unittest.mock import MagicMock, patch

import pytest

from launch_agent.backup.executor import (
    STATUS_FAILED,
    STATUS_FINISHED,
    ModelExecutor,
    PerformResult,
    perform_model,
    perform_model_by_name,
)
from launch_agent.errors import DumpError, StorageError
from launch_agent.models import ArchiveConfig, SubConfig


@pytest.fixture
def notifications():
    with patch('launch_agent.backup.executor.notify_success') as success, \
            patch('launch_agent.backup.executor.notify_failure') as failure:
        yield success, failure


class TestModelExecutor:
    """Test ModelExecutor.perform()."""

    def test_executor_initialization(self, make_model):
        model = make_model()
        executor = ModelExecutor(model)

        assert executor.model is model
        assert executor.archive_path is None
        assert executor.logs == []

    def test_successful_run(self, make_model, notifications, tmp_path):
        """Artifact lands in local storage, finished is notified, temp is removed."""
        success, failure = notifications
        model = make_model()

        result = ModelExecutor(model).perform()

        assert result.status == STATUS_FINISHED
        assert result.succeeded is True
        assert result.size > 0
        assert result.error is None
        assert result.completed_at >= result.started_at
        stored = os.listdir(tmp_path / 'backups')
        assert len(stored) == 1
        assert stored[0].endswith('.tar')
        success.assert_called_once_with(model, result.size)
        failure.assert_not_called()
        assert not os.path.exists(model.temp_path)
        assert any('Backup completed successfully' in line for line in result.logs)

    @patch('launch_agent.backup.executor.run_storages')
    @patch('launch_agent.backup.executor.databases.run')
    def test_dump_failure(self, mock_dump, mock_storages, make_model, notifications):
        """A failing dump never uploads, never notifies finished and removes temp."""
        success, failure = notifications
        mock_dump.side_effect = DumpError("pg_dump failed for main: connection refused")
        model = make_model(databases=(SubConfig(name='main', type='postgresql'),))

        result = ModelExecutor(model).perform()

        assert result.status == STATUS_FAILED
        assert 'connection refused' in result.error
        mock_storages.assert_not_called()
        success.assert_not_called()
        failure.assert_called_once_with(model, result.error)
        assert not os.path.exists(model.temp_path)

    @patch('launch_agent.backup.executor.run_storages')
    def test_storage_failure(self, mock_storages, make_model, notifications):
        success, failure = notifications
        mock_storages.side_effect = StorageError("Storage errors: s3: access denied")
        model = make_model()

        result = ModelExecutor(model).perform()

        assert result.status == STATUS_FAILED
        assert result.error == "Storage errors: s3: access denied"
        success.assert_not_called()
        failure.assert_called_once()
        assert not os.path.exists(model.temp_path)

    @patch('launch_agent.backup.executor.compression.run')
    def test_unexpected_exception_is_contained(self, mock_compress, make_model, notifications):
        """Any exception becomes a failed result and cleanup still runs."""
        success, failure = notifications
        mock_compress.side_effect = RuntimeError("boom")
        model = make_model()

        result = ModelExecutor(model).perform()

        assert result.status == STATUS_FAILED
        assert result.error == "boom"
        failure.assert_called_once()
        assert not os.path.exists(model.temp_path)

    @patch('launch_agent.backup.executor.compression.run')
    def test_error_without_message_uses_class_name(self, mock_compress, make_model, notifications):
        mock_compress.side_effect = KeyError()

        result = ModelExecutor(make_model()).perform()

        assert result.error == 'KeyError'

    def test_notification_failure_does_not_fail_run(self, make_model, webhook_config):
        """A webhook outage is logged; the run still counts as finished."""
        model = make_model(webhook=webhook_config)

        with patch('launch_agent.notifier.requests.request', side_effect=Exception("network down")):
            result = ModelExecutor(model).perform()

        assert result.status == STATUS_FINISHED

    def test_shared_temp_work_dir_removed(self, make_model, notifications):
        """With a generated work dir the whole shared directory is removed."""
        model = make_model(use_temp_work_dir=True)

        ModelExecutor(model).perform()

        assert not os.path.exists(os.path.dirname(model.temp_path))

    def test_archive_step_included(self, make_model, notifications, temp_files, tmp_path):
        model = make_model(archive=ArchiveConfig(includes=(str(temp_files),)))

        result = ModelExecutor(model).perform()

        assert result.succeeded
        stored = tmp_path / 'backups' / os.listdir(tmp_path / 'backups')[0]
        with tarfile.open(stored) as tar:
            assert 'test_model/archive.tar' in tar.getnames()


class TestPerformResult:
    def test_payloads(self):
        finished = PerformResult(model='daily_db', status=STATUS_FINISHED, size=2048)
        failed = PerformResult(model='daily_db', status=STATUS_FAILED, error='boom')

        assert finished.to_payload() == {'status': 'finished', 'model': 'daily_db', 'size': 2048}
        assert failed.to_payload() == {'status': 'failed', 'model': 'daily_db', 'error': 'boom'}


class TestPerformHelpers:
    @patch('launch_agent.backup.executor.ModelExecutor')
    def test_perform_model(self, mock_executor, make_model):
        model = make_model()

        perform_model(model)

        mock_executor.assert_called_once_with(model)
        mock_executor.return_value.perform.assert_called_once_with()

    def test_perform_model_by_name_unknown(self):
        store = MagicMock()
        store.get_model.return_value = None

        with pytest.raises(ValueError, match='Model not found'):
            perform_model_by_name(store, 'missing')
