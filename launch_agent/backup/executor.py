"""
Model executor - orchestrates the complete backup workflow of one model.

Workflow:
1. Dump databases into the model's dump path
2. Archive include paths (if configured)
3. Compress the dump path into one artifact (always)
4. Upload to every storage target and apply retention
5. Notify the outcome (finished / failed)
6. Cleanup temporary files

perform() never raises: any error, expected or not, becomes a failed
PerformResult, and the temp directory is removed on every path.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from launch_agent.backup import archive, compression, databases
from launch_agent.backup.storage import run_storages
from launch_agent.models import ModelConfig
from launch_agent.notifier import notify_failure, notify_success


logger = logging.getLogger(__name__)

STATUS_FINISHED = 'finished'
STATUS_FAILED = 'failed'


@dataclass
class PerformResult:
    """Outcome of one model run."""
    model: str
    status: str
    size: Optional[int] = None
    error: Optional[str] = None
    artifact_path: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_FINISHED

    def to_payload(self) -> Dict[str, Any]:
        if self.succeeded:
            return {'status': self.status, 'model': self.model, 'size': self.size}
        return {'status': self.status, 'model': self.model, 'error': self.error}


class ModelExecutor:
    """
    Runs the backup pipeline for one model.
    """

    def __init__(self, model: ModelConfig):
        """
        Initialize model executor.

        Args:
            model: ModelConfig snapshot to execute
        """
        self.model = model
        self.archive_path = None
        self.logs = []

    def perform(self) -> PerformResult:
        """
        Execute the backup pipeline.

        Returns:
            PerformResult with status finished or failed
        """
        result = PerformResult(
            model=self.model.name,
            status=STATUS_FAILED,
            started_at=datetime.utcnow()
        )

        self._log(f"Starting model: {self.model.name}")
        self._log(f"WorkDir: {self.model.dump_path}")

        try:
            try:
                self._execute_workflow()

                result.size = compression.get_archive_size(self.archive_path)
                result.artifact_path = self.archive_path
                result.status = STATUS_FINISHED
                self._log(f"Backup completed successfully ({result.size / 1024 / 1024:.2f} MB)")

            except Exception as e:
                result.status = STATUS_FAILED
                result.error = str(e) or e.__class__.__name__
                self._log(f"Backup failed: {result.error}", level=logging.ERROR)

            result.completed_at = datetime.utcnow()

            if result.succeeded:
                notify_success(self.model, result.size)
            else:
                notify_failure(self.model, result.error)

        finally:
            self._cleanup()
            result.logs = list(self.logs)

        return result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        os.makedirs(self.model.dump_path, exist_ok=True)

        # Step 1: Database dumps
        if self.model.databases:
            self._log(f"Dumping {len(self.model.databases)} databases")
            databases.run(self.model)

        # Step 2: Archive include paths
        if self.model.archive is not None:
            self._log("Archiving files")
            archive.run(self.model)

        # Step 3: Compression runs even when no compression is configured
        self._log(f"Compressing (format: {self.model.compress_with.type})")
        self.archive_path = compression.run(self.model)
        self._log(f"Artifact created: {os.path.basename(self.archive_path)}")

        # Step 4: Storage fan-out and retention
        self._log(f"Uploading to {len(self.model.storages)} storages")
        run_storages(self.model, self.archive_path)

    def _cleanup_dir(self) -> str:
        # A shared temp work dir is removed as a whole
        if self.model.use_temp_work_dir:
            return os.path.dirname(self.model.temp_path.rstrip(os.sep))
        return self.model.temp_path

    def _cleanup(self):
        """Remove temporary directory and files."""
        temp_dir = self._cleanup_dir()
        self._log(f"Cleanup temp: {temp_dir}/")
        if temp_dir and os.path.exists(temp_dir):
            try:
                shutil.rmtree(temp_dir)
            except Exception as e:
                self._log(f"Cleanup temp dir {temp_dir} error: {e}", level=logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a run log line with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.model.name}] {message}")


def perform_model(model: ModelConfig) -> PerformResult:
    """
    Execute the pipeline for a model.

    Returns:
        PerformResult with execution results
    """
    return ModelExecutor(model).perform()


def perform_model_by_name(store, name: str) -> PerformResult:
    """
    Execute a model looked up in the current configuration snapshot.

    Raises:
        ValueError: If the model is not configured
    """
    model = store.get_model(name)
    if model is None:
        raise ValueError(f"Model not found: {name}")
    return perform_model(model)
