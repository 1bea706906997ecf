"""
Backup module for the launch agent.

This module handles the backup pipeline of a model:
- Database dumps (PostgreSQL, MySQL, Redis)
- File archiving
- Compression and splitting
- Storage (S3, local and SFTP)
- Retention cycling
- Execution orchestration
"""

from .compression import create_archive
from .retention import Cycler
from .storage import LocalStorage, S3Storage, SFTPStorage
from .executor import ModelExecutor, PerformResult, perform_model

__all__ = [
    'ModelExecutor',
    'PerformResult',
    'perform_model',
    'create_archive',
    'Cycler',
    'S3Storage',
    'LocalStorage',
    'SFTPStorage'
]
