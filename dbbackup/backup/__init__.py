"""
Backup module for dbbackup.

This module handles the core backup functionality including:
- Storage backends (file, SMB and S3)
- Compression and archiving
- Lifecycle script hooks
- Backup execution and fan-out to targets
- Restore and transactional replay
"""

from .executor import BackupExecutor, run_backup_cycle
from .restore import RestoreExecutor, restore
from .compression import get_compressor, create_archive, extract_archive
from .storage import FileStorage, SMBStorage, S3Storage, create_storage, parse_target
from .hooks import run_hooks
from .database import Database

__all__ = [
    'BackupExecutor',
    'run_backup_cycle',
    'RestoreExecutor',
    'restore',
    'get_compressor',
    'create_archive',
    'extract_archive',
    'FileStorage',
    'SMBStorage',
    'S3Storage',
    'create_storage',
    'parse_target',
    'run_hooks',
    'Database'
]
