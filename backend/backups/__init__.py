"""
Bind mount backups.
"""

from .backup_manager import BackupJob, BackupManager

__all__ = ['BackupJob', 'BackupManager']
