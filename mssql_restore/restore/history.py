"""
Backup history ingestion.

Turns a JSON backup-history export, or the headers of backup files read
from the server, into BackupFile descriptors. The backup type is decoded
here once; everything downstream works with BackupType.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from mssql_restore.restore.errors import BackupHistoryError
from mssql_restore.restore.models import BackupFile, BackupType, FileListEntry
from mssql_restore.restore.plan import device_clause, to_local_naive

logger = logging.getLogger(__name__)


def _as_tuple(value) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def _as_int(value, field: str) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(Decimal(str(value)))
    except (ArithmeticError, ValueError) as e:
        raise BackupHistoryError(f"{field} is not a number: {value!r}") from e


def _as_datetime(value, field: str) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_local_naive(value)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise BackupHistoryError(f"{field} is not an ISO timestamp: {value!r}") from e
    return to_local_naive(parsed)


def _file_list(entries) -> Tuple[FileListEntry, ...]:
    files = []
    for entry in _as_tuple(entries):
        try:
            files.append(FileListEntry(
                logical_name=entry['LogicalName'],
                physical_name=entry['PhysicalName'],
                file_type=entry.get('Type')
            ))
        except (KeyError, TypeError) as e:
            raise BackupHistoryError(f"Invalid FileList entry: {entry!r}") from e
    return tuple(files)


def backup_file_from_record(record: Dict[str, Any]) -> BackupFile:
    """
    Build a BackupFile from one history record.

    Raises:
        BackupHistoryError: when required keys are missing or values are malformed
    """
    try:
        database = record['Database']
        backup_type = BackupType.from_code(record['Type'])
        full_name = tuple(str(p) for p in _as_tuple(record['FullName']))
    except KeyError as e:
        raise BackupHistoryError(f"Backup history record is missing {e}") from e
    if not database or not full_name:
        raise BackupHistoryError(f"Backup history record has no database or file name: {record!r}")

    return BackupFile(
        database=database,
        backup_type=backup_type,
        full_name=full_name,
        position=_as_int(record.get('Position'), 'Position') or 1,
        first_lsn=_as_int(record.get('FirstLsn'), 'FirstLsn'),
        last_lsn=_as_int(record.get('LastLsn'), 'LastLsn'),
        database_backup_lsn=_as_int(record.get('DatabaseBackupLsn'), 'DatabaseBackupLsn'),
        recovery_model=record.get('RecoveryModel'),
        file_list=_file_list(record.get('FileList')),
        start=_as_datetime(record.get('Start'), 'Start'),
        end=_as_datetime(record.get('End'), 'End'),
        total_size=tuple(_as_int(v, 'TotalSize') for v in _as_tuple(record.get('TotalSize'))),
        compressed_backup_size=tuple(
            _as_int(v, 'CompressedBackupSize') for v in _as_tuple(record.get('CompressedBackupSize'))
        ),
        restore_time=_as_datetime(record.get('RestoreTime'), 'RestoreTime'),
        original_database=record.get('OriginalDatabase')
    )


def load_backup_history(path: Union[str, Path]) -> List[BackupFile]:
    """Load a JSON list of backup history records."""
    path = Path(path)
    if not path.exists():
        raise BackupHistoryError(f"Backup history file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            records = json.load(f)
    except json.JSONDecodeError as e:
        raise BackupHistoryError(f"Backup history file is not valid JSON: {e}") from e

    if isinstance(records, dict):
        records = [records]
    if not isinstance(records, list):
        raise BackupHistoryError("Backup history must be a JSON list of records")

    backups = [backup_file_from_record(record) for record in records]
    logger.info(f"Loaded {len(backups)} backup set(s) from {path}")
    return backups


def read_backup_headers(conn, paths: Iterable[str], database: Optional[str] = None) -> List[BackupFile]:
    """
    Describe each backup file with RESTORE HEADERONLY and RESTORE FILELISTONLY.

    Each path is treated as its own media set; every backup set on it
    becomes one BackupFile. database overrides the target database name.
    """
    backups = []
    for path in paths:
        clause = device_clause([path])
        headers = conn.query(f"RESTORE HEADERONLY FROM {clause}")
        if not headers:
            raise BackupHistoryError(f"No backup sets found in {path}")

        for header in headers:
            position = int(header.get('Position') or 1)
            files = conn.query(f"RESTORE FILELISTONLY FROM {clause} WITH FILE = {position}")
            source_database = header.get('DatabaseName')
            backups.append(BackupFile(
                database=database or source_database,
                backup_type=BackupType.from_code(header.get('BackupType')),
                full_name=(path,),
                position=position,
                first_lsn=_as_int(header.get('FirstLSN'), 'FirstLSN'),
                last_lsn=_as_int(header.get('LastLSN'), 'LastLSN'),
                database_backup_lsn=_as_int(header.get('DatabaseBackupLSN'), 'DatabaseBackupLSN'),
                recovery_model=header.get('RecoveryModel'),
                file_list=tuple(
                    FileListEntry(f['LogicalName'], f['PhysicalName'], f.get('Type')) for f in files
                ),
                start=header.get('BackupStartDate'),
                end=header.get('BackupFinishDate'),
                total_size=_as_tuple(_as_int(header.get('BackupSize'), 'BackupSize')),
                compressed_backup_size=_as_tuple(
                    _as_int(header.get('CompressedBackupSize'), 'CompressedBackupSize')
                ),
                original_database=source_database
            ))
            logger.info(
                f"Read {header.get('BackupTypeDescription', 'backup')} of {source_database} "
                f"from {path} (position {position})"
            )
    return backups
