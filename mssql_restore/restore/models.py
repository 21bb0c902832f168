"""Data model for backup descriptors, restore plans and restore results."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from mssql_restore.restore.errors import BackupHistoryError

logger = logging.getLogger(__name__)


class BackupType(Enum):
    """Kind of backup set, ordered by its position in a restore chain."""

    FULL = 1
    DIFFERENTIAL = 2
    LOG = 3

    @property
    def action(self) -> str:
        """RESTORE action used to apply a backup of this type."""
        return 'Log' if self is BackupType.LOG else 'Database'

    @classmethod
    def from_code(cls, value) -> 'BackupType':
        """
        Decode a backup type from header codes, msdb letters or descriptive names.

        RESTORE HEADERONLY reports 1 (database), 2 (log) and 5 (differential);
        msdb.dbo.backupset uses D, L and I. Anything else is rejected.
        """
        if isinstance(value, BackupType):
            return value
        if isinstance(value, bool) or value is None:
            raise BackupHistoryError(f"Unrecognized backup type: {value!r}")
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int):
            decoded = _NUMERIC_CODES.get(value)
        else:
            decoded = _NAMED_CODES.get(str(value).strip().lower())
        if decoded is None:
            raise BackupHistoryError(f"Unrecognized backup type: {value!r}")
        return decoded


_NUMERIC_CODES = {
    1: BackupType.FULL,
    2: BackupType.LOG,
    5: BackupType.DIFFERENTIAL,
}

_NAMED_CODES = {
    'd': BackupType.FULL,
    'database': BackupType.FULL,
    'full': BackupType.FULL,
    'i': BackupType.DIFFERENTIAL,
    'database differential': BackupType.DIFFERENTIAL,
    'differential': BackupType.DIFFERENTIAL,
    'diff': BackupType.DIFFERENTIAL,
    'l': BackupType.LOG,
    'transaction log': BackupType.LOG,
    'log': BackupType.LOG,
}


@dataclass(frozen=True)
class FileListEntry:
    """One database file contained in a backup set."""

    logical_name: str
    physical_name: str
    file_type: Optional[str] = None


@dataclass(frozen=True)
class BackupFile:
    """A backup set on one or more media files, as produced by history discovery."""

    database: str
    backup_type: BackupType
    full_name: Tuple[str, ...]
    position: int = 1
    first_lsn: Optional[int] = None
    last_lsn: Optional[int] = None
    database_backup_lsn: Optional[int] = None
    recovery_model: Optional[str] = None
    file_list: Tuple[FileListEntry, ...] = ()
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    total_size: Tuple[int, ...] = ()
    compressed_backup_size: Tuple[int, ...] = ()
    restore_time: Optional[datetime] = None
    original_database: Optional[str] = None

    @property
    def is_simple_recovery(self) -> bool:
        return (self.recovery_model or '').strip().upper() == 'SIMPLE'


class ConfirmPolicy:
    """
    Decides whether a mutating stage may proceed.

    Modes:
        force   - always proceed without asking
        prompt  - ask the supplied callback, which receives (target, action)
        what_if - never proceed; log what would have happened
    """

    FORCE = 'force'
    PROMPT = 'prompt'
    WHAT_IF = 'what_if'

    def __init__(self, mode: str = FORCE, prompt: Optional[Callable[[str, str], bool]] = None):
        if mode not in (self.FORCE, self.PROMPT, self.WHAT_IF):
            raise ValueError(f"Invalid confirmation mode: {mode}")
        if mode == self.PROMPT and prompt is None:
            raise ValueError("Prompt mode requires a prompt callback")
        self.mode = mode
        self.prompt = prompt

    def should_process(self, target: str, action: str) -> bool:
        if self.mode == self.FORCE:
            return True
        if self.mode == self.WHAT_IF:
            logger.info(f"What if: performing '{action}' on target '{target}'")
            return False
        return bool(self.prompt(target, action))

    def __repr__(self):
        return f"ConfirmPolicy(mode={self.mode!r})"


def _default_restore_time() -> datetime:
    # Two days ahead means "restore to the latest point available".
    return datetime.now() + timedelta(days=2)


@dataclass
class RestoreOptions:
    """Global options applied to every database in a restore invocation."""

    restore_time: datetime = field(default_factory=_default_restore_time)
    no_recovery: bool = False
    with_replace: bool = False
    continue_restore: bool = False
    standby_directory: Optional[str] = None
    keep_replication: bool = False
    keep_cdc: bool = False
    stop_mark: Optional[str] = None
    stop_before: bool = False
    stop_after_date: Optional[datetime] = None
    page_restore: Tuple[str, ...] = ()
    azure_credential: Optional[str] = None
    execute_as: Optional[str] = None
    max_transfer_size: Optional[int] = None
    block_size: Optional[int] = None
    buffer_count: Optional[int] = None
    stats_percent: int = 1
    verify_only: bool = False
    output_script_only: bool = False
    confirm: ConfirmPolicy = field(default_factory=ConfirmPolicy)


@dataclass(frozen=True)
class RestorePlanStep:
    """Everything needed to apply one backup set to the target database."""

    database: str
    backup: BackupFile
    sequence: int
    action: str
    no_recovery: bool = True
    standby_file: Optional[str] = None
    stop_at_mark_name: Optional[str] = None
    stop_before_mark_name: Optional[str] = None
    stop_at_mark_after_date: Optional[str] = None
    to_point_in_time: Optional[str] = None
    replace_database: bool = False
    keep_replication: bool = False
    keep_cdc: bool = False
    relocate_files: Tuple[Tuple[str, str], ...] = ()
    page_restore: Optional[str] = None
    credential_name: Optional[str] = None
    execute_as: Optional[str] = None
    max_transfer_size: Optional[int] = None
    block_size: Optional[int] = None
    buffer_count: Optional[int] = None
    stats_percent: int = 1


class DatabaseState(Enum):
    """Progress of one database through a restore invocation."""

    NOT_STARTED = 'not_started'
    SKIPPED = 'skipped'
    CLEARED = 'cleared'
    DROPPED = 'dropped'
    RESTORING = 'restoring'
    DONE = 'done'
    FAILED = 'failed'


@dataclass(frozen=True)
class CleanupOutcome:
    """Result of an advisory cleanup action; failure never aborts a restore."""

    database: str
    action: str
    attempted: bool
    succeeded: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class RestoreResult:
    """One record per restore step, emitted whether the step succeeded or not."""

    sql_instance: str
    database: str
    original_database: Optional[str]
    step: int
    backup_type: str
    no_recovery: bool
    with_replace: bool
    keep_replication: bool
    keep_cdc: bool
    restore_complete: bool
    backup_files_count: int
    restored_files_count: int
    backup_size_mb: Optional[float]
    compressed_backup_size_mb: Optional[float]
    backup_file: str
    restored_file: str
    restore_directory: str
    first_lsn: Optional[int]
    last_lsn: Optional[int]
    restore_target_time: str
    standby_file: Optional[str]
    script: str
    file_restore_time: timedelta
    database_restore_time: timedelta
    exit_error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['file_restore_time'] = self.file_restore_time.total_seconds()
        data['database_restore_time'] = self.database_restore_time.total_seconds()
        return data
