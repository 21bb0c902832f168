"""Restore plan builder: turns backup history into ordered RESTORE steps."""

import logging
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from mssql_restore.restore.errors import RestoreConfigurationError, RestorePlanError
from mssql_restore.restore.models import BackupFile, RestoreOptions, RestorePlanStep

logger = logging.getLogger(__name__)

PAGE_ENTRY = re.compile(r'^\d+:\d+$')


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert offset-aware timestamps to naive local time; SQL Server STOPAT has no offset."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def format_sql_datetime(value: datetime) -> str:
    """Format as yyyy-MM-ddTHH:mm:ss.fff, independent of locale."""
    return value.strftime('%Y-%m-%dT%H:%M:%S') + f'.{value.microsecond // 1000:03d}'


def quote_identifier(name: str) -> str:
    return '[' + name.replace(']', ']]') + ']'


def quote_literal(value) -> str:
    return "N'" + str(value).replace("'", "''") + "'"


def validate_options(options: RestoreOptions):
    """
    Reject option combinations that cannot produce a valid restore.

    Raises:
        RestoreConfigurationError: on the first problem found
    """
    if options.keep_cdc and (options.no_recovery or options.standby_directory):
        raise RestoreConfigurationError(
            "KeepCDC requires the database to be recovered; it cannot be combined "
            "with NoRecovery or a standby directory"
        )
    if options.verify_only and options.output_script_only:
        raise RestoreConfigurationError("VerifyOnly and OutputScriptOnly are mutually exclusive")
    if (options.stop_before or options.stop_after_date) and not options.stop_mark:
        raise RestoreConfigurationError("StopBefore and StopAfterDate require a StopMark")
    for entry in options.page_restore:
        if not PAGE_ENTRY.match(entry.strip()):
            raise RestoreConfigurationError(
                f"Invalid page '{entry}', expected FileId:PageId"
            )
    if not 1 <= options.stats_percent <= 100:
        raise RestoreConfigurationError("Progress granularity must be between 1 and 100 percent")


def group_by_database(files: Iterable[BackupFile]) -> Dict[str, List[BackupFile]]:
    """Group backup files by target database, keeping first-seen database order."""
    grouped: Dict[str, List[BackupFile]] = {}
    for backup in files:
        grouped.setdefault(backup.database, []).append(backup)
    return grouped


def sort_backup_files(files: Iterable[BackupFile]) -> List[BackupFile]:
    """Order a chain by backup type then first LSN; unknown LSNs go first within a type."""
    return sorted(
        files,
        key=lambda b: (b.backup_type.value, b.first_lsn is not None, b.first_lsn or 0)
    )


def build_standby_path(directory: str, database: str, now: datetime) -> str:
    # The directory lives on the SQL Server host, which may use either separator
    separator = '\\' if '\\' in directory else '/'
    return f"{directory.rstrip(separator)}{separator}{database}_{now.strftime('%Y%m%d%H%M%S')}.bak"


def _stop_conditions(backup: BackupFile, options: RestoreOptions, now: datetime) -> Dict[str, Optional[str]]:
    if options.stop_mark:
        after = format_sql_datetime(to_local_naive(options.stop_after_date)) if options.stop_after_date else None
        if options.stop_before:
            return {'stop_before_mark_name': options.stop_mark, 'stop_at_mark_after_date': after}
        return {'stop_at_mark_name': options.stop_mark, 'stop_at_mark_after_date': after}

    file_time = to_local_naive(backup.restore_time)
    restore_time = to_local_naive(options.restore_time)
    if (restore_time > now
            or (file_time is not None and file_time > now)
            or backup.is_simple_recovery):
        return {}

    if file_time is not None and file_time != restore_time:
        target = file_time
    else:
        target = restore_time
    return {'to_point_in_time': format_sql_datetime(target)}


def build_restore_plan(files: Iterable[BackupFile],
                       options: RestoreOptions,
                       now: Optional[datetime] = None) -> List[RestorePlanStep]:
    """
    Build the ordered restore steps for a single database.

    Every file but the last is restored WITH NORECOVERY. The last one recovers
    the database unless NoRecovery is forced, pages are being restored, or a
    standby directory is supplied (in which case it gets a standby file).

    Raises:
        RestorePlanError: if files is empty or spans several databases
        RestoreConfigurationError: if the options are inconsistent
    """
    files = list(files)
    if not files:
        raise RestorePlanError("No backup files supplied")
    databases = sorted({b.database for b in files})
    if len(databases) > 1:
        raise RestorePlanError(f"Backup files span several databases: {', '.join(databases)}")
    validate_options(options)

    now = to_local_naive(now) or datetime.now()
    ordered = sort_backup_files(files)
    database = databases[0]
    page_list = ', '.join(entry.strip() for entry in options.page_restore) or None

    steps = []
    for sequence, backup in enumerate(ordered, start=1):
        is_last = sequence == len(ordered)
        no_recovery = True
        standby_file = None
        if is_last and not options.no_recovery and not page_list:
            if options.standby_directory:
                standby_file = build_standby_path(options.standby_directory, database, now)
            else:
                no_recovery = False

        action = backup.backup_type.action
        relocate = ()
        if action == 'Database':
            relocate = tuple((entry.logical_name, entry.physical_name) for entry in backup.file_list)

        step = RestorePlanStep(
            database=database,
            backup=backup,
            sequence=sequence,
            action=action,
            no_recovery=no_recovery,
            standby_file=standby_file,
            replace_database=options.with_replace,
            keep_replication=options.keep_replication,
            keep_cdc=options.keep_cdc and not no_recovery,
            relocate_files=relocate,
            page_restore=page_list if action == 'Database' else None,
            credential_name=options.azure_credential,
            execute_as=options.execute_as,
            max_transfer_size=options.max_transfer_size,
            block_size=options.block_size,
            buffer_count=options.buffer_count,
            stats_percent=options.stats_percent,
            **_stop_conditions(backup, options, now)
        )
        logger.debug(
            f"Planned step {sequence}/{len(ordered)} for {database}: {action} "
            f"from {', '.join(backup.full_name)} (norecovery={no_recovery})"
        )
        steps.append(step)

    return steps


def device_clause(paths) -> str:
    devices = []
    for path in paths:
        kind = 'URL' if path.lower().startswith(('http://', 'https://')) else 'DISK'
        devices.append(f"{kind} = {quote_literal(path)}")
    return ', '.join(devices)


def _wrap_execute_as(statement: str, login: Optional[str]) -> str:
    if not login:
        return f"{statement};"
    return f"EXECUTE AS LOGIN = {quote_literal(login)};\n{statement};\nREVERT;"


def render_restore_script(step: RestorePlanStep) -> str:
    """Render the RESTORE statement for a step. Output depends only on the step."""
    head = f"RESTORE {'LOG' if step.action == 'Log' else 'DATABASE'} {quote_identifier(step.database)}"
    if step.page_restore and step.action == 'Database':
        head += f" PAGE = '{step.page_restore}'"

    with_options = [f"FILE = {step.backup.position}"]
    if step.credential_name:
        with_options.append(f"CREDENTIAL = {quote_literal(step.credential_name)}")
    for logical_name, physical_name in step.relocate_files:
        with_options.append(f"MOVE {quote_literal(logical_name)} TO {quote_literal(physical_name)}")
    if step.replace_database:
        with_options.append('REPLACE')
    if step.keep_replication:
        with_options.append('KEEP_REPLICATION')
    if step.keep_cdc:
        with_options.append('KEEP_CDC')
    if step.max_transfer_size:
        with_options.append(f"MAXTRANSFERSIZE = {step.max_transfer_size}")
    if step.block_size:
        with_options.append(f"BLOCKSIZE = {step.block_size}")
    if step.buffer_count:
        with_options.append(f"BUFFERCOUNT = {step.buffer_count}")

    if step.stop_at_mark_name or step.stop_before_mark_name:
        keyword = 'STOPATMARK' if step.stop_at_mark_name else 'STOPBEFOREMARK'
        clause = f"{keyword} = {quote_literal(step.stop_at_mark_name or step.stop_before_mark_name)}"
        if step.stop_at_mark_after_date:
            clause += f" AFTER '{step.stop_at_mark_after_date}'"
        with_options.append(clause)
    elif step.to_point_in_time:
        with_options.append(f"STOPAT = '{step.to_point_in_time}'")

    if step.standby_file:
        with_options.append(f"STANDBY = {quote_literal(step.standby_file)}")
    elif step.no_recovery:
        with_options.append('NORECOVERY')
    else:
        with_options.append('RECOVERY')
    with_options.append(f"STATS = {step.stats_percent}")

    statement = f"{head} FROM {device_clause(step.backup.full_name)} WITH {', '.join(with_options)}"
    return _wrap_execute_as(statement, step.execute_as)


def render_verify_script(step: RestorePlanStep) -> str:
    """Render RESTORE VERIFYONLY for the backup set behind a step."""
    with_options = [f"FILE = {step.backup.position}"]
    if step.credential_name:
        with_options.append(f"CREDENTIAL = {quote_literal(step.credential_name)}")
    statement = f"RESTORE VERIFYONLY FROM {device_clause(step.backup.full_name)} WITH {', '.join(with_options)}"
    return _wrap_execute_as(statement, step.execute_as)
