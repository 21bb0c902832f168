"""Shape restore steps into result records and log-friendly summaries."""

import re
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from mssql_restore.restore.models import RestorePlanStep, RestoreResult

PATH_SEPARATORS = re.compile(r'[\\/]')


def _average_mb(sizes) -> Optional[float]:
    sizes = [s for s in sizes if s is not None]
    if not sizes:
        return None
    return round(sum(sizes) / len(sizes) / (1024 * 1024), 2)


def _leaf_name(path: str) -> str:
    return PATH_SEPARATORS.split(path.rstrip('\\/'))[-1]


def _parent_directory(path: str) -> str:
    leaf = _leaf_name(path)
    return path.rstrip('\\/')[:-len(leaf)].rstrip('\\/') if leaf else path


def build_result(step: RestorePlanStep,
                 sql_instance: str,
                 restore_complete: bool,
                 script: str,
                 file_restore_time: timedelta,
                 database_restore_time: timedelta,
                 error: Optional[BaseException] = None) -> RestoreResult:
    """Project a finished (or failed) step into its RestoreResult."""
    backup = step.backup
    physical_names = [entry.physical_name for entry in backup.file_list]

    return RestoreResult(
        sql_instance=sql_instance,
        database=step.database,
        original_database=backup.original_database,
        step=step.sequence,
        backup_type=backup.backup_type.name,
        no_recovery=step.no_recovery,
        with_replace=step.replace_database,
        keep_replication=step.keep_replication,
        keep_cdc=step.keep_cdc,
        restore_complete=restore_complete,
        backup_files_count=len(backup.full_name),
        restored_files_count=len(physical_names),
        backup_size_mb=_average_mb(backup.total_size),
        compressed_backup_size_mb=_average_mb(backup.compressed_backup_size),
        backup_file=','.join(backup.full_name),
        restored_file=','.join(sorted({_leaf_name(p) for p in physical_names})),
        restore_directory=','.join(sorted({_parent_directory(p) for p in physical_names})),
        first_lsn=backup.first_lsn,
        last_lsn=backup.last_lsn,
        restore_target_time=step.to_point_in_time or 'Latest',
        standby_file=step.standby_file,
        script=script,
        file_restore_time=file_restore_time,
        database_restore_time=database_restore_time,
        exit_error=str(error) if error is not None else None
    )


def format_size_mb(size_mb: Optional[float]) -> str:
    if size_mb is None:
        return 'unknown'
    if size_mb >= 1024:
        return f"{size_mb / 1024:.2f} GB"
    return f"{size_mb:.2f} MB"


def format_duration(seconds: float) -> str:
    if seconds >= 3600:
        return f"{seconds / 3600:.2f} hours ({seconds:.0f} seconds)"
    if seconds >= 60:
        return f"{seconds / 60:.1f} minutes ({seconds:.0f} seconds)"
    return f"{seconds:.1f} seconds"


def format_result(result: RestoreResult) -> List[str]:
    """Log lines describing one step."""
    status = 'SUCCESS' if result.restore_complete else 'FAILED'
    lines = [
        f"[{result.database}] step {result.step} ({result.backup_type}): {status}",
        f"  Backup file(s): {result.backup_file}",
        f"  Backup size: {format_size_mb(result.backup_size_mb)}",
        f"  Target time: {result.restore_target_time}",
        f"  Duration: {format_duration(result.file_restore_time.total_seconds())}",
    ]
    if result.compressed_backup_size_mb is not None:
        lines.append(f"  Compressed size: {format_size_mb(result.compressed_backup_size_mb)}")
    if result.restored_file:
        lines.append(f"  Restored file(s): {result.restored_file}")
    if result.standby_file:
        lines.append(f"  Standby file: {result.standby_file}")
    if result.exit_error:
        lines.append(f"  Error: {result.exit_error}")
    return lines


def summarize_results(results: Iterable[RestoreResult]) -> Dict[str, Any]:
    """Totals across a run, keyed the way the CLI and alert emails use them."""
    results = list(results)
    databases = []
    failed_databases = []
    elapsed = {}
    for result in results:
        if result.database not in databases:
            databases.append(result.database)
        if not result.restore_complete and result.database not in failed_databases:
            failed_databases.append(result.database)
        elapsed[result.database] = result.database_restore_time.total_seconds()

    completed = sum(1 for r in results if r.restore_complete)
    return {
        'success': not failed_databases,
        'steps_total': len(results),
        'steps_completed': completed,
        'steps_failed': len(results) - completed,
        'databases': databases,
        'failed_databases': failed_databases,
        'duration': sum(elapsed.values()),
    }
