#!/usr/bin/env python3
"""
SQL Server Restore Sequencer

Restores full, differential and transaction log backup chains onto a SQL
Server instance, one database at a time, with point-in-time, mark, standby
and page restore support.
"""

import json
import logging
import sys
from argparse import ArgumentParser, ArgumentTypeError
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from mssql_restore.restore.alert import send_restore_alert
from mssql_restore.restore.errors import (
    BackupHistoryError,
    RestoreConfigurationError,
    RestoreConnectionError,
    RestorePlanError,
)
from mssql_restore.restore.executor import VERIFY_SUCCESSFUL, RestoreExecutor
from mssql_restore.restore.history import load_backup_history, read_backup_headers
from mssql_restore.restore.models import ConfirmPolicy, RestoreOptions
from mssql_restore.restore.plan import to_local_naive, validate_options
from mssql_restore.restore.report import format_duration, format_result, summarize_results
from mssql_restore.utils.config import RestoreSettings
from mssql_restore.utils.lock import InstanceLock, lockfile_for_instance


def setup_logging(log_dir, verbose=False):
    """Setup file and console logging."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f'restore-{datetime.now().strftime("%Y%m%d-%H%M%S")}.log'

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return str(log_file)


def log_section(title: str):
    separator = "=" * 70
    logging.info(separator)
    logging.info(f"  {title}")
    logging.info(separator)


class StepProgress:
    """One tqdm bar per restore step, fed by percent-complete callbacks."""

    def __init__(self):
        self.bar = None
        self.step_key = None
        self.last_percent = 0

    def __call__(self, step, percent: int):
        key = (step.database, step.sequence)
        if key != self.step_key:
            self.close()
            self.bar = tqdm(total=100, unit='%', desc=f"{step.database} step {step.sequence}")
            self.step_key = key
            self.last_percent = 0
        if percent > self.last_percent:
            self.bar.update(percent - self.last_percent)
            self.last_percent = percent

    def close(self):
        if self.bar is not None:
            self.bar.close()
        self.bar = None
        self.step_key = None


def ask_confirmation(target: str, action: str) -> bool:
    """Ask the operator before a mutating stage."""
    while True:
        answer = input(f"{action} on [{target}]? (y/n): ").strip().lower()
        if answer in ('y', 'yes'):
            return True
        if answer in ('n', 'no'):
            return False
        print("Please enter y or n")


def parse_datetime(value: str) -> datetime:
    """ISO timestamp; a UTC offset is converted to the local time of this host."""
    try:
        return to_local_naive(datetime.fromisoformat(value))
    except ValueError:
        raise ArgumentTypeError(f"Invalid date/time '{value}', expected ISO format (2024-01-31T13:45:00)")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description='SQL Server backup chain restore')
    parser.add_argument('--env-file', default='.env', help='Path to .env file (default: .env in current directory)')

    source = parser.add_argument_group('backup source')
    source.add_argument('--history', help='JSON backup history file')
    source.add_argument('--backup-file', action='append', default=[],
                        help='Backup file path or URL, read with RESTORE HEADERONLY (repeatable)')
    source.add_argument('--database', help='Target database; filters history or renames backup-file sets')

    recovery = parser.add_argument_group('recovery')
    recovery.add_argument('--restore-time', type=parse_datetime, help='Point in time to restore to')
    recovery.add_argument('--no-recovery', action='store_true', help='Leave databases in RESTORING state')
    recovery.add_argument('--standby-directory', help='Finish in STANDBY using an undo file in this server directory')
    recovery.add_argument('--with-replace', action='store_true', help='Overwrite existing databases')
    recovery.add_argument('--continue', dest='continue_restore', action='store_true',
                          help='Apply further backups to a database already in RESTORING/STANDBY state')
    recovery.add_argument('--keep-replication', action='store_true')
    recovery.add_argument('--keep-cdc', action='store_true')
    recovery.add_argument('--stop-mark', help='Named transaction mark to stop at')
    recovery.add_argument('--stop-before', action='store_true', help='Stop before the mark instead of at it')
    recovery.add_argument('--stop-after-date', type=parse_datetime, help='Only honour marks after this time')
    recovery.add_argument('--page-restore', help='Comma separated FileId:PageId list')

    engine = parser.add_argument_group('engine')
    engine.add_argument('--azure-credential', help='Credential for backups stored at a URL')
    engine.add_argument('--execute-as', help='Login to impersonate while restoring')
    engine.add_argument('--max-transfer-size', type=int)
    engine.add_argument('--block-size', type=int)
    engine.add_argument('--buffer-count', type=int)

    mode = parser.add_argument_group('mode')
    exclusive = mode.add_mutually_exclusive_group()
    exclusive.add_argument('--verify-only', action='store_true', help='Only run RESTORE VERIFYONLY')
    exclusive.add_argument('--output-script-only', action='store_true', help='Print the T-SQL without running it')
    confirm = mode.add_mutually_exclusive_group()
    confirm.add_argument('--force', action='store_true', help='Do not ask before mutating steps')
    confirm.add_argument('--what-if', action='store_true', help='Log what would happen without changing anything')
    mode.add_argument('--output-json', help='Write restore results to this JSON file')
    mode.add_argument('--verbose', action='store_true', help='Debug logging, including generated T-SQL')
    return parser


def build_options(args, settings) -> RestoreOptions:
    if args.force:
        confirm = ConfirmPolicy(ConfirmPolicy.FORCE)
    elif args.what_if:
        confirm = ConfirmPolicy(ConfirmPolicy.WHAT_IF)
    else:
        confirm = ConfirmPolicy(ConfirmPolicy.PROMPT, prompt=ask_confirmation)

    options = RestoreOptions(
        no_recovery=args.no_recovery,
        with_replace=args.with_replace,
        continue_restore=args.continue_restore,
        standby_directory=args.standby_directory,
        keep_replication=args.keep_replication,
        keep_cdc=args.keep_cdc,
        stop_mark=args.stop_mark,
        stop_before=args.stop_before,
        stop_after_date=args.stop_after_date,
        page_restore=tuple(p.strip() for p in (args.page_restore or '').split(',') if p.strip()),
        azure_credential=args.azure_credential,
        execute_as=args.execute_as,
        max_transfer_size=args.max_transfer_size or settings.max_transfer_size,
        block_size=args.block_size or settings.block_size,
        buffer_count=args.buffer_count or settings.buffer_count,
        stats_percent=settings.stats_percent,
        verify_only=args.verify_only,
        output_script_only=args.output_script_only,
        confirm=confirm
    )
    if args.restore_time:
        options.restore_time = args.restore_time
    return options


def build_connection_factory(settings):
    """Return a callable that opens a fresh SqlServerConnection per database."""
    from mssql_restore.utils.connection import SqlServerConnection

    def connection_factory():
        return SqlServerConnection(
            settings.connection_string(),
            settings.instance_name,
            login_timeout=settings.login_timeout
        )

    return connection_factory


def main(argv=None):
    """Main restore program."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.history and not args.backup_file:
        parser.error('one of --history or --backup-file is required')

    try:
        settings = RestoreSettings(args.env_file)
    except (FileNotFoundError, RestoreConfigurationError) as e:
        print(f"ERROR: {e}")
        return 1

    log_file = setup_logging(settings.log_dir, args.verbose)
    log_section("SQL Server restore started")
    logging.info(f"  Instance: {settings.instance_name}")
    logging.info(f"  Log file: {log_file}")

    try:
        options = build_options(args, settings)
        validate_options(options)
    except RestoreConfigurationError as e:
        logging.error(f"Invalid options: {e}")
        return 1

    connection_factory = build_connection_factory(settings)
    progress = StepProgress()
    executor = RestoreExecutor(connection_factory, options, settings.instance_name, on_progress=progress)

    try:
        with InstanceLock(lockfile_for_instance(settings.log_dir, settings.instance_name), settings.instance_name):
            if args.history:
                backups = load_backup_history(args.history)
                if args.database:
                    backups = [b for b in backups if b.database == args.database]
            else:
                with connection_factory() as conn:
                    backups = read_backup_headers(conn, args.backup_file, database=args.database)

            if not backups:
                logging.error("No backup sets to restore")
                return 1

            outcome = executor.restore(backups)

    except RuntimeError as e:
        logging.error(f"Could not acquire lock: {e}")
        return 1
    except (BackupHistoryError, RestorePlanError, RestoreConfigurationError) as e:
        logging.error(f"Cannot restore: {e}")
        return 1
    except RestoreConnectionError as e:
        logging.error(str(e))
        send_restore_alert([], settings, log_file=log_file, error=str(e))
        return 1
    except KeyboardInterrupt:
        logging.warning("Restore interrupted by user")
        return 1
    finally:
        progress.close()

    if options.verify_only:
        logging.info(outcome)
        return 0 if outcome == VERIFY_SUCCESSFUL else 1

    if options.output_script_only:
        print(outcome)
        return 0

    results = outcome
    log_section("Restore results")
    for result in results:
        log = logging.info if result.restore_complete else logging.error
        for line in format_result(result):
            log(line)

    summary = summarize_results(results)
    logging.info("=" * 70)
    logging.info(
        f"Steps completed: {summary['steps_completed']}/{summary['steps_total']} "
        f"in {format_duration(summary['duration'])}"
    )
    if summary['failed_databases']:
        logging.error(f"Restore FAILED for: {', '.join(summary['failed_databases'])}")
    else:
        logging.info("Restore completed successfully")

    if args.output_json:
        with open(args.output_json, 'w', encoding='utf-8') as f:
            json.dump([r.as_dict() for r in results], f, indent=2, default=str)
        logging.info(f"Results written to {args.output_json}")

    send_restore_alert(results, settings, log_file=log_file)
    return 0 if summary['success'] else 1


if __name__ == '__main__':
    sys.exit(main())
