"""Apply restore plans against a SQL Server instance, one database at a time."""

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from mssql_restore.restore.models import (
    BackupFile,
    CleanupOutcome,
    DatabaseState,
    RestoreOptions,
    RestorePlanStep,
    RestoreResult,
)
from mssql_restore.restore.plan import (
    build_restore_plan,
    group_by_database,
    quote_identifier,
    render_restore_script,
    render_verify_script,
    validate_options,
)
from mssql_restore.restore.report import build_result

logger = logging.getLogger(__name__)

VERIFY_SUCCESSFUL = 'Verify successful'
VERIFY_FAILED = 'Verify failed'


class RestoreExecutor:
    """
    Runs restore plans through connections obtained from connection_factory.

    The factory returns an unopened connection usable as a context manager
    (see mssql_restore.utils.connection.SqlServerConnection). A fresh one is
    acquired for every database so a failure on one cannot leak into the next.
    """

    def __init__(self,
                 connection_factory: Callable,
                 options: RestoreOptions,
                 sql_instance: str,
                 on_progress: Optional[Callable[[RestorePlanStep, int], None]] = None,
                 now: Optional[datetime] = None):
        self.connection_factory = connection_factory
        self.options = options
        self.sql_instance = sql_instance
        self.on_progress = on_progress
        self.now = now
        self.restored_databases: Set[str] = set()
        self.database_states: Dict[str, DatabaseState] = {}
        self.cleanup_outcomes: List[CleanupOutcome] = []

    def restore(self, backup_files: Iterable[BackupFile]) -> Union[List[RestoreResult], str]:
        """
        Restore every database found in backup_files.

        Returns the list of RestoreResult records, or the concatenated T-SQL when
        output_script_only is set, or a verify verdict string when verify_only is set.

        Raises:
            RestoreConfigurationError: before any I/O, for invalid options
            RestoreConnectionError: when the instance cannot be reached
        """
        validate_options(self.options)
        plans = {
            database: build_restore_plan(files, self.options, now=self.now)
            for database, files in group_by_database(backup_files).items()
        }
        for database in plans:
            self.database_states[database] = DatabaseState.NOT_STARTED

        if self.options.verify_only:
            return self._verify(plans)

        if self.options.output_script_only:
            scripts = []
            for database, steps in plans.items():
                scripts.extend(self._script_database(database, steps))
            return '\n'.join(scripts)

        results = []
        for database, steps in plans.items():
            results.extend(self._restore_database(database, steps))
        return results

    def _set_state(self, database: str, state: DatabaseState):
        logger.debug(f"{database}: {self.database_states.get(database, DatabaseState.NOT_STARTED).value} -> {state.value}")
        self.database_states[database] = state

    def _verify(self, plans: Dict[str, List[RestorePlanStep]]) -> str:
        for database, steps in plans.items():
            with self.connection_factory() as conn:
                for step in steps:
                    media = ', '.join(step.backup.full_name)
                    try:
                        conn.execute_non_query(render_verify_script(step))
                    except Exception as e:
                        logger.warning(f"Verification of {media} failed: {e}")
                        self._set_state(database, DatabaseState.FAILED)
                        return VERIFY_FAILED
                    logger.info(f"Verified {media}")
            self._set_state(database, DatabaseState.DONE)
        return VERIFY_SUCCESSFUL

    def _script_database(self, database: str, steps: List[RestorePlanStep]) -> List[str]:
        with self.connection_factory() as conn:
            if not self._prepare(conn, database):
                return []
        self._set_state(database, DatabaseState.DONE)
        return [render_restore_script(step) for step in steps]

    def _prepare(self, conn, database: str) -> bool:
        """
        Make an existing target database restorable. Returns False to skip it.

        Outside script mode, with WithReplace an existing database is dropped on
        a managed instance, or cleared of sessions elsewhere.
        """
        if not conn.database_exists(database):
            return True

        if self.options.continue_restore:
            logger.info(f"{database} exists on {self.sql_instance}, continuing its restore chain")
            return True

        if not self.options.with_replace:
            logger.warning(
                f"{database} exists on {self.sql_instance} and WithReplace was not specified, skipping"
            )
            self._set_state(database, DatabaseState.SKIPPED)
            return False

        if self.options.output_script_only:
            return True

        if conn.is_managed_instance():
            if not self.options.confirm.should_process(database, 'Drop database before restore'):
                self._set_state(database, DatabaseState.SKIPPED)
                return False
            logger.info(f"Dropping {database}, managed instances cannot restore over an existing database")
            conn.execute_non_query(f"DROP DATABASE {quote_identifier(database)}")
            self._set_state(database, DatabaseState.DROPPED)
            return True

        if not self.options.confirm.should_process(database, 'Kill sessions and clear database for restore'):
            self._set_state(database, DatabaseState.SKIPPED)
            return False

        logger.info(f"Clearing {database} before restore")
        self._kill_sessions(conn, database)
        target = quote_identifier(database)
        conn.execute_non_query(
            f"ALTER DATABASE {target} SET OFFLINE WITH ROLLBACK IMMEDIATE; "
            f"ALTER DATABASE {target} SET RESTRICTED_USER; "
            f"ALTER DATABASE {target} SET ONLINE WITH ROLLBACK IMMEDIATE;"
        )
        conn.reconnect()
        self._set_state(database, DatabaseState.CLEARED)
        return True

    def _kill_sessions(self, conn, database: str):
        try:
            session_ids = conn.session_ids(database)
        except Exception as e:
            logger.debug(f"Could not list sessions on {database}: {e}")
            self.cleanup_outcomes.append(
                CleanupOutcome(database, 'list sessions', attempted=True, succeeded=False, error=str(e))
            )
            return

        for session_id in session_ids:
            action = f"kill session {session_id}"
            try:
                conn.kill_session(session_id)
            except Exception as e:
                logger.debug(f"Could not {action} on {database}: {e}")
                self.cleanup_outcomes.append(
                    CleanupOutcome(database, action, attempted=True, succeeded=False, error=str(e))
                )
            else:
                self.cleanup_outcomes.append(
                    CleanupOutcome(database, action, attempted=True, succeeded=True)
                )

    def _progress_callback(self, step: RestorePlanStep):
        if self.on_progress is None:
            return None
        return lambda percent: self.on_progress(step, percent)

    def _restore_database(self, database: str, steps: List[RestorePlanStep]) -> List[RestoreResult]:
        results = []
        database_start = time.time()

        with self.connection_factory() as conn:
            try:
                proceed = self._prepare(conn, database)
            except Exception as e:
                logger.error(f"Could not prepare {database} for restore: {e}")
                self._set_state(database, DatabaseState.FAILED)
                elapsed = timedelta(seconds=time.time() - database_start)
                results.append(build_result(
                    steps[0], self.sql_instance, False, render_restore_script(steps[0]),
                    timedelta(0), elapsed, error=e
                ))
                return results
            if not proceed:
                return results

            if self.database_states.get(database) is DatabaseState.DROPPED:
                # Managed instances reject WITH REPLACE; the target no longer exists anyway
                steps = [replace(step, replace_database=False) for step in steps]

            self._set_state(database, DatabaseState.RESTORING)
            for step in steps:
                script = render_restore_script(step)
                media = ', '.join(step.backup.full_name)
                if not self.options.confirm.should_process(database, f"Restore {step.action} from {media}"):
                    logger.info(f"Restore of {database} stopped before step {step.sequence}")
                    if step.sequence == 1:
                        self._set_state(database, DatabaseState.SKIPPED)
                    break

                logger.info(f"Restoring {database} step {step.sequence}/{len(steps)} ({step.action}) from {media}")
                logger.debug(script)
                step_start = time.time()
                try:
                    conn.execute_non_query(script, on_progress=self._progress_callback(step))
                except Exception as e:
                    now = time.time()
                    logger.error(f"Restore of {database} failed at step {step.sequence}: {e}")
                    results.append(build_result(
                        step, self.sql_instance, False, script,
                        timedelta(seconds=now - step_start),
                        timedelta(seconds=now - database_start),
                        error=e
                    ))
                    self._set_state(database, DatabaseState.FAILED)
                    break

                now = time.time()
                results.append(build_result(
                    step, self.sql_instance, True, script,
                    timedelta(seconds=now - step_start),
                    timedelta(seconds=now - database_start)
                ))
                self.restored_databases.add(database)
            else:
                self._set_state(database, DatabaseState.DONE)
                if steps[-1].no_recovery:
                    mode = 'STANDBY' if steps[-1].standby_file else 'RESTORING'
                    logger.info(f"{database} left in {mode} state")
                else:
                    logger.info(f"{database} recovered")

        return results
