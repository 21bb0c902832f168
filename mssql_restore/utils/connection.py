"""Scoped SQL Server connection with the narrow set of calls a restore needs."""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

import pyodbc

from mssql_restore.restore.errors import RestoreConnectionError

logger = logging.getLogger(__name__)

PERCENT_PROCESSED = re.compile(r'(\d+)\s+percent processed', re.IGNORECASE)

# SERVERPROPERTY('EngineEdition') for Azure SQL Managed Instance
MANAGED_INSTANCE_EDITION = 8


class SqlServerConnection:
    """
    Autocommit pyodbc connection to master.

    Used as a context manager: one connection per database restore sequence,
    closed when the sequence ends. RESTORE and ALTER DATABASE cannot run inside
    a user transaction, hence autocommit.
    """

    def __init__(self,
                 connection_string: str,
                 instance_name: str,
                 login_timeout: int = 15,
                 query_timeout: int = 0):
        self.connection_string = connection_string
        self.instance_name = instance_name
        self.login_timeout = login_timeout
        self.query_timeout = query_timeout
        self._conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def connect(self):
        if self._conn is not None:
            return
        try:
            self._conn = pyodbc.connect(
                self.connection_string,
                autocommit=True,
                timeout=self.login_timeout
            )
        except pyodbc.Error as e:
            raise RestoreConnectionError(f"Cannot connect to {self.instance_name}: {e}") from e
        # 0 = no limit; restores can run for hours
        self._conn.timeout = self.query_timeout
        logger.debug(f"Connected to {self.instance_name}")

    def disconnect(self):
        if self._conn is None:
            return
        try:
            self._conn.close()
        except pyodbc.Error as e:
            logger.debug(f"Error closing connection to {self.instance_name}: {e}")
        finally:
            self._conn = None
        logger.debug(f"Disconnected from {self.instance_name}")

    def reconnect(self):
        """Drop and reopen the connection after out-of-band database state changes."""
        self.disconnect()
        self.connect()

    def _cursor(self):
        if self._conn is None:
            raise RestoreConnectionError(f"Not connected to {self.instance_name}")
        return self._conn.cursor()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a statement and return the rows of its first result set as dicts."""
        cursor = self._cursor()
        try:
            cursor.execute(sql, *params)
            rows = []
            if cursor.description:
                columns = [column[0] for column in cursor.description]
                rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            while cursor.nextset():
                pass
            return rows
        finally:
            cursor.close()

    def execute_non_query(self, sql: str, on_progress: Optional[Callable[[int], None]] = None):
        """
        Execute a batch and drain every result set so the whole batch runs.

        STATS messages ("N percent processed.") are forwarded to on_progress.
        Errors raised by any statement in the batch propagate as pyodbc.Error.
        """
        cursor = self._cursor()
        try:
            cursor.execute(sql)
            while True:
                self._report_progress(cursor, on_progress)
                if cursor.description:
                    cursor.fetchall()
                if not cursor.nextset():
                    break
        finally:
            cursor.close()

    @staticmethod
    def _report_progress(cursor, on_progress):
        if on_progress is None:
            return
        for _state, message in getattr(cursor, 'messages', None) or []:
            match = PERCENT_PROCESSED.search(str(message))
            if match:
                on_progress(int(match.group(1)))

    def database_exists(self, database: str) -> bool:
        rows = self.query("SELECT 1 AS present FROM sys.databases WHERE name = ?", (database,))
        return bool(rows)

    def engine_edition(self) -> int:
        rows = self.query("SELECT CAST(SERVERPROPERTY('EngineEdition') AS int) AS edition")
        return int(rows[0]['edition']) if rows and rows[0]['edition'] is not None else 0

    def is_managed_instance(self) -> bool:
        return self.engine_edition() == MANAGED_INSTANCE_EDITION

    def session_ids(self, database: str) -> List[int]:
        rows = self.query(
            "SELECT session_id FROM sys.dm_exec_sessions "
            "WHERE database_id = DB_ID(?) AND session_id <> @@SPID",
            (database,)
        )
        return [int(row['session_id']) for row in rows]

    def kill_session(self, session_id: int):
        self.execute_non_query(f"KILL {int(session_id)}")
