"""
Shared fixtures for the restore test suite.

FakeServer stands in for a SQL Server instance: it hands out connections
with the same narrow interface as SqlServerConnection and records every
statement and lifecycle event so tests can assert on them.
"""
from datetime import datetime

import pytest

from mssql_restore.restore.models import BackupFile, BackupType, FileListEntry


class FakeServer:
    def __init__(self, existing=(), managed=False, fail_on=None, sessions=(), kill_error=None):
        self.existing = set(existing)
        self.managed = managed
        self.fail_on = fail_on
        self.sessions = list(sessions)
        self.kill_error = kill_error
        self.executed = []
        self.events = []
        self.progress = [50, 100]

    def connection(self):
        return FakeConnection(self)


class FakeConnection:
    def __init__(self, server):
        self.server = server

    def __enter__(self):
        self.server.events.append('connect')
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.server.events.append('disconnect')

    def reconnect(self):
        self.server.events.append('reconnect')

    def database_exists(self, database):
        self.server.events.append(f'exists {database}')
        return database in self.server.existing

    def is_managed_instance(self):
        return self.server.managed

    def session_ids(self, database):
        return list(self.server.sessions)

    def kill_session(self, session_id):
        if self.server.kill_error:
            raise RuntimeError(self.server.kill_error)
        self.server.events.append(f'kill {session_id}')

    def execute_non_query(self, sql, on_progress=None):
        self.server.executed.append(sql)
        if self.server.fail_on and self.server.fail_on in sql:
            raise RuntimeError(f"Simulated failure executing: {self.server.fail_on}")
        if on_progress is not None:
            for percent in self.server.progress:
                on_progress(percent)


def make_backup(database='db1', backup_type=BackupType.FULL, first_lsn=1, path=None, **kwargs):
    if path is None:
        suffix = 'bak' if backup_type is not BackupType.LOG else 'trn'
        path = f"/backups/{database}_{first_lsn}.{suffix}"
    kwargs.setdefault('recovery_model', 'FULL')
    return BackupFile(
        database=database,
        backup_type=backup_type,
        full_name=(path,) if isinstance(path, str) else tuple(path),
        first_lsn=first_lsn,
        **kwargs
    )


def make_chain(database='db1'):
    """Full LSN 1, Log LSN 2, Log LSN 3, handed over out of order."""
    full = make_backup(
        database, BackupType.FULL, 1,
        file_list=(
            FileListEntry(database, f"D:\\data\\{database}.mdf", 'D'),
            FileListEntry(f"{database}_log", f"L:\\logs\\{database}_log.ldf", 'L'),
        ),
        total_size=(10 * 1024 * 1024,),
    )
    log2 = make_backup(database, BackupType.LOG, 2)
    log3 = make_backup(database, BackupType.LOG, 3)
    return [log3, full, log2]


@pytest.fixture
def now():
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def server():
    return FakeServer()
