from datetime import timedelta

import pytest

from mssql_restore.restore.errors import BackupHistoryError
from mssql_restore.restore.models import BackupType, ConfirmPolicy, RestoreResult


@pytest.mark.parametrize('code, expected', [
    (1, BackupType.FULL),
    (5, BackupType.DIFFERENTIAL),
    (2, BackupType.LOG),
    ('1', BackupType.FULL),
    ('D', BackupType.FULL),
    ('I', BackupType.DIFFERENTIAL),
    ('L', BackupType.LOG),
    ('Database', BackupType.FULL),
    ('Full', BackupType.FULL),
    ('Database Differential', BackupType.DIFFERENTIAL),
    ('Transaction Log', BackupType.LOG),
    ('transaction log', BackupType.LOG),
    (BackupType.LOG, BackupType.LOG),
])
def test_backup_type_decoding(code, expected):
    assert BackupType.from_code(code) is expected


@pytest.mark.parametrize('code', [3, 4, 'Bogus', '', None, True])
def test_unknown_backup_type_is_rejected(code):
    with pytest.raises(BackupHistoryError):
        BackupType.from_code(code)


def test_action_per_backup_type():
    assert BackupType.FULL.action == 'Database'
    assert BackupType.DIFFERENTIAL.action == 'Database'
    assert BackupType.LOG.action == 'Log'


def test_backup_types_order_like_a_restore_chain():
    assert BackupType.FULL.value < BackupType.DIFFERENTIAL.value < BackupType.LOG.value


def test_confirm_policy_modes():
    assert ConfirmPolicy().should_process('db1', 'Restore') is True
    assert ConfirmPolicy(ConfirmPolicy.WHAT_IF).should_process('db1', 'Restore') is False
    asked = ConfirmPolicy(ConfirmPolicy.PROMPT, prompt=lambda target, action: target == 'db1')
    assert asked.should_process('db1', 'Restore') is True
    assert asked.should_process('db2', 'Restore') is False


def test_confirm_policy_validation():
    with pytest.raises(ValueError):
        ConfirmPolicy('sometimes')
    with pytest.raises(ValueError):
        ConfirmPolicy(ConfirmPolicy.PROMPT)


def test_restore_result_as_dict_uses_seconds():
    result = RestoreResult(
        sql_instance='sql01', database='db1', original_database='prod_db1', step=1,
        backup_type='FULL', no_recovery=False, with_replace=True, keep_replication=False,
        keep_cdc=False, restore_complete=True, backup_files_count=1, restored_files_count=2,
        backup_size_mb=10.0, compressed_backup_size_mb=None, backup_file='/b/db1.bak',
        restored_file='db1.mdf,db1_log.ldf', restore_directory='D:\\data', first_lsn=1,
        last_lsn=2, restore_target_time='Latest', standby_file=None, script='RESTORE ...;',
        file_restore_time=timedelta(seconds=90), database_restore_time=timedelta(minutes=3),
    )

    data = result.as_dict()

    assert data['file_restore_time'] == 90.0
    assert data['database_restore_time'] == 180.0
    assert data['exit_error'] is None
    assert data['original_database'] == 'prod_db1'
