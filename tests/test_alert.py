from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import make_chain
from mssql_restore.restore import alert
from mssql_restore.restore.models import RestoreOptions
from mssql_restore.restore.plan import build_restore_plan
from mssql_restore.restore.report import build_result


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def send_message(self, msg):
        FakeSMTP.sent.append(msg)


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr(alert.smtplib, 'SMTP', FakeSMTP)
    return FakeSMTP


def make_settings(mode='failure_only', enabled=True):
    return SimpleNamespace(
        email_enabled=enabled, email_alert_mode=mode, instance_name='sql01', instance_label='',
        smtp_host='smtp.example.com', smtp_port=587, smtp_user='alerts', smtp_password='secret',
        alert_email='dba@example.com', alert_from='restore@example.com',
    )


def make_results(now, fail=False):
    steps = build_restore_plan(make_chain(), RestoreOptions(), now=now)
    results = []
    for step in steps:
        failed = fail and step.sequence == 2
        results.append(build_result(step, 'sql01', not failed, 'RESTORE ...;', timedelta(seconds=5),
                                    timedelta(seconds=15), error=RuntimeError('disk full') if failed else None))
    return results


def test_failure_is_sent_in_failure_only_mode(smtp, now):
    assert alert.send_restore_alert(make_results(now, fail=True), make_settings()) is True

    msg = smtp.sent[0]
    assert msg['Subject'].startswith('ALERT: SQL Server Restore Failed - sql01')
    assert msg['To'] == 'dba@example.com'


def test_success_is_not_sent_in_failure_only_mode(smtp, now):
    assert alert.send_restore_alert(make_results(now), make_settings()) is False
    assert smtp.sent == []


def test_success_is_sent_in_both_mode(smtp, now):
    assert alert.send_restore_alert(make_results(now), make_settings(mode='both')) is True
    assert smtp.sent[0]['Subject'].startswith('SUCCESS')


def test_disabled_email_sends_nothing(smtp, now):
    assert alert.send_restore_alert(make_results(now, fail=True), make_settings(enabled=False)) is False
    assert smtp.sent == []


def test_run_level_error_is_a_failure(smtp):
    assert alert.send_restore_alert([], make_settings(), error='Cannot connect to sql01') is True


def test_smtp_errors_are_logged_not_raised(monkeypatch, now):
    def refuse(host, port):
        raise OSError('connection refused')

    monkeypatch.setattr(alert.smtplib, 'SMTP', refuse)

    assert alert.send_restore_alert(make_results(now, fail=True), make_settings()) is False


def test_message_body_lists_failed_databases_and_steps(now):
    subject, body = alert.build_alert_message(make_results(now, fail=True), make_settings(), log_file='logs/r.log')

    assert 'Failed databases: db1' in body
    assert 'Steps completed: 2/3' in body
    assert '[db1] step 2 (LOG): FAILED' in body
    assert '  Error: disk full' in body
    assert 'Log file: logs/r.log' in body
