import pytest

from mssql_restore.restore.errors import RestoreConfigurationError
from mssql_restore.utils.config import RestoreSettings

ENV_KEYS = [
    'MSSQL_SERVER', 'MSSQL_PORT', 'MSSQL_DRIVER', 'MSSQL_TRUSTED_CONNECTION',
    'MSSQL_TRUST_SERVER_CERTIFICATE', 'MSSQL_USER', 'MSSQL_PASSWORD', 'MSSQL_LOGIN_TIMEOUT',
    'RESTORE_MAX_TRANSFER_SIZE', 'RESTORE_BLOCK_SIZE', 'RESTORE_BUFFER_COUNT',
    'RESTORE_STATS_PERCENT', 'RESTORE_LOG_DIR', 'INSTANCE_LABEL',
    'SMTP_HOST', 'SMTP_PORT', 'SMTP_USER', 'SMTP_PASSWORD', 'ALERT_EMAIL', 'ALERT_FROM',
    'EMAIL_ALERT_MODE',
]


@pytest.fixture
def env_file(tmp_path, monkeypatch):
    # setenv first so monkeypatch also undoes values load_dotenv writes later
    for key in ENV_KEYS:
        monkeypatch.setenv(key, '')
        monkeypatch.delenv(key)
    path = tmp_path / '.env'
    path.write_text('')
    return str(path)


@pytest.fixture
def sql_login(monkeypatch):
    monkeypatch.setenv('MSSQL_SERVER', 'sql01')
    monkeypatch.setenv('MSSQL_USER', 'restore_svc')
    monkeypatch.setenv('MSSQL_PASSWORD', 'p}ss')


def test_sql_login_connection_string(env_file, sql_login):
    settings = RestoreSettings(env_file)

    assert settings.connection_string() == (
        'DRIVER={ODBC Driver 18 for SQL Server};SERVER=sql01;DATABASE=master;'
        'UID=restore_svc;PWD={p}}ss};'
    )
    assert settings.stats_percent == 1
    assert settings.login_timeout == 15
    assert str(settings.log_dir) == 'logs'


def test_trusted_connection_with_port(env_file, monkeypatch):
    monkeypatch.setenv('MSSQL_SERVER', 'sql01')
    monkeypatch.setenv('MSSQL_PORT', '1533')
    monkeypatch.setenv('MSSQL_TRUSTED_CONNECTION', 'yes')
    monkeypatch.setenv('MSSQL_TRUST_SERVER_CERTIFICATE', 'true')

    settings = RestoreSettings(env_file)

    assert settings.instance_name == 'sql01,1533'
    assert 'Trusted_Connection=yes' in settings.connection_string()
    assert 'TrustServerCertificate=yes' in settings.connection_string()
    assert 'UID=' not in settings.connection_string()


def test_values_are_read_from_env_file(tmp_path, env_file):
    path = tmp_path / 'restore.env'
    path.write_text(
        'MSSQL_SERVER=sql02\n'
        'MSSQL_TRUSTED_CONNECTION=1\n'
        'RESTORE_BUFFER_COUNT=64\n'
    )

    settings = RestoreSettings(str(path))

    assert settings.server == 'sql02'
    assert settings.buffer_count == 64


def test_missing_server_is_rejected(env_file):
    with pytest.raises(RestoreConfigurationError, match='MSSQL_SERVER'):
        RestoreSettings(env_file)


def test_missing_credentials_are_rejected(env_file, monkeypatch):
    monkeypatch.setenv('MSSQL_SERVER', 'sql01')
    monkeypatch.setenv('MSSQL_USER', 'restore_svc')

    with pytest.raises(RestoreConfigurationError, match='MSSQL_PASSWORD'):
        RestoreSettings(env_file)


def test_non_numeric_tuning_value_is_rejected(env_file, sql_login, monkeypatch):
    monkeypatch.setenv('RESTORE_BLOCK_SIZE', 'large')

    with pytest.raises(RestoreConfigurationError, match='RESTORE_BLOCK_SIZE'):
        RestoreSettings(env_file)


def test_out_of_range_stats_percent_falls_back(env_file, sql_login, monkeypatch, capsys):
    monkeypatch.setenv('RESTORE_STATS_PERCENT', '250')

    settings = RestoreSettings(env_file)

    assert settings.stats_percent == 1
    assert 'WARNING: RESTORE_STATS_PERCENT' in capsys.readouterr().out


def test_missing_env_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        RestoreSettings(str(tmp_path / 'absent.env'))


def test_email_disabled_when_smtp_settings_are_incomplete(env_file, sql_login, monkeypatch, capsys):
    monkeypatch.setenv('SMTP_HOST', 'smtp.example.com')

    settings = RestoreSettings(env_file)

    assert settings.email_enabled is False
    assert settings.smtp_host is None
    assert 'Email alerts disabled' in capsys.readouterr().out


def test_email_enabled_with_full_smtp_settings(env_file, sql_login, monkeypatch):
    monkeypatch.setenv('SMTP_HOST', 'smtp.example.com')
    monkeypatch.setenv('SMTP_PORT', '587')
    monkeypatch.setenv('SMTP_USER', 'alerts')
    monkeypatch.setenv('SMTP_PASSWORD', 'secret')
    monkeypatch.setenv('ALERT_EMAIL', 'dba@example.com')
    monkeypatch.setenv('ALERT_FROM', 'restore@example.com')
    monkeypatch.setenv('EMAIL_ALERT_MODE', 'bogus')

    settings = RestoreSettings(env_file)

    assert settings.email_enabled is True
    assert settings.smtp_port == 587
    assert settings.email_alert_mode == 'failure_only'
