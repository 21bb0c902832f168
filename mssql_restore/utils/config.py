"""Configuration loader for the SQL Server restore tool."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from mssql_restore.restore.errors import RestoreConfigurationError


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise RestoreConfigurationError(f"{name} must be an integer, got '{value}'")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class RestoreSettings:
    """Load and validate configuration from .env file."""

    def __init__(self, env_file=None):
        """Load configuration from environment file."""
        if env_file:
            if not os.path.exists(env_file):
                raise FileNotFoundError(f"Environment file not found: {env_file}")
            load_dotenv(env_file)
        else:
            load_dotenv()

        self._load_and_validate()

    def _load_and_validate(self):
        """Load environment variables and validate required fields."""
        # Connection settings
        self.server = os.getenv('MSSQL_SERVER', '').strip()
        if not self.server:
            raise RestoreConfigurationError("Missing required environment variable: MSSQL_SERVER")
        self.port = _env_int('MSSQL_PORT')
        self.driver = os.getenv('MSSQL_DRIVER', 'ODBC Driver 18 for SQL Server')
        self.trusted_connection = _env_bool('MSSQL_TRUSTED_CONNECTION')
        self.trust_server_certificate = _env_bool('MSSQL_TRUST_SERVER_CERTIFICATE')
        self.user = os.getenv('MSSQL_USER')
        self.password = os.getenv('MSSQL_PASSWORD')
        if not self.trusted_connection:
            missing = [var for var in ('MSSQL_USER', 'MSSQL_PASSWORD') if not os.getenv(var)]
            if missing:
                raise RestoreConfigurationError(
                    f"Missing required environment variables: {', '.join(missing)} "
                    "(or set MSSQL_TRUSTED_CONNECTION=yes)"
                )

        self.login_timeout = _env_int('MSSQL_LOGIN_TIMEOUT', 15)
        if self.login_timeout < 1:
            print("WARNING: MSSQL_LOGIN_TIMEOUT must be >= 1, using 15")
            self.login_timeout = 15

        # Restore tuning, applied unless overridden on the command line
        self.max_transfer_size = _env_int('RESTORE_MAX_TRANSFER_SIZE')
        self.block_size = _env_int('RESTORE_BLOCK_SIZE')
        self.buffer_count = _env_int('RESTORE_BUFFER_COUNT')
        self.stats_percent = _env_int('RESTORE_STATS_PERCENT', 1)
        if not 1 <= self.stats_percent <= 100:
            print("WARNING: RESTORE_STATS_PERCENT must be between 1 and 100, using 1")
            self.stats_percent = 1

        # Log directory
        self.log_dir = Path(os.getenv('RESTORE_LOG_DIR', 'logs'))

        # Label used in alert subjects (optional)
        self.instance_label = os.getenv('INSTANCE_LABEL', '').strip()

        # Email settings
        optional_email_vars = [
            'SMTP_HOST', 'SMTP_PORT', 'SMTP_USER', 'SMTP_PASSWORD',
            'ALERT_EMAIL', 'ALERT_FROM'
        ]
        missing_email = [var for var in optional_email_vars if not os.getenv(var)]
        self.email_enabled = len(missing_email) == 0

        email_alert_mode = os.getenv('EMAIL_ALERT_MODE', 'failure_only').lower()
        if email_alert_mode not in ['both', 'failure_only', 'none']:
            print(f"WARNING: Invalid EMAIL_ALERT_MODE '{email_alert_mode}', using 'failure_only'")
            email_alert_mode = 'failure_only'
        self.email_alert_mode = email_alert_mode

        if email_alert_mode == 'none':
            self.email_enabled = False
        elif missing_email:
            print(
                "WARNING: Email alerts disabled due to missing variables: "
                + ', '.join(missing_email)
            )

        if self.email_enabled:
            self.smtp_host = os.getenv('SMTP_HOST')
            self.smtp_port = _env_int('SMTP_PORT')
            self.smtp_user = os.getenv('SMTP_USER')
            self.smtp_password = os.getenv('SMTP_PASSWORD')
            self.alert_email = os.getenv('ALERT_EMAIL')
            self.alert_from = os.getenv('ALERT_FROM')
        else:
            self.smtp_host = None
            self.smtp_port = None
            self.smtp_user = None
            self.smtp_password = None
            self.alert_email = None
            self.alert_from = None

    @property
    def instance_name(self) -> str:
        return f"{self.server},{self.port}" if self.port else self.server

    def connection_string(self) -> str:
        """ODBC connection string for the master database."""
        parts = [
            f"DRIVER={{{self.driver}}}",
            f"SERVER={self.instance_name}",
            "DATABASE=master",
        ]
        if self.trusted_connection:
            parts.append("Trusted_Connection=yes")
        else:
            parts.append(f"UID={self.user}")
            parts.append(f"PWD={{{self.password.replace('}', '}}')}}}")
        if self.trust_server_certificate:
            parts.append("TrustServerCertificate=yes")
        return ';'.join(parts) + ';'
