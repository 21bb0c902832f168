"""Exception hierarchy for the restore sequencer."""


class RestoreError(Exception):
    """Base class for restore errors."""


class RestoreConfigurationError(RestoreError):
    """Raised for invalid option combinations or settings, before any I/O."""


class BackupHistoryError(RestoreError):
    """Raised when backup history is malformed or carries an unknown backup type."""


class RestorePlanError(RestoreError):
    """Raised when the plan builder receives input it cannot sequence."""


class RestoreConnectionError(RestoreError):
    """Raised when the SQL Server instance cannot be reached."""
