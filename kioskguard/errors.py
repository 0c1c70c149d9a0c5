from __future__ import annotations

from typing import Any


class KioskGuardError(Exception):
    """Base class for errors raised by kioskguard components."""


class ConfigurationError(KioskGuardError):
    pass


class AlreadyActiveError(KioskGuardError):
    pass


class NotActiveError(KioskGuardError):
    pass


class SurfaceRequiredError(KioskGuardError):
    pass


class InvalidTransition(KioskGuardError):
    def __init__(self, machine: str, source: Any, target: Any) -> None:
        self.machine = machine
        self.source = source
        self.target = target
        super().__init__(f"{machine}: invalid transition {_label(source)} -> {_label(target)}")


class DownloadError(KioskGuardError):
    pass


class HashMismatchError(KioskGuardError):
    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(HASH_VERIFICATION_FAILED)


class ExtractError(KioskGuardError):
    pass


def _label(v: Any) -> str:
    return str(getattr(v, "value", v))


# Recovery
MONITORING_NOT_ACTIVE = "Monitoring is not active"
MAX_RESTARTS_EXCEEDED = "Maximum restart attempts exceeded"
RETRY_IN_PROGRESS = "Retry is already in progress"
MAX_RETRIES_EXCEEDED = "Maximum retry attempts exceeded"
RELOAD_FAILED = "Failed to reload window"
SURFACE_REQUIRED = "Window reference is required"

# Watchdog
WATCHDOG_ALREADY_ACTIVE = "Monitoring is already active"
INVALID_PID = "Invalid process ID"
MAX_RESTARTS_REACHED = "Maximum restart attempts reached"
PROCESS_NOT_FOUND = "Process not found"
RESTART_FAILED = "Failed to restart process"
EXECUTABLE_REQUIRED = "Executable path is required for restart"
HEARTBEAT_NOT_ACTIVE = "Heartbeat monitoring is not active"

# Updater
UPDATE_IN_PROGRESS = "Update is already in progress"
NO_UPDATE_AVAILABLE = "No update available to download"
NO_DOWNLOADED_UPDATE = "No downloaded update to apply"
VERSION_CHECK_URL_MISSING = "Version check URL is not configured"
BUFFER_DIR_MISSING = "Buffer base directory is not configured"
INVALID_VERSION_INFO = "Invalid version info received"
HASH_VERIFICATION_FAILED = "Hash verification failed"
MIN_VERSION_NOT_MET = "Minimum shell version requirement not met"
DOWNLOAD_FAILED = "Failed to download update"
EXTRACT_FAILED = "Failed to extract update"
APPLY_FAILED = "Failed to apply update"
NO_PREVIOUS_SLOT = "No previous slot version to revert to"
UPDATE_CANCELLED = "Update was cancelled"
CHECK_FAILED = "Failed to check for update"

# Rollback
BACKUP_FAILED = "Failed to create backup"
BACKUP_DIR_MISSING = "Backup directory not configured"
VERSION_NOT_FOUND = "Version not found in backups"
NO_BACKUP_AVAILABLE = "No backup available for rollback"
ROLLBACK_IN_PROGRESS = "Rollback already in progress"
ROLLBACK_FAILED = "Failed to rollback to previous version"
