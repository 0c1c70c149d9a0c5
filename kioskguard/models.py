from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


ModelT = TypeVar("ModelT", bound=BaseModel)


def merge_config(base: ModelT, updates: Mapping[str, Any] | BaseModel | None) -> ModelT:
    """
    Return a validated copy of `base` with `updates` applied.
    Unlike `model_copy(update=...)` the result is re-validated, so bad values raise.
    """
    if updates is None:
        return base.model_copy(deep=True)
    if isinstance(updates, BaseModel):
        updates = updates.model_dump(exclude_unset=True)
    data = base.model_dump()
    data.update(dict(updates))
    return type(base).model_validate(data)


# ---------- Recovery ----------


class CrashReason(str, Enum):
    crashed = "crashed"
    oom = "oom"
    abnormal_exit = "abnormal-exit"
    killed = "killed"
    normal_exit = "normal-exit"
    launch_failed = "launch-failed"
    integrity_failure = "integrity-failure"


RESTARTABLE_CRASH_REASONS = frozenset({CrashReason.crashed, CrashReason.oom, CrashReason.abnormal_exit})


def is_restartable(reason: CrashReason) -> bool:
    return reason in RESTARTABLE_CRASH_REASONS


class CrashEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    surface_id: str
    reason: CrashReason
    exit_code: int
    timestamp: int = Field(..., description="Unix epoch milliseconds.")
    url: Optional[str] = None


class RecoveryAction(str, Enum):
    reload = "reload"
    restart = "restart"
    none = "none"


class RecoveryResult(BaseModel):
    success: bool
    error: Optional[str] = None
    action: Optional[RecoveryAction] = None


class CrashHandlerConfig(BaseModel):
    auto_restart: bool = True
    max_restarts: int = Field(3, ge=0)
    restart_window_ms: int = Field(60_000, gt=0)
    restart_delay_ms: int = Field(1_000, ge=0)


class CrashHandlerState(BaseModel):
    surface_id: str
    active: bool = False
    crashes: List[CrashEvent] = Field(default_factory=list)
    max_restarts_exceeded: bool = False
    config: CrashHandlerConfig = Field(default_factory=CrashHandlerConfig)


class BlankReason(str, Enum):
    empty_body = "empty-body"
    no_body = "no-body"
    no_content = "no-content"
    timeout = "timeout"
    error = "error"


class BlankDetectionResult(BaseModel):
    is_blank: bool
    reason: Optional[BlankReason] = None
    details: Optional[str] = None
    timestamp: int = Field(..., description="Unix epoch milliseconds.")


class BlankDetectorConfig(BaseModel):
    check_interval_ms: int = Field(5_000, gt=0)
    load_timeout_ms: int = Field(30_000, gt=0)
    min_content_height: int = Field(100, ge=0)
    blank_threshold: int = Field(3, ge=1)


class BlankDetectorState(BaseModel):
    surface_id: str
    active: bool = False
    consecutive_blank_count: int = 0
    last_result: Optional[BlankDetectionResult] = None
    config: BlankDetectorConfig = Field(default_factory=BlankDetectorConfig)


class RetryStrategy(str, Enum):
    fixed = "fixed"
    linear = "linear"
    exponential = "exponential"


class AutoRetryConfig(BaseModel):
    max_retries: int = Field(5, ge=0)
    initial_delay_ms: int = Field(1_000, ge=0)
    max_delay_ms: int = Field(30_000, ge=0)
    strategy: RetryStrategy = RetryStrategy.exponential
    backoff_multiplier: float = Field(2.0, ge=1.0)


class AutoRetryState(BaseModel):
    surface_id: str
    retrying: bool = False
    current_attempt: int = 0
    total_retries: int = 0
    last_retry_time: Optional[int] = None
    next_delay_ms: Optional[int] = None
    config: AutoRetryConfig = Field(default_factory=AutoRetryConfig)


class RecoveryConfig(BaseModel):
    crash: CrashHandlerConfig = Field(default_factory=CrashHandlerConfig)
    blank: BlankDetectorConfig = Field(default_factory=BlankDetectorConfig)
    retry: AutoRetryConfig = Field(default_factory=AutoRetryConfig)


class RecoveryState(BaseModel):
    """
    Combined per-surface view over crash history and blank detection.
    """

    surface_id: str
    active: bool = False
    consecutive_blank_count: int = 0
    crashes: List[CrashEvent] = Field(default_factory=list)
    max_restarts_exceeded: bool = False
    config: RecoveryConfig = Field(default_factory=RecoveryConfig)


RecoveryEventType = Literal[
    "crash",
    "max-restarts-exceeded",
    "blank-detected",
    "surface-reloaded",
    "before-retry",
    "retry-success",
    "retry-failed",
    "max-retries-exceeded",
]


class RecoveryEvent(BaseModel):
    type: RecoveryEventType
    surface_id: str
    timestamp: int
    crash: Optional[CrashEvent] = None
    blank: Optional[BlankDetectionResult] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------- Watchdog ----------


class ProcessState(str, Enum):
    unknown = "unknown"
    running = "running"
    stopped = "stopped"
    crashed = "crashed"
    unresponsive = "unresponsive"


class RestartStrategy(str, Enum):
    immediate = "immediate"
    delayed = "delayed"
    exponential_backoff = "exponential-backoff"
    none = "none"


class MonitorConfig(BaseModel):
    pid: Optional[int] = None
    process_name: Optional[str] = None
    check_interval_ms: int = Field(5_000, gt=0)
    auto_restart: bool = True
    restart_strategy: RestartStrategy = RestartStrategy.exponential_backoff
    # 0 means unlimited
    max_restart_attempts: int = Field(5, ge=0)
    restart_delay_ms: int = Field(2_000, ge=0)
    max_backoff_delay_ms: int = Field(60_000, ge=0)
    executable_path: Optional[str] = None
    executable_args: List[str] = Field(default_factory=list)
    working_directory: Optional[str] = None
    restart_on_unresponsive: bool = True


class MonitorState(BaseModel):
    active: bool = False
    process_state: ProcessState = ProcessState.unknown
    pid: Optional[int] = None
    restart_attempts: int = 0
    current_backoff_delay_ms: int = 0
    # unix seconds
    last_check: Optional[float] = None
    last_state_change: Optional[float] = None


class HeartbeatConfig(BaseModel):
    interval_ms: int = Field(3_000, gt=0)
    timeout_ms: int = Field(10_000, gt=0)
    missed_threshold: int = Field(3, ge=1)
    channel: str = "kiosk-heartbeat"


class HeartbeatState(BaseModel):
    active: bool = False
    # unix seconds
    last_heartbeat: Optional[float] = None
    missed_count: int = 0
    responsive: bool = True


class ProcessInfo(BaseModel):
    pid: int
    name: Optional[str] = None
    running: bool = True
    cpu_percent: Optional[float] = None
    memory_bytes: Optional[int] = None
    started_at: Optional[float] = None


class WatchdogEventType(str, Enum):
    process_started = "process-started"
    process_stopped = "process-stopped"
    process_crashed = "process-crashed"
    process_unresponsive = "process-unresponsive"
    process_restarted = "process-restarted"
    heartbeat_received = "heartbeat-received"
    heartbeat_missed = "heartbeat-missed"
    monitoring_started = "monitoring-started"
    monitoring_stopped = "monitoring-stopped"
    restart_failed = "restart-failed"
    max_restarts_reached = "max-restarts-reached"


class WatchdogEvent(BaseModel):
    type: WatchdogEventType
    timestamp: float
    pid: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------- Updater ----------


class UpdateStatus(str, Enum):
    idle = "idle"
    checking = "checking"
    available = "available"
    not_available = "not-available"
    downloading = "downloading"
    downloaded = "downloaded"
    installing = "installing"
    error = "error"


class BufferSlot(str, Enum):
    a = "A"
    b = "B"

    @property
    def other(self) -> "BufferSlot":
        return BufferSlot.b if self is BufferSlot.a else BufferSlot.a

    @property
    def dirname(self) -> str:
        return "slot-a" if self is BufferSlot.a else "slot-b"


class BufferSlotInfo(BaseModel):
    slot: BufferSlot
    path: str
    version: Optional[str] = None
    active: bool = False
    last_updated: Optional[int] = None


class VersionInfo(BaseModel):
    """
    Version metadata served by the content update endpoint.
    Accepts the camelCase wire format (downloadUrl, releaseNotes, minShellVersion).
    """

    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(..., min_length=1)
    download_url: str = Field(..., min_length=1, alias="downloadUrl")
    hash: str = Field(..., min_length=1)
    size: Optional[int] = None
    release_notes: Optional[str] = Field(default=None, alias="releaseNotes")
    min_shell_version: Optional[str] = Field(default=None, alias="minShellVersion")


class DownloadProgress(BaseModel):
    percent: float = 0.0
    transferred: int = 0
    total: Optional[int] = None
    bytes_per_second: float = 0.0


class BusinessUpdaterConfig(BaseModel):
    buffer_base_dir: Optional[str] = None
    version_check_url: Optional[str] = None
    timeout_ms: int = Field(30_000, gt=0)
    verify_hash: bool = True
    check_interval_ms: int = Field(3_600_000, gt=0)
    auto_download: bool = True
    auto_apply: bool = False
    shell_version: Optional[str] = None


class BusinessUpdaterState(BaseModel):
    status: UpdateStatus = UpdateStatus.idle
    active_slot: BufferSlot = BufferSlot.a
    current_version: Optional[str] = None
    slot_a: Optional[BufferSlotInfo] = None
    slot_b: Optional[BufferSlotInfo] = None
    download_progress: float = 0.0
    pending_update: Optional[VersionInfo] = None
    last_error: Optional[str] = None
    last_check: Optional[float] = None
    last_applied: Optional[float] = None
    # Versions abandoned by revert(); never offered again.
    rejected_versions: List[str] = Field(default_factory=list)


class UpdateResult(BaseModel):
    success: bool
    error: Optional[str] = None
    version: Optional[str] = None


UpdaterEventType = Literal[
    "update-available",
    "update-not-available",
    "download-progress",
    "update-ready",
    "update-applied",
    "update-reverted",
    "error",
]


class UpdaterEvent(BaseModel):
    type: UpdaterEventType
    timestamp: float
    version: Optional[str] = None
    progress: Optional[DownloadProgress] = None
    error: Optional[str] = None


class RollbackConfig(BaseModel):
    max_versions: int = Field(3, ge=1)
    backup_dir: Optional[str] = None


class VersionBackupInfo(BaseModel):
    version: str
    path: str
    timestamp: int = Field(..., description="Unix epoch milliseconds.")
    size: int = 0


class BackupManifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backups: List[VersionBackupInfo] = Field(default_factory=list)
    last_updated: int = Field(0, alias="lastUpdated")


class RollbackState(BaseModel):
    backups: List[VersionBackupInfo] = Field(default_factory=list)
    is_rolling_back: bool = False
    last_rollback_time: Optional[int] = None
    last_error: Optional[str] = None


HostEventType = Literal["content-reverted", "escalate"]


class HostEvent(BaseModel):
    type: HostEventType
    timestamp: float
    surface_id: Optional[str] = None
    reason: Optional[str] = None
    version: Optional[str] = None


RollbackEventType = Literal["before-rollback", "rollback-success", "rollback-error"]


class RollbackEvent(BaseModel):
    type: RollbackEventType
    timestamp: int
    from_version: Optional[str] = None
    to_version: Optional[str] = None
    error: Optional[str] = None
