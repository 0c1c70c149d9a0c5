from __future__ import annotations

import json
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

from kioskguard.models import (
    AutoRetryConfig,
    BlankDetectorConfig,
    BusinessUpdaterConfig,
    CrashHandlerConfig,
    HeartbeatConfig,
    MonitorConfig,
    RecoveryConfig,
    RollbackConfig,
)


def _json_list(raw: str | None) -> List[str]:
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    return [str(x) for x in data]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="KIOSKGUARD_", extra="ignore")

    device_id: str = "kiosk"
    audit_log_path: str = "var/audit/kioskguard_audit.jsonl"
    log_path: str | None = "var/log/kioskguard.log"
    log_level: str = "INFO"

    # Supervisor HTTP surface (heartbeat channel + state queries)
    service_host: str = "127.0.0.1"
    service_port: int = 8765

    # Process watchdog
    watchdog_pid: int | None = None
    watchdog_process_name: str | None = None
    watchdog_check_interval_ms: int = 5_000
    watchdog_auto_restart: bool = True
    watchdog_restart_strategy: str = "exponential-backoff"  # immediate|delayed|exponential-backoff|none
    watchdog_max_restart_attempts: int = 5  # 0 = unlimited
    watchdog_restart_delay_ms: int = 2_000
    watchdog_max_backoff_delay_ms: int = 60_000
    watchdog_executable_path: str | None = None
    # JSON list, e.g. ["--kiosk", "--no-sandbox"]
    watchdog_executable_args_json: str | None = None
    watchdog_working_directory: str | None = None
    watchdog_restart_on_unresponsive: bool = True

    # Heartbeat
    heartbeat_interval_ms: int = 3_000
    heartbeat_timeout_ms: int = 10_000
    heartbeat_missed_threshold: int = 3
    heartbeat_channel: str = "kiosk-heartbeat"
    # Heartbeat tracking starts this long after (re)launch so a booting host is not counted as missed.
    heartbeat_startup_grace_ms: int = 15_000
    # Where the kiosk host posts its pings (the supervisor's /heartbeat route)
    heartbeat_supervisor_url: str = "http://127.0.0.1:8765/heartbeat"

    # Crash recovery (per UI surface)
    recovery_auto_restart: bool = True
    recovery_max_restarts: int = 3
    recovery_restart_window_ms: int = 60_000
    recovery_restart_delay_ms: int = 1_000

    # Blank-screen detection
    blank_check_interval_ms: int = 5_000
    blank_load_timeout_ms: int = 30_000
    blank_min_content_height: int = 100
    blank_threshold: int = 3

    # Auto retry after a blank screen
    retry_max_retries: int = 5
    retry_initial_delay_ms: int = 1_000
    retry_max_delay_ms: int = 30_000
    retry_strategy: str = "exponential"  # fixed|linear|exponential
    retry_backoff_multiplier: float = 2.0

    # Business content updater (A/B slots)
    updater_buffer_base_dir: str = "var/content"
    updater_version_check_url: str | None = None
    updater_timeout_ms: int = 30_000
    updater_verify_hash: bool = True
    updater_check_interval_ms: int = 3_600_000
    updater_auto_download: bool = True
    updater_auto_apply: bool = False
    shell_version: str | None = None

    # A surface exhausting its restarts this soon after a slot switch triggers a revert.
    post_update_grace_ms: int = 120_000

    # Rollback ledger
    rollback_backup_dir: str = "var/backups"
    rollback_max_versions: int = 3

    # Optional fleet webhooks (JSON lists)
    remote_webhook_urls_json: str | None = None
    remote_event_types_json: str | None = None

    def monitor_config(self) -> MonitorConfig:
        return MonitorConfig(
            pid=self.watchdog_pid,
            process_name=self.watchdog_process_name,
            check_interval_ms=self.watchdog_check_interval_ms,
            auto_restart=self.watchdog_auto_restart,
            restart_strategy=self.watchdog_restart_strategy,
            max_restart_attempts=self.watchdog_max_restart_attempts,
            restart_delay_ms=self.watchdog_restart_delay_ms,
            max_backoff_delay_ms=self.watchdog_max_backoff_delay_ms,
            executable_path=self.watchdog_executable_path,
            executable_args=_json_list(self.watchdog_executable_args_json),
            working_directory=self.watchdog_working_directory,
            restart_on_unresponsive=self.watchdog_restart_on_unresponsive,
        )

    def heartbeat_config(self) -> HeartbeatConfig:
        return HeartbeatConfig(
            interval_ms=self.heartbeat_interval_ms,
            timeout_ms=self.heartbeat_timeout_ms,
            missed_threshold=self.heartbeat_missed_threshold,
            channel=self.heartbeat_channel,
        )

    def recovery_config(self) -> RecoveryConfig:
        return RecoveryConfig(
            crash=CrashHandlerConfig(
                auto_restart=self.recovery_auto_restart,
                max_restarts=self.recovery_max_restarts,
                restart_window_ms=self.recovery_restart_window_ms,
                restart_delay_ms=self.recovery_restart_delay_ms,
            ),
            blank=BlankDetectorConfig(
                check_interval_ms=self.blank_check_interval_ms,
                load_timeout_ms=self.blank_load_timeout_ms,
                min_content_height=self.blank_min_content_height,
                blank_threshold=self.blank_threshold,
            ),
            retry=AutoRetryConfig(
                max_retries=self.retry_max_retries,
                initial_delay_ms=self.retry_initial_delay_ms,
                max_delay_ms=self.retry_max_delay_ms,
                strategy=self.retry_strategy,
                backoff_multiplier=self.retry_backoff_multiplier,
            ),
        )

    def updater_config(self) -> BusinessUpdaterConfig:
        return BusinessUpdaterConfig(
            buffer_base_dir=self.updater_buffer_base_dir,
            version_check_url=self.updater_version_check_url,
            timeout_ms=self.updater_timeout_ms,
            verify_hash=self.updater_verify_hash,
            check_interval_ms=self.updater_check_interval_ms,
            auto_download=self.updater_auto_download,
            auto_apply=self.updater_auto_apply,
            shell_version=self.shell_version,
        )

    def rollback_config(self) -> RollbackConfig:
        return RollbackConfig(max_versions=self.rollback_max_versions, backup_dir=self.rollback_backup_dir)

    def remote_webhook_urls(self) -> List[str]:
        return _json_list(self.remote_webhook_urls_json)

    def remote_event_types(self) -> List[str]:
        return _json_list(self.remote_event_types_json)
