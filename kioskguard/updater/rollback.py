"""
Versioned backup ledger.

Each backup is a full copy of a content directory stored under
`<backup_dir>/v<version with dots as underscores>/` and listed in
`<backup_dir>/manifest.json`. At most `max_versions` backups are kept; the
oldest (by timestamp) is evicted first.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from typing import Any, Callable, List, Mapping, Optional

from kioskguard import errors
from kioskguard.models import (
    BackupManifest,
    RollbackConfig,
    RollbackEvent,
    RollbackState,
    UpdateResult,
    VersionBackupInfo,
    merge_config,
)
from kioskguard.runtime.events import EventBus
from kioskguard.updater.fsutil import copy_dir, dir_size, read_json, remove_dir, write_json_atomic

log = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


def backup_dirname(version: str) -> str:
    return "v" + version.replace(".", "_")


class RollbackManager:
    def __init__(
        self,
        config: RollbackConfig | Mapping[str, Any] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._config = merge_config(RollbackConfig(), config)
        self._state = RollbackState()
        self._events: EventBus[RollbackEvent] = EventBus("rollback")
        if self._config.backup_dir and os.path.isdir(self._config.backup_dir):
            self._state.backups = self._read_manifest().backups

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def init(self, config: RollbackConfig | Mapping[str, Any] | None = None) -> None:
        with self._lock:
            self._config = merge_config(RollbackConfig(), config)
            backup_dir = self._config.backup_dir
            if backup_dir and os.path.isdir(backup_dir):
                self._state.backups = self._read_manifest().backups
            count = len(self._state.backups)
        log.info("Rollback manager initialized (backups=%d)", count)

    def update_config(self, updates: RollbackConfig | Mapping[str, Any]) -> None:
        with self._lock:
            self._config = merge_config(self._config, updates)
        log.info("Rollback config updated")

    def on_rollback_event(self, handler: Callable[[RollbackEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    # ---------- manifest ----------

    def _manifest_path(self) -> str:
        return os.path.join(self._config.backup_dir or "", MANIFEST_FILE)

    def _read_manifest(self) -> BackupManifest:
        raw = read_json(self._manifest_path())
        try:
            return BackupManifest.model_validate(raw)
        except ValueError:
            log.warning("Ignoring corrupt backup manifest at %s", self._manifest_path())
            return BackupManifest()

    def _write_manifest(self) -> None:
        manifest = BackupManifest(backups=self._state.backups, last_updated=self._now_ms())
        write_json_atomic(self._manifest_path(), manifest.model_dump(by_alias=True))

    # ---------- operations ----------

    def create_backup(self, source_dir: str, version: str) -> UpdateResult:
        with self._lock:
            backup_dir = self._config.backup_dir
            if not backup_dir:
                return UpdateResult(success=False, error=errors.BACKUP_DIR_MISSING)
            if any(b.version == version for b in self._state.backups):
                log.info("Backup for version %s already exists", version)
                return UpdateResult(success=True, version=version)

            log.info("Creating backup for version %s", version)
            dest = os.path.join(backup_dir, backup_dirname(version))
            info: Optional[VersionBackupInfo] = None
            try:
                # A leftover tree from an earlier failed copy must not be merged into.
                remove_dir(dest)
                copy_dir(source_dir, dest)
                info = VersionBackupInfo(version=version, path=dest, timestamp=self._now_ms(), size=dir_size(dest))
                self._state.backups.append(info)
                self._evict_oldest()
                self._write_manifest()
            except OSError as e:
                if info is not None:
                    self._state.backups = [b for b in self._state.backups if b is not info]
                shutil.rmtree(dest, ignore_errors=True)
                log.error("%s: %s", errors.BACKUP_FAILED, e)
                return UpdateResult(success=False, error=errors.BACKUP_FAILED)
        log.info("Backup created for version %s (path=%s size=%d)", version, info.path, info.size)
        return UpdateResult(success=True, version=version)

    def _evict_oldest(self) -> None:
        # caller holds the lock
        limit = self._config.max_versions
        if len(self._state.backups) <= limit:
            return
        ordered = sorted(self._state.backups, key=lambda b: b.timestamp)
        evict = ordered[: len(ordered) - limit]
        for b in evict:
            try:
                remove_dir(b.path)
                log.info("Removed old backup %s", b.version)
            except OSError as e:
                log.warning("Failed to remove old backup %s: %s", b.version, e)
        gone = {id(b) for b in evict}
        self._state.backups = [b for b in self._state.backups if id(b) not in gone]

    def rollback_to_version(self, target_version: str, dest_dir: str | os.PathLike[str]) -> UpdateResult:
        dest_dir = os.fspath(dest_dir)
        with self._lock:
            if not self._config.backup_dir:
                return UpdateResult(success=False, error=errors.BACKUP_DIR_MISSING)
            backup = next((b for b in self._state.backups if b.version == target_version), None)
            if backup is None or not os.path.isdir(backup.path):
                return UpdateResult(success=False, error=errors.VERSION_NOT_FOUND)
            if self._state.is_rolling_back:
                return UpdateResult(success=False, error=errors.ROLLBACK_IN_PROGRESS)
            self._state.is_rolling_back = True
            current = self._newest_version()

        try:
            return self._restore(backup, dest_dir, current)
        finally:
            with self._lock:
                self._state.is_rolling_back = False

    def _restore(self, backup: VersionBackupInfo, dest_dir: str, current: Optional[str]) -> UpdateResult:
        target_version = backup.version
        self._events.emit(
            RollbackEvent(type="before-rollback", timestamp=self._now_ms(), from_version=current, to_version=target_version)
        )
        log.info("Rolling back to version %s", target_version)
        staging = dest_dir.rstrip("/\\") + ".rollback-tmp"
        try:
            remove_dir(staging)
            copy_dir(backup.path, staging)
            remove_dir(dest_dir)
            os.replace(staging, dest_dir)
        except Exception as e:
            shutil.rmtree(staging, ignore_errors=True)
            with self._lock:
                self._state.last_error = str(e)
            log.error("Rollback failed: %s", e)
            self._events.emit(
                RollbackEvent(
                    type="rollback-error",
                    timestamp=self._now_ms(),
                    from_version=current,
                    to_version=target_version,
                    error=str(e),
                )
            )
            return UpdateResult(success=False, error=errors.ROLLBACK_FAILED)

        with self._lock:
            self._state.last_rollback_time = self._now_ms()
            self._state.last_error = None
        log.info("Rollback to version %s completed", target_version)
        self._events.emit(
            RollbackEvent(type="rollback-success", timestamp=self._now_ms(), from_version=current, to_version=target_version)
        )
        return UpdateResult(success=True, version=target_version)

    def rollback_to_previous(self, dest_dir: str | os.PathLike[str]) -> UpdateResult:
        with self._lock:
            ordered = self._sorted_newest_first()
            if len(ordered) < 2:
                return UpdateResult(success=False, error=errors.NO_BACKUP_AVAILABLE)
            previous = ordered[1].version
        return self.rollback_to_version(previous, dest_dir)

    def remove_backup(self, version: str) -> UpdateResult:
        with self._lock:
            backup = next((b for b in self._state.backups if b.version == version), None)
            if backup is None:
                return UpdateResult(success=False, error=errors.VERSION_NOT_FOUND)
            try:
                remove_dir(backup.path)
                self._state.backups = [b for b in self._state.backups if b.version != version]
                if self._config.backup_dir:
                    self._write_manifest()
            except OSError as e:
                log.error("Failed to remove backup %s: %s", version, e)
                return UpdateResult(success=False, error=str(e))
        log.info("Removed backup for version %s", version)
        return UpdateResult(success=True, version=version)

    def clear_all_backups(self) -> UpdateResult:
        with self._lock:
            for b in self._state.backups:
                try:
                    remove_dir(b.path)
                except OSError as e:
                    log.warning("Failed to remove backup %s: %s", b.version, e)
            self._state.backups = []
            try:
                if self._config.backup_dir:
                    self._write_manifest()
            except OSError as e:
                log.error("Failed to clear backups: %s", e)
                return UpdateResult(success=False, error=str(e))
        log.info("Cleared all backups")
        return UpdateResult(success=True)

    # ---------- queries ----------

    def _sorted_newest_first(self) -> List[VersionBackupInfo]:
        # Ties on timestamp go to the later-created backup.
        indexed = sorted(enumerate(self._state.backups), key=lambda p: (p[1].timestamp, p[0]), reverse=True)
        return [b for _, b in indexed]

    def _newest_version(self) -> Optional[str]:
        ordered = self._sorted_newest_first()
        return ordered[0].version if ordered else None

    def get_available_backups(self) -> List[VersionBackupInfo]:
        with self._lock:
            return [b.model_copy() for b in self._sorted_newest_first()]

    def has_backup(self, version: str) -> bool:
        with self._lock:
            return any(b.version == version for b in self._state.backups)

    def is_rolling_back(self) -> bool:
        with self._lock:
            return self._state.is_rolling_back

    def get_state(self) -> RollbackState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def reset(self) -> None:
        with self._lock:
            self._state = RollbackState()
            self._config = RollbackConfig()
