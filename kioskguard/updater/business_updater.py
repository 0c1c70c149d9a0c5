"""
A/B buffered content updater.

Layout under `buffer_base_dir`:

    active-slot.json      {"slot": "A"|"B", "timestamp": <ms>}
    slot-a/version.json   {"version": "...", "timestamp": <ms>}
    slot-b/version.json
    update.zip            transient download

Downloads only ever touch the inactive slot, and `apply()` is a single atomic
rewrite of active-slot.json, so the previously active slot stays intact and
`revert()` is a pointer flip.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx
from pydantic import ValidationError

from kioskguard import errors
from kioskguard.errors import DownloadError, ExtractError, HashMismatchError
from kioskguard.models import (
    BufferSlot,
    BufferSlotInfo,
    BusinessUpdaterConfig,
    BusinessUpdaterState,
    DownloadProgress,
    UpdateResult,
    UpdateStatus,
    UpdaterEvent,
    VersionInfo,
    merge_config,
)
from kioskguard.runtime.events import EventBus
from kioskguard.runtime.state_machine import StateMachine
from kioskguard.runtime.timers import PeriodicTask, Scheduler, ThreadScheduler
from kioskguard.updater.download import download_file
from kioskguard.updater.fsutil import (
    clear_dir,
    ensure_dir,
    extract_zip,
    read_json,
    sha256_file,
    write_json_atomic,
)

log = logging.getLogger(__name__)

ACTIVE_SLOT_FILE = "active-slot.json"
VERSION_FILE = "version.json"
PACKAGE_FILE = "update.zip"

S = UpdateStatus
STATUS_TRANSITIONS = {
    S.idle: {S.checking},
    S.not_available: {S.checking},
    S.error: {S.checking},
    S.checking: {S.available, S.not_available, S.error},
    S.available: {S.downloading, S.checking},
    S.downloading: {S.downloaded, S.error},
    S.downloaded: {S.installing, S.checking},
    S.installing: {S.idle, S.error},
}


def version_tuple(v: str) -> Tuple[int, ...]:
    return tuple(int(p) for p in re.findall(r"\d+", v.split("-", 1)[0])) or (0,)


def _normalize_hash(h: str) -> str:
    h = h.strip().lower()
    return h.split(":", 1)[1] if h.startswith("sha256:") else h


class BusinessUpdater:
    def __init__(
        self,
        config: BusinessUpdaterConfig | Mapping[str, Any] | None = None,
        *,
        scheduler: Optional[Scheduler] = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._scheduler = scheduler or ThreadScheduler()
        self._transport = transport
        self._lock = threading.RLock()
        self._config = merge_config(BusinessUpdaterConfig(), config)
        self._status: StateMachine[UpdateStatus] = StateMachine(
            UpdateStatus.idle, STATUS_TRANSITIONS, name="business_updater"
        )
        self._state = BusinessUpdaterState()
        self._epoch = 0
        self._events: EventBus[UpdaterEvent] = EventBus("business_updater")
        self._auto_task: Optional[PeriodicTask] = None
        if self._config.buffer_base_dir:
            self._load_slots()

    # ---------- setup ----------

    def init(self, config: BusinessUpdaterConfig | Mapping[str, Any] | None = None) -> BusinessUpdaterState:
        with self._lock:
            if config is not None:
                self._config = merge_config(self._config, config)
            if not self._config.buffer_base_dir:
                raise errors.ConfigurationError(errors.BUFFER_DIR_MISSING)
            self._load_slots()
            log.info(
                "Business updater initialized (active slot=%s version=%s)",
                self._state.active_slot.value,
                self._state.current_version,
            )
            return self.get_state()

    def update_config(self, updates: BusinessUpdaterConfig | Mapping[str, Any]) -> None:
        with self._lock:
            old = self._config
            self._config = merge_config(self._config, updates)
            if self._config.buffer_base_dir and self._config.buffer_base_dir != old.buffer_base_dir:
                self._load_slots()
            if self._auto_task is not None and self._config.check_interval_ms != old.check_interval_ms:
                self._auto_task.reschedule(self._config.check_interval_ms / 1000.0)

    def get_config(self) -> BusinessUpdaterConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def on_updater_event(self, handler: Callable[[UpdaterEvent], None]) -> Callable[[], None]:
        return self._events.subscribe(handler)

    # ---------- paths ----------

    def _base(self) -> str:
        return self._config.buffer_base_dir or ""

    def _slot_path(self, slot: BufferSlot) -> str:
        return os.path.join(self._base(), slot.dirname)

    def _package_path(self) -> str:
        return os.path.join(self._base(), PACKAGE_FILE)

    def _marker_path(self) -> str:
        return os.path.join(self._base(), ACTIVE_SLOT_FILE)

    def get_active_slot_path(self) -> Optional[str]:
        with self._lock:
            if not self._config.buffer_base_dir:
                return None
            return self._slot_path(self._state.active_slot)

    def get_inactive_slot_path(self) -> Optional[str]:
        with self._lock:
            if not self._config.buffer_base_dir:
                return None
            return self._slot_path(self._state.active_slot.other)

    def _load_slots(self) -> None:
        ensure_dir(self._base())
        marker = read_json(self._marker_path())
        try:
            active = BufferSlot(marker.get("slot", BufferSlot.a.value))
        except ValueError:
            log.warning("Ignoring corrupt %s: %r", ACTIVE_SLOT_FILE, marker)
            active = BufferSlot.a
        infos: Dict[BufferSlot, BufferSlotInfo] = {}
        for slot in BufferSlot:
            path = self._slot_path(slot)
            ensure_dir(path)
            meta = read_json(os.path.join(path, VERSION_FILE))
            infos[slot] = BufferSlotInfo(
                slot=slot,
                path=path,
                version=meta.get("version") or None,
                active=slot == active,
                last_updated=meta.get("timestamp"),
            )
        self._state.active_slot = active
        self._state.slot_a = infos[BufferSlot.a]
        self._state.slot_b = infos[BufferSlot.b]
        self._state.current_version = infos[active].version

    def _slot_info(self, slot: BufferSlot) -> Optional[BufferSlotInfo]:
        return self._state.slot_a if slot is BufferSlot.a else self._state.slot_b

    def _set_slot_info(self, info: BufferSlotInfo) -> None:
        if info.slot is BufferSlot.a:
            self._state.slot_a = info
        else:
            self._state.slot_b = info

    def _set_status(self, status: UpdateStatus) -> None:
        # caller holds the lock
        self._status.transition(status)
        self._state.status = status

    def _now_ms(self) -> int:
        return int(self._scheduler.now() * 1000)

    def _emit(self, typ: str, **kw: Any) -> None:
        self._events.emit(UpdaterEvent(type=typ, timestamp=self._scheduler.now(), **kw))

    def _fail(self, epoch: int, message: str) -> UpdateResult:
        with self._lock:
            if epoch != self._epoch:
                return UpdateResult(success=False, error=errors.UPDATE_CANCELLED)
            self._set_status(UpdateStatus.error)
            self._state.last_error = message
        log.error("Business update failed: %s", message)
        self._emit("error", error=message)
        return UpdateResult(success=False, error=message)

    # ---------- operations ----------

    def check_for_update(self) -> UpdateResult:
        with self._lock:
            if self._state.status in (UpdateStatus.checking, UpdateStatus.downloading, UpdateStatus.installing):
                return UpdateResult(success=False, error=errors.UPDATE_IN_PROGRESS)
            url = self._config.version_check_url
            if not url:
                return UpdateResult(success=False, error=errors.VERSION_CHECK_URL_MISSING)
            self._set_status(UpdateStatus.checking)
            self._state.last_error = None
            epoch = self._epoch
            timeout_s = self._config.timeout_ms / 1000.0
            shell_version = self._config.shell_version

        log.info("Checking for business update at %s", url)
        try:
            with httpx.Client(timeout=timeout_s, transport=self._transport, follow_redirects=True) as c:
                r = c.get(url, headers={"Accept": "application/json"})
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            return self._fail(epoch, f"{errors.CHECK_FAILED}: {e}")
        except Exception as e:
            log.exception("Unexpected error while checking for business update")
            return self._fail(epoch, f"{errors.CHECK_FAILED}: {e}")

        try:
            info = VersionInfo.model_validate(data)
        except ValidationError:
            return self._fail(epoch, errors.INVALID_VERSION_INFO)

        if info.min_shell_version and shell_version:
            if version_tuple(shell_version) < version_tuple(info.min_shell_version):
                return self._fail(epoch, errors.MIN_VERSION_NOT_MET)

        with self._lock:
            if epoch != self._epoch:
                return UpdateResult(success=False, error=errors.UPDATE_CANCELLED)
            self._state.last_check = self._scheduler.now()
            if info.version == self._state.current_version or info.version in self._state.rejected_versions:
                self._set_status(UpdateStatus.not_available)
                self._state.pending_update = None
                current = self._state.current_version
                available = False
            else:
                self._set_status(UpdateStatus.available)
                self._state.pending_update = info
                available = True

        if not available:
            log.info("No business update available (current=%s)", current)
            self._emit("update-not-available", version=info.version)
            return UpdateResult(success=True)
        log.info("Business update available: %s", info.version)
        self._emit("update-available", version=info.version)
        return UpdateResult(success=True, version=info.version)

    def download(self) -> UpdateResult:
        with self._lock:
            status = self._state.status
            if status in (UpdateStatus.checking, UpdateStatus.downloading):
                return UpdateResult(success=False, error=errors.UPDATE_IN_PROGRESS)
            info = self._state.pending_update
            if status != UpdateStatus.available or info is None:
                return UpdateResult(success=False, error=errors.NO_UPDATE_AVAILABLE)
            if not self._config.buffer_base_dir:
                return UpdateResult(success=False, error=errors.BUFFER_DIR_MISSING)
            self._set_status(UpdateStatus.downloading)
            self._state.download_progress = 0.0
            epoch = self._epoch
            target = self._state.active_slot.other
            slot_path = self._slot_path(target)
            pkg = self._package_path()
            timeout_s = self._config.timeout_ms / 1000.0
            verify = self._config.verify_hash

        log.info("Downloading business update %s into slot %s", info.version, target.value)
        try:
            download_file(
                info.download_url,
                pkg,
                timeout_s=timeout_s,
                transport=self._transport,
                on_progress=lambda p: self._on_progress(epoch, p),
            )
            if verify:
                actual = sha256_file(pkg)
                if actual != _normalize_hash(info.hash):
                    raise HashMismatchError(_normalize_hash(info.hash), actual)
        except HashMismatchError as e:
            log.error("Hash mismatch for %s: expected %s got %s", info.version, e.expected, e.actual)
            _unlink_quiet(pkg)
            return self._fail(epoch, errors.HASH_VERIFICATION_FAILED)
        except DownloadError as e:
            return self._fail(epoch, str(e))
        except Exception as e:
            log.exception("Unexpected error while downloading %s", info.version)
            _unlink_quiet(pkg)
            return self._fail(epoch, f"{errors.DOWNLOAD_FAILED}: {e}")

        now_ms = self._now_ms()
        try:
            clear_dir(slot_path, keep=[VERSION_FILE])
            extract_zip(pkg, slot_path)
            write_json_atomic(os.path.join(slot_path, VERSION_FILE), {"version": info.version, "timestamp": now_ms})
        except Exception as e:
            if not isinstance(e, (ExtractError, OSError)):
                log.exception("Unexpected error while extracting %s", info.version)
            # The slot no longer matches its old version.json.
            _unlink_quiet(os.path.join(slot_path, VERSION_FILE))
            with self._lock:
                if epoch == self._epoch:
                    self._set_slot_info(BufferSlotInfo(slot=target, path=slot_path, version=None))
            return self._fail(epoch, f"{errors.EXTRACT_FAILED}: {e}")
        finally:
            _unlink_quiet(pkg)

        with self._lock:
            if epoch != self._epoch:
                return UpdateResult(success=False, error=errors.UPDATE_CANCELLED)
            self._set_slot_info(
                BufferSlotInfo(slot=target, path=slot_path, version=info.version, active=False, last_updated=now_ms)
            )
            self._state.download_progress = 100.0
            self._set_status(UpdateStatus.downloaded)
        log.info("Business update %s ready in slot %s", info.version, target.value)
        self._emit("update-ready", version=info.version)
        return UpdateResult(success=True, version=info.version)

    def apply(self) -> UpdateResult:
        with self._lock:
            if self._state.status != UpdateStatus.downloaded:
                return UpdateResult(success=False, error=errors.NO_DOWNLOADED_UPDATE)
            target = self._state.active_slot.other
            version = (self._slot_info(target) or BufferSlotInfo(slot=target, path="")).version
            self._set_status(UpdateStatus.installing)
            epoch = self._epoch

        try:
            self._write_marker(target)
        except OSError as e:
            return self._fail(epoch, f"{errors.APPLY_FAILED}: {e}")

        with self._lock:
            if epoch != self._epoch:
                return UpdateResult(success=False, error=errors.UPDATE_CANCELLED)
            self._activate(target)
            self._state.pending_update = None
            self._state.download_progress = 0.0
            self._state.last_applied = self._scheduler.now()
            self._set_status(UpdateStatus.idle)
        log.info("Business update %s applied (active slot=%s)", version, target.value)
        self._emit("update-applied", version=version)
        return UpdateResult(success=True, version=version)

    def revert(self) -> UpdateResult:
        """Point back at the other slot; the version being left is never offered again."""
        with self._lock:
            if self._state.status in (UpdateStatus.checking, UpdateStatus.downloading, UpdateStatus.installing):
                return UpdateResult(success=False, error=errors.UPDATE_IN_PROGRESS)
            if self._state.status == UpdateStatus.downloaded:
                # The other slot holds the new download, not the previous version.
                return UpdateResult(success=False, error=errors.NO_PREVIOUS_SLOT)
            target = self._state.active_slot.other
            info = self._slot_info(target)
            if info is None or not info.version:
                return UpdateResult(success=False, error=errors.NO_PREVIOUS_SLOT)
            leaving = self._state.current_version

        try:
            self._write_marker(target)
        except OSError as e:
            log.error("Failed to revert business slot: %s", e)
            return UpdateResult(success=False, error=f"{errors.APPLY_FAILED}: {e}")

        with self._lock:
            self._activate(target)
            if leaving and leaving not in self._state.rejected_versions:
                self._state.rejected_versions.append(leaving)
        log.warning("Reverted business content %s -> %s (slot=%s)", leaving, info.version, target.value)
        self._emit("update-reverted", version=info.version)
        return UpdateResult(success=True, version=info.version)

    def reject_version(self, version: str) -> None:
        """Never offer `version` again, e.g. after the ledger rolled its content back."""
        with self._lock:
            if version not in self._state.rejected_versions:
                self._state.rejected_versions.append(version)

    def reload_slots(self) -> None:
        """Re-read slot metadata after the slot contents were changed externally."""
        with self._lock:
            if self._config.buffer_base_dir:
                self._load_slots()

    def _write_marker(self, slot: BufferSlot) -> None:
        write_json_atomic(self._marker_path(), {"slot": slot.value, "timestamp": self._now_ms()})

    def _activate(self, slot: BufferSlot) -> None:
        # caller holds the lock
        self._state.active_slot = slot
        for s in BufferSlot:
            info = self._slot_info(s)
            if info is not None:
                self._set_slot_info(info.model_copy(update={"active": s is slot}))
        active = self._slot_info(slot)
        self._state.current_version = active.version if active is not None else None

    def _on_progress(self, epoch: int, progress: DownloadProgress) -> None:
        with self._lock:
            if epoch != self._epoch or self._state.status != UpdateStatus.downloading:
                return
            self._state.download_progress = progress.percent
        self._emit("download-progress", progress=progress)

    # ---------- scheduling ----------

    def start_auto_check(self, *, run_now: bool = True) -> None:
        with self._lock:
            if self._auto_task is not None and self._auto_task.running:
                return
            self._auto_task = PeriodicTask(
                self._scheduler,
                self._config.check_interval_ms / 1000.0,
                self.run_update_cycle,
                name="business_update_check",
            )
            self._auto_task.start()
        if run_now:
            self.run_update_cycle()

    def stop_auto_check(self) -> None:
        with self._lock:
            if self._auto_task is not None:
                self._auto_task.stop()
                self._auto_task = None

    def run_update_cycle(self) -> UpdateResult:
        """check, then download and apply when the config asks for it."""
        res = self.check_for_update()
        if not res.success or res.version is None:
            return res
        with self._lock:
            auto_download = self._config.auto_download
            auto_apply = self._config.auto_apply
        if not auto_download:
            return res
        res = self.download()
        if not res.success or not auto_apply:
            return res
        return self.apply()

    # ---------- queries ----------

    def get_state(self) -> BusinessUpdaterState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_status(self) -> UpdateStatus:
        with self._lock:
            return self._state.status

    def get_current_version(self) -> Optional[str]:
        with self._lock:
            return self._state.current_version

    def is_update_available(self) -> bool:
        with self._lock:
            return self._state.status == UpdateStatus.available

    def is_update_ready(self) -> bool:
        with self._lock:
            return self._state.status == UpdateStatus.downloaded

    def reset(self) -> None:
        """Back to idle; any operation still in flight completes as a no-op."""
        self.stop_auto_check()
        with self._lock:
            self._epoch += 1
            self._status.force(UpdateStatus.idle)
            self._state = BusinessUpdaterState()
            if self._config.buffer_base_dir:
                self._load_slots()


def _unlink_quiet(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
