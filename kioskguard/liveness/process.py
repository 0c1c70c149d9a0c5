from __future__ import annotations

import logging
import os
import subprocess
from typing import Callable, Optional, Sequence

import psutil

from kioskguard.models import ProcessInfo

log = logging.getLogger(__name__)

# Seams injected into the watchdog so tests never touch real processes.
LivenessProbe = Callable[[int], bool]
ProcessFinder = Callable[[str], Optional[int]]
ProcessSpawner = Callable[[str, Sequence[str], Optional[str]], Optional[int]]
ProcessTerminator = Callable[[int], bool]


def is_process_running(pid: int) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to another user.
        return True


def get_process_info(pid: int) -> Optional[ProcessInfo]:
    if not is_process_running(pid):
        return None
    try:
        p = psutil.Process(pid)
        with p.oneshot():
            return ProcessInfo(
                pid=pid,
                name=p.name(),
                running=True,
                cpu_percent=p.cpu_percent(interval=None),
                memory_bytes=int(p.memory_info().rss),
                started_at=float(p.create_time()),
            )
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        return ProcessInfo(pid=pid, running=True)


def find_process_by_name(name: str) -> Optional[int]:
    """
    First PID whose executable name matches `name` case-insensitively.
    A missing ".exe" suffix is tolerated so the same config works across platforms.
    """
    want = (name or "").strip().lower()
    if not want:
        return None
    alt = want[:-4] if want.endswith(".exe") else want + ".exe"
    for p in psutil.process_iter(attrs=["pid", "name"]):
        try:
            n = str(p.info.get("name") or "").lower()
            if n and n in (want, alt):
                return int(p.info["pid"])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return None


def spawn_process(path: str, args: Sequence[str] = (), cwd: Optional[str] = None) -> Optional[int]:
    """
    Launch `path` detached from the supervisor (own session, stdio discarded).
    Returns the new PID, or None when the OS refused to start it.
    """
    cmd = [path, *list(args)]
    kwargs = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd or None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            **kwargs,
        )
    except OSError as e:
        log.error("Failed to spawn %s: %s", path, e)
        return None
    return proc.pid or None


def terminate_process(pid: int, timeout_s: float = 5.0) -> bool:
    """Terminate, then kill if it does not exit within `timeout_s`. True when the PID is gone."""
    try:
        p = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True
    try:
        p.terminate()
        try:
            p.wait(timeout=timeout_s)
        except psutil.TimeoutExpired:
            log.warning("Process %s ignored terminate; killing", pid)
            p.kill()
            p.wait(timeout=timeout_s)
        return True
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        log.error("Failed to terminate process %s: %s", pid, e)
        return False
