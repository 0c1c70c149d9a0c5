from __future__ import annotations

import os
import time
from typing import Callable, Optional

import httpx

from kioskguard import errors
from kioskguard.errors import DownloadError
from kioskguard.models import DownloadProgress
from kioskguard.updater.fsutil import ensure_dir

ProgressCallback = Callable[[DownloadProgress], None]


def download_file(
    url: str,
    dest: str,
    *,
    timeout_s: float = 30.0,
    transport: httpx.BaseTransport | None = None,
    on_progress: Optional[ProgressCallback] = None,
    chunk_size: int = 64 * 1024,
) -> int:
    """
    Stream `url` into `dest`. Returns the number of bytes written.
    A partial file is removed on failure.
    """
    ensure_dir(os.path.dirname(dest) or ".")
    started = time.monotonic()
    transferred = 0
    try:
        with httpx.Client(timeout=timeout_s, transport=transport, follow_redirects=True) as c:
            with c.stream("GET", url) as r:
                r.raise_for_status()
                total_hdr = r.headers.get("content-length")
                total = int(total_hdr) if total_hdr and total_hdr.isdigit() else None
                with open(dest, "wb") as f:
                    for chunk in r.iter_bytes(chunk_size):
                        if not chunk:
                            continue
                        f.write(chunk)
                        transferred += len(chunk)
                        if on_progress is not None:
                            elapsed = max(time.monotonic() - started, 1e-6)
                            pct = (transferred / total * 100.0) if total else 0.0
                            on_progress(
                                DownloadProgress(
                                    percent=min(pct, 100.0),
                                    transferred=transferred,
                                    total=total,
                                    bytes_per_second=transferred / elapsed,
                                )
                            )
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, OSError) as e:
        try:
            os.unlink(dest)
        except OSError:
            pass
        raise DownloadError(f"{errors.DOWNLOAD_FAILED}: {e}") from e

    if on_progress is not None:
        on_progress(DownloadProgress(percent=100.0, transferred=transferred, total=total or transferred))
    return transferred
