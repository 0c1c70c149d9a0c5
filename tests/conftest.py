from __future__ import annotations

import os
from typing import Any, Callable, Dict, List, Optional

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("KIOSKGUARD_"):
            monkeypatch.delenv(k, raising=False)


class FakeSurface:
    """In-memory UI surface: probe replies are scripted, reloads are counted."""

    def __init__(self, surface_id: str = "main", probe: Optional[Dict[str, Any]] = None) -> None:
        self._id = surface_id
        self.probe_result: Any = probe if probe is not None else {"isBlank": False, "height": 800}
        self.reloads = 0
        self.destroyed = False
        self.fail_reload = False
        self.url: Optional[str] = "http://kiosk.local/index.html"
        self.scripts: List[str] = []

    @property
    def surface_id(self) -> str:
        return self._id

    def execute_probe(self, script: str) -> Dict[str, Any]:
        self.scripts.append(script)
        if isinstance(self.probe_result, Exception):
            raise self.probe_result
        return self.probe_result

    def reload(self) -> None:
        if self.fail_reload:
            raise RuntimeError("renderer gone")
        self.reloads += 1

    def is_destroyed(self) -> bool:
        return self.destroyed

    def current_url(self) -> Optional[str]:
        return self.url


@pytest.fixture
def make_surface() -> Callable[..., FakeSurface]:
    return FakeSurface
