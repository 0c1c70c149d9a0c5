from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class UISurface(Protocol):
    """
    A rendered UI surface (browser window, webview) owned by the host shell.
    Recovery components only ever probe, reload and inspect it.
    """

    @property
    def surface_id(self) -> str:
        ...

    def execute_probe(self, script: str) -> Dict[str, Any]:
        ...

    def reload(self) -> None:
        ...

    def is_destroyed(self) -> bool:
        ...

    def current_url(self) -> Optional[str]:
        ...


def blank_detection_script(min_content_height: int) -> str:
    """
    Script evaluated inside the surface. Returns {isBlank, reason?, height?, error?}.
    """
    return f"""
(function() {{
  try {{
    const body = document.body;
    if (!body) {{
      return {{ isBlank: true, reason: 'no-body' }};
    }}
    const height = body.scrollHeight || body.offsetHeight || body.clientHeight;
    const hasChildren = body.children.length > 0;
    const hasText = (body.innerText || '').trim().length > 0;
    if (!(height > 0) && !hasChildren && !hasText) {{
      return {{ isBlank: true, reason: 'empty-body', height: height }};
    }}
    if (height < {int(min_content_height)}) {{
      return {{ isBlank: true, reason: 'no-content', height: height }};
    }}
    return {{ isBlank: false, height: height }};
  }} catch (e) {{
    return {{ isBlank: true, reason: 'error', error: e.message }};
  }}
}})();
"""
