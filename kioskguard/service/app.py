from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from kioskguard import __version__
from kioskguard.errors import ConfigurationError
from kioskguard.liveness.heartbeat_protocol import decode_heartbeat
from kioskguard.service.supervisor import Supervisor
from kioskguard.settings import Settings


def create_app(settings: Settings | None = None, supervisor: Supervisor | None = None) -> FastAPI:
    """
    App factory used by uvicorn and tests.

    Routes are registered on the module-level `app` via decorators, so repeated
    calls rebind settings and supervisor on that same instance.
    The supervisor is created lazily from settings when none is passed.
    """
    s = settings or Settings()
    existing = globals().get("app")
    if isinstance(existing, FastAPI):
        existing.state.settings = s
        existing.state.supervisor = supervisor
        return existing

    new_app = FastAPI(title="kioskguard supervisor", version=__version__)
    new_app.state.settings = s
    new_app.state.supervisor = supervisor
    return new_app


app = create_app()


def _supervisor(request: Request) -> Supervisor:
    sup = getattr(request.app.state, "supervisor", None)
    if sup is None:
        sup = Supervisor(request.app.state.settings)
        request.app.state.supervisor = sup
    return sup


@app.on_event("shutdown")
def _shutdown() -> None:
    sup = getattr(app.state, "supervisor", None)
    if sup is not None:
        sup.stop()


@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    return {"ok": True, "version": __version__}


@app.post("/heartbeat")
async def heartbeat(request: Request) -> JSONResponse:
    try:
        body = await request.json()
        msg = decode_heartbeat(body)
    except (json.JSONDecodeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    reply = _supervisor(request).handle_message(msg)
    if reply is None:
        return JSONResponse({"ok": True})
    return JSONResponse(reply.model_dump(mode="json"))


@app.get("/api/state")
def state(request: Request) -> JSONResponse:
    return JSONResponse(_supervisor(request).snapshot())


@app.get("/api/watchdog/state")
def watchdog_state(request: Request) -> JSONResponse:
    return JSONResponse(_supervisor(request).watchdog.get_state().model_dump(mode="json"))


@app.get("/api/heartbeat/state")
def heartbeat_state(request: Request) -> JSONResponse:
    return JSONResponse(_supervisor(request).heartbeat.get_state().model_dump(mode="json"))


@app.post("/api/watchdog/restart")
def watchdog_restart(request: Request) -> JSONResponse:
    try:
        ok = _supervisor(request).watchdog.restart_process()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"ok": ok})


@app.get("/api/audit/recent")
def audit_recent(request: Request, n: int = 200) -> JSONResponse:
    records = _supervisor(request).audit.tail(max(1, min(n, 2000)))
    return JSONResponse({"records": records})
