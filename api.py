# Swarmbatch operator API
# FastAPI. Read-only views of the running system plus the kill switch.
# No auth: bind it to localhost (cli.py start --serve defaults to 127.0.0.1).

import json
import logging
import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from dispatch import (
    InvalidEntryError,
    QueueUnavailableError,
    UnknownEntryError,
    decode_entry,
    encode_control,
)

log = logging.getLogger("swarmbatch")

app = FastAPI(title="Swarmbatch", version="1.0.0")

# The System this app serves. Set by bind_system() before requests arrive.
_system = None


def bind_system(system):
    global _system
    _system = system
    return app


def _require_system():
    if _system is None:
        raise HTTPException(status_code=503, detail="No system bound")
    return _system


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Structured access log line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
        }
        log.debug(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class ControlIn(BaseModel):
    signal: str = Field(pattern="^(stop|reset)$")


# ── Routes ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "bound": _system is not None}


@app.get("/status")
def status():
    system = _require_system()
    return {"ok": True, "status": system.status()}


@app.get("/queue")
def queue_view():
    system = _require_system()
    entries = []
    for raw in system.queue.entries():
        try:
            entries.append(decode_entry(raw).model_dump())
        except (InvalidEntryError, UnknownEntryError) as e:
            entries.append({"raw": raw, "error": str(e)})
    return {"ok": True, "queue": system.queue.status(), "entries": entries}


@app.get("/nodes")
def nodes():
    system = _require_system()
    snapshot = system.inventory.snapshot
    return {
        "ok": True,
        "nodes": [n.to_dict() for n in snapshot.nodes],
        "pools": snapshot.pools(),
        "fragmentation": snapshot.fragmentation(),
        "taken_at": snapshot.taken_at,
    }


@app.post("/control")
def control(body: ControlIn):
    system = _require_system()
    try:
        written = system.queue.try_write(encode_control(body.signal))
    except QueueUnavailableError as e:
        raise HTTPException(status_code=409, detail=f"Queue closed, control signal not enqueued: {e}")
    if not written:
        raise HTTPException(status_code=409, detail="Queue full, control signal not enqueued")
    log.info("API CONTROL signal=%s enqueued", body.signal)
    return {"ok": True, "signal": body.signal}


@app.post("/kill")
def kill():
    system = _require_system()
    log.warning("API KILL requested")
    report = system.kill()
    return {"ok": True, "kill": report.to_dict()}


@app.get("/")
def root():
    return {"name": "Swarmbatch", "status": "running" if _system and _system.running else "idle"}


if __name__ == "__main__":
    import uvicorn

    from config import Config, setup_logging
    from fleet import SimulatedFleet
    from orchestrator import System

    cfg = Config.from_env()
    setup_logging(cfg.log_file, cfg.log_level)
    bind_system(System(cfg, SimulatedFleet.for_config(cfg)))
    port = int(os.environ.get("SWARMBATCH_API_PORT", "8000"))
    log.info("API STARTING on port %d", port)
    uvicorn.run(app, host="127.0.0.1", port=port)
