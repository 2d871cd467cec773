#!/usr/bin/env python3
"""
app.py — AutoBright orchestrator.

Wires the light sensor, the calibration store and the screen together and
exposes them to a browser UI:

  - WebSocket /ws     live events (decisions, diagnostics, session state) and
                      commands: connect, disconnect, manual_brightness,
                      optimize, clear_calibration, set_auto_connect.
  - REST /api/*       status, serial ports, calibration points and a sampled
                      preview of the active curve.

On startup the manual slider is seeded from the screen's current
brightness, stale calibration points are pruned (AUTOBRIGHT_MAX_AGE_DAYS),
and the last-used port is reconnected if auto-connect is on.
"""

import asyncio
import datetime
import json
import logging
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query
from fastapi.responses import JSONResponse

import config
from brightness_curves import MODE_DESCRIPTIONS, MappingMode, sample_curve
from calibration_store import CalibrationStore, JsonCalibrationFile
from display import ScreenBrightness
from ingest import IngestionPipeline
from sensor_link import SerialLineSource, available_ports

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("AutoBright")

app      = FastAPI()
settings = config.ConnectionSettings.load()

_clients: set = set()
_link: Optional[SerialLineSource] = None
_session_task: Optional[asyncio.Task] = None


async def broadcast(payload: dict):
    """Send an event to every connected UI client; drop the dead ones."""
    dead = set()
    for ws in _clients:
        try:
            await ws.send_json(payload)
        except Exception:
            dead.add(ws)
    _clients.difference_update(dead)


def _store_diagnostic(kind: str, msg: str):
    """Store callbacks are sync; forward them as events when a loop is running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(broadcast({"type": "diagnostic", "kind": kind, "msg": msg}))


store    = CalibrationStore(JsonCalibrationFile(config.CALIBRATION_FILE), on_diagnostic=_store_diagnostic)
actuator = ScreenBrightness()
pipeline = IngestionPipeline(store, actuator, broadcast_fn=broadcast)


# ─── SESSION CONTROL ──────────────────────────────────────────────────────────
async def connect(port: str) -> bool:
    global _link, _session_task
    await disconnect()

    link = SerialLineSource(port)
    if not link.open():
        await broadcast({"type": "diagnostic", "kind": "connect_failed",
                         "msg": f"Could not open {port}"})
        return False

    _link = link
    _session_task = asyncio.create_task(pipeline.run(link.lines()))

    settings.last_port = port
    settings.save()
    return True


async def disconnect():
    global _link, _session_task
    if _link is not None:
        _link.close()
        _link = None
    if _session_task is not None:
        await pipeline.disconnect("requested")
        if not _session_task.done():
            _session_task.cancel()
            try:
                await _session_task
            except (asyncio.CancelledError, Exception):
                pass
        _session_task = None


# ─── INIT PACKET ──────────────────────────────────────────────────────────────
def _build_init_packet() -> dict:
    return {
        "type":          "init",
        **pipeline.status(),
        "port":          _link.port if _link else None,
        "last_port":     settings.last_port,
        "auto_connect":  settings.auto_connect,
        "ports":         available_ports(),
        "modes":         {m.value: d for m, d in MODE_DESCRIPTIONS.items()},
    }


def _calibration_payload() -> dict:
    return {
        "points": [p.to_record() for p in store.all()],
        "stats":  store.stats().as_dict(),
    }


# ─── REST ─────────────────────────────────────────────────────────────────────
@app.get("/api/status")
async def api_status():
    return JSONResponse({**pipeline.status(), "port": _link.port if _link else None})


@app.get("/api/ports")
async def api_ports():
    return JSONResponse({"ports": available_ports(), "last_port": settings.last_port})


@app.get("/api/calibration")
async def api_calibration():
    return JSONResponse(_calibration_payload())


@app.get("/api/curve")
async def api_curve(mode: str = Query(default="forward"), points: int = Query(default=51, ge=2, le=1001)):
    try:
        mapping = MappingMode(mode)
    except ValueError:
        return JSONResponse({"error": f"unknown mode '{mode}'"}, status_code=400)
    curve = sample_curve(store.all(), mapping, n=points)
    return JSONResponse({
        "mode":       mapping.value,
        "calibrated": len(store) > 0,
        "curve":      curve.tolist(),
    })


@app.post("/api/calibration/optimize")
async def api_optimize(method: str = Query(default="adaptive")):
    try:
        count = await pipeline.optimize_calibration(method)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"count": count, **_calibration_payload()})


@app.delete("/api/calibration")
async def api_clear_calibration():
    await pipeline.clear_calibration()
    return JSONResponse(_calibration_payload())


# ─── WEBSOCKET ────────────────────────────────────────────────────────────────
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    _clients.add(websocket)
    await websocket.send_json(_build_init_packet())

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "msg": "invalid JSON"})
                continue
            cmd = msg.get("command")

            if cmd == "connect":
                port = msg.get("port") or settings.last_port
                if not port:
                    await websocket.send_json({"type": "error", "msg": "no port selected"})
                    continue
                await connect(port)

            elif cmd == "disconnect":
                await disconnect()

            elif cmd == "manual_brightness":
                try:
                    pipeline.set_manual_brightness(float(msg.get("value")))
                except (TypeError, ValueError):
                    await websocket.send_json({"type": "error", "msg": "value must be a number"})

            elif cmd == "optimize":
                try:
                    await pipeline.optimize_calibration(msg.get("method", "adaptive"))
                except ValueError as e:
                    await websocket.send_json({"type": "error", "msg": str(e)})

            elif cmd == "clear_calibration":
                await pipeline.clear_calibration()

            elif cmd == "set_auto_connect":
                settings.auto_connect = bool(msg.get("enabled", True))
                settings.save()
                await broadcast({"type": "settings", "auto_connect": settings.auto_connect})

            elif cmd == "get_status":
                await websocket.send_json(_build_init_packet())

            else:
                await websocket.send_json({"type": "error", "msg": f"unknown command '{cmd}'"})

    except WebSocketDisconnect:
        pass
    finally:
        _clients.discard(websocket)


# ─── LIFECYCLE ────────────────────────────────────────────────────────────────
async def _auto_connect():
    await asyncio.sleep(config.AUTO_CONNECT_DELAY_S)
    port = settings.last_port
    if port in available_ports():
        logger.info(f"Auto-connecting to last port {port}")
        await connect(port)
    else:
        logger.info(f"Last port {port} is no longer available")


@app.on_event("startup")
async def _startup():
    brightness = pipeline.seed_from_actuator()
    logger.info(f"Current screen brightness: {brightness}%")

    if config.CALIBRATION_MAX_AGE_DAYS > 0:
        cutoff = datetime.datetime.now() - datetime.timedelta(days=config.CALIBRATION_MAX_AGE_DAYS)
        store.remove_older_than(cutoff)

    logger.info(f"Calibration: {len(store)} points, auto-connect {'on' if settings.auto_connect else 'off'}")
    if settings.auto_connect and settings.last_port:
        asyncio.create_task(_auto_connect())


@app.on_event("shutdown")
async def _shutdown():
    await disconnect()


def main():
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
