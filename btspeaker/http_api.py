# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Read-only HTTP status API over the SpeakerMonitor (plus POST /say for
poking the speech path).

  GET  /status             monitor snapshot
  GET  /devices            connected devices, oldest first
  GET  /devices/{address}  track + state for one device
  POST /say                {"text": "..."} -> queued for speech
"""

import logging

from aiohttp import web

log = logging.getLogger(__name__)

MONITOR = web.AppKey("monitor", object)


async def handle_status(request: web.Request) -> web.Response:
    """GET /status: service snapshot."""
    return web.json_response(request.app[MONITOR].status())


async def handle_devices(request: web.Request) -> web.Response:
    """GET /devices: connected devices."""
    monitor = request.app[MONITOR]
    return web.json_response({
        "current": monitor.current_device,
        "devices": [d.to_dict() for d in monitor.device_records()],
    })


async def handle_device(request: web.Request) -> web.Response:
    """GET /devices/{address}: track and state of one device."""
    monitor = request.app[MONITOR]
    address = request.match_info["address"].upper()
    if address not in monitor.get_connected_devices():
        return web.json_response({"error": "unknown device"}, status=404)
    track = monitor.get_current_track(address)
    return web.json_response({
        "address": address,
        "state": monitor.get_current_state(address).value,
        "track": track.to_dict() if track else None,
    })


async def handle_say(request: web.Request) -> web.Response:
    """POST /say: queue a line of text for speech."""
    try:
        data = await request.json()
    except ValueError:
        return web.json_response({"error": "invalid json"}, status=400)
    text = data.get("text") if isinstance(data, dict) else None
    if not isinstance(text, str) or not text.strip():
        return web.json_response({"error": "text required"}, status=400)
    queued = request.app[MONITOR].say(text)
    return web.json_response({"status": "ok" if queued else "ignored"},
                             status=200 if queued else 503)


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def create_app(monitor) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[MONITOR] = monitor
    app.router.add_get("/status", handle_status)
    app.router.add_get("/devices", handle_devices)
    app.router.add_get("/devices/{address}", handle_device)
    app.router.add_post("/say", handle_say)
    return app


async def start_http(monitor, port: int, host: str = "0.0.0.0") -> web.AppRunner:
    runner = web.AppRunner(create_app(monitor))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("HTTP API on port %d", port)
    return runner
