"""HTTP API and websocket event stream for the thermostat service."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
from pathlib import Path

from aiohttp import WSMsgType, web

from .conversions import string_fan_mode_to_raw, string_mode_to_raw
from .dispatcher import serialize_event
from .protocol import DEV_TSTAT, ActionTimeout
from .tables import APIVacationConfig, TStatCurrentParams, TStatVacationParams, TStatZoneParams

log = logging.getLogger(__name__)

ZONE_COUNT = 8
DEFAULT_PORT = 8080

_ASSETS = Path(__file__).with_name("assets")
_DEVICE = re.compile(r"[a-f0-9]{4}")
_TABLE = re.compile(r"[a-f0-9]{6}")
_ZONE = re.compile(r"[+-]?[0-9]+")
_POLL_INTERVAL = 1.0
_TIMEOUT_MESSAGE = "timed out waiting for response"


class _BadRequest(Exception):
    """A request that cannot be applied."""


def _go_name(name):
    return "".join(part.capitalize() for part in name.split("_"))


def _json_default(obj):
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {_go_name(f.name): getattr(obj, f.name) for f in dataclasses.fields(obj)}
    if isinstance(obj, (bytes, bytearray)):
        return list(obj)
    raise TypeError(f"cannot serialize {type(obj).__name__}")


def _json_response(data, status=200):
    text = json.dumps(data, default=_json_default, separators=(",", ":"), ensure_ascii=False)
    return web.Response(text=text, status=status, content_type="application/json")


def _error(status, message):
    return _json_response([{"error": message}], status)


def _parse_zone(text):
    if not _ZONE.fullmatch(text):
        raise _BadRequest(f"invalid zone number {text!r}")
    zone = int(text)
    if not 1 <= zone <= ZONE_COUNT:
        raise _BadRequest(f"invalid zone number {zone}")
    return zone


def _uint8(body, key):
    value = body.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise _BadRequest(f"invalid {key} value {value!r}")
    return value


def _string(body, key):
    value = body.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _BadRequest(f"invalid {key} value {value!r}")
    return value


async def _bind(request):
    try:
        body = await request.json()
    except ValueError:
        raise _BadRequest("bind failed") from None
    if not isinstance(body, dict):
        raise _BadRequest("bind failed")
    return body


class _Api:
    def __init__(self, service, dispatcher):
        self.service = service
        self.dispatcher = dispatcher

    async def _respond(self, fn, *args):
        try:
            result = await asyncio.to_thread(fn, *args)
        except ActionTimeout:
            return _error(504, _TIMEOUT_MESSAGE)
        return _json_response(result)

    def _snooped(self, fn):
        try:
            return _json_response(fn())
        except LookupError as exc:
            return _error(404, str(exc))

    async def tstat_settings(self, request):
        return await self._respond(self.service.get_tstat_settings)

    async def zones_config(self, request):
        return await self._respond(self.service.get_zones_config)

    async def zone_config(self, request):
        try:
            zone = _parse_zone(request.match_info["zn"])
        except _BadRequest as exc:
            return _error(400, str(exc))
        return await self._respond(self.service.get_zone_config, zone - 1)

    async def air_handler(self, request):
        return self._snooped(self.service.air_handler)

    async def heat_pump(self, request):
        return self._snooped(self.service.heat_pump)

    async def vacation(self, request):
        return await self._respond(self.service.get_vacation_config)

    async def put_vacation(self, request):
        try:
            body = await _bind(request)
            try:
                config = APIVacationConfig.from_dict(body)
            except (TypeError, ValueError, KeyError) as exc:
                raise _BadRequest(f"invalid vacation settings: {exc}") from None
        except _BadRequest as exc:
            log.info("vacation update rejected: %s", exc)
            return _error(400, str(exc))

        params = TStatVacationParams()
        flags = params.from_api(config)
        try:
            await asyncio.to_thread(self.service.protocol.write_table, DEV_TSTAT, params, flags)
        except ActionTimeout:
            return _error(504, _TIMEOUT_MESSAGE)
        return web.Response(status=200)

    async def put_zone_config(self, request):
        try:
            body = await _bind(request)
            zone = _parse_zone(request.match_info["zn"])
            zi = zone - 1
            fan_mode = _string(body, "fanMode")
            mode = _string(body, "mode")
            hold = body.get("hold")
            if hold is not None and not isinstance(hold, bool):
                raise _BadRequest(f"invalid hold value {hold!r}")
            heat = _uint8(body, "heatSetpoint")
            cool = _uint8(body, "coolSetpoint")

            params = TStatZoneParams()
            flags = 0
            if fan_mode:
                try:
                    params.z_fan_mode[zi] = string_fan_mode_to_raw(fan_mode)
                except ValueError:
                    raise _BadRequest("invalid fan mode name") from None
                flags |= 0x01
            if hold is not None:
                if hold:
                    params.zone_hold = 1 << zi
                flags |= 0x02
            if heat > 0:
                params.z_heat_setpoint[zi] = heat
                flags |= 0x04
            if cool > 0:
                params.z_cool_setpoint[zi] = cool
                flags |= 0x08
            raw_mode = None
            if mode:
                try:
                    raw_mode = string_mode_to_raw(mode)
                except ValueError:
                    raise _BadRequest("invalid mode name") from None
        except _BadRequest as exc:
            log.info("zone update rejected: %s", exc)
            return _error(400, str(exc))

        protocol = self.service.protocol
        try:
            if flags:
                log.info("writing zone %d settings with flags 0x%x", zi, flags)
                await asyncio.to_thread(protocol.write_table_z, DEV_TSTAT, params, zi, flags)
            if raw_mode is not None:
                await asyncio.to_thread(
                    protocol.write_table, DEV_TSTAT, TStatCurrentParams(mode=raw_mode), 0x10
                )
        except ActionTimeout:
            return _error(504, _TIMEOUT_MESSAGE)
        return web.Response(status=200)

    async def raw(self, request):
        device = request.match_info["device"]
        table = request.match_info["table"]
        if not _DEVICE.fullmatch(device):
            return _error(400, "name must be a 4 character hex string")
        if not _TABLE.fullmatch(table):
            return _error(400, "table must be a 6 character hex string")
        try:
            data = await asyncio.to_thread(
                self.service.get_raw_data, int(device, 16), bytes.fromhex(table)
            )
        except ActionTimeout:
            return _error(504, _TIMEOUT_MESSAGE)
        return _json_response({"response": data.hex()})

    async def _drain(self, ws, listener):
        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    break
        finally:
            self.dispatcher.deregister(listener)

    async def events(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        listener = self.dispatcher.register()
        reader = asyncio.create_task(self._drain(ws, listener))
        try:
            for source, data in self.service.ws_cache.dump().items():
                await ws.send_str(serialize_event(source, data).decode("utf-8"))
            while not ws.closed:
                try:
                    message = await asyncio.to_thread(listener.get, _POLL_INTERVAL)
                except TimeoutError:
                    continue
                if message is None:
                    log.info("event listener closed")
                    break
                await ws.send_str(message.decode("utf-8"))
        except ConnectionError as exc:
            log.info("error on websocket write: %s", exc)
        finally:
            log.info("closing websocket")
            self.dispatcher.deregister(listener)
            reader.cancel()
            await ws.close()
        return ws

    async def root(self, request):
        raise web.HTTPMovedPermanently("ui")


def create_app(service, dispatcher):
    """Build the web application serving the API for service."""
    api = _Api(service, dispatcher)
    app = web.Application()
    app.router.add_get("/api/tstat/settings", api.tstat_settings)
    app.router.add_get("/api/zones/config", api.zones_config)
    app.router.add_get("/api/zone/1/airhandler", api.air_handler)
    app.router.add_get("/api/zone/1/heatpump", api.heat_pump)
    app.router.add_get("/api/zone/1/vacation", api.vacation)
    app.router.add_put("/api/zone/1/vacation", api.put_vacation)
    app.router.add_get("/api/zone/{zn}/config", api.zone_config)
    app.router.add_put("/api/zone/{zn}/config", api.put_zone_config)
    app.router.add_get("/api/airhandler", api.air_handler)
    app.router.add_get("/api/heatpump", api.heat_pump)
    app.router.add_get("/api/raw/{device}/{table}", api.raw)
    app.router.add_get("/api/ws", api.events)
    if _ASSETS.is_dir():
        app.router.add_static("/ui", _ASSETS)
    app.router.add_get("/", api.root)
    return app


def run_webserver(service, dispatcher, port=DEFAULT_PORT):
    """Serve the API on all interfaces until interrupted."""
    web.run_app(create_app(service, dispatcher), port=port)