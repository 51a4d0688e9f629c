"""Thermostat state: zone and vacation settings, polling and snooped equipment status."""

from __future__ import annotations

import copy
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .cache import Cache
from .conversions import (
    raw_action_to_string,
    raw_fan_mode_to_string,
    raw_mode_to_string,
    string_fan_mode_to_raw,
    string_mode_to_raw,
)
from .protocol import DEV_TSTAT, ActionTimeout
from .tables import (
    APIVacationConfig,
    TStatCurrentParams,
    TStatSettings,
    TStatVacationParams,
    TStatZoneParams,
)

log = logging.getLogger(__name__)

DEFAULT_INSTANCE = "infinitive"
ZONE_COUNT = 8

# registers read in rotation by the state poller, for diagnostics
DEFAULT_MONITORS = (0x3B05, 0x3B06, 0x3B0E, 0x3B0F, 0x3D02, 0x3D03)

# airflow weights matching duct capacities of 12% leakage and 11% per zone
DEFAULT_ZONE_WEIGHTS = (0.125,) * ZONE_COUNT

_HEAT_PUMP_SOURCES = (0x5000, 0x51FF)
_AIR_HANDLER_SOURCES = (0x4000, 0x42FF)
_ZONE_CONTROLLER_SOURCES = (0x6000, 0x61FF)

_HEAT_PUMP_TEMPS = bytes((0x00, 0x3E, 0x01))
_HEAT_PUMP_STAGE = bytes((0x00, 0x3E, 0x02))
_BLOWER = bytes((0x00, 0x03, 0x06))
_AIR_HANDLER_STATUS = bytes((0x00, 0x03, 0x16))
_DAMPERS = bytes((0x00, 0x03, 0x19))

_SIGNED = re.compile(r"[+-]?[0-9]+")
_UNSIGNED = re.compile(r"[0-9]+")


class ConfigError(ValueError):
    """A setting name or value is not valid."""


def _parse_signed(text, bits=None):
    if not _SIGNED.fullmatch(text):
        raise ValueError(f"not an integer: {text!r}")
    value = int(text)
    if bits is not None:
        limit = 1 << (bits - 1)
        if not -limit <= value < limit:
            raise ValueError(f"out of range: {text!r}")
    return value


def _parse_uint8(text):
    if not _UNSIGNED.fullmatch(text):
        raise ValueError(f"not an unsigned integer: {text!r}")
    value = int(text)
    if value > 0xFF:
        raise ValueError(f"out of range: {text!r}")
    return value


def _u16(data, start):
    return int.from_bytes(data[start:start + 2], "big")


def hold_time(minutes):
    """Format an override duration in minutes as H:MM, or "" when there is none."""
    if minutes == 0:
        return ""
    return f"{minutes // 60}:{minutes % 60:02d}"


@dataclass
class TStatZoneConfig:
    """Status and settings of one zone, with the system-wide values repeated."""

    zone_number: int = 0
    current_temp: int = 0
    current_humidity: int = 0
    target_humidity: int = 0
    zone_name: str = ""
    fan_mode: str = ""
    hold: Optional[bool] = None
    preset: str = ""
    heat_setpoint: int = 0
    cool_setpoint: int = 0
    override_duration: str = ""
    override_duration_mins: int = 0
    outdoor_temp: int = 0
    mode: str = ""
    stage: int = 0
    action: str = ""
    raw_mode: int = 0

    def to_dict(self):
        data = {}
        if self.zone_number:
            data["zoneNumber"] = self.zone_number
        data.update(
            currentTemp=self.current_temp,
            currentHumidity=self.current_humidity,
            targetHumidity=self.target_humidity,
            zoneName=self.zone_name,
            fanMode=self.fan_mode,
            hold=self.hold,
            preset=self.preset,
            heatSetpoint=self.heat_setpoint,
            coolSetpoint=self.cool_setpoint,
            overrideDuration=self.override_duration,
            overrideDurationMins=self.override_duration_mins,
            outdoorTemp=self.outdoor_temp,
            mode=self.mode,
            stage=self.stage,
            action=self.action,
            rawMode=self.raw_mode,
        )
        return data


@dataclass
class TStatZonesConfig:
    """System-wide status with the active zones."""

    zones: list = field(default_factory=list)
    outdoor_temp: int = 0
    mode: str = ""
    stage: int = 0
    action: str = ""
    raw_mode: int = 0

    def to_dict(self):
        data = {}
        if self.zones:
            data["zones"] = [zone.to_dict() for zone in self.zones]
        data.update(
            outdoorTemp=self.outdoor_temp,
            mode=self.mode,
            stage=self.stage,
            action=self.action,
            rawMode=self.raw_mode,
        )
        return data


@dataclass
class AirHandler:
    """Air handler status as snooped from its responses."""

    blower_rpm: int = 0
    air_flow_cfm: int = 0
    static_pressure: float = 0.0
    heat_stage: int = 0
    elec_heat: bool = False
    action: str = ""

    def to_dict(self):
        return {
            "blowerRPM": self.blower_rpm,
            "airFlowCFM": self.air_flow_cfm,
            "staticPressure": self.static_pressure,
            "heatStage": self.heat_stage,
            "elecHeat": self.elec_heat,
            "action": self.action,
        }


@dataclass
class HeatPump:
    """Heat pump status as snooped from its responses."""

    coil_temp: float = 0.0
    outside_temp: float = 0.0
    stage: int = 0

    def to_dict(self):
        return {
            "coilTemp": self.coil_temp,
            "outsideTemp": self.outside_temp,
            "stage": self.stage,
        }


@dataclass
class DamperPosition:
    """Zone damper positions (0-15) as snooped from the zone controllers."""

    damper_position: list = field(default_factory=lambda: [0] * ZONE_COUNT)

    def to_dict(self):
        return {"damperPosition": list(self.damper_position)}


class Infinitive:
    """Reads and changes thermostat state and publishes it to the caches."""

    def __init__(
        self,
        protocol,
        *,
        instance=DEFAULT_INSTANCE,
        dispatcher=None,
        mqtt=None,
        zone_weights=None,
    ):
        self.protocol = protocol
        self.instance = instance
        self.mqtt = mqtt
        on_change = dispatcher.broadcast_event if dispatcher is not None else None
        self.ws_cache = Cache(on_change)
        self.mqtt_cache = Cache(on_change)
        weights = DEFAULT_ZONE_WEIGHTS if zone_weights is None else zone_weights
        self.zone_weights = [float(w) for w in weights]
        if len(self.zone_weights) != ZONE_COUNT:
            raise ValueError(f"need {ZONE_COUNT} zone weights, got {len(self.zone_weights)}")
        self._tstat_settings = TStatSettings()
        self._monitor_index = 0

        self.ws_cache.update("blower", AirHandler())
        self.ws_cache.update("heatpump", HeatPump())
        self.ws_cache.update("damperpos", DamperPosition())

    def _mqtt_topic(self, suffix):
        return f"mqtt/{self.instance}/{suffix}"

    # reading state

    def get_vacation_config(self):
        """Read the vacation settings; raise ActionTimeout when unanswered."""
        return self.protocol.read_table(DEV_TSTAT, TStatVacationParams).to_api()

    def get_zones_config(self):
        """Read status and settings of all active zones in one go."""
        if self._tstat_settings.dealer_name[:1] in (b"", b"\x00"):
            log.debug("getting thermostat settings to determine temperature units")
            self._tstat_settings = self.protocol.read_table(DEV_TSTAT, TStatSettings)
            log.debug("temperature units = %d", self._tstat_settings.temp_units)

        cfg = self.protocol.read_table(DEV_TSTAT, TStatZoneParams)
        params = self.protocol.read_table(DEV_TSTAT, TStatCurrentParams)

        zones = []
        for zi, temp in enumerate(params.z_current_temp):
            if not 0 < temp < 255:
                continue
            hold = bool(cfg.zone_hold & (1 << zi))
            name = _zone_name(cfg.z_name[zi])
            zones.append(
                TStatZoneConfig(
                    zone_number=zi + 1,
                    current_temp=temp,
                    current_humidity=params.z_current_humidity[zi],
                    fan_mode=raw_fan_mode_to_string(cfg.z_fan_mode[zi]),
                    hold=hold,
                    preset="hold" if hold else "none",
                    heat_setpoint=cfg.z_heat_setpoint[zi],
                    cool_setpoint=cfg.z_cool_setpoint[zi],
                    override_duration=hold_time(cfg.z_ovrd_duration[zi]),
                    override_duration_mins=cfg.z_ovrd_duration[zi],
                    zone_name=name,
                )
            )
            if self.mqtt is not None:
                self.mqtt.discover_zone(zi, name, self._tstat_settings.temp_units)

        return TStatZonesConfig(
            zones=zones,
            outdoor_temp=params.outdoor_air_temp,
            mode=raw_mode_to_string(params.mode & 0x0F),
            stage=params.mode >> 5,
            action=raw_action_to_string(params.mode >> 5),
            raw_mode=params.mode,
        )

    def get_zone_config(self, zone_index):
        """Read status and settings of one zone, by 0-based index."""
        if not 0 <= zone_index < ZONE_COUNT:
            raise ValueError(f"zone index out of range: {zone_index}")
        cfg = self.protocol.read_table(DEV_TSTAT, TStatZoneParams)
        params = self.protocol.read_table(DEV_TSTAT, TStatCurrentParams)
        hold = bool(cfg.zone_hold & (1 << zone_index))
        return TStatZoneConfig(
            current_temp=params.z_current_temp[zone_index],
            current_humidity=params.z_current_humidity[zone_index],
            outdoor_temp=params.outdoor_air_temp,
            mode=raw_mode_to_string(params.mode & 0x0F),
            stage=params.mode >> 5,
            action=raw_action_to_string(params.mode >> 5),
            fan_mode=raw_fan_mode_to_string(cfg.z_fan_mode[zone_index]),
            hold=hold,
            preset="hold" if hold else "none",
            heat_setpoint=cfg.z_heat_setpoint[zone_index],
            cool_setpoint=cfg.z_cool_setpoint[zone_index],
            override_duration=hold_time(cfg.z_ovrd_duration[zone_index]),
            override_duration_mins=cfg.z_ovrd_duration[zone_index],
            zone_name=_zone_name(cfg.z_name[zone_index]),
            target_humidity=cfg.z_target_humidity[zone_index],
            raw_mode=params.mode,
        )

    def get_tstat_settings(self):
        """Read the general thermostat settings."""
        settings = self.protocol.read_table(DEV_TSTAT, TStatSettings)
        return dataclasses.replace(settings, unknown1=0, unknown2=0)

    def get_raw_data(self, dev, table):
        """Read a table by its 3-byte address and return the raw payload."""
        addr = bytes(table)[:3]
        if len(addr) != 3:
            raise ValueError("table address must be 3 bytes")
        try:
            data = self.protocol.read(dev, addr)
        except ActionTimeout:
            log.debug("RAW: %04x/%s: timeout", dev, addr.hex())
            raise
        log.debug("RAW: %04x/%s: %s", dev, addr.hex(), data.hex())
        return data

    # changing settings

    def put_config(self, zone, param, value):
        """Change one setting: zone "0" for system-wide, "1" to "8" for a zone.

        Raises ConfigError for an unknown zone, parameter or value.
        """
        try:
            zn = _parse_signed(zone)
        except ValueError:
            raise ConfigError(f"invalid zone value {zone!r}") from None

        if 1 <= zn <= ZONE_COUNT:
            zi = zn - 1
            params = TStatZoneParams()
            if param == "fanMode":
                try:
                    params.z_fan_mode[zi] = string_fan_mode_to_raw(value)
                except ValueError:
                    raise ConfigError(
                        f"invalid fan mode name {value!r} for zone {zn}"
                    ) from None
                flags = 0x01
            elif param in ("coolSetpoint", "heatSetpoint"):
                try:
                    setpoint = _parse_uint8(value)
                except ValueError:
                    raise ConfigError(
                        f"invalid {param} value {value!r} for zone {zn}"
                    ) from None
                if param == "coolSetpoint":
                    params.z_cool_setpoint[zi] = setpoint
                    flags = 0x08
                else:
                    params.z_heat_setpoint[zi] = setpoint
                    flags = 0x04
            elif param in ("hold", "preset"):
                choices = (
                    {"true": True, "false": False}
                    if param == "hold"
                    else {"hold": True, "none": False}
                )
                if value not in choices:
                    raise ConfigError(f"invalid {param} value {value!r} for zone {zn}")
                if choices[value]:
                    params.zone_hold = 1 << zi
                flags = 0x02
            else:
                raise ConfigError(f"invalid parameter name {param!r} for zone {zn}")

            log.info("writing zone %d settings with flags 0x%x", zi, flags)
            self.protocol.write_table_z(DEV_TSTAT, params, zi, flags)
            return

        if zn == 0:
            if param != "mode":
                raise ConfigError(f"invalid parameter name {param!r}")
            try:
                mode = string_mode_to_raw(value)
            except ValueError:
                raise ConfigError(f"invalid mode value {value!r}") from None
            self.protocol.write_table(DEV_TSTAT, TStatCurrentParams(mode=mode), 0x10)
            return

        raise ConfigError(f"invalid zone number {zn}")

    def put_vacation_config(self, param, value):
        """Set vacation "days" or "hours"; a leading + or - changes the current value."""
        if not value:
            raise ConfigError("empty vacation value")

        base_days = base_hours = 0
        if value[0] in "+-":
            try:
                current = self.get_vacation_config()
            except ActionTimeout:
                log.error("relative vacation change: reading current settings failed")
            else:
                base_days, base_hours = current.days, current.hours
                log.info("relative vacation change from days=%d, hours=%d",
                         base_days, base_hours)

        if param == "days":
            try:
                amount = _parse_signed(value, 8)
            except ValueError:
                raise ConfigError(f"invalid days value {value!r}") from None
            config = APIVacationConfig(days=max(0, amount + base_days) & 0xFF)
        elif param == "hours":
            try:
                amount = _parse_signed(value, 16)
            except ValueError:
                raise ConfigError(f"invalid hours value {value!r}") from None
            config = APIVacationConfig(hours=max(0, amount + base_hours) & 0xFFFF)
        else:
            raise ConfigError(f"invalid parameter name {param!r}")

        params = TStatVacationParams()
        flags = params.from_api(config)
        if flags:
            log.info("writing vacation settings with flags 0x%x", flags)
            self.protocol.write_table(DEV_TSTAT, params, flags)
        else:
            log.warning("vacation change: nothing to write")

    # snooped equipment status

    def _cached(self, name, cls):
        value = self.ws_cache.get(name)
        if not isinstance(value, cls):
            raise LookupError(f"no {name} status available")
        return copy.deepcopy(value)

    def air_handler(self):
        """Return the latest air handler status."""
        return self._cached("blower", AirHandler)

    def heat_pump(self):
        """Return the latest heat pump status."""
        return self._cached("heatpump", HeatPump)

    def damper_position(self):
        """Return the latest zone damper positions."""
        return self._cached("damperpos", DamperPosition)

    # polling

    def _try(self, reader):
        try:
            return reader()
        except ActionTimeout as exc:
            log.warning("poll failed: %s", exc)
            return None

    def poll_state(self, monitors=()):
        """Read the current state once and publish it to both caches."""
        zones = self._try(self.get_zones_config)
        vacation = self._try(self.get_vacation_config)
        update = self.mqtt_cache.update

        if zones is not None:
            self.ws_cache.update("tstat", zones)
            humidity = 0
            for zone in zones.zones:
                zp = self._mqtt_topic(f"zone/{zone.zone_number}")
                update(f"{zp}/currentTemp", zone.current_temp)
                update(f"{zp}/humidity", zone.current_humidity)
                humidity = zone.current_humidity
                update(f"{zp}/coolSetpoint", zone.cool_setpoint)
                update(f"{zp}/heatSetpoint", zone.heat_setpoint)
                update(f"{zp}/fanMode", zone.fan_mode)
                update(f"{zp}/hold", zone.hold)
                update(f"{zp}/overrideDurationMins", zone.override_duration_mins)
                if vacation is not None and vacation.active:
                    update(f"{zp}/preset", "vacation")
                else:
                    update(f"{zp}/preset", zone.preset)
            if humidity > 0:
                update(self._mqtt_topic("humidity"), humidity)
            update(self._mqtt_topic("outdoorTemp"), zones.outdoor_temp)
            update(self._mqtt_topic("mode"), zones.mode)
            update(self._mqtt_topic("rawMode"), zones.raw_mode)

        if vacation is not None:
            self.ws_cache.update("vacation", vacation)
            update(self._mqtt_topic("vacation/active"), vacation.active)
            update(self._mqtt_topic("vacation/days"), vacation.days)
            update(self._mqtt_topic("vacation/hours"), vacation.hours)
            update(self._mqtt_topic("vacation/minTemp"), vacation.min_temperature)
            update(self._mqtt_topic("vacation/maxTemp"), vacation.max_temperature)
            update(self._mqtt_topic("vacation/minHumidity"), vacation.min_humidity)
            update(self._mqtt_topic("vacation/maxHumidity"), vacation.max_humidity)
            update(self._mqtt_topic("vacation/fanMode"), vacation.fan_mode)

        if monitors:
            register = monitors[self._monitor_index % len(monitors)]
            table = bytes((0x00, (register >> 8) & 0xFF, register & 0xFF))
            try:
                self.get_raw_data(DEV_TSTAT, table)
            except ActionTimeout:
                pass
            self._monitor_index = (self._monitor_index + 1) % len(monitors)

    def attach_snoops(self):
        """Follow heat pump, air handler and zone controller responses on the bus."""
        self.protocol.snoop_response(*_HEAT_PUMP_SOURCES, self._snoop_heat_pump)
        self.protocol.snoop_response(*_AIR_HANDLER_SOURCES, self._snoop_air_handler)
        self.protocol.snoop_response(*_ZONE_CONTROLLER_SOURCES, self._snoop_dampers)

    def _snoop_heat_pump(self, frame):
        table, data = frame.data[:3], frame.data[3:]
        try:
            heat_pump = self.heat_pump()
        except LookupError:
            return
        if table == _HEAT_PUMP_TEMPS and len(data) >= 4:
            heat_pump.coil_temp = _u16(data, 2) / 16
            heat_pump.outside_temp = _u16(data, 0) / 16
            log.debug("heat pump coil temp %f, outside temp %f",
                      heat_pump.coil_temp, heat_pump.outside_temp)
            self.ws_cache.update("heatpump", heat_pump)
            self.mqtt_cache.update(self._mqtt_topic("coilTemp"), heat_pump.coil_temp)
            self.mqtt_cache.update(self._mqtt_topic("outsideTemp"), heat_pump.outside_temp)
        elif table == _HEAT_PUMP_STAGE and len(data) >= 1:
            heat_pump.stage = data[0] >> 1
            log.debug("heat pump stage %d", heat_pump.stage)
            self.ws_cache.update("heatpump", heat_pump)
            self.mqtt_cache.update(self._mqtt_topic("coolStage"), heat_pump.stage)

    def _snoop_air_handler(self, frame):
        table, data = frame.data[:3], frame.data[3:]
        try:
            air = self.air_handler()
        except LookupError:
            return
        if table == _BLOWER and len(data) >= 3:
            air.blower_rpm = _u16(data, 1)
            log.debug("blower RPM %d", air.blower_rpm)
            self.ws_cache.update("blower", air)
            self.mqtt_cache.update(self._mqtt_topic("blowerRPM"), air.blower_rpm)
        elif table == _AIR_HANDLER_STATUS and len(data) >= 9:
            air.heat_stage = data[0]
            air.air_flow_cfm = _u16(data, 4)
            air.static_pressure = int(_u16(data, 7) / 65536 * 10000 + 0.5) / 10000
            air.elec_heat = data[0] & 0x03 != 0
            if data[2] & 0x03:
                air.action = "cooling"
            elif data[0] & 0x03:
                air.action = "heating"
            else:
                air.action = "idle"
            log.debug("air flow CFM %d", air.air_flow_cfm)
            self.ws_cache.update("blower", air)
            self.mqtt_cache.update(self._mqtt_topic("heatStage"), air.heat_stage)
            self.mqtt_cache.update(self._mqtt_topic("action"), air.action)
            self.mqtt_cache.update(self._mqtt_topic("airflowCFM"), air.air_flow_cfm)
            self.mqtt_cache.update(self._mqtt_topic("staticPressure"), air.static_pressure)

    def _snoop_dampers(self, frame):
        table, data = frame.data[:3], frame.data[3:]
        if table != _DAMPERS or len(data) < ZONE_COUNT:
            return
        try:
            dampers = self.damper_position()
        except LookupError:
            return
        reported = [zi for zi in range(ZONE_COUNT) if data[zi] != 0xFF]
        total = 0.0
        for zi in reported:
            dampers.damper_position[zi] = data[zi]
            self.mqtt_cache.update(
                self._mqtt_topic(f"zone/{zi + 1}/damperPos"), data[zi] * 100 // 15
            )
            total += self.zone_weights[zi] * data[zi]
        if total > 0:
            for zi in reported:
                self.mqtt_cache.update(
                    self._mqtt_topic(f"zone/{zi + 1}/flowWeight"),
                    self.zone_weights[zi] * data[zi] / total,
                )
        log.debug("zone damper positions: %s", dampers.damper_position)
        self.ws_cache.update("damperpos", dampers)


def _zone_name(raw):
    return bytes(raw).strip(b" \x00").decode("utf-8", errors="replace")