"""Thermostat data tables and their big-endian wire layouts."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import ClassVar, Optional

from .conversions import raw_fan_mode_to_string, string_fan_mode_to_raw


def _zeros(count):
    return lambda: [0] * count


def _pack(layout, *values):
    try:
        return layout.pack(*values)
    except struct.error as exc:
        raise ValueError(f"cannot encode table: {exc}") from None


def _unpack(layout, data, name):
    data = bytes(data)
    if len(data) < layout.size:
        raise ValueError(
            f"{name} needs {layout.size} bytes, got {len(data)}"
        )
    return layout.unpack_from(data)


_CURRENT = struct.Struct(">8B 8B B B B B 5B B")


@dataclass
class TStatCurrentParams:
    """Current temperatures, humidity and mode of all zones."""

    ADDR: ClassVar[bytes] = bytes((0x00, 0x3B, 0x02))

    z_current_temp: list = field(default_factory=_zeros(8))
    z_current_humidity: list = field(default_factory=_zeros(8))
    unknown1: int = 0
    outdoor_air_temp: int = 0
    zone_unocc: int = 0
    mode: int = 0
    unknown2: list = field(default_factory=_zeros(5))
    displayed_zone: int = 0

    def to_bytes(self):
        return _pack(
            _CURRENT,
            *self.z_current_temp,
            *self.z_current_humidity,
            self.unknown1,
            self.outdoor_air_temp,
            self.zone_unocc,
            self.mode,
            *self.unknown2,
            self.displayed_zone,
        )

    @classmethod
    def from_bytes(cls, data):
        v = _unpack(_CURRENT, data, cls.__name__)
        return cls(
            z_current_temp=list(v[0:8]),
            z_current_humidity=list(v[8:16]),
            unknown1=v[16],
            outdoor_air_temp=v[17],
            zone_unocc=v[18],
            mode=v[19],
            unknown2=list(v[20:25]),
            displayed_zone=v[25],
        )


_ZONE = struct.Struct(">8B B 8B 8B 8B B B 8H" + " 12s" * 8)


@dataclass
class TStatZoneParams:
    """Per-zone settings: fan modes, hold flags, setpoints and names."""

    ADDR: ClassVar[bytes] = bytes((0x00, 0x3B, 0x03))

    z_fan_mode: list = field(default_factory=_zeros(8))
    zone_hold: int = 0
    z_heat_setpoint: list = field(default_factory=_zeros(8))
    z_cool_setpoint: list = field(default_factory=_zeros(8))
    z_target_humidity: list = field(default_factory=_zeros(8))
    fan_auto_cfg: int = 0
    unknown: int = 0
    z_ovrd_duration: list = field(default_factory=_zeros(8))
    z_name: list = field(default_factory=lambda: [bytes(12)] * 8)

    def to_bytes(self):
        if len(self.z_name) != 8:
            raise ValueError("z_name must hold 8 zone names")
        return _pack(
            _ZONE,
            *self.z_fan_mode,
            self.zone_hold,
            *self.z_heat_setpoint,
            *self.z_cool_setpoint,
            *self.z_target_humidity,
            self.fan_auto_cfg,
            self.unknown,
            *self.z_ovrd_duration,
            *(bytes(name) for name in self.z_name),
        )

    @classmethod
    def from_bytes(cls, data):
        v = _unpack(_ZONE, data, cls.__name__)
        return cls(
            z_fan_mode=list(v[0:8]),
            zone_hold=v[8],
            z_heat_setpoint=list(v[9:17]),
            z_cool_setpoint=list(v[17:25]),
            z_target_humidity=list(v[25:33]),
            fan_auto_cfg=v[33],
            unknown=v[34],
            z_ovrd_duration=list(v[35:43]),
            z_name=list(v[43:51]),
        )


_DAMPER = struct.Struct(">8B")


@dataclass
class DamperParams:
    """Damper positions reported by the zone controllers."""

    ADDR: ClassVar[bytes] = bytes((0x00, 0x03, 0x19))

    z_damper_position: list = field(default_factory=_zeros(8))

    def to_bytes(self):
        return _pack(_DAMPER, *self.z_damper_position)

    @classmethod
    def from_bytes(cls, data):
        return cls(z_damper_position=list(_unpack(_DAMPER, data, cls.__name__)))


_VACATION = struct.Struct(">B H B B B B B")

_UINT8_MAX = 0xFF
_UINT16_MAX = 0xFFFF


@dataclass
class APIVacationConfig:
    """Vacation settings as exchanged with API clients; None means unset."""

    active: Optional[bool] = None
    days: Optional[int] = None
    hours: Optional[int] = None
    min_temperature: Optional[int] = None
    max_temperature: Optional[int] = None
    min_humidity: Optional[int] = None
    max_humidity: Optional[int] = None
    fan_mode: Optional[str] = None

    _KEYS: ClassVar[tuple] = (
        ("active", "active"),
        ("days", "days"),
        ("hours", "hours"),
        ("min_temperature", "minTemperature"),
        ("max_temperature", "maxTemperature"),
        ("min_humidity", "minHumidity"),
        ("max_humidity", "maxHumidity"),
        ("fan_mode", "fanMode"),
    )

    def to_dict(self):
        return {key: getattr(self, attr) for attr, key in self._KEYS}

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError("vacation config must be an object")
        limits = {
            "days": _UINT8_MAX,
            "hours": _UINT16_MAX,
            "minTemperature": _UINT8_MAX,
            "maxTemperature": _UINT8_MAX,
            "minHumidity": _UINT8_MAX,
            "maxHumidity": _UINT8_MAX,
        }
        values = {}
        for attr, key in cls._KEYS:
            value = data.get(key)
            if value is not None:
                if key == "active":
                    if not isinstance(value, bool):
                        raise ValueError(f"{key} must be a boolean")
                elif key == "fanMode":
                    if not isinstance(value, str):
                        raise ValueError(f"{key} must be a string")
                else:
                    if isinstance(value, bool) or not isinstance(value, int):
                        raise ValueError(f"{key} must be an integer")
                    if not 0 <= value <= limits[key]:
                        raise ValueError(f"{key} out of range: {value}")
            values[attr] = value
        return cls(**values)


@dataclass
class TStatVacationParams:
    """Vacation mode settings as stored by the thermostat."""

    ADDR: ClassVar[bytes] = bytes((0x00, 0x3B, 0x04))

    active: int = 0
    hours: int = 0
    min_temperature: int = 0
    max_temperature: int = 0
    min_humidity: int = 0
    max_humidity: int = 0
    fan_mode: int = 0

    def to_bytes(self):
        return _pack(
            _VACATION,
            self.active,
            self.hours,
            self.min_temperature,
            self.max_temperature,
            self.min_humidity,
            self.max_humidity,
            self.fan_mode,
        )

    @classmethod
    def from_bytes(cls, data):
        return cls(*_unpack(_VACATION, data, cls.__name__))

    def to_api(self):
        """Return the API view, with the remaining time also in whole days."""
        days = (((self.hours + 23) & _UINT16_MAX) // 24) & _UINT8_MAX
        return APIVacationConfig(
            active=self.active == 1,
            days=days,
            hours=self.hours,
            min_temperature=self.min_temperature,
            max_temperature=self.max_temperature,
            min_humidity=self.min_humidity,
            max_humidity=self.max_humidity,
            fan_mode=raw_fan_mode_to_string(self.fan_mode),
        )

    def from_api(self, config):
        """Apply the set fields of an API config; return the write flags."""
        flags = 0
        if config.active is not None:
            self.active = 1 if config.active else 0
            flags |= 0x01
        if config.hours is not None:
            self.hours = config.hours
            flags |= 0x02
        if config.days is not None:
            self.hours = (config.days * 24) & _UINT16_MAX
            flags |= 0x02
        if config.min_temperature is not None:
            self.min_temperature = config.min_temperature
            flags |= 0x04
        if config.max_temperature is not None:
            self.max_temperature = config.max_temperature
            flags |= 0x08
        if config.min_humidity is not None:
            self.min_humidity = config.min_humidity
            flags |= 0x10
        if config.max_humidity is not None:
            self.max_humidity = config.max_humidity
            flags |= 0x20
        if config.fan_mode is not None:
            try:
                self.fan_mode = string_fan_mode_to_raw(config.fan_mode)
            except ValueError:
                self.fan_mode = 0
            flags |= 0x40
        return flags


_SETTINGS = struct.Struct(">9B 20s 20s")


@dataclass
class TStatSettings:
    """General thermostat settings, including temperature units."""

    ADDR: ClassVar[bytes] = bytes((0x00, 0x3B, 0x06))

    backlight_setting: int = 0
    auto_mode: int = 0
    unknown1: int = 0
    dead_band: int = 0
    cycles_per_hour: int = 0
    schedule_periods: int = 0
    programs_enabled: int = 0
    temp_units: int = 0
    unknown2: int = 0
    dealer_name: bytes = bytes(20)
    dealer_phone: bytes = bytes(20)

    def to_bytes(self):
        return _pack(
            _SETTINGS,
            self.backlight_setting,
            self.auto_mode,
            self.unknown1,
            self.dead_band,
            self.cycles_per_hour,
            self.schedule_periods,
            self.programs_enabled,
            self.temp_units,
            self.unknown2,
            bytes(self.dealer_name),
            bytes(self.dealer_phone),
        )

    @classmethod
    def from_bytes(cls, data):
        return cls(*_unpack(_SETTINGS, data, cls.__name__))