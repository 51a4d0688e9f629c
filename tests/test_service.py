import copy
import json

import pytest

from infinitive.dispatcher import EventDispatcher, serialize_event
from infinitive.frame import InfinityFrame, Op
from infinitive.protocol import DEV_TSTAT, ActionTimeout, InfinityProtocol
from infinitive.service import (
    AirHandler,
    ConfigError,
    DamperPosition,
    HeatPump,
    Infinitive,
    TStatZoneConfig,
    TStatZonesConfig,
    hold_time,
)
from infinitive.tables import (
    TStatCurrentParams,
    TStatSettings,
    TStatVacationParams,
    TStatZoneParams,
)


class FakeProtocol:
    def __init__(self, tables=(), raw=None):
        self.tables = {type(t): t for t in tables}
        self.raw = dict(raw or {})
        self.reads = []
        self.raw_reads = []
        self.writes = []
        self.snoops = []

    def read_table(self, dst, table_cls):
        self.reads.append(table_cls)
        if table_cls not in self.tables:
            raise ActionTimeout("no response")
        return copy.deepcopy(self.tables[table_cls])

    def read(self, dst, addr):
        self.raw_reads.append((dst, bytes(addr)))
        try:
            return self.raw[bytes(addr)]
        except KeyError:
            raise ActionTimeout("no response") from None

    def write_table(self, dst, table, flags):
        self.writes.append((dst, table, None, flags))

    def write_table_z(self, dst, table, zone, flags):
        self.writes.append((dst, table, zone, flags))

    def snoop_response(self, src_min, src_max, callback):
        self.snoops.append((src_min, src_max, callback))


class Recorder:
    def __init__(self):
        self.published = {}
        self.discovered = []

    def publish(self, topic, value):
        self.published[topic] = value
        return True

    def discover_zone(self, zone_index, zone_name, temp_units):
        self.discovered.append((zone_index, zone_name, temp_units))
        return True


def _name(text):
    return text.encode().ljust(12, b" ")


def current_params():
    return TStatCurrentParams(
        z_current_temp=[72, 68, 0, 0, 0, 0, 0, 0],
        z_current_humidity=[40, 41, 0, 0, 0, 0, 0, 0],
        outdoor_air_temp=55,
        mode=0x21,
    )


def zone_params():
    return TStatZoneParams(
        z_fan_mode=[3, 0, 0, 0, 0, 0, 0, 0],
        zone_hold=0b10,
        z_heat_setpoint=[66, 64, 0, 0, 0, 0, 0, 0],
        z_cool_setpoint=[76, 78, 0, 0, 0, 0, 0, 0],
        z_target_humidity=[45, 50, 0, 0, 0, 0, 0, 0],
        z_ovrd_duration=[90, 0, 0, 0, 0, 0, 0, 0],
        z_name=[_name("ZONE 1"), _name("Upstairs")] + [bytes(12)] * 6,
    )


def settings(dealer=b"Dealer"):
    return TStatSettings(temp_units=1, unknown1=7, unknown2=9, dealer_name=dealer.ljust(20, b"\0"))


def vacation(active=1, hours=30):
    return TStatVacationParams(
        active=active, hours=hours, min_temperature=60, max_temperature=80,
        min_humidity=20, max_humidity=60, fan_mode=0,
    )


def all_tables(**overrides):
    tables = {
        "current": current_params(),
        "zone": zone_params(),
        "settings": settings(),
        "vacation": vacation(),
    }
    tables.update(overrides)
    return [t for t in tables.values() if t is not None]


def make_service(tables=None, raw=None, protocol=None):
    recorder = Recorder()
    dispatcher = EventDispatcher()
    dispatcher.attach_mqtt(recorder)
    if protocol is None:
        protocol = FakeProtocol(all_tables() if tables is None else tables, raw)
    service = Infinitive(protocol, dispatcher=dispatcher, mqtt=recorder)
    return service, protocol, recorder, dispatcher


def test_hold_time_formats_hours_and_minutes():
    assert hold_time(0) == ""
    assert hold_time(90) == "1:30"
    assert hold_time(5) == "0:05"


def test_zones_config_lists_active_zones():
    service, _, recorder, _ = make_service()
    cfg = service.get_zones_config()
    assert [z.zone_number for z in cfg.zones] == [1, 2]
    assert [z.zone_name for z in cfg.zones] == ["ZONE 1", "Upstairs"]
    assert cfg.mode == "cool"
    assert cfg.action == "cooling"
    assert cfg.stage == 1
    assert cfg.raw_mode == 0x21
    assert cfg.outdoor_temp == 55
    first, second = cfg.zones
    assert first.fan_mode == "high"
    assert first.hold is False and first.preset == "none"
    assert second.hold is True and second.preset == "hold"
    assert first.override_duration == hold_time(90)
    assert first.override_duration_mins == 90
    assert first.current_temp == 72 and second.current_humidity == 41
    assert recorder.discovered == [(0, "ZONE 1", 1), (1, "Upstairs", 1)]


def test_settings_read_only_once_when_dealer_known():
    service, protocol, _, _ = make_service()
    service.get_zones_config()
    service.get_zones_config()
    assert protocol.reads.count(TStatSettings) == 1


def test_settings_read_again_when_dealer_empty():
    service, protocol, _, _ = make_service(all_tables(settings=settings(dealer=b"")))
    service.get_zones_config()
    service.get_zones_config()
    assert protocol.reads.count(TStatSettings) == 2


def test_zones_config_timeout_propagates():
    service, _, _, _ = make_service(all_tables(current=None))
    with pytest.raises(ActionTimeout):
        service.get_zones_config()


def test_zone_config_for_one_zone():
    service, _, _, _ = make_service()
    cfg = service.get_zone_config(1)
    assert cfg.zone_name == "Upstairs"
    assert cfg.target_humidity == 50
    assert cfg.cool_setpoint == 78
    assert cfg.heat_setpoint == 64
    assert cfg.preset == "hold"
    assert cfg.zone_number == 0
    assert "zoneNumber" not in cfg.to_dict()


@pytest.mark.parametrize("index", [-1, 8])
def test_zone_config_rejects_bad_index(index):
    service, _, _, _ = make_service()
    with pytest.raises(ValueError):
        service.get_zone_config(index)


def test_zone_config_to_dict_keys():
    cfg = TStatZoneConfig(zone_number=3, hold=True, fan_mode="low")
    data = cfg.to_dict()
    assert data["zoneNumber"] == 3
    assert data["hold"] is True
    assert data["fanMode"] == "low"
    zones = TStatZonesConfig(zones=[cfg], mode="heat").to_dict()
    assert zones["zones"] == [data]
    assert "zones" not in TStatZonesConfig().to_dict()


def test_vacation_config_reads_table():
    service, _, _, _ = make_service()
    vac = service.get_vacation_config()
    assert vac == vacation().to_api()
    assert vac.active is True


def test_tstat_settings_zeroes_unknown_fields():
    service, _, _, _ = make_service()
    tss = service.get_tstat_settings()
    assert tss.unknown1 == 0 and tss.unknown2 == 0
    assert tss.temp_units == 1
    assert tss.dealer_name == settings().dealer_name


def test_put_fan_mode_writes_zone_table():
    service, protocol, _, _ = make_service()
    service.put_config("2", "fanMode", "high")
    dst, table, zone, flags = protocol.writes[-1]
    assert dst == DEV_TSTAT
    assert zone == 1
    assert flags == 0x01
    assert table.z_fan_mode[1] == 3


def test_put_setpoints():
    service, protocol, _, _ = make_service()
    service.put_config("1", "coolSetpoint", "75")
    _, table, zone, flags = protocol.writes[-1]
    assert (zone, flags, table.z_cool_setpoint[0]) == (0, 0x08, 75)
    service.put_config("3", "heatSetpoint", "65")
    _, table, zone, flags = protocol.writes[-1]
    assert (zone, flags, table.z_heat_setpoint[2]) == (2, 0x04, 65)


@pytest.mark.parametrize("value", ["300", "-1", "abc", "", "+5"])
def test_put_setpoint_rejects_bad_values(value):
    service, protocol, _, _ = make_service()
    with pytest.raises(ConfigError):
        service.put_config("1", "coolSetpoint", value)
    assert protocol.writes == []


def test_put_hold_and_preset():
    service, protocol, _, _ = make_service()
    service.put_config("3", "hold", "true")
    _, table, zone, flags = protocol.writes[-1]
    assert table.zone_hold == 1 << 2 and flags == 0x02 and zone == 2
    service.put_config("3", "preset", "none")
    _, table, _, flags = protocol.writes[-1]
    assert table.zone_hold == 0 and flags == 0x02
    with pytest.raises(ConfigError):
        service.put_config("3", "preset", "vacation")
    with pytest.raises(ConfigError):
        service.put_config("3", "hold", "yes")


def test_put_global_mode():
    service, protocol, _, _ = make_service()
    service.put_config("0", "mode", "off")
    dst, table, zone, flags = protocol.writes[-1]
    assert dst == DEV_TSTAT and zone is None and flags == 0x10
    assert table.mode == 5


@pytest.mark.parametrize(
    "zone,param,value",
    [
        ("0", "mode", "electric"),
        ("0", "fanMode", "auto"),
        ("9", "fanMode", "auto"),
        ("-1", "mode", "heat"),
        ("abc", "mode", "heat"),
        ("1", "colour", "red"),
        ("1", "fanMode", "turbo"),
    ],
)
def test_put_config_errors(zone, param, value):
    service, protocol, _, _ = make_service()
    with pytest.raises(ConfigError):
        service.put_config(zone, param, value)
    assert protocol.writes == []


def test_put_vacation_days_absolute():
    service, protocol, _, _ = make_service()
    service.put_vacation_config("days", "3")
    dst, table, _, flags = protocol.writes[-1]
    assert flags == 0x02
    assert table.to_api().days == 3
    assert TStatVacationParams not in protocol.reads


def test_put_vacation_hours_relative():
    service, protocol, _, _ = make_service(all_tables(vacation=vacation(hours=10)))
    service.put_vacation_config("hours", "+5")
    assert protocol.writes[-1][1].hours == 15
    service.put_vacation_config("hours", "-20")
    assert protocol.writes[-1][1].hours == 0


def test_put_vacation_relative_without_current_uses_zero():
    service, protocol, _, _ = make_service(all_tables(vacation=None))
    service.put_vacation_config("hours", "+4")
    assert protocol.writes[-1][1].hours == 4


@pytest.mark.parametrize(
    "param,value",
    [("weeks", "1"), ("days", ""), ("days", "200"), ("hours", "x"), ("hours", "40000")],
)
def test_put_vacation_errors(param, value):
    service, protocol, _, _ = make_service()
    with pytest.raises(ConfigError):
        service.put_vacation_config(param, value)
    assert protocol.writes == []


def test_get_raw_data_reads_address():
    addr = bytes((0x00, 0x3B, 0x05))
    service, protocol, _, _ = make_service(raw={addr: b"\x01\x02"})
    assert service.get_raw_data(DEV_TSTAT, addr) == b"\x01\x02"
    assert protocol.raw_reads == [(DEV_TSTAT, addr)]
    with pytest.raises(ActionTimeout):
        service.get_raw_data(DEV_TSTAT, bytes((0x00, 0x3B, 0x06)))


def test_initial_equipment_status():
    service, _, _, _ = make_service()
    assert service.air_handler() == AirHandler()
    assert service.heat_pump() == HeatPump()
    assert service.damper_position() == DamperPosition()


def test_poll_state_publishes_zone_and_vacation():
    service, _, recorder, _ = make_service()
    service.poll_state([])
    pub = recorder.published
    assert pub["infinitive/zone/1/currentTemp"] == 72
    assert pub["infinitive/zone/2/hold"] is True
    assert pub["infinitive/zone/1/preset"] == "vacation"
    assert pub["infinitive/humidity"] == 41
    assert pub["infinitive/mode"] == "cool"
    assert pub["infinitive/vacation/days"] == service.get_vacation_config().days
    assert service.ws_cache.get("tstat") == service.get_zones_config()


def test_poll_state_uses_zone_preset_without_vacation():
    service, _, recorder, _ = make_service(all_tables(vacation=vacation(active=0)))
    service.poll_state()
    assert recorder.published["infinitive/zone/1/preset"] == "none"
    assert recorder.published["infinitive/zone/2/preset"] == "hold"
    assert recorder.published["infinitive/vacation/active"] is False


def test_poll_state_survives_timeouts():
    service, _, recorder, _ = make_service(tables=[])
    service.poll_state([0x3B05])
    assert recorder.published == {}
    assert service.ws_cache.get("tstat") is None


def test_poll_state_rotates_monitors():
    service, protocol, _, _ = make_service()
    for _ in range(3):
        service.poll_state([0x3B05, 0x3D02])
    assert [addr for _, addr in protocol.raw_reads] == [
        bytes((0x00, 0x3B, 0x05)),
        bytes((0x00, 0x3D, 0x02)),
        bytes((0x00, 0x3B, 0x05)),
    ]


def _snooping_service():
    protocol = InfinityProtocol("unused")
    service, _, recorder, dispatcher = make_service(protocol=protocol)
    service.attach_snoops()
    return service, protocol, recorder, dispatcher


def _response(src, data):
    return InfinityFrame(dst=DEV_TSTAT, src=src, op=Op.RESPONSE, data=data)


def test_attach_snoops_registers_three_ranges():
    protocol = FakeProtocol()
    service = Infinitive(protocol)
    service.attach_snoops()
    assert [(lo, hi) for lo, hi, _ in protocol.snoops] == [
        (0x5000, 0x51FF), (0x4000, 0x42FF), (0x6000, 0x61FF)
    ]


def test_heat_pump_temperatures_snooped():
    service, protocol, recorder, dispatcher = _snooping_service()
    listener = dispatcher.register()
    payload = (50 * 16).to_bytes(2, "big") + (40 * 16).to_bytes(2, "big")
    protocol.handle_frame(_response(0x5001, b"\x00\x3e\x01" + payload))
    hp = service.heat_pump()
    assert hp.outside_temp == 50.0
    assert hp.coil_temp == 40.0
    assert recorder.published["infinitive/coilTemp"] == 40.0
    event = json.loads(listener.get(timeout=1))
    assert event["source"] == "heatpump"
    assert event["data"]["outsideTemp"] == 50.0


def test_heat_pump_stage_snooped():
    service, protocol, recorder, _ = _snooping_service()
    protocol.handle_frame(_response(0x5001, b"\x00\x3e\x02\x04"))
    assert service.heat_pump().stage == 2
    assert recorder.published["infinitive/coolStage"] == 2


def test_air_handler_status_snooped():
    service, protocol, recorder, _ = _snooping_service()
    payload = bytes([0x01, 0x00, 0x00, 0x00]) + (1200).to_bytes(2, "big") + b"\x00" + (
        0x8000
    ).to_bytes(2, "big")
    protocol.handle_frame(_response(0x4001, b"\x00\x03\x16" + payload))
    air = service.air_handler()
    assert air.air_flow_cfm == 1200
    assert air.heat_stage == 1
    assert air.elec_heat is True
    assert air.action == "heating"
    assert air.static_pressure == 0.5
    assert recorder.published["infinitive/action"] == "heating"


def test_air_handler_cooling_and_blower():
    service, protocol, recorder, _ = _snooping_service()
    payload = bytes([0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])
    protocol.handle_frame(_response(0x4001, b"\x00\x03\x16" + payload))
    assert service.air_handler().action == "cooling"
    protocol.handle_frame(_response(0x4001, b"\x00\x03\x06\x00" + (850).to_bytes(2, "big")))
    air = service.air_handler()
    assert air.blower_rpm == 850
    assert air.action == "cooling"
    assert recorder.published["infinitive/blowerRPM"] == 850


def test_damper_positions_snooped():
    service, protocol, recorder, _ = _snooping_service()
    data = bytes([15, 5, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF])
    protocol.handle_frame(_response(0x6001, b"\x00\x03\x19" + data))
    positions = service.damper_position().damper_position
    assert positions[:2] == [15, 5]
    assert positions[2:] == [0] * 6
    assert recorder.published["infinitive/zone/1/damperPos"] == 100
    weights = [recorder.published[f"infinitive/zone/{n}/flowWeight"] for n in (1, 2)]
    assert sum(weights) == pytest.approx(1.0)
    assert weights[0] > weights[1]
    assert "infinitive/zone/3/flowWeight" not in recorder.published


def test_cached_status_is_a_copy():
    service, _, _, _ = make_service()
    dampers = service.damper_position()
    dampers.damper_position[0] = 9
    assert service.damper_position().damper_position[0] == 0
    assert serialize_event("damperpos", service.damper_position()) == serialize_event(
        "damperpos", DamperPosition()
    )


def test_zone_weights_must_cover_all_zones():
    with pytest.raises(ValueError):
        Infinitive(FakeProtocol(), zone_weights=[1.0, 0.0])