# infinitive

`infinitive` talks to a communicating HVAC system (thermostat, air handler,
heat pump and zone controllers) over its serial bus, acting as a bus device of
its own (address `0x9201`). It polls the thermostat once a second for zone and
vacation settings, follows the responses that other devices send on the bus,
and makes the state available through:

- an HTTP JSON API and a WebSocket stream of state changes;
- MQTT topics, including Home Assistant discovery messages for a climate
  entity per zone, system sensors and vacation buttons.

## Installation

```
pip install .
```

## Running

```
infinitive --serial /dev/ttyUSB0
```

The serial port is opened at 38400 baud. Options (each also accepted with a
single dash, e.g. `-serial`):

| option | default | meaning |
| --- | --- | --- |
| `--serial` | (required) | path to the serial port |
| `--httpport` | `8080` | HTTP port to listen on |
| `--mqtt` | none | MQTT broker URL; schemes `tcp`/`mqtt` (port 1883) or `ssl`/`tls`/`mqtts`/`tcps` (port 8883), e.g. `tcp://localhost:1883` |
| `--instance` | `infinitive` | instance name, used as the MQTT root topic and to make entity ids unique |
| `--ductCap` | `12,11,11,11,11,11,11,11,11` | duct capacities in percent: leakage, then up to 8 zones; must total 100, with at least one nonzero zone |
| `--rlog` | off | append every received frame to an hourly `resplog.YYMMDDHH` file in the working directory |
| `--debug` | off | debug log level |

The MQTT password is taken from the `MQTTPASS` environment variable.

The instance name must be 1 to 32 characters and may not contain spaces or
any of `$ # + * /`. An invalid instance name, a missing `--serial` or a bad
`--ductCap` makes the command print a message and exit with status 1.

Bus traffic counters are logged every 15 seconds on a line starting `#STATS#`.

## HTTP API

- `GET /api/tstat/settings` – thermostat settings
- `GET /api/zones/config` – status and settings of all active zones
- `GET /api/zone/{n}/config` – one zone (1–8)
- `PUT /api/zone/{n}/config` – JSON body with any of `fanMode`, `hold`,
  `heatSetpoint`, `coolSetpoint`, `mode`
- `GET /api/airhandler`, `GET /api/heatpump` (also under `/api/zone/1/`) –
  equipment state followed from the bus
- `GET /api/zone/1/vacation`, `PUT /api/zone/1/vacation` – vacation mode;
  body keys `active`, `days`, `hours`, `minTemperature`, `maxTemperature`,
  `minHumidity`, `maxHumidity`, `fanMode`
- `GET /api/raw/{device}/{table}` – raw table read, e.g. `/api/raw/2001/003b02`,
  answered as `{"response": "<hex>"}`
- `GET /api/ws` – WebSocket stream of `{"source": ..., "data": ...}` events;
  the current state is sent first
- `GET /` – redirects to `ui`

Invalid requests get status 400, and a thermostat that does not answer gets
504; both with a body of the form `[{"error": "..."}]`.

## MQTT

State is published, retained, under `<instance>/...`, for example
`<instance>/zone/1/currentTemp`, `<instance>/outdoorTemp`,
`<instance>/vacation/days`, `<instance>/blowerRPM`. Availability is published
to `<instance>/available` (`online`, with `offline` as the last will).
Settings are changed by publishing to:

- `<instance>/mode/set` – `heat`, `cool`, `auto` or `off`
- `<instance>/zone/<n>/fanMode/set` – `auto`, `low`, `med`, `high`
- `<instance>/zone/<n>/heatSetpoint/set`, `.../coolSetpoint/set` – a whole
  number (a payload such as `72.0` is cut to `72`)
- `<instance>/zone/<n>/hold/set` – `true` or `false`
- `<instance>/zone/<n>/preset/set` – `hold` or `none`
- `<instance>/vacation/days/set`, `<instance>/vacation/hours/set` – a number,
  or `+N` / `-N` to adjust the current value

## Library use

The parts can be used on their own:

- `infinitive.frame` – `InfinityFrame` with `encode()` / `decode()`, `Op`,
  `checksum()` and `FrameError`
- `infinitive.tables` – the thermostat tables (`TStatCurrentParams`,
  `TStatZoneParams`, `TStatVacationParams`, `TStatSettings`, `DamperParams`)
  with `to_bytes()` / `from_bytes()`, and `APIVacationConfig`
- `infinitive.conversions` – mode and fan mode names to and from raw codes
- `infinitive.protocol` – `InfinityProtocol`, the request/response exchange
  with retries (`read`, `read_table`, `write_table`, `write_table_z`,
  `snoop_response`); raises `ActionTimeout` when nothing answers
- `infinitive.service` – `Infinitive`, which turns tables into zone and
  vacation configuration, applies settings (`put_config`,
  `put_vacation_config`, raising `ConfigError`) and polls state
- `infinitive.cache` – `Cache`, which reports changed values
- `infinitive.dispatcher` – `EventDispatcher`, `EventListener` and
  `MqttBridge`, plus the Home Assistant discovery message builders
- `infinitive.webserver` – `create_app()` and `run_webserver()`
- `infinitive.cli` – `main()`, `ResponseLogger`, `validate_instance_name()`,
  `parse_duct_capacities()`

## What it does not include

No web user interface pages are shipped. `/ui` is only served when an
`assets` directory is present inside the installed `infinitive` package;
otherwise the redirect from `/` leads nowhere.