"""Command line entry point: wires the bus, MQTT and web server together."""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import threading
import time
from datetime import datetime
from pathlib import Path

from .dispatcher import EventDispatcher, MqttBridge
from .protocol import InfinityProtocol
from .service import DEFAULT_INSTANCE, DEFAULT_MONITORS, ZONE_COUNT, Infinitive
from .webserver import DEFAULT_PORT, run_webserver

log = logging.getLogger(__name__)

DEFAULT_DUCT_CAPACITIES = "12,11,11,11,11,11,11,11,11"
MAX_INSTANCE_LENGTH = 32

_FORBIDDEN_INSTANCE_CHARS = set(" $#+*/")
_INTEGER = re.compile(r"[+-]?[0-9]+")
_STATE_POLL_INTERVAL = 1.0
_STATS_INTERVAL = 15.0


def _stamp(now):
    return f"{now:%b} {now.day:2d} {now:%H:%M:%S}"


class ResponseLogger:
    """Appends bus frames to an hourly rotated resplog.YYMMDDHH file."""

    def __init__(self, directory=".", clock=datetime.now):
        self.directory = Path(directory)
        self.path = None
        self._clock = clock
        self._file = None
        self._hour = ""

    def _hour_stamp(self):
        return self._clock().strftime("%y%m%d%H")

    def open(self):
        """Open the file for the current hour; return False if it cannot be opened."""
        hour = self._hour_stamp()
        path = self.directory / f"resplog.{hour}"
        try:
            new_file = open(path, "a", encoding="utf-8")
        except OSError as exc:
            log.error("Failed to open resp log file '%s': %s", path, exc)
            return False
        log.info("Opened resp log file '%s'", path)
        old, self._file = self._file, new_file
        self._hour = hour
        self.path = path
        if old is not None:
            old.close()
        return True

    def check_rotate(self):
        """Switch to a new file when the hour has changed."""
        if self._hour and self._hour != self._hour_stamp():
            self.open()

    def close(self):
        """Close the current file."""
        self.check_rotate()
        if self._file is not None:
            try:
                self._file.close()
            except OSError as exc:
                log.warning("Error on closing resp logger: '%s'", exc)
            else:
                self._file = None

    def _write_line(self, text):
        if self._file is None:
            return
        try:
            self._file.write(f"[{_stamp(self._clock())}] {text}\n")
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as exc:
            log.error("Logger write failed: %s", exc)

    def log(self, frame):
        """Record one frame."""
        self.check_rotate()
        self._write_line(str(frame))

    def log_text(self, text):
        """Record a line of text."""
        self._write_line(text)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc_info):
        self.close()


def validate_instance_name(name):
    """Return name if it is usable as an MQTT root topic, else raise ValueError."""
    if (
        not name
        or len(name) > MAX_INSTANCE_LENGTH
        or _FORBIDDEN_INSTANCE_CHARS.intersection(name)
    ):
        raise ValueError(f"invalid instance name {name!r}")
    return name


def parse_duct_capacities(spec):
    """Turn "leakage,z1,...,zN" percentages into per-zone airflow weights summing to 1."""
    leakage = 0
    total = 0
    zones = [0] * ZONE_COUNT
    for index, text in enumerate(spec.split(",")):
        if not _INTEGER.fullmatch(text) or not 0 <= int(text) <= 100:
            raise ValueError(f"Invalid ductCap percentage {text}")
        value = int(text)
        total += value
        if index == 0:
            leakage = value
        elif index <= ZONE_COUNT:
            zones[index - 1] = value
        else:
            raise ValueError("Too many values given in ductCap")
    if total != 100:
        raise ValueError("ductCap percentages must total 100%")
    zone_total = sum(zones)
    if zone_total == 0:
        raise ValueError("At least one zone must have a nonzero ductCap percentage")
    return [(leakage * (value / zone_total) + value) / 100 for value in zones]


def _build_parser():
    parser = argparse.ArgumentParser(prog="infinitive", allow_abbrev=False)
    parser.add_argument("-httpport", "--httpport", type=int, default=DEFAULT_PORT,
                        help="HTTP port to listen on")
    parser.add_argument("-serial", "--serial", default="", help="path to serial port")
    parser.add_argument("-mqtt", "--mqtt", default="", help="url for mqtt broker")
    parser.add_argument("-ductCap", "--ductCap", dest="duct_cap",
                        default=DEFAULT_DUCT_CAPACITIES,
                        help="duct capacities as comma-separated values for leakage,z1,...,zN")
    parser.add_argument("-instance", "--instance", default=DEFAULT_INSTANCE,
                        help="unique system instance name")
    parser.add_argument("-rlog", "--rlog", action="store_true", help="enable resp log")
    parser.add_argument("-debug", "--debug", action="store_true",
                        help="enable debug log level")
    return parser


def _configure_logging(debug):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _state_poller(service, monitors):
    while True:
        try:
            service.poll_state(monitors)
        except Exception:
            log.exception("state poll failed")
        time.sleep(_STATE_POLL_INTERVAL)


def _stats_poller(protocol):
    while True:
        log.info("#STATS# %s", protocol.stats_string())
        time.sleep(_STATS_INTERVAL)


def _run(args, instance, weights, logger):
    protocol = InfinityProtocol(args.serial, on_frame=logger.log if args.rlog else None)
    dispatcher = EventDispatcher()
    bridge = MqttBridge(instance) if args.mqtt else None
    service = Infinitive(
        protocol,
        instance=instance,
        dispatcher=dispatcher,
        mqtt=bridge,
        zone_weights=weights,
    )
    log.info("ductCap zone weights: %s", weights)

    service.attach_snoops()
    try:
        protocol.open()
    except Exception as exc:
        log.critical("error opening serial port: %s", exc)
        raise

    if bridge is not None:
        bridge.put_config = service.put_config
        bridge.put_vacation_config = service.put_vacation_config
        bridge.cache = service.mqtt_cache
        dispatcher.attach_mqtt(bridge)
        bridge.connect(args.mqtt, os.environ.get("MQTTPASS", ""))

    threading.Thread(
        target=_state_poller, args=(service, DEFAULT_MONITORS), name="state-poller", daemon=True
    ).start()
    threading.Thread(
        target=_stats_poller, args=(protocol,), name="stats-poller", daemon=True
    ).start()
    run_webserver(service, dispatcher, args.httpport)
    return 0


def main(argv=None):
    """Run the service; return the process exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        instance = validate_instance_name(args.instance)
    except ValueError:
        print("invalid instance name")
        parser.print_help(sys.stderr)
        return 1

    if not args.serial:
        print("must provide serial")
        parser.print_help(sys.stderr)
        return 1

    try:
        weights = parse_duct_capacities(args.duct_cap)
    except ValueError as exc:
        print(exc)
        return 1

    _configure_logging(args.debug)

    logger = ResponseLogger()
    if args.rlog and not logger.open():
        raise RuntimeError("unable to open resp log file")
    try:
        return _run(args, instance, weights, logger)
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())