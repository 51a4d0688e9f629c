"""Event fan-out to websocket listeners and the MQTT bridge to Home Assistant."""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import threading
from collections import deque
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

log = logging.getLogger(__name__)

DEFAULT_INSTANCE = "infinitive"
LISTENER_QUEUE_SIZE = 32
ZONE_COUNT = 8

_MQTT_PREFIX = "mqtt/"
_DISCOVERY_ROOT = "homeassistant"
_PLAIN_PORTS = {"tcp": 1883, "mqtt": 1883}
_TLS_PORTS = {"ssl": 8883, "tls": 8883, "mqtts": 8883, "tcps": 8883}
_MIN_RECONNECT_DELAY = 1
_MAX_RECONNECT_DELAY = 300


def _json_default(obj):
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"cannot serialize {type(obj).__name__}")


def _dumps(obj, indent=None):
    separators = None if indent is not None else (",", ":")
    return json.dumps(
        obj,
        default=_json_default,
        separators=separators,
        indent=indent,
        ensure_ascii=False,
    )


def serialize_event(source, data):
    """Return the JSON event message sent to websocket listeners."""
    return _dumps({"source": source, "data": data}).encode("utf-8")


def _format_value(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


# (state topic, name, device class, state class, unit, unique id)
_SENSORS = (
    ("/outdoorTemp", "Outdoor Temperature", "temperature", "measurement", "°F", "hvac-sensors-odt"),
    ("/humidity", "Indoor Humidity", "humidity", "measurement", "%", "hvac-sensors-hum"),
    ("/rawMode", "Raw Mode", "", "measurement", "", "hvac-sensors-rawmode"),
    ("/blowerRPM", "Blower RPM", "", "measurement", "RPM", "hvac-sensors-blowerrpm"),
    ("/airflowCFM", "Airflow CFM", "", "measurement", "CFM", "hvac-sensors-aflo"),
    ("/staticPressure", "Static Pressure", "distance", "measurement", "in", "hvac-sensors-ahsp"),
    ("/coolStage", "Cool Stage", "", "measurement", "", "hvac-sensors-acstage"),
    ("/heatStage", "Heat Stage", "", "measurement", "", "hvac-sensors-heatstage"),
    ("/action", "Action", "enum", "", "", "hvac-sensors-actn"),
    ("/vacation/active", "Vacation Mode Active", "enum", "", "", "hvac-sensors-vacay-active"),
    ("/vacation/days", "Vacation Mode Days Remaining", "duration", "measurement", "d",
     "hvac-sensors-vacay-days"),
    ("/vacation/hours", "Vacation Mode Hours Remaining", "duration", "measurement", "h",
     "hvac-sensors-vacay-hours"),
    ("/vacation/minTemp", "Vacation Mode Minimum Temperature", "temperature", "measurement", "°F",
     "hvac-sensors-vacay-mint"),
    ("/vacation/maxTemp", "Vacation Mode Maximum Temperature", "temperature", "measurement", "°F",
     "hvac-sensors-vacay-maxt"),
    ("/vacation/minHumidity", "Vacation Mode Minimum Humidity", "humidity", "measurement", "%",
     "hvac-sensors-vacay-minh"),
    ("/vacation/maxHumidity", "Vacation Mode Maximum Humidity", "humidity", "measurement", "%",
     "hvac-sensors-vacay-maxh"),
    ("/vacation/fanMode", "Vacation Mode Fan Mode", "enum", "", "", "hvac-sensors-vacay-fm"),
)

# (command topic, name, payload, unique id)
_BUTTONS = (
    ("/vacation/hours/set", "Vacation Cancel", "0", "hvac-vac-can"),
    ("/vacation/hours/set", "Vacation Add 1 Hour", "+1", "hvac-vac-plus1"),
    ("/vacation/hours/set", "Vacation Subtract 1 Hour", "-1", "hvac-vac-minus1"),
    ("/vacation/hours/set", "Vacation 1 Hour", "1", "hvac-vac-1hr"),
    ("/vacation/hours/set", "Vacation 2 Hours", "2", "hvac-vac-2hr"),
    ("/vacation/hours/set", "Vacation 4 Hours", "4", "hvac-vac-4hr"),
    ("/vacation/hours/set", "Vacation 8 Hours", "8", "hvac-vac-8hr"),
    ("/vacation/hours/set", "Vacation 12 Hours", "12", "hvac-vac-12hr"),
    ("/vacation/hours/set", "Vacation 18 Hours", "18", "hvac-vac-18hr"),
    ("/vacation/days/set", "Vacation Add 1 Day", "+1", "hvac-vac-plus1d"),
    ("/vacation/days/set", "Vacation Subtract 1 Day", "-1", "hvac-vac-minus1d"),
    ("/vacation/days/set", "Vacation 1 Day", "1", "hvac-vac-1d"),
    ("/vacation/days/set", "Vacation 2 Days", "2", "hvac-vac-2d"),
    ("/vacation/days/set", "Vacation 3 Days", "3", "hvac-vac-3d"),
    ("/vacation/days/set", "Vacation 4 Days", "4", "hvac-vac-4d"),
    ("/vacation/days/set", "Vacation 5 Days", "5", "hvac-vac-5d"),
    ("/vacation/days/set", "Vacation 6 Days", "6", "hvac-vac-6d"),
    ("/vacation/days/set", "Vacation 7 Days", "7", "hvac-vac-7d"),
)

# (state topic suffix, name suffix, device class, state class, unit, unique id suffix)
_ZONE_SENSORS = (
    ("damperPos", "Damper Postion", "", "measurement", "%", "dpos"),
    ("flowWeight", "Airflow Weight", "", "measurement", "", "fwgt"),
    ("overrideDurationMins", "Override Duration", "duration", "measurement", "min", "odur"),
)


def _availability_topic(instance):
    return f"{instance}/available"


def _display_instance(instance):
    return instance.replace("_", " ")


def _entity_labels(instance, name, unique_id):
    if instance != DEFAULT_INSTANCE:
        return f"{_display_instance(instance)} {name}", f"{instance}-{unique_id}"
    return f"HVAC {name}", unique_id


def _sensor_payload(topic, name, device_class, state_class, unit, unique_id, availability):
    payload = {"state_topic": topic, "name": name}
    if device_class:
        payload["device_class"] = device_class
    if state_class:
        payload["state_class"] = state_class
    if unit:
        payload["unit_of_measurement"] = unit
    payload["unique_id"] = unique_id
    if availability:
        payload["availability_topic"] = availability
    return _dumps(payload)


def sensor_discovery_messages(instance):
    """Return (topic, payload) pairs announcing the system-wide sensors."""
    availability = _availability_topic(instance)
    messages = []
    for topic, name, device_class, state_class, unit, unique_id in _SENSORS:
        name, unique_id = _entity_labels(instance, name, unique_id)
        payload = _sensor_payload(
            instance + topic, name, device_class, state_class, unit, unique_id, availability
        )
        messages.append((f"{_DISCOVERY_ROOT}/sensor/infinitive/{unique_id}/config", payload))
    return messages


def button_discovery_messages(instance):
    """Return (topic, payload) pairs announcing the vacation buttons."""
    availability = _availability_topic(instance)
    messages = []
    for topic, name, press, unique_id in _BUTTONS:
        name, unique_id = _entity_labels(instance, name, unique_id)
        payload = {"command_topic": instance + topic, "name": name}
        if press:
            payload["payload_press"] = press
        payload["unique_id"] = unique_id
        payload["availability_topic"] = availability
        messages.append(
            (f"{_DISCOVERY_ROOT}/button/infinitive/{unique_id}/config", _dumps(payload))
        )
    return messages


def _check_zone_index(zone_index):
    if not 0 <= zone_index < ZONE_COUNT:
        raise ValueError(f"zone index out of range: {zone_index}")


def zone_discovery_messages(instance, zone_index, zone_name, temp_units):
    """Return (topic, payload) pairs announcing one zone's climate entity and sensors."""
    _check_zone_index(zone_index)
    number = zone_index + 1
    unit = "C" if temp_units > 0 else "F"
    device_id = f"climate-zone-{number}"
    if instance != DEFAULT_INSTANCE:
        device_id = f"{instance}-{device_id}"
        if zone_name == "ZONE 1":
            zone_name = _display_instance(instance)
    elif zone_name == "ZONE 1":
        zone_name = "HVAC"

    zone = f"{instance}/zone/{number}"
    climate = {
        "name": zone_name,
        "modes": ["off", "cool", "heat", "auto"],
        "fan_modes": ["high", "med", "low", "auto"],
        "preset_modes": ["hold", "vacation"],
        "current_humidity_topic": f"{zone}/humidity",
        "current_temperature_topic": f"{zone}/currentTemp",
        "fan_mode_state_topic": f"{zone}/fanMode",
        "mode_state_topic": f"{instance}/mode",
        "action_topic": f"{instance}/action",
        "temperature_high_state_topic": f"{zone}/coolSetpoint",
        "temperature_low_state_topic": f"{zone}/heatSetpoint",
        "fan_mode_command_topic": f"{zone}/fanMode/set",
        "mode_command_topic": f"{instance}/mode/set",
        "temperature_high_command_topic": f"{zone}/coolSetpoint/set",
        "temperature_low_command_topic": f"{zone}/heatSetpoint/set",
        "preset_mode_state_topic": f"{zone}/preset",
        "preset_mode_command_topic": f"{zone}/preset/set",
        "temp_step": 1,
        "temperature_unit": unit,
        "availability_topic": _availability_topic(instance),
        "unique_id": f"{instance}-hvac-zone-{number}-ad",
    }
    messages = [
        (f"{_DISCOVERY_ROOT}/climate/infinitive/{device_id}/config", _dumps(climate, indent="\t"))
    ]

    availability = _availability_topic(instance)
    for topic, name, device_class, state_class, sensor_unit, suffix in _ZONE_SENSORS:
        unique_id = f"hvac-sensors-z{number}-{suffix}"
        if instance != DEFAULT_INSTANCE:
            unique_id = f"{instance}-{unique_id}"
        payload = _sensor_payload(
            f"{zone}/{topic}",
            f"{zone_name} {name}",
            device_class,
            state_class,
            sensor_unit,
            unique_id,
            availability,
        )
        messages.append((f"{_DISCOVERY_ROOT}/sensor/infinitive/{unique_id}/config", payload))
    return messages


class EventListener:
    """A bounded, closable queue of event messages for one subscriber."""

    def __init__(self, maxsize=LISTENER_QUEUE_SIZE):
        self._messages = deque()
        self._maxsize = maxsize
        self._closed = False
        self._cond = threading.Condition()

    @property
    def closed(self):
        with self._cond:
            return self._closed

    def put(self, message):
        """Queue message; return False if the listener is full or closed."""
        with self._cond:
            if self._closed or len(self._messages) >= self._maxsize:
                return False
            self._messages.append(message)
            self._cond.notify()
            return True

    def close(self):
        """Stop accepting messages; queued ones can still be read."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout=None):
        """Return the next message, or None once closed and drained.

        Raises TimeoutError if nothing arrives within timeout seconds.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._messages or self._closed, timeout=timeout
            )
            if not ready:
                raise TimeoutError("no event within timeout")
            if self._messages:
                return self._messages.popleft()
            return None

    def __iter__(self):
        while True:
            message = self.get()
            if message is None:
                return
            yield message


class EventDispatcher:
    """Fans events out to websocket listeners, and "mqtt/" events to MQTT."""

    def __init__(self, listener_queue_size=LISTENER_QUEUE_SIZE):
        self._listeners = set()
        self._lock = threading.Lock()
        self._queue_size = listener_queue_size
        self._mqtt = None

    def __len__(self):
        with self._lock:
            return len(self._listeners)

    def register(self):
        """Create, register and return a new listener."""
        listener = EventListener(self._queue_size)
        with self._lock:
            self._listeners.add(listener)
        return listener

    def deregister(self, listener):
        """Remove a listener and close it."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.discard(listener)
                listener.close()

    def attach_mqtt(self, bridge):
        """Send "mqtt/" events to bridge from now on."""
        self._mqtt = bridge

    def broadcast_event(self, source, data):
        """Deliver an event; a listener that cannot keep up is dropped."""
        if source.startswith(_MQTT_PREFIX):
            bridge = self._mqtt
            if bridge is not None:
                bridge.publish(source[len(_MQTT_PREFIX):], data)
            return
        message = serialize_event(source, data)
        with self._lock:
            for listener in list(self._listeners):
                if not listener.put(message):
                    listener.close()
                    self._listeners.discard(listener)


def _new_client(client_id):
    if hasattr(mqtt, "CallbackAPIVersion"):
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION1, client_id=client_id)
    return mqtt.Client(client_id=client_id)


class MqttBridge:
    """Publishes state to an MQTT broker and applies settings received from it."""

    def __init__(
        self,
        instance=DEFAULT_INSTANCE,
        *,
        put_config=None,
        put_vacation_config=None,
        cache=None,
        client=None,
    ):
        self.instance = instance
        self.put_config = put_config
        self.put_vacation_config = put_vacation_config
        self.cache = cache
        self.client = client
        self._discovered = set()
        self._lock = threading.Lock()

    def connect(self, url, password):
        """Start connecting to the broker in the background, retrying until it succeeds."""
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme in _PLAIN_PORTS:
            use_tls, default_port = False, _PLAIN_PORTS[scheme]
        elif scheme in _TLS_PORTS:
            use_tls, default_port = True, _TLS_PORTS[scheme]
        else:
            raise ValueError(f"unsupported MQTT broker URL {url!r}")
        host = parts.hostname
        if not host:
            raise ValueError(f"MQTT broker URL has no host: {url!r}")
        port = parts.port or default_port

        client_id = f"{self.instance}_mqtt_client"
        client = _new_client(client_id)
        if password:
            client.username_pw_set(parts.username or "", password)
        client.will_set(_availability_topic(self.instance), "offline", qos=0, retain=True)
        client.on_connect = self.on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(
            min_delay=_MIN_RECONNECT_DELAY, max_delay=_MAX_RECONNECT_DELAY
        )
        if use_tls:
            client.tls_set()
        self.client = client

        log.info("MQTT: Start trying to connect as %s", client_id)
        client.connect_async(host, port)
        client.loop_start()
        return client

    def _on_disconnect(self, client, userdata, rc):
        log.info("MQTT: Connection lost: %s", rc)

    def _subscribe(self, client, topic):
        result, _mid = client.subscribe(topic, 0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            log.error("MQTT: failed to subscribe for %s: %s", topic, result)
        else:
            log.info("MQTT: subscribe succeeded for %s", topic)

    def on_connect(self, client, userdata, flags, rc):
        """Subscribe to setting topics and announce entities after connecting."""
        if rc != 0:
            log.error("MQTT: connection refused: %s", rc)
            return
        log.info("MQTT: Connected, subscribing...")
        self._subscribe(client, f"{self.instance}/zone/+/+/set")
        self._subscribe(client, f"{self.instance}/vacation/+/set")
        self._subscribe(client, f"{self.instance}/+/set")

        info = client.publish(_availability_topic(self.instance), "online", qos=0, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            log.error("MQTT: failed to publish 'available' status: %s", info.rc)
        else:
            log.info("MQTT: published 'available' status as 'online'")

        for topic, payload in sensor_discovery_messages(self.instance):
            log.info("MQTT PUB: %s", payload)
            client.publish(topic, payload, qos=0, retain=True)
        for topic, payload in button_discovery_messages(self.instance):
            log.info("MQTT PUB: %s", payload)
            client.publish(topic, payload, qos=0, retain=True)

        with self._lock:
            self._discovered.clear()
        if self.cache is not None:
            self.cache.clear()

    def _on_message(self, client, userdata, msg):
        log.info("MQTT: Received message: %s from topic: %s", msg.payload, msg.topic)
        try:
            self.handle_message(msg.topic, msg.payload)
        except Exception:
            log.exception("MQTT: failed to apply message on %s", msg.topic)

    def handle_message(self, topic, payload):
        """Apply a setting received on <instance>/.../set; raise ValueError for a bad topic."""
        if isinstance(payload, (bytes, bytearray)):
            payload = bytes(payload).decode("utf-8", errors="replace")
        parts = topic.split("/")
        if len(parts) < 3 or parts[0] != self.instance or parts[-1] != "set":
            raise ValueError(f"unexpected topic {topic!r}")
        if len(parts) == 5 and parts[1] == "zone":
            if len(payload) >= 2 and payload[-2] == ".":
                payload = payload[:-2]
            return self._require(self.put_config)(parts[2], parts[3], payload)
        if len(parts) == 4 and parts[1] == "vacation":
            return self._require(self.put_vacation_config)(parts[2], payload)
        if len(parts) == 3:
            return self._require(self.put_config)("0", parts[1], payload)
        raise ValueError(f"malformed topic {topic!r}")

    @staticmethod
    def _require(handler):
        if handler is None:
            raise RuntimeError("no handler configured for MQTT settings")
        return handler

    def publish(self, topic, value):
        """Publish value, retained, to topic; return False when not set up."""
        client = self.client
        if client is None:
            return False
        text = _format_value(value)
        log.info("MQTT PUB: %s -> %s", topic, text)
        client.publish(topic, text, qos=0, retain=True)
        return True

    def discover_zone(self, zone_index, zone_name, temp_units):
        """Announce a zone once per connection; return True if it was announced now."""
        _check_zone_index(zone_index)
        client = self.client
        with self._lock:
            if zone_index in self._discovered:
                return False
        if client is None or not client.is_connected():
            return False
        for topic, payload in zone_discovery_messages(
            self.instance, zone_index, zone_name, temp_units
        ):
            log.info("MQTT ZONE DISC: %s", payload)
            client.publish(topic, payload, qos=0, retain=True)
        with self._lock:
            self._discovered.add(zone_index)
        return True