"""Conversions between raw thermostat codes and their names."""

_MODE_NAMES = {
    0: "heat",
    1: "cool",
    2: "auto",
    3: "electric",
    4: "heatpump",
    5: "off",
}

_SETTABLE_MODES = {
    "heat": 0,
    "cool": 1,
    "auto": 2,
    "off": 5,
}

_FAN_MODE_NAMES = {
    0: "auto",
    1: "low",
    2: "med",
    3: "high",
}

_FAN_MODES = {name: code for code, name in _FAN_MODE_NAMES.items()}


def raw_mode_to_string(mode):
    """Return the name of a raw system mode, or "unknown"."""
    return _MODE_NAMES.get(mode, "unknown")


def string_mode_to_raw(mode):
    """Return the raw code of a settable mode name.

    Raises ValueError for a name that cannot be set.
    """
    try:
        return _SETTABLE_MODES[mode]
    except KeyError:
        raise ValueError(f"invalid mode name {mode!r}") from None


def raw_fan_mode_to_string(mode):
    """Return the name of a raw fan mode, or "unknown"."""
    return _FAN_MODE_NAMES.get(mode, "unknown")


def string_fan_mode_to_raw(mode):
    """Return the raw code of a fan mode name.

    Raises ValueError for an unknown name.
    """
    try:
        return _FAN_MODES[mode]
    except KeyError:
        raise ValueError(f"invalid fan mode name {mode!r}") from None


def raw_action_to_string(action):
    """Return the current action for a raw stage value."""
    if action == 0:
        return "idle"
    if action in (1, 2):
        return "cooling"
    return "heating"