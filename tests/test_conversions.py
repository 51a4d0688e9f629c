import pytest

from infinitive.conversions import (
    raw_action_to_string,
    raw_fan_mode_to_string,
    raw_mode_to_string,
    string_fan_mode_to_raw,
    string_mode_to_raw,
)


@pytest.mark.parametrize(
    "raw,name",
    [
        (0, "heat"),
        (1, "cool"),
        (2, "auto"),
        (3, "electric"),
        (4, "heatpump"),
        (5, "off"),
        (6, "unknown"),
        (255, "unknown"),
    ],
)
def test_raw_mode_to_string(raw, name):
    assert raw_mode_to_string(raw) == name


@pytest.mark.parametrize("name", ["heat", "cool", "auto", "off"])
def test_mode_round_trip(name):
    assert raw_mode_to_string(string_mode_to_raw(name)) == name


@pytest.mark.parametrize("name", ["electric", "heatpump", "unknown", ""])
def test_string_mode_to_raw_rejects(name):
    with pytest.raises(ValueError):
        string_mode_to_raw(name)


@pytest.mark.parametrize(
    "raw,name", [(0, "auto"), (1, "low"), (2, "med"), (3, "high"), (4, "unknown")]
)
def test_raw_fan_mode_to_string(raw, name):
    assert raw_fan_mode_to_string(raw) == name


@pytest.mark.parametrize("name", ["auto", "low", "med", "high"])
def test_fan_mode_round_trip(name):
    assert raw_fan_mode_to_string(string_fan_mode_to_raw(name)) == name


def test_string_fan_mode_to_raw_rejects():
    with pytest.raises(ValueError):
        string_fan_mode_to_raw("turbo")


@pytest.mark.parametrize(
    "raw,name",
    [(0, "idle"), (1, "cooling"), (2, "cooling"), (3, "heating"), (7, "heating")],
)
def test_raw_action_to_string(raw, name):
    assert raw_action_to_string(raw) == name