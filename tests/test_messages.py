import base64

import pytest
from pydantic import ValidationError

from foxtime.api.messages import ControlMessage, OffsetMessage, parse_control

CERT_HASH = base64.b64encode(b"\x01" * 32).decode()


def test_control_message_uses_wire_names():
    message = parse_control({
        "hidden": False,
        "initialTimeOrigin": 12.5,
        "transportPort": 4433,
        "transportCertHash": CERT_HASH,
    })
    assert message.hidden is False
    assert message.initial_time_origin == 12.5
    assert message.transport_port == 4433
    assert message.transport_cert_hash == CERT_HASH


def test_visibility_only_message():
    message = parse_control({"hidden": True})
    assert message.hidden is True
    assert message.transport_port is None


def test_unknown_fields_are_ignored():
    message = parse_control({"hidden": True, "theme": "dark"})
    assert message is not None and message.hidden is True


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"theme": "dark"},
        {"hidden": "sometimes"},
        {"transportPort": 0},
        {"transportPort": 70000},
        {"transportCertHash": "not base64!"},
        {"transportCertHash": base64.b64encode(b"short").decode()},
        ["hidden", True],
        None,
    ],
)
def test_malformed_control_messages_rejected(raw):
    assert parse_control(raw) is None


def test_control_message_instance_passes_through():
    message = ControlMessage(hidden=True)
    assert parse_control(message) is message


def test_offset_message_wire_form():
    message = OffsetMessage(delay=20.0, time_origin_offset=-890.0, offset=3.5)
    assert message.to_wire() == {"delay": 20.0, "timeOriginOffset": -890.0, "offset": 3.5}


def test_offset_message_requires_all_fields():
    with pytest.raises(ValidationError):
        OffsetMessage(delay=1.0, offset=2.0)


def test_offset_message_is_frozen():
    message = OffsetMessage(delay=1.0, timeOriginOffset=2.0, offset=3.0)
    with pytest.raises(ValidationError):
        message.delay = 5.0
