import logging
import socket

import pytest

from conftest import free_port, wait_for
from dualpath_bridge.common import ConfigError, Endpoint, FatalNetworkError
from dualpath_bridge.config import MulticastConfig
from dualpath_bridge.display import hex_rows, printable
from dualpath_bridge.multicast import Datagram, MulticastReceiver, membership_request, report_datagram

PAYLOAD = bytes([0x01, 0x02, 0x03, 0x04, 0x05])


def test_hex_rows_wrap_at_sixteen():
    assert hex_rows(PAYLOAD) == ["01 02 03 04 05"]
    rows = hex_rows(bytes(range(20)))
    assert len(rows) == 2
    assert rows[1] == "10 11 12 13"


def test_printable_masks_control_bytes():
    assert printable(b"ok\x00\x1f \x7e\x7f\xff") == "ok.. ~.."


def test_membership_request_layout():
    assert membership_request("239.64.0.3", "192.168.100.1") == bytes([239, 64, 0, 3, 192, 168, 100, 1])


def test_report_datagram(caplog):
    caplog.set_level(logging.INFO, logger="dualpath_bridge")
    report_datagram(Datagram(1, ("192.168.100.9", 40000), PAYLOAD))
    messages = [r.getMessage() for r in caplog.records]
    assert "Size: 5 bytes" in messages
    assert "01 02 03 04 05" in messages
    assert "From: 192.168.100.9:40000" in messages


def test_group_must_be_multicast():
    with pytest.raises(ConfigError):
        MulticastReceiver(MulticastConfig(group=Endpoint("192.168.100.1", 52000), interface="192.168.100.1"))


def test_receiver_reports_datagrams(stop, run_in_thread):
    port = free_port("0.0.0.0", socket.SOCK_DGRAM)
    receiver = MulticastReceiver(
        MulticastConfig(group=Endpoint("239.64.0.3", port), interface="127.0.0.1", poll_interval=0.05),
        stop,
    )
    try:
        trial = receiver.open()
    except FatalNetworkError as exc:
        pytest.skip(f"multicast not available on loopback: {exc}")
    receiver.leave(trial)
    trial.close()

    seen = []
    thread, result = run_in_thread(receiver.run, seen.append)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
        # the socket is bound to 0.0.0.0:port, so a unicast datagram lands on it too
        for _ in range(50):
            sender.sendto(PAYLOAD, ("127.0.0.1", port))
            if wait_for(lambda: seen, timeout=0.1):
                break

    stop.set()
    thread.join(timeout=2)
    assert seen
    assert seen[0].payload == PAYLOAD
    assert seen[0].number == 1
    assert hex_rows(seen[0].payload) == ["01 02 03 04 05"]
    assert result["value"] == len(seen)
